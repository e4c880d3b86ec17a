"""API tests for request routes and permission guards."""

import pytest
from fastapi.testclient import TestClient

from request_manager.config import RadarrServerConfig, get_config
from request_manager.core.dispatch import build_dispatchers
from request_manager.core.executor import TaskSupervisor
from request_manager.core.lifecycle import RequestLifecycle
from request_manager.core.models import MediaStatus, Permission
from request_manager.db.database import get_db_sync
from request_manager.db.models import Media, User
from request_manager.main import create_app

from conftest import FakeBackend, FakeMetadata, RecordingNotifier, make_config


@pytest.fixture
def api(monkeypatch):
    """App without backend instances: approvals never leave the process."""
    monkeypatch.delenv("DATA_DIR", raising=False)
    config = make_config(radarr=[], sonarr=[])
    config.app.database_url = "sqlite://"
    app = create_app(config)

    db = get_db_sync()
    users = {}
    for key, perms in (
        ("admin", Permission.ADMIN),
        ("manager", Permission.MANAGE_REQUESTS | Permission.REQUEST),
        ("alice", Permission.REQUEST),
        ("bob", Permission.REQUEST),
        ("viewer", Permission.REQUEST | Permission.REQUEST_VIEW),
    ):
        user = User(email=f"{key}@example.org", username=key, permissions=int(perms))
        db.add(user)
        db.commit()
        users[key] = user.id
    db.close()

    notifier = RecordingNotifier()
    metadata = FakeMetadata()
    backend = FakeBackend()
    dispatchers = build_dispatchers(
        metadata,
        notifier,
        config_provider=lambda: config,
        client_factory=backend.client_for,
        supervisor=TaskSupervisor(),
    )
    app.state.lifecycle = RequestLifecycle(dispatchers, notifier, metadata)

    with TestClient(app) as client:
        yield client, users, notifier


def _as(users, name):
    return {"X-User-Id": str(users[name])}


def _create(client, users, name="alice", **body):
    payload = {"mediaType": "movie", "mediaId": 550}
    payload.update(body)
    return client.post("/api/request", json=payload, headers=_as(users, name))


class TestAuthentication:
    def test_missing_user_header(self, api):
        client, _, _ = api

        assert client.get("/api/request").status_code == 401

    def test_unknown_user(self, api):
        client, _, _ = api

        assert client.get("/api/request", headers={"X-User-Id": "999"}).status_code == 401


class TestCreateRequestRoute:
    def test_create_movie_request(self, api):
        client, users, notifier = api

        resp = _create(client, users)

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == 1
        assert body["type"] == "movie"
        assert body["requested_by_id"] == users["alice"]
        assert body["media"]["tmdb_id"] == 550
        assert body["media"]["status"] == MediaStatus.PENDING
        assert body["seasons"] == []
        assert len(notifier.sent) == 1

    def test_duplicate_returns_409(self, api):
        client, users, _ = api
        _create(client, users)

        resp = _create(client, users)

        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "duplicate_request"

    def test_4k_requires_permission(self, api):
        client, users, _ = api

        resp = _create(client, users, is4k=True)

        assert resp.status_code == 403

    def test_claimed_seasons_answer_202(self, api):
        client, users, _ = api
        first = _create(client, users, mediaType="tv", mediaId=1399, seasons=[1, 2])
        assert first.status_code == 201
        assert [s["season_number"] for s in first.json()["seasons"]] == [1, 2]

        resp = _create(client, users, name="bob", mediaType="tv", mediaId=1399, seasons=[1])

        assert resp.status_code == 202
        assert resp.json() == {"message": "No seasons available to request"}

    def test_auto_approved_by_manager(self, api):
        client, users, _ = api

        resp = _create(client, users, name="manager")

        assert resp.status_code == 201
        assert resp.json()["status"] == 2
        assert resp.json()["modified_by_id"] == users["manager"]
        assert resp.json()["media"]["status"] == MediaStatus.PROCESSING


class TestListAndCount:
    def test_non_managers_only_see_their_own(self, api):
        client, users, _ = api
        _create(client, users, name="alice")
        _create(client, users, name="bob", mediaId=603)

        own = client.get("/api/request", headers=_as(users, "alice")).json()
        viewer = client.get("/api/request", headers=_as(users, "viewer")).json()

        assert own["page_info"]["results"] == 1
        assert own["results"][0]["requested_by_id"] == users["alice"]
        assert viewer["page_info"]["results"] == 2

    def test_filter_and_paging(self, api):
        client, users, _ = api
        _create(client, users, name="alice")
        _create(client, users, name="manager", mediaId=603)

        pending = client.get("/api/request?filter=pending", headers=_as(users, "manager")).json()
        processing = client.get("/api/request?filter=processing", headers=_as(users, "manager")).json()
        paged = client.get("/api/request?take=1&skip=1", headers=_as(users, "manager")).json()

        assert [r["media"]["tmdb_id"] for r in pending["results"]] == [550]
        assert [r["media"]["tmdb_id"] for r in processing["results"]] == [603]
        assert paged["page_info"] == {"pages": 2, "page_size": 1, "results": 2, "page": 2}
        assert paged["results"][0]["media"]["tmdb_id"] == 550

    def test_invalid_filter_is_rejected(self, api):
        client, users, _ = api

        assert client.get("/api/request?filter=bogus", headers=_as(users, "alice")).status_code == 422

    def test_count(self, api):
        client, users, _ = api
        _create(client, users, name="alice")
        _create(client, users, name="manager", mediaId=603)

        resp = client.get("/api/request/count", headers=_as(users, "alice"))

        assert resp.json() == {"pending": 1, "approved": 1, "processing": 1, "available": 0}


class TestSingleRequestRoutes:
    def test_get_is_restricted_to_owner_or_viewer(self, api):
        client, users, _ = api
        request_id = _create(client, users).json()["id"]

        assert client.get(f"/api/request/{request_id}", headers=_as(users, "alice")).status_code == 200
        assert client.get(f"/api/request/{request_id}", headers=_as(users, "bob")).status_code == 403
        assert client.get(f"/api/request/{request_id}", headers=_as(users, "viewer")).status_code == 200
        assert client.get("/api/request/9999", headers=_as(users, "alice")).status_code == 404

    def test_approve_and_decline(self, api):
        client, users, notifier = api
        request_id = _create(client, users).json()["id"]

        assert client.post(f"/api/request/{request_id}/approve", headers=_as(users, "alice")).status_code == 403

        approved = client.post(f"/api/request/{request_id}/approve", headers=_as(users, "manager"))
        assert approved.status_code == 200
        assert approved.json()["status"] == 2
        assert approved.json()["media"]["status"] == MediaStatus.PROCESSING

        declined = client.post(f"/api/request/{request_id}/decline", headers=_as(users, "manager"))
        assert declined.json()["status"] == 3
        assert declined.json()["media"]["status"] == MediaStatus.UNKNOWN
        assert len(notifier.sent) == 3

    def test_unknown_status_action(self, api):
        client, users, _ = api
        request_id = _create(client, users).json()["id"]

        resp = client.post(f"/api/request/{request_id}/cancel", headers=_as(users, "manager"))

        assert resp.status_code == 422

    def test_retry_on_available_media_is_a_conflict(self, api):
        client, users, _ = api
        created = _create(client, users, name="manager").json()
        db = get_db_sync()
        media = db.query(Media).filter(Media.id == created["media"]["id"]).one()
        media.status = int(MediaStatus.AVAILABLE)
        db.commit()
        db.close()
        get_config().radarr = [RadarrServerConfig(
            id=0, name="Radarr", url="http://radarr:7878", api_key="r",
            is_default=True, active_profile_id=1, active_directory="/movies",
        )]

        resp = client.post(f"/api/request/{created['id']}/retry", headers=_as(users, "manager"))

        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "media_already_available"

    def test_edit_tv_request_seasons(self, api):
        client, users, _ = api
        request_id = _create(client, users, mediaType="tv", mediaId=1399, seasons=[1]).json()["id"]

        resp = client.put(
            f"/api/request/{request_id}",
            json={"mediaType": "tv", "seasons": [1, 2], "rootFolder": "/tv-alt"},
            headers=_as(users, "alice"),
        )

        assert resp.status_code == 200
        assert [s["season_number"] for s in resp.json()["seasons"]] == [1, 2]
        assert resp.json()["root_folder"] == "/tv-alt"

    def test_edit_by_stranger_is_forbidden(self, api):
        client, users, _ = api
        request_id = _create(client, users).json()["id"]

        resp = client.put(f"/api/request/{request_id}", json={"mediaType": "movie"}, headers=_as(users, "bob"))

        assert resp.status_code == 403

    def test_delete(self, api):
        client, users, _ = api
        created = _create(client, users).json()

        assert client.delete(f"/api/request/{created['id']}", headers=_as(users, "bob")).status_code == 403
        assert client.delete(f"/api/request/{created['id']}", headers=_as(users, "alice")).status_code == 204
        assert client.get(f"/api/request/{created['id']}", headers=_as(users, "alice")).status_code == 404


def test_diagnostics_and_config(api):
    client, _, _ = api

    diagnostics = client.get("/api/diagnostics").json()
    config = client.get("/api/config").json()

    assert diagnostics["tmdb"] == {"configured": True}
    assert diagnostics["radarr"] == []
    assert "pending" in diagnostics["background_tasks"]
    assert config["tmdb"] == {"language": "en-US"}
    assert "database_url" not in config["app"]
