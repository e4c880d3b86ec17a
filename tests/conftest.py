"""Shared fixtures: in-memory database, config and fake collaborators."""

from typing import Any, Dict, List, Optional

import pytest

from request_manager.config import (
    Config,
    NotificationsConfig,
    RadarrServerConfig,
    SonarrServerConfig,
    TmdbConfig,
    set_config,
)
from request_manager.core.dispatch import build_dispatchers
from request_manager.core.executor import TaskSupervisor
from request_manager.core.lifecycle import RequestLifecycle
from request_manager.core.models import Permission
from request_manager.db.database import get_db_sync, init_db
from request_manager.db.models import User

GOT_TVDB_ID = 121361
ANIME_TVDB_ID = 81797


class FakeMetadata:
    """TMDB stand-in keyed by tmdb id."""

    def __init__(self):
        self.movies: Dict[int, Dict[str, Any]] = {
            550: {
                "id": 550,
                "title": "Fight Club",
                "overview": "An insomniac office worker...",
                "poster_path": "/fc.jpg",
                "release_date": "1999-10-15",
            },
            603: {
                "id": 603,
                "title": "The Matrix",
                "overview": "Set in the 22nd century...",
                "poster_path": "/matrix.jpg",
                "release_date": "1999-03-30",
            },
        }
        self.tv_shows: Dict[int, Dict[str, Any]] = {
            1399: {
                "id": 1399,
                "name": "Game of Thrones",
                "overview": "Seven noble families...",
                "poster_path": "/got.jpg",
                "external_ids": {"tvdb_id": GOT_TVDB_ID},
                "keywords": [{"id": 818, "name": "based on novel or book"}],
            },
            37854: {
                "id": 37854,
                "name": "One Piece",
                "overview": "Monkey D. Luffy...",
                "poster_path": "/op.jpg",
                "external_ids": {"tvdb_id": ANIME_TVDB_ID},
                "keywords": [{"id": 210024, "name": "anime"}],
            },
            4242: {
                "id": 4242,
                "name": "Obscure Show",
                "overview": None,
                "poster_path": None,
                "external_ids": {"tvdb_id": None},
                "keywords": [],
            },
        }

    async def get_movie(self, movie_id: int) -> Dict[str, Any]:
        if movie_id not in self.movies:
            raise LookupError(f"movie {movie_id} not found")
        return dict(self.movies[movie_id])

    async def get_tv_show(self, tv_id: int) -> Dict[str, Any]:
        if tv_id not in self.tv_shows:
            raise LookupError(f"tv {tv_id} not found")
        return dict(self.tv_shows[tv_id])


class FakeBackend:
    """Radarr/Sonarr stand-in recording every submission."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_times = 0
        self.next_id = 100

    def client_for(self, server):
        backend = self

        class _Client:
            async def add_movie(self, options):
                return backend._record("movie", server, options)

            async def add_series(self, options):
                return backend._record("series", server, options)

        return _Client()

    def _record(self, kind: str, server, options) -> Dict[str, Any]:
        self.calls.append({"kind": kind, "server_id": server.id, "options": options})
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("backend unreachable")
        self.next_id += 1
        return {"id": self.next_id, "titleSlug": f"slug-{self.next_id}"}


class RecordingNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    def send_notification(self, kind, payload) -> None:
        self.sent.append((kind, payload))

    def kinds(self) -> list:
        return [kind for kind, _ in self.sent]


def make_config(
    radarr: Optional[list] = None,
    sonarr: Optional[list] = None,
) -> Config:
    return Config(
        radarr=radarr if radarr is not None else [
            RadarrServerConfig(
                id=0, name="Radarr", url="http://radarr:7878", api_key="r",
                is_default=True, active_profile_id=1, active_directory="/movies",
            ),
            RadarrServerConfig(
                id=1, name="Radarr 4K", url="http://radarr4k:7878", api_key="r4",
                is_default=True, is_4k=True, active_profile_id=5, active_directory="/movies-4k",
            ),
            RadarrServerConfig(
                id=2, name="Radarr Kids", url="http://radarr-kids:7878", api_key="rk",
                active_profile_id=3, active_directory="/kids", prevent_search=True,
            ),
        ],
        sonarr=sonarr if sonarr is not None else [
            SonarrServerConfig(
                id=0, name="Sonarr", url="http://sonarr:8989", api_key="s",
                is_default=True, active_profile_id=1, active_directory="/tv",
                active_language_profile_id=1, active_anime_profile_id=7,
                active_anime_directory="/anime", active_anime_language_profile_id=2,
            ),
        ],
        tmdb=TmdbConfig(api_key="tmdb-key"),
        notifications=NotificationsConfig(log_enabled=False),
    )


@pytest.fixture
def app_config() -> Config:
    return set_config(make_config())


@pytest.fixture
def db(app_config):
    init_db(database_url="sqlite://")
    session = get_db_sync()
    yield session
    session.close()


@pytest.fixture
def users(db) -> Dict[str, User]:
    rows = {
        "admin": User(email="admin@example.org", username="admin", permissions=int(Permission.ADMIN)),
        "manager": User(email="manager@example.org", permissions=int(Permission.MANAGE_REQUESTS | Permission.REQUEST)),
        "requester": User(email="alice@example.org", username="alice", permissions=int(Permission.REQUEST)),
        "other": User(email="bob@example.org", username="bob", permissions=int(Permission.REQUEST)),
        "auto": User(
            email="carol@example.org",
            permissions=int(Permission.REQUEST | Permission.AUTO_APPROVE | Permission.REQUEST_4K | Permission.AUTO_APPROVE_4K),
        ),
    }
    for user in rows.values():
        db.add(user)
        db.commit()
    return rows


@pytest.fixture
def metadata() -> FakeMetadata:
    return FakeMetadata()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def supervisor() -> TaskSupervisor:
    return TaskSupervisor()


@pytest.fixture
def dispatchers(db, app_config, metadata, backend, notifier, supervisor):
    return build_dispatchers(
        metadata,
        notifier,
        config_provider=lambda: app_config,
        client_factory=backend.client_for,
        supervisor=supervisor,
    )


@pytest.fixture
def lifecycle(dispatchers, notifier, metadata) -> RequestLifecycle:
    return RequestLifecycle(dispatchers, notifier, metadata)
