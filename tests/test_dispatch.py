"""Tests for backend selection and dispatch guards."""

import asyncio

import pytest

from request_manager.core.dispatch import DispatchError, MovieDispatcher, TvDispatcher
from request_manager.core.models import MediaRequestStatus, MediaStatus, MediaType, Variant
from request_manager.core.safety import DispatchGuard
from request_manager.db.models import Media, MediaRequest


def _movie_request(**kwargs):
    values = {"id": 7, "type": "movie", "status": int(MediaRequestStatus.APPROVED), "is4k": False}
    values.update(kwargs)
    return MediaRequest(**values)


@pytest.fixture
def movie_engine(dispatchers):
    return dispatchers[MediaType.MOVIE]


class TestSelectServer:
    def test_default_server_per_variant(self, movie_engine):
        assert movie_engine.select_server(_movie_request()).id == 0
        assert movie_engine.select_server(_movie_request(is4k=True)).id == 1

    def test_override_replaces_default(self, movie_engine):
        assert movie_engine.select_server(_movie_request(server_id=2)).id == 2

    def test_unknown_override_yields_no_server(self, movie_engine):
        assert movie_engine.select_server(_movie_request(server_id=99)) is None

    def test_no_default_for_variant(self, metadata, notifier, supervisor, app_config):
        app_config.radarr = [server for server in app_config.radarr if not server.is_4k]
        engine = MovieDispatcher(metadata, notifier, config_provider=lambda: app_config, supervisor=supervisor)

        assert engine.select_server(_movie_request(is4k=True)) is None


def test_engine_ignores_other_types_and_statuses(movie_engine, db):
    pending = _movie_request(status=int(MediaRequestStatus.PENDING))
    tv = _movie_request(type="tv")

    assert asyncio.run(movie_engine.dispatch(db, pending)) is None
    assert asyncio.run(movie_engine.dispatch(db, tv)) is None


def test_missing_media_is_rejected(movie_engine, db, users):
    request = _movie_request(media_id=12345, requested_by_id=users["admin"].id)

    with pytest.raises(DispatchError) as excinfo:
        asyncio.run(movie_engine.dispatch(db, request))

    assert excinfo.value.code == "media_missing"


def test_preparation_errors_are_wrapped(db, users, notifier, supervisor, app_config):
    class BrokenMetadata:
        async def get_movie(self, movie_id):
            raise ConnectionError("tmdb down")

    media = Media(media_type="movie", tmdb_id=550, status=int(MediaStatus.PROCESSING))
    db.add(media)
    db.commit()
    engine = MovieDispatcher(BrokenMetadata(), notifier, config_provider=lambda: app_config, supervisor=supervisor)
    request = _movie_request(media_id=media.id)

    with pytest.raises(DispatchError) as excinfo:
        asyncio.run(engine.dispatch(db, request))

    assert excinfo.value.code == "dispatch_failed"
    assert "radarr" in excinfo.value.message
    assert supervisor.pending == 0


def test_tv_engine_label():
    assert TvDispatcher.backend_label == "sonarr"
    assert MovieDispatcher.backend_label == "radarr"


class TestDispatchGuard:
    def test_available_variant_is_blocked(self):
        media = Media(media_type="movie", tmdb_id=1, status=int(MediaStatus.AVAILABLE), status4k=int(MediaStatus.PENDING))
        guard = DispatchGuard()

        assert guard.is_already_available(media, Variant.STANDARD) == (True, "Media already available")
        assert guard.is_already_available(media, Variant.FOUR_K) == (False, None)

    def test_tvdb_id_falls_back_to_stored_media(self):
        guard = DispatchGuard()
        media = Media(media_type="tv", tmdb_id=1, tvdb_id=555)

        assert guard.resolve_tvdb_id({"external_ids": {"tvdb_id": 777}}, media) == 777
        assert guard.resolve_tvdb_id({"external_ids": {"tvdb_id": None}}, media) == 555
        assert guard.resolve_tvdb_id({}, Media(media_type="tv", tmdb_id=1)) is None


class GatedBackend:
    """Radarr stand-in whose submissions wait until ``gate`` is set."""

    def __init__(self):
        self.calls = []
        self.gate = None

    def client_for(self, server):
        backend = self

        class _Client:
            async def add_movie(self, options):
                backend.calls.append(options.tmdb_id)
                await backend.gate.wait()
                return {"id": 101, "titleSlug": "fight-club"}

        return _Client()


class TestConcurrentDispatch:
    @pytest.fixture
    def gated(self, db, users, metadata, notifier, supervisor, app_config):
        backend = GatedBackend()
        engine = MovieDispatcher(
            metadata,
            notifier,
            config_provider=lambda: app_config,
            client_factory=backend.client_for,
            supervisor=supervisor,
        )
        media = Media(media_type="movie", tmdb_id=550, status=int(MediaStatus.PROCESSING))
        db.add(media)
        db.commit()
        return engine, backend, media

    def test_second_dispatch_rechecks_availability_after_first_completes(self, db, gated, supervisor):
        engine, backend, media = gated
        first = _movie_request(id=7, media_id=media.id)
        second = _movie_request(id=8, media_id=media.id)

        async def scenario():
            backend.gate = asyncio.Event()
            await engine.dispatch(db, first)
            waiting = asyncio.ensure_future(engine.dispatch(db, second))
            await asyncio.sleep(0)
            assert not waiting.done()

            fresh = db.query(Media).filter(Media.id == media.id).one()
            fresh.status = int(MediaStatus.AVAILABLE)
            db.commit()
            backend.gate.set()

            with pytest.raises(DispatchError) as excinfo:
                await waiting
            await supervisor.drain()
            return excinfo.value

        error = asyncio.run(scenario())

        assert error.code == "media_already_available"
        assert backend.calls == [550]
        assert engine._media_locks == {}
        assert engine._lock_users == {}

    def test_dispatches_for_one_media_submit_one_after_the_other(self, db, gated, supervisor):
        engine, backend, media = gated
        first = _movie_request(id=7, media_id=media.id)
        second = _movie_request(id=8, media_id=media.id)

        async def scenario():
            backend.gate = asyncio.Event()
            await engine.dispatch(db, first)
            waiting = asyncio.ensure_future(engine.dispatch(db, second))
            await asyncio.sleep(0)
            calls_while_first_in_flight = list(backend.calls)
            backend.gate.set()
            await waiting
            await supervisor.drain()
            return calls_while_first_in_flight

        calls_while_first_in_flight = asyncio.run(scenario())

        assert calls_while_first_in_flight == [550]
        assert backend.calls == [550, 550]
        assert engine._media_locks == {}

    def test_rejected_dispatch_releases_the_media_lock(self, movie_engine, db, users):
        request = _movie_request(media_id=12345)

        with pytest.raises(DispatchError):
            asyncio.run(movie_engine.dispatch(db, request))

        assert movie_engine._media_locks == {}
        assert movie_engine._lock_users == {}
