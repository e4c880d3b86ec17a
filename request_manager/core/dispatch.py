"""Dispatch & reconciliation of approved requests to Radarr/Sonarr.

The caller's flow resolves the target instance, routing and guards and
raises ``DispatchError`` when one of them fails. The backend submission and
its reconciliation then run as a detached task on the ``TaskSupervisor``:
success links the external record onto the media, failure rolls the
variant back to UNKNOWN and notifies the administrator.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from request_manager.config import (
    ArrServerConfig,
    Config,
    RadarrServerConfig,
    SonarrServerConfig,
    get_config,
)
from request_manager.core.executor import TaskSupervisor, get_supervisor
from request_manager.core.models import (
    MediaRequestStatus,
    MediaStatus,
    MediaType,
    NotificationPayload,
    Variant,
)
from request_manager.core.safety import DispatchGuard
from request_manager.db import repository
from request_manager.db.database import get_db_sync
from request_manager.db.models import Media, MediaRequest
from request_manager.services.notifications import Notification, NotificationManager
from request_manager.services.radarr import MovieAddOptions, RadarrService
from request_manager.services.sonarr import SeriesAddOptions, SonarrService
from request_manager.services.tmdb import is_anime, poster_url

logger = structlog.get_logger(__name__)


class DispatchError(Exception):
    """Classified failure of the synchronous part of a dispatch."""

    def __init__(self, message: str, code: str = "dispatch_failed"):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class DispatchJob:
    """Tout ce dont la continuation en arrière-plan a besoin (sans objet de session)."""
    request_id: int
    media_id: int
    variant: Variant
    server: ArrServerConfig
    title: str
    options: Any
    image: Optional[str] = None
    seasons: List[int] = field(default_factory=list)


class DispatchEngine:
    """Base commune des moteurs film/série."""

    media_type: MediaType = MediaType.MOVIE
    backend_label = "backend"

    def __init__(
        self,
        metadata: Any,
        notifier: NotificationManager,
        config_provider: Callable[[], Config] = get_config,
        session_factory: Callable[[], Session] = get_db_sync,
        client_factory: Optional[Callable[[ArrServerConfig], Any]] = None,
        supervisor: Optional[TaskSupervisor] = None,
        guard: Optional[DispatchGuard] = None,
    ):
        self.metadata = metadata
        self.notifier = notifier
        self.config_provider = config_provider
        self.session_factory = session_factory
        self.client_factory = client_factory or self._default_client
        self.supervisor = supervisor or get_supervisor()
        self.guard = guard or DispatchGuard()
        self._media_locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    # -- configuration ---------------------------------------------------

    def _default_client(self, server: ArrServerConfig) -> Any:
        raise NotImplementedError

    def _servers(self, config: Config) -> List[ArrServerConfig]:
        raise NotImplementedError

    def select_server(self, request: MediaRequest) -> Optional[ArrServerConfig]:
        """Instance par défaut du bon variant, remplacée par l'override server_id s'il diffère."""
        servers = self._servers(self.config_provider())
        server = next(
            (s for s in servers if s.is_default and s.is_4k == bool(request.is4k)),
            None,
        )

        if request.server_id is not None and request.server_id >= 0 and (server is None or server.id != request.server_id):
            server = next((s for s in servers if s.id == request.server_id), None)
            logger.info(
                "request_server_override",
                backend=self.backend_label,
                request_id=request.id,
                server_id=request.server_id,
                server=server.name if server else None,
            )

        return server

    # -- entry point -----------------------------------------------------

    def handles(self, request: MediaRequest) -> bool:
        return request.status == MediaRequestStatus.APPROVED and request.media_type == self.media_type

    async def dispatch(self, db: Session, request: MediaRequest) -> Optional[asyncio.Task]:
        """Send an approved request to its backend.

        Returns the background task running the submission, or None when
        there is nothing to do (wrong type/status, no configured instance).
        Raises ``DispatchError`` when a guard or the preparation fails.
        """
        if not self.handles(request):
            return None

        # Held from the availability guard until the submission is reconciled.
        request_id, media_id = request.id, request.media_id
        await self._acquire(media_id)
        try:
            job = await self._prepare(db, request)
        except DispatchError as e:
            self._release(media_id)
            logger.error(
                "dispatch_rejected",
                backend=self.backend_label,
                request_id=request_id,
                code=e.code,
                error=e.message,
            )
            raise
        except Exception as e:
            self._release(media_id)
            message = f"Request failed to send to {self.backend_label}: {e}"
            logger.exception(
                "dispatch_preparation_failed",
                backend=self.backend_label,
                request_id=request_id,
                error=str(e),
            )
            raise DispatchError(message) from e
        except BaseException:
            self._release(media_id)
            raise

        if job is None:
            self._release(media_id)
            return None

        task = self.supervisor.spawn(
            self._submit_and_reconcile(job),
            name=f"dispatch:{self.backend_label}:{job.request_id}",
            request_id=job.request_id,
            media_id=job.media_id,
        )
        task.add_done_callback(lambda _: self._release(media_id))
        logger.info(
            "dispatch_sent",
            backend=self.backend_label,
            request_id=job.request_id,
            server=job.server.name,
        )
        return task

    async def _prepare(self, db: Session, request: MediaRequest) -> Optional[DispatchJob]:
        raise NotImplementedError

    def _load_guarded_media(self, db: Session, request: MediaRequest) -> Media:
        media = repository.get_media(db, request.media_id, fresh=True)
        if media is None:
            raise DispatchError("Media data is missing", code="media_missing")
        available, reason = self.guard.is_already_available(media, request.variant)
        if available:
            raise DispatchError(reason, code="media_already_available")
        return media

    def _no_server(self, request: MediaRequest) -> None:
        logger.info(
            "dispatch_skipped_no_server",
            backend=self.backend_label,
            request_id=request.id,
            is4k=bool(request.is4k),
            hint=f"Did you set any of your {self.backend_label} servers as default?",
        )

    # -- background continuation -----------------------------------------

    async def _acquire(self, media_id: int) -> None:
        """Prend le verrou du média ; l'entrée est partagée tant qu'il reste des utilisateurs."""
        lock = self._media_locks.get(media_id)
        if lock is None:
            lock = self._media_locks[media_id] = asyncio.Lock()
        self._lock_users[media_id] = self._lock_users.get(media_id, 0) + 1
        if lock.locked():
            logger.info("dispatch_waiting_for_media", backend=self.backend_label, media_id=media_id)
        try:
            await lock.acquire()
        except BaseException:
            self._forget(media_id)
            raise

    def _release(self, media_id: int) -> None:
        self._media_locks[media_id].release()
        self._forget(media_id)

    def _forget(self, media_id: int) -> None:
        remaining = self._lock_users[media_id] - 1
        if remaining:
            self._lock_users[media_id] = remaining
        else:
            del self._lock_users[media_id]
            del self._media_locks[media_id]

    async def _submit(self, job: DispatchJob) -> Dict[str, Any]:
        raise NotImplementedError

    async def _submit_and_reconcile(self, job: DispatchJob) -> Optional[Dict[str, Any]]:
        try:
            result = await self._submit(job)
        except Exception as e:
            self._on_failure(job, e)
            return None
        self._on_success(job, result)
        return result

    def _on_success(self, job: DispatchJob, result: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            media = repository.get_media(db, job.media_id, fresh=True)
            if media is None:
                logger.error("dispatch_media_missing", backend=self.backend_label, media_id=job.media_id)
                return
            media.link_service(job.variant, result.get("id"), result.get("titleSlug"), job.server.id)
            db.commit()
            logger.info(
                "dispatch_reconciled",
                backend=self.backend_label,
                request_id=job.request_id,
                media_id=job.media_id,
                external_service_id=result.get("id"),
                server_id=job.server.id,
            )
        finally:
            db.close()

    def _failure_message(self) -> str:
        raise NotImplementedError

    def _on_failure(self, job: DispatchJob, error: Exception) -> None:
        db = self.session_factory()
        try:
            media = repository.get_media(db, job.media_id, fresh=True)
            if media is not None:
                media.set_status(job.variant, MediaStatus.UNKNOWN)
                db.commit()
            logger.warning(
                "dispatch_failed_marked_unknown",
                backend=self.backend_label,
                request_id=job.request_id,
                media_id=job.media_id,
                variant=job.variant.value,
                error=str(error),
            )

            admin = repository.get_admin_user(db)
            if admin is None:
                logger.error("dispatch_failure_no_admin", request_id=job.request_id)
                return
            extra = []
            if job.seasons:
                extra.append({"name": "Seasons", "value": ", ".join(str(s) for s in job.seasons)})
            self.notifier.send_notification(
                Notification.MEDIA_FAILED,
                NotificationPayload(
                    subject=job.title,
                    message=self._failure_message(),
                    image=job.image,
                    notify_user_id=admin.id,
                    media_id=job.media_id,
                    request_id=job.request_id,
                    extra=extra,
                ),
            )
        finally:
            db.close()


class MovieDispatcher(DispatchEngine):
    media_type = MediaType.MOVIE
    backend_label = "radarr"

    def _default_client(self, server: ArrServerConfig) -> RadarrService:
        return RadarrService(server)

    def _servers(self, config: Config) -> List[RadarrServerConfig]:
        return config.radarr

    def _failure_message(self) -> str:
        return "Movie failed to add to Radarr"

    async def _prepare(self, db: Session, request: MediaRequest) -> Optional[DispatchJob]:
        server = self.select_server(request)
        if server is None:
            self._no_server(request)
            return None

        root_folder = server.active_directory
        quality_profile = server.active_profile_id
        if request.root_folder and request.root_folder != root_folder:
            root_folder = request.root_folder
            logger.info("request_root_folder_override", request_id=request.id, root_folder=root_folder)
        if request.profile_id and request.profile_id != quality_profile:
            quality_profile = request.profile_id
            logger.info("request_profile_override", request_id=request.id, profile_id=quality_profile)

        media = self._load_guarded_media(db, request)
        movie = await self.metadata.get_movie(media.tmdb_id)
        release_date = movie.get("release_date") or ""
        year = int(release_date[:4]) if release_date[:4].isdigit() else None

        return DispatchJob(
            request_id=request.id,
            media_id=media.id,
            variant=request.variant,
            server=server,
            title=movie["title"],
            image=poster_url(movie.get("poster_path")),
            options=MovieAddOptions(
                title=movie["title"],
                tmdb_id=movie["id"],
                year=year,
                quality_profile_id=quality_profile,
                root_folder_path=root_folder,
                minimum_availability=server.minimum_availability,
                monitored=True,
                search_now=not server.prevent_search,
                tags=list(server.tags),
            ),
        )

    async def _submit(self, job: DispatchJob) -> Dict[str, Any]:
        return await self.client_factory(job.server).add_movie(job.options)


class TvDispatcher(DispatchEngine):
    media_type = MediaType.TV
    backend_label = "sonarr"

    def _default_client(self, server: ArrServerConfig) -> SonarrService:
        return SonarrService(server)

    def _servers(self, config: Config) -> List[SonarrServerConfig]:
        return config.sonarr

    def _failure_message(self) -> str:
        return "Series failed to add to Sonarr"

    async def _prepare(self, db: Session, request: MediaRequest) -> Optional[DispatchJob]:
        server = self.select_server(request)
        if server is None:
            self._no_server(request)
            return None

        media = self._load_guarded_media(db, request)
        series = await self.metadata.get_tv_show(media.tmdb_id)

        tvdb_id = self.guard.resolve_tvdb_id(series, media)
        if not tvdb_id:
            logger.error(
                "dispatch_missing_tvdb_id",
                request_id=request.id,
                media_id=media.id,
                tmdb_id=media.tmdb_id,
            )
            repository.delete_media(db, media)
            db.commit()
            raise DispatchError("Series was missing tvdb id", code="missing_tvdb_id")

        series_type = "anime" if is_anime(series) else "standard"
        anime = series_type == "anime"
        root_folder = server.active_anime_directory if anime and server.active_anime_directory else server.active_directory
        quality_profile = server.active_anime_profile_id if anime and server.active_anime_profile_id else server.active_profile_id
        language_profile = (
            server.active_anime_language_profile_id
            if anime and server.active_anime_language_profile_id
            else server.active_language_profile_id
        )

        if request.root_folder and request.root_folder != root_folder:
            root_folder = request.root_folder
            logger.info("request_root_folder_override", request_id=request.id, root_folder=root_folder)
        if request.profile_id and request.profile_id != quality_profile:
            quality_profile = request.profile_id
            logger.info("request_profile_override", request_id=request.id, profile_id=quality_profile)
        if request.language_profile_id and request.language_profile_id != language_profile:
            language_profile = request.language_profile_id
            logger.info("request_language_profile_override", request_id=request.id, language_profile_id=language_profile)

        seasons = request.season_numbers
        return DispatchJob(
            request_id=request.id,
            media_id=media.id,
            variant=request.variant,
            server=server,
            title=series["name"],
            image=poster_url(series.get("poster_path")),
            seasons=seasons,
            options=SeriesAddOptions(
                title=series["name"],
                tvdb_id=tvdb_id,
                quality_profile_id=quality_profile,
                root_folder_path=root_folder,
                seasons=seasons,
                language_profile_id=language_profile,
                season_folder=server.enable_season_folders,
                series_type=series_type,
                monitored=True,
                search_now=not server.prevent_search,
                tags=list(server.tags),
            ),
        )

    async def _submit(self, job: DispatchJob) -> Dict[str, Any]:
        return await self.client_factory(job.server).add_series(job.options)


def build_dispatchers(
    metadata: Any,
    notifier: NotificationManager,
    **kwargs: Any,
) -> Dict[MediaType, DispatchEngine]:
    """Un moteur par type de média, partageant les mêmes collaborateurs."""
    return {
        MediaType.MOVIE: MovieDispatcher(metadata, notifier, **kwargs),
        MediaType.TV: TvDispatcher(metadata, notifier, **kwargs),
    }
