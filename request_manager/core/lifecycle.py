"""Request lifecycle: creation, status transitions, edits, deletion and retry.

``plan_transition`` is pure: it maps a persisted status change onto the
list of effects it implies. ``RequestLifecycle`` persists changes and then
executes those effects in order: recompute the media status, approve
seasons, notify, dispatch.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from request_manager.core import media_status
from request_manager.core.dispatch import DispatchEngine, DispatchError
from request_manager.core.models import (
    MediaRequestStatus,
    MediaStatus,
    MediaType,
    NotificationPayload,
    Permission,
    Variant,
    can_auto_approve,
    has_permission,
)
from request_manager.core.seasons import (
    approve_all,
    build_season_requests,
    merge_edited_seasons,
    seasons_for_new_request,
)
from request_manager.db import repository
from request_manager.db.models import Media, MediaRequest, User
from request_manager.services.notifications import Notification, NotificationManager
from request_manager.services.tmdb import poster_url

logger = structlog.get_logger(__name__)


class RequestError(Exception):
    """Structured error raised by request lifecycle operations."""

    def __init__(self, message: str, *, status_code: int = 400, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class EffectKind(str, Enum):
    RECOMPUTE_MEDIA = "recompute_media"
    APPROVE_SEASONS = "approve_seasons"
    NOTIFY = "notify"
    DISPATCH = "dispatch"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    notification: Optional[Notification] = None


@dataclass
class TransitionResult:
    request_id: int
    effects: List[Effect] = field(default_factory=list)
    media_changed: bool = False
    notified: Optional[Notification] = None
    dispatch_task: Optional[asyncio.Task] = None
    dispatch_error: Optional[DispatchError] = None
    aborted: bool = False

    @property
    def request_deleted(self) -> bool:
        return self.dispatch_error is not None and self.dispatch_error.code == "missing_tvdb_id"


def plan_transition(
    media_type: MediaType,
    new_status: MediaRequestStatus,
    previous_status: Optional[MediaRequestStatus] = None,
    created: bool = False,
) -> List[Effect]:
    """Effets d'un changement de statut persisté (création ou mise à jour).

    Every save of an APPROVED request approves its seasons and dispatches,
    even when the status did not change. Only the notification is skipped
    for an update to the status already held.
    """
    effects = [Effect(EffectKind.RECOMPUTE_MEDIA)]

    if new_status == MediaRequestStatus.APPROVED and media_type == MediaType.TV:
        effects.append(Effect(EffectKind.APPROVE_SEASONS))

    notification = None
    if created:
        if new_status == MediaRequestStatus.PENDING:
            notification = Notification.MEDIA_PENDING
        elif new_status == MediaRequestStatus.APPROVED:
            notification = Notification.MEDIA_AUTO_APPROVED
    elif previous_status != new_status:
        if new_status == MediaRequestStatus.APPROVED:
            notification = Notification.MEDIA_APPROVED
        elif new_status == MediaRequestStatus.DECLINED:
            notification = Notification.MEDIA_DECLINED
    if notification is not None:
        effects.append(Effect(EffectKind.NOTIFY, notification))

    if new_status == MediaRequestStatus.APPROVED:
        effects.append(Effect(EffectKind.DISPATCH))
    return effects


def plan_retry(media_type: MediaType, status: MediaRequestStatus) -> List[Effect]:
    """Relance manuelle : recalcul + envoi, sans nouvelle notification."""
    return [
        effect for effect in plan_transition(media_type, status, created=True)
        if effect.kind != EffectKind.NOTIFY
    ]


# Approval/decline notifications are suppressed once the variant is available.
GUARDED_NOTIFICATIONS = frozenset({
    Notification.MEDIA_APPROVED,
    Notification.MEDIA_AUTO_APPROVED,
    Notification.MEDIA_DECLINED,
})


class RequestLifecycle:
    """Orchestrateur central des demandes."""

    def __init__(
        self,
        dispatchers: Dict[MediaType, DispatchEngine],
        notifier: NotificationManager,
        metadata: Any,
    ):
        self.dispatchers = dispatchers
        self.notifier = notifier
        self.metadata = metadata

    # -- operations ------------------------------------------------------

    async def create_request(
        self,
        db: Session,
        actor: User,
        media_type: MediaType,
        tmdb_id: int,
        is4k: bool = False,
        seasons: Optional[Iterable[int]] = None,
        tvdb_id: Optional[int] = None,
        server_id: Optional[int] = None,
        profile_id: Optional[int] = None,
        root_folder: Optional[str] = None,
        language_profile_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[MediaRequest, TransitionResult]:
        """Crée une demande ; retourne (MediaRequest, TransitionResult).

        Raises ``NoSeasonsAvailable`` when every requested season is already
        claimed by a sibling request, and ``RequestError`` on invalid input.
        """
        media_type = MediaType(media_type)
        requested_seasons = list(seasons or [])
        if media_type == MediaType.TV and not requested_seasons:
            raise RequestError("TV requests require at least one season", status_code=400)

        request_user = self._resolve_request_user(
            db, actor, actor, user_id,
            Permission.MANAGE_USERS, Permission.MANAGE_REQUESTS,
            any_of=True,
        )

        details = await self._fetch_details(media_type, tmdb_id)
        media = repository.find_media(db, tmdb_id, media_type.value)
        if media is None:
            media = Media(
                tmdb_id=details.get("id") or tmdb_id,
                tvdb_id=tvdb_id or (details.get("external_ids") or {}).get("tvdb_id"),
                media_type=media_type.value,
                status=int(MediaStatus.UNKNOWN),
                status4k=int(MediaStatus.UNKNOWN),
            )

        auto_approved = can_auto_approve(actor.permissions, media_type, is4k)
        status = MediaRequestStatus.APPROVED if auto_approved else MediaRequestStatus.PENDING

        season_rows = []
        if media_type == MediaType.MOVIE:
            if media.id is not None and repository.find_user_request(db, media.id, request_user.id, is4k):
                logger.warning("duplicate_request_blocked", tmdb_id=tmdb_id, media_type=media_type.value)
                raise RequestError(
                    "Request for this media already exists.",
                    status_code=409,
                    code="duplicate_request",
                )
        else:
            siblings = repository.list_media_requests(db, media.id) if media.id is not None else []
            season_rows = seasons_for_new_request(requested_seasons, siblings, is4k, status)

        media_status.mark_requested(media, Variant.of(is4k))
        db.add(media)
        db.flush()

        request = MediaRequest(
            type=media_type.value,
            media_id=media.id,
            requested_by_id=request_user.id,
            modified_by_id=actor.id if auto_approved else None,
            status=int(status),
            is4k=is4k,
            server_id=server_id,
            profile_id=profile_id,
            root_folder=root_folder,
            language_profile_id=language_profile_id if media_type == MediaType.TV else None,
        )
        request.seasons.extend(season_rows)
        db.add(request)
        db.commit()
        logger.info(
            "request_created",
            request_id=request.id,
            media_id=media.id,
            media_type=media_type.value,
            is4k=is4k,
            status=status.name,
            seasons=request.season_numbers,
        )

        result = await self._apply(db, request, plan_transition(media_type, status, created=True), details)
        return request, result

    async def set_status(
        self,
        db: Session,
        request: MediaRequest,
        new_status: MediaRequestStatus,
        actor: User,
    ) -> TransitionResult:
        """Changement de statut administratif (pending/approve/decline)."""
        previous = MediaRequestStatus(request.status)
        new_status = MediaRequestStatus(new_status)
        request.status = int(new_status)
        request.modified_by_id = actor.id
        db.commit()
        logger.info(
            "request_status_changed",
            request_id=request.id,
            previous=previous.name,
            status=new_status.name,
            modified_by=actor.id,
        )
        effects = plan_transition(request.media_type, new_status, previous_status=previous)
        return await self._apply(db, request, effects)

    async def retry(self, db: Session, request: MediaRequest) -> TransitionResult:
        """Rejoue la chaîne d'effets (sans notification) puis l'envoi au backend."""
        logger.info("request_retry", request_id=request.id)
        effects = plan_retry(request.media_type, MediaRequestStatus(request.status))
        return await self._apply(db, request, effects)

    def edit_request(
        self,
        db: Session,
        request: MediaRequest,
        actor: User,
        server_id: Optional[int] = None,
        profile_id: Optional[int] = None,
        root_folder: Optional[str] = None,
        language_profile_id: Optional[int] = None,
        seasons: Optional[Iterable[int]] = None,
        user_id: Optional[int] = None,
    ) -> MediaRequest:
        """Modifie les overrides et, pour une série, la liste des saisons.

        Edits never auto-approve and never trigger dispatch. Seasons added to
        an approved request stay PENDING until the request is approved again.
        """
        request_user = self._resolve_request_user(
            db, actor, request.requested_by, user_id,
            Permission.MANAGE_USERS, Permission.MANAGE_REQUESTS,
            any_of=False,
        )

        dropped, added = [], []
        if request.media_type == MediaType.TV:
            requested_seasons = list(seasons or [])
            if not requested_seasons:
                raise RequestError(
                    "Missing seasons. If you want to cancel a tv request, use the DELETE method.",
                    status_code=400,
                )
            siblings = repository.list_media_requests(db, request.media_id, exclude_request_id=request.id)
            _, dropped, added = merge_edited_seasons(request, requested_seasons, siblings)

        request.server_id = server_id
        request.profile_id = profile_id
        request.root_folder = root_folder
        request.requested_by_id = request_user.id
        if request.media_type == MediaType.TV:
            request.language_profile_id = language_profile_id
            for season in dropped:
                repository.delete_season(db, request, season)
            if added:
                logger.debug("request_seasons_added", request_id=request.id, seasons=added)
                request.seasons.extend(build_season_requests(added, MediaRequestStatus.PENDING))

        db.commit()
        logger.info("request_edited", request_id=request.id, seasons=request.season_numbers)
        return request

    def delete_request(self, db: Session, request: MediaRequest, actor: User) -> None:
        """Supprime une demande puis recalcule le média avec les demandes restantes."""
        is_owner_pending = (
            request.requested_by_id == actor.id
            and request.status == MediaRequestStatus.PENDING
        )
        if not has_permission(actor.permissions, Permission.MANAGE_REQUESTS) and not is_owner_pending:
            raise RequestError(
                "You do not have permission to remove this request",
                status_code=403,
            )

        request_id, media_id = request.id, request.media_id
        repository.delete_request(db, request)
        db.commit()
        logger.info("request_deleted", request_id=request_id, media_id=media_id)

        media = self._load_parent_media(db, media_id, request_id)
        if media is None:
            return
        remaining = repository.list_media_requests(db, media_id)
        if media_status.resolve_on_removal(media, remaining):
            db.commit()

    # -- effects ---------------------------------------------------------

    async def _apply(
        self,
        db: Session,
        request: MediaRequest,
        effects: List[Effect],
        details: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        result = TransitionResult(request_id=request.id, effects=effects)
        media = self._load_parent_media(db, request.media_id, request.id)
        if media is None:
            result.aborted = True
            return result

        kinds = [effect.kind for effect in effects]
        if EffectKind.RECOMPUTE_MEDIA in kinds:
            variant_requests = repository.list_media_requests(db, media.id, is4k=bool(request.is4k))
            result.media_changed = media_status.resolve_on_transition(media, request, variant_requests)
        if EffectKind.APPROVE_SEASONS in kinds:
            approve_all(request.seasons)
        db.commit()

        for effect in effects:
            if effect.kind == EffectKind.NOTIFY:
                result.notified = await self._notify(media, request, effect.notification, details)
            elif effect.kind == EffectKind.DISPATCH:
                engine = self.dispatchers.get(request.media_type)
                if engine is None:
                    logger.info("dispatch_skipped_no_engine", media_type=request.media_type.value)
                    continue
                try:
                    result.dispatch_task = await engine.dispatch(db, request)
                except DispatchError as e:
                    result.dispatch_error = e
        return result

    def _load_parent_media(self, db: Session, media_id: int, request_id: int) -> Optional[Media]:
        try:
            media = repository.get_media(db, media_id, fresh=True)
        except Exception as e:
            logger.exception("parent_media_load_failed", request_id=request_id, media_id=media_id, error=str(e))
            return None
        if media is None:
            logger.error("no_parent_media", request_id=request_id, media_id=media_id)
        return media

    async def _notify(
        self,
        media: Media,
        request: MediaRequest,
        kind: Notification,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        if kind in GUARDED_NOTIFICATIONS and media.get_status(request.variant) == MediaStatus.AVAILABLE:
            logger.warning(
                "notification_skipped_media_available",
                request_id=request.id,
                kind=kind.value,
            )
            return None

        try:
            if details is None:
                details = await self._fetch_details(request.media_type, media.tmdb_id)
        except RequestError as e:
            logger.warning("notification_details_unavailable", request_id=request.id, error=e.message)
            details = {}

        extra = []
        if request.media_type == MediaType.TV:
            extra.append({"name": "Seasons", "value": ", ".join(str(s) for s in request.season_numbers)})
        self.notifier.send_notification(
            kind,
            NotificationPayload(
                subject=details.get("title") or details.get("name") or f"TMDB {media.tmdb_id}",
                message=details.get("overview"),
                image=poster_url(details.get("poster_path")),
                notify_user_id=request.requested_by_id,
                media_id=media.id,
                request_id=request.id,
                extra=extra,
            ),
        )
        return kind

    # -- helpers ---------------------------------------------------------

    async def _fetch_details(self, media_type: MediaType, tmdb_id: int) -> Dict[str, Any]:
        try:
            if media_type == MediaType.MOVIE:
                return await self.metadata.get_movie(tmdb_id)
            return await self.metadata.get_tv_show(tmdb_id)
        except Exception as e:
            logger.error("metadata_lookup_failed", media_type=media_type.value, tmdb_id=tmdb_id, error=str(e))
            raise RequestError(f"Unable to retrieve media details: {e}", status_code=500, code="metadata_unavailable") from e

    def _resolve_request_user(
        self,
        db: Session,
        actor: User,
        current: User,
        user_id: Optional[int],
        *required: Permission,
        any_of: bool,
    ) -> User:
        """Utilisateur pour lequel la demande est faite ; `current` si inchangé."""
        if not user_id or user_id == current.id:
            return current
        if not has_permission(actor.permissions, *required, any_of=any_of):
            raise RequestError(
                "You do not have permission to modify the request user.",
                status_code=403,
            )
        user = repository.get_user(db, user_id)
        if user is None:
            raise RequestError("User not found", status_code=404)
        return user
