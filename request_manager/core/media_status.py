"""Media aggregate status resolution, per variant."""
from typing import Iterable, List

import structlog

from request_manager.core.models import MediaRequestStatus, MediaStatus, MediaType, Variant
from request_manager.db.models import Media, MediaRequest

logger = structlog.get_logger(__name__)

# Written only by the external availability observer, never by request logic.
EXTERNALLY_DRIVEN = (MediaStatus.AVAILABLE, MediaStatus.PARTIALLY_AVAILABLE)


def _set(media: Media, variant: Variant, status: MediaStatus, reason: str) -> bool:
    current = media.get_status(variant)
    if current == status:
        return False
    media.set_status(variant, status)
    logger.info(
        "media_status_changed",
        media_id=media.id,
        variant=variant.value,
        previous=current.name,
        status=status.name,
        reason=reason,
    )
    return True


def mark_requested(media: Media, variant: Variant) -> bool:
    """Une nouvelle demande fait passer un variant UNKNOWN à PENDING."""
    if media.get_status(variant) == MediaStatus.UNKNOWN:
        return _set(media, variant, MediaStatus.PENDING, "requested")
    return False


def resolve_on_transition(
    media: Media,
    request: MediaRequest,
    variant_requests: Iterable[MediaRequest],
) -> bool:
    """Apply the transition rules for ``request`` to ``media``.

    ``variant_requests`` are all requests against ``media`` whose 4K flag
    matches ``request`` (including it, with its new status). Returns True
    when the media row changed.
    """
    variant = request.variant
    status = MediaRequestStatus(request.status)
    current = media.get_status(variant)
    changed = False

    if status == MediaRequestStatus.APPROVED and current not in EXTERNALLY_DRIVEN:
        changed |= _set(media, variant, MediaStatus.PROCESSING, "request_approved")

    if status == MediaRequestStatus.DECLINED:
        if request.media_type == MediaType.MOVIE:
            changed |= _set(media, variant, MediaStatus.UNKNOWN, "movie_request_declined")
        else:
            still_pending = [
                r for r in variant_requests
                if bool(r.is4k) == bool(request.is4k) and r.status == MediaRequestStatus.PENDING
            ]
            if not still_pending and current == MediaStatus.PENDING:
                changed |= _set(media, variant, MediaStatus.UNKNOWN, "last_pending_tv_request_declined")

    return changed


def resolve_on_removal(media: Media, remaining: List[MediaRequest]) -> bool:
    """Après suppression : un variant sans demande restante repasse à UNKNOWN (sauf AVAILABLE)."""
    changed = False
    for variant in (Variant.STANDARD, Variant.FOUR_K):
        has_request = any(r.variant == variant for r in remaining)
        if not has_request and media.get_status(variant) != MediaStatus.AVAILABLE:
            changed |= _set(media, variant, MediaStatus.UNKNOWN, "last_request_removed")
    return changed
