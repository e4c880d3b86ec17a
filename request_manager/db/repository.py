"""Explicit repository helpers (loads, reloads, cascades, listing)."""
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, func
from sqlalchemy.orm import Session

from request_manager.core.models import MediaRequestStatus, MediaStatus
from request_manager.db.models import Media, MediaRequest, SeasonRequest, User

ALL_REQUEST_STATUSES = [
    MediaRequestStatus.PENDING,
    MediaRequestStatus.APPROVED,
    MediaRequestStatus.DECLINED,
]
NOT_AVAILABLE_MEDIA_STATUSES = [
    MediaStatus.UNKNOWN,
    MediaStatus.PENDING,
    MediaStatus.PROCESSING,
    MediaStatus.PARTIALLY_AVAILABLE,
]
ALL_MEDIA_STATUSES = NOT_AVAILABLE_MEDIA_STATUSES + [MediaStatus.AVAILABLE]

REQUEST_FILTERS = ("all", "approved", "processing", "available", "pending", "unavailable")
REQUEST_SORTS = ("added", "modified")


def get_request(db: Session, request_id: int) -> Optional[MediaRequest]:
    return db.query(MediaRequest).filter(MediaRequest.id == request_id).first()


def get_media(db: Session, media_id: int, fresh: bool = False) -> Optional[Media]:
    """Charge un média ; fresh=True relit la ligne en écrasant l'état en session."""
    query = db.query(Media)
    if fresh:
        query = query.populate_existing()
    return query.filter(Media.id == media_id).first()


def find_media(db: Session, tmdb_id: int, media_type: str) -> Optional[Media]:
    return db.query(Media).filter(
        Media.tmdb_id == tmdb_id,
        Media.media_type == media_type,
    ).first()


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_admin_user(db: Session) -> Optional[User]:
    """L'administrateur est le compte avec le plus petit id."""
    return db.query(User).order_by(User.id.asc()).first()


def list_media_requests(
    db: Session,
    media_id: int,
    is4k: Optional[bool] = None,
    exclude_request_id: Optional[int] = None,
) -> List[MediaRequest]:
    query = db.query(MediaRequest).filter(MediaRequest.media_id == media_id)
    if is4k is not None:
        query = query.filter(MediaRequest.is4k == is4k)
    if exclude_request_id is not None:
        query = query.filter(MediaRequest.id != exclude_request_id)
    return query.order_by(MediaRequest.id.asc()).all()


def find_user_request(db: Session, media_id: int, requested_by_id: int, is4k: bool) -> Optional[MediaRequest]:
    return db.query(MediaRequest).filter(
        MediaRequest.media_id == media_id,
        MediaRequest.requested_by_id == requested_by_id,
        MediaRequest.is4k == is4k,
    ).first()


def delete_season(db: Session, request: MediaRequest, season: SeasonRequest) -> None:
    if season in request.seasons:
        request.seasons.remove(season)
    db.delete(season)


def delete_request(db: Session, request: MediaRequest) -> None:
    """Supprime une demande et ses saisons (cascade explicite)."""
    for season in list(request.seasons):
        delete_season(db, request, season)
    db.delete(request)
    db.flush()


def delete_media(db: Session, media: Media) -> None:
    """Supprime un média et toutes les demandes qui le ciblent."""
    for request in list_media_requests(db, media.id):
        delete_request(db, request)
    db.delete(media)
    db.flush()


def _variant_status_clause(statuses: List[MediaStatus]):
    values = [int(s) for s in statuses]
    return or_(
        and_(MediaRequest.is4k.is_(False), Media.status.in_(values)),
        and_(MediaRequest.is4k.is_(True), Media.status4k.in_(values)),
    )


def resolve_list_filter(filter_name: str) -> Tuple[List[MediaRequestStatus], List[MediaStatus]]:
    """Traduit un filtre de liste en (statuts de demande, statuts de média)."""
    if filter_name in ("approved", "processing", "available"):
        request_statuses = [MediaRequestStatus.APPROVED]
    elif filter_name == "pending":
        request_statuses = [MediaRequestStatus.PENDING]
    elif filter_name == "unavailable":
        request_statuses = [MediaRequestStatus.PENDING, MediaRequestStatus.APPROVED]
    else:
        request_statuses = list(ALL_REQUEST_STATUSES)

    if filter_name == "available":
        media_statuses = [MediaStatus.AVAILABLE]
    elif filter_name in ("processing", "unavailable"):
        media_statuses = list(NOT_AVAILABLE_MEDIA_STATUSES)
    else:
        media_statuses = list(ALL_MEDIA_STATUSES)

    return request_statuses, media_statuses


def list_requests(
    db: Session,
    filter_name: str = "all",
    sort: str = "added",
    take: int = 10,
    skip: int = 0,
    requested_by_id: Optional[int] = None,
) -> Tuple[List[MediaRequest], int]:
    request_statuses, media_statuses = resolve_list_filter(filter_name)

    query = (
        db.query(MediaRequest)
        .join(Media, MediaRequest.media_id == Media.id)
        .filter(MediaRequest.status.in_([int(s) for s in request_statuses]))
        .filter(_variant_status_clause(media_statuses))
    )
    if requested_by_id is not None:
        query = query.filter(MediaRequest.requested_by_id == requested_by_id)

    total = query.count()
    order_column = MediaRequest.updated_at if sort == "modified" else MediaRequest.id
    rows = query.order_by(order_column.desc()).offset(skip).limit(take).all()
    return rows, total


def count_requests(db: Session) -> dict:
    def _count(*criteria) -> int:
        return (
            db.query(func.count(MediaRequest.id))
            .join(Media, MediaRequest.media_id == Media.id)
            .filter(*criteria)
            .scalar()
        ) or 0

    approved = MediaRequest.status == int(MediaRequestStatus.APPROVED)
    return {
        "pending": _count(MediaRequest.status == int(MediaRequestStatus.PENDING)),
        "approved": _count(approved),
        "processing": _count(approved, _variant_status_clause(NOT_AVAILABLE_MEDIA_STATUSES)),
        "available": _count(approved, _variant_status_clause([MediaStatus.AVAILABLE])),
    }
