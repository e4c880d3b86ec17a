"""Suivi des sous-demandes par saison et déduplication entre demandes sœurs."""
from typing import Iterable, List, Optional, Tuple

from request_manager.core.models import MediaRequestStatus
from request_manager.db.models import MediaRequest, SeasonRequest


class NoSeasonsAvailable(Exception):
    """Every requested season is already claimed: nothing to do.

    This is a no-op signal, not a failure. Routes answer 202 with it.
    """

    def __init__(self, message: str = "No seasons available to request"):
        super().__init__(message)
        self.message = message


def claimed_seasons(
    siblings: Iterable[MediaRequest],
    is4k: bool,
    exclude_request_id: Optional[int] = None,
) -> set:
    """Union des saisons déjà réclamées par les demandes non refusées du même variant."""
    claimed = set()
    for request in siblings:
        if bool(request.is4k) != bool(is4k):
            continue
        if exclude_request_id is not None and request.id == exclude_request_id:
            continue
        if request.status == MediaRequestStatus.DECLINED:
            continue
        claimed.update(season.season_number for season in request.seasons)
    return claimed


def effective_seasons(requested: Iterable[int], claimed: set) -> List[int]:
    """Requested seasons minus claimed ones, in request order, without duplicates."""
    result: List[int] = []
    for season_number in requested:
        season_number = int(season_number)
        if season_number in claimed or season_number in result:
            continue
        result.append(season_number)
    return result


def build_season_requests(season_numbers: Iterable[int], status: MediaRequestStatus) -> List[SeasonRequest]:
    return [
        SeasonRequest(season_number=season_number, status=int(status))
        for season_number in season_numbers
    ]


def seasons_for_new_request(
    requested: Iterable[int],
    siblings: Iterable[MediaRequest],
    is4k: bool,
    status: MediaRequestStatus,
) -> List[SeasonRequest]:
    """Construit les saisons d'une nouvelle demande TV (lève NoSeasonsAvailable si vide)."""
    final = effective_seasons(requested, claimed_seasons(siblings, is4k))
    if not final:
        raise NoSeasonsAvailable()
    return build_season_requests(final, status)


def merge_edited_seasons(
    request: MediaRequest,
    requested: Iterable[int],
    siblings: Iterable[MediaRequest],
) -> Tuple[List[SeasonRequest], List[SeasonRequest], List[int]]:
    """Compute the edit of a TV request's season list.

    Returns ``(kept, dropped, added_numbers)``. Kept seasons keep their
    status; added seasons must be created PENDING by the caller.
    """
    final = effective_seasons(
        requested,
        claimed_seasons(siblings, bool(request.is4k), exclude_request_id=request.id),
    )
    if not final:
        raise NoSeasonsAvailable()

    current = {season.season_number: season for season in request.seasons}
    kept = [season for number, season in current.items() if number in final]
    dropped = [season for number, season in current.items() if number not in final]
    added = [number for number in final if number not in current]
    return kept, dropped, added


def approve_all(seasons: Iterable[SeasonRequest]) -> int:
    """Force chaque saison à APPROVED ; retourne le nombre de saisons modifiées."""
    changed = 0
    for season in seasons:
        if season.status != MediaRequestStatus.APPROVED:
            season.status = int(MediaRequestStatus.APPROVED)
            changed += 1
    return changed
