"""API routes."""
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from typing import Literal, Optional
import logging
import math

from request_manager.db.database import get_db
from request_manager.db.models import MediaRequest, User
from request_manager.db import repository
from request_manager.api.models import (
    CreateRequestBody, EditRequestBody, MediaRequestResponse, MediaResponse,
    SeasonResponse, RequestListResponse, PageInfo, CountResponse, DiagnosticsResponse
)
from request_manager.core.dispatch import DispatchError
from request_manager.core.executor import get_supervisor
from request_manager.core.lifecycle import RequestError, RequestLifecycle, TransitionResult
from request_manager.core.models import MediaRequestStatus, MediaType, Permission, has_permission
from request_manager.core.seasons import NoSeasonsAvailable
from request_manager.services.radarr import RadarrService
from request_manager.services.sonarr import SonarrService
from request_manager.config import get_config

logger = logging.getLogger(__name__)
router = APIRouter()

STATUS_ACTIONS = {
    "pending": MediaRequestStatus.PENDING,
    "approve": MediaRequestStatus.APPROVED,
    "decline": MediaRequestStatus.DECLINED,
}


def get_current_user(
    x_user_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Résout l'utilisateur authentifié (en-tête X-User-Id posé par le proxy)."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = repository.get_user(db, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def get_lifecycle(request: Request) -> RequestLifecycle:
    return request.app.state.lifecycle


def require_manager(user: User = Depends(get_current_user)) -> User:
    if not has_permission(user.permissions, Permission.MANAGE_REQUESTS):
        raise HTTPException(status_code=403, detail="You do not have permission to manage requests")
    return user


def _error(e: RequestError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"message": e.message, "code": e.code})


def _no_seasons(e: NoSeasonsAvailable) -> JSONResponse:
    return JSONResponse(status_code=202, content={"message": e.message})


def _load_request(db: Session, request_id: int) -> MediaRequest:
    media_request = repository.get_request(db, request_id)
    if media_request is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return media_request


def _check_deleted(result: TransitionResult) -> None:
    """Une série sans id TVDB a été supprimée pendant l'envoi : plus rien à retourner."""
    if result.request_deleted:
        raise HTTPException(
            status_code=409,
            detail={"message": result.dispatch_error.message, "code": result.dispatch_error.code},
        )


def serialize_request(
    media_request: MediaRequest,
    dispatch_error: Optional[DispatchError] = None,
) -> MediaRequestResponse:
    media = media_request.media
    return MediaRequestResponse(
        id=media_request.id,
        status=media_request.status,
        type=media_request.type,
        is4k=bool(media_request.is4k),
        media=MediaResponse(
            id=media.id,
            media_type=media.media_type,
            tmdb_id=media.tmdb_id,
            tvdb_id=media.tvdb_id,
            status=media.status,
            status4k=media.status4k,
            service_id=media.service_id,
            service_id4k=media.service_id4k,
            external_service_id=media.external_service_id,
            external_service_id4k=media.external_service_id4k,
            external_service_slug=media.external_service_slug,
            external_service_slug4k=media.external_service_slug4k,
        ),
        requested_by_id=media_request.requested_by_id,
        modified_by_id=media_request.modified_by_id,
        server_id=media_request.server_id,
        profile_id=media_request.profile_id,
        root_folder=media_request.root_folder,
        language_profile_id=media_request.language_profile_id,
        seasons=[
            SeasonResponse(id=s.id, season_number=s.season_number, status=s.status)
            for s in media_request.seasons
        ],
        created_at=media_request.created_at,
        updated_at=media_request.updated_at,
        dispatch_error={"message": dispatch_error.message, "code": dispatch_error.code} if dispatch_error else None,
    )


@router.get("/api/request", response_model=RequestListResponse)
async def list_requests(
    filter: Literal["all", "approved", "processing", "available", "pending", "unavailable"] = "all",
    sort: Literal["added", "modified"] = "added",
    take: int = Query(default=10, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Liste paginée des demandes."""
    requested_by_id = None
    if not has_permission(user.permissions, Permission.MANAGE_REQUESTS, Permission.REQUEST_VIEW):
        requested_by_id = user.id

    rows, total = repository.list_requests(
        db, filter_name=filter, sort=sort, take=take, skip=skip, requested_by_id=requested_by_id
    )
    return RequestListResponse(
        page_info=PageInfo(
            pages=math.ceil(total / take),
            page_size=take,
            results=total,
            page=skip // take + 1,
        ),
        results=[serialize_request(row) for row in rows],
    )


@router.post("/api/request", response_model=MediaRequestResponse, status_code=201)
async def create_request(
    body: CreateRequestBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Crée une demande (film ou série)."""
    if body.is4k:
        specific = Permission.REQUEST_4K_MOVIE if body.media_type == MediaType.MOVIE else Permission.REQUEST_4K_TV
        allowed = has_permission(user.permissions, Permission.REQUEST_4K, specific)
    else:
        allowed = has_permission(user.permissions, Permission.REQUEST)
    if not allowed:
        raise HTTPException(status_code=403, detail="You do not have permission to make this request")

    try:
        media_request, result = await lifecycle.create_request(
            db,
            user,
            body.media_type,
            body.media_id,
            is4k=body.is4k,
            seasons=body.seasons,
            tvdb_id=body.tvdb_id,
            server_id=body.server_id,
            profile_id=body.profile_id,
            root_folder=body.root_folder,
            language_profile_id=body.language_profile_id,
            user_id=body.user_id,
        )
    except NoSeasonsAvailable as e:
        return _no_seasons(e)
    except RequestError as e:
        raise _error(e)

    _check_deleted(result)
    return serialize_request(media_request, result.dispatch_error)


@router.get("/api/request/count", response_model=CountResponse)
async def count_requests(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Compteurs par catégorie."""
    return CountResponse(**repository.count_requests(db))


@router.get("/api/request/{request_id}", response_model=MediaRequestResponse)
async def get_request(
    request_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Récupère une demande."""
    media_request = _load_request(db, request_id)
    if media_request.requested_by_id != user.id and not has_permission(
        user.permissions, Permission.MANAGE_REQUESTS, Permission.REQUEST_VIEW
    ):
        raise HTTPException(status_code=403, detail="You do not have permission to view this request")
    return serialize_request(media_request)


@router.put("/api/request/{request_id}", response_model=MediaRequestResponse)
async def edit_request(
    request_id: int,
    body: EditRequestBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Modifie les overrides et/ou les saisons d'une demande."""
    media_request = _load_request(db, request_id)
    if media_request.requested_by_id != user.id and not has_permission(user.permissions, Permission.MANAGE_REQUESTS):
        raise HTTPException(status_code=403, detail="You do not have permission to modify this request")

    try:
        media_request = lifecycle.edit_request(
            db,
            media_request,
            user,
            server_id=body.server_id,
            profile_id=body.profile_id,
            root_folder=body.root_folder,
            language_profile_id=body.language_profile_id,
            seasons=body.seasons,
            user_id=body.user_id,
        )
    except NoSeasonsAvailable as e:
        db.rollback()
        return _no_seasons(e)
    except RequestError as e:
        db.rollback()
        raise _error(e)
    return serialize_request(media_request)


@router.delete("/api/request/{request_id}", status_code=204)
async def delete_request(
    request_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Supprime une demande."""
    media_request = _load_request(db, request_id)
    try:
        lifecycle.delete_request(db, media_request, user)
    except RequestError as e:
        raise _error(e)
    return Response(status_code=204)


@router.post("/api/request/{request_id}/retry", response_model=MediaRequestResponse)
async def retry_request(
    request_id: int,
    user: User = Depends(require_manager),
    db: Session = Depends(get_db),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Relance l'envoi d'une demande vers Radarr/Sonarr."""
    media_request = _load_request(db, request_id)
    result = await lifecycle.retry(db, media_request)
    if result.dispatch_error is not None:
        logger.warning(f"Retry of request {request_id} rejected: {result.dispatch_error.message}")
        raise HTTPException(
            status_code=409,
            detail={"message": result.dispatch_error.message, "code": result.dispatch_error.code},
        )
    return serialize_request(media_request)


@router.post("/api/request/{request_id}/{action}", response_model=MediaRequestResponse)
async def update_request_status(
    request_id: int,
    action: Literal["pending", "approve", "decline"],
    user: User = Depends(require_manager),
    db: Session = Depends(get_db),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Change le statut d'une demande (pending/approve/decline)."""
    media_request = _load_request(db, request_id)
    result = await lifecycle.set_status(db, media_request, STATUS_ACTIONS[action], user)
    _check_deleted(result)
    return serialize_request(media_request, result.dispatch_error)


@router.get("/api/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics():
    """Vérifie les connexions aux APIs."""
    config = get_config()
    supervisor = get_supervisor()
    results = {
        "tmdb": {"configured": config.tmdb is not None},
        "radarr": [],
        "sonarr": [],
        "background_tasks": {
            "pending": supervisor.pending,
            "completed": supervisor.completed_count,
            "failed": supervisor.failed_count,
        },
    }

    for key, servers, service_cls in (
        ("radarr", config.radarr, RadarrService),
        ("sonarr", config.sonarr, SonarrService),
    ):
        for server in servers:
            entry = {"id": server.id, "name": server.name, "connected": False, "error": None}
            try:
                await service_cls(server).get_profiles()
                entry["connected"] = True
            except Exception as e:
                logger.warning(f"Diagnostics: {key} server {server.name} unreachable: {e}")
                entry["error"] = str(e)
            results[key].append(entry)

    return DiagnosticsResponse(**results)


@router.get("/api/config")
async def get_config_endpoint():
    """Récupère la configuration actuelle (sans secrets)."""
    config = get_config()
    secret_fields = {"api_key"}
    return {
        "radarr": [server.model_dump(exclude=secret_fields) for server in config.radarr],
        "sonarr": [server.model_dump(exclude=secret_fields) for server in config.sonarr],
        "tmdb": {"language": config.tmdb.language} if config.tmdb else None,
        "notifications": {
            "log_enabled": config.notifications.log_enabled,
            "webhook": bool(config.notifications.webhook),
        },
        "app": config.app.model_dump(exclude={"database_url"}),
    }
