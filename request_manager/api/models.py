"""Pydantic models for API requests/responses."""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from request_manager.core.models import MediaType


class CreateRequestBody(BaseModel):
    media_type: MediaType = Field(alias="mediaType")
    media_id: int = Field(alias="mediaId")  # TMDB id
    tvdb_id: Optional[int] = Field(default=None, alias="tvdbId")
    seasons: Optional[List[int]] = None
    is4k: bool = False
    server_id: Optional[int] = Field(default=None, alias="serverId")
    profile_id: Optional[int] = Field(default=None, alias="profileId")
    root_folder: Optional[str] = Field(default=None, alias="rootFolder")
    language_profile_id: Optional[int] = Field(default=None, alias="languageProfileId")
    user_id: Optional[int] = Field(default=None, alias="userId")

    model_config = {"populate_by_name": True}


class EditRequestBody(BaseModel):
    media_type: MediaType = Field(alias="mediaType")
    seasons: Optional[List[int]] = None
    server_id: Optional[int] = Field(default=None, alias="serverId")
    profile_id: Optional[int] = Field(default=None, alias="profileId")
    root_folder: Optional[str] = Field(default=None, alias="rootFolder")
    language_profile_id: Optional[int] = Field(default=None, alias="languageProfileId")
    user_id: Optional[int] = Field(default=None, alias="userId")

    model_config = {"populate_by_name": True}


class SeasonResponse(BaseModel):
    id: int
    season_number: int
    status: int


class MediaResponse(BaseModel):
    id: int
    media_type: str
    tmdb_id: int
    tvdb_id: Optional[int]
    status: int
    status4k: int
    service_id: Optional[int]
    service_id4k: Optional[int]
    external_service_id: Optional[int]
    external_service_id4k: Optional[int]
    external_service_slug: Optional[str]
    external_service_slug4k: Optional[str]


class MediaRequestResponse(BaseModel):
    id: int
    status: int
    type: str
    is4k: bool
    media: MediaResponse
    requested_by_id: int
    modified_by_id: Optional[int]
    server_id: Optional[int]
    profile_id: Optional[int]
    root_folder: Optional[str]
    language_profile_id: Optional[int]
    seasons: List[SeasonResponse]
    created_at: datetime
    updated_at: datetime
    dispatch_error: Optional[Dict[str, Any]] = None


class PageInfo(BaseModel):
    pages: int
    page_size: int
    results: int
    page: int


class RequestListResponse(BaseModel):
    page_info: PageInfo
    results: List[MediaRequestResponse]


class CountResponse(BaseModel):
    pending: int
    approved: int
    processing: int
    available: int


class DiagnosticsResponse(BaseModel):
    tmdb: Dict[str, Any]
    radarr: List[Dict[str, Any]]
    sonarr: List[Dict[str, Any]]
    background_tasks: Dict[str, int]
