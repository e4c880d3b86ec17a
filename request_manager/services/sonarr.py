"""Sonarr API client."""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import structlog

from request_manager.config import SonarrServerConfig
from request_manager.services.base import ArrService
from request_manager.utils.http_client import RobustHTTPClient

logger = structlog.get_logger(__name__)


@dataclass
class SeriesAddOptions:
    title: str
    tvdb_id: int
    quality_profile_id: int
    root_folder_path: str
    seasons: List[int]
    language_profile_id: Optional[int] = None
    season_folder: bool = True
    series_type: str = "standard"  # standard|anime
    monitored: bool = True
    search_now: bool = True
    tags: List[int] = field(default_factory=list)


def build_season_list(seasons: List[int], existing: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """Liste de saisons Sonarr : les saisons demandées sont surveillées, les autres conservées."""
    if existing:
        return [
            {
                **season,
                "monitored": bool(season.get("monitored")) or season.get("seasonNumber") in seasons,
            }
            for season in existing
        ]
    return [{"seasonNumber": number, "monitored": True} for number in seasons]


class SonarrService(ArrService):
    """Service pour interagir avec Sonarr."""

    service_label = "sonarr"

    def __init__(self, server: SonarrServerConfig, http_client: Optional[RobustHTTPClient] = None):
        super().__init__(server, http_client)

    async def get_series(self) -> List[Dict[str, Any]]:
        """Récupère toutes les séries depuis Sonarr."""
        return await self._get("/series")

    async def get_language_profiles(self) -> List[Dict[str, Any]]:
        return await self._get("/languageprofile")

    async def get_series_by_tvdb_id(self, tvdb_id: int) -> Dict[str, Any]:
        """Recherche une série par identifiant TVDB (id présent si déjà gérée)."""
        results = await self._get("/series/lookup", params={"term": f"tvdb:{tvdb_id}"})
        if not results:
            raise ValueError(f"Series not found in Sonarr lookup: tvdb:{tvdb_id}")
        return results[0]

    async def search_series(self, series_id: int) -> None:
        await self._post("/command", {"name": "SeriesSearch", "seriesId": series_id})

    async def add_series(self, options: SeriesAddOptions) -> Dict[str, Any]:
        """Ajoute une série ou met à jour les saisons surveillées d'une série existante."""
        series = await self.get_series_by_tvdb_id(options.tvdb_id)

        if series.get("id"):
            series["monitored"] = True
            series["seasons"] = build_season_list(options.seasons, series.get("seasons"))
            updated = await self._put("/series", series)
            if options.search_now:
                await self.search_series(updated["id"])
            logger.info(
                "sonarr_series_updated",
                server=self.server.name,
                title=options.title,
                sonarr_id=updated.get("id"),
                seasons=options.seasons,
            )
            return updated

        payload = {
            "tvdbId": options.tvdb_id,
            "title": options.title,
            "qualityProfileId": options.quality_profile_id,
            "languageProfileId": options.language_profile_id,
            "seasons": build_season_list(options.seasons),
            "seasonFolder": options.season_folder,
            "monitored": options.monitored,
            "rootFolderPath": options.root_folder_path,
            "seriesType": options.series_type,
            "tags": options.tags,
            "images": series.get("images", []),
            "addOptions": {
                "ignoreEpisodesWithFiles": True,
                "searchForMissingEpisodes": options.search_now,
            },
        }
        created = await self._post("/series", payload)
        if not created.get("id"):
            raise ValueError(f"Sonarr did not return an id for {options.title}")
        logger.info(
            "sonarr_series_added",
            server=self.server.name,
            title=options.title,
            sonarr_id=created["id"],
            seasons=options.seasons,
        )
        return created
