"""Radarr API client."""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import structlog

from request_manager.config import RadarrServerConfig
from request_manager.services.base import ArrService
from request_manager.utils.http_client import RobustHTTPClient

logger = structlog.get_logger(__name__)


@dataclass
class MovieAddOptions:
    title: str
    tmdb_id: int
    year: Optional[int]
    quality_profile_id: int
    root_folder_path: str
    minimum_availability: str = "released"
    monitored: bool = True
    search_now: bool = True
    tags: List[int] = field(default_factory=list)


class RadarrService(ArrService):
    """Service pour interagir avec Radarr."""

    service_label = "radarr"

    def __init__(self, server: RadarrServerConfig, http_client: Optional[RobustHTTPClient] = None):
        super().__init__(server, http_client)

    async def get_movies(self) -> List[Dict[str, Any]]:
        """Récupère tous les films depuis Radarr."""
        return await self._get("/movie")

    async def get_movie_by_tmdb_id(self, tmdb_id: int) -> Dict[str, Any]:
        """Recherche un film par identifiant TMDB (id présent s'il est déjà géré)."""
        results = await self._get("/movie/lookup", params={"term": f"tmdb:{tmdb_id}"})
        if not results:
            raise ValueError(f"Movie not found in Radarr lookup: tmdb:{tmdb_id}")
        return results[0]

    async def add_movie(self, options: MovieAddOptions) -> Dict[str, Any]:
        """Ajoute un film (ou réactive un film déjà présent) et retourne {id, titleSlug, ...}."""
        movie = await self.get_movie_by_tmdb_id(options.tmdb_id)

        if movie.get("id"):
            if movie.get("monitored"):
                logger.info(
                    "radarr_movie_already_monitored",
                    server=self.server.name,
                    title=options.title,
                    radarr_id=movie["id"],
                )
                return movie

            # Déjà présent mais non surveillé : on le réactive
            movie["monitored"] = True
            movie["addOptions"] = {"searchForMovie": options.search_now}
            updated = await self._put(f"/movie/{movie['id']}", movie)
            logger.info(
                "radarr_movie_remonitored",
                server=self.server.name,
                title=options.title,
                radarr_id=updated.get("id"),
            )
            return updated

        payload = {
            "title": options.title,
            "qualityProfileId": options.quality_profile_id,
            "profileId": options.quality_profile_id,
            "titleSlug": movie.get("titleSlug") or str(options.tmdb_id),
            "minimumAvailability": options.minimum_availability,
            "tmdbId": options.tmdb_id,
            "year": options.year,
            "rootFolderPath": options.root_folder_path,
            "monitored": options.monitored,
            "tags": options.tags,
            "images": movie.get("images", []),
            "addOptions": {"searchForMovie": options.search_now},
        }
        created = await self._post("/movie", payload)
        if not created.get("id"):
            raise ValueError(f"Radarr did not return an id for {options.title}")
        logger.info(
            "radarr_movie_added",
            server=self.server.name,
            title=options.title,
            radarr_id=created["id"],
        )
        return created
