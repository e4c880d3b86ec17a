"""TMDB API client (metadata provider)."""
from typing import Dict, Any, List, Optional

from request_manager.config import TmdbConfig
from request_manager.utils.http_client import RobustHTTPClient, get_http_client

ANIME_KEYWORD_ID = 210024
IMAGE_BASE = "https://image.tmdb.org/t/p/w600_and_h900_bestv2"


def poster_url(poster_path: Optional[str]) -> Optional[str]:
    if not poster_path:
        return None
    return f"{IMAGE_BASE}{poster_path}"


def is_anime(tv_show: Dict[str, Any]) -> bool:
    """Une série est « anime » si TMDB lui associe le mot-clé anime."""
    return any(keyword.get("id") == ANIME_KEYWORD_ID for keyword in tv_show.get("keywords", []))


class TmdbService:
    """Service pour interroger TMDB v3."""

    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, tmdb_config: TmdbConfig, http_client: Optional[RobustHTTPClient] = None):
        self.api_key = tmdb_config.api_key
        self.language = tmdb_config.language
        self.http = http_client or get_http_client()
        # JWT (v4 bearer) vs clé simple (v3 en paramètre)
        self._is_bearer = self.api_key.startswith("eyJ")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        all_params = {"language": self.language, **(params or {})}
        headers = {}
        if self._is_bearer:
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            all_params["api_key"] = self.api_key

        response = await self.http.get_async(
            f"{self.BASE_URL}{path}",
            service_name="tmdb",
            headers=headers,
            params=all_params,
        )
        return response.json()

    async def get_movie(self, movie_id: int) -> Dict[str, Any]:
        """Récupère un film : {id, title, overview, poster_path, release_date}."""
        data = await self._get(f"/movie/{movie_id}")
        return {
            "id": data.get("id"),
            "title": data.get("title", ""),
            "overview": data.get("overview"),
            "poster_path": data.get("poster_path"),
            "release_date": data.get("release_date"),
        }

    async def get_tv_show(self, tv_id: int) -> Dict[str, Any]:
        """Récupère une série avec ids externes et mots-clés."""
        data = await self._get(f"/tv/{tv_id}", {"append_to_response": "external_ids,keywords"})
        keywords: List[Dict[str, Any]] = data.get("keywords", {}).get("results", [])
        return {
            "id": data.get("id"),
            "name": data.get("name", ""),
            "overview": data.get("overview"),
            "poster_path": data.get("poster_path"),
            "external_ids": {"tvdb_id": data.get("external_ids", {}).get("tvdb_id")},
            "keywords": [{"id": k.get("id"), "name": k.get("name")} for k in keywords],
        }
