"""Common plumbing for the *arr acquisition backends (Radarr/Sonarr API v3)."""
from typing import List, Dict, Any, Optional

from request_manager.config import ArrServerConfig
from request_manager.utils.http_client import RobustHTTPClient, get_http_client


class ArrService:
    """Base pour les clients Radarr/Sonarr construits à partir d'une instance configurée."""

    service_label = "arr"

    def __init__(self, server: ArrServerConfig, http_client: Optional[RobustHTTPClient] = None):
        self.server = server
        self.base_url = server.api_url()
        self.api_key = server.api_key
        self.http = http_client or get_http_client()
        self._tag_cache: Dict[int, str] = {}  # Cache pour mapper tag ID -> label

    @property
    def service_name(self) -> str:
        return f"{self.service_label}:{self.server.id}"

    def _get_headers(self) -> Dict[str, str]:
        """Get API headers."""
        return {"X-Api-Key": self.api_key}

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.http.get_async(
            f"{self.base_url}{path}",
            service_name=self.service_name,
            headers=self._get_headers(),
            params=params,
        )
        return response.json()

    async def _post(self, path: str, payload: Any) -> Any:
        response = await self.http.post_async(
            f"{self.base_url}{path}",
            service_name=self.service_name,
            headers=self._get_headers(),
            json=payload,
        )
        return response.json()

    async def _put(self, path: str, payload: Any) -> Any:
        response = await self.http.put_async(
            f"{self.base_url}{path}",
            service_name=self.service_name,
            headers=self._get_headers(),
            json=payload,
        )
        return response.json()

    async def get_profiles(self) -> List[Dict[str, Any]]:
        """Récupère les profils de qualité."""
        return await self._get("/qualityProfile")

    async def get_root_folders(self) -> List[Dict[str, Any]]:
        """Récupère les dossiers racine."""
        return await self._get("/rootfolder")

    async def get_tag_labels(self) -> Dict[int, str]:
        """Récupère les labels des tags."""
        if self._tag_cache:
            return self._tag_cache
        tags = await self._get("/tag")
        self._tag_cache = {tag.get("id"): tag.get("label", "") for tag in tags}
        return self._tag_cache
