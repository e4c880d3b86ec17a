"""Garde-fous avant envoi à un backend d'acquisition."""
from typing import Any, Dict, Optional, Tuple

from request_manager.core.models import MediaStatus, Variant
from request_manager.db.models import Media


class DispatchGuard:
    """Vérifie les préconditions d'un envoi (média déjà disponible, id TVDB manquant)."""

    def is_already_available(self, media: Media, variant: Variant) -> Tuple[bool, Optional[str]]:
        """Un titre déjà disponible ne doit jamais être soumis une seconde fois."""
        if media.get_status(variant) == MediaStatus.AVAILABLE:
            return True, "Media already available"
        return False, None

    def resolve_tvdb_id(self, tv_show: Dict[str, Any], media: Media) -> Optional[int]:
        """L'id TVDB vient du fournisseur de métadonnées, sinon du média enregistré."""
        tvdb_id = (tv_show.get("external_ids") or {}).get("tvdb_id")
        return tvdb_id or media.tvdb_id or None
