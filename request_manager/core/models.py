"""Core business models."""
from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from typing import Optional, List, Dict, Any


class MediaType(str, Enum):
    MOVIE = "movie"
    TV = "tv"


class MediaRequestStatus(IntEnum):
    PENDING = 1
    APPROVED = 2
    DECLINED = 3


class MediaStatus(IntEnum):
    UNKNOWN = 1
    PENDING = 2
    PROCESSING = 3
    PARTIALLY_AVAILABLE = 4
    AVAILABLE = 5


class Variant(str, Enum):
    """Piste de disponibilité indépendante (standard ou 4K) d'un média."""
    STANDARD = "standard"
    FOUR_K = "4k"

    @classmethod
    def of(cls, is4k: bool) -> "Variant":
        return cls.FOUR_K if is4k else cls.STANDARD


class Permission(IntFlag):
    NONE = 0
    ADMIN = 2
    MANAGE_SETTINGS = 4
    MANAGE_USERS = 8
    MANAGE_REQUESTS = 16
    REQUEST = 32
    VOTE = 64
    AUTO_APPROVE = 128
    AUTO_APPROVE_MOVIE = 256
    AUTO_APPROVE_TV = 512
    REQUEST_4K = 1024
    REQUEST_4K_MOVIE = 2048
    REQUEST_4K_TV = 4096
    REQUEST_ADVANCED = 8192
    REQUEST_VIEW = 16384
    AUTO_APPROVE_4K = 32768
    AUTO_APPROVE_4K_MOVIE = 65536
    AUTO_APPROVE_4K_TV = 131072


def has_permission(user_permissions: int, *required: Permission, any_of: bool = True) -> bool:
    """Vérifie les bits de permission (ADMIN possède tout)."""
    granted = Permission(user_permissions or 0)
    if Permission.ADMIN in granted:
        return True
    if any_of:
        return any(perm in granted for perm in required)
    return all(perm in granted for perm in required)


def auto_approve_permissions(media_type: MediaType, is4k: bool) -> List[Permission]:
    """Capabilities that let a request skip PENDING at creation."""
    if media_type == MediaType.MOVIE:
        specific = Permission.AUTO_APPROVE_4K_MOVIE if is4k else Permission.AUTO_APPROVE_MOVIE
    else:
        specific = Permission.AUTO_APPROVE_4K_TV if is4k else Permission.AUTO_APPROVE_TV
    blanket = Permission.AUTO_APPROVE_4K if is4k else Permission.AUTO_APPROVE
    return [blanket, specific, Permission.MANAGE_REQUESTS]


def can_auto_approve(user_permissions: int, media_type: MediaType, is4k: bool) -> bool:
    return has_permission(user_permissions, *auto_approve_permissions(media_type, is4k))


@dataclass
class NotificationPayload:
    """Contenu d'un événement de notification (le formatage est fait par les agents)."""
    subject: str
    notify_user_id: Optional[int] = None
    message: Optional[str] = None
    image: Optional[str] = None
    media_id: Optional[int] = None
    request_id: Optional[int] = None
    extra: List[Dict[str, Any]] = field(default_factory=list)
