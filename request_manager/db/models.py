"""SQLAlchemy models for database."""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
from typing import Optional

from request_manager.core.models import MediaRequestStatus, MediaStatus, MediaType, Variant

Base = declarative_base()


class User(Base):
    """Compte utilisateur (le premier id est l'administrateur)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    username = Column(String, nullable=True)
    permissions = Column(Integer, default=0, nullable=False)  # bitmask Permission
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def display_name(self) -> str:
        return self.username or self.email


class Media(Base):
    """Média (film ou série) avec deux pistes de statut : standard et 4K."""
    __tablename__ = "media"
    __table_args__ = (UniqueConstraint("tmdb_id", "media_type", name="uq_media_tmdb_type"),)

    id = Column(Integer, primary_key=True, index=True)
    media_type = Column(String, nullable=False)  # movie, tv
    tmdb_id = Column(Integer, nullable=False, index=True)
    tvdb_id = Column(Integer, nullable=True)
    status = Column(Integer, default=int(MediaStatus.UNKNOWN), nullable=False)
    status4k = Column(Integer, default=int(MediaStatus.UNKNOWN), nullable=False)

    # Liens vers l'instance Radarr/Sonarr qui a pris le média en charge
    service_id = Column(Integer, nullable=True)
    service_id4k = Column(Integer, nullable=True)
    external_service_id = Column(Integer, nullable=True)
    external_service_id4k = Column(Integer, nullable=True)
    external_service_slug = Column(String, nullable=True)
    external_service_slug4k = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def get_status(self, variant: Variant) -> MediaStatus:
        if variant == Variant.FOUR_K:
            return MediaStatus(self.status4k)
        return MediaStatus(self.status)

    def set_status(self, variant: Variant, status: MediaStatus) -> None:
        if variant == Variant.FOUR_K:
            self.status4k = int(status)
        else:
            self.status = int(status)

    def link_service(
        self,
        variant: Variant,
        external_service_id: Optional[int],
        external_service_slug: Optional[str],
        service_id: Optional[int],
    ) -> None:
        """Enregistre l'identifiant retourné par le backend d'acquisition."""
        if variant == Variant.FOUR_K:
            self.external_service_id4k = external_service_id
            self.external_service_slug4k = external_service_slug
            self.service_id4k = service_id
        else:
            self.external_service_id = external_service_id
            self.external_service_slug = external_service_slug
            self.service_id = service_id

    def get_service_link(self, variant: Variant) -> dict:
        if variant == Variant.FOUR_K:
            return {
                "external_service_id": self.external_service_id4k,
                "external_service_slug": self.external_service_slug4k,
                "service_id": self.service_id4k,
            }
        return {
            "external_service_id": self.external_service_id,
            "external_service_slug": self.external_service_slug,
            "service_id": self.service_id,
        }


class MediaRequest(Base):
    """Demande d'acquisition d'un média par un utilisateur."""
    __tablename__ = "media_requests"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(Integer, default=int(MediaRequestStatus.PENDING), nullable=False)
    type = Column(String, nullable=False)  # movie, tv
    is4k = Column(Boolean, default=False, nullable=False)
    media_id = Column(Integer, ForeignKey("media.id"), nullable=False, index=True)
    requested_by_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    modified_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Overrides par requête
    server_id = Column(Integer, nullable=True)
    profile_id = Column(Integer, nullable=True)
    root_folder = Column(String, nullable=True)
    language_profile_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    media = relationship("Media")
    requested_by = relationship("User", foreign_keys=[requested_by_id])
    modified_by = relationship("User", foreign_keys=[modified_by_id])
    seasons = relationship("SeasonRequest", back_populates="request", order_by="SeasonRequest.id")

    @property
    def variant(self) -> Variant:
        return Variant.of(bool(self.is4k))

    @property
    def media_type(self) -> MediaType:
        return MediaType(self.type)

    @property
    def season_numbers(self) -> list:
        return [season.season_number for season in self.seasons]


class SeasonRequest(Base):
    """Statut d'approbation d'une saison au sein d'une demande TV."""
    __tablename__ = "season_requests"
    __table_args__ = (UniqueConstraint("request_id", "season_number", name="uq_season_request"),)

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("media_requests.id"), nullable=False, index=True)
    season_number = Column(Integer, nullable=False)
    status = Column(Integer, default=int(MediaRequestStatus.PENDING), nullable=False)

    # Relationships
    request = relationship("MediaRequest", back_populates="seasons")
