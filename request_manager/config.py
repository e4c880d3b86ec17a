"""Configuration management with YAML and environment variables."""
import os
from pathlib import Path
from typing import Optional, List, Dict, Any
import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ArrServerConfig(BaseModel):
    """Champs communs à une instance Radarr/Sonarr."""
    id: int
    name: str
    url: str
    api_key: str
    is_default: bool = False
    is_4k: bool = False
    active_profile_id: int
    active_directory: str
    prevent_search: bool = False
    tags: List[int] = Field(default_factory=list)

    def api_url(self) -> str:
        return f"{self.url.rstrip('/')}/api/v3"


class RadarrServerConfig(ArrServerConfig):
    minimum_availability: str = "released"  # announced|inCinemas|released


class SonarrServerConfig(ArrServerConfig):
    active_language_profile_id: Optional[int] = None
    active_anime_profile_id: Optional[int] = None
    active_anime_directory: Optional[str] = None
    active_anime_language_profile_id: Optional[int] = None
    enable_season_folders: bool = True


class TmdbConfig(BaseModel):
    api_key: str
    language: str = "en-US"


class WebhookConfig(BaseModel):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class NotificationsConfig(BaseModel):
    log_enabled: bool = True
    webhook: Optional[WebhookConfig] = None


class AppConfig(BaseModel):
    data_dir: str = "/data"
    database_url: Optional[str] = None  # Par défaut sqlite dans data_dir
    log_level: str = "INFO"


class Config(BaseSettings):
    radarr: List[RadarrServerConfig] = Field(default_factory=list)
    sonarr: List[SonarrServerConfig] = Field(default_factory=list)
    tmdb: Optional[TmdbConfig] = None
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__")

    @classmethod
    def load_from_yaml(cls, yaml_path: str) -> "Config":
        """Load configuration from YAML file, override with env vars."""
        config_path = Path(yaml_path)
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {yaml_path}\n"
                f"Please create config/config.yaml from config.example.yaml\n"
                f"Make sure the volume is mounted: -v ./config:/config:ro"
            )

        with open(config_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

        return cls(**apply_env_overrides(yaml_data))


def apply_env_overrides(yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """Override scalar keys of mapping sections with SECTION__KEY env vars."""
    env_overrides: Dict[str, Dict[str, str]] = {}
    for key in ["tmdb", "notifications", "app"]:
        section = yaml_data.get(key)
        if not isinstance(section, dict):
            continue
        for subkey in section:
            env_key = f"{key.upper()}__{subkey.upper()}"
            env_value = os.getenv(env_key)
            if env_value:
                env_overrides.setdefault(key, {})[subkey] = env_value

    for key, value in env_overrides.items():
        yaml_data[key].update(value)

    return yaml_data


# Global config instance (will be initialized in main.py)
config: Optional[Config] = None


def get_config() -> Config:
    """Get the global config instance."""
    if config is None:
        raise RuntimeError("Config not initialized. Call init_config() first.")
    return config


def set_config(new_config: Config) -> Config:
    """Replace the global config instance."""
    global config
    config = new_config
    return config


def init_config(config_path: str = "/config/config.yaml") -> Config:
    """Initialize global config from YAML file."""
    return set_config(Config.load_from_yaml(config_path))
