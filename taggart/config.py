import json
import os
import threading
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

DEFAULT_CONFIG_PATH = "config.json"
ENV_CONFIG_PATH = "TAGGART_CONFIG"
THUMBNAIL_DIRNAME = "thumbnails"


class TagAliasGroup(BaseModel):
    """A set of values within one category that filter as equivalents."""
    model_config = ConfigDict(frozen=True)

    category: str
    aliases: Tuple[str, ...] = ()


class Settings(BaseModel):
    """
    An immutable snapshot of the instance configuration. A reload produces a
    new snapshot; callers holding an old one keep a consistent view.
    """
    model_config = ConfigDict(frozen=True)

    database_path: str = "./database.db"
    upload_dir: str = "uploads"
    server_port: int = 8080
    instance_name: str = "Taggart"
    gallery_size: str = "400px"
    items_per_page: int = 100
    # Seconds allowed for ffprobe/ffmpeg; None waits indefinitely.
    media_timeout: Optional[float] = None
    tag_aliases: Tuple[TagAliasGroup, ...] = Field(default_factory=tuple)

    @property
    def upload_root(self) -> str:
        return os.path.abspath(self.upload_dir)

    @property
    def thumbnail_dir(self) -> str:
        return os.path.join(self.upload_root, THUMBNAIL_DIRNAME)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{os.path.abspath(self.database_path)}"

    def storage_path(self, filename: str) -> str:
        """Where the primary content for `filename` lives."""
        return os.path.join(self.upload_root, filename)

    def thumbnail_path(self, filename: str) -> str:
        """Thumbnails are keyed by the full filename: `thumbnails/<filename>.jpg`."""
        return os.path.join(self.thumbnail_dir, f"{filename}.jpg")


def validate_settings(settings: Settings) -> None:
    """Rejects settings that would leave the instance unusable."""
    if not settings.database_path.strip():
        raise ValidationError("database path cannot be empty")
    if not settings.upload_dir.strip():
        raise ValidationError("upload directory cannot be empty")
    if not 0 < settings.server_port < 65536:
        raise ValidationError(f"server port must be between 1 and 65535, got {settings.server_port}")
    if settings.items_per_page < 1:
        raise ValidationError(f"items per page must be at least 1, got {settings.items_per_page}")
    try:
        os.makedirs(settings.upload_dir, exist_ok=True)
    except OSError as e:
        raise ValidationError(f"cannot create upload directory '{settings.upload_dir}': {e}") from e


class ConfigStore:
    """
    Owns the on-disk config file and the current Settings snapshot. The
    snapshot is only replaced through load/reload/save, never mutated.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH
        self._lock = threading.Lock()
        self._settings = Settings()

    @property
    def current(self) -> Settings:
        return self._settings

    def load(self) -> Settings:
        """Reads the config file if present; a missing file means defaults."""
        settings = Settings()
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    settings = Settings.model_validate(json.load(f))
            except (json.JSONDecodeError, PydanticValidationError) as e:
                raise ValidationError(f"invalid config file '{self.path}': {e}") from e
        os.makedirs(settings.upload_dir, exist_ok=True)
        with self._lock:
            self._settings = settings
        return settings

    reload = load

    def save(self, settings: Settings) -> bool:
        """
        Validates and persists new settings. Returns True when the change
        only takes effect after a restart (database path or port changed).
        """
        validate_settings(settings)
        with self._lock:
            previous = self._settings
            self._write(settings)
            self._settings = settings
        return (settings.database_path != previous.database_path
                or settings.server_port != previous.server_port)

    def save_aliases(self, groups: List[TagAliasGroup]) -> Settings:
        with self._lock:
            updated = self._settings.model_copy(update={"tag_aliases": tuple(groups)})
            self._write(updated)
            self._settings = updated
        return updated

    def _write(self, settings: Settings) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(settings.model_dump(mode="json"), f, indent=2)
        os.replace(tmp_path, self.path)
