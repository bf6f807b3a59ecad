"""
Read-only drift checks between the upload directory and the catalog, plus
database housekeeping used from the admin API and the CLI scripts.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import catalog
from .config import Settings
from .database import File
from .errors import NotFoundError, StorageError, ValidationError
from .media import ThumbnailRenderer, is_comic, is_video

logger = logging.getLogger(__name__)


# --- Orphans ---

def files_on_disk(upload_dir: str) -> List[str]:
    """Names of regular files directly under `upload_dir`."""
    with os.scandir(upload_dir) as entries:
        return sorted(entry.name for entry in entries if entry.is_file())


def list_orphans(db: Session, upload_dir: str) -> List[str]:
    """Files present on disk that no catalog row refers to. Scans fresh on every call."""
    on_disk = files_on_disk(upload_dir)
    known = catalog.all_filenames(db)
    return [name for name in on_disk if name not in known]


# --- Thumbnails ---

@dataclass(frozen=True)
class VideoFile:
    id: int
    filename: str
    path: str
    has_thumbnail: bool
    thumbnail_url: str


def list_videos(db: Session, settings: Settings, include_comics: bool = False) -> List[VideoFile]:
    """Catalogued videos (and optionally comic archives), newest first, with thumbnail status."""
    videos = []
    for row in db.execute(select(File).order_by(File.id.desc())).scalars():
        if not (is_video(row.filename) or (include_comics and is_comic(row.filename))):
            continue
        videos.append(VideoFile(
            id=row.id,
            filename=row.filename,
            path=row.path,
            has_thumbnail=os.path.exists(settings.thumbnail_path(row.filename)),
            thumbnail_url=f"/uploads/thumbnails/{row.filename}.jpg",
        ))
    return videos


def missing_thumbnails(db: Session, settings: Settings, include_comics: bool = False) -> List[VideoFile]:
    return [v for v in list_videos(db, settings, include_comics) if not v.has_thumbnail]


@dataclass(frozen=True)
class ThumbnailReport:
    generated: int
    failures: List[str]


def generate_missing_thumbnails(db: Session, settings: Settings, renderer: ThumbnailRenderer,
                                include_comics: bool = False) -> ThumbnailReport:
    """Renders every missing thumbnail. One failure never stops the rest."""
    generated = 0
    failures = []
    for video in missing_thumbnails(db, settings, include_comics):
        try:
            renderer.render(video.path, settings.thumbnail_dir, video.filename)
            generated += 1
        except Exception as e:
            logger.warning("Thumbnail generation failed for '%s': %s", video.filename, e)
            failures.append(f"{video.filename}: {e}")
    return ThumbnailReport(generated=generated, failures=failures)


def generate_thumbnail_at(db: Session, settings: Settings, renderer: ThumbnailRenderer, file_id: int, timestamp: str = "00:00:05") -> catalog.FileRecord:
    """Re-renders one video's thumbnail from the frame at `timestamp`."""
    record = catalog.require_file(db, file_id)
    if not is_video(record.filename):
        raise ValidationError(f"'{record.filename}' is not a video")
    renderer.render_at(record.path, settings.thumbnail_dir, record.filename, timestamp or "00:00:05")
    return record


# --- Database Housekeeping ---

def backup_database(database_path: str, now: Optional[datetime] = None) -> str:
    """Copies the database file to `<stem>_backup_<timestamp>.db` beside it."""
    if not database_path:
        raise ValidationError("database path not configured")
    if not os.path.exists(database_path):
        raise NotFoundError(f"database file '{database_path}' does not exist")
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    backup_path = f"{os.path.splitext(database_path)[0]}_backup_{stamp}.db"
    try:
        shutil.copyfile(database_path, backup_path)
    except OSError as e:
        raise StorageError(f"failed to back up database: {e}") from e
    logger.info("Database backed up to %s", backup_path)
    return backup_path


def vacuum_database(engine: Engine) -> None:
    # VACUUM cannot run inside a transaction.
    with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
        conn.execute(text("VACUUM"))
    logger.info("Database vacuumed")
