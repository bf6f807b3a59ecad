"""
Resource lifecycle: upload, rename and delete keep three things in step,
the catalog row, the file on disk and its thumbnail. The filesystem and the
database share no transaction, so each multi-step change is run as a
StagedOperation that records how to undo every completed step.
"""
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests
from sqlalchemy.orm import Session

from . import catalog
from .config import Settings
from .errors import (
    ConflictError,
    NotFoundError,
    PartialFailureError,
    StorageError,
    TaggartError,
    ValidationError,
)
from .media import MediaProcessor, ThumbnailRenderer, is_video, wants_thumbnail

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
COPY_PREVIOUS = "!"
DOWNLOAD_TIMEOUT = 30
CHUNK_SIZE = 1024 * 1024


# --- Staged Operations ---

class StagedOperation:
    """
    Records each completed step of a multi-system change together with its
    undo action. Leaving the block with an exception runs the undo actions in
    reverse order. Typed errors propagate unchanged; anything else is wrapped
    in PartialFailureError. Undo failures are logged and collected, never
    raised over the original error.
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: List[Tuple[str, Callable[[], None]]] = []
        self.rollback_failures: List[str] = []
        self.committed = False

    def stage(self, description: str, undo: Callable[[], None]) -> None:
        self._steps.append((description, undo))

    def commit(self) -> None:
        self._steps.clear()
        self.committed = True

    def rollback(self) -> List[str]:
        while self._steps:
            description, undo = self._steps.pop()
            try:
                undo()
                logger.info("%s: rolled back '%s'", self.name, description)
            except Exception as e:
                logger.error("%s: could not roll back '%s': %s", self.name, description, e)
                self.rollback_failures.append(f"{description}: {e}")
        return self.rollback_failures

    def __enter__(self) -> "StagedOperation":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            if not self.committed:
                self.commit()
            return False
        self.rollback()
        if isinstance(exc, TaggartError) and not self.rollback_failures:
            return False
        if isinstance(exc, Exception):
            raise PartialFailureError(self.name, exc, self.rollback_failures) from exc
        return False


def _remove_if_exists(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


def _create_exclusive(path: str, filename: str) -> BinaryIO:
    try:
        return open(path, "xb")
    except FileExistsError as e:
        raise ConflictError(f"a file named '{filename}' already exists") from e


def _set_aside(path: str) -> str:
    """Moves `path` to a fresh name in the same directory and returns that name."""
    fd, aside = tempfile.mkstemp(prefix=os.path.basename(path) + ".", suffix=".stale",
                                 dir=os.path.dirname(path))
    os.close(fd)
    try:
        os.replace(path, aside)
    except OSError:
        os.remove(aside)
        raise
    return aside


def sanitize_filename(filename: str) -> str:
    """Keeps a user-supplied name inside the upload directory."""
    if not filename:
        return "file"
    filename = filename.replace("/", "_").replace("\\", "_").replace("..", "_")
    return filename or "file"


# --- Results ---

@dataclass(frozen=True)
class UploadResult:
    file: catalog.FileRecord
    warning: Optional[str] = None


@dataclass(frozen=True)
class RenameResult:
    file: catalog.FileRecord
    changed: bool


@dataclass(frozen=True)
class DeleteResult:
    file_id: int
    filename: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TagResult:
    category: str
    value: str
    copied_from_previous: bool = False


# --- Lifecycle Manager ---

class LifecycleManager:
    """Coordinates every mutation that touches both the catalog and the upload directory."""

    def __init__(self, settings: Settings, media_processor: MediaProcessor, thumbnail_renderer: ThumbnailRenderer):
        self.settings = settings
        self.media_processor = media_processor
        self.thumbnail_renderer = thumbnail_renderer

    # Upload

    def _check_conflict(self, db: Session, filename: str, exclude_id: Optional[int] = None) -> str:
        final_path = self.settings.storage_path(filename)
        if os.path.lexists(final_path) or catalog.filename_exists(db, filename, exclude_id=exclude_id):
            raise ConflictError(f"a file named '{filename}' already exists")
        return final_path

    def upload(self, db: Session, source: BinaryIO, filename: str) -> UploadResult:
        """
        Writes `source` to `<name>.tmp`, hands videos to the media processor,
        promotes the result to its final name and only then records it in the
        catalog. A failure at any point leaves neither file nor row behind.

        Both the temp file and the final name are created exclusively, so an
        upload racing for the same name fails with ConflictError and its
        rollback never touches the other upload's files.
        """
        filename = sanitize_filename(filename.strip())
        final_path = self._check_conflict(db, filename)
        temp_path = final_path + TEMP_SUFFIX
        os.makedirs(self.settings.upload_root, exist_ok=True)
        warning = None

        with StagedOperation(f"upload of '{filename}'") as op:
            buffer = _create_exclusive(temp_path, filename)
            op.stage("write temp file", lambda: _remove_if_exists(temp_path))
            with buffer:
                shutil.copyfileobj(source, buffer, CHUNK_SIZE)

            _create_exclusive(final_path, filename).close()
            op.stage("claim final path", lambda path=final_path: _remove_if_exists(path))
            if is_video(filename):
                final_path, warning = self.media_processor.process(temp_path, final_path)
                if warning:
                    logger.warning("%s: %s", filename, warning)
            else:
                os.replace(temp_path, final_path)

            if wants_thumbnail(filename) and not warning:
                thumb_path = self.settings.thumbnail_path(filename)
                op.stage("render thumbnail", lambda: _remove_if_exists(thumb_path))
                self._render_thumbnail(final_path, filename)

            with catalog.transaction(db, f"recording '{filename}'"):
                record = catalog.insert_file(db, filename, final_path)
            op.commit()

        logger.info("Uploaded '%s' as file %d", filename, record.id)
        return UploadResult(file=record, warning=warning)

    def _render_thumbnail(self, path: str, filename: str) -> None:
        try:
            self.thumbnail_renderer.render(path, self.settings.thumbnail_dir, filename)
        except Exception as e:
            logger.warning("Could not generate thumbnail for '%s': %s", filename, e)

    def upload_from_url(self, db: Session, url: str, filename: Optional[str] = None) -> UploadResult:
        """Downloads `url` and runs it through the regular upload pipeline."""
        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"invalid URL: '{url}'")

        url_name = unquote(parsed.path.rstrip("/").split("/")[-1]) if parsed.path else ""
        url_ext = os.path.splitext(url_name)[1]
        custom = (filename or "").strip()
        if custom:
            name = custom if os.path.splitext(custom)[1] or not url_ext else custom + url_ext
        else:
            name = url_name or "file_from_url"

        # Fail on a name clash before spending time on the download.
        self._check_conflict(db, sanitize_filename(name))
        try:
            response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ValidationError(f"failed to download '{url}': {e}") from e
        with response:
            response.raw.decode_content = True
            return self.upload(db, response.raw, name)

    # Rename

    def rename(self, db: Session, file_id: int, new_filename: str) -> RenameResult:
        """
        Renames the file on disk, then its thumbnail, then the catalog row.
        A failure in a later step moves the earlier ones back.
        """
        new_filename = new_filename.strip()
        if not new_filename:
            raise ValidationError("new filename cannot be empty")
        new_filename = sanitize_filename(new_filename)

        record = catalog.require_file(db, file_id)
        if record.filename == new_filename:
            return RenameResult(file=record, changed=False)

        old_path = record.path
        new_path = self._check_conflict(db, new_filename, exclude_id=file_id)
        thumb_old = self.settings.thumbnail_path(record.filename)
        thumb_new = self.settings.thumbnail_path(new_filename)

        with StagedOperation(f"rename of '{record.filename}' to '{new_filename}'") as op:
            os.rename(old_path, new_path)
            op.stage("rename file", lambda: os.rename(new_path, old_path))

            # A thumbnail already under the new name belongs to some earlier
            # file; it is set aside so the renamed file never shows it.
            stale_thumb = None
            if os.path.lexists(thumb_new):
                stale_thumb = _set_aside(thumb_new)
                op.stage("set aside stale thumbnail", lambda: os.replace(stale_thumb, thumb_new))

            if os.path.exists(thumb_old):
                os.rename(thumb_old, thumb_new)
                op.stage("rename thumbnail", lambda: os.rename(thumb_new, thumb_old))

            with catalog.transaction(db, f"renaming file {file_id}"):
                catalog.rename_file_record(db, file_id, new_filename, new_path)
            op.commit()

        if stale_thumb:
            try:
                os.remove(stale_thumb)
            except OSError as e:
                logger.warning("Could not remove stale thumbnail %s: %s", stale_thumb, e)

        logger.info("Renamed file %d from '%s' to '%s'", file_id, record.filename, new_filename)
        return RenameResult(file=catalog.require_file(db, file_id), changed=True)

    # Delete

    def delete(self, db: Session, file_id: int) -> DeleteResult:
        """
        Removes the catalog row and its associations in one transaction, then
        cleans up disk. The catalog is authoritative: a leftover file after a
        failed cleanup is reported as a warning and later shows up as an orphan.
        """
        record = catalog.require_file(db, file_id)
        with catalog.transaction(db, f"deleting file {file_id}"):
            catalog.delete_file_record(db, file_id)

        warnings = []
        try:
            os.remove(record.path)
        except FileNotFoundError:
            logger.warning("Physical file %s was already gone", record.path)
        except OSError as e:
            logger.warning("Failed to delete physical file %s: %s", record.path, e)
            warnings.append(f"failed to delete physical file {record.path}: {e}")

        thumb_path = self.settings.thumbnail_path(record.filename)
        if os.path.exists(thumb_path):
            try:
                os.remove(thumb_path)
            except OSError as e:
                logger.warning("Failed to delete thumbnail %s: %s", thumb_path, e)
                warnings.append(f"failed to delete thumbnail {thumb_path}: {e}")

        logger.info("Deleted file %d ('%s')", file_id, record.filename)
        return DeleteResult(file_id=file_id, filename=record.filename, warnings=warnings)


# --- Single-file Tag Edits ---

def tag_file(db: Session, file_id: int, category: str, value: str) -> TagResult:
    """
    Attaches (category, value) to the file, creating both lazily. The value
    `!` reuses the value most recently given to another file in that category.
    """
    category, value = category.strip(), value.strip()
    if not category or not value:
        raise ValidationError(f"category and value are required, got '{category}:{value}'")
    catalog.require_file(db, file_id)

    copied = value == COPY_PREVIOUS
    if copied:
        value = catalog.previous_tag_value(db, category, file_id)
    with catalog.transaction(db, f"tagging file {file_id} with {category}:{value}"):
        tag_id = catalog.get_or_create_tag(db, catalog.get_or_create_category(db, category), value)
        catalog.link_file_tag(db, file_id, tag_id)
    return TagResult(category=category, value=value, copied_from_previous=copied)


def untag_file(db: Session, file_id: int, category: str, value: str) -> bool:
    """Detaches one tag. Returns False when the tag does not exist."""
    category_id = catalog.find_category(db, category)
    tag_id = catalog.find_tag(db, category_id, value) if category_id is not None else None
    if tag_id is None:
        return False
    with catalog.transaction(db, f"removing {category}:{value} from file {file_id}"):
        catalog.unlink_file_tag(db, file_id, tag_id)
    return True


def update_description(db: Session, file_id: int, description: str) -> str:
    with catalog.transaction(db, f"updating description of file {file_id}"):
        return catalog.set_description(db, file_id, description)
