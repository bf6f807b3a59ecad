"""
External media collaborators: codec probing/re-encoding through ffprobe and
ffmpeg, and thumbnail rendering (ffmpeg for video, Pillow for images and
comic archives). The lifecycle manager only sees the two small interfaces
below, so tests can swap in fakes.
"""
import io
import logging
import os
import subprocess
import zipfile
from typing import List, Optional, Protocol, Tuple

from PIL import Image as PILImage

from .errors import MediaProcessingError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v"}
COMIC_EXTENSIONS = {".cbz"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
HEVC_CODECS = {"hevc", "h265"}

THUMBNAIL_WIDTH = 400
DEFAULT_FRAME_TIME = "00:00:05"
REENCODE_WARNING = "The video uses HEVC and has been re-encoded to H.264 for browser compatibility."


def extension_of(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def is_video(filename: str) -> bool:
    return extension_of(filename) in VIDEO_EXTENSIONS


def is_comic(filename: str) -> bool:
    return extension_of(filename) in COMIC_EXTENSIONS


def wants_thumbnail(filename: str) -> bool:
    return is_video(filename) or is_comic(filename)


class MediaProcessor(Protocol):
    def process(self, temp_path: str, final_path: str) -> Tuple[str, Optional[str]]:
        """Moves or transcodes `temp_path` into `final_path`. Returns (final_path, warning)."""


class ThumbnailRenderer(Protocol):
    def render(self, source_path: str, dest_dir: str, key: str) -> None:
        """Writes `<dest_dir>/<key>.jpg`. Raises on failure."""

    def render_at(self, source_path: str, dest_dir: str, key: str, timestamp: str) -> None:
        """Like render, but grabs the video frame at `timestamp` (HH:MM:SS)."""


def _run(cmd: List[str], timeout: Optional[float]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
    except FileNotFoundError as e:
        raise MediaProcessingError(f"{cmd[0]} is not installed or not on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise MediaProcessingError(f"{cmd[0]} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or "").strip().splitlines()
        raise MediaProcessingError(f"{cmd[0]} exited with {e.returncode}: {detail[-1] if detail else 'no output'}") from e


# --- Codec Handling ---

class FFmpegMediaProcessor:
    """Re-encodes HEVC uploads to H.264 so browsers can play them."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def detect_codec(self, path: str) -> str:
        result = _run([
            "ffprobe", "-v", "error", "-select_streams", "v:0",
            "-show_entries", "stream=codec_name",
            "-of", "default=nokey=1:noprint_wrappers=1", path,
        ], self.timeout)
        return result.stdout.strip()

    def reencode_to_h264(self, input_path: str, output_path: str) -> None:
        _run([
            "ffmpeg", "-y", "-i", input_path,
            "-c:v", "libx264", "-profile:v", "baseline", "-preset", "fast", "-crf", "23",
            "-c:a", "aac", "-movflags", "+faststart", output_path,
        ], self.timeout)

    def process(self, temp_path: str, final_path: str) -> Tuple[str, Optional[str]]:
        codec = self.detect_codec(temp_path)
        if codec in HEVC_CODECS:
            logger.info("Re-encoding HEVC upload %s to H.264", os.path.basename(final_path))
            self.reencode_to_h264(temp_path, final_path)
            os.remove(temp_path)
            return final_path, REENCODE_WARNING
        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            raise MediaProcessingError(f"failed to move file: {e}") from e
        return final_path, None


# --- Thumbnails ---

def _collage(images: List[PILImage.Image], target_width: int = THUMBNAIL_WIDTH) -> PILImage.Image:
    """Lays up to four images out in a 2x2 grid, each scaled to fit its cell."""
    cell = target_width // 2
    canvas = PILImage.new("RGB", (target_width, target_width), "black")
    for index, img in enumerate(images[:4]):
        img = img.convert("RGB")
        img.thumbnail((cell, cell))
        x = (index % 2) * cell + (cell - img.width) // 2
        y = (index // 2) * cell + (cell - img.height) // 2
        canvas.paste(img, (x, y))
    return canvas


def comic_pages(cbz_path: str) -> List[str]:
    """Image entries of a CBZ archive, in reading order."""
    with zipfile.ZipFile(cbz_path) as archive:
        names = [n for n in archive.namelist()
                 if not n.endswith("/") and extension_of(n) in IMAGE_EXTENSIONS]
    return sorted(names)


class DefaultThumbnailRenderer:
    """Renders `<dest_dir>/<key>.jpg` for videos, comic archives and images."""

    def __init__(self, timeout: Optional[float] = None, width: int = THUMBNAIL_WIDTH):
        self.timeout = timeout
        self.width = width

    def render(self, source_path: str, dest_dir: str, key: str) -> None:
        os.makedirs(dest_dir, exist_ok=True)
        thumb_path = os.path.join(dest_dir, f"{key}.jpg")
        if is_video(source_path):
            self._render_video(source_path, thumb_path, DEFAULT_FRAME_TIME, retry_from_start=True)
        elif is_comic(source_path):
            self._render_comic(source_path, thumb_path)
        else:
            self._render_image(source_path, thumb_path)

    def render_at(self, source_path: str, dest_dir: str, key: str, timestamp: str) -> None:
        """Grabs the frame at `timestamp` (HH:MM:SS) instead of the default."""
        os.makedirs(dest_dir, exist_ok=True)
        self._render_video(source_path, os.path.join(dest_dir, f"{key}.jpg"), timestamp, retry_from_start=False)

    def _render_video(self, source_path: str, thumb_path: str, timestamp: str, retry_from_start: bool) -> None:
        scale = f"scale={self.width}:-1"
        try:
            _run(["ffmpeg", "-y", "-ss", timestamp, "-i", source_path, "-vframes", "1", "-vf", scale, thumb_path],
                 self.timeout)
        except MediaProcessingError:
            if not retry_from_start:
                raise
            # Clips shorter than the seek point have no frame there.
            _run(["ffmpeg", "-y", "-i", source_path, "-vframes", "1", "-vf", scale, thumb_path], self.timeout)

    def _render_comic(self, source_path: str, thumb_path: str) -> None:
        pages = comic_pages(source_path)[:4]
        if not pages:
            raise MediaProcessingError(f"no images found in {os.path.basename(source_path)}")
        images = []
        with zipfile.ZipFile(source_path) as archive:
            for name in pages:
                with archive.open(name) as entry:
                    img = PILImage.open(io.BytesIO(entry.read()))
                    img.load()
                    images.append(img)
        _collage(images, self.width).save(thumb_path, "JPEG", quality=85)

    def _render_image(self, source_path: str, thumb_path: str) -> None:
        try:
            with PILImage.open(source_path) as img:
                # Paletted and alpha images cannot be written as JPEG directly.
                img = img.convert("RGB")
                img.thumbnail((self.width, self.width * 2))
                img.save(thumb_path, "JPEG", quality=85)
        except OSError as e:
            raise MediaProcessingError(f"could not create thumbnail for {source_path}: {e}") from e
