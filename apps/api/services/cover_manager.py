"""Cover image extraction and download."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

import httpx

from core.config import ScannerSettings
from db.models import AudioFile

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
CODEC_EXTENSIONS = {"mjpeg": "jpg", "png": "png", "webp": "webp"}


@dataclass
class CoverResult:
    cover: str | None = None
    error: str | None = None


class CoverManager:
    """Writes covers into the item folder or the metadata directory."""

    def __init__(
        self,
        settings: ScannerSettings,
        ffmpeg_path: str = "ffmpeg",
        timeout_seconds: float = 20.0,
    ):
        self.settings = settings
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds

    def get_cover_directory(self, item_id: UUID, item_dir: str | None) -> Path:
        """Item folder when covers are stored with items, else metadata_dir/items/<id>."""
        if self.settings.store_cover_with_item and item_dir:
            return Path(item_dir)
        return self.settings.metadata_dir / "items" / str(item_id)

    async def save_embedded_cover_art(
        self,
        audio_files: Sequence[AudioFile],
        item_id: UUID,
        item_dir: str | None,
    ) -> str | None:
        """Extract the first embedded cover found. Returns the written path or None."""
        audio_file = next((af for af in audio_files if af.embedded_cover_art), None)
        if audio_file is None:
            return None

        output_dir = self.get_cover_directory(item_id, item_dir)
        ext = CODEC_EXTENSIONS.get(audio_file.embedded_cover_art or "", "jpg")
        cover_path = output_dir / f"cover.{ext}"
        if cover_path.exists() and cover_path.stat().st_size > 0:
            return str(cover_path)

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Cannot create cover directory %s: %s", output_dir, e)
            return None

        # ffmpeg -i input.m4b -an -vcodec copy cover.jpg
        cmd = [
            self.ffmpeg_path,
            "-v", "quiet",
            "-i", audio_file.metadata.path,
            "-an",
            "-vcodec", "copy",
            "-y",
            str(cover_path),
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError:
            logger.exception("Failed to extract cover from %s", audio_file.metadata.path)
            return None

        if process.returncode == 0 and cover_path.exists() and cover_path.stat().st_size > 0:
            logger.info("Extracted embedded cover to %s", cover_path)
            return str(cover_path)

        logger.warning(
            "ffmpeg cover extraction failed for %s (code %s): %s",
            audio_file.metadata.path, process.returncode, stderr.decode(errors="replace").strip(),
        )
        return None

    async def download_cover_from_url(self, item_id: UUID, item_dir: str | None, url: str) -> CoverResult:
        """Download an image. Network and HTTP failures are returned, never raised."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            return CoverResult(error=f"Request failed: {e}")

        if resp.status_code != 200:
            return CoverResult(error=f"Unexpected status {resp.status_code}")

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type)
        if ext is None:
            return CoverResult(error=f"Invalid image content type \"{content_type}\"")
        if not resp.content:
            return CoverResult(error="Empty response body")

        output_dir = self.get_cover_directory(item_id, item_dir)
        cover_path = output_dir / f"cover.{ext}"
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            # Drop covers of another format so only one cover file remains
            for existing in output_dir.glob("cover.*"):
                if existing != cover_path and existing.suffix.lstrip(".") in CODEC_EXTENSIONS.values():
                    existing.unlink(missing_ok=True)
            cover_path.write_bytes(resp.content)
        except OSError as e:
            return CoverResult(error=f"Failed to write cover: {e}")

        logger.info("Downloaded cover %s to %s", url, cover_path)
        return CoverResult(cover=str(cover_path))
