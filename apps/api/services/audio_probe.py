"""Audio file probing with ffprobe."""

import asyncio
import json
import logging
import re
import time
from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import Any

from db.models import AudioFile, Chapter, LibraryFile

logger = logging.getLogger(__name__)

# ffprobe tag name (lowercase) -> normalized meta tag key
TAG_MAP: dict[str, str] = {
    "album": "tag_album",
    "artist": "tag_artist",
    "album_artist": "tag_album_artist",
    "albumartist": "tag_album_artist",
    "title": "tag_title",
    "composer": "tag_composer",
    "comment": "tag_comment",
    "description": "tag_description",
    "synopsis": "tag_description",
    "publisher": "tag_publisher",
    "date": "tag_date",
    "year": "tag_date",
    "subtitle": "tag_subtitle",
    "genre": "tag_genre",
    "series": "tag_series",
    "mvnm": "tag_series",
    "series-part": "tag_series_part",
    "series_sequence": "tag_series_part",
    "mvin": "tag_series_part",
    "isbn": "tag_isbn",
    "language": "tag_language",
    "lang": "tag_language",
    "asin": "tag_asin",
    "audible_asin": "tag_asin",
    "track": "tag_track",
    "disc": "tag_disc",
    "discnumber": "tag_disc",
    "overdrive media marker": "tag_overdrive_media_marker",
    "overdrive_media_marker": "tag_overdrive_media_marker",
}

TRACK_FROM_FILENAME_PATTERNS = [
    re.compile(r'(?:track|chapter|part|ch)[\s._-]*(\d{1,4})', re.IGNORECASE),
    re.compile(r'^(\d{1,4})(?:\D|$)'),
    re.compile(r'[\s._-](\d{1,4})$'),
]
DISC_FROM_FILENAME_PATTERN = re.compile(r'(?:disc|disk|cd)[\s._-]*(\d{1,3})', re.IGNORECASE)


def _safe_int(val: Any) -> int | None:
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def _safe_float(val: Any) -> float | None:
    if val is None:
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _number_from_tag(raw: str | None) -> int | None:
    """Parse "3" or "3/12"."""
    if not raw:
        return None
    return _safe_int(raw.split("/")[0].strip())


def _natural_key(value: str) -> list[Any]:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r'(\d+)', value)]


def track_numbers_from_filename(filename: str) -> tuple[int | None, int | None]:
    """Return (track, disc) guessed from a file name."""
    stem = PurePosixPath(filename).stem
    disc: int | None = None
    disc_match = DISC_FROM_FILENAME_PATTERN.search(stem)
    if disc_match:
        disc = int(disc_match.group(1))
        stem = DISC_FROM_FILENAME_PATTERN.sub(" ", stem).strip()

    for pattern in TRACK_FROM_FILENAME_PATTERNS:
        match = pattern.search(stem)
        if match:
            return int(match.group(1)), disc
    return None, disc


def run_smart_track_order(audio_files: Sequence[AudioFile]) -> list[AudioFile]:
    """
    Order audio files by disc/track, falling back to natural filename order.

    Tag numbers win over filename numbers. If any file has no track number at all the
    whole set is ordered by filename. Indexes are reassigned starting at 1.
    """
    def track(af: AudioFile) -> int | None:
        return af.track_num_from_meta if af.track_num_from_meta is not None else af.track_num_from_filename

    def disc(af: AudioFile) -> int:
        value = af.disc_num_from_meta if af.disc_num_from_meta is not None else af.disc_num_from_filename
        return value or 0

    files = list(audio_files)
    tracks = [track(af) for af in files]
    if files and all(t is not None for t in tracks) and len(set(zip(map(disc, files), tracks))) == len(files):
        ordered = sorted(files, key=lambda af: (disc(af), track(af)))
    else:
        ordered = sorted(files, key=lambda af: _natural_key(af.metadata.filename))

    for i, af in enumerate(ordered, start=1):
        af.index = i
    return ordered


class AudioFileScanner:
    """Probe audio files with ffprobe and normalize the result."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    async def _run_ffprobe(self, file_path: str) -> dict[str, Any]:
        """Execute ffprobe and return JSON output."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            "-show_chapters",
            file_path,
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()

            if process.returncode != 0:
                logger.error("ffprobe failed with code %d: %s", process.returncode, stderr.decode())
                return {}

            return json.loads(stdout.decode())
        except (OSError, json.JSONDecodeError):
            logger.exception("Error running ffprobe on %s", file_path)
            return {}

    async def probe_audio_file(self, library_file: LibraryFile, index: int = 1) -> AudioFile | None:
        """Probe one audio library file. Returns None if ffprobe found no audio stream."""
        data = await self._run_ffprobe(library_file.metadata.path)
        if not data:
            return None
        return self.parse_ffprobe_output(data, library_file, index)

    def parse_ffprobe_output(self, data: dict[str, Any], library_file: LibraryFile, index: int = 1) -> AudioFile | None:
        """Parse and normalize ffprobe JSON output."""
        fmt = data.get("format", {})
        streams = data.get("streams", [])

        audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
        if audio_stream is None:
            logger.warning("No audio stream found in %s", library_file.metadata.path)
            return None

        cover_stream = next(
            (
                s for s in streams
                if s.get("codec_type") == "video"
                and (s.get("disposition", {}).get("attached_pic") or s.get("codec_name") in ("mjpeg", "png"))
            ),
            None,
        )

        meta_tags: dict[str, str] = {}
        tags = dict(audio_stream.get("tags", {}))
        tags.update(fmt.get("tags", {}))
        for key, value in tags.items():
            normalized_key = TAG_MAP.get(key.lower())
            if normalized_key and isinstance(value, str) and value.strip() and normalized_key not in meta_tags:
                meta_tags[normalized_key] = value.strip()

        chapters: list[Chapter] = []
        for i, c in enumerate(data.get("chapters", [])):
            start = _safe_float(c.get("start_time")) or 0.0
            end = _safe_float(c.get("end_time")) or start
            title = (c.get("tags", {}) or {}).get("title")
            if not title or not title.strip():
                title = f"Chapter {i + 1}"
            chapters.append(Chapter(id=i, start=start, end=end, title=title.strip()))

        track_from_filename, disc_from_filename = track_numbers_from_filename(library_file.metadata.filename)
        now_ms = int(time.time() * 1000)

        duration = _safe_float(fmt.get("duration"))
        if duration is None:
            duration = _safe_float(audio_stream.get("duration"))

        return AudioFile(
            index=index,
            ino=library_file.ino,
            metadata=library_file.metadata,
            added_at=now_ms,
            updated_at=now_ms,
            track_num_from_meta=_number_from_tag(meta_tags.get("tag_track")),
            disc_num_from_meta=_number_from_tag(meta_tags.get("tag_disc")),
            track_num_from_filename=track_from_filename,
            disc_num_from_filename=disc_from_filename,
            format=fmt.get("format_name"),
            duration=duration,
            bit_rate=_safe_int(fmt.get("bit_rate")),
            codec=audio_stream.get("codec_name"),
            channels=_safe_int(audio_stream.get("channels")),
            channel_layout=audio_stream.get("channel_layout"),
            language=(audio_stream.get("tags", {}) or {}).get("language"),
            embedded_cover_art=cover_stream.get("codec_name") if cover_stream else None,
            meta_tags=meta_tags,
            chapters=chapters,
        )

    async def execute_media_file_scans(self, library_files: Sequence[LibraryFile]) -> list[AudioFile]:
        """Probe files concurrently; results keep input order and unprobeable files are dropped."""
        results = await asyncio.gather(
            *(self.probe_audio_file(lf, i) for i, lf in enumerate(library_files, start=1))
        )
        scanned: list[AudioFile] = []
        for lf, audio_file in zip(library_files, results):
            if audio_file is None:
                logger.warning("Skipping unreadable audio file %s", lf.metadata.path)
                continue
            scanned.append(audio_file)
        return scanned
