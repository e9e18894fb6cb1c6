"""Chapter list derivation for multi-file and single-file audiobooks."""

import logging
from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup

from db.models import AudioFile, Chapter

if TYPE_CHECKING:
    from services.library_scan import LibraryScan

logger = logging.getLogger(__name__)


def _parse_marker_time(value: str) -> float | None:
    """"1:02:03.500" / "2:03.5" / "123.5" -> seconds"""
    try:
        seconds = 0.0
        for part in value.strip().split(":"):
            seconds = seconds * 60 + float(part)
        return seconds
    except ValueError:
        return None


def parse_overdrive_media_markers_as_chapters(audio_files: Sequence[AudioFile]) -> list[Chapter] | None:
    """
    Build chapters from OverDrive media marker tags.

    Markers are per-file offsets; they are shifted by the running duration of the
    preceding files. Returns None when no file carries markers.
    """
    markers: list[tuple[float, str]] = []
    offset = 0.0
    found = False
    for af in audio_files:
        raw = af.meta_tags.get("tag_overdrive_media_marker")
        if raw:
            soup = BeautifulSoup(raw, "html.parser")
            for marker in soup.find_all("marker"):
                name_tag = marker.find("name")
                time_tag = marker.find("time")
                if name_tag is None or time_tag is None:
                    continue
                start = _parse_marker_time(time_tag.get_text())
                if start is None:
                    continue
                found = True
                markers.append((offset + start, name_tag.get_text(strip=True)))
        offset += af.duration or 0.0

    if not found:
        return None

    markers.sort(key=lambda m: m[0])
    chapters: list[Chapter] = []
    for i, (start, title) in enumerate(markers):
        end = markers[i + 1][0] if i + 1 < len(markers) else offset
        chapters.append(Chapter(id=i, start=start, end=max(end, start), title=title or f"Chapter {i + 1}"))
    return chapters


def _same_chapter_titles(audio_files: Sequence[AudioFile]) -> bool:
    first = [c.title for c in audio_files[0].chapters]
    return all([c.title for c in af.chapters] == first for af in audio_files[1:])


def get_chapters_from_audio_files(
    book_title: str | None,
    audio_files: Sequence[AudioFile],
    scan: "LibraryScan | None" = None,
    prefer_overdrive: bool = False,
    prefer_audio_metadata: bool = False,
) -> list[Chapter]:
    """
    Derive a book's chapters from its ordered audio files.

    First match wins:
    1. OverDrive media markers, when preferred and present
    2. Embedded chapters of the first file, when there is one file or every file
       has the same chapter titles
    3. Embedded chapters of all files concatenated, ids and times offset
    4. One chapter per file (multi-file books without embedded chapters)
    """
    included = [af for af in audio_files if not af.exclude]
    if not included:
        return []

    def log(message: str) -> None:
        if scan is not None:
            scan.add_log("debug", message)
        else:
            logger.debug(message)

    if prefer_overdrive:
        overdrive_chapters = parse_overdrive_media_markers_as_chapters(included)
        if overdrive_chapters:
            log("Overdrive Media Markers and preference found! Using these for chapter definitions")
            return overdrive_chapters

    first = included[0]
    if first.chapters:
        if len(included) == 1 or _same_chapter_titles(included):
            log(f"Using embedded chapters in first audio file {first.metadata.path}")
            return [c.model_copy() for c in first.chapters]

        log(f"Using embedded chapters from all audio files {first.metadata.path}")
        chapters: list[Chapter] = []
        chapter_offset = 0
        time_offset = 0.0
        for af in included:
            if not af.duration:
                continue
            for c in af.chapters:
                chapters.append(Chapter(
                    id=c.id + chapter_offset,
                    start=c.start + time_offset,
                    end=c.end + time_offset,
                    title=c.title,
                ))
            chapter_offset += len(af.chapters)
            time_offset += af.duration
        return chapters

    if len(included) == 1:
        return []

    chapters = []
    time_offset = 0.0
    for af in included:
        if not af.duration or af.duration <= 0:
            continue
        title = PurePosixPath(af.metadata.filename).stem if af.metadata.filename else f"Chapter {len(chapters)}"
        tag_title = af.meta_tags.get("tag_title")
        if prefer_audio_metadata and tag_title and tag_title != book_title:
            title = tag_title
        chapters.append(Chapter(
            id=len(chapters),
            start=time_offset,
            end=time_offset + af.duration,
            title=title,
        ))
        time_offset += af.duration
    return chapters
