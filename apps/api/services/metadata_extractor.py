"""Metadata extraction: merges folder names, audio tags and sidecar files into one record."""

import logging
import re
from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from core.config import ScannerSettings
from db.models import AudioFile, Chapter
from services.chapters import get_chapters_from_audio_files
from services.name_parser import parse_name_string
from services.scan_data import LibraryItemScanData
from services.sidecars import (
    SeriesRef,
    parse_abs_metadata_json,
    parse_abs_metadata_text,
    parse_opf_metadata_xml,
    read_text_file,
)
from services.title_matcher import ItemPathMetadata, get_title_ignore_prefix, parse_item_path

if TYPE_CHECKING:
    from services.library_scan import LibraryScan

logger = logging.getLogger(__name__)

GENRE_SEPARATORS = ("/", "//", ";")
COVER_FILENAME_PATTERN = re.compile(r'/cover\.[^./]*$', re.IGNORECASE)

# (primary tag, fallback tag, record field), in merge order
TAG_FIELD_MAP: list[tuple[str, str | None, str]] = [
    ("tag_composer", None, "narrators"),
    ("tag_description", "tag_comment", "description"),
    ("tag_publisher", None, "publisher"),
    ("tag_date", None, "published_year"),
    ("tag_subtitle", None, "subtitle"),
    ("tag_album", "tag_title", "title"),
    ("tag_artist", "tag_album_artist", "authors"),
    ("tag_genre", None, "genres"),
    ("tag_series", None, "series"),
    ("tag_isbn", None, "isbn"),
    ("tag_language", None, "language"),
    ("tag_asin", None, "asin"),
]

OPF_LIST_FIELDS = ("tags", "genres", "authors", "narrators")
OPF_SCALAR_FIELDS = ("title", "subtitle", "published_year", "publisher", "isbn", "asin", "description", "language")


class BookMetadata(BaseModel):
    """Merged metadata for one book. None means "no source defined this"."""
    title: str | None = None
    title_ignore_prefix: str | None = None
    subtitle: str | None = None
    published_year: str | None = None
    publisher: str | None = None
    description: str | None = None
    isbn: str | None = None
    asin: str | None = None
    language: str | None = None
    explicit: bool | None = None
    abridged: bool | None = None
    narrators: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    series: list[SeriesRef] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)
    cover_path: str | None = None


class PodcastMetadata(BaseModel):
    title: str | None = None
    title_ignore_prefix: str | None = None
    author: str | None = None
    description: str | None = None
    release_date: str | None = None
    genres: list[str] = Field(default_factory=list)
    language: str | None = None
    explicit: bool | None = None
    cover_path: str | None = None


def parse_genres_string(genre_tag: str | None) -> list[str]:
    """
    Split a genre tag on the first separator found.

    Separators are tried in order "/", "//", ";"; a string containing several kinds
    is split only on the first one in that order.
    "Fantasy;Sci-Fi;History" -> ["Fantasy", "Sci-Fi", "History"]
    """
    if not genre_tag:
        return []
    for separator in GENRE_SEPARATORS:
        if separator in genre_tag:
            return [g.strip() for g in genre_tag.split(separator) if g.strip()]
    return [genre_tag]


def find_cover_path(scan_data: LibraryItemScanData) -> str | None:
    """An image named cover.* wins, else the first image in the folder."""
    images = scan_data.image_library_files
    if not images:
        return None
    for image in images:
        if COVER_FILENAME_PATTERN.search(image.metadata.path.replace("\\", "/")):
            return image.metadata.path
    return images[0].metadata.path


class MetadataExtractor:
    """
    Builds a BookMetadata record from one item's files.

    Sources, lowest precedence first: folder names, first audio file tags,
    desc.txt, reader.txt, OPF sidecar, metadata.json / metadata.abs snapshot.
    """

    def __init__(self, settings: ScannerSettings):
        self.settings = settings

    def _log(self, scan: "LibraryScan | None", level: str, message: str) -> None:
        if scan is not None:
            scan.add_log(level, message)
        else:
            logger.log(logging.WARNING if level == "warn" else logging.INFO, message)

    def extract(
        self,
        audio_files: Sequence[AudioFile],
        scan_data: LibraryItemScanData,
        scan: "LibraryScan | None" = None,
    ) -> BookMetadata:
        record = self._from_path(scan_data)
        if audio_files:
            self._apply_audio_tags(record, audio_files[0])
        self._apply_text_sidecars(record, scan_data)
        self._apply_opf(record, scan_data, scan)
        self._apply_snapshot(record, scan_data, scan)

        if not record.chapters:
            record.chapters = get_chapters_from_audio_files(
                record.title,
                audio_files,
                scan,
                prefer_overdrive=self.settings.prefer_overdrive_media_marker,
                prefer_audio_metadata=self.settings.prefer_audio_metadata,
            )

        record.cover_path = find_cover_path(scan_data)
        record.title_ignore_prefix = get_title_ignore_prefix(record.title, self.settings.sorting_prefixes)
        return record

    def _path_metadata(self, scan_data: LibraryItemScanData) -> ItemPathMetadata:
        """Folder-derived metadata, parsed from rel_path unless the scan input supplies it."""
        if scan_data.media_metadata is not None:
            return scan_data.media_metadata
        return parse_item_path(scan_data.rel_path, scan_data.is_file, self.settings.parse_subtitle)

    def _from_path(self, scan_data: LibraryItemScanData) -> BookMetadata:
        path_meta = self._path_metadata(scan_data)
        record = BookMetadata(
            title=path_meta.title,
            subtitle=path_meta.subtitle or None,
            published_year=path_meta.published_year or None,
            narrators=parse_name_string(path_meta.narrators),
            authors=parse_name_string(path_meta.author),
        )
        if path_meta.series:
            record.series = [SeriesRef(name=path_meta.series, sequence=path_meta.sequence or None)]
        return record

    def _apply_audio_tags(self, record: BookMetadata, first_file: AudioFile) -> None:
        override = self.settings.prefer_audio_metadata
        tags = first_file.meta_tags
        for tag, alt_tag, field in TAG_FIELD_MAP:
            value = tags.get(tag)
            if not value and alt_tag:
                value = tags.get(alt_tag)
            if not value or not isinstance(value, str):
                continue
            value = value.strip()
            if not value:
                continue

            if field in ("narrators", "authors"):
                if not getattr(record, field) or override:
                    setattr(record, field, parse_name_string(value))
            elif field == "genres":
                if not record.genres or override:
                    record.genres = parse_genres_string(value)
            elif field == "series":
                if not record.series or override:
                    record.series = [SeriesRef(name=value, sequence=tags.get("tag_series_part") or None)]
            elif not getattr(record, field) or override:
                setattr(record, field, value)

    def _apply_text_sidecars(self, record: BookMetadata, scan_data: LibraryItemScanData) -> None:
        desc_file = scan_data.desc_txt_library_file
        if desc_file is not None:
            description = read_text_file(desc_file.metadata.path).strip()
            if description:
                record.description = description

        reader_file = scan_data.reader_txt_library_file
        if reader_file is not None:
            lines = read_text_file(reader_file.metadata.path).splitlines()
            narrator = lines[0].strip() if lines else ""
            if narrator:
                record.narrators = parse_name_string(narrator)

    def _apply_opf(self, record: BookMetadata, scan_data: LibraryItemScanData, scan: "LibraryScan | None") -> None:
        opf_file = scan_data.metadata_opf_library_file
        if opf_file is None:
            return
        xml_text = read_text_file(opf_file.metadata.path)
        opf = parse_opf_metadata_xml(xml_text) if xml_text else None
        if opf is None:
            self._log(scan, "warn", f"Unable to parse OPF file \"{opf_file.metadata.rel_path or opf_file.metadata.path}\"")
            return

        override = self.settings.prefer_opf_metadata
        for field in OPF_LIST_FIELDS:
            value = getattr(opf, field)
            if value and (not getattr(record, field) or override):
                setattr(record, field, list(value))
        if opf.series and (not record.series or override):
            record.series = [SeriesRef(name=opf.series, sequence=opf.sequence)]
        for field in OPF_SCALAR_FIELDS:
            value = getattr(opf, field)
            if value and (not getattr(record, field) or override):
                setattr(record, field, value)

    def _apply_snapshot(self, record: BookMetadata, scan_data: LibraryItemScanData, scan: "LibraryScan | None") -> None:
        snapshot_file = scan_data.metadata_json_library_file or scan_data.metadata_abs_library_file
        if snapshot_file is None:
            return
        text = read_text_file(snapshot_file.metadata.path)
        if not text:
            return

        self._log(scan, "info", f"Found metadata file \"{snapshot_file.metadata.rel_path or snapshot_file.metadata.filename}\" - preferring")
        if scan_data.metadata_json_library_file is not None:
            snapshot = parse_abs_metadata_json(text)
        else:
            snapshot = parse_abs_metadata_text(text)
        if snapshot is None:
            self._log(scan, "warn", f"Unable to parse metadata file \"{snapshot_file.metadata.filename}\"")
            return

        if snapshot.tags:
            record.tags = list(snapshot.tags)
        if snapshot.chapters:
            record.chapters = [c.model_copy() for c in snapshot.chapters]

        # Only fields the record already defines are overridden
        for field, value in snapshot.metadata.items():
            if field not in BookMetadata.model_fields:
                continue
            current: Any = getattr(record, field)
            if current is None or value is None:
                continue
            setattr(record, field, value)

    def extract_podcast(
        self,
        audio_files: Sequence[AudioFile],
        scan_data: LibraryItemScanData,
    ) -> PodcastMetadata:
        """Podcast metadata from the folder name and the first audio file's tags."""
        if scan_data.media_metadata is not None:
            title = scan_data.media_metadata.title
        else:
            title = PurePosixPath(scan_data.rel_path.replace("\\", "/")).name or None
        record = PodcastMetadata(title=title)
        if audio_files:
            tags = audio_files[0].meta_tags
            override = self.settings.prefer_audio_metadata
            album = tags.get("tag_album")
            if album and (not record.title or override):
                record.title = album
            record.author = tags.get("tag_album_artist") or tags.get("tag_artist")
            record.description = tags.get("tag_description") or tags.get("tag_comment")
            record.release_date = tags.get("tag_date")
            record.genres = parse_genres_string(tags.get("tag_genre"))
            record.language = tags.get("tag_language")

        desc_file = scan_data.desc_txt_library_file
        if desc_file is not None:
            description = read_text_file(desc_file.metadata.path).strip()
            if description:
                record.description = description

        record.cover_path = find_cover_path(scan_data)
        record.title_ignore_prefix = get_title_ignore_prefix(record.title, self.settings.sorting_prefixes)
        return record
