"""
Parsers for metadata sidecar files found next to audio files.

- desc.txt / reader.txt: plain text
- *.opf: OPF package document (calibre style)
- metadata.json / metadata.abs: snapshot written by a previous export
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from db.models import Chapter
from services.name_parser import parse_name_string

logger = logging.getLogger(__name__)

SERIES_SEQUENCE_PATTERN = re.compile(r'^(.+?)\s+#([^#\s]+)$')
YEAR_PATTERN = re.compile(r'(\d{4})')

# snapshot key -> record field
SNAPSHOT_KEY_MAP = {
    "title": "title",
    "subtitle": "subtitle",
    "authors": "authors",
    "narrators": "narrators",
    "series": "series",
    "genres": "genres",
    "publishedYear": "published_year",
    "published_year": "published_year",
    "publisher": "publisher",
    "description": "description",
    "isbn": "isbn",
    "asin": "asin",
    "language": "language",
    "explicit": "explicit",
    "abridged": "abridged",
}
SNAPSHOT_LIST_KEYS = {"authors", "narrators", "genres", "series"}
SNAPSHOT_BOOL_KEYS = {"explicit", "abridged"}


class SeriesRef(BaseModel):
    name: str
    sequence: str | None = None


class OpfMetadata(BaseModel):
    """Fields read from an OPF package document. Empty lists mean "not present"."""
    title: str | None = None
    subtitle: str | None = None
    authors: list[str] = Field(default_factory=list)
    narrators: list[str] = Field(default_factory=list)
    published_year: str | None = None
    publisher: str | None = None
    isbn: str | None = None
    asin: str | None = None
    description: str | None = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    language: str | None = None
    series: str | None = None
    sequence: str | None = None


class AbsMetadata(BaseModel):
    """
    Snapshot sidecar content.

    ``metadata`` holds only the keys the file actually defines, already mapped to
    record field names. Series entries are SeriesRef objects.
    """
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)


def read_text_file(path: str | Path) -> str:
    """Read a sidecar as text. Returns "" if it cannot be read."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read text file %s: %s", path, e)
        return ""


def parse_series_string(value: str) -> SeriesRef | None:
    """"Mistborn #2" -> SeriesRef(name="Mistborn", sequence="2")"""
    value = (value or "").strip()
    if not value:
        return None
    match = SERIES_SEQUENCE_PATTERN.match(value)
    if match:
        return SeriesRef(name=match.group(1).strip(), sequence=match.group(2))
    return SeriesRef(name=value)


def _strip_html(text: str) -> str:
    return BeautifulSoup(text, "html.parser").get_text(" ", strip=True)


def _text(tag: Any) -> str | None:
    if tag is None:
        return None
    value = tag.get_text(strip=True)
    return value or None


def parse_opf_metadata_xml(xml_text: str) -> OpfMetadata | None:
    """Parse an OPF document. Returns None if no <metadata> element is present."""
    if not xml_text or not xml_text.strip():
        return None

    soup = BeautifulSoup(xml_text, "html.parser")
    metadata = soup.find("metadata") or soup.find("opf:metadata")
    if metadata is None:
        return None

    authors: list[str] = []
    narrators: list[str] = []
    for creator in metadata.find_all("dc:creator"):
        name = _text(creator)
        if not name:
            continue
        role = (creator.get("opf:role") or creator.get("role") or "").lower()
        if role in ("", "aut"):
            authors.extend(parse_name_string(name))
        elif role == "nrt":
            narrators.extend(parse_name_string(name))

    isbn: str | None = None
    asin: str | None = None
    for identifier in metadata.find_all("dc:identifier"):
        value = _text(identifier)
        if not value:
            continue
        scheme = (identifier.get("opf:scheme") or identifier.get("scheme") or "").lower()
        if scheme == "isbn" or value.lower().startswith("urn:isbn:"):
            isbn = isbn or value.split(":")[-1]
        elif scheme in ("asin", "mobi-asin", "amazon") or value.lower().startswith("urn:asin:"):
            asin = asin or value.split(":")[-1]

    published_year: str | None = None
    date_value = _text(metadata.find("dc:date"))
    if date_value:
        year_match = YEAR_PATTERN.search(date_value)
        published_year = year_match.group(1) if year_match else None

    description = _text(metadata.find("dc:description"))
    if description:
        description = _strip_html(description) or None

    series: str | None = None
    sequence: str | None = None
    for meta in metadata.find_all("meta"):
        name = (meta.get("name") or "").lower()
        if name == "calibre:series":
            series = (meta.get("content") or "").strip() or None
        elif name == "calibre:series_index":
            sequence = (meta.get("content") or "").strip() or None
    if sequence and sequence.endswith(".0"):
        sequence = sequence[:-2]

    title = _text(metadata.find("dc:title"))
    subtitle: str | None = None
    if title and ": " in title:
        title, subtitle = (s.strip() for s in title.split(": ", 1))

    return OpfMetadata(
        title=title,
        subtitle=subtitle,
        authors=list(dict.fromkeys(authors)),
        narrators=list(dict.fromkeys(narrators)),
        published_year=published_year,
        publisher=_text(metadata.find("dc:publisher")),
        isbn=isbn,
        asin=asin,
        description=description,
        genres=[g for g in (_text(s) for s in metadata.find_all("dc:subject")) if g],
        tags=[t for t in (_text(s) for s in metadata.find_all("dc:tag")) if t],
        language=_text(metadata.find("dc:language")),
        series=series,
        sequence=sequence,
    )


def _snapshot_value(key: str, value: Any) -> Any:
    if key in SNAPSHOT_LIST_KEYS:
        if isinstance(value, str):
            value = [v for v in value.split(",")]
        if not isinstance(value, list):
            return None
        items = [str(v).strip() for v in value if v is not None and str(v).strip()]
        if key == "series":
            return [ref for ref in (parse_series_string(s) for s in items) if ref]
        return items
    if key in SNAPSHOT_BOOL_KEYS:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "y")
        return bool(value) if value is not None else None
    if value is None:
        return None
    return str(value).strip() or None


def _parse_chapters(raw: Any) -> list[Chapter]:
    chapters: list[Chapter] = []
    if not isinstance(raw, list):
        return chapters
    for i, c in enumerate(raw):
        if not isinstance(c, dict):
            continue
        try:
            chapters.append(Chapter(
                id=int(c.get("id", i)),
                start=float(c.get("start", 0)),
                end=float(c.get("end", 0)),
                title=str(c.get("title") or f"Chapter {i + 1}"),
            ))
        except (TypeError, ValueError):
            logger.debug("Skipping invalid snapshot chapter %r", c)
    return chapters


def parse_abs_metadata_json(text: str) -> AbsMetadata | None:
    """Parse a metadata.json snapshot. Returns None if it is not a JSON object."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Invalid metadata.json: %s", e)
        return None
    if not isinstance(data, dict):
        return None

    # Both flat and {"metadata": {...}} layouts are accepted
    source = data.get("metadata") if isinstance(data.get("metadata"), dict) else data

    metadata: dict[str, Any] = {}
    for key, field in SNAPSHOT_KEY_MAP.items():
        if key in source:
            value = _snapshot_value(field, source[key])
            if value is not None:
                metadata[field] = value

    tags = data.get("tags") or []
    return AbsMetadata(
        metadata=metadata,
        tags=[str(t).strip() for t in tags if str(t).strip()] if isinstance(tags, list) else [],
        chapters=_parse_chapters(data.get("chapters")),
    )


def parse_abs_metadata_text(text: str) -> AbsMetadata | None:
    """
    Parse a metadata.abs snapshot.

    Format: a ";ABMETADATA" header line, then key=value lines, then optional
    [CHAPTER] blocks (start=, end=, title=) and a [DESCRIPTION] block whose
    remaining lines are the description text.
    """
    lines = (text or "").splitlines()
    if not lines or not lines[0].strip().upper().startswith(";ABMETADATA"):
        logger.warning("metadata.abs is missing the ;ABMETADATA header")
        return None

    metadata: dict[str, Any] = {}
    tags: list[str] = []
    raw_chapters: list[dict[str, Any]] = []
    description_lines: list[str] = []
    section: str | None = None

    for line in lines[1:]:
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            section = stripped[1:-1].upper()
            if section == "CHAPTER":
                raw_chapters.append({"id": len(raw_chapters)})
            continue
        if section == "DESCRIPTION":
            description_lines.append(line)
            continue
        if not stripped or stripped.startswith("#") or stripped.startswith(";") or "=" not in stripped:
            continue

        key, value = (s.strip() for s in stripped.split("=", 1))
        if section == "CHAPTER":
            raw_chapters[-1][key] = value
        elif key == "tags":
            tags = [t.strip() for t in value.split(",") if t.strip()]
        elif key in SNAPSHOT_KEY_MAP:
            field = SNAPSHOT_KEY_MAP[key]
            parsed = _snapshot_value(field, value)
            if parsed is not None:
                metadata[field] = parsed

    description = "\n".join(description_lines).strip()
    if description:
        metadata["description"] = description

    return AbsMetadata(metadata=metadata, tags=tags, chapters=_parse_chapters(raw_chapters))
