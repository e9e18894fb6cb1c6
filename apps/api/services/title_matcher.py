"""
Title utilities: normalization, fuzzy matching and folder-name parsing.

Folder naming convention understood by parse_item_path:
- Author/Series/Title
- Author/Title
- Title
with optional "Book 2 - ", "Vol. 2 - ", "2 - " or "2. " sequence prefixes (only inside a
series folder), a "(1999) - " or "1999 - " published-year prefix, a trailing
"{Narrator}" and, when enabled, a "Title - Subtitle" split.
"""

import re
import unicodedata
from collections.abc import Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel


@dataclass
class EpisodeMatch:
    """A feed episode that matches an episode title."""
    episode: Any
    score: float  # 0.0 to 1.0


class ItemPathMetadata(BaseModel):
    """Metadata derived from a library item's relative path."""
    title: str | None = None
    subtitle: str | None = None
    author: str | None = None
    narrators: str | None = None
    series: str | None = None
    sequence: str | None = None
    published_year: str | None = None


# Common subtitle/edition patterns
EDITION_PATTERNS = [
    re.compile(r'\s*\(Unabridged\)\s*$', re.IGNORECASE),
    re.compile(r'\s*\[Unabridged\]\s*$', re.IGNORECASE),
    re.compile(r'\s*\(Full[- ]Cast Edition\)\s*$', re.IGNORECASE),
    re.compile(r'\s*\[Dramatized Adaptation\]\s*$', re.IGNORECASE),
    re.compile(r'\s*\(Dramatized\)\s*$', re.IGNORECASE),
]

# Characters to normalize
PUNCTUATION_MAP = {
    ':': ' ',
    ';': ' ',
    '—': ' ',
    '–': ' ',
    '"': '',
    '“': '',
    '”': '',
    "'": '',
    '‘': '',
    '’': '',
    '…': '',
    '&': 'and',
}

NARRATOR_PATTERN = re.compile(r'\s*\{([^}]+)\}\s*')
YEAR_PREFIX_PATTERN = re.compile(r'^\(?(\d{4})\)?\s+-\s+(.+)$')
SEQUENCE_PATTERNS = [
    # "Book 2 - Title", "Vol. 2 - Title", "Volume 2: Title", "#2 - Title"
    re.compile(r'^(?:Book|Vol(?:ume)?|#)\.?\s*(\d{1,4}(?:\.\d{1,2})?)\s*(?:-|:|\.)?\s+(.+)$', re.IGNORECASE),
    # "2 - Title", "2. Title"
    re.compile(r'^(\d{1,4}(?:\.\d{1,2})?)\s*(?:-|\.)\s+(.+)$'),
]
SEQUENCE_SUFFIX_PATTERN = re.compile(
    r'^(.+?)\s*(?:-|,)\s*(?:Book|Vol(?:ume)?)\.?\s*(\d{1,4}(?:\.\d{1,2})?)$', re.IGNORECASE
)


def normalize_title(title: str) -> str:
    """
    Normalize a title for comparison.

    Handles:
    - Case normalization
    - Unicode normalization
    - Punctuation removal/replacement
    - Edition text removal
    - Whitespace normalization
    """
    if not title:
        return ""

    normalized = unicodedata.normalize('NFKD', title)
    normalized = normalized.lower()

    for char, replacement in PUNCTUATION_MAP.items():
        normalized = normalized.replace(char, replacement)

    for pattern in EDITION_PATTERNS:
        normalized = pattern.sub('', normalized)

    # Remove remaining punctuation except spaces and alphanumeric
    normalized = re.sub(r'[^\w\s]', ' ', normalized)

    normalized = ' '.join(normalized.split())

    return normalized.strip()


def similarity_ratio(s1: str, s2: str) -> float:
    """Calculate similarity ratio between two strings."""
    if not s1 or not s2:
        return 0.0
    return SequenceMatcher(None, s1, s2).ratio()


def get_title_ignore_prefix(title: str | None, prefixes: Sequence[str] = ("the", "a")) -> str | None:
    """Move a leading sorting prefix to the end: "The Hobbit" -> "Hobbit, The"."""
    if not title:
        return title
    stripped = title.strip()
    for prefix in prefixes:
        if stripped.lower().startswith(prefix.lower() + " "):
            rest = stripped[len(prefix) + 1:].strip()
            if rest:
                return f"{rest}, {stripped[:len(prefix)]}"
    return stripped


def parse_item_path(rel_path: str, is_file: bool = False, parse_subtitle: bool = False) -> ItemPathMetadata:
    """Derive title/author/series/sequence/year/narrators from an item's relative path."""
    parts = [p for p in rel_path.replace("\\", "/").split("/") if p]
    if not parts:
        return ItemPathMetadata()

    title = parts[-1]
    if is_file:
        title = PurePosixPath(title).stem

    author: str | None = None
    series: str | None = None
    if len(parts) >= 3:
        author, series = parts[-3], parts[-2]
    elif len(parts) == 2:
        author = parts[-2]

    narrators: str | None = None
    narrator_match = NARRATOR_PATTERN.search(title)
    if narrator_match:
        narrators = narrator_match.group(1).strip()
        title = NARRATOR_PATTERN.sub(' ', title).strip()

    sequence: str | None = None
    if series:
        for pattern in SEQUENCE_PATTERNS:
            match = pattern.match(title)
            if match:
                sequence, title = match.group(1), match.group(2).strip()
                break
        else:
            match = SEQUENCE_SUFFIX_PATTERN.match(title)
            if match:
                title, sequence = match.group(1).strip(), match.group(2)

    published_year: str | None = None
    year_match = YEAR_PREFIX_PATTERN.match(title)
    if year_match:
        published_year, title = year_match.group(1), year_match.group(2).strip()

    subtitle: str | None = None
    if parse_subtitle and " - " in title:
        title, subtitle = (s.strip() for s in title.split(" - ", 1))

    return ItemPathMetadata(
        title=title or None,
        subtitle=subtitle or None,
        author=author,
        narrators=narrators,
        series=series,
        sequence=sequence,
        published_year=published_year,
    )


def find_matching_episodes_in_feed(
    episodes: Sequence[Any],
    title: str,
    threshold: float = 0.8,
) -> list[EpisodeMatch]:
    """
    Rank feed episodes by title similarity, best first.

    Args:
        episodes: Feed episodes (anything with a ``title`` attribute)
        title: Title of the local episode
        threshold: Minimum similarity ratio for a fuzzy match (0.0-1.0)

    Returns:
        Matches sorted by descending score; exact normalized matches score 1.0.
    """
    normalized_input = normalize_title(title)
    if not normalized_input:
        return []

    matches: list[EpisodeMatch] = []
    for episode in episodes:
        episode_title = getattr(episode, "title", None)
        if not episode_title:
            continue
        normalized_episode = normalize_title(episode_title)
        if normalized_episode == normalized_input:
            matches.append(EpisodeMatch(episode=episode, score=1.0))
            continue
        score = similarity_ratio(normalized_input, normalized_episode)
        if score >= threshold:
            matches.append(EpisodeMatch(episode=episode, score=score))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches
