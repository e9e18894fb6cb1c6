"""Person-name parsing for author and narrator strings found in tags and folder names."""

import re

_AND_SPLIT = re.compile(r"\s+and\s+", re.IGNORECASE)


def _chunks(name_string: str) -> list[str]:
    if "&" in name_string:
        groups = name_string.split("&")
    elif _AND_SPLIT.search(name_string):
        groups = _AND_SPLIT.split(name_string)
    elif ";" in name_string:
        groups = name_string.split(";")
    else:
        groups = [name_string]

    chunks: list[str] = []
    for group in groups:
        chunks.extend(part.strip() for part in group.split(","))
    return [c for c in chunks if c]


def _is_last_name_only(chunk: str) -> bool:
    return " " not in chunk.strip()


def parse_name_string(name_string: str | None) -> list[str]:
    """
    Split a free-form name string into "First Last" names.

    Handles:
    - "Brandon Sanderson"
    - "Brandon Sanderson, Mary Robinette Kowal"
    - "Sanderson, Brandon" and "Friedman, Milton & Friedman, Rose"
    - "Terry Pratchett & Neil Gaiman", "A; B", "A and B"
    """
    if not name_string or not name_string.strip():
        return []

    chunks = _chunks(name_string.strip())
    if not chunks:
        return []

    names: list[str] = []
    if len(chunks) == 1:
        names = chunks
    elif len(chunks) % 2 == 0 and all(_is_last_name_only(c) for c in chunks[::2]):
        # "Last, First" pairs
        for last, first in zip(chunks[::2], chunks[1::2]):
            names.append(f"{first} {last}")
    else:
        names = chunks

    seen: set[str] = set()
    unique: list[str] = []
    for name in names:
        cleaned = " ".join(name.split())
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            unique.append(cleaned)
    return unique


def name_to_last_first(name: str) -> str:
    """Brandon Sanderson -> Sanderson, Brandon"""
    parts = name.split()
    if len(parts) < 2 or "," in name:
        return name.strip()
    return f"{parts[-1]}, {' '.join(parts[:-1])}"
