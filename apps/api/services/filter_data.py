"""Per-library index of known authors, series and descriptive values."""

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from db.models import Author, Book, LibraryItem, Podcast, Series

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    """Key used for author/series identity within a library."""
    return " ".join(name.split())


@dataclass
class EntityRef:
    id: UUID
    name: str


@dataclass
class LibraryFilterIndex:
    """
    Known names for one library.

    Updated in place as scans create entities. Only one scan per library mutates
    an index at a time.
    """

    library_id: UUID
    authors: dict[str, EntityRef] = field(default_factory=dict)
    series: dict[str, EntityRef] = field(default_factory=dict)
    narrators: set[str] = field(default_factory=set)
    genres: set[str] = field(default_factory=set)
    tags: set[str] = field(default_factory=set)
    publishers: set[str] = field(default_factory=set)
    languages: set[str] = field(default_factory=set)

    def find_author(self, name: str) -> EntityRef | None:
        return self.authors.get(normalize_name(name))

    def find_series(self, name: str) -> EntityRef | None:
        return self.series.get(normalize_name(name))

    def add_author(self, author_id: UUID, name: str) -> None:
        self.authors[normalize_name(name)] = EntityRef(id=author_id, name=name)

    def add_series(self, series_id: UUID, name: str) -> None:
        self.series[normalize_name(name)] = EntityRef(id=series_id, name=name)

    def add_book_values(
        self,
        narrators: list[str] | None = None,
        genres: list[str] | None = None,
        tags: list[str] | None = None,
        publisher: str | None = None,
        language: str | None = None,
    ) -> None:
        self.narrators.update(narrators or [])
        self.genres.update(genres or [])
        self.tags.update(tags or [])
        if publisher:
            self.publishers.add(publisher)
        if language:
            self.languages.add(language)

    def clear(self) -> None:
        self.authors.clear()
        self.series.clear()
        for values in (self.narrators, self.genres, self.tags, self.publishers, self.languages):
            values.clear()

    async def load(self, session: AsyncSession) -> "LibraryFilterIndex":
        """Rebuild from the store."""
        self.clear()

        authors = (await session.execute(select(Author).where(Author.library_id == self.library_id))).scalars().all()
        for author in authors:
            self.add_author(author.id, author.name)

        series_rows = (await session.execute(select(Series).where(Series.library_id == self.library_id))).scalars().all()
        for series in series_rows:
            self.add_series(series.id, series.name)

        books = (
            await session.execute(
                select(Book).join(LibraryItem, Book.library_item_id == LibraryItem.id).where(
                    LibraryItem.library_id == self.library_id
                )
            )
        ).scalars().all()
        for book in books:
            self.add_book_values(book.narrators, book.genres, book.tags, book.publisher, book.language)

        podcasts = (
            await session.execute(
                select(Podcast).join(LibraryItem, Podcast.library_item_id == LibraryItem.id).where(
                    LibraryItem.library_id == self.library_id
                )
            )
        ).scalars().all()
        for podcast in podcasts:
            self.add_book_values(genres=podcast.genres, tags=podcast.tags, language=podcast.language)

        logger.debug(
            "Loaded filter index for library %s: %d authors, %d series",
            self.library_id, len(self.authors), len(self.series),
        )
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "authors": sorted(
                ({"id": str(ref.id), "name": ref.name} for ref in self.authors.values()),
                key=lambda a: a["name"].lower(),
            ),
            "series": sorted(
                ({"id": str(ref.id), "name": ref.name} for ref in self.series.values()),
                key=lambda s: s["name"].lower(),
            ),
            "narrators": sorted(self.narrators, key=str.lower),
            "genres": sorted(self.genres, key=str.lower),
            "tags": sorted(self.tags, key=str.lower),
            "publishers": sorted(self.publishers, key=str.lower),
            "languages": sorted(self.languages, key=str.lower),
        }


class FilterIndexRegistry:
    """Filter indexes by library id, loaded lazily."""

    def __init__(self) -> None:
        self._indexes: dict[UUID, LibraryFilterIndex] = {}

    async def get(self, session: AsyncSession, library_id: UUID) -> LibraryFilterIndex:
        index = self._indexes.get(library_id)
        if index is None:
            index = await LibraryFilterIndex(library_id=library_id).load(session)
            self._indexes[library_id] = index
        return index

    async def reload(self, session: AsyncSession, library_id: UUID) -> LibraryFilterIndex:
        index = self._indexes.setdefault(library_id, LibraryFilterIndex(library_id=library_id))
        return await index.load(session)

    def discard(self, library_id: UUID) -> None:
        self._indexes.pop(library_id, None)
