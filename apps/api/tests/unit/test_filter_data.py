"""Unit tests for the per-library filter index."""

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Author, Book, Library, LibraryItem, Series
from services.filter_data import FilterIndexRegistry, LibraryFilterIndex, normalize_name


def test_normalize_name_collapses_whitespace() -> None:
    assert normalize_name("  Brandon   Sanderson ") == "Brandon Sanderson"


def test_find_is_whitespace_insensitive() -> None:
    index = LibraryFilterIndex(library_id=uuid4())
    author_id = uuid4()
    index.add_author(author_id, "Brandon Sanderson")

    ref = index.find_author("Brandon  Sanderson")
    assert ref is not None and ref.id == author_id
    assert index.find_author("brandon sanderson") is None
    assert index.find_series("Mistborn") is None


def test_add_book_values_and_to_dict() -> None:
    index = LibraryFilterIndex(library_id=uuid4())
    index.add_series(uuid4(), "b series")
    index.add_series(uuid4(), "A Series")
    index.add_book_values(["Narrator"], ["Fantasy", "Epic"], ["tag"], "Publisher", "English")
    index.add_book_values(genres=["Fantasy"], publisher=None)

    data = index.to_dict()
    assert [s["name"] for s in data["series"]] == ["A Series", "b series"]
    assert data["genres"] == ["Epic", "Fantasy"]
    assert data["publishers"] == ["Publisher"]
    assert data["languages"] == ["English"]

    index.clear()
    assert index.to_dict()["genres"] == []


@pytest.mark.asyncio
async def test_load_from_store_and_registry(test_session: AsyncSession) -> None:
    library = Library(name="Books")
    other = Library(name="Other")
    test_session.add_all([library, other])
    await test_session.flush()

    item = LibraryItem(library_id=library.id, path="/b/x", rel_path="x")
    test_session.add(item)
    await test_session.flush()
    test_session.add_all([
        Author(library_id=library.id, name="Jane Doe"),
        Author(library_id=other.id, name="Not Mine"),
        Series(library_id=library.id, name="Saga"),
        Book(library_item_id=item.id, title="X", genres=["Horror"], narrators=["Nina"], language="en"),
    ])
    await test_session.commit()

    registry = FilterIndexRegistry()
    index = await registry.get(test_session, library.id)
    assert set(index.authors) == {"Jane Doe"}
    assert set(index.series) == {"Saga"}
    assert index.genres == {"Horror"}
    assert index.narrators == {"Nina"}

    assert await registry.get(test_session, library.id) is index

    index.add_author(uuid4(), "Ghost")
    reloaded = await registry.reload(test_session, library.id)
    assert reloaded is index
    assert "Ghost" not in index.authors

    registry.discard(library.id)
    assert await registry.get(test_session, library.id) is not index
