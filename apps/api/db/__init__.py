"""Database module."""

from .models import (
    AudioFile,
    Author,
    Book,
    BookAuthor,
    BookSeries,
    Chapter,
    EbookFile,
    FileMetadata,
    Library,
    LibraryCreate,
    LibraryFile,
    LibraryItem,
    LibraryRead,
    MediaType,
    Podcast,
    PodcastEpisode,
    Series,
)
from .session import create_db_and_tables, get_session

__all__ = [
    "AudioFile",
    "Author",
    "Book",
    "BookAuthor",
    "BookSeries",
    "Chapter",
    "EbookFile",
    "FileMetadata",
    "Library",
    "LibraryCreate",
    "LibraryFile",
    "LibraryItem",
    "LibraryRead",
    "MediaType",
    "Podcast",
    "PodcastEpisode",
    "Series",
    "create_db_and_tables",
    "get_session",
]
