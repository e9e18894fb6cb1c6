"""Database models using SQLModel."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel


class MediaType(str, Enum):
    """Kind of media a library holds."""

    BOOK = "book"
    PODCAST = "podcast"


# --- Stored JSON shapes ---

class FileMetadata(BaseModel):
    """Filesystem facts for one file, as reported by the filesystem layer."""

    filename: str
    ext: str = ""
    path: str
    rel_path: str = ""
    size: int = 0
    mtime_ms: int | None = None
    ctime_ms: int | None = None
    birthtime_ms: int | None = None


class LibraryFile(BaseModel):
    """A file belonging to a library item folder."""

    ino: str
    metadata: FileMetadata
    is_supplementary: bool | None = None
    added_at: int | None = None
    updated_at: int | None = None


class Chapter(BaseModel):
    """Chapter offsets are seconds from the start of the whole item."""

    id: int
    start: float
    end: float
    title: str


class AudioFile(BaseModel):
    """One playable file owned by a book or episode."""

    index: int = 1
    ino: str
    metadata: FileMetadata
    added_at: int | None = None
    updated_at: int | None = None
    track_num_from_meta: int | None = None
    disc_num_from_meta: int | None = None
    track_num_from_filename: int | None = None
    disc_num_from_filename: int | None = None
    manually_verified: bool = False
    exclude: bool = False
    error: str | None = None
    format: str | None = None
    duration: float | None = None
    bit_rate: int | None = None
    codec: str | None = None
    channels: int | None = None
    channel_layout: str | None = None
    language: str | None = None
    embedded_cover_art: str | None = None
    mime_type: str | None = None
    meta_tags: dict[str, str] = PydanticField(default_factory=dict)
    chapters: list[Chapter] = PydanticField(default_factory=list)

    def update_from_scan(self, scanned: "AudioFile") -> bool:
        """Copy probe-derived fields from a fresh scan, keeping identity. Returns True if anything changed."""
        keep = {"index", "ino", "added_at", "updated_at", "manually_verified", "exclude"}
        changed = False
        for key in type(self).model_fields:
            if key in keep:
                continue
            new_value = getattr(scanned, key)
            if getattr(self, key) != new_value:
                setattr(self, key, new_value)
                changed = True
        if changed:
            self.updated_at = scanned.updated_at or self.updated_at
        return changed


class EbookFile(BaseModel):
    """The primary ebook of a book."""

    ino: str
    metadata: FileMetadata
    ebook_format: str
    added_at: int | None = None
    updated_at: int | None = None


class EpisodeEnclosure(BaseModel):
    """Remote playable resource of a podcast episode."""

    url: str
    type: str | None = None
    length: str | None = None


# --- Tables ---

class LibraryBase(SQLModel):
    """Base library model."""

    name: str = Field(index=True)
    media_type: MediaType = Field(default=MediaType.BOOK)
    provider: str = Field(default="audible", description="Default metadata provider for matching")
    audiobooks_only: bool = Field(default=False, description="Ignore ebook files")
    skip_matching_media_with_asin: bool = Field(default=False)
    skip_matching_media_with_isbn: bool = Field(default=False)


class Library(LibraryBase, table=True):
    """Library database table model."""

    __tablename__ = "libraries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LibraryCreate(LibraryBase):
    """Schema for creating a library."""

    pass


class LibraryRead(LibraryBase):
    """Schema for reading a library."""

    id: UUID
    created_at: datetime


class LibraryItem(SQLModel, table=True):
    """One on-disk book or podcast. Flagged missing, never deleted by a scan."""

    __tablename__ = "library_items"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    library_id: UUID = Field(foreign_key="libraries.id", index=True)
    ino: str | None = Field(default=None, index=True)
    path: str = Field(index=True)
    rel_path: str
    is_file: bool = Field(default=False)
    media_type: MediaType = Field(default=MediaType.BOOK)
    is_missing: bool = Field(default=False, index=True)
    is_invalid: bool = Field(default=False)
    library_files: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Book(SQLModel, table=True):
    """Book media, owned by exactly one library item."""

    __tablename__ = "books"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    library_item_id: UUID = Field(foreign_key="library_items.id", unique=True, index=True)
    title: str | None = Field(default=None, index=True)
    title_ignore_prefix: str | None = None
    subtitle: str | None = None
    published_year: str | None = None
    publisher: str | None = None
    description: str | None = None
    isbn: str | None = None
    asin: str | None = Field(default=None, index=True)
    language: str | None = None
    explicit: bool = Field(default=False)
    abridged: bool = Field(default=False)
    cover_path: str | None = None
    duration: float = Field(default=0.0)
    narrators: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    genres: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    chapters: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    audio_files: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    ebook_file: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Podcast(SQLModel, table=True):
    """Podcast media, owned by exactly one library item."""

    __tablename__ = "podcasts"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    library_item_id: UUID = Field(foreign_key="library_items.id", unique=True, index=True)
    title: str | None = Field(default=None, index=True)
    title_ignore_prefix: str | None = None
    author: str | None = None
    description: str | None = None
    release_date: str | None = None
    genres: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    feed_url: str | None = None
    image_url: str | None = None
    itunes_page_url: str | None = None
    itunes_id: str | None = None
    itunes_artist_id: str | None = None
    language: str | None = None
    explicit: bool = Field(default=False)
    podcast_type: str | None = None
    cover_path: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class PodcastEpisode(SQLModel, table=True):
    """Episode of a podcast."""

    __tablename__ = "podcast_episodes"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    podcast_id: UUID = Field(foreign_key="podcasts.id", index=True)
    index: int = Field(default=1)
    season: str | None = None
    episode: str | None = None
    episode_type: str | None = None
    title: str | None = None
    subtitle: str | None = None
    description: str | None = None
    pub_date: str | None = None
    published_at: int | None = None
    enclosure: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    audio_file: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    chapters: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Author(SQLModel, table=True):
    """Author shared by every book in a library that names it."""

    __tablename__ = "authors"
    __table_args__ = (UniqueConstraint("library_id", "name", name="uq_authors_library_name"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    library_id: UUID = Field(foreign_key="libraries.id", index=True)
    name: str = Field(index=True)
    last_first: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Series(SQLModel, table=True):
    """Series shared by every book in a library that names it."""

    __tablename__ = "series"
    __table_args__ = (UniqueConstraint("library_id", "name", name="uq_series_library_name"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    library_id: UUID = Field(foreign_key="libraries.id", index=True)
    name: str = Field(index=True)
    name_ignore_prefix: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class BookAuthor(SQLModel, table=True):
    """Link between Book and Author."""

    __tablename__ = "book_authors"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    book_id: UUID = Field(foreign_key="books.id", index=True)
    author_id: UUID = Field(foreign_key="authors.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class BookSeries(SQLModel, table=True):
    """Link between Book and Series; the sequence belongs to the link."""

    __tablename__ = "book_series"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    book_id: UUID = Field(foreign_key="books.id", index=True)
    series_id: UUID = Field(foreign_key="series.id", index=True)
    sequence: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
