"""Pytest fixtures for API tests."""

import copy
import itertools
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

# Settings are cached on first use; point them at throwaway resources before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("METADATA_DIR", tempfile.mkdtemp(prefix="audioshelf-metadata-"))

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from api.routes.library import get_library_scanner, get_session_maker
from core.config import ScannerSettings, Settings, get_settings
from db.models import FileMetadata, Library, LibraryFile, MediaType
from db.session import get_session
from main import app
from services.audio_probe import AudioFileScanner
from services.cover_manager import CoverManager
from services.filter_data import FilterIndexRegistry, LibraryFilterIndex
from services.library_manager import LibraryManager
from services.library_scan import LibraryScan
from services.library_scanner import LibraryScanner
from services.providers import BookFinder, BookMatch, PodcastFeed, PodcastMatch
from services.scan_data import LibraryItemScanData


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeAudioFileScanner(AudioFileScanner):
    """AudioFileScanner answering from canned ffprobe output keyed by file path."""

    def __init__(self) -> None:
        super().__init__("ffprobe")
        self.probes: dict[str, dict[str, Any]] = {}
        self.probed: list[str] = []

    async def _run_ffprobe(self, file_path: str) -> dict[str, Any]:
        self.probed.append(file_path)
        return copy.deepcopy(self.probes.get(file_path, {}))


class RecordingEmitter:
    """Event emitter that keeps every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def emit(self, event: str, data: Any) -> None:
        self.events.append((event, data))

    def of_type(self, event: str) -> list[Any]:
        return [data for name, data in self.events if name == event]


class FakeBookProvider:
    """Book provider returning fixed candidates and recording queries."""

    def __init__(self, results: list[BookMatch] | None = None) -> None:
        self.results = results or []
        self.queries: list[dict[str, Any]] = []

    async def search(self, title, author=None, isbn=None, asin=None) -> list[BookMatch]:
        self.queries.append({"title": title, "author": author, "isbn": isbn, "asin": asin})
        return [r.model_copy(deep=True) for r in self.results]


class FakePodcastProvider:
    def __init__(self, results: list[PodcastMatch] | None = None, feed: PodcastFeed | None = None) -> None:
        self.results = results or []
        self.feed = feed
        self.feed_requests: list[str] = []

    async def search(self, term: str | None) -> list[PodcastMatch]:
        return [r.model_copy(deep=True) for r in self.results]

    async def get_podcast_feed(self, feed_url: str) -> PodcastFeed | None:
        self.feed_requests.append(feed_url)
        return self.feed


def ffprobe_output(
    duration: float | None = 100.0,
    tags: dict[str, str] | None = None,
    chapters: list[tuple[float, float, str]] | None = None,
    cover: bool = False,
) -> dict[str, Any]:
    """Minimal ffprobe JSON for an audio file."""
    streams: list[dict[str, Any]] = [
        {"codec_type": "audio", "codec_name": "mp3", "channels": 2, "channel_layout": "stereo"},
    ]
    if cover:
        streams.append({"codec_type": "video", "codec_name": "mjpeg", "disposition": {"attached_pic": 1}})
    fmt: dict[str, Any] = {"format_name": "mp3", "bit_rate": "64000", "tags": dict(tags or {})}
    if duration is not None:
        fmt["duration"] = str(duration)
    return {
        "format": fmt,
        "streams": streams,
        "chapters": [
            {"start_time": str(start), "end_time": str(end), "tags": {"title": title}}
            for start, end, title in chapters or []
        ],
    }


def make_library_file(path: Path, ino: str, root: Path | None = None, size: int = 1000) -> LibraryFile:
    return LibraryFile(
        ino=ino,
        metadata=FileMetadata(
            filename=path.name,
            ext=path.suffix,
            path=str(path),
            rel_path=str(path.relative_to(root)) if root else path.name,
            size=size,
            mtime_ms=1_700_000_000_000,
        ),
    )


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with overrides."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        debug=True,
        environment="development",
        metadata_dir=tmp_path / "metadata",
        ffprobe_path="ffprobe",
        audible_auth_file=tmp_path / "missing-auth.json",
    )


@pytest.fixture
async def test_engine() -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_maker(test_engine: Any) -> sessionmaker:
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(test_session_maker: sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with test_session_maker() as session:
        yield session


@pytest.fixture
def fake_audio_scanner() -> FakeAudioFileScanner:
    return FakeAudioFileScanner()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def book_provider() -> FakeBookProvider:
    return FakeBookProvider()


@pytest.fixture
def podcast_provider() -> FakePodcastProvider:
    return FakePodcastProvider()


@pytest.fixture
def scanner_settings(tmp_path: Path) -> ScannerSettings:
    return ScannerSettings(metadata_dir=tmp_path / "metadata")


@pytest.fixture
def library_manager(
    scanner_settings: ScannerSettings,
    fake_audio_scanner: FakeAudioFileScanner,
    emitter: RecordingEmitter,
) -> LibraryManager:
    return LibraryManager(scanner_settings, fake_audio_scanner, CoverManager(scanner_settings), emitter)


@pytest.fixture
def library_scanner(
    test_settings: Settings,
    fake_audio_scanner: FakeAudioFileScanner,
    emitter: RecordingEmitter,
    book_provider: FakeBookProvider,
    podcast_provider: FakePodcastProvider,
) -> LibraryScanner:
    return LibraryScanner(
        settings=test_settings,
        emitter=emitter,
        filter_indexes=FilterIndexRegistry(),
        audio_scanner=fake_audio_scanner,
        book_finder=BookFinder({"audible": book_provider}),
        podcast_provider=podcast_provider,
    )


@pytest.fixture
async def library(test_session: AsyncSession) -> Library:
    library = Library(name="Audiobooks")
    test_session.add(library)
    await test_session.commit()
    return library


@pytest.fixture
async def podcast_library(test_session: AsyncSession) -> Library:
    library = Library(name="Podcasts", media_type=MediaType.PODCAST)
    test_session.add(library)
    await test_session.commit()
    return library


@pytest.fixture
async def filter_index(test_session: AsyncSession, library: Library) -> LibraryFilterIndex:
    return await LibraryFilterIndex(library_id=library.id).load(test_session)


@pytest.fixture
def scan(library: Library) -> LibraryScan:
    scan = LibraryScan(library_id=library.id, library_name=library.name)
    scan.start()
    return scan


@pytest.fixture
def make_item_folder(
    tmp_path: Path,
    fake_audio_scanner: FakeAudioFileScanner,
) -> Callable[..., LibraryItemScanData]:
    """
    Build an item folder on disk plus its scan data.

    ``audio`` maps file names to ffprobe output (registered with the fake scanner);
    ``files`` maps file names to text/bytes content. Every file is reported as added.
    """
    inos = itertools.count(1000)
    library_root = tmp_path / "library"

    def _make(
        rel_path: str,
        audio: dict[str, dict[str, Any]] | None = None,
        files: dict[str, str | bytes] | None = None,
        media_type: MediaType = MediaType.BOOK,
    ) -> LibraryItemScanData:
        folder = library_root / rel_path
        folder.mkdir(parents=True, exist_ok=True)
        library_files: list[LibraryFile] = []
        for name, probe in (audio or {}).items():
            path = folder / name
            path.write_bytes(b"\0")
            fake_audio_scanner.probes[str(path)] = probe
            library_files.append(make_library_file(path, str(next(inos)), folder))
        for name, content in (files or {}).items():
            path = folder / name
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
            library_files.append(make_library_file(path, str(next(inos)), folder))

        return LibraryItemScanData(
            path=str(folder),
            rel_path=rel_path,
            ino=str(next(inos)),
            media_type=media_type,
            library_files=library_files,
            library_files_added=list(library_files),
        )

    return _make


@pytest.fixture
async def client(
    test_session: AsyncSession,
    test_session_maker: sessionmaker,
    test_settings: Settings,
    library_scanner: LibraryScanner,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        yield test_session

    def override_get_settings() -> Settings:
        return test_settings

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_library_scanner] = lambda: library_scanner
    app.dependency_overrides[get_session_maker] = lambda: test_session_maker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
