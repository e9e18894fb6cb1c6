"""Reconciliation of scanned library items with the persisted library."""

import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import ScannerSettings
from db.models import (
    AudioFile, Author, Book, BookAuthor, BookSeries, EbookFile, Library, LibraryFile,
    LibraryItem, MediaType, Podcast, PodcastEpisode, Series,
)
from services.audio_probe import AudioFileScanner, run_smart_track_order
from services.cover_manager import CoverManager
from services.filter_data import LibraryFilterIndex, normalize_name
from services.library_scan import EventEmitter, LibraryScan, LogLevel, NullEmitter
from services.metadata_extractor import MetadataExtractor, find_cover_path
from services.name_parser import name_to_last_first
from services.scan_data import EBOOK_EXTENSIONS, LibraryItemScanData, file_extension
from services.sidecars import SeriesRef
from services.title_matcher import get_title_ignore_prefix

logger = logging.getLogger(__name__)

BOOK_SCALAR_FIELDS = (
    "title", "title_ignore_prefix", "subtitle", "published_year", "publisher", "description",
    "isbn", "asin", "language", "explicit", "abridged",
)
BOOK_SET_FIELDS = ("genres", "tags", "narrators")
PODCAST_SCALAR_FIELDS = ("title", "title_ignore_prefix", "author", "description", "release_date", "language", "explicit")


def dump_models(models: Sequence[BaseModel]) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in models]


def load_audio_files(raw: list[dict[str, Any]] | None) -> list[AudioFile]:
    return [AudioFile.model_validate(d) for d in raw or []]


def total_duration(audio_files: Sequence[AudioFile]) -> float:
    return float(sum(af.duration for af in audio_files if af.duration is not None))


def choose_ebook_file(scan_data: LibraryItemScanData, audiobooks_only: bool) -> EbookFile | None:
    """Prefer an EPUB, else the first ebook file."""
    if audiobooks_only or not scan_data.ebook_library_files:
        return None
    ebook_files = scan_data.ebook_library_files
    library_file = next((lf for lf in ebook_files if file_extension(lf) == "epub"), ebook_files[0])
    return EbookFile(
        ino=library_file.ino,
        metadata=library_file.metadata,
        ebook_format=file_extension(library_file),
        added_at=library_file.added_at,
        updated_at=library_file.updated_at,
    )


def library_files_with_flags(library_files: Sequence[LibraryFile], ebook: EbookFile | None) -> list[LibraryFile]:
    """Ebook files other than the primary ebook are supplementary."""
    flagged: list[LibraryFile] = []
    for lf in library_files:
        lf = lf.model_copy()
        if file_extension(lf) in EBOOK_EXTENSIONS:
            lf.is_supplementary = not (ebook is not None and lf.ino == ebook.ino)
        flagged.append(lf)
    return flagged


def _log(scan: LibraryScan | None, level: LogLevel, message: str) -> None:
    if scan is not None:
        scan.add_log(level, message)
    else:
        logger.debug(message)


class LibraryManager:
    """
    Creates and rescans library items.

    A LibraryManager is built per scan run with that run's ScannerSettings; it never
    commits, the caller owns the transaction.
    """

    def __init__(
        self,
        settings: ScannerSettings,
        audio_scanner: AudioFileScanner,
        cover_manager: CoverManager,
        emitter: EventEmitter | None = None,
    ):
        self.settings = settings
        self.audio_scanner = audio_scanner
        self.cover_manager = cover_manager
        self.emitter = emitter or NullEmitter()
        self.extractor = MetadataExtractor(settings)

    # --- Shared entities ---

    async def get_or_create_author(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        name: str,
        scan: LibraryScan | None = None,
    ) -> UUID:
        """Reuse the library's author with this name or create it."""
        name = normalize_name(name)
        ref = index.find_author(name)
        if ref is not None:
            return ref.id

        result = await session.execute(
            select(Author).where(Author.library_id == index.library_id, Author.name == name)
        )
        author = result.scalar_one_or_none()
        if author is not None:
            index.add_author(author.id, author.name)
            return author.id

        author = Author(library_id=index.library_id, name=name, last_first=name_to_last_first(name))
        session.add(author)
        await session.flush()
        index.add_author(author.id, author.name)
        _log(scan, LogLevel.DEBUG, f"Created new author \"{name}\"")
        await self.emitter.emit("author_added", author.model_dump(mode="json"))
        return author.id

    async def get_or_create_series(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        name: str,
        scan: LibraryScan | None = None,
    ) -> UUID:
        """Reuse the library's series with this name or create it."""
        name = normalize_name(name)
        ref = index.find_series(name)
        if ref is not None:
            return ref.id

        result = await session.execute(
            select(Series).where(Series.library_id == index.library_id, Series.name == name)
        )
        series = result.scalar_one_or_none()
        if series is not None:
            index.add_series(series.id, series.name)
            return series.id

        series = Series(
            library_id=index.library_id,
            name=name,
            name_ignore_prefix=get_title_ignore_prefix(name, self.settings.sorting_prefixes),
        )
        session.add(series)
        await session.flush()
        index.add_series(series.id, series.name)
        _log(scan, LogLevel.DEBUG, f"Created new series \"{name}\"")
        await self.emitter.emit("series_added", series.model_dump(mode="json"))
        return series.id

    async def get_book_authors(self, session: AsyncSession, book_id: UUID) -> list[tuple[BookAuthor, Author]]:
        result = await session.execute(
            select(BookAuthor, Author)
            .join(Author, BookAuthor.author_id == Author.id)
            .where(BookAuthor.book_id == book_id)
            .order_by(BookAuthor.created_at)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def get_book_series(self, session: AsyncSession, book_id: UUID) -> list[tuple[BookSeries, Series]]:
        result = await session.execute(
            select(BookSeries, Series)
            .join(Series, BookSeries.series_id == Series.id)
            .where(BookSeries.book_id == book_id)
            .order_by(BookSeries.created_at)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def add_book_authors(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        book_id: UUID,
        names: Sequence[str],
        scan: LibraryScan | None = None,
    ) -> None:
        for name in dict.fromkeys(normalize_name(n) for n in names if n and n.strip()):
            author_id = await self.get_or_create_author(session, index, name, scan)
            session.add(BookAuthor(book_id=book_id, author_id=author_id))

    async def add_book_series(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        book_id: UUID,
        series: Sequence[SeriesRef],
        scan: LibraryScan | None = None,
    ) -> None:
        seen: set[str] = set()
        for ref in series:
            name = normalize_name(ref.name or "")
            if not name or name in seen:
                continue
            seen.add(name)
            series_id = await self.get_or_create_series(session, index, name, scan)
            session.add(BookSeries(book_id=book_id, series_id=series_id, sequence=ref.sequence))

    async def reconcile_book_authors(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        book: Book,
        names: Sequence[str],
        scan: LibraryScan | None = None,
    ) -> bool:
        """Add missing author links and drop stale ones. Author rows are never deleted."""
        wanted = list(dict.fromkeys(normalize_name(n) for n in names if n and n.strip()))
        current = await self.get_book_authors(session, book.id)
        current_names = {author.name for _, author in current}
        updated = False

        for name in wanted:
            if name not in current_names:
                author_id = await self.get_or_create_author(session, index, name, scan)
                session.add(BookAuthor(book_id=book.id, author_id=author_id))
                _log(scan, LogLevel.DEBUG, f"Updating book \"{book.title}\" added author \"{name}\"")
                updated = True

        for link, author in current:
            if author.name not in wanted:
                await session.delete(link)
                _log(scan, LogLevel.DEBUG, f"Updating book \"{book.title}\" removed author \"{author.name}\"")
                if scan is not None:
                    scan.authors_removed_from_books.append(author.id)
                updated = True
        return updated

    async def reconcile_book_series(
        self,
        session: AsyncSession,
        index: LibraryFilterIndex,
        book: Book,
        series: Sequence[SeriesRef],
        scan: LibraryScan | None = None,
    ) -> bool:
        """Add missing series links and drop stale ones. Series rows are never deleted."""
        wanted: dict[str, str | None] = {}
        for ref in series:
            name = normalize_name(ref.name or "")
            if name and name not in wanted:
                wanted[name] = ref.sequence
        current = await self.get_book_series(session, book.id)
        current_names = {s.name for _, s in current}
        updated = False

        for name, sequence in wanted.items():
            if name not in current_names:
                series_id = await self.get_or_create_series(session, index, name, scan)
                session.add(BookSeries(book_id=book.id, series_id=series_id, sequence=sequence))
                suffix = f" with sequence \"{sequence}\"" if sequence else ""
                _log(scan, LogLevel.DEBUG, f"Updating book \"{book.title}\" added series \"{name}\"{suffix}")
                updated = True

        for link, s in current:
            if s.name not in wanted:
                await session.delete(link)
                _log(scan, LogLevel.DEBUG, f"Updating book \"{book.title}\" removed series \"{s.name}\"")
                if scan is not None:
                    scan.series_removed_from_books.append(s.id)
                updated = True
            elif wanted[s.name] and wanted[s.name] != link.sequence:
                _log(scan, LogLevel.DEBUG, f"Updating book \"{book.title}\" series \"{s.name}\" sequence \"{link.sequence}\" => \"{wanted[s.name]}\"")
                link.sequence = wanted[s.name]
                session.add(link)
                updated = True
        return updated

    # --- Helpers shared by books and podcasts ---

    async def _scan_audio(self, library_files: Sequence[LibraryFile]) -> list[AudioFile]:
        if not library_files:
            return []
        return await self.audio_scanner.execute_media_file_scans(library_files)

    def _item_dir(self, item: LibraryItem) -> str | None:
        return None if item.is_file else item.path

    def _new_library_item(self, library: Library, scan_data: LibraryItemScanData, library_files: list[LibraryFile]) -> LibraryItem:
        return LibraryItem(
            id=uuid4(),
            library_id=library.id,
            ino=scan_data.ino,
            path=scan_data.path,
            rel_path=scan_data.rel_path,
            is_file=scan_data.is_file,
            media_type=library.media_type,
            is_missing=False,
            is_invalid=False,
            library_files=dump_models(library_files),
        )

    def _sync_item_fields(self, item: LibraryItem, scan_data: LibraryItemScanData, library_files: list[LibraryFile]) -> bool:
        """Bring path/ino/file list/missing flag in line with the scan. Returns True if anything changed."""
        changed = False
        for field, value in (
            ("ino", scan_data.ino),
            ("path", scan_data.path),
            ("rel_path", scan_data.rel_path),
            ("is_file", scan_data.is_file),
            ("is_missing", False),
        ):
            if value is not None and getattr(item, field) != value:
                setattr(item, field, value)
                changed = True
        dumped = dump_models(library_files)
        if dumped != item.library_files:
            item.library_files = dumped
            changed = True
        if changed:
            item.updated_at = datetime.utcnow()
        return changed

    def _check_cover(self, media: Book | Podcast, scan_data: LibraryItemScanData, scan: LibraryScan) -> bool:
        """Clear a cover whose file is gone, then pick one from the folder images if unset."""
        changed = False
        image_paths = {lf.metadata.path for lf in scan_data.image_library_files}
        # Extracted and downloaded covers live outside the item's image files; keep them while on disk
        if media.cover_path and media.cover_path not in image_paths and not Path(media.cover_path).exists():
            scan.add_log(LogLevel.DEBUG, f"Cover \"{media.cover_path}\" no longer exists - clearing")
            media.cover_path = None
            changed = True
        if not media.cover_path and image_paths:
            media.cover_path = find_cover_path(scan_data)
            changed = True
        return changed

    async def _extract_embedded_cover(
        self,
        media: Book | Podcast,
        audio_files: Sequence[AudioFile],
        item: LibraryItem,
        scan: LibraryScan,
    ) -> bool:
        if media.cover_path or not audio_files:
            return False
        cover_path = await self.cover_manager.save_embedded_cover_art(audio_files, item.id, self._item_dir(item))
        if not cover_path:
            return False
        scan.add_log(LogLevel.DEBUG, f"Extracted embedded cover art for \"{media.title}\" to \"{cover_path}\"")
        media.cover_path = cover_path
        return True

    # --- Books ---

    async def scan_new_book_item(
        self,
        session: AsyncSession,
        library: Library,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> LibraryItem | None:
        """Create a library item with its book. Returns None if the folder has no usable media."""
        audio_files = run_smart_track_order(await self._scan_audio(scan_data.audio_library_files))
        ebook = choose_ebook_file(scan_data, self.settings.audiobooks_only)

        if ebook is None and not audio_files:
            scan.add_log(
                LogLevel.WARN,
                f"Library item at path \"{scan_data.rel_path}\" has no audio files and no ebook file - ignoring",
            )
            return None

        metadata = self.extractor.extract(audio_files, scan_data, scan)
        item = self._new_library_item(library, scan_data, library_files_with_flags(scan_data.library_files, ebook))
        book = Book(
            library_item_id=item.id,
            title=metadata.title,
            title_ignore_prefix=metadata.title_ignore_prefix,
            subtitle=metadata.subtitle,
            published_year=metadata.published_year,
            publisher=metadata.publisher,
            description=metadata.description,
            isbn=metadata.isbn,
            asin=metadata.asin,
            language=metadata.language,
            explicit=bool(metadata.explicit),
            abridged=bool(metadata.abridged),
            cover_path=metadata.cover_path,
            duration=total_duration(audio_files),
            narrators=list(metadata.narrators),
            genres=list(metadata.genres),
            tags=list(metadata.tags),
            chapters=dump_models(metadata.chapters),
            audio_files=dump_models(audio_files),
            ebook_file=ebook.model_dump(mode="json") if ebook else None,
        )
        await self._extract_embedded_cover(book, audio_files, item, scan)

        session.add(item)
        await session.flush()
        session.add(book)
        await session.flush()

        await self.add_book_authors(session, index, book.id, metadata.authors, scan)
        await self.add_book_series(session, index, book.id, metadata.series, scan)
        await session.flush()

        index.add_book_values(book.narrators, book.genres, book.tags, book.publisher, book.language)
        scan.add_log(LogLevel.INFO, f"New book \"{book.title}\" added from \"{scan_data.rel_path}\"")
        return item

    async def _rescan_book_audio_files(
        self,
        book: Book,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
    ) -> list[AudioFile]:
        audio_files = load_audio_files(book.audio_files)
        if not scan_data.has_audio_file_changes and len(scan_data.audio_library_files) == len(audio_files):
            return audio_files

        audio_files = [af for af in audio_files if not scan_data.check_audio_file_removed(af)]

        if scan_data.audio_library_files_modified:
            scanned = await self._scan_audio(scan_data.audio_library_files_modified)
            for af in audio_files:
                match = next((s for s in scanned if s.metadata.path == af.metadata.path), None)
                if match is None:
                    match = next((s for s in scanned if s.ino == af.ino), None)
                if match is not None:
                    scanned.remove(match)
                    af.update_from_scan(match)
            # Modified files that were not on the book yet
            audio_files.extend(scanned)

        known_inos = {af.ino for af in audio_files}
        added = [lf for lf in scan_data.audio_library_files_added if lf.ino not in known_inos]
        audio_files.extend(await self._scan_audio(added))

        known_inos = {af.ino for af in audio_files}
        missing = [lf for lf in scan_data.audio_library_files if lf.ino not in known_inos]
        for lf in missing:
            scan.add_log(
                LogLevel.DEBUG,
                f"Existing audio library file \"{lf.metadata.rel_path or lf.metadata.filename}\" was not set on book \"{book.title}\" so setting it now",
            )
        audio_files.extend(await self._scan_audio(missing))

        return run_smart_track_order(audio_files)

    async def rescan_existing_book_item(
        self,
        session: AsyncSession,
        item: LibraryItem,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> tuple[LibraryItem, bool]:
        """
        Apply a rescan to an existing book.

        Returns (item, changed). Nothing is written when changed is False.
        """
        result = await session.execute(select(Book).where(Book.library_item_id == item.id))
        book = result.scalar_one()
        has_media_changes = False

        # Audio files
        audio_files = await self._rescan_book_audio_files(book, scan_data, scan)
        dumped_audio = dump_models(audio_files)
        if dumped_audio != (book.audio_files or []):
            book.audio_files = dumped_audio
            has_media_changes = True
        duration = total_duration(audio_files)
        if duration != book.duration:
            book.duration = duration
            has_media_changes = True

        if self._check_cover(book, scan_data, scan):
            has_media_changes = True

        # Ebook
        ebook = EbookFile.model_validate(book.ebook_file) if book.ebook_file else None
        if ebook is not None and (self.settings.audiobooks_only or scan_data.check_ebook_file_removed(ebook)):
            scan.add_log(LogLevel.DEBUG, f"Ebook \"{ebook.metadata.filename}\" removed from book \"{book.title}\"")
            ebook = None
            book.ebook_file = None
            has_media_changes = True
        if ebook is None:
            ebook = choose_ebook_file(scan_data, self.settings.audiobooks_only)
            if ebook is not None:
                book.ebook_file = ebook.model_dump(mode="json")
                has_media_changes = True

        item_updated = self._sync_item_fields(item, scan_data, library_files_with_flags(scan_data.library_files, ebook))

        # Metadata diff; unset values and empty lists never clear existing data
        metadata = self.extractor.extract(audio_files, scan_data, scan)
        for field in BOOK_SCALAR_FIELDS:
            value = getattr(metadata, field)
            if value is None or value == getattr(book, field):
                continue
            scan.add_log(LogLevel.DEBUG, f"Updating book {field} \"{getattr(book, field)}\" => \"{value}\" for book \"{metadata.title}\"")
            setattr(book, field, value)
            has_media_changes = True

        for field in BOOK_SET_FIELDS:
            value = getattr(metadata, field)
            existing = getattr(book, field) or []
            if value and set(value) != set(existing):
                scan.add_log(LogLevel.DEBUG, f"Updating book {field} \"{','.join(existing)}\" => \"{','.join(value)}\" for book \"{metadata.title}\"")
                setattr(book, field, list(value))
                has_media_changes = True

        if metadata.chapters:
            dumped_chapters = dump_models(metadata.chapters)
            if dumped_chapters != (book.chapters or []):
                scan.add_log(LogLevel.DEBUG, f"Updating book chapters for book \"{metadata.title}\"")
                book.chapters = dumped_chapters
                has_media_changes = True

        if metadata.cover_path and metadata.cover_path != book.cover_path:
            if not book.cover_path or not Path(book.cover_path).exists():
                scan.add_log(LogLevel.DEBUG, f"Updating book cover \"{book.cover_path}\" => \"{metadata.cover_path}\" for book \"{metadata.title}\"")
                book.cover_path = metadata.cover_path
                has_media_changes = True

        authors_updated = False
        if metadata.authors:
            authors_updated = await self.reconcile_book_authors(session, index, book, metadata.authors, scan)
        series_updated = False
        if metadata.series:
            series_updated = await self.reconcile_book_series(session, index, book, metadata.series, scan)

        if await self._extract_embedded_cover(book, audio_files, item, scan):
            has_media_changes = True

        if has_media_changes:
            book.updated_at = datetime.utcnow()
            session.add(book)
            index.add_book_values(book.narrators, book.genres, book.tags, book.publisher, book.language)
        if item_updated:
            session.add(item)
        if authors_updated or series_updated or has_media_changes or item_updated:
            await session.flush()

        return item, bool(has_media_changes or authors_updated or series_updated or item_updated)

    # --- Podcasts ---

    def _new_episode(self, podcast_id: UUID, index: int, audio_file: AudioFile) -> PodcastEpisode:
        tags = audio_file.meta_tags
        return PodcastEpisode(
            podcast_id=podcast_id,
            index=index,
            title=tags.get("tag_title") or PurePosixPath(audio_file.metadata.filename).stem,
            subtitle=tags.get("tag_subtitle"),
            description=tags.get("tag_description") or tags.get("tag_comment"),
            pub_date=tags.get("tag_date"),
            audio_file=audio_file.model_dump(mode="json"),
            chapters=dump_models(audio_file.chapters),
        )

    async def scan_new_podcast_item(
        self,
        session: AsyncSession,
        library: Library,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> LibraryItem | None:
        """Create a podcast item with one episode per audio file."""
        audio_files = run_smart_track_order(await self._scan_audio(scan_data.audio_library_files))
        if not audio_files:
            scan.add_log(LogLevel.WARN, f"Podcast at path \"{scan_data.rel_path}\" has no audio files - ignoring")
            return None

        metadata = self.extractor.extract_podcast(audio_files, scan_data)
        item = self._new_library_item(library, scan_data, list(scan_data.library_files))
        podcast = Podcast(
            library_item_id=item.id,
            title=metadata.title,
            title_ignore_prefix=metadata.title_ignore_prefix,
            author=metadata.author,
            description=metadata.description,
            release_date=metadata.release_date,
            genres=list(metadata.genres),
            language=metadata.language,
            explicit=bool(metadata.explicit),
            cover_path=metadata.cover_path,
        )
        await self._extract_embedded_cover(podcast, audio_files, item, scan)

        session.add(item)
        await session.flush()
        session.add(podcast)
        await session.flush()
        for af in audio_files:
            session.add(self._new_episode(podcast.id, af.index, af))
        await session.flush()

        index.add_book_values(genres=podcast.genres, language=podcast.language)
        scan.add_log(LogLevel.INFO, f"New podcast \"{podcast.title}\" added with {len(audio_files)} episodes")
        return item

    async def get_podcast_episodes(self, session: AsyncSession, podcast_id: UUID) -> list[PodcastEpisode]:
        result = await session.execute(
            select(PodcastEpisode).where(PodcastEpisode.podcast_id == podcast_id).order_by(PodcastEpisode.index)
        )
        return list(result.scalars().all())

    async def rescan_existing_podcast_item(
        self,
        session: AsyncSession,
        item: LibraryItem,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> tuple[LibraryItem, bool]:
        result = await session.execute(select(Podcast).where(Podcast.library_item_id == item.id))
        podcast = result.scalar_one()
        episodes = await self.get_podcast_episodes(session, podcast.id)
        has_media_changes = False

        remaining: list[PodcastEpisode] = []
        for episode in episodes:
            if episode.audio_file and scan_data.check_audio_file_removed(AudioFile.model_validate(episode.audio_file)):
                scan.add_log(LogLevel.DEBUG, f"Removing episode \"{episode.title}\" from podcast \"{podcast.title}\"")
                await session.delete(episode)
                has_media_changes = True
            else:
                remaining.append(episode)

        if scan_data.audio_library_files_modified:
            scanned = await self._scan_audio(scan_data.audio_library_files_modified)
            for episode in remaining:
                if not episode.audio_file:
                    continue
                current = AudioFile.model_validate(episode.audio_file)
                match = next((s for s in scanned if s.metadata.path == current.metadata.path), None)
                if match is None:
                    match = next((s for s in scanned if s.ino == current.ino), None)
                if match is None:
                    continue
                scanned.remove(match)
                if current.update_from_scan(match):
                    episode.audio_file = current.model_dump(mode="json")
                    episode.chapters = dump_models(current.chapters)
                    episode.updated_at = datetime.utcnow()
                    session.add(episode)
                    has_media_changes = True

        known_inos = {e.audio_file.get("ino") for e in remaining if e.audio_file}
        new_files = [lf for lf in scan_data.audio_library_files if lf.ino not in known_inos]
        if new_files:
            next_index = max((e.index for e in remaining), default=0) + 1
            for af in await self._scan_audio(new_files):
                session.add(self._new_episode(podcast.id, next_index, af))
                scan.add_log(LogLevel.DEBUG, f"Adding episode \"{af.metadata.filename}\" to podcast \"{podcast.title}\"")
                next_index += 1
                has_media_changes = True

        if self._check_cover(podcast, scan_data, scan):
            has_media_changes = True

        item_updated = self._sync_item_fields(item, scan_data, list(scan_data.library_files))

        audio_files = [AudioFile.model_validate(e.audio_file) for e in remaining if e.audio_file]
        metadata = self.extractor.extract_podcast(run_smart_track_order(audio_files), scan_data)
        for field in PODCAST_SCALAR_FIELDS:
            value = getattr(metadata, field)
            if value is None or value == getattr(podcast, field):
                continue
            setattr(podcast, field, value)
            has_media_changes = True
        if metadata.genres and set(metadata.genres) != set(podcast.genres or []):
            podcast.genres = list(metadata.genres)
            has_media_changes = True

        if await self._extract_embedded_cover(podcast, audio_files, item, scan):
            has_media_changes = True

        if has_media_changes:
            podcast.updated_at = datetime.utcnow()
            session.add(podcast)
            index.add_book_values(genres=podcast.genres, language=podcast.language)
        if item_updated:
            session.add(item)
        if has_media_changes or item_updated:
            await session.flush()
        return item, bool(has_media_changes or item_updated)

    # --- Dispatch ---

    async def scan_new_item(
        self,
        session: AsyncSession,
        library: Library,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> LibraryItem | None:
        if library.media_type == MediaType.PODCAST:
            return await self.scan_new_podcast_item(session, library, scan_data, scan, index)
        return await self.scan_new_book_item(session, library, scan_data, scan, index)

    async def rescan_existing_item(
        self,
        session: AsyncSession,
        item: LibraryItem,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
    ) -> tuple[LibraryItem, bool]:
        if item.media_type == MediaType.PODCAST:
            return await self.rescan_existing_podcast_item(session, item, scan_data, scan, index)
        return await self.rescan_existing_book_item(session, item, scan_data, scan, index)


async def get_expanded_item(session: AsyncSession, item: LibraryItem) -> dict[str, Any]:
    """Item with its media, authors, series and episodes, for events and API responses."""
    data = item.model_dump(mode="json")
    if item.media_type == MediaType.PODCAST:
        result = await session.execute(select(Podcast).where(Podcast.library_item_id == item.id))
        podcast = result.scalar_one_or_none()
        if podcast is not None:
            media = podcast.model_dump(mode="json")
            episodes = await session.execute(
                select(PodcastEpisode).where(PodcastEpisode.podcast_id == podcast.id).order_by(PodcastEpisode.index)
            )
            media["episodes"] = [e.model_dump(mode="json") for e in episodes.scalars().all()]
            data["media"] = media
        return data

    result = await session.execute(select(Book).where(Book.library_item_id == item.id))
    book = result.scalar_one_or_none()
    if book is not None:
        media = book.model_dump(mode="json")
        authors = await session.execute(
            select(Author).join(BookAuthor, BookAuthor.author_id == Author.id)
            .where(BookAuthor.book_id == book.id).order_by(BookAuthor.created_at)
        )
        media["authors"] = [{"id": str(a.id), "name": a.name} for a in authors.scalars().all()]
        series = await session.execute(
            select(Series, BookSeries.sequence).join(BookSeries, BookSeries.series_id == Series.id)
            .where(BookSeries.book_id == book.id).order_by(BookSeries.created_at)
        )
        media["series"] = [{"id": str(s.id), "name": s.name, "sequence": seq} for s, seq in series.all()]
        data["media"] = media
    return data
