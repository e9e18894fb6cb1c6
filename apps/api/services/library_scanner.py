"""Library scan orchestration: sequential item processing, cancellation and missing-item flagging."""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import ScannerSettings, Settings, get_settings
from db.models import Book, Library, LibraryItem, MediaType
from services.audio_probe import AudioFileScanner
from services.cover_manager import CoverManager
from services.filter_data import FilterIndexRegistry, LibraryFilterIndex
from services.library_manager import LibraryManager, get_expanded_item
from services.library_matcher import LibraryMatcher, QuickMatchOptions, QuickMatchResult
from services.library_scan import EventEmitter, LibraryScan, LogLevel, NullEmitter, ScanType
from services.providers import AudibleBookProvider, BookFinder, ITunesPodcastProvider
from services.scan_data import LibraryItemScanData

logger = logging.getLogger(__name__)


class ScanInProgressError(Exception):
    """A scan or match is already running for the library."""

    def __init__(self, library_id: UUID):
        self.library_id = library_id
        super().__init__(f"Library {library_id} is already being scanned")


class LibraryScanner:
    """
    Runs scans and library-wide matches.

    One session per library at a time; items inside a session are processed one
    after another so every create-or-reuse lookup sees the previous items' entities.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        emitter: EventEmitter | None = None,
        filter_indexes: FilterIndexRegistry | None = None,
        audio_scanner: AudioFileScanner | None = None,
        book_finder: BookFinder | None = None,
        podcast_provider: ITunesPodcastProvider | None = None,
    ):
        self.settings = settings or get_settings()
        self.emitter = emitter or NullEmitter()
        self.filter_indexes = filter_indexes or FilterIndexRegistry()
        self.audio_scanner = audio_scanner or AudioFileScanner(self.settings.ffprobe_path)
        self.book_finder = book_finder or BookFinder({
            "audible": AudibleBookProvider(self.settings.audible_auth_file, self.settings.audible_locale),
        })
        self.podcast_provider = podcast_provider or ITunesPodcastProvider(
            self.settings.itunes_search_url, self.settings.provider_timeout_seconds
        )
        self._active: dict[UUID, LibraryScan] = {}
        self._cancel_requested: set[UUID] = set()
        self._item_matches: set[UUID] = set()

    # --- Run state ---

    @property
    def active_scans(self) -> list[LibraryScan]:
        return list(self._active.values())

    def is_scanning(self, library_id: UUID) -> bool:
        return library_id in self._active or library_id in self._item_matches

    def cancel(self, library_id: UUID) -> bool:
        """Request cancellation. Returns False if nothing is running for the library."""
        if library_id not in self._active:
            return False
        logger.info("Cancel requested for library scan %s", library_id)
        self._cancel_requested.add(library_id)
        return True

    def _begin(self, library: Library, scan_type: ScanType) -> LibraryScan:
        if self.is_scanning(library.id):
            raise ScanInProgressError(library.id)
        scan = LibraryScan(library_id=library.id, library_name=library.name, type=scan_type)
        scan.start()
        self._active[library.id] = scan
        self._cancel_requested.discard(library.id)
        return scan

    def _end(self, library_id: UUID) -> None:
        self._active.pop(library_id, None)
        self._cancel_requested.discard(library_id)

    async def _complete(self, scan: LibraryScan, canceled: bool) -> None:
        scan.finish(canceled=canceled)
        data = scan.emit_data
        if canceled:
            data["results"] = None
            scan.add_log(LogLevel.INFO, f"{scan.type.value.capitalize()} canceled")
        else:
            scan.add_log(
                LogLevel.INFO,
                f"{scan.type.value.capitalize()} complete in {scan.elapsed_seconds:.1f}s: "
                f"{scan.results_added} added, {scan.results_updated} updated, "
                f"{scan.results_missing} missing, {scan.results_unchanged} unchanged",
            )
        await self.emitter.emit("scan_complete", data)

    # --- Pipeline construction ---

    def scanner_settings(self, library: Library | None = None) -> ScannerSettings:
        return ScannerSettings.from_settings(self.settings, library)

    def build_library_manager(self, scanner_settings: ScannerSettings) -> LibraryManager:
        cover_manager = CoverManager(
            scanner_settings, self.settings.ffmpeg_path, self.settings.provider_timeout_seconds
        )
        return LibraryManager(scanner_settings, self.audio_scanner, cover_manager, self.emitter)

    def build_matcher(self, scanner_settings: ScannerSettings) -> LibraryMatcher:
        library_manager = self.build_library_manager(scanner_settings)
        return LibraryMatcher(
            scanner_settings,
            self.book_finder,
            self.podcast_provider,
            library_manager.cover_manager,
            library_manager,
            self.emitter,
        )

    async def get_filter_index(self, session: AsyncSession, library_id: UUID) -> LibraryFilterIndex:
        return await self.filter_indexes.get(session, library_id)

    async def _recover(self, session: AsyncSession, library_id: UUID) -> Library:
        """Roll back a failed item and resync the filter index with the store."""
        await session.rollback()
        await self.filter_indexes.reload(session, library_id)
        library = await session.get(Library, library_id)
        if library is None:
            raise LookupError(f"Library {library_id} no longer exists")
        return library

    # --- Scan ---

    async def scan_library(
        self,
        session: AsyncSession,
        library: Library,
        scan_datas: Sequence[LibraryItemScanData],
        force_rescan: bool = False,
    ) -> LibraryScan:
        """
        Reconcile the library with the given scan input.

        Existing items are matched by ino, then by path. Items absent from the input
        are flagged missing. On cancellation the remaining items are skipped, no
        missing flags are set and scan_complete carries no results.

        Raises:
            ScanInProgressError: A scan or match is already running for the library
            OperationalError, InterfaceError: The store is unreachable
        """
        scan = self._begin(library, ScanType.SCAN)
        library_id = library.id
        try:
            await self.emitter.emit("scan_start", scan.emit_data)
            scan.add_log(LogLevel.INFO, f"Scan started for library \"{library.name}\" ({len(scan_datas)} items)")

            index = await self.get_filter_index(session, library_id)
            manager = self.build_library_manager(self.scanner_settings(library))

            result = await session.execute(select(LibraryItem).where(LibraryItem.library_id == library_id))
            existing_items = result.scalars().all()
            ids_by_ino = {item.ino: item.id for item in existing_items if item.ino}
            ids_by_path = {item.path: item.id for item in existing_items}
            all_ids = [item.id for item in existing_items]
            seen_ids: set[UUID] = set()

            canceled = False
            for scan_data in scan_datas:
                if library_id in self._cancel_requested:
                    canceled = True
                    break

                item_id = (ids_by_ino.get(scan_data.ino) if scan_data.ino else None) or ids_by_path.get(scan_data.path)
                try:
                    if item_id is not None:
                        seen_ids.add(item_id)
                        await self._rescan_item(session, manager, item_id, scan_data, scan, index, force_rescan)
                    else:
                        item = await manager.scan_new_item(session, library, scan_data, scan, index)
                        await session.commit()
                        if item is not None:
                            seen_ids.add(item.id)
                            scan.results_added += 1
                            await self.emitter.emit("item_added", await get_expanded_item(session, item))
                except (OperationalError, InterfaceError):
                    raise
                except Exception as e:
                    logger.exception("Failed to scan item %s", scan_data.rel_path)
                    scan.add_log(LogLevel.ERROR, f"Failed to scan \"{scan_data.rel_path}\": {e}")
                    library = await self._recover(session, library_id)

            if not canceled and library_id in self._cancel_requested:
                canceled = True

            if not canceled:
                await self._flag_missing(session, [i for i in all_ids if i not in seen_ids], scan)

            await self._complete(scan, canceled)
            return scan
        finally:
            self._end(library_id)

    async def _rescan_item(
        self,
        session: AsyncSession,
        manager: LibraryManager,
        item_id: UUID,
        scan_data: LibraryItemScanData,
        scan: LibraryScan,
        index: LibraryFilterIndex,
        force_rescan: bool,
    ) -> None:
        item = await session.get(LibraryItem, item_id)
        if item is None:
            return
        if not force_rescan and not item.is_missing and not scan_data.has_changes:
            scan.results_unchanged += 1
            return
        if item.is_missing:
            scan.add_log(LogLevel.INFO, f"Item \"{item.rel_path}\" was missing and is back")

        item, changed = await manager.rescan_existing_item(session, item, scan_data, scan, index)
        await session.commit()
        if changed:
            scan.results_updated += 1
            await self.emitter.emit("item_updated", await get_expanded_item(session, item))
        else:
            scan.results_unchanged += 1

    async def _flag_missing(self, session: AsyncSession, item_ids: Sequence[UUID], scan: LibraryScan) -> None:
        for item_id in item_ids:
            item = await session.get(LibraryItem, item_id)
            if item is None or item.is_missing:
                continue
            item.is_missing = True
            item.updated_at = datetime.utcnow()
            session.add(item)
            scan.results_missing += 1
            scan.add_log(LogLevel.WARN, f"Item \"{item.rel_path}\" is missing")
            await session.commit()
            await self.emitter.emit("item_removed", {"id": str(item.id), "library_id": str(item.library_id)})

    # --- Match ---

    async def quick_match_item(
        self,
        session: AsyncSession,
        item: LibraryItem,
        options: QuickMatchOptions,
    ) -> QuickMatchResult:
        """
        Quick match one item outside of a library-wide run and commit it.

        Raises:
            ScanInProgressError: A scan or match is already running for the library
        """
        item_id, library_id = item.id, item.library_id
        if self.is_scanning(library_id):
            raise ScanInProgressError(library_id)
        library = await session.get(Library, library_id)
        if library is None:
            raise LookupError(f"Library {library_id} not found")

        self._item_matches.add(library_id)
        try:
            index = await self.get_filter_index(session, library_id)
            matcher = self.build_matcher(self.scanner_settings(library))
            result = await matcher.quick_match_library_item(session, item, options, index, provider=library.provider)
            await session.commit()
            return result
        except Exception:
            logger.exception("Quick match failed for item %s", item_id)
            await self._recover(session, library_id)
            raise
        finally:
            self._item_matches.discard(library_id)

    async def match_library(self, session: AsyncSession, library: Library) -> LibraryScan | None:
        """
        Quick match every present item in a book library.

        Returns None when there is nothing to do (podcast library or empty library).
        """
        if library.media_type == MediaType.PODCAST:
            logger.error("Match all not supported for podcast libraries (%s)", library.name)
            return None

        result = await session.execute(
            select(LibraryItem.id)
            .where(LibraryItem.library_id == library.id, LibraryItem.is_missing.is_(False))
            .order_by(LibraryItem.created_at)
        )
        item_ids = list(result.scalars().all())
        if not item_ids:
            logger.error("Library has no items %s", library.id)
            return None

        scan = self._begin(library, ScanType.MATCH)
        library_id = library.id
        provider = library.provider
        scanner_settings = self.scanner_settings(library)
        try:
            await self.emitter.emit("scan_start", scan.emit_data)
            index = await self.get_filter_index(session, library_id)
            matcher = self.build_matcher(scanner_settings)
            options = QuickMatchOptions(provider=provider)

            canceled = False
            total = len(item_ids)
            for i, item_id in enumerate(item_ids, start=1):
                if library_id in self._cancel_requested:
                    canceled = True
                    break

                item = await session.get(LibraryItem, item_id)
                if item is None:
                    continue
                book_result = await session.execute(select(Book).where(Book.library_item_id == item_id))
                book = book_result.scalar_one_or_none()
                if book is None:
                    continue
                if book.asin and scanner_settings.skip_matching_media_with_asin:
                    scan.add_log(LogLevel.DEBUG, f"Skipping \"{book.title}\" because it already has an ASIN ({i} of {total})")
                    continue
                if book.isbn and scanner_settings.skip_matching_media_with_isbn:
                    scan.add_log(LogLevel.DEBUG, f"Skipping \"{book.title}\" because it already has an ISBN ({i} of {total})")
                    continue

                scan.add_log(LogLevel.DEBUG, f"Quick matching \"{book.title}\" ({i} of {total})")
                try:
                    match_result = await matcher.quick_match_library_item(session, item, options, index, provider)
                    await session.commit()
                except (OperationalError, InterfaceError):
                    raise
                except Exception as e:
                    logger.exception("Failed to match item %s", item_id)
                    scan.add_log(LogLevel.ERROR, f"Failed to match \"{book.title}\": {e}")
                    await self._recover(session, library_id)
                    continue

                if match_result.warning:
                    scan.add_log(LogLevel.WARN, f"Match warning {match_result.warning} for library item \"{book.title}\"")
                elif match_result.updated:
                    scan.results_updated += 1

            if not canceled and library_id in self._cancel_requested:
                canceled = True
            await self._complete(scan, canceled)
            return scan
        finally:
            self._end(library_id)
