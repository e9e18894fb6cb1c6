"""Quick match: refine a library item with metadata from an external provider."""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import ScannerSettings
from db.models import Book, LibraryItem, MediaType, Podcast, PodcastEpisode
from services.cover_manager import CoverManager
from services.filter_data import LibraryFilterIndex
from services.library_manager import LibraryManager, get_expanded_item
from services.library_scan import EventEmitter, NullEmitter
from services.providers import (
    BookFinder,
    BookMatch,
    ITunesPodcastProvider,
    PodcastFeedEpisode,
    PodcastMatch,
    ProviderError,
)
from services.sidecars import SeriesRef
from services.title_matcher import find_matching_episodes_in_feed, get_title_ignore_prefix

logger = logging.getLogger(__name__)

BOOK_DETAIL_KEYS = (
    "title", "subtitle", "description", "narrator", "publisher", "published_year",
    "genres", "tags", "language", "explicit", "abridged", "asin", "isbn",
)


class QuickMatchOptions(BaseModel):
    provider: str | None = None
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    asin: str | None = None
    override_defaults: bool = False
    override_cover: bool = False
    override_details: bool = False


class QuickMatchResult(BaseModel):
    updated: bool = False
    item: dict[str, Any] | None = None
    warning: str | None = None


def _split_csv(value: str | list[str]) -> list[str]:
    if isinstance(value, list):
        return [v.strip() for v in value if v and v.strip()]
    return [v.strip() for v in value.split(",") if v.strip()]


class LibraryMatcher:
    """Applies provider candidates to books and podcasts under the override policy."""

    def __init__(
        self,
        settings: ScannerSettings,
        book_finder: BookFinder,
        podcast_provider: ITunesPodcastProvider,
        cover_manager: CoverManager,
        library_manager: LibraryManager,
        emitter: EventEmitter | None = None,
    ):
        self.settings = settings
        self.book_finder = book_finder
        self.podcast_provider = podcast_provider
        self.cover_manager = cover_manager
        self.library_manager = library_manager
        self.emitter = emitter or NullEmitter()

    def resolve_options(self, options: QuickMatchOptions) -> QuickMatchOptions:
        """"Prefer matched metadata" turns on both overrides unless the caller chose its own defaults."""
        if not options.override_defaults and self.settings.prefer_matched_metadata:
            return options.model_copy(update={"override_cover": True, "override_details": True})
        return options

    @staticmethod
    def _candidate_covers(results: list[BookMatch] | list[PodcastMatch]) -> list[str]:
        """Top candidate's cover, then the runner-up's as the only fallback."""
        if not results or not results[0].cover:
            return []
        covers = [results[0].cover]
        if len(results) > 1 and results[1].cover:
            covers.append(results[1].cover)
        return covers

    async def _apply_cover(
        self,
        media: Book | Podcast,
        item: LibraryItem,
        covers: list[str],
        options: QuickMatchOptions,
    ) -> bool:
        """Download the best candidate cover, falling back to the second candidate once."""
        if not covers or (media.cover_path and not options.override_cover):
            return False
        item_dir = None if item.is_file else item.path
        for attempt, url in enumerate(covers[:2], start=1):
            logger.debug("Updating cover \"%s\" (attempt %d)", url, attempt)
            result = await self.cover_manager.download_cover_from_url(item.id, item_dir, url)
            if result.cover and not result.error:
                media.cover_path = result.cover
                return True
            logger.warning("Match cover \"%s\" failed to use: %s", url, result.error or "Unknown Error")
        return False

    async def quick_match_library_item(
        self,
        session: AsyncSession,
        item: LibraryItem,
        options: QuickMatchOptions,
        index: LibraryFilterIndex,
        provider: str = "audible",
    ) -> QuickMatchResult:
        options = self.resolve_options(options)
        provider = options.provider or provider

        if item.media_type == MediaType.PODCAST:
            return await self._quick_match_podcast(session, item, options, provider)
        return await self._quick_match_book(session, item, options, index, provider)

    # --- Books ---

    async def _quick_match_book(
        self,
        session: AsyncSession,
        item: LibraryItem,
        options: QuickMatchOptions,
        index: LibraryFilterIndex,
        provider: str,
    ) -> QuickMatchResult:
        result = await session.execute(select(Book).where(Book.library_item_id == item.id))
        book = result.scalar_one()
        authors = await self.library_manager.get_book_authors(session, book.id)
        series = await self.library_manager.get_book_series(session, book.id)

        search_title = options.title or book.title
        search_author = options.author or ", ".join(a.name for _, a in authors) or None
        try:
            results = await self.book_finder.search(
                provider,
                search_title,
                search_author,
                options.isbn or book.isbn,
                options.asin or book.asin,
            )
        except ProviderError as e:
            logger.warning("Quick match search failed for \"%s\": %s", search_title, e)
            return QuickMatchResult(warning=f"{provider} search failed: {e}")

        if not results:
            return QuickMatchResult(warning=f"No {provider} match found")

        match = results[0]
        updated = await self._apply_cover(book, item, self._candidate_covers(results), options)

        payload = self.build_book_update_payload(book, bool(authors), bool(series), match, options)
        for key, value in payload.items():
            if key in ("authors", "series"):
                continue
            if getattr(book, key) != value:
                setattr(book, key, value)
                updated = True
        if "title" in payload:
            book.title_ignore_prefix = get_title_ignore_prefix(book.title, self.settings.sorting_prefixes)

        if "authors" in payload:
            if await self.library_manager.reconcile_book_authors(session, index, book, payload["authors"]):
                updated = True
        if "series" in payload:
            if await self.library_manager.reconcile_book_series(session, index, book, payload["series"]):
                updated = True

        if updated:
            book.updated_at = datetime.utcnow()
            session.add(book)
            await session.flush()
            index.add_book_values(book.narrators, book.genres, book.tags, book.publisher, book.language)
            expanded = await get_expanded_item(session, item)
            await self.emitter.emit("item_updated", expanded)
            return QuickMatchResult(updated=True, item=expanded)

        return QuickMatchResult(updated=False, item=await get_expanded_item(session, item))

    def build_book_update_payload(
        self,
        book: Book,
        has_authors: bool,
        has_series: bool,
        match: BookMatch,
        options: QuickMatchOptions,
    ) -> dict[str, Any]:
        """Fields to apply: only unset ones unless details are overridden."""
        override = options.override_details
        payload: dict[str, Any] = {}
        for key in BOOK_DETAIL_KEYS:
            value = getattr(match, key)
            if not value:
                continue
            if key == "narrator":
                if not book.narrators or override:
                    payload["narrators"] = _split_csv(value)
            elif key in ("genres", "tags"):
                if not getattr(book, key) or override:
                    if not isinstance(value, list):
                        logger.warning("quick match %s is not a list: %r", key, value)
                    payload[key] = _split_csv(value)
            elif not getattr(book, key) or override:
                payload[key] = value

        if match.author and (not has_authors or override):
            payload["authors"] = _split_csv(match.author)
        if match.series and (not has_series or override):
            payload["series"] = [SeriesRef(name=s.series, sequence=s.sequence) for s in match.series]
        return payload

    # --- Podcasts ---

    async def _quick_match_podcast(
        self,
        session: AsyncSession,
        item: LibraryItem,
        options: QuickMatchOptions,
        provider: str,
    ) -> QuickMatchResult:
        result = await session.execute(select(Podcast).where(Podcast.library_item_id == item.id))
        podcast = result.scalar_one()

        try:
            results = await self.podcast_provider.search(options.title or podcast.title)
        except ProviderError as e:
            logger.warning("Podcast search failed for \"%s\": %s", podcast.title, e)
            return QuickMatchResult(warning=f"{provider} search failed: {e}")
        if not results:
            return QuickMatchResult(warning=f"No {provider} match found")

        match = results[0]
        updated = await self._apply_cover(podcast, item, self._candidate_covers(results), options)

        payload = self.build_podcast_update_payload(podcast, match, options)
        for key, value in payload.items():
            setattr(podcast, key, value)
            updated = True
        if "title" in payload:
            podcast.title_ignore_prefix = get_title_ignore_prefix(podcast.title, self.settings.sorting_prefixes)

        if updated:
            podcast.updated_at = datetime.utcnow()
            session.add(podcast)
            await session.flush()
            if podcast.feed_url:
                await self.quick_match_podcast_episodes(session, podcast, options)
            expanded = await get_expanded_item(session, item)
            await self.emitter.emit("item_updated", expanded)
            return QuickMatchResult(updated=True, item=expanded)

        return QuickMatchResult(updated=False, item=await get_expanded_item(session, item))

    def build_podcast_update_payload(
        self,
        podcast: Podcast,
        match: PodcastMatch,
        options: QuickMatchOptions,
    ) -> dict[str, Any]:
        transformed: dict[str, Any] = {
            "title": match.title,
            "author": match.artist_name,
            "genres": match.genres,
            "itunes_id": match.id,
            "itunes_page_url": match.page_url,
            "itunes_artist_id": match.artist_id,
            "release_date": match.release_date,
            "image_url": match.cover,
            "feed_url": match.feed_url,
            "description": match.description_plain,
        }
        payload: dict[str, Any] = {}
        for key, value in transformed.items():
            if not value:
                continue
            current = getattr(podcast, key)
            if key == "genres":
                if not current or options.override_details:
                    genres = _split_csv(value)
                    if genres != current:
                        payload[key] = genres
            elif current != value and (not current or options.override_details):
                payload[key] = value
        return payload

    async def quick_match_podcast_episodes(
        self,
        session: AsyncSession,
        podcast: Podcast,
        options: QuickMatchOptions,
    ) -> int:
        """Match episodes that have no enclosure against the podcast feed. Returns the number updated."""
        result = await session.execute(select(PodcastEpisode).where(PodcastEpisode.podcast_id == podcast.id))
        episodes = [e for e in result.scalars().all() if not (e.enclosure or {}).get("url")]
        if not episodes or not podcast.feed_url:
            return 0

        feed = await self.podcast_provider.get_podcast_feed(podcast.feed_url)
        if feed is None:
            logger.error("Unable to quick match episodes, feed not found for \"%s\"", podcast.feed_url)
            return 0

        updated = 0
        for episode in episodes:
            matches = find_matching_episodes_in_feed(feed.episodes, episode.title or "")
            if matches and self.update_episode_with_match(episode, matches[0].episode, options):
                session.add(episode)
                updated += 1
        if updated:
            await session.flush()
        return updated

    def update_episode_with_match(
        self,
        episode: PodcastEpisode,
        feed_episode: PodcastFeedEpisode,
        options: QuickMatchOptions,
    ) -> bool:
        logger.debug("Found episode match for \"%s\" => %s", episode.title, feed_episode.title)
        transformed: dict[str, Any] = {
            "title": feed_episode.title,
            "subtitle": feed_episode.subtitle,
            "description": feed_episode.description,
            "enclosure": feed_episode.enclosure.model_dump(mode="json") if feed_episode.enclosure else None,
            "episode": feed_episode.episode,
            "episode_type": feed_episode.episode_type or "full",
            "season": feed_episode.season,
            "pub_date": feed_episode.pub_date,
            "published_at": feed_episode.published_at,
        }
        changed = False
        for key, value in transformed.items():
            if not value:
                continue
            current = getattr(episode, key)
            if key == "enclosure":
                if current != value:
                    episode.enclosure = dict(value)
                    changed = True
            elif current != value and (not current or options.override_details):
                setattr(episode, key, value)
                changed = True
        if changed:
            episode.updated_at = datetime.utcnow()
        return changed
