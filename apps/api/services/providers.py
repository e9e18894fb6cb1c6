"""Metadata providers used by quick match: Audible catalog for books, iTunes for podcasts."""

import asyncio
import logging
import re
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Protocol

import audible
import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from db.models import EpisodeEnclosure

logger = logging.getLogger(__name__)

CATALOG_RESPONSE_GROUPS = ",".join([
    "contributors",
    "product_desc",
    "product_attrs",
    "product_extended_attrs",
    "media",
    "series",
    "category_ladders",
])


class ProviderError(Exception):
    """Base exception for metadata provider errors."""
    pass


class ProviderAuthError(ProviderError):
    """Provider credentials missing or rejected."""
    pass


class ProviderRequestError(ProviderError):
    """Provider request failed."""
    pass


# --- Candidates ---

class SeriesMatch(BaseModel):
    series: str
    sequence: str | None = None


class BookMatch(BaseModel):
    """One book candidate. ``author`` and ``narrator`` are comma-separated names."""
    title: str | None = None
    subtitle: str | None = None
    author: str | None = None
    narrator: str | None = None
    publisher: str | None = None
    published_year: str | None = None
    description: str | None = None
    cover: str | None = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    series: list[SeriesMatch] = Field(default_factory=list)
    language: str | None = None
    explicit: bool | None = None
    abridged: bool | None = None
    asin: str | None = None
    isbn: str | None = None


class PodcastMatch(BaseModel):
    id: str | None = None
    artist_id: str | None = None
    title: str | None = None
    artist_name: str | None = None
    description_plain: str | None = None
    release_date: str | None = None
    genres: list[str] = Field(default_factory=list)
    cover: str | None = None
    feed_url: str | None = None
    page_url: str | None = None
    explicit: bool | None = None


class PodcastFeedEpisode(BaseModel):
    title: str | None = None
    subtitle: str | None = None
    description: str | None = None
    enclosure: EpisodeEnclosure | None = None
    episode: str | None = None
    episode_type: str | None = None
    season: str | None = None
    pub_date: str | None = None
    published_at: int | None = None


class PodcastFeed(BaseModel):
    title: str | None = None
    description: str | None = None
    episodes: list[PodcastFeedEpisode] = Field(default_factory=list)


class BookProvider(Protocol):
    async def search(
        self,
        title: str | None,
        author: str | None = None,
        isbn: str | None = None,
        asin: str | None = None,
    ) -> list[BookMatch]: ...


def _html_to_text(value: str | None) -> str | None:
    if not value:
        return None
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return text or None


# --- Audible ---

class AudibleBookProvider:
    """Audible catalog search through the audible package (sync client, run in a thread)."""

    def __init__(self, auth_file: Path, locale: str = "us"):
        self.auth_file = auth_file
        self.locale = locale

    def _client(self) -> audible.Client:
        if not self.auth_file.exists():
            raise ProviderAuthError(f"Audible auth file not found: {self.auth_file}")
        try:
            auth = audible.Authenticator.from_file(self.auth_file)
        except (OSError, ValueError) as e:
            raise ProviderAuthError(f"Invalid Audible auth file: {e}") from e
        return audible.Client(auth, country_code=self.locale)

    async def search(
        self,
        title: str | None,
        author: str | None = None,
        isbn: str | None = None,
        asin: str | None = None,
    ) -> list[BookMatch]:
        if not (title or asin or isbn):
            return []
        try:
            products = await asyncio.to_thread(self._search_sync, title, author, isbn, asin)
        except ProviderError:
            raise
        except Exception as e:
            error_msg = f"Audible catalog request failed: {e}"
            logger.error(error_msg)
            raise ProviderRequestError(error_msg) from e
        return [self.product_to_match(p) for p in products if isinstance(p, dict)]

    def _search_sync(
        self,
        title: str | None,
        author: str | None,
        isbn: str | None,
        asin: str | None,
    ) -> list[dict[str, Any]]:
        client = self._client()
        try:
            if asin:
                resp = client.get(
                    f"1.0/catalog/products/{asin}",
                    params={"response_groups": CATALOG_RESPONSE_GROUPS},
                )
                product = resp.get("product") if isinstance(resp, dict) else None
                if product and product.get("title"):
                    return [product]

            params: dict[str, Any] = {
                "num_results": 10,
                "products_sort_by": "Relevance",
                "response_groups": CATALOG_RESPONSE_GROUPS,
            }
            if isbn:
                params["keywords"] = isbn
            else:
                params["title"] = title
                if author:
                    params["author"] = author
            resp = client.get("1.0/catalog/products", params=params)
            products = resp.get("products", []) if isinstance(resp, dict) else []
            return products if isinstance(products, list) else []
        finally:
            client.close()

    @staticmethod
    def product_to_match(product: dict[str, Any]) -> BookMatch:
        """Map a catalog product to a BookMatch."""
        def names(key: str) -> str | None:
            people = [p.get("name", "").strip() for p in product.get(key) or [] if isinstance(p, dict)]
            joined = ", ".join(n for n in people if n)
            return joined or None

        genres: list[str] = []
        tags: list[str] = []
        for ladder in product.get("category_ladders") or []:
            for depth, category in enumerate(ladder.get("ladder") or []):
                name = (category.get("name") or "").strip()
                if not name:
                    continue
                target = genres if depth == 0 else tags
                if name not in target:
                    target.append(name)

        images = product.get("product_images") or {}
        cover = images.get("1215") or images.get("500") or next(iter(images.values()), None)

        release_date = product.get("release_date") or product.get("issue_date")
        series = [
            SeriesMatch(series=s["title"], sequence=str(s["sequence"]) if s.get("sequence") else None)
            for s in product.get("series") or []
            if isinstance(s, dict) and s.get("title")
        ]

        format_type = (product.get("format_type") or "").lower()
        return BookMatch(
            title=product.get("title"),
            subtitle=product.get("subtitle"),
            author=names("authors"),
            narrator=names("narrators"),
            publisher=product.get("publisher_name"),
            published_year=release_date[:4] if release_date else None,
            description=_html_to_text(product.get("publisher_summary") or product.get("merchandising_summary")),
            cover=cover,
            genres=genres,
            tags=tags,
            series=series,
            language=(product.get("language") or None),
            explicit=product.get("is_adult_product"),
            abridged=(format_type == "abridged") if format_type else None,
            asin=product.get("asin"),
            isbn=product.get("isbn"),
        )


# --- iTunes ---

def parse_podcast_feed(xml_text: str) -> PodcastFeed | None:
    """Parse an RSS podcast feed. Returns None if there is no <channel>."""
    soup = BeautifulSoup(xml_text, "html.parser")
    channel = soup.find("channel")
    if channel is None:
        return None

    def text_of(parent: Any, name: str) -> str | None:
        tag = parent.find(name, recursive=False)
        if tag is None:
            return None
        value = tag.get_text(strip=True)
        return value or None

    episodes: list[PodcastFeedEpisode] = []
    for item in channel.find_all("item"):
        enclosure: EpisodeEnclosure | None = None
        enclosure_tag = item.find("enclosure")
        if enclosure_tag is not None and enclosure_tag.get("url"):
            enclosure = EpisodeEnclosure(
                url=enclosure_tag["url"],
                type=enclosure_tag.get("type"),
                length=enclosure_tag.get("length"),
            )

        pub_date = text_of(item, "pubdate")
        published_at: int | None = None
        if pub_date:
            try:
                published_at = int(parsedate_to_datetime(pub_date).timestamp() * 1000)
            except (TypeError, ValueError):
                logger.debug("Unparsable pubDate %r", pub_date)

        episodes.append(PodcastFeedEpisode(
            title=text_of(item, "title"),
            subtitle=text_of(item, "itunes:subtitle"),
            description=_html_to_text(text_of(item, "description") or text_of(item, "itunes:summary")),
            enclosure=enclosure,
            episode=text_of(item, "itunes:episode"),
            episode_type=text_of(item, "itunes:episodetype"),
            season=text_of(item, "itunes:season"),
            pub_date=pub_date,
            published_at=published_at,
        ))

    return PodcastFeed(
        title=text_of(channel, "title"),
        description=_html_to_text(text_of(channel, "description")),
        episodes=episodes,
    )


class ITunesPodcastProvider:
    """Podcast search via the iTunes search API; feeds via plain HTTP."""

    def __init__(self, search_url: str = "https://itunes.apple.com/search", timeout_seconds: float = 20.0):
        self.search_url = search_url
        self.timeout_seconds = timeout_seconds

    async def search(self, term: str | None) -> list[PodcastMatch]:
        if not term:
            return []
        params = {"term": term, "media": "podcast", "entity": "podcast"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.get(self.search_url, params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRequestError(f"iTunes search failed: {e}") from e

        return [self.result_to_match(r) for r in data.get("results", []) if isinstance(r, dict)]

    @staticmethod
    def result_to_match(result: dict[str, Any]) -> PodcastMatch:
        def as_str(value: Any) -> str | None:
            return str(value) if value not in (None, "") else None

        genres = [g for g in result.get("genres") or [] if g and g != "Podcasts"]
        explicitness = result.get("collectionExplicitness") or result.get("trackExplicitness")
        return PodcastMatch(
            id=as_str(result.get("collectionId")),
            artist_id=as_str(result.get("artistId")),
            title=result.get("collectionName") or result.get("trackName"),
            artist_name=result.get("artistName"),
            release_date=result.get("releaseDate"),
            genres=genres,
            cover=result.get("artworkUrl600") or result.get("artworkUrl100"),
            feed_url=result.get("feedUrl"),
            page_url=result.get("collectionViewUrl"),
            explicit=(explicitness == "explicit") if explicitness else None,
        )

    async def get_podcast_feed(self, feed_url: str) -> PodcastFeed | None:
        """Fetch and parse a feed. Failures are logged and return None."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.get(feed_url, follow_redirects=True)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to fetch podcast feed %s: %s", feed_url, e)
            return None

        feed = parse_podcast_feed(resp.text)
        if feed is None:
            logger.error("Invalid podcast feed %s", feed_url)
        return feed


class BookFinder:
    """Dispatches book searches to a named provider."""

    def __init__(self, providers: dict[str, BookProvider]):
        self.providers = providers

    async def search(
        self,
        provider: str,
        title: str | None,
        author: str | None = None,
        isbn: str | None = None,
        asin: str | None = None,
    ) -> list[BookMatch]:
        book_provider = self.providers.get(provider)
        if book_provider is None:
            raise ProviderError(f"Unknown metadata provider \"{provider}\"")

        title = re.sub(r'\s+', ' ', title).strip() if title else title
        logger.debug("Searching %s for title=%r author=%r isbn=%r asin=%r", provider, title, author, isbn, asin)
        return await book_provider.search(title, author, isbn, asin)
