"""Unit tests for metadata providers."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from services.providers import (
    AudibleBookProvider,
    BookFinder,
    BookMatch,
    ITunesPodcastProvider,
    ProviderAuthError,
    ProviderError,
    ProviderRequestError,
    parse_podcast_feed,
)


SAMPLE_PRODUCT = {
    "asin": "B00TEST123",
    "title": "The Final Empire",
    "subtitle": "Mistborn, Book 1",
    "authors": [{"name": "Brandon Sanderson"}],
    "narrators": [{"name": "Michael Kramer"}, {"name": ""}],
    "publisher_name": "Macmillan Audio",
    "release_date": "2008-04-29",
    "publisher_summary": "<p>For a <b>thousand</b> years the ash fell.</p>",
    "product_images": {"500": "https://img/500.jpg", "1215": "https://img/1215.jpg"},
    "series": [{"title": "Mistborn", "sequence": "1"}, {"title": ""}],
    "category_ladders": [
        {"ladder": [{"name": "Science Fiction & Fantasy"}, {"name": "Fantasy"}, {"name": "Epic"}]},
        {"ladder": [{"name": "Science Fiction & Fantasy"}, {"name": "Fantasy"}]},
    ],
    "language": "english",
    "is_adult_product": False,
    "format_type": "unabridged",
}

SAMPLE_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
<channel>
  <title>Test Podcast</title>
  <description>&lt;p&gt;About the show&lt;/p&gt;</description>
  <item>
    <title>Episode 2</title>
    <itunes:episode>2</itunes:episode>
    <itunes:season>1</itunes:season>
    <itunes:episodeType>full</itunes:episodeType>
    <pubDate>Tue, 02 Jan 2024 10:00:00 +0000</pubDate>
    <enclosure url="https://cdn/ep2.mp3" type="audio/mpeg" length="1234"/>
  </item>
  <item>
    <title>Episode 1</title>
    <pubDate>not a date</pubDate>
  </item>
</channel>
</rss>
"""


class TestAudibleProduct:
    def test_product_to_match(self) -> None:
        match = AudibleBookProvider.product_to_match(SAMPLE_PRODUCT)

        assert match.title == "The Final Empire"
        assert match.author == "Brandon Sanderson"
        assert match.narrator == "Michael Kramer"
        assert match.published_year == "2008"
        assert match.description == "For a thousand years the ash fell."
        assert match.cover == "https://img/1215.jpg"
        assert match.genres == ["Science Fiction & Fantasy"]
        assert match.tags == ["Fantasy", "Epic"]
        assert [(s.series, s.sequence) for s in match.series] == [("Mistborn", "1")]
        assert match.abridged is False
        assert match.explicit is False
        assert match.asin == "B00TEST123"

    def test_sparse_product(self) -> None:
        match = AudibleBookProvider.product_to_match({"title": "Bare"})
        assert match.title == "Bare"
        assert match.author is None
        assert match.cover is None
        assert match.abridged is None
        assert match.genres == []

    async def test_missing_auth_file(self, tmp_path: Path) -> None:
        provider = AudibleBookProvider(tmp_path / "nope.json")
        with pytest.raises(ProviderAuthError):
            await provider.search("Some Title")

    async def test_nothing_to_search(self, tmp_path: Path) -> None:
        provider = AudibleBookProvider(tmp_path / "nope.json")
        assert await provider.search(None) == []


class TestPodcastFeed:
    def test_parse_feed(self) -> None:
        feed = parse_podcast_feed(SAMPLE_FEED)

        assert feed is not None
        assert feed.title == "Test Podcast"
        assert feed.description == "About the show"
        assert [e.title for e in feed.episodes] == ["Episode 2", "Episode 1"]

        first = feed.episodes[0]
        assert first.episode == "2"
        assert first.season == "1"
        assert first.episode_type == "full"
        assert first.enclosure is not None
        assert first.enclosure.url == "https://cdn/ep2.mp3"
        assert first.enclosure.length == "1234"
        assert first.published_at == 1704189600000

        second = feed.episodes[1]
        assert second.pub_date == "not a date"
        assert second.published_at is None
        assert second.enclosure is None

    def test_not_a_feed(self) -> None:
        assert parse_podcast_feed("<html><body>nope</body></html>") is None


class TestITunes:
    def test_result_to_match(self) -> None:
        match = ITunesPodcastProvider.result_to_match({
            "collectionId": 42,
            "artistId": 7,
            "collectionName": "Test Podcast",
            "artistName": "Host",
            "genres": ["Podcasts", "Comedy"],
            "artworkUrl100": "https://img/100.jpg",
            "feedUrl": "https://feed",
            "collectionExplicitness": "notExplicit",
        })
        assert match.id == "42"
        assert match.artist_id == "7"
        assert match.genres == ["Comedy"]
        assert match.cover == "https://img/100.jpg"
        assert match.explicit is False

    async def test_search(self) -> None:
        provider = ITunesPodcastProvider("https://itunes.test/search")
        response = httpx.Response(
            200,
            json={"results": [{"collectionName": "Test Podcast", "feedUrl": "https://feed"}]},
            request=httpx.Request("GET", "https://itunes.test/search"),
        )
        with patch.object(httpx.AsyncClient, "get", AsyncMock(return_value=response)) as get:
            results = await provider.search("test")

        assert [r.title for r in results] == ["Test Podcast"]
        assert get.call_args.kwargs["params"]["media"] == "podcast"

    async def test_search_http_error(self) -> None:
        provider = ITunesPodcastProvider("https://itunes.test/search")
        response = httpx.Response(500, request=httpx.Request("GET", "https://itunes.test/search"))
        with patch.object(httpx.AsyncClient, "get", AsyncMock(return_value=response)):
            with pytest.raises(ProviderRequestError):
                await provider.search("test")

    async def test_feed_fetch_failure_returns_none(self) -> None:
        provider = ITunesPodcastProvider()
        with patch.object(httpx.AsyncClient, "get", AsyncMock(side_effect=httpx.ConnectError("down"))):
            assert await provider.get_podcast_feed("https://feed") is None

    async def test_feed_fetch(self) -> None:
        provider = ITunesPodcastProvider()
        response = httpx.Response(200, text=SAMPLE_FEED, request=httpx.Request("GET", "https://feed"))
        with patch.object(httpx.AsyncClient, "get", AsyncMock(return_value=response)):
            feed = await provider.get_podcast_feed("https://feed")
        assert feed is not None and len(feed.episodes) == 2


class TestBookFinder:
    async def test_unknown_provider(self) -> None:
        with pytest.raises(ProviderError):
            await BookFinder({}).search("google", "Title")

    async def test_dispatch_normalizes_title(self) -> None:
        provider = AsyncMock()
        provider.search.return_value = [BookMatch(title="Title")]

        results = await BookFinder({"audible": provider}).search("audible", "  Some   Title ", "Author")

        assert results[0].title == "Title"
        provider.search.assert_awaited_once_with("Some Title", "Author", None, None)
