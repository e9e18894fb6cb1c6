"""Unit tests for settings and the per-run scanner settings snapshot."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from core.config import ScannerSettings, Settings
from db.models import Library


def test_sorting_prefixes_list() -> None:
    settings = Settings(sorting_prefixes=" The, A ,an,, ")
    assert settings.sorting_prefixes_list == ["the", "a", "an"]


def test_cors_origins_list_accepts_json_and_csv() -> None:
    assert Settings(cors_origins='["https://a", "https://b"]').cors_origins_list == ["https://a", "https://b"]
    assert Settings(cors_origins="https://a, https://b").cors_origins_list == ["https://a", "https://b"]


def test_scanner_settings_from_settings_and_library(tmp_path: Path) -> None:
    settings = Settings(
        metadata_dir=tmp_path,
        scanner_prefer_opf_metadata=True,
        store_cover_with_item=True,
        sorting_prefixes="der,die",
    )
    library = Library(name="Books", audiobooks_only=True, skip_matching_media_with_asin=True)

    snapshot = ScannerSettings.from_settings(settings, library)

    assert snapshot.prefer_opf_metadata is True
    assert snapshot.prefer_audio_metadata is False
    assert snapshot.store_cover_with_item is True
    assert snapshot.sorting_prefixes == ("der", "die")
    assert snapshot.metadata_dir == tmp_path
    assert snapshot.audiobooks_only is True
    assert snapshot.skip_matching_media_with_asin is True
    assert snapshot.skip_matching_media_with_isbn is False


def test_scanner_settings_is_frozen() -> None:
    snapshot = ScannerSettings()
    with pytest.raises(ValidationError):
        snapshot.prefer_opf_metadata = True  # type: ignore[misc]


def test_ensure_directories(tmp_path: Path) -> None:
    settings = Settings(metadata_dir=tmp_path / "meta")
    settings.ensure_directories()
    assert (tmp_path / "meta" / "items").is_dir()
