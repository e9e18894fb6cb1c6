"""Services module."""

from .audio_probe import AudioFileScanner
from .cover_manager import CoverManager
from .library_manager import LibraryManager
from .library_matcher import LibraryMatcher, QuickMatchOptions, QuickMatchResult
from .library_scan import LibraryScan, ScanState, ScanType
from .library_scanner import LibraryScanner, ScanInProgressError
from .metadata_extractor import MetadataExtractor
from .providers import (
    AudibleBookProvider,
    BookFinder,
    ITunesPodcastProvider,
    ProviderAuthError,
    ProviderError,
    ProviderRequestError,
)
from .websocket_manager import WebSocketManager

__all__ = [
    # Probe / covers
    "AudioFileScanner",
    "CoverManager",
    # Reconciliation
    "LibraryManager",
    "MetadataExtractor",
    # Matching
    "LibraryMatcher",
    "QuickMatchOptions",
    "QuickMatchResult",
    # Providers
    "AudibleBookProvider",
    "BookFinder",
    "ITunesPodcastProvider",
    "ProviderError",
    "ProviderAuthError",
    "ProviderRequestError",
    # Orchestration
    "LibraryScan",
    "LibraryScanner",
    "ScanInProgressError",
    "ScanState",
    "ScanType",
    # WebSocketManager
    "WebSocketManager",
]
