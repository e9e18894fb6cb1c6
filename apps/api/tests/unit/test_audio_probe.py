"""Unit tests for ffprobe output normalization and track ordering."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from db.models import AudioFile, FileMetadata, LibraryFile
from services.audio_probe import AudioFileScanner, run_smart_track_order, track_numbers_from_filename


def _library_file(filename: str, ino: str = "1") -> LibraryFile:
    return LibraryFile(
        ino=ino,
        metadata=FileMetadata(filename=filename, ext=Path(filename).suffix, path=f"/books/{filename}"),
    )


def _audio_file(filename: str, track: int | None = None, disc: int | None = None, from_name: int | None = None) -> AudioFile:
    lf = _library_file(filename)
    return AudioFile(
        ino=filename,
        metadata=lf.metadata,
        track_num_from_meta=track,
        disc_num_from_meta=disc,
        track_num_from_filename=from_name,
    )


@pytest.fixture
def ffprobe_mock_data() -> dict:
    return {
        "format": {
            "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
            "duration": "3600.5",
            "bit_rate": "128000",
            "tags": {
                "title": "Chapter One",
                "album": "The Final Empire",
                "artist": "Brandon Sanderson",
                "composer": "Michael Kramer",
                "genre": "Fantasy",
                "track": "3/12",
                "OverDrive MediaMarkers": "ignored",
            },
        },
        "streams": [
            {"codec_type": "audio", "codec_name": "aac", "channels": 2, "channel_layout": "stereo",
             "tags": {"language": "eng"}},
            {"codec_type": "video", "codec_name": "mjpeg", "disposition": {"attached_pic": 1}},
        ],
        "chapters": [
            {"start_time": "0.000000", "end_time": "1800.0", "tags": {"title": "Prologue"}},
            {"start_time": "1800.0", "end_time": "3600.5", "tags": {}},
        ],
    }


def test_parse_ffprobe_output(ffprobe_mock_data: dict) -> None:
    scanner = AudioFileScanner()
    af = scanner.parse_ffprobe_output(ffprobe_mock_data, _library_file("03 - Chapter One.m4b"), index=3)

    assert af is not None
    assert af.index == 3
    assert af.duration == 3600.5
    assert af.bit_rate == 128000
    assert af.codec == "aac"
    assert af.language == "eng"
    assert af.embedded_cover_art == "mjpeg"
    assert af.meta_tags["tag_album"] == "The Final Empire"
    assert af.meta_tags["tag_composer"] == "Michael Kramer"
    assert af.track_num_from_meta == 3
    assert af.track_num_from_filename == 3
    assert [c.title for c in af.chapters] == ["Prologue", "Chapter 2"]
    assert af.chapters[1].end == 3600.5


def test_parse_ffprobe_output_without_audio_stream() -> None:
    scanner = AudioFileScanner()
    data = {"format": {}, "streams": [{"codec_type": "video", "codec_name": "h264"}]}
    assert scanner.parse_ffprobe_output(data, _library_file("video.mp4")) is None


def test_parse_ffprobe_output_stream_duration_fallback() -> None:
    scanner = AudioFileScanner()
    data = {"format": {}, "streams": [{"codec_type": "audio", "codec_name": "opus", "duration": "42.5"}]}
    af = scanner.parse_ffprobe_output(data, _library_file("a.opus"))
    assert af is not None
    assert af.duration == 42.5
    assert af.chapters == []


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("01 - Intro.mp3", (1, None)),
        ("Track 12.mp3", (12, None)),
        ("Disc 2 - 05.mp3", (5, 2)),
        ("Book Part-7.mp3", (7, None)),
        ("No Numbers.mp3", (None, None)),
    ],
)
def test_track_numbers_from_filename(filename: str, expected: tuple) -> None:
    assert track_numbers_from_filename(filename) == expected


def test_smart_track_order_uses_disc_and_track() -> None:
    files = [
        _audio_file("b.mp3", track=1, disc=2),
        _audio_file("c.mp3", track=2, disc=1),
        _audio_file("a.mp3", track=1, disc=1),
    ]
    ordered = run_smart_track_order(files)
    assert [af.metadata.filename for af in ordered] == ["a.mp3", "c.mp3", "b.mp3"]
    assert [af.index for af in ordered] == [1, 2, 3]


def test_smart_track_order_falls_back_to_natural_filename_order() -> None:
    files = [
        _audio_file("Part 10.mp3", track=None, from_name=None),
        _audio_file("Part 2.mp3", track=2),
        _audio_file("Part 1.mp3", track=1),
    ]
    ordered = run_smart_track_order(files)
    assert [af.metadata.filename for af in ordered] == ["Part 1.mp3", "Part 2.mp3", "Part 10.mp3"]


def test_smart_track_order_duplicate_tracks_fall_back() -> None:
    files = [_audio_file("b.mp3", track=1), _audio_file("a.mp3", track=1)]
    ordered = run_smart_track_order(files)
    assert [af.metadata.filename for af in ordered] == ["a.mp3", "b.mp3"]


@pytest.mark.asyncio
async def test_execute_media_file_scans_drops_unreadable_files() -> None:
    scanner = AudioFileScanner()
    good = {"format": {"duration": "10"}, "streams": [{"codec_type": "audio", "codec_name": "mp3"}]}

    async def fake_ffprobe(path: str) -> dict:
        return good if path.endswith("good.mp3") else {}

    with patch.object(scanner, "_run_ffprobe", AsyncMock(side_effect=fake_ffprobe)):
        result = await scanner.execute_media_file_scans([
            _library_file("bad.mp3", "1"),
            _library_file("good.mp3", "2"),
        ])

    assert [af.metadata.filename for af in result] == ["good.mp3"]
    assert result[0].index == 2
