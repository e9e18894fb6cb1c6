"""Unit tests for chapter derivation from audio files."""

from db.models import AudioFile, Chapter, FileMetadata
from services.chapters import get_chapters_from_audio_files, parse_overdrive_media_markers_as_chapters
from services.library_scan import LibraryScan


def _audio_file(
    filename: str,
    duration: float | None,
    chapters: list[tuple[float, float, str]] | None = None,
    tags: dict[str, str] | None = None,
    exclude: bool = False,
) -> AudioFile:
    return AudioFile(
        ino=filename,
        metadata=FileMetadata(filename=filename, ext=".mp3", path=f"/books/x/{filename}"),
        duration=duration,
        exclude=exclude,
        meta_tags=tags or {},
        chapters=[Chapter(id=i, start=s, end=e, title=t) for i, (s, e, t) in enumerate(chapters or [])],
    )


def test_concatenates_chapters_with_time_offset() -> None:
    files = [
        _audio_file("1.mp3", 100.0, [(0, 50, "One"), (50, 100, "Two")]),
        _audio_file("2.mp3", 200.0, [(0, 120, "Three"), (120, 200, "Four")]),
    ]
    chapters = get_chapters_from_audio_files("Book", files)

    assert [c.title for c in chapters] == ["One", "Two", "Three", "Four"]
    assert [c.id for c in chapters] == [0, 1, 2, 3]
    assert chapters[2].start == 100.0
    assert chapters[3].start == 220.0
    assert chapters[3].end == 300.0


def test_identical_chapter_titles_use_first_file() -> None:
    files = [
        _audio_file("1.mp3", 100.0, [(0, 100, "Chapter 1")]),
        _audio_file("2.mp3", 100.0, [(0, 100, "Chapter 1")]),
    ]
    chapters = get_chapters_from_audio_files("Book", files)
    assert len(chapters) == 1
    assert chapters[0].end == 100.0


def test_single_file_with_embedded_chapters() -> None:
    files = [_audio_file("1.m4b", 300.0, [(0, 100, "A"), (100, 300, "B")])]
    chapters = get_chapters_from_audio_files("Book", files)
    assert [c.title for c in chapters] == ["A", "B"]


def test_single_file_without_chapters_has_none() -> None:
    assert get_chapters_from_audio_files("Book", [_audio_file("1.m4b", 300.0)]) == []


def test_one_chapter_per_file_skips_invalid_durations() -> None:
    files = [
        _audio_file("01 - Opening.mp3", 60.0),
        _audio_file("02 - Broken.mp3", None),
        _audio_file("03 - Closing.mp3", 40.0),
    ]
    chapters = get_chapters_from_audio_files("Book", files)

    assert [c.title for c in chapters] == ["01 - Opening", "03 - Closing"]
    assert [(c.start, c.end) for c in chapters] == [(0.0, 60.0), (60.0, 100.0)]
    assert [c.id for c in chapters] == [0, 1]


def test_one_chapter_per_file_uses_tag_title_when_preferred() -> None:
    files = [
        _audio_file("01.mp3", 60.0, tags={"tag_title": "The Beginning"}),
        _audio_file("02.mp3", 40.0, tags={"tag_title": "Book"}),
    ]
    chapters = get_chapters_from_audio_files("Book", files, prefer_audio_metadata=True)
    assert [c.title for c in chapters] == ["The Beginning", "02"]


def test_excluded_files_are_ignored() -> None:
    files = [
        _audio_file("1.mp3", 60.0, exclude=True),
        _audio_file("2.mp3", 40.0),
        _audio_file("3.mp3", 30.0),
    ]
    chapters = get_chapters_from_audio_files("Book", files)
    assert [c.title for c in chapters] == ["2", "3"]
    assert chapters[0].start == 0.0


def test_overdrive_markers_offset_by_previous_files() -> None:
    markers_1 = "<Markers><Marker><Name>Intro</Name><Time>0:00.000</Time></Marker>" \
                "<Marker><Name>Part One</Name><Time>1:00.000</Time></Marker></Markers>"
    markers_2 = "<Markers><Marker><Name>Part Two</Name><Time>0:30.000</Time></Marker></Markers>"
    files = [
        _audio_file("1.mp3", 120.0, tags={"tag_overdrive_media_marker": markers_1}),
        _audio_file("2.mp3", 100.0, tags={"tag_overdrive_media_marker": markers_2}),
    ]

    chapters = parse_overdrive_media_markers_as_chapters(files)
    assert chapters is not None
    assert [(c.title, c.start, c.end) for c in chapters] == [
        ("Intro", 0.0, 60.0),
        ("Part One", 60.0, 150.0),
        ("Part Two", 150.0, 220.0),
    ]

    scan = LibraryScan(library_id="00000000-0000-0000-0000-000000000001", library_name="Test")
    preferred = get_chapters_from_audio_files("Book", files, scan, prefer_overdrive=True)
    assert [c.title for c in preferred] == ["Intro", "Part One", "Part Two"]
    assert any("Overdrive" in entry.message for entry in scan.logs)

    not_preferred = get_chapters_from_audio_files("Book", files)
    assert [c.title for c in not_preferred] == ["1", "2"]


def test_overdrive_markers_absent() -> None:
    assert parse_overdrive_media_markers_as_chapters([_audio_file("1.mp3", 10.0)]) is None
