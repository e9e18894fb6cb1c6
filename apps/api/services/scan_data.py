"""Per-item scan input supplied by the filesystem layer."""

from pydantic import BaseModel, Field

from db.models import AudioFile, EbookFile, LibraryFile, MediaType
from services.title_matcher import ItemPathMetadata

AUDIO_EXTENSIONS = frozenset({
    "m4b", "mp3", "m4a", "flac", "opus", "ogg", "oga", "mp4", "aac", "wma",
    "aiff", "aif", "wav", "webm", "webma", "mka", "awb", "caf", "mpg", "mpeg",
})
EBOOK_EXTENSIONS = frozenset({"epub", "pdf", "mobi", "azw3", "cbr", "cbz"})
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp"})
TEXT_EXTENSIONS = frozenset({"txt", "nfo"})
METADATA_EXTENSIONS = frozenset({"opf", "abs", "xml", "json"})


def file_extension(library_file: LibraryFile) -> str:
    ext = library_file.metadata.ext or ""
    if not ext and "." in library_file.metadata.filename:
        ext = library_file.metadata.filename.rsplit(".", 1)[1]
    return ext.lstrip(".").lower()


def file_type(library_file: LibraryFile) -> str:
    """Classify a library file: audio, ebook, image, text, metadata or unknown."""
    ext = file_extension(library_file)
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    if ext in EBOOK_EXTENSIONS:
        return "ebook"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in TEXT_EXTENSIONS:
        return "text"
    if ext in METADATA_EXTENSIONS:
        return "metadata"
    return "unknown"


class LibraryItemScanData(BaseModel):
    """
    One library item folder (or single file) as found on disk.

    ``library_files`` is the complete current set; the added/modified/removed lists are
    the change set computed by the filesystem layer against the previous scan.
    """

    path: str
    rel_path: str
    ino: str | None = None
    is_file: bool = False
    media_type: MediaType = MediaType.BOOK
    media_metadata: ItemPathMetadata | None = None
    library_files: list[LibraryFile] = Field(default_factory=list)
    library_files_added: list[LibraryFile] = Field(default_factory=list)
    library_files_modified: list[LibraryFile] = Field(default_factory=list)
    library_files_removed: list[LibraryFile] = Field(default_factory=list)

    def _of_type(self, files: list[LibraryFile], kind: str) -> list[LibraryFile]:
        return [lf for lf in files if file_type(lf) == kind]

    def _named(self, filename: str) -> LibraryFile | None:
        for lf in self.library_files:
            if lf.metadata.filename.lower() == filename:
                return lf
        return None

    @property
    def audio_library_files(self) -> list[LibraryFile]:
        return self._of_type(self.library_files, "audio")

    @property
    def image_library_files(self) -> list[LibraryFile]:
        return self._of_type(self.library_files, "image")

    @property
    def ebook_library_files(self) -> list[LibraryFile]:
        return self._of_type(self.library_files, "ebook")

    @property
    def desc_txt_library_file(self) -> LibraryFile | None:
        return self._named("desc.txt")

    @property
    def reader_txt_library_file(self) -> LibraryFile | None:
        return self._named("reader.txt")

    @property
    def metadata_opf_library_file(self) -> LibraryFile | None:
        for lf in self.library_files:
            if file_extension(lf) == "opf":
                return lf
        return None

    @property
    def metadata_json_library_file(self) -> LibraryFile | None:
        return self._named("metadata.json")

    @property
    def metadata_abs_library_file(self) -> LibraryFile | None:
        return self._named("metadata.abs")

    @property
    def audio_library_files_added(self) -> list[LibraryFile]:
        return self._of_type(self.library_files_added, "audio")

    @property
    def audio_library_files_modified(self) -> list[LibraryFile]:
        return self._of_type(self.library_files_modified, "audio")

    @property
    def audio_library_files_removed(self) -> list[LibraryFile]:
        return self._of_type(self.library_files_removed, "audio")

    @property
    def has_audio_file_changes(self) -> bool:
        return bool(
            self.audio_library_files_added
            or self.audio_library_files_modified
            or self.audio_library_files_removed
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.library_files_added or self.library_files_modified or self.library_files_removed)

    def check_audio_file_removed(self, audio_file: AudioFile) -> bool:
        """True if the audio file's backing library file was removed."""
        for lf in self.audio_library_files_removed:
            if lf.ino == audio_file.ino or lf.metadata.path == audio_file.metadata.path:
                return True
        return not any(lf.ino == audio_file.ino for lf in self.audio_library_files)

    def check_ebook_file_removed(self, ebook_file: EbookFile) -> bool:
        return not any(lf.ino == ebook_file.ino for lf in self.ebook_library_files)
