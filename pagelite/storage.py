import enum
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, List, Optional
from urllib.parse import quote

logger = logging.getLogger("pagelite.storage")

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
MAX_FILENAME_LENGTH = 255
AGGREGATE_MARKER = "/all/"
MIN_BUCKET_YEAR = 1970
SIZE_PLACEHOLDER = "-"

_YEAR_PREFIX_PATTERN = re.compile(r"[0-9]{4}")


class InvalidUploadName(ValueError):
    """Raised when an uploaded filename cannot be turned into a safe name."""


class UploadPlacementError(RuntimeError):
    """Raised when an upload cannot be written into its year bucket.

    ``stage`` names the step that failed: ``create_bucket``, ``create_file``
    or ``write_file``.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message


class ResolutionKind(enum.Enum):
    ROOT_INDEX = "root_index"
    AGGREGATE_INDEX = "aggregate_index"
    DIRECTORY_INDEX = "directory_index"
    FILE = "file"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    path: Optional[Path] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.kind is not ResolutionKind.NOT_FOUND


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    is_dir: bool
    size: str
    size_bytes: int
    modified: datetime


@dataclass(frozen=True)
class ArchivedFile:
    name: str
    year: str
    size: str
    size_bytes: int
    modified: datetime

    @property
    def url(self) -> str:
        return f"/{quote(self.year)}/{quote(self.name)}"


@dataclass(frozen=True)
class StoredArtifact:
    name: str
    year: str
    path: Path
    size_bytes: int


def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    value = float(num)
    for unit in ["KB", "MB", "GB", "TB", "PB"]:
        value /= 1024.0
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
    return f"{value / 1024.0:.1f} EB"


def ensure_storage_root(root: Path) -> Path:
    """Create the storage root if needed and return its canonical form."""

    root_path = Path(root).expanduser()
    root_path.mkdir(parents=True, exist_ok=True)
    return root_path.resolve()


def contained_path(root: Path, relative: str, *, allow_root: bool = False) -> Optional[Path]:
    """Join *relative* onto *root* and return the canonical result if it stays inside.

    Both sides are canonicalized with :meth:`Path.resolve`, which follows
    symlinks and collapses ``.``/``..``, and containment is decided on path
    segments rather than string prefixes, so ``/srv/data-old`` is never
    considered inside ``/srv/data``. Leading separators are dropped so an
    absolute path cannot replace the root. Returns ``None`` on escape or on
    input the filesystem layer rejects (NUL bytes, symlink loops).
    """

    try:
        root_path = Path(root).resolve()
        candidate = (root_path / relative.lstrip("/")).resolve()
    except (OSError, ValueError, RuntimeError):
        return None

    if candidate == root_path:
        return candidate if allow_root else None
    if root_path in candidate.parents:
        return candidate
    return None


def _within_root(root: Path, path: str) -> bool:
    try:
        resolved = Path(path).resolve()
        root_path = Path(root).resolve()
    except (OSError, RuntimeError):
        return False
    return root_path in resolved.parents


def resolve_request_path(root: Path, url_path: str) -> Resolution:
    """Map a percent-decoded URL path onto the storage hierarchy."""

    if not url_path or url_path.endswith("/"):
        if url_path in ("", "/"):
            return Resolution(ResolutionKind.ROOT_INDEX, Path(root).resolve())
        if url_path.lower() == AGGREGATE_MARKER:
            return Resolution(ResolutionKind.AGGREGATE_INDEX, Path(root).resolve())

        target = contained_path(root, url_path.strip("/"), allow_root=True)
        if target is None:
            return Resolution(ResolutionKind.NOT_FOUND, reason="outside_root")
        if not target.is_dir():
            return Resolution(ResolutionKind.NOT_FOUND, reason="not_a_directory")
        return Resolution(ResolutionKind.DIRECTORY_INDEX, target)

    if len(url_path) > 1:
        target = contained_path(root, url_path, allow_root=False)
        if target is None:
            return Resolution(ResolutionKind.NOT_FOUND, reason="outside_root")
        if not target.is_file():
            return Resolution(ResolutionKind.NOT_FOUND, reason="not_a_file")
        return Resolution(ResolutionKind.FILE, target)

    return Resolution(ResolutionKind.NOT_FOUND, reason="unmatched")


def sort_directory_entries(
    entries: List[DirectoryEntry], order: str = "desc"
) -> List[DirectoryEntry]:
    """Directories first (by name, in *order*), then files newest first."""

    directories = sorted(
        (entry for entry in entries if entry.is_dir),
        key=lambda entry: entry.name,
        reverse=(order == "desc"),
    )
    files = sorted(
        sorted((entry for entry in entries if not entry.is_dir), key=lambda entry: entry.name),
        key=lambda entry: entry.modified,
        reverse=True,
    )
    return directories + files


def list_directory(
    directory: Path, order: str = "desc", root: Optional[Path] = None
) -> List[DirectoryEntry]:
    """List the immediate children of *directory*.

    Children that vanish or cannot be stat'ed mid-listing are skipped. When
    *root* is given, symlinked children resolving outside it are skipped too.
    An unreadable *directory* raises :class:`OSError` so callers never render
    a partial listing.
    """

    entries: List[DirectoryEntry] = []
    with os.scandir(directory) as iterator:
        for item in iterator:
            try:
                is_dir = item.is_dir()
                if root is not None and item.is_symlink() and not _within_root(root, item.path):
                    continue
                stat_result = item.stat()
            except OSError:
                continue
            size_bytes = 0 if is_dir else stat_result.st_size
            entries.append(
                DirectoryEntry(
                    name=item.name,
                    is_dir=is_dir,
                    size=SIZE_PLACEHOLDER if is_dir else human_filesize(size_bytes),
                    size_bytes=size_bytes,
                    modified=datetime.fromtimestamp(stat_result.st_mtime),
                )
            )
    return sort_directory_entries(entries, order)


def list_all_files(root: Path) -> List[ArchivedFile]:
    """Flatten every year bucket into one list, newest file first.

    Only immediate files of each bucket are included. Buckets that cannot
    be read are skipped so one bad directory does not hide the rest.
    Symlinked buckets are not followed, and symlinked files whose target
    lies outside *root* are left out.
    """

    with os.scandir(root) as iterator:
        buckets = []
        for item in iterator:
            try:
                if item.is_dir(follow_symlinks=False):
                    buckets.append((item.name, item.path))
            except OSError:
                continue

    files: List[ArchivedFile] = []
    for year, bucket_path in buckets:
        try:
            with os.scandir(bucket_path) as children:
                for child in children:
                    try:
                        if child.is_dir():
                            continue
                        if child.is_symlink() and not _within_root(root, child.path):
                            logger.debug("entry_outside_root bucket=%s name=%s", year, child.name)
                            continue
                        stat_result = child.stat()
                    except OSError:
                        continue
                    files.append(
                        ArchivedFile(
                            name=child.name,
                            year=year,
                            size=human_filesize(stat_result.st_size),
                            size_bytes=stat_result.st_size,
                            modified=datetime.fromtimestamp(stat_result.st_mtime),
                        )
                    )
        except OSError as error:
            logger.debug("bucket_unreadable bucket=%s error=%s", year, error)
            continue

    files.sort(key=lambda entry: entry.modified, reverse=True)
    return files


def sanitize_upload_name(filename: Optional[str]) -> str:
    """Keep only the final path segment of a client-supplied filename."""

    candidate = (filename or "").replace("\\", "/").rstrip("/")
    name = candidate.rsplit("/", 1)[-1]

    if name in {"", ".", ".."}:
        raise InvalidUploadName("Filename cannot be empty")
    if "\x00" in name:
        raise InvalidUploadName("Filename contains invalid characters")
    if len(name) > MAX_FILENAME_LENGTH:
        raise InvalidUploadName(
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters"
        )
    return name


def derive_year_bucket(timestamp: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Return the bucket name for an upload.

    The first four characters of *timestamp* win when they form a year no
    earlier than 1970; otherwise the current calendar year is used.
    """

    if timestamp:
        prefix = str(timestamp).strip()[:4]
        if _YEAR_PREFIX_PATTERN.fullmatch(prefix) and int(prefix) >= MIN_BUCKET_YEAR:
            return prefix
    current = now or datetime.now()
    return f"{current.year:04d}"


def store_upload(
    root: Path,
    stream: BinaryIO,
    filename: Optional[str],
    timestamp: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StoredArtifact:
    """Write *stream* to ``<root>/<year>/<name>``, replacing any existing file.

    There is no rollback: a failure while copying can leave a truncated
    file behind.
    """

    name = sanitize_upload_name(filename)
    year = derive_year_bucket(timestamp, now)
    bucket = Path(root) / year

    try:
        bucket.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise UploadPlacementError(
            "create_bucket", f"Failed to create year directory: {error.strerror or error}"
        ) from error

    destination = bucket / name
    try:
        handle = open(destination, "wb")
    except OSError as error:
        raise UploadPlacementError(
            "create_file", f"Failed to create file: {error.strerror or error}"
        ) from error

    try:
        with handle:
            shutil.copyfileobj(stream, handle, CHUNK_SIZE_BYTES)
            written = handle.tell()
    except OSError as error:
        raise UploadPlacementError(
            "write_file", f"Failed to save file: {error.strerror or error}"
        ) from error

    return StoredArtifact(name=name, year=year, path=destination, size_bytes=written)
