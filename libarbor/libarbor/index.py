"""The staging area: what the next commit will contain."""

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

INDEX_VERSION = 1


class CorruptIndexError(Exception):
    """Exception raised when the index file cannot be read."""


@dataclass(frozen=True)
class IndexEntry:
    """A staged file: its blob and the stat data it had when it was staged."""

    hash: str
    mode: int
    size: int = -1
    mtime_ns: int = -1


@dataclass
class Index:
    """Mapping of repository-relative POSIX paths to staged entries.

    Paths flagged in ``conflicts`` hold merged content with conflict markers and must be
    re-added before the next commit."""

    path: Path
    entries: dict[str, IndexEntry] = field(default_factory=dict)
    conflicts: set[str] = field(default_factory=set)
    timestamp_ns: int = 0

    @classmethod
    def load(cls, path: Path) -> 'Index':
        """Load the index file, or return an empty index if there is none.

        :param path: The index file.
        :return: The loaded index.
        :raises CorruptIndexError: If the file is not a valid index."""
        if not path.exists():
            return cls(path)

        try:
            data = json.loads(path.read_text())
            if data.get('version') != INDEX_VERSION:
                msg = f'Unsupported index version {data.get("version")}'
                raise CorruptIndexError(msg)
            entries = {name: IndexEntry(**entry) for name, entry in data['entries'].items()}
            return cls(path, entries, set(data.get('conflicts', [])), data.get('timestamp_ns', 0))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            msg = f'Corrupt index file {path}'
            raise CorruptIndexError(msg) from e

    def save(self) -> None:
        """Write the index atomically and record when it was written."""
        self.timestamp_ns = time.time_ns()
        data = {
            'version': INDEX_VERSION,
            'timestamp_ns': self.timestamp_ns,
            'entries': {name: asdict(self.entries[name]) for name in sorted(self.entries)},
            'conflicts': sorted(self.conflicts),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix='.index.')
        try:
            with os.fdopen(fd, 'w') as tmp:
                json.dump(data, tmp, indent=1)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug('Wrote index with %d entries', len(self.entries))

    def __contains__(self, path: object) -> bool:
        return path in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.entries))

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, path: str) -> IndexEntry | None:
        return self.entries.get(path)

    def stage(self, path: str, entry: IndexEntry) -> None:
        self.entries[path] = entry
        self.conflicts.discard(path)

    def unstage(self, path: str) -> None:
        self.entries.pop(path, None)
        self.conflicts.discard(path)

    def replace(self, entries: dict[str, IndexEntry]) -> None:
        """Replace all entries and clear conflicts."""
        self.entries = dict(entries)
        self.conflicts = set()

    def is_racy(self, entry: IndexEntry) -> bool:
        """Whether the file may have changed within the same clock tick as the index write.

        Such entries cannot be trusted by stat data alone."""
        return entry.mtime_ns < 0 or entry.mtime_ns >= self.timestamp_ns - 1_000_000_000

    def blob_map(self) -> dict[str, tuple[str, int]]:
        """Map each staged path to its blob hash and mode."""
        return {name: (entry.hash, entry.mode) for name, entry in self.entries.items()}
