"""libarbor: a minimal local version-control storage and history engine."""

from dataclasses import dataclass, field
from enum import Enum

from .constants import BLOB_MODE, TREE_MODE


class TreeRecordType(Enum):
    """The kind of object a tree record points to."""

    BLOB = 'blob'
    TREE = 'tree'


@dataclass(frozen=True)
class Blob:
    """Raw file content."""

    data: bytes


@dataclass(frozen=True)
class TreeRecord:
    """A single named entry of a tree."""

    type: TreeRecordType
    hash: str
    name: str
    mode: int = 0

    def __post_init__(self) -> None:
        if not self.mode:
            object.__setattr__(self, 'mode', TREE_MODE if self.type == TreeRecordType.TREE else BLOB_MODE)


@dataclass(frozen=True)
class Tree:
    """A directory listing: names mapped to tree records."""

    records: dict[str, TreeRecord] = field(default_factory=dict)


@dataclass(frozen=True)
class Commit:
    """A snapshot of a tree together with its history metadata."""

    tree_hash: str
    author: str
    message: str
    timestamp: int
    parents: tuple[str, ...] = ()
    committer: str | None = None

    @property
    def parent(self) -> str | None:
        """The first parent of the commit, or None for a root commit."""
        return self.parents[0] if self.parents else None

    @property
    def short_message(self) -> str:
        return self.message.splitlines()[0] if self.message else ''


@dataclass(frozen=True)
class AnnotatedTag:
    """An annotated tag object pointing to a commit."""

    name: str
    target: str
    tagger: str
    message: str
    timestamp: int


__all__ = ['AnnotatedTag', 'Blob', 'Commit', 'Tree', 'TreeRecord', 'TreeRecordType']
