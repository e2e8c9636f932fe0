"""Differences between two trees, down to line hunks."""

import difflib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .plumbing import load_blob
from .worktree import BlobMap

CONTEXT_LINES = 3


class ChangeKind(Enum):
    ADDED = 'added'
    REMOVED = 'removed'
    MODIFIED = 'modified'


@dataclass
class Hunk:
    """A contiguous region of change with surrounding context.

    Line numbers are 1-based. Each line is prefixed with ``' '``, ``'-'`` or ``'+'``."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[str]

    def header(self) -> str:
        return f'@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@'


@dataclass
class FileDiff:
    """A file that differs between two trees."""

    path: str
    change: ChangeKind
    old_hash: str | None
    new_hash: str | None
    old_mode: int | None = None
    new_mode: int | None = None
    binary: bool = False
    hunks: list[Hunk] = field(default_factory=list)

    def format(self) -> str:
        """Render the diff in unified format."""
        old_name = f'a/{self.path}' if self.old_hash else '/dev/null'
        new_name = f'b/{self.path}' if self.new_hash else '/dev/null'
        if self.binary:
            return f'Binary files {old_name} and {new_name} differ\n'

        out = [f'--- {old_name}', f'+++ {new_name}']
        for hunk in self.hunks:
            out.append(hunk.header())
            out.extend(hunk.lines)
        return '\n'.join(out) + '\n'


def _read_lines(objects_dir: Path, blob_hash: str | None) -> list[str] | None:
    if blob_hash is None:
        return []
    try:
        return load_blob(objects_dir, blob_hash).data.decode('utf-8').splitlines()
    except UnicodeDecodeError:
        return None


def compute_hunks(old_lines: list[str], new_lines: list[str], context: int = CONTEXT_LINES) -> list[Hunk]:
    """Group the line differences of two texts into hunks."""
    hunks = []
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    for group in matcher.get_grouped_opcodes(context):
        first, last = group[0], group[-1]
        old_start, old_end = first[1], last[2]
        new_start, new_end = first[3], last[4]

        lines = []
        for tag, i1, i2, j1, j2 in group:
            if tag == 'equal':
                lines.extend(' ' + line for line in old_lines[i1:i2])
                continue
            if tag in ('replace', 'delete'):
                lines.extend('-' + line for line in old_lines[i1:i2])
            if tag in ('replace', 'insert'):
                lines.extend('+' + line for line in new_lines[j1:j2])

        old_count, new_count = old_end - old_start, new_end - new_start
        hunks.append(Hunk(old_start + 1 if old_count else old_start, old_count,
                          new_start + 1 if new_count else new_start, new_count, lines))
    return hunks


def diff_blob_maps(objects_dir: Path, old: BlobMap, new: BlobMap) -> list[FileDiff]:
    """Compare two flattened trees file by file.

    :param objects_dir: The objects directory of the repository.
    :param old: The flattened old tree.
    :param new: The flattened new tree.
    :return: The changed files sorted by path."""
    diffs = []
    for path in sorted(set(old) | set(new)):
        old_hash, old_mode = old.get(path, (None, None))
        new_hash, new_mode = new.get(path, (None, None))
        if (old_hash, old_mode) == (new_hash, new_mode):
            continue

        if old_hash is None:
            change = ChangeKind.ADDED
        elif new_hash is None:
            change = ChangeKind.REMOVED
        else:
            change = ChangeKind.MODIFIED

        file_diff = FileDiff(path, change, old_hash, new_hash, old_mode, new_mode)
        old_lines = _read_lines(objects_dir, old_hash)
        new_lines = _read_lines(objects_dir, new_hash)
        if old_lines is None or new_lines is None:
            file_diff.binary = True
        else:
            file_diff.hunks = compute_hunks(old_lines, new_lines)
        diffs.append(file_diff)

    return diffs
