"""Working tree scanning, status computation and tree materialization."""

import fnmatch
import logging
import os
import stat
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from . import Blob, Tree, TreeRecord, TreeRecordType
from .constants import BLOB_MODE, EXECUTABLE_MODE, IGNORE_FILE
from .index import Index, IndexEntry
from .plumbing import hash_object, load_blob, load_tree, save_object, save_tree
from .ref import HashRef

logger = logging.getLogger(__name__)

# Repository-relative POSIX path -> (blob hash, mode)
type BlobMap = dict[str, tuple[str, int]]


@dataclass
class Status:
    """Classification of paths by comparing the HEAD tree, the index and the working tree."""

    added: set[str] = field(default_factory=set)
    changed: set[str] = field(default_factory=set)
    removed: set[str] = field(default_factory=set)
    modified: set[str] = field(default_factory=set)
    missing: set[str] = field(default_factory=set)
    untracked: set[str] = field(default_factory=set)
    conflicting: set[str] = field(default_factory=set)

    def has_uncommitted_changes(self) -> bool:
        """Whether tracked content differs anywhere. Untracked files do not count."""
        return bool(self.added or self.changed or self.removed or self.modified or self.missing
                    or self.conflicting)

    def is_clean(self) -> bool:
        return not self.has_uncommitted_changes() and not self.untracked


def load_ignore_patterns(working_dir: Path) -> list[str]:
    """Read ignore patterns from the working tree's ignore file.

    :param working_dir: The root of the working tree.
    :return: The patterns, without blank lines and comments."""
    ignore_file = working_dir / IGNORE_FILE
    try:
        lines = ignore_file.read_text().splitlines()
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        logger.warning('Cannot read %s: %s', ignore_file, e)
        return []

    return [line.strip() for line in lines if line.strip() and not line.strip().startswith('#')]


def is_ignored(path: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if pattern.endswith('/'):
            base = pattern.rstrip('/')
            if path == base or path.startswith(base + '/'):
                return True
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(PurePosixPath(path).name, pattern):
            return True

    return False


def iter_working_files(working_dir: Path, repo_dir_name: str, patterns: list[str]) -> Iterator[str]:
    """Yield the repository-relative POSIX paths of all files in the working tree, sorted.

    The repository directory and ignored paths are skipped."""
    for dirpath, dirnames, filenames in os.walk(working_dir):
        rel_dir = Path(dirpath).relative_to(working_dir).as_posix()
        rel_dir = '' if rel_dir == '.' else rel_dir
        dirnames[:] = sorted(
            d for d in dirnames
            if not (rel_dir == '' and d == repo_dir_name) and not is_ignored(_join(rel_dir, d), patterns)
        )
        for filename in sorted(filenames):
            rel_path = _join(rel_dir, filename)
            if not is_ignored(rel_path, patterns):
                yield rel_path


def _join(prefix: str, name: str) -> str:
    return f'{prefix}/{name}' if prefix else name


def file_mode(path: Path) -> int:
    return EXECUTABLE_MODE if path.stat().st_mode & stat.S_IXUSR else BLOB_MODE


def hash_working_file(path: Path) -> HashRef:
    return hash_object(Blob(path.read_bytes()))


def stat_entry(path: Path, blob_hash: str, mode: int) -> IndexEntry:
    """Build an index entry recording the file's current stat data."""
    st = path.stat()
    return IndexEntry(blob_hash, mode, st.st_size, st.st_mtime_ns)


def flatten_tree(objects_dir: Path, tree_hash: str | None) -> BlobMap:
    """Map every blob reachable from a tree to its full path.

    :param objects_dir: The objects directory of the repository.
    :param tree_hash: The root tree, or None for an empty tree.
    :return: The flattened tree."""
    result: BlobMap = {}
    if tree_hash is None:
        return result

    stack = [('', tree_hash)]
    while stack:
        prefix, current = stack.pop()
        for name, record in load_tree(objects_dir, current).records.items():
            path = _join(prefix, name)
            if record.type == TreeRecordType.TREE:
                stack.append((path, record.hash))
            else:
                result[path] = (record.hash, record.mode)

    return result


def build_tree(objects_dir: Path, blobs: BlobMap) -> HashRef:
    """Store the nested trees for a flat path mapping and return the root tree hash.

    Directories are written deepest first so every subtree hash is known before its parent."""
    children: dict[str, dict[str, TreeRecord]] = {'': {}}
    for path in sorted(blobs):
        parts = path.split('/')
        for depth in range(1, len(parts)):
            children.setdefault('/'.join(parts[:depth]), {})
        blob_hash, mode = blobs[path]
        parent = '/'.join(parts[:-1])
        children[parent][parts[-1]] = TreeRecord(TreeRecordType.BLOB, blob_hash, parts[-1], mode)

    for directory in sorted(children, key=lambda d: d.count('/') if d else -1, reverse=True):
        tree_hash = save_tree(objects_dir, Tree(children[directory]))
        if directory:
            parent, _, name = directory.rpartition('/')
            children[parent][name] = TreeRecord(TreeRecordType.TREE, tree_hash, name)
        else:
            return tree_hash

    msg = 'Root tree was not built'
    raise RuntimeError(msg)


def compute_status(working_dir: Path, repo_dir_name: str, index: Index, head: BlobMap) -> Status:
    """Compare the HEAD tree, the index and the working tree.

    :param working_dir: The root of the working tree.
    :param repo_dir_name: The repository directory name, which is never scanned.
    :param index: The current index.
    :param head: The flattened tree of the HEAD commit.
    :return: The status snapshot."""
    status = Status(conflicting=set(index.conflicts))
    staged = index.blob_map()

    for path, (blob_hash, mode) in staged.items():
        if path not in head:
            status.added.add(path)
        elif head[path] != (blob_hash, mode):
            status.changed.add(path)
    status.removed = set(head) - set(staged)

    for path, entry in index.entries.items():
        file = working_dir / path
        if not file.is_file():
            status.missing.add(path)
            continue

        st = file.stat()
        if file_mode(file) != entry.mode:
            status.modified.add(path)
            continue
        if not index.is_racy(entry) and st.st_size == entry.size and st.st_mtime_ns == entry.mtime_ns:
            continue
        if hash_working_file(file) != entry.hash:
            status.modified.add(path)

    patterns = load_ignore_patterns(working_dir)
    for path in iter_working_files(working_dir, repo_dir_name, patterns):
        if path not in staged and path not in head:
            status.untracked.add(path)

    status.modified -= status.conflicting
    return status


def remove_file(working_dir: Path, path: str) -> None:
    file = working_dir / path
    file.unlink(missing_ok=True)
    parent = file.parent
    while parent != working_dir and parent.is_dir() and not any(parent.iterdir()):
        parent.rmdir()
        parent = parent.parent


def write_blob(objects_dir: Path, file: Path, blob_hash: str, mode: int) -> None:
    file.parent.mkdir(parents=True, exist_ok=True)
    file.write_bytes(load_blob(objects_dir, blob_hash).data)
    file.chmod(0o755 if mode == EXECUTABLE_MODE else 0o644)


def _directory_in_way(working_dir: Path, path: str, removed: set[str]) -> bool:
    directory = working_dir / path
    if not directory.is_dir():
        return False
    files = [file.relative_to(working_dir).as_posix() for file in directory.rglob('*') if not file.is_dir()]
    return not files or any(file not in removed for file in files)


def materialize(working_dir: Path, objects_dir: Path, old: BlobMap, new: BlobMap,
                index: Index) -> dict[str, IndexEntry]:
    """Make the working tree match a new tree.

    Files tracked by the old tree but absent from the new one are deleted. Files whose content
    differs from the index are rewritten.

    :param working_dir: The root of the working tree.
    :param objects_dir: The objects directory of the repository.
    :param old: The tree the working tree currently reflects.
    :param new: The tree to write.
    :param index: The current index, used to skip files that are already up to date.
    :return: Index entries for every file of the new tree.
    :raises IsADirectoryError: If a directory that would survive the switch is in the way of a new file.
        Nothing is changed in that case."""
    removed = set(old) - set(new)
    for path in sorted(new):
        if _directory_in_way(working_dir, path, removed):
            msg = f'Cannot write {path}: a directory is in the way'
            raise IsADirectoryError(msg)

    for path in sorted(removed):
        remove_file(working_dir, path)

    entries: dict[str, IndexEntry] = {}
    for path, (blob_hash, mode) in sorted(new.items()):
        file = working_dir / path
        current = index.get(path)
        up_to_date = (current is not None and current.hash == blob_hash and current.mode == mode
                      and file.is_file() and hash_working_file(file) == blob_hash)
        if not up_to_date:
            write_blob(objects_dir, file, blob_hash, mode)
        entries[path] = stat_entry(file, blob_hash, mode)

    logger.debug('Materialized %d files, removed %d', len(new), len(removed))
    return entries


def stage_file(objects_dir: Path, working_dir: Path, path: str) -> IndexEntry:
    """Store a working tree file as a blob and build its index entry."""
    file = working_dir / path
    blob_hash = save_object(objects_dir, Blob(file.read_bytes()))
    return stat_entry(file, blob_hash, file_mode(file))
