"""Merge helpers for libarbor."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from merge3 import Merge3

from . import Blob, Tree, TreeRecord, TreeRecordType
from .constants import CONFLICT_MARKER_OURS, CONFLICT_MARKER_SEP, CONFLICT_MARKER_THEIRS
from .plumbing import ObjectError, load_blob, load_commit, load_tree, save_object, save_tree
from .ref import HashRef
from .worktree import flatten_tree

logger = logging.getLogger(__name__)


class MergeError(Exception):
    """Exception raised for merge-related errors."""


class MergeStatus(Enum):
    ALREADY_UP_TO_DATE = 'already-up-to-date'
    FAST_FORWARD = 'fast-forward'
    MERGED = 'merged'
    MERGED_NOT_COMMITTED = 'merged-not-committed'
    CONFLICTING = 'conflicting'

    def is_successful(self) -> bool:
        return self is not MergeStatus.CONFLICTING


class CherryPickStatus(Enum):
    OK = 'ok'
    CONFLICTING = 'conflicting'


@dataclass
class TreeMergeResult:
    """Represents the output of a 3-way tree merge."""

    tree_hash: HashRef
    conflicts: list[str]


@dataclass
class MergeResult:
    """The outcome of merging a commit into the current branch."""

    status: MergeStatus
    conflicts: list[str] = field(default_factory=list)
    merge_base: HashRef | None = None
    new_head: HashRef | None = None


@dataclass
class CherryPickResult:
    """The outcome of applying a single commit on top of HEAD."""

    status: CherryPickStatus
    new_commit: HashRef | None = None
    conflicts: list[str] = field(default_factory=list)


def read_blob_text(objects_dir: Path, blob_hash: str) -> str:
    """Load blob content as UTF-8 text.

    :raises MergeError: If the blob is missing or not UTF-8."""
    try:
        return load_blob(objects_dir, blob_hash).data.decode('utf-8')
    except (ObjectError, UnicodeDecodeError) as e:
        msg = f'Error reading blob {blob_hash}'
        raise MergeError(msg) from e


def save_blob_text(objects_dir: Path, content: str) -> HashRef:
    """Save UTF-8 text content as a blob and return its hash."""
    return save_object(objects_dir, Blob(content.encode('utf-8')))


def _terminated(lines: list[str]) -> list[str]:
    if lines and not lines[-1].endswith('\n'):
        return [*lines[:-1], lines[-1] + '\n']
    return lines


def merge_text(base_text: str, ours_text: str, theirs_text: str, *, is_cherrypick: bool = False) -> tuple[str, bool]:
    """Merge three versions of a text line by line.

    Regions changed differently on both sides are emitted between conflict markers,
    ours first.

    :return: Tuple of (merged text, has_conflict)."""
    merger = Merge3(base_text.splitlines(keepends=True), ours_text.splitlines(keepends=True),
                    theirs_text.splitlines(keepends=True), is_cherrypick=is_cherrypick)

    out: list[str] = []
    conflict = False
    for group in merger.merge_groups():
        match group:
            case ('unchanged' | 'same' | 'a' | 'b', lines):
                out.extend(lines)
            case ('conflict', _, ours_lines, theirs_lines):
                conflict = True
                out.append(CONFLICT_MARKER_OURS)
                out.extend(_terminated(list(ours_lines)))
                out.append(CONFLICT_MARKER_SEP)
                out.extend(_terminated(list(theirs_lines)))
                out.append(CONFLICT_MARKER_THEIRS)

    return ''.join(out), conflict


def merge_blob_text(
    objects_dir: Path,
    base_hash: str | None,
    ours_hash: str,
    theirs_hash: str,
    *,
    is_cherrypick: bool = False,
) -> tuple[HashRef, bool]:
    """Merge three versions of a blob using merge3.

    Hashes are compared first so content is only read when both sides changed.
    Content that is not UTF-8 cannot be merged by line; it is reported as a conflict
    and our version is kept.

    :param objects_dir: Directory containing the blob objects
    :param base_hash: Hash of the common ancestor blob (None if no common ancestor)
    :param ours_hash: Hash of our version of the blob
    :param theirs_hash: Hash of their version of the blob
    :return: Tuple of (merged_blob_hash, has_conflict)"""
    if ours_hash == theirs_hash:
        return HashRef(ours_hash), False
    if base_hash and ours_hash == base_hash:
        return HashRef(theirs_hash), False
    if base_hash and theirs_hash == base_hash:
        return HashRef(ours_hash), False

    try:
        base_text = read_blob_text(objects_dir, base_hash) if base_hash else ''
        ours_text = read_blob_text(objects_dir, ours_hash)
        theirs_text = read_blob_text(objects_dir, theirs_hash)
    except MergeError:
        logger.debug('Cannot merge %s and %s as text', ours_hash, theirs_hash)
        return HashRef(ours_hash), True

    merged_text, conflict = merge_text(base_text, ours_text, theirs_text, is_cherrypick=is_cherrypick)
    return save_blob_text(objects_dir, merged_text), conflict


def records_match(record1: TreeRecord | None, record2: TreeRecord | None) -> bool:
    if record1 is None or record2 is None:
        return False
    return record1.type == record2.type and record1.hash == record2.hash and record1.mode == record2.mode


def _renamed(record: TreeRecord, name: str) -> TreeRecord:
    return TreeRecord(record.type, record.hash, name, record.mode)


def merge_trees_core(
    objects_dir: Path,
    base_tree: Tree | None,
    ours_tree: Tree | None,
    theirs_tree: Tree | None,
    path_prefix: str,
    conflicts: list[str],
    *,
    is_cherrypick: bool = False,
) -> HashRef:
    """Merge trees recursively and return the merged tree hash.

    Conflicting file paths are appended to ``conflicts``. A path deleted on one side and changed
    on the other keeps the changed version; a path that is a file on one side and a
    directory on the other keeps our version. A kept directory reports each of its files."""
    merged_records: dict[str, TreeRecord] = {}
    base_records = base_tree.records if base_tree else {}
    ours_records = ours_tree.records if ours_tree else {}
    theirs_records = theirs_tree.records if theirs_tree else {}

    for name in sorted(set(base_records) | set(ours_records) | set(theirs_records)):
        base_record = base_records.get(name)
        ours_record = ours_records.get(name)
        theirs_record = theirs_records.get(name)
        path = f'{path_prefix}/{name}' if path_prefix else name

        if records_match(ours_record, theirs_record):
            merged_records[name] = _renamed(ours_record, name)
            continue

        if records_match(base_record, ours_record) or (base_record is None and ours_record is None):
            if theirs_record is not None:
                merged_records[name] = _renamed(theirs_record, name)
            continue

        if records_match(base_record, theirs_record) or (base_record is None and theirs_record is None):
            if ours_record is not None:
                merged_records[name] = _renamed(ours_record, name)
            continue

        if (
            ours_record
            and theirs_record
            and ours_record.type == TreeRecordType.TREE
            and theirs_record.type == TreeRecordType.TREE
        ):
            base_subtree = (
                load_tree(objects_dir, base_record.hash)
                if base_record and base_record.type == TreeRecordType.TREE
                else None
            )
            subtree_hash = merge_trees_core(
                objects_dir,
                base_subtree,
                load_tree(objects_dir, ours_record.hash),
                load_tree(objects_dir, theirs_record.hash),
                path,
                conflicts,
                is_cherrypick=is_cherrypick,
            )
            merged_records[name] = TreeRecord(TreeRecordType.TREE, subtree_hash, name)
            continue

        if (
            ours_record
            and theirs_record
            and ours_record.type == TreeRecordType.BLOB
            and theirs_record.type == TreeRecordType.BLOB
        ):
            base_hash = base_record.hash if base_record and base_record.type == TreeRecordType.BLOB else None
            merged_hash, conflict = merge_blob_text(objects_dir, base_hash, ours_record.hash, theirs_record.hash,
                                                    is_cherrypick=is_cherrypick)
            if conflict:
                conflicts.append(path)
            mode = theirs_record.mode if base_record and ours_record.mode == base_record.mode else ours_record.mode
            merged_records[name] = TreeRecord(TreeRecordType.BLOB, merged_hash, name, mode)
            continue

        chosen = ours_record or theirs_record
        if chosen is None:
            conflicts.append(path)
            continue

        merged_records[name] = _renamed(chosen, name)
        if chosen.type == TreeRecordType.TREE:
            files = [f'{path}/{sub_path}' for sub_path in sorted(flatten_tree(objects_dir, chosen.hash))]
            conflicts.extend(files or [path])
        else:
            conflicts.append(path)

    return save_tree(objects_dir, Tree(merged_records))


def merge_tree_hashes(
    objects_dir: Path,
    base_tree_hash: str | None,
    ours_tree_hash: str,
    theirs_tree_hash: str,
    *,
    is_cherrypick: bool = False,
) -> TreeMergeResult:
    """Perform a 3-way merge of three root trees. A missing base merges against the empty tree."""
    try:
        base_tree = load_tree(objects_dir, base_tree_hash) if base_tree_hash else None
        ours_tree = load_tree(objects_dir, ours_tree_hash)
        theirs_tree = load_tree(objects_dir, theirs_tree_hash)
    except ObjectError as e:
        msg = 'Error preparing trees for merge'
        raise MergeError(msg) from e

    conflicts: list[str] = []
    tree_hash = merge_trees_core(objects_dir, base_tree, ours_tree, theirs_tree, '', conflicts,
                                 is_cherrypick=is_cherrypick)
    return TreeMergeResult(tree_hash, conflicts)


def merge_commits_core(objects_dir: Path, base_hash: str, ours_hash: str, theirs_hash: str) -> TreeMergeResult:
    """Perform a 3-way merge between two commits given their common ancestor."""
    try:
        base_commit = load_commit(objects_dir, base_hash)
        ours_commit = load_commit(objects_dir, ours_hash)
        theirs_commit = load_commit(objects_dir, theirs_hash)
    except ObjectError as e:
        msg = 'Error preparing commits for merge'
        raise MergeError(msg) from e

    return merge_tree_hashes(objects_dir, base_commit.tree_hash, ours_commit.tree_hash, theirs_commit.tree_hash)
