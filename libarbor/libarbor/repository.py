"""libarbor repository management."""

import fnmatch
import logging
import shutil
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import wraps
from pathlib import Path
from typing import Concatenate

from . import AnnotatedTag, Blob, Commit
from .config import RepositoryConfig
from .constants import (CONFIG_FILE, DEFAULT_REPO_DIR, HASH_CHARSET, HEAD_FILE, HEADS_DIR, INDEX_FILE,
                        MAX_SYMREF_DEPTH, MERGE_HEAD_FILE, MERGE_MSG_FILE, MIN_ABBREV_LENGTH, OBJECTS_SUBDIR,
                        REFS_DIR, TAGS_DIR)
from .diff import FileDiff, diff_blob_maps
from .history import LogEntry, is_ancestor, merge_base, walk
from .index import Index, IndexEntry
from .merge import (CherryPickResult, CherryPickStatus, MergeError, MergeResult, MergeStatus,
                    merge_commits_core, merge_tree_hashes)
from .plumbing import (NotFoundError, is_valid_hash, load_commit, load_tag, object_exists, read_object_type,
                       resolve_abbreviated, save_commit, save_file_content, save_tag)
from .ref import (LOCK_SUFFIX, ConcurrentUpdateError, DanglingRefError, HashRef, Ref, RefError, Reference, SymRef,
                  compare_and_swap_ref, read_ref, write_ref)
from .worktree import (BlobMap, Status, build_tree, compute_status, flatten_tree, hash_working_file,
                       iter_working_files, load_ignore_patterns, materialize, remove_file, stage_file)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Exception raised for repository-related errors."""


class RepositoryNotFoundError(RepositoryError):
    """Exception raised when a repository is not found."""


class DirtyWorkingTreeError(RepositoryError):
    """Exception raised when an operation would overwrite uncommitted changes."""


class ResetMode(Enum):
    SOFT = 'soft'
    MIXED = 'mixed'
    HARD = 'hard'


@dataclass
class Tag:
    """Represents an immutable label that points to a commit."""

    name: str
    target: HashRef
    message: str | None = None


class Repository:
    """Represents a libarbor repository.

    This class provides methods to initialize a repository, manage branches and tags,
    stage and commit changes, and merge or cherry-pick history. A Repository instance is the
    handle all operations run against; it is not safe to run two operations that touch the
    index or working tree concurrently on the same repository."""

    def __init__(self, working_dir: Path | str, repo_dir: Path | str | None = None) -> None:
        """Initialize a Repository instance. The repository is not created on disk until `init()` is called.

        :param working_dir: The working directory where the repository will be located.
        :param repo_dir: The name of the repository directory within the working directory. Defaults to '.arbor'."""
        self.working_dir = Path(working_dir)

        if repo_dir is None:
            self.repo_dir = Path(DEFAULT_REPO_DIR)
        else:
            self.repo_dir = Path(repo_dir)

    def init(self, default_branch: str | None = None) -> None:
        """Initialize a new repository in the working directory.

        Initializing an existing repository does nothing. Missing directories are created.

        :param default_branch: The name of the branch HEAD points to. Defaults to 'main'."""
        if self.exists():
            logger.debug('Repository already exists at %s', self.repo_path())
            return

        self.objects_dir().mkdir(parents=True)
        self.heads_dir().mkdir(parents=True)
        self.tags_dir().mkdir(parents=True)

        config = RepositoryConfig(self.config_file())
        if default_branch:
            config.set('core', 'default_branch', default_branch)
        config.save()

        branch = config.default_branch
        (self.heads_dir() / branch).touch()
        write_ref(self.head_file(), branch_ref(branch))
        logger.info('Initialized empty repository in %s', self.repo_path())

    def exists(self) -> bool:
        """Check if the repository exists in the working directory.

        :return: True if the repository exists, False otherwise."""
        return self.repo_path().exists()

    def repo_path(self) -> Path:
        """Get the path to the repository directory.

        :return: The path to the repository directory."""
        return self.working_dir / self.repo_dir

    def objects_dir(self) -> Path:
        """Get the path to the objects directory within the repository.

        :return: The path to the objects directory."""
        return self.repo_path() / OBJECTS_SUBDIR

    def refs_dir(self) -> Path:
        """Get the path to the refs directory within the repository.

        :return: The path to the refs directory."""
        return self.repo_path() / REFS_DIR

    def heads_dir(self) -> Path:
        """Get the path to the heads directory within the repository.

        :return: The path to the heads directory."""
        return self.refs_dir() / HEADS_DIR

    def tags_dir(self) -> Path:
        """Get the path to the tags directory within the repository."""
        return self.refs_dir() / TAGS_DIR

    def head_file(self) -> Path:
        """Get the path to the HEAD file within the repository.

        :return: The path to the HEAD file."""
        return self.repo_path() / HEAD_FILE

    def index_file(self) -> Path:
        return self.repo_path() / INDEX_FILE

    def config_file(self) -> Path:
        return self.repo_path() / CONFIG_FILE

    def merge_head_file(self) -> Path:
        return self.repo_path() / MERGE_HEAD_FILE

    def merge_msg_file(self) -> Path:
        return self.repo_path() / MERGE_MSG_FILE

    def ref_path(self, ref_name: str) -> Path:
        """Get the file a named reference is stored in. HEAD lives in the repository directory."""
        if ref_name == HEAD_FILE:
            return self.head_file()
        return self.refs_dir() / ref_name

    @staticmethod
    def requires_repo[**P, R](func: Callable[Concatenate['Repository', P], R]) -> \
            Callable[Concatenate['Repository', P], R]:
        """Decorate a Repository method to ensure that the repository exists before executing the method.

        :param func: The method to decorate.
        :return: A wrapper function that checks for the repository's existence."""

        @wraps(func)
        def _verify_repo(self: 'Repository', *args: P.args, **kwargs: P.kwargs) -> R:
            if not self.exists():
                msg = f'Repository not initialized at {self.repo_path()}'
                raise RepositoryNotFoundError(msg)

            return func(self, *args, **kwargs)

        return _verify_repo

    @requires_repo
    def config(self) -> RepositoryConfig:
        return RepositoryConfig(self.config_file())

    @requires_repo
    def head_ref(self) -> Ref | None:
        """Get the current HEAD reference of the repository.

        :return: The current HEAD reference, which can be a HashRef or SymRef.
        :raises RepositoryError: If the HEAD ref file does not exist.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        head_file = self.head_file()
        if not head_file.exists():
            msg = 'HEAD ref file does not exist'
            raise RepositoryError(msg)

        return read_ref(head_file)

    @requires_repo
    def head_commit(self) -> HashRef | None:
        """Return a ref to the current commit reference of the HEAD.

        :return: The current commit reference, or None if the current branch has no commits.
        :raises RepositoryError: If the HEAD ref file does not exist.
        :raises DanglingRefError: If HEAD cannot be resolved to a stored commit.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return self.resolve_ref(self.head_ref())

    @requires_repo
    def current_branch(self) -> str | None:
        """Return the name of the checked out branch, or None if HEAD is detached."""
        head = self.head_ref()
        if isinstance(head, SymRef) and head.startswith(f'{HEADS_DIR}/'):
            return head.removeprefix(f'{HEADS_DIR}/')
        return None

    @requires_repo
    def list_refs(self, prefix: str = '') -> list[Reference]:
        """List the references stored under the refs directory, sorted by name.

        :param prefix: Only list references whose name starts with this prefix, e.g. 'heads/'.
        :return: The matching references. Unborn branches have a None target.
        :raises RepositoryError: If the refs directory does not exist or is not a directory.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        refs_dir = self.refs_dir()
        if not refs_dir.exists() or not refs_dir.is_dir():
            msg = f'Refs directory does not exist or is not a directory: {refs_dir}'
            raise RepositoryError(msg)

        refs = []
        for ref_file in refs_dir.rglob('*'):
            if not ref_file.is_file() or ref_file.name.startswith('.') or ref_file.name.endswith(LOCK_SUFFIX):
                continue
            name = ref_file.relative_to(refs_dir).as_posix()
            if name.startswith(prefix):
                refs.append(Reference(name, read_ref(ref_file)))

        refs.sort(key=lambda ref: ref.name)
        return refs

    @requires_repo
    def resolve_ref(self, ref: Ref | str | None) -> HashRef | None:
        """Resolve a reference to a commit hash, following symbolic references and peeling annotated tags.

        Strings are looked up as HEAD, a full reference name ('heads/main'), a branch name,
        a tag name, a full hash and finally an abbreviated hash, in that order.

        :param ref: The reference to resolve. This can be a HashRef, SymRef, or a string.
        :return: The resolved HashRef, or None if the reference is None or names a branch without commits.
        :raises DanglingRefError: If a symbolic chain ends in a missing reference or object, or is cyclic.
        :raises RefError: If the reference is invalid or cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return self._resolve(ref, 0)

    def _resolve(self, ref: Ref | str | None, depth: int) -> HashRef | None:
        if depth > MAX_SYMREF_DEPTH:
            msg = f'Reference chain through "{ref}" is too deep or cyclic'
            raise DanglingRefError(msg)

        match ref:
            case None:
                return None
            case HashRef():
                return self._peel(ref)
            case SymRef():
                ref_file = self.ref_path(ref)
                if not ref_file.is_file():
                    msg = f'Reference "{ref}" does not exist'
                    raise DanglingRefError(msg)

                target = read_ref(ref_file)
                if isinstance(target, HashRef) and not object_exists(self.objects_dir(), target):
                    msg = f'Reference "{ref}" points to missing object {target}'
                    raise DanglingRefError(msg)
                return self._resolve(target, depth + 1)
            case str():
                return self._resolve(self._parse_ref_name(ref), depth)
            case _:
                msg = f'Invalid reference type: {type(ref)}'
                raise RefError(msg)

    def _parse_ref_name(self, name: str) -> Ref:
        if name.upper() == HEAD_FILE:
            return SymRef(HEAD_FILE)
        for candidate in (name, f'{HEADS_DIR}/{name}', f'{TAGS_DIR}/{name}'):
            if (self.refs_dir() / candidate).is_file():
                return SymRef(candidate)
        if is_valid_hash(name):
            return HashRef(name)
        if len(name) >= MIN_ABBREV_LENGTH and all(c in HASH_CHARSET for c in name):
            try:
                return resolve_abbreviated(self.objects_dir(), name)
            except NotFoundError as e:
                msg = f'Invalid reference: {name}'
                raise RefError(msg) from e

        msg = f'Invalid reference: {name}'
        raise RefError(msg)

    def _peel(self, ref: HashRef) -> HashRef:
        if object_exists(self.objects_dir(), ref) and read_object_type(self.objects_dir(), ref) == 'tag':
            return self._peel(HashRef(load_tag(self.objects_dir(), ref).target))
        return ref

    @requires_repo
    def update_ref(self, ref_name: str, expected_old: Ref | None, new_ref: Ref | None) -> bool:
        """Atomically replace a reference if it still holds the expected value.

        :param ref_name: The name of the reference, e.g. 'heads/main' or 'HEAD'.
        :param expected_old: The value the reference must currently hold. None means it must not exist
            or be an unborn branch.
        :param new_ref: The new reference value to set.
        :return: True if the reference was updated, False if it held a different value or was locked.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return compare_and_swap_ref(self.ref_path(ref_name), expected_old, new_ref)

    def _move_head(self, expected_old: HashRef | None, new_commit: HashRef) -> None:
        head = self.head_ref()
        ref_name = str(head) if isinstance(head, SymRef) else HEAD_FILE
        if not self.update_ref(ref_name, expected_old, new_commit):
            msg = f'Reference "{ref_name}" was updated concurrently; expected {expected_old}'
            raise ConcurrentUpdateError(msg)

    @requires_repo
    def delete_repo(self) -> None:
        """Delete the entire repository, including all objects and refs.

        :raises RepositoryNotFoundError: If the repository does not exist."""
        shutil.rmtree(self.repo_path())

    @requires_repo
    def save_file_content(self, file: Path) -> Blob:
        """Save the content of a file to the repository.

        :param file: The path to the file to save.
        :return: A Blob object representing the saved file content.
        :raises ValueError: If the file does not exist.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return save_file_content(self.objects_dir(), file)

    @requires_repo
    def create_branch(self, branch: str, start_point: Ref | str | None = HEAD_FILE) -> Reference:
        """Create a new branch pointing to an existing commit.

        :param branch: The name of the branch to create.
        :param start_point: The commit, branch or tag the branch starts at. Defaults to HEAD.
        :return: The created reference.
        :raises ValueError: If the branch name is empty or invalid.
        :raises RepositoryError: If the branch already exists or there is no commit to start from.
        :raises ConcurrentUpdateError: If the branch was created concurrently.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        _validate_ref_name(branch, 'Branch')
        if self.branch_exists(branch):
            msg = f'Branch "{branch}" already exists'
            raise RepositoryError(msg)

        target = self.resolve_ref(start_point)
        if target is None:
            msg = f'Cannot create branch "{branch}": "{start_point}" has no commits'
            raise RepositoryError(msg)

        ref_name = f'{HEADS_DIR}/{branch}'
        if not self.update_ref(ref_name, None, target):
            msg = f'Branch "{branch}" was created concurrently'
            raise ConcurrentUpdateError(msg)

        logger.info('Created branch %s at %s', branch, target[:7])
        return Reference(ref_name, target)

    @requires_repo
    def delete_branch(self, branch: str) -> None:
        """Delete a branch from the repository.

        :param branch: The name of the branch to delete.
        :raises ValueError: If the branch name is empty or invalid.
        :raises RepositoryError: If the branch does not exist, is checked out, or is the last branch.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        _validate_ref_name(branch, 'Branch')
        branch_path = self.heads_dir() / branch

        if not branch_path.exists():
            msg = f'Branch "{branch}" does not exist.'
            raise RepositoryError(msg)
        if self.current_branch() == branch:
            msg = f'Cannot delete the checked out branch "{branch}".'
            raise RepositoryError(msg)
        if len(self.branches()) == 1:
            msg = f'Cannot delete the last branch "{branch}".'
            raise RepositoryError(msg)

        branch_path.unlink()

    @requires_repo
    def branch_exists(self, branch: str) -> bool:
        """Check if a branch exists in the repository.

        :param branch: The name of the branch to check.
        :return: True if the branch exists, False otherwise.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return (self.heads_dir() / branch).is_file()

    @requires_repo
    def branches(self) -> list[str]:
        """Get a sorted list of all branch names in the repository.

        :return: A list of branch names.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return [ref.name.removeprefix(f'{HEADS_DIR}/') for ref in self.list_branches()]

    @requires_repo
    def list_branches(self) -> list[Reference]:
        """List all branches as references named 'heads/<branch>', sorted by name."""
        return self.list_refs(f'{HEADS_DIR}/')

    @requires_repo
    def create_tag(self, tag_name: str, target: Ref | str = HEAD_FILE, message: str | None = None) -> Tag:
        """Create a new tag that points to the given target commit.

        A tag with a message is stored as an annotated tag object; without one the tag
        points directly at the commit.

        :param tag_name: The name of the tag to create.
        :param target: The reference (commit hash, branch, or tag) the new tag should point to.
        :param message: The tag message, or None for a lightweight tag.
        :return: The created Tag.
        :raises ValueError: If the tag name is empty.
        :raises RepositoryError: If the tag already exists or the target cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        _validate_ref_name(tag_name, 'Tag')
        if self.tag_exists(tag_name):
            msg = f'Tag "{tag_name}" already exists'
            raise RepositoryError(msg)

        try:
            resolved_target = self.resolve_ref(target)
        except RefError as exc:
            msg = f'Cannot resolve target "{target}" for tag "{tag_name}"'
            raise RepositoryError(msg) from exc
        if resolved_target is None:
            msg = f'Cannot resolve target "{target}" for tag "{tag_name}"'
            raise RepositoryError(msg)

        try:
            load_commit(self.objects_dir(), resolved_target)
        except NotFoundError as exc:
            msg = f'Cannot create tag "{tag_name}" because commit {resolved_target} does not exist'
            raise RepositoryError(msg) from exc

        value = resolved_target
        if message is not None:
            annotated = AnnotatedTag(tag_name, resolved_target, self.config().author, message, _now())
            value = save_tag(self.objects_dir(), annotated)

        if not self.update_ref(f'{TAGS_DIR}/{tag_name}', None, value):
            msg = f'Tag "{tag_name}" was created concurrently'
            raise ConcurrentUpdateError(msg)

        logger.info('Created tag %s at %s', tag_name, resolved_target[:7])
        return Tag(tag_name, resolved_target, message)

    @requires_repo
    def delete_tag(self, tag_name: str) -> None:
        """Delete a tag from the repository.

        :raises ValueError: If the tag name is empty or invalid.
        :raises RepositoryError: If the tag does not exist."""
        _validate_ref_name(tag_name, 'Tag')

        tag_path = self.tags_dir() / tag_name
        if not tag_path.exists():
            msg = f'Tag "{tag_name}" does not exist.'
            raise RepositoryError(msg)

        tag_path.unlink()

    @requires_repo
    def list_tags(self) -> list[Tag]:
        """Return all tags sorted by name."""
        tags: list[Tag] = []
        for ref in self.list_refs(f'{TAGS_DIR}/'):
            if not isinstance(ref.target, HashRef):
                msg = f'Invalid tag reference stored in {ref.name}'
                raise RepositoryError(msg)

            name = ref.name.removeprefix(f'{TAGS_DIR}/')
            if read_object_type(self.objects_dir(), ref.target) == 'tag':
                annotated = load_tag(self.objects_dir(), ref.target)
                tags.append(Tag(name, self._peel(ref.target), annotated.message))
            else:
                tags.append(Tag(name, ref.target))

        return tags

    @requires_repo
    def tag_exists(self, tag_name: str) -> bool:
        """Check whether a tag with the given name exists."""
        if not tag_name:
            msg = 'Tag name is required'
            raise ValueError(msg)

        return (self.tags_dir() / tag_name).exists()

    def _load_index(self) -> Index:
        return Index.load(self.index_file())

    def _commit_blobs(self, commit_hash: HashRef | None) -> BlobMap:
        if commit_hash is None:
            return {}
        return flatten_tree(self.objects_dir(), load_commit(self.objects_dir(), commit_hash).tree_hash)

    def _working_files(self) -> list[str]:
        patterns = load_ignore_patterns(self.working_dir)
        return list(iter_working_files(self.working_dir, self.repo_dir.name, patterns))

    @requires_repo
    def status(self) -> Status:
        """Compare HEAD, the index and the working tree.

        :return: The status snapshot.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        return compute_status(self.working_dir, self.repo_dir.name, self._load_index(),
                              self._commit_blobs(self.head_commit()))

    @requires_repo
    def add(self, pattern: str) -> list[str]:
        """Stage the working tree files matching a path pattern.

        :param pattern: '.' for every file, a file or directory path, or a glob.
        :return: The staged paths.
        :raises ValueError: If the pattern is empty.
        :raises RepositoryError: If the pattern matches no file.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not pattern:
            msg = 'Path pattern is required'
            raise ValueError(msg)

        matched = [path for path in self._working_files() if _matches(path, pattern)]
        if not matched and _normalize_pattern(pattern):
            msg = f'Pattern "{pattern}" did not match any files'
            raise RepositoryError(msg)

        index = self._load_index()
        for path in matched:
            index.stage(path, stage_file(self.objects_dir(), self.working_dir, path))
        index.save()

        logger.debug('Staged %d files for %r', len(matched), pattern)
        return matched

    @requires_repo
    def remove(self, pattern: str, cached: bool = False) -> list[str]:
        """Unstage the index entries matching a path pattern and delete their files.

        :param pattern: '.' for every tracked file, a file or directory path, or a glob.
        :param cached: Keep the working tree files. Only then may files with uncommitted changes be removed.
        :return: The removed paths.
        :raises ValueError: If the pattern is empty.
        :raises DirtyWorkingTreeError: If a matched file differs from HEAD or from the index.
        :raises RepositoryError: If the pattern matches no tracked file.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not pattern:
            msg = 'Path pattern is required'
            raise ValueError(msg)

        index = self._load_index()
        matched = [path for path in index if _matches(path, pattern)]
        if not matched:
            msg = f'Pattern "{pattern}" did not match any tracked files'
            raise RepositoryError(msg)

        if not cached:
            head = self._commit_blobs(self.head_commit())
            unsaved = [path for path in matched if self._has_unsaved_changes(path, index, head)]
            if unsaved:
                msg = f'Cannot remove files with uncommitted changes: {", ".join(unsaved)}'
                raise DirtyWorkingTreeError(msg)

        for path in matched:
            index.unstage(path)
            if not cached:
                remove_file(self.working_dir, path)
        index.save()

        logger.debug('Removed %d files for %r', len(matched), pattern)
        return matched

    def _has_unsaved_changes(self, path: str, index: Index, head: BlobMap) -> bool:
        entry = index.get(path)
        if entry is None or head.get(path) != (entry.hash, entry.mode):
            return True
        file = self.working_dir / path
        return file.is_file() and hash_working_file(file) != entry.hash

    @requires_repo
    def commit(self, message: str | None, author: str | None = None) -> LogEntry:
        """Commit the staged content of the index.

        If a merge is in progress, the merged commit becomes the second parent and the
        prepared merge message is used when no message is given.

        :param message: The commit message.
        :param author: The commit author. Defaults to the configured identity.
        :return: The new commit and its hash.
        :raises ValueError: If the message is empty.
        :raises RepositoryError: If the index still has unresolved conflicts.
        :raises ConcurrentUpdateError: If the branch moved while committing.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not message and self.merge_msg_file().exists():
            message = self.merge_msg_file().read_text()
        if not message:
            msg = 'Commit message is required'
            raise ValueError(msg)

        index = self._load_index()
        if index.conflicts:
            msg = f'Cannot commit with unresolved conflicts in {", ".join(sorted(index.conflicts))}'
            raise RepositoryError(msg)

        parent = self.head_commit()
        parents = [parent] if parent else []
        merge_head = self._merge_head()
        if merge_head:
            parents.append(merge_head)

        committer = self.config().author
        tree_hash = build_tree(self.objects_dir(), index.blob_map())
        commit = Commit(tree_hash, author or committer, message, _now(), tuple(parents), committer)
        commit_ref = save_commit(self.objects_dir(), commit)

        self._move_head(parent, commit_ref)
        self._clear_merge_state()

        logger.info('Committed %s: %s', commit_ref[:7], commit.short_message)
        return LogEntry(commit_ref, commit)

    @requires_repo
    def log(self, tip: Ref | str | None = None, max_count: int | None = None) -> Generator[LogEntry, None, None]:
        """Generate a log of commits in the repository, starting from the specified tip.

        :param tip: The reference to the commit to start from. If None, defaults to the current HEAD.
        :param max_count: The maximum number of entries, or None for the whole history.
        :return: A generator yielding LogEntry objects, newest first.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        start = self.resolve_ref(tip or self.head_ref())
        if start is None:
            return
        yield from walk(self.objects_dir(), [start], max_count)

    @requires_repo
    def diff(self, commit_ref1: Ref | str | None = None, commit_ref2: Ref | str | None = None) -> Sequence[FileDiff]:
        """Generate a diff between two commits in the repository.

        :param commit_ref1: The reference to the old commit. If None, defaults to the current HEAD.
        :param commit_ref2: The reference to the new commit. If None, defaults to the current HEAD.
        :return: The changed files, sorted by path, with their line hunks.
        :raises RepositoryError: If a reference cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        commit_hash1 = self._require_commit(commit_ref1)
        commit_hash2 = self._require_commit(commit_ref2)

        return diff_blob_maps(self.objects_dir(), self._commit_blobs(commit_hash1), self._commit_blobs(commit_hash2))

    def _require_commit(self, ref: Ref | str | None) -> HashRef:
        commit_hash = self.resolve_ref(ref if ref is not None else self.head_ref())
        if commit_hash is None:
            msg = f'Cannot resolve reference {ref or HEAD_FILE}'
            raise RepositoryError(msg)
        return commit_hash

    @requires_repo
    def merge_base(self, commit_ref1: Ref | str | None = None, commit_ref2: Ref | str | None = None) -> HashRef | None:
        """Find the common ancestor of two commits, if one exists."""
        return merge_base(self.objects_dir(), self._require_commit(commit_ref1), self._require_commit(commit_ref2))

    def _merge_head(self) -> HashRef | None:
        merge_head_file = self.merge_head_file()
        if not merge_head_file.exists():
            return None
        value = read_ref(merge_head_file)
        return value if isinstance(value, HashRef) else None

    def _clear_merge_state(self) -> None:
        self.merge_head_file().unlink(missing_ok=True)
        self.merge_msg_file().unlink(missing_ok=True)

    @requires_repo
    def merge_in_progress(self) -> bool:
        return self.merge_head_file().exists()

    def _require_clean(self, operation: str) -> Status:
        if self.merge_in_progress():
            msg = f'Cannot {operation}: a merge is in progress'
            raise DirtyWorkingTreeError(msg)

        status = self.status()
        if status.has_uncommitted_changes():
            dirty = (status.added | status.changed | status.removed | status.modified | status.missing
                     | status.conflicting)
            msg = f'Cannot {operation}: uncommitted changes in {", ".join(sorted(dirty))}'
            raise DirtyWorkingTreeError(msg)
        return status

    def _check_untracked(self, status: Status, new: BlobMap, operation: str) -> None:
        clobbered = sorted(path for path in status.untracked & set(new)
                           if hash_working_file(self.working_dir / path) != new[path][0])
        if clobbered:
            msg = f'Cannot {operation}: untracked files would be overwritten: {", ".join(clobbered)}'
            raise DirtyWorkingTreeError(msg)

    def _switch_tree(self, old: BlobMap, new: BlobMap, conflicts: Sequence[str] = ()) -> None:
        index = self._load_index()
        entries = materialize(self.working_dir, self.objects_dir(), old, new, index)
        index.replace(entries)
        index.conflicts = set(conflicts)
        index.save()

    @requires_repo
    def checkout(self, name: str, create_branch: bool = False, start_point: Ref | str | None = None) -> None:
        """Switch the working tree, index and HEAD to a branch, tag or commit.

        Checking out a tag or commit detaches HEAD. The working tree is switched before HEAD or any branch
        moves. If the new branch cannot be created, the previous tree is restored.

        :param name: The branch to check out, or to create when `create_branch` is set. Any resolvable
            reference is accepted when not creating a branch.
        :param create_branch: Create the branch before checking it out.
        :param start_point: Where the new branch starts. Defaults to HEAD.
        :raises DirtyWorkingTreeError: If uncommitted changes or untracked files would be overwritten.
        :raises RepositoryError: If the target cannot be resolved.
        :raises IsADirectoryError: If a directory is in the way of a file of the target tree.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not name:
            msg = 'Branch name is required'
            raise ValueError(msg)

        status = self._require_clean('checkout')

        if create_branch:
            target_commit = self.resolve_ref(start_point or self.head_ref())
        elif self.branch_exists(name):
            target_commit = self.resolve_ref(branch_ref(name))
        else:
            try:
                target_commit = self.resolve_ref(name)
            except RefError as e:
                msg = f'Cannot check out "{name}"'
                raise RepositoryError(msg) from e

        new = self._commit_blobs(target_commit)
        self._check_untracked(status, new, 'checkout')

        if create_branch:
            _validate_ref_name(name, 'Branch')
            if self.branch_exists(name):
                msg = f'Branch "{name}" already exists'
                raise RepositoryError(msg)
            if target_commit is None:
                msg = f'Cannot create branch "{name}": "{start_point or HEAD_FILE}" has no commits'
                raise RepositoryError(msg)

        old = self._commit_blobs(self.head_commit())
        self._switch_tree(old, new)

        if create_branch:
            try:
                self.create_branch(name, target_commit)
            except (RepositoryError, RefError):
                self._switch_tree(new, old)
                raise
            new_head: Ref = branch_ref(name)
        elif self.branch_exists(name):
            new_head = branch_ref(name)
        else:
            new_head = target_commit

        write_ref(self.head_file(), new_head)
        logger.info('Checked out %s', name)

    @requires_repo
    def merge(self, incoming: Ref | str, auto_commit: bool = True, message: str | None = None) -> MergeResult:
        """Merge a branch, tag or commit into the current branch.

        :param incoming: The reference to merge.
        :param auto_commit: Create the merge commit when there are no conflicts.
        :param message: The merge commit message.
        :return: The merge outcome. Conflicts are reported in the result, not raised.
        :raises DirtyWorkingTreeError: If the working tree has uncommitted changes.
        :raises MergeError: If the histories have no common ancestor.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        status = self._require_clean('merge')

        theirs = self._require_commit(incoming)
        ours = self.head_commit()
        if ours is not None and is_ancestor(self.objects_dir(), theirs, ours):
            logger.info('Already up to date with %s', incoming)
            return MergeResult(MergeStatus.ALREADY_UP_TO_DATE, [], theirs, ours)

        old = self._commit_blobs(ours)
        if ours is None or is_ancestor(self.objects_dir(), ours, theirs):
            new = self._commit_blobs(theirs)
            self._check_untracked(status, new, 'merge')
            self._switch_tree(old, new)
            try:
                self._move_head(ours, theirs)
            except ConcurrentUpdateError:
                self._switch_tree(new, old)
                raise
            logger.info('Fast-forwarded to %s', theirs[:7])
            return MergeResult(MergeStatus.FAST_FORWARD, [], ours, theirs)

        base = merge_base(self.objects_dir(), ours, theirs)
        if base is None:
            msg = f'No common ancestor found for merge with {incoming}'
            raise MergeError(msg)

        result = merge_commits_core(self.objects_dir(), base, ours, theirs)
        new = flatten_tree(self.objects_dir(), result.tree_hash)
        self._check_untracked(status, new, 'merge')
        self._switch_tree(old, new, result.conflicts)

        write_ref(self.merge_head_file(), theirs)
        message = message or f'Merge {incoming} into {self.current_branch() or HEAD_FILE}'
        self.merge_msg_file().write_text(message)

        if result.conflicts:
            logger.info('Merge of %s stopped with %d conflicts', incoming, len(result.conflicts))
            return MergeResult(MergeStatus.CONFLICTING, result.conflicts, base, ours)
        if not auto_commit:
            return MergeResult(MergeStatus.MERGED_NOT_COMMITTED, [], base, ours)

        entry = self.commit(message)
        return MergeResult(MergeStatus.MERGED, [], base, entry.commit_ref)

    @requires_repo
    def cherry_pick(self, commit: Ref | str) -> CherryPickResult:
        """Apply the changes introduced by a single commit on top of HEAD.

        :param commit: The commit to pick. It must have at most one parent.
        :return: The outcome. Conflicts are reported in the result, not raised.
        :raises DirtyWorkingTreeError: If the working tree has uncommitted changes.
        :raises MergeError: If the commit is a merge commit.
        :raises RepositoryError: If HEAD has no commits.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        status = self._require_clean('cherry-pick')

        picked_hash = self._require_commit(commit)
        picked = load_commit(self.objects_dir(), picked_hash)
        if len(picked.parents) > 1:
            msg = f'Cannot cherry-pick merge commit {picked_hash}'
            raise MergeError(msg)

        ours = self.head_commit()
        if ours is None:
            msg = 'Cannot cherry-pick onto a branch without commits'
            raise RepositoryError(msg)

        base_tree = load_commit(self.objects_dir(), picked.parent).tree_hash if picked.parent else None
        ours_tree = load_commit(self.objects_dir(), ours).tree_hash
        result = merge_tree_hashes(self.objects_dir(), base_tree, ours_tree, picked.tree_hash, is_cherrypick=True)

        new = flatten_tree(self.objects_dir(), result.tree_hash)
        self._check_untracked(status, new, 'cherry-pick')
        self._switch_tree(self._commit_blobs(ours), new, result.conflicts)

        if result.conflicts:
            logger.info('Cherry-pick of %s stopped with %d conflicts', picked_hash[:7], len(result.conflicts))
            return CherryPickResult(CherryPickStatus.CONFLICTING, None, result.conflicts)

        entry = self.commit(picked.message, author=picked.author)
        return CherryPickResult(CherryPickStatus.OK, entry.commit_ref)

    @requires_repo
    def reset(self, mode: ResetMode = ResetMode.MIXED, target: Ref | str | None = HEAD_FILE) -> None:
        """Move the current branch to a commit and optionally reset the index and working tree.

        SOFT only moves the branch. MIXED also rebuilds the index from the target tree.
        HARD also rewrites tracked working tree files and clears merge state and conflicts.

        :param mode: How much state to reset.
        :param target: The commit to reset to. Defaults to HEAD.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        current = self.head_commit()
        target_commit = self.resolve_ref(target)
        if target_commit is not None and target_commit != current:
            self._move_head(current, target_commit)

        if mode is ResetMode.SOFT:
            return

        new = self._commit_blobs(target_commit)
        index = self._load_index()
        if mode is ResetMode.HARD:
            old = {**self._commit_blobs(current), **index.blob_map()}
            index.replace(materialize(self.working_dir, self.objects_dir(), old, new, index))
        else:
            index.replace({path: IndexEntry(blob_hash, file_mode) for path, (blob_hash, file_mode) in new.items()})
        index.save()
        self._clear_merge_state()

        logger.info('Reset (%s) to %s', mode.value, target_commit[:7] if target_commit else 'empty tree')


def init_repository(working_dir: Path | str, repo_dir: Path | str | None = None) -> Repository:
    """Create a repository, or open it if it already exists.

    :param working_dir: The working directory of the repository. Missing directories are created.
    :param repo_dir: The name of the repository directory within the working directory.
    :return: The repository handle."""
    repo = Repository(working_dir, repo_dir)
    repo.init()
    return repo


def branch_ref(branch: str) -> SymRef:
    """Create a symbolic reference for a branch name.

    :param branch: The name of the branch.
    :return: A SymRef object representing the branch reference."""
    return SymRef(f'{HEADS_DIR}/{branch}')


def tag_ref(tag: str) -> SymRef:
    """Create a symbolic reference for a tag name."""
    return SymRef(f'{TAGS_DIR}/{tag}')


def _now() -> int:
    return int(datetime.now().timestamp())


def _validate_ref_name(name: str, kind: str) -> None:
    if not name:
        msg = f'{kind} name is required'
        raise ValueError(msg)
    parts = name.split('/')
    if any(not part or part.startswith('.') or part.endswith(LOCK_SUFFIX) for part in parts) \
            or any(c.isspace() or c in '~^:?*[\\' for c in name):
        msg = f'Invalid {kind.lower()} name: "{name}"'
        raise ValueError(msg)


def _normalize_pattern(pattern: str) -> str:
    pattern = pattern.replace('\\', '/').strip('/')
    while pattern.startswith('./'):
        pattern = pattern[2:]
    return '' if pattern == '.' else pattern


def _matches(path: str, pattern: str) -> bool:
    pattern = _normalize_pattern(pattern)
    if not pattern:
        return True
    return path == pattern or path.startswith(pattern + '/') or fnmatch.fnmatch(path, pattern)
