"""Commit graph traversal."""

import heapq
from collections import deque
from collections.abc import Generator, Iterable
from dataclasses import dataclass
from pathlib import Path

from . import Commit
from .plumbing import load_commit
from .ref import HashRef


@dataclass
class LogEntry:
    """A class representing a log entry for a branch or commit history."""

    commit_ref: HashRef
    commit: Commit


def _load_graph(objects_dir: Path, start: Iterable[str]) -> dict[HashRef, Commit]:
    commits: dict[HashRef, Commit] = {}
    queue = deque(HashRef(h) for h in start)
    while queue:
        current = queue.popleft()
        if current in commits:
            continue
        commit = load_commit(objects_dir, current)
        commits[current] = commit
        queue.extend(HashRef(p) for p in commit.parents if p not in commits)
    return commits


def walk(objects_dir: Path, start: Iterable[str], max_count: int | None = None) -> Generator[LogEntry, None, None]:
    """Walk the history reachable from the start commits.

    Commits come out in reverse topological order: a commit is yielded only once all of its
    reachable children have been. Among the commits ready to be yielded, the newest timestamp
    goes first and the digest breaks remaining ties.

    The whole reachable graph is loaded before the first commit is yielded, so the child
    counts are exact. ``max_count`` bounds the output, not the commits read.

    :param objects_dir: The objects directory of the repository.
    :param start: The commits to start from.
    :param max_count: The maximum number of commits to yield, or None for the whole history.
    :return: A generator of log entries.
    :raises NotFoundError: If a commit of the history is missing."""
    if max_count is not None and max_count <= 0:
        return

    commits = _load_graph(objects_dir, start)
    pending_children = dict.fromkeys(commits, 0)
    for commit in commits.values():
        for parent in set(commit.parents):
            pending_children[HashRef(parent)] += 1

    ready = [(-commit.timestamp, commit_hash) for commit_hash, commit in commits.items()
             if pending_children[commit_hash] == 0]
    heapq.heapify(ready)

    emitted = 0
    while ready:
        _, commit_hash = heapq.heappop(ready)
        commit = commits[commit_hash]
        yield LogEntry(commit_hash, commit)

        emitted += 1
        if max_count is not None and emitted >= max_count:
            return

        for parent in set(commit.parents):
            parent_hash = HashRef(parent)
            pending_children[parent_hash] -= 1
            if pending_children[parent_hash] == 0:
                heapq.heappush(ready, (-commits[parent_hash].timestamp, parent_hash))


def ancestors(objects_dir: Path, commit_hash: str) -> set[HashRef]:
    """Return a commit and all of its ancestors."""
    return set(_load_graph(objects_dir, [commit_hash]))


def merge_base(objects_dir: Path, hash1: str, hash2: str) -> HashRef | None:
    """Find the nearest common ancestor of two commits.

    All ancestors of the first commit are marked, then the second commit's history is walked
    breadth first and the first marked commit is returned. For criss-cross histories this picks
    one candidate rather than computing the full set of merge bases.

    :return: The merge base, or None if the histories are unrelated."""
    marked = ancestors(objects_dir, hash1)

    seen: set[str] = set()
    queue = deque([hash2])
    while queue:
        current = queue.popleft()
        if current in marked:
            return HashRef(current)
        if current in seen:
            continue
        seen.add(current)
        queue.extend(load_commit(objects_dir, current).parents)

    return None


def is_ancestor(objects_dir: Path, ancestor: str, descendant: str) -> bool:
    """Check whether a commit is reachable from another. A commit is its own ancestor."""
    return ancestor in ancestors(objects_dir, descendant)
