"""Reference values and their on-disk representation."""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SYMREF_PREFIX = 'ref: '
LOCK_SUFFIX = '.lock'


class RefError(Exception):
    """Exception raised for invalid references."""


class DanglingRefError(RefError):
    """Exception raised when a reference chain does not end in a stored object."""


class ConcurrentUpdateError(RefError):
    """Exception raised when a reference changed underneath an update. The caller may retry."""


class HashRef(str):
    """A reference that is an object digest."""

    __slots__ = ()


class SymRef(str):
    """A symbolic reference naming another reference, e.g. ``heads/main``."""

    __slots__ = ()


type Ref = HashRef | SymRef


@dataclass(frozen=True)
class Reference:
    """A named reference and the value it holds.

    The target is None for a branch that has no commits yet."""

    name: str
    target: Ref | None


def same_ref(ref1: Ref | None, ref2: Ref | None) -> bool:
    """Compare two reference values, taking their kind into account."""
    if ref1 is None or ref2 is None:
        return ref1 is None and ref2 is None
    return type(ref1) is type(ref2) and str(ref1) == str(ref2)


def parse_ref(content: str) -> Ref | None:
    content = content.strip()
    if not content:
        return None
    if content.startswith(SYMREF_PREFIX):
        return SymRef(content.removeprefix(SYMREF_PREFIX).strip())
    return HashRef(content)


def format_ref(ref: Ref | None) -> str:
    match ref:
        case None:
            return ''
        case SymRef():
            return f'{SYMREF_PREFIX}{ref}\n'
        case HashRef():
            return f'{ref}\n'
        case _:
            msg = f'Invalid reference type: {type(ref)}'
            raise RefError(msg)


def read_ref(ref_file: Path) -> Ref | None:
    """Read a reference from a file.

    :param ref_file: The file holding the reference.
    :return: The reference, or None if the file is empty.
    :raises RefError: If the file does not exist."""
    try:
        return parse_ref(ref_file.read_text())
    except FileNotFoundError as e:
        msg = f'Reference file {ref_file} does not exist'
        raise RefError(msg) from e


def write_ref(ref_file: Path, ref: Ref | None) -> None:
    """Write a reference to a file unconditionally, replacing it atomically.

    :param ref_file: The file to write.
    :param ref: The reference to store. None stores an empty (unborn) reference."""
    ref_file.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=ref_file.parent, prefix=f'.{ref_file.name}.')
    try:
        with os.fdopen(fd, 'w') as tmp:
            tmp.write(format_ref(ref))
        os.replace(tmp_name, ref_file)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def compare_and_swap_ref(ref_file: Path, expected_old: Ref | None, new_ref: Ref | None) -> bool:
    """Replace a reference only if it still holds the expected value.

    An exclusive ``<name>.lock`` file guards the read-compare-write sequence. If another writer
    holds the lock, or the current value differs from ``expected_old``, nothing is written.
    A missing reference file compares equal to None.

    :param ref_file: The file holding the reference.
    :param expected_old: The value the reference must hold.
    :param new_ref: The value to store.
    :return: True if the reference was updated, False otherwise."""
    ref_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file = ref_file.with_name(ref_file.name + LOCK_SUFFIX)

    try:
        fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        logger.debug('Reference %s is locked by another writer', ref_file.name)
        return False

    committed = False
    try:
        with os.fdopen(fd, 'w') as lock:
            current = read_ref(ref_file) if ref_file.exists() else None
            if not same_ref(current, expected_old):
                logger.debug('Reference %s is %r, expected %r', ref_file.name, current, expected_old)
                return False
            lock.write(format_ref(new_ref))

        os.replace(lock_file, ref_file)
        committed = True
    finally:
        if not committed:
            lock_file.unlink(missing_ok=True)

    logger.debug('Updated reference %s to %r', ref_file.name, new_ref)
    return True
