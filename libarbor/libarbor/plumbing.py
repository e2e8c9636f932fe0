"""Content-addressable object storage.

Every object is stored once under ``objects/<xx>/<digest>`` where ``<digest>`` is the
SHA-1 of ``b'<type> <size>\\0' + payload`` and ``<xx>`` are its first two characters."""

import hashlib
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from . import AnnotatedTag, Blob, Commit, Tree, TreeRecord, TreeRecordType
from .constants import HASH_CHARSET, HASH_LENGTH, MIN_ABBREV_LENGTH
from .ref import HashRef

logger = logging.getLogger(__name__)

type StoredObject = Blob | Tree | Commit | AnnotatedTag


class ObjectError(Exception):
    """Exception raised for object store errors."""


class NotFoundError(ObjectError):
    """Exception raised when an object is not present in the store."""


class ObjectTypeError(ObjectError):
    """Exception raised when an object has a different type than expected."""


def _object_type(obj: StoredObject) -> str:
    match obj:
        case Blob():
            return 'blob'
        case Tree():
            return 'tree'
        case Commit():
            return 'commit'
        case AnnotatedTag():
            return 'tag'
        case _:
            msg = f'Cannot store object of type {type(obj)}'
            raise ObjectTypeError(msg)


def serialize_tree(tree: Tree) -> bytes:
    """Serialize a tree with its records sorted by name.

    :param tree: The tree to serialize.
    :return: The canonical payload of the tree.
    :raises ObjectError: If a record name cannot be stored."""
    lines = []
    for name in sorted(tree.records):
        record = tree.records[name]
        if not name or '/' in name or '\n' in name or '\t' in name:
            msg = f'Invalid tree record name: {name!r}'
            raise ObjectError(msg)
        lines.append(f'{record.mode:o} {record.type.value} {record.hash}\t{name}\n')
    return ''.join(lines).encode('utf-8')


def serialize_commit(commit: Commit) -> bytes:
    lines = [f'tree {commit.tree_hash}']
    lines.extend(f'parent {parent}' for parent in commit.parents)
    lines.append(f'author {commit.author}')
    lines.append(f'committer {commit.committer or commit.author}')
    lines.append(f'timestamp {commit.timestamp}')
    return ('\n'.join(lines) + '\n\n' + commit.message).encode('utf-8')


def serialize_tag(tag: AnnotatedTag) -> bytes:
    lines = [f'object {tag.target}', f'tag {tag.name}', f'tagger {tag.tagger}', f'timestamp {tag.timestamp}']
    return ('\n'.join(lines) + '\n\n' + tag.message).encode('utf-8')


def serialize_object(obj: StoredObject) -> bytes:
    """Serialize an object including its type header.

    :param obj: The object to serialize.
    :return: The bytes whose SHA-1 is the object's digest."""
    match obj:
        case Blob(data):
            payload = data
        case Tree():
            payload = serialize_tree(obj)
        case Commit():
            payload = serialize_commit(obj)
        case AnnotatedTag():
            payload = serialize_tag(obj)
        case _:
            msg = f'Cannot serialize object of type {type(obj)}'
            raise ObjectTypeError(msg)

    return f'{_object_type(obj)} {len(payload)}\0'.encode() + payload


def _parse_headers(text: str) -> tuple[list[tuple[str, str]], str]:
    header, _, message = text.partition('\n\n')
    headers = []
    for line in header.splitlines():
        key, _, value = line.partition(' ')
        headers.append((key, value))
    return headers, message


def _parse_tree(payload: bytes) -> Tree:
    records: dict[str, TreeRecord] = {}
    for line in payload.decode('utf-8').splitlines():
        meta, _, name = line.partition('\t')
        mode, type_name, record_hash = meta.split(' ')
        records[name] = TreeRecord(TreeRecordType(type_name), record_hash, name, int(mode, 8))
    return Tree(records)


def _parse_commit(payload: bytes) -> Commit:
    headers, message = _parse_headers(payload.decode('utf-8'))
    values = dict(headers)
    parents = tuple(value for key, value in headers if key == 'parent')
    return Commit(values['tree'], values['author'], message, int(values['timestamp']), parents,
                  values.get('committer'))


def _parse_tag(payload: bytes) -> AnnotatedTag:
    headers, message = _parse_headers(payload.decode('utf-8'))
    values = dict(headers)
    return AnnotatedTag(values['tag'], values['object'], values['tagger'], message, int(values['timestamp']))


def deserialize_object(raw: bytes) -> StoredObject:
    """Parse the stored bytes of an object back into its typed form.

    :param raw: The serialized object including its header.
    :return: The parsed object.
    :raises ObjectError: If the bytes are not a valid object."""
    header, sep, payload = raw.partition(b'\0')
    try:
        type_name, size = header.decode('ascii').split(' ')
        if not sep or int(size) != len(payload):
            msg = 'Object size does not match its header'
            raise ObjectError(msg)

        match type_name:
            case 'blob':
                return Blob(payload)
            case 'tree':
                return _parse_tree(payload)
            case 'commit':
                return _parse_commit(payload)
            case 'tag':
                return _parse_tag(payload)
    except (ValueError, KeyError, UnicodeDecodeError) as e:
        msg = 'Malformed object'
        raise ObjectError(msg) from e

    msg = f'Unknown object type {type_name!r}'
    raise ObjectError(msg)


def hash_string(content: str | bytes) -> str:
    """Compute the SHA-1 hex digest of raw content (no object header)."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.sha1(content).hexdigest()


def hash_object(obj: StoredObject) -> HashRef:
    """Compute the digest of an object without storing it."""
    return HashRef(hash_string(serialize_object(obj)))


def is_valid_hash(value: str) -> bool:
    return len(value) == HASH_LENGTH and all(c in HASH_CHARSET for c in value)


def get_content_path(objects_dir: str | Path, content_hash: str) -> Path:
    """Get the storage path of an object.

    :param objects_dir: The objects directory of the repository.
    :param content_hash: The digest of the object.
    :return: The path the object is (or would be) stored at."""
    return Path(objects_dir) / content_hash[:2] / content_hash


def object_exists(objects_dir: str | Path, content_hash: str) -> bool:
    return is_valid_hash(content_hash) and get_content_path(objects_dir, content_hash).is_file()


@contextmanager
def open_content_for_reading(objects_dir: str | Path, content_hash: str) -> Iterator[BinaryIO]:
    """Open a stored object for reading.

    :raises NotFoundError: If the object does not exist."""
    if not is_valid_hash(content_hash):
        msg = f'Invalid object hash: {content_hash!r}'
        raise NotFoundError(msg)
    try:
        handle = get_content_path(objects_dir, content_hash).open('rb')
    except FileNotFoundError as e:
        msg = f'Object {content_hash} not found'
        raise NotFoundError(msg) from e

    with handle:
        yield handle


def save_object(objects_dir: str | Path, obj: StoredObject) -> HashRef:
    """Store an object and return its digest.

    Saving content that is already stored is a no-op. The object is written to a temporary
    file in the target directory and renamed into place, so concurrent writers of the same
    object never observe a partial file.

    :param objects_dir: The objects directory of the repository.
    :param obj: The object to store.
    :return: The digest of the object."""
    raw = serialize_object(obj)
    content_hash = HashRef(hash_string(raw))
    path = get_content_path(objects_dir, content_hash)
    if path.exists():
        return content_hash

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix='.tmp-')
    try:
        with os.fdopen(fd, 'wb') as tmp:
            tmp.write(raw)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.debug('Stored %s %s', _object_type(obj), content_hash)
    return content_hash


def read_object_type(objects_dir: str | Path, content_hash: str) -> str:
    """Read the type of a stored object from its header without parsing the payload.

    :raises NotFoundError: If the object does not exist."""
    with open_content_for_reading(objects_dir, content_hash) as handle:
        header = handle.read(32).partition(b'\0')[0]
    return header.split(b' ')[0].decode('ascii', errors='replace')


def load_object(objects_dir: str | Path, content_hash: str) -> StoredObject:
    """Load an object from the store.

    :raises NotFoundError: If the object does not exist.
    :raises ObjectError: If the stored bytes are corrupt."""
    with open_content_for_reading(objects_dir, content_hash) as handle:
        raw = handle.read()
    try:
        return deserialize_object(raw)
    except ObjectError as e:
        msg = f'Corrupt object {content_hash}'
        raise ObjectError(msg) from e


def _load_typed[T](objects_dir: str | Path, content_hash: str, expected: type[T]) -> T:
    obj = load_object(objects_dir, content_hash)
    if not isinstance(obj, expected):
        msg = f'Object {content_hash} is a {_object_type(obj)}, not a {expected.__name__.lower()}'
        raise ObjectTypeError(msg)
    return obj


def load_blob(objects_dir: str | Path, content_hash: str) -> Blob:
    return _load_typed(objects_dir, content_hash, Blob)


def load_tree(objects_dir: str | Path, content_hash: str) -> Tree:
    return _load_typed(objects_dir, content_hash, Tree)


def load_commit(objects_dir: str | Path, content_hash: str) -> Commit:
    return _load_typed(objects_dir, content_hash, Commit)


def load_tag(objects_dir: str | Path, content_hash: str) -> AnnotatedTag:
    return _load_typed(objects_dir, content_hash, AnnotatedTag)


def save_tree(objects_dir: str | Path, tree: Tree) -> HashRef:
    return save_object(objects_dir, tree)


def save_commit(objects_dir: str | Path, commit: Commit) -> HashRef:
    return save_object(objects_dir, commit)


def save_tag(objects_dir: str | Path, tag: AnnotatedTag) -> HashRef:
    return save_object(objects_dir, tag)


def save_file_content(objects_dir: str | Path, file: Path) -> Blob:
    """Store the content of a file as a blob.

    :param objects_dir: The objects directory of the repository.
    :param file: The file to store.
    :return: The stored blob.
    :raises ValueError: If the file does not exist."""
    if not file.is_file():
        msg = f'File {file} does not exist'
        raise ValueError(msg)

    blob = Blob(file.read_bytes())
    save_object(objects_dir, blob)
    return blob


def resolve_abbreviated(objects_dir: str | Path, prefix: str) -> HashRef:
    """Expand an abbreviated digest to the full digest of a stored object.

    :param objects_dir: The objects directory of the repository.
    :param prefix: At least four leading hex characters of a digest.
    :return: The unique full digest starting with the prefix.
    :raises NotFoundError: If no object, or more than one object, matches."""
    prefix = prefix.lower()
    if len(prefix) < MIN_ABBREV_LENGTH or not all(c in HASH_CHARSET for c in prefix):
        msg = f'Invalid abbreviated hash: {prefix!r}'
        raise NotFoundError(msg)

    bucket = Path(objects_dir) / prefix[:2]
    matches = sorted(p.name for p in bucket.iterdir() if p.name.startswith(prefix)) if bucket.is_dir() else []
    if len(matches) != 1:
        msg = f'Hash prefix {prefix} matches {len(matches)} objects'
        raise NotFoundError(msg)

    return HashRef(matches[0])
