"""Repository layout names and defaults."""

DEFAULT_REPO_DIR = '.arbor'
DEFAULT_BRANCH = 'main'
DEFAULT_AUTHOR_NAME = 'arbor'
DEFAULT_AUTHOR_EMAIL = 'arbor@localhost'

OBJECTS_SUBDIR = 'objects'
REFS_DIR = 'refs'
HEADS_DIR = 'heads'
TAGS_DIR = 'tags'
HEAD_FILE = 'HEAD'
INDEX_FILE = 'index'
CONFIG_FILE = 'config'
MERGE_HEAD_FILE = 'MERGE_HEAD'
MERGE_MSG_FILE = 'MERGE_MSG'
IGNORE_FILE = '.arborignore'

HASH_LENGTH = 40
HASH_CHARSET = '0123456789abcdef'
MIN_ABBREV_LENGTH = 4

# Symbolic ref chains longer than this are treated as cycles.
MAX_SYMREF_DEPTH = 10

BLOB_MODE = 0o100644
EXECUTABLE_MODE = 0o100755
TREE_MODE = 0o040000

ENV_AUTHOR_NAME = 'ARBOR_AUTHOR_NAME'
ENV_AUTHOR_EMAIL = 'ARBOR_AUTHOR_EMAIL'

CONFLICT_MARKER_OURS = '<<<<<<< ours\n'
CONFLICT_MARKER_SEP = '=======\n'
CONFLICT_MARKER_THEIRS = '>>>>>>> theirs\n'
