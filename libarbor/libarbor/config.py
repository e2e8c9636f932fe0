"""Per-repository settings stored as an INI file."""

import configparser
import os
from pathlib import Path

from .constants import (DEFAULT_AUTHOR_EMAIL, DEFAULT_AUTHOR_NAME, DEFAULT_BRANCH, ENV_AUTHOR_EMAIL,
                        ENV_AUTHOR_NAME)


class RepositoryConfig:
    """Reads and writes the repository's ``config`` file.

    The author identity can be overridden with the ``ARBOR_AUTHOR_NAME`` and
    ``ARBOR_AUTHOR_EMAIL`` environment variables."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._parser = configparser.ConfigParser()
        self._parser.read(path)

    def get(self, section: str, key: str, fallback: str | None = None) -> str | None:
        return self._parser.get(section, key, fallback=fallback)

    def set(self, section: str, key: str, value: str) -> None:
        if not self._parser.has_section(section):
            self._parser.add_section(section)
        self._parser.set(section, key, value)

    def save(self) -> None:
        with self.path.open('w') as handle:
            self._parser.write(handle)

    @property
    def default_branch(self) -> str:
        return self.get('core', 'default_branch', DEFAULT_BRANCH)

    @property
    def author(self) -> str:
        """The identity used for new commits, formatted as ``Name <email>``."""
        name = os.environ.get(ENV_AUTHOR_NAME) or self.get('user', 'name', DEFAULT_AUTHOR_NAME)
        email = os.environ.get(ENV_AUTHOR_EMAIL) or self.get('user', 'email', DEFAULT_AUTHOR_EMAIL)
        return f'{name} <{email}>'
