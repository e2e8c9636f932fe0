from pathlib import Path

from libarbor.repository import Repository
from pytest import fixture

EXISTING_FILES = {
    'test1.txt': 'first test file\n',
    'test2.txt': 'second test file\n',
    'test3.txt': 'third test file\n',
    'readme.md': '# sample project\n',
    'subdir/sub1.txt': 'file in a sub directory\n',
}


@fixture
def temp_repo_dir(tmp_path: Path) -> Path:
    working_dir = tmp_path / 'work'
    working_dir.mkdir()
    return working_dir


@fixture
def temp_repo(temp_repo_dir: Path) -> Repository:
    repo = Repository(temp_repo_dir)
    repo.init()
    return repo


@fixture
def existing_repo(temp_repo_dir: Path) -> Repository:
    """A repository initialized on a directory that already holds files."""
    for name, content in EXISTING_FILES.items():
        path = temp_repo_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    repo = Repository(temp_repo_dir)
    repo.init()
    return repo


@fixture
def committed_repo(existing_repo: Repository) -> Repository:
    """A repository whose existing files have been committed once."""
    existing_repo.add('.')
    existing_repo.commit('initial commit')
    return existing_repo
