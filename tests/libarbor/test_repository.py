from pathlib import Path
from shutil import rmtree

from libarbor.constants import DEFAULT_BRANCH, HASH_LENGTH
from libarbor.plumbing import hash_object, load_commit, load_tag, load_tree
from libarbor.ref import ConcurrentUpdateError, DanglingRefError, RefError, SymRef, read_ref, write_ref
from libarbor.repository import (DirtyWorkingTreeError, HashRef, Repository, RepositoryError, RepositoryNotFoundError,
                                 ResetMode, Tag, branch_ref, init_repository, tag_ref)
from pytest import MonkeyPatch, raises


def _commit_file(repo: Repository, name: str, content: str, message: str) -> HashRef:
    path = repo.working_dir / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.add(name)
    return repo.commit(message).commit_ref


def test_init_creates_layout(temp_repo: Repository) -> None:
    assert temp_repo.objects_dir().is_dir()
    assert temp_repo.heads_dir().is_dir()
    assert temp_repo.tags_dir().is_dir()
    assert temp_repo.head_ref() == branch_ref(DEFAULT_BRANCH)
    assert temp_repo.head_commit() is None
    assert temp_repo.branches() == [DEFAULT_BRANCH]
    assert temp_repo.current_branch() == DEFAULT_BRANCH


def test_init_is_idempotent(committed_repo: Repository) -> None:
    head = committed_repo.head_commit()

    committed_repo.init()

    assert committed_repo.head_commit() == head
    assert committed_repo.status().is_clean()


def test_init_with_custom_repo_dir(temp_repo_dir: Path) -> None:
    custom_repo_dir = '.custom_arbor'
    repo = Repository(temp_repo_dir, custom_repo_dir)

    assert repo.repo_dir.name == custom_repo_dir
    assert str(repo.repo_dir) == custom_repo_dir

    repo.init()
    assert repo.exists()
    assert (temp_repo_dir / custom_repo_dir).exists()

    (temp_repo_dir / 'file.txt').write_text('content')
    assert repo.status().untracked == {'file.txt'}


def test_init_with_default_branch(temp_repo_dir: Path) -> None:
    repo = Repository(temp_repo_dir)
    repo.init(default_branch='trunk')

    assert repo.head_ref() == branch_ref('trunk')
    assert repo.config().default_branch == 'trunk'


def test_init_repository(tmp_path: Path) -> None:
    repo = init_repository(tmp_path / 'project')

    assert repo.exists()
    assert init_repository(tmp_path / 'project').head_ref() == repo.head_ref()


def test_operations_require_repository(temp_repo_dir: Path) -> None:
    repo = Repository(temp_repo_dir)

    with raises(RepositoryNotFoundError):
        repo.status()

    with raises(RepositoryNotFoundError):
        repo.head_ref()


def test_commit(temp_repo: Repository, monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv('ARBOR_AUTHOR_NAME', 'John Doe')
    monkeypatch.setenv('ARBOR_AUTHOR_EMAIL', 'john@example.com')
    temp_file = temp_repo.working_dir / 'test_file.txt'
    temp_file.write_text('This is a test file for commit.')
    temp_repo.add('test_file.txt')

    entry = temp_repo.commit('Initial commit')
    commit = load_commit(temp_repo.objects_dir(), entry.commit_ref)

    assert commit.author == 'John Doe <john@example.com>'
    assert commit.committer == commit.author
    assert commit.message == 'Initial commit'
    assert commit.parents == ()
    assert entry.commit_ref == hash_object(commit)

    assert temp_repo.head_ref() == branch_ref(DEFAULT_BRANCH)
    assert temp_repo.head_commit() == entry.commit_ref
    assert (temp_repo.objects_dir() / entry.commit_ref[:2] / entry.commit_ref).exists()


def test_commit_with_parent(committed_repo: Repository) -> None:
    first = committed_repo.head_commit()

    second = _commit_file(committed_repo, 'test1.txt', 'Second commit content', 'Second commit')

    assert load_commit(committed_repo.objects_dir(), second).parents == (first,)
    assert [entry.commit_ref for entry in committed_repo.log()] == [second, first]


def test_commit_with_explicit_author(committed_repo: Repository) -> None:
    commit_ref = _commit_file(committed_repo, 'new.txt', 'new', 'With author')
    (committed_repo.working_dir / 'other.txt').write_text('other')
    committed_repo.add('other.txt')

    entry = committed_repo.commit('Someone else', author='Alice <alice@example.com>')

    assert entry.commit.author == 'Alice <alice@example.com>'
    assert entry.commit.parents == (commit_ref,)


def test_commit_tree_matches_index(committed_repo: Repository) -> None:
    commit = load_commit(committed_repo.objects_dir(), committed_repo.head_commit())
    tree = load_tree(committed_repo.objects_dir(), commit.tree_hash)

    assert set(tree.records) == {'test1.txt', 'test2.txt', 'test3.txt', 'readme.md', 'subdir'}


def test_commit_empty_message_raises_error(committed_repo: Repository) -> None:
    with raises(ValueError, match='Commit message is required'):
        committed_repo.commit('')


def test_add_directory_and_glob(existing_repo: Repository) -> None:
    assert existing_repo.add('subdir') == ['subdir/sub1.txt']
    assert existing_repo.add('*.md') == ['readme.md']
    assert existing_repo.status().added == {'subdir/sub1.txt', 'readme.md'}


def test_add_unmatched_pattern_raises_error(existing_repo: Repository) -> None:
    with raises(RepositoryError):
        existing_repo.add('missing.txt')

    with raises(ValueError):
        existing_repo.add('')


def test_remove_unmatched_pattern_raises_error(committed_repo: Repository) -> None:
    with raises(RepositoryError):
        committed_repo.remove('missing.txt')


def test_remove_refuses_unsaved_edit(committed_repo: Repository) -> None:
    file = committed_repo.working_dir / 'test1.txt'
    file.write_text('local edit\n')

    with raises(DirtyWorkingTreeError):
        committed_repo.remove('test1.txt')

    assert file.read_text() == 'local edit\n'
    assert committed_repo.status().modified == {'test1.txt'}


def test_remove_refuses_staged_change(committed_repo: Repository) -> None:
    file = committed_repo.working_dir / 'test2.txt'
    file.write_text('staged edit\n')
    committed_repo.add('test2.txt')

    with raises(DirtyWorkingTreeError):
        committed_repo.remove('test2.txt')

    assert file.read_text() == 'staged edit\n'
    assert committed_repo.status().changed == {'test2.txt'}


def test_remove_cached_keeps_unsaved_edit(committed_repo: Repository) -> None:
    file = committed_repo.working_dir / 'test1.txt'
    file.write_text('local edit\n')

    assert committed_repo.remove('test1.txt', cached=True) == ['test1.txt']
    assert file.read_text() == 'local edit\n'
    assert committed_repo.status().removed == {'test1.txt'}


def test_head_log(committed_repo: Repository) -> None:
    assert [entry.commit.message for entry in committed_repo.log()] == ['initial commit']


def test_list_refs(committed_repo: Repository) -> None:
    committed_repo.create_branch('feature')
    committed_repo.create_tag('v1.0')

    refs = committed_repo.list_refs()

    assert [ref.name for ref in refs] == ['heads/feature', 'heads/main', 'tags/v1.0']
    assert all(ref.target == committed_repo.head_commit() for ref in refs)


def test_refs_directory_not_exists_raises_error(temp_repo: Repository) -> None:
    rmtree(temp_repo.refs_dir())

    with raises(RepositoryError):
        temp_repo.list_refs()


def test_refs_directory_is_file_raises_error(temp_repo: Repository) -> None:
    refs_dir = temp_repo.refs_dir()
    rmtree(refs_dir)
    refs_dir.touch()

    with raises(RepositoryError):
        temp_repo.list_refs()


def test_resolve_ref_forms(committed_repo: Repository) -> None:
    head = committed_repo.head_commit()
    committed_repo.create_tag('v1.0')

    assert committed_repo.resolve_ref('HEAD') == head
    assert committed_repo.resolve_ref('main') == head
    assert committed_repo.resolve_ref('heads/main') == head
    assert committed_repo.resolve_ref('v1.0') == head
    assert committed_repo.resolve_ref(tag_ref('v1.0')) == head
    assert committed_repo.resolve_ref(str(head)) == head
    assert committed_repo.resolve_ref(head[:7]) == head
    assert committed_repo.resolve_ref(None) is None


def test_resolve_ref_invalid_string_raises_error(temp_repo: Repository) -> None:
    with raises(RefError):
        temp_repo.resolve_ref('invalid_reference_string')

    with raises(RefError):
        temp_repo.resolve_ref('g' * HASH_LENGTH)

    with raises(RefError):
        temp_repo.resolve_ref('abc123')


def test_resolve_ref_invalid_type_raises_error(temp_repo: Repository) -> None:
    with raises(RefError):
        temp_repo.resolve_ref(123)

    with raises(RefError):
        temp_repo.resolve_ref([])


def test_resolve_dangling_refs(committed_repo: Repository) -> None:
    with raises(DanglingRefError):
        committed_repo.resolve_ref(SymRef('heads/missing'))

    write_ref(committed_repo.ref_path('heads/broken'), HashRef('f' * 40))
    with raises(DanglingRefError):
        committed_repo.resolve_ref('broken')


def test_resolve_cyclic_refs_raises_error(committed_repo: Repository) -> None:
    write_ref(committed_repo.ref_path('heads/a'), SymRef('heads/b'))
    write_ref(committed_repo.ref_path('heads/b'), SymRef('heads/a'))

    with raises(DanglingRefError):
        committed_repo.resolve_ref('a')


def test_head_ref_missing_head_file_raises_error(temp_repo: Repository) -> None:
    temp_repo.head_file().unlink()

    with raises(RepositoryError):
        temp_repo.head_ref()


def test_update_ref(committed_repo: Repository) -> None:
    first = committed_repo.head_commit()
    second = _commit_file(committed_repo, 'test1.txt', 'changed', 'second')

    assert not committed_repo.update_ref('heads/main', first, HashRef('a' * 40))
    assert committed_repo.head_commit() == second

    assert committed_repo.update_ref('heads/main', second, first)
    assert committed_repo.head_commit() == first

    assert committed_repo.update_ref('heads/new', None, first)
    assert read_ref(committed_repo.ref_path('heads/new')) == first


def test_commit_detects_concurrent_branch_move(committed_repo: Repository) -> None:
    lock_file = committed_repo.ref_path('heads/main.lock')
    lock_file.write_text('')
    (committed_repo.working_dir / 'test1.txt').write_text('blocked')
    committed_repo.add('test1.txt')

    with raises(ConcurrentUpdateError):
        committed_repo.commit('blocked')

    lock_file.unlink()
    assert committed_repo.commit('unblocked').commit.message == 'unblocked'
    assert 'main.lock' not in [ref.name for ref in committed_repo.list_refs()]


def test_delete_repo_removes_repository(temp_repo: Repository) -> None:
    repo_path = temp_repo.repo_path()
    assert repo_path.exists()

    temp_repo.delete_repo()

    assert not repo_path.exists()
    assert not temp_repo.exists()


def test_create_branch(committed_repo: Repository) -> None:
    reference = committed_repo.create_branch('feature')

    assert reference.name == 'heads/feature'
    assert reference.target == committed_repo.head_commit()
    assert committed_repo.branches() == ['feature', 'main']
    assert committed_repo.current_branch() == DEFAULT_BRANCH


def test_branches_are_sorted(committed_repo: Repository) -> None:
    for branch in ('zeta', 'alpha', 'group/beta'):
        committed_repo.create_branch(branch)

    assert committed_repo.branches() == ['alpha', 'group/beta', 'main', 'zeta']


def test_create_branch_without_commits_raises_error(temp_repo: Repository) -> None:
    with raises(RepositoryError):
        temp_repo.create_branch('feature')


def test_add_empty_branch_name_raises_error(committed_repo: Repository) -> None:
    with raises(ValueError, match='Branch name is required'):
        committed_repo.create_branch('')

    with raises(ValueError):
        committed_repo.create_branch('bad name')

    with raises(ValueError):
        committed_repo.create_branch('bad..lock/.hidden')


def test_add_branch_already_exists_raises_error(committed_repo: Repository) -> None:
    with raises(RepositoryError):
        committed_repo.create_branch(DEFAULT_BRANCH)


def test_delete_branch(committed_repo: Repository) -> None:
    committed_repo.create_branch('feature')

    committed_repo.delete_branch('feature')

    assert not committed_repo.branch_exists('feature')


def test_delete_current_branch_raises_error(committed_repo: Repository) -> None:
    committed_repo.create_branch('feature')

    with raises(RepositoryError):
        committed_repo.delete_branch(DEFAULT_BRANCH)


def test_delete_empty_branch_name_raises_error(temp_repo: Repository) -> None:
    with raises(ValueError, match='Branch name is required'):
        temp_repo.delete_branch('')


def test_delete_nonexistent_branch_name_raises_error(temp_repo: Repository) -> None:
    with raises(RepositoryError):
        temp_repo.delete_branch('nonexistent_branch')


def test_delete_last_branch_name_raises_error(committed_repo: Repository) -> None:
    committed_repo.checkout(str(committed_repo.head_commit()))

    with raises(RepositoryError):
        committed_repo.delete_branch(DEFAULT_BRANCH)


def test_create_tag_and_list_tags(committed_repo: Repository) -> None:
    commit_ref = committed_repo.head_commit()

    created_tag = committed_repo.create_tag('v1.0', commit_ref)

    assert created_tag.name == 'v1.0'
    assert created_tag.target == commit_ref
    assert committed_repo.list_tags() == [Tag('v1.0', commit_ref)]


def test_create_annotated_tag(committed_repo: Repository) -> None:
    commit_ref = committed_repo.head_commit()

    committed_repo.create_tag('v2.0', message='Second release')

    tag_value = read_ref(committed_repo.ref_path('tags/v2.0'))
    assert tag_value != commit_ref
    annotated = load_tag(committed_repo.objects_dir(), tag_value)
    assert annotated.target == commit_ref
    assert annotated.message == 'Second release'
    assert committed_repo.resolve_ref('v2.0') == commit_ref
    assert committed_repo.list_tags() == [Tag('v2.0', commit_ref, 'Second release')]


def test_tags_are_sorted(committed_repo: Repository) -> None:
    for name in ('v2', 'v10', 'alpha'):
        committed_repo.create_tag(name)

    assert [tag.name for tag in committed_repo.list_tags()] == ['alpha', 'v10', 'v2']


def test_create_tag_from_branch_name(committed_repo: Repository) -> None:
    tag = committed_repo.create_tag('stable', branch_ref(DEFAULT_BRANCH))
    assert tag.target == committed_repo.head_commit()


def test_create_tag_duplicate_name_raises_error(committed_repo: Repository) -> None:
    committed_repo.create_tag('v1.0')

    with raises(RepositoryError):
        committed_repo.create_tag('v1.0')


def test_create_tag_invalid_target_raises_error(temp_repo: Repository) -> None:
    with raises(RepositoryError):
        temp_repo.create_tag('oops', 'deadbeef')

    with raises(RepositoryError):
        temp_repo.create_tag('oops')


def test_delete_tag(committed_repo: Repository) -> None:
    committed_repo.create_tag('v1.0')

    assert committed_repo.tag_exists('v1.0')
    committed_repo.delete_tag('v1.0')
    assert not committed_repo.tag_exists('v1.0')


def test_delete_missing_tag_raises_error(temp_repo: Repository) -> None:
    with raises(RepositoryError):
        temp_repo.delete_tag('missing')


def test_delete_branch_outside_heads_raises_error(committed_repo: Repository) -> None:
    with raises(ValueError):
        committed_repo.delete_branch('../../config')

    assert committed_repo.config_file().exists()


def test_delete_tag_outside_tags_raises_error(committed_repo: Repository) -> None:
    with raises(ValueError):
        committed_repo.delete_tag(f'../heads/{DEFAULT_BRANCH}')

    assert committed_repo.branch_exists(DEFAULT_BRANCH)


def test_tag_exists_empty_name_raises_value_error(temp_repo: Repository) -> None:
    with raises(ValueError):
        temp_repo.tag_exists('')


def test_checkout_branch(committed_repo: Repository) -> None:
    committed_repo.checkout('feature', create_branch=True)
    _commit_file(committed_repo, 'feature.txt', 'feature', 'feature commit')

    committed_repo.checkout('main')

    assert committed_repo.current_branch() == 'main'
    assert not (committed_repo.working_dir / 'feature.txt').exists()
    assert committed_repo.status().is_clean()

    committed_repo.checkout('feature')

    assert (committed_repo.working_dir / 'feature.txt').read_text() == 'feature'
    assert committed_repo.status().is_clean()


def test_checkout_tag_detaches_head(committed_repo: Repository) -> None:
    tagged = committed_repo.head_commit()
    committed_repo.create_tag('v1.0', message='Release')
    _commit_file(committed_repo, 'test1.txt', 'after tag', 'after tag')

    committed_repo.checkout('v1.0')

    assert committed_repo.head_ref() == tagged
    assert isinstance(committed_repo.head_ref(), HashRef)
    assert committed_repo.current_branch() is None
    assert (committed_repo.working_dir / 'test1.txt').read_text() == 'first test file\n'


def test_checkout_removes_empty_directories(committed_repo: Repository) -> None:
    committed_repo.checkout('feature', create_branch=True)
    _commit_file(committed_repo, 'nested/deep/file.txt', 'deep', 'nested file')

    committed_repo.checkout('main')

    assert not (committed_repo.working_dir / 'nested').exists()


def test_checkout_refuses_dirty_tree(committed_repo: Repository) -> None:
    committed_repo.create_branch('feature')
    (committed_repo.working_dir / 'test1.txt').write_text('local edit')

    with raises(DirtyWorkingTreeError):
        committed_repo.checkout('feature')

    assert committed_repo.current_branch() == 'main'


def test_checkout_refuses_to_overwrite_untracked_file(committed_repo: Repository) -> None:
    committed_repo.checkout('feature', create_branch=True)
    _commit_file(committed_repo, 'feature.txt', 'feature', 'feature commit')
    committed_repo.checkout('main')
    (committed_repo.working_dir / 'feature.txt').write_text('untracked local file')

    with raises(DirtyWorkingTreeError):
        committed_repo.checkout('feature')

    assert (committed_repo.working_dir / 'feature.txt').read_text() == 'untracked local file'


def test_checkout_unknown_ref_raises_error(committed_repo: Repository) -> None:
    with raises(RepositoryError):
        committed_repo.checkout('nowhere')


def test_checkout_new_branch_from_annotated_tag(committed_repo: Repository) -> None:
    tagged = committed_repo.head_commit()
    committed_repo.create_tag('v1.0', message='Release')
    _commit_file(committed_repo, 'test1.txt', 'after tag', 'after tag')

    committed_repo.checkout('from-tag', create_branch=True, start_point='v1.0')

    assert committed_repo.current_branch() == 'from-tag'
    assert committed_repo.head_commit() == tagged
    assert committed_repo.resolve_ref(branch_ref('from-tag')) == tagged
    assert (committed_repo.working_dir / 'test1.txt').read_text() == 'first test file\n'
    assert committed_repo.status().is_clean()


def test_checkout_blocked_by_directory_creates_no_branch(committed_repo: Repository) -> None:
    committed_repo.checkout('feature', create_branch=True)
    _commit_file(committed_repo, 'feature.txt', 'feature', 'feature commit')
    committed_repo.checkout('main')
    main_commit = committed_repo.head_commit()
    blocker = committed_repo.working_dir / 'feature.txt' / 'inner.txt'
    blocker.parent.mkdir()
    blocker.write_text('untracked')

    with raises(IsADirectoryError):
        committed_repo.checkout('copy', create_branch=True, start_point='feature')

    assert not committed_repo.branch_exists('copy')
    assert committed_repo.current_branch() == 'main'
    assert committed_repo.head_commit() == main_commit
    assert blocker.read_text() == 'untracked'

    with raises(IsADirectoryError):
        committed_repo.checkout('feature')

    assert committed_repo.current_branch() == 'main'


def test_log_of_named_branch_with_max_count(committed_repo: Repository) -> None:
    _commit_file(committed_repo, 'test1.txt', 'second', 'second commit')
    _commit_file(committed_repo, 'test1.txt', 'third', 'third commit')
    committed_repo.checkout('other', create_branch=True)
    _commit_file(committed_repo, 'other.txt', 'other', 'other commit')

    messages = [entry.commit.message for entry in committed_repo.log(DEFAULT_BRANCH, max_count=2)]

    assert messages == ['third commit', 'second commit']
    assert [entry.commit.message for entry in committed_repo.log(max_count=1)] == ['other commit']


def test_reset_soft(committed_repo: Repository) -> None:
    first = committed_repo.head_commit()
    _commit_file(committed_repo, 'test1.txt', 'second', 'second')

    committed_repo.reset(ResetMode.SOFT, first)

    assert committed_repo.head_commit() == first
    status = committed_repo.status()
    assert status.changed == {'test1.txt'}
    assert not status.modified


def test_reset_mixed(committed_repo: Repository) -> None:
    first = committed_repo.head_commit()
    _commit_file(committed_repo, 'test1.txt', 'second', 'second')

    committed_repo.reset(ResetMode.MIXED, first)

    status = committed_repo.status()
    assert committed_repo.head_commit() == first
    assert not status.changed
    assert status.modified == {'test1.txt'}
    assert (committed_repo.working_dir / 'test1.txt').read_text() == 'second'


def test_reset_hard(committed_repo: Repository) -> None:
    first = committed_repo.head_commit()
    _commit_file(committed_repo, 'test1.txt', 'second', 'second')
    _commit_file(committed_repo, 'added.txt', 'added', 'third')
    (committed_repo.working_dir / 'untracked.txt').write_text('keep me')

    committed_repo.reset(ResetMode.HARD, first)

    assert committed_repo.head_commit() == first
    assert (committed_repo.working_dir / 'test1.txt').read_text() == 'first test file\n'
    assert not (committed_repo.working_dir / 'added.txt').exists()
    assert (committed_repo.working_dir / 'untracked.txt').read_text() == 'keep me'
    assert committed_repo.status().untracked == {'untracked.txt'}
    assert not committed_repo.status().has_uncommitted_changes()


def test_reset_hard_discards_staged_changes(committed_repo: Repository) -> None:
    (committed_repo.working_dir / 'staged.txt').write_text('staged')
    committed_repo.add('staged.txt')
    (committed_repo.working_dir / 'test2.txt').write_text('edited')

    committed_repo.reset(ResetMode.HARD)

    assert not (committed_repo.working_dir / 'staged.txt').exists()
    assert (committed_repo.working_dir / 'test2.txt').read_text() == 'second test file\n'
    assert committed_repo.status().is_clean()


def test_merge_base(committed_repo: Repository) -> None:
    base = committed_repo.head_commit()
    committed_repo.checkout('feature', create_branch=True)
    _commit_file(committed_repo, 'feature.txt', 'feature', 'feature')
    committed_repo.checkout('main')
    _commit_file(committed_repo, 'main.txt', 'main', 'main')

    assert committed_repo.merge_base('main', 'feature') == base
