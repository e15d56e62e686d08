"""
Unit tests for the GitHub provider with a mocked HTTP session.
"""
import base64

import pytest
from unittest.mock import Mock

import requests

from fluxstrap.errors import AuthError, ConflictError, QuotaError, RateLimitError, TransientError
from fluxstrap.models import CommitIntent, ManifestFile, ManifestSet, RepositoryRef, git_blob_sha
from fluxstrap.providers.github import GitHubProvider
from fluxstrap.request import RepositorySpec
from fluxstrap.sshkeys import generate_key_pair

from http_fakes import FakeResponse, RoutedSession


REPO_BODY = {
    'id': 42,
    'name': 'fleet',
    'owner': {'login': 'acme'},
    'default_branch': 'main',
    'private': True,
    'visibility': 'private',
    'ssh_url': 'git@github.com:acme/fleet.git',
    'clone_url': 'https://github.com/acme/fleet.git',
}


def make_provider(routes, api_url=None):
    session = RoutedSession(routes)
    return GitHubProvider(token='t0ken', api_url=api_url, session=session), session


def ref():
    return RepositoryRef(owner='acme', name='fleet', default_branch='main', visibility='private', exists=True)


class TestGitHubRepository:
    """Test repository operations."""

    def test_existing_repository_reused(self):
        """Should return the existing repository without creating it."""
        provider, session = make_provider({('GET', '/repos/acme/fleet'): FakeResponse(200, REPO_BODY)})

        repo, created = provider.ensure_repository(RepositorySpec(owner='acme', name='fleet'))

        assert created is False
        assert repo.full_name == 'acme/fleet'
        assert session.called('POST', '/repos') == []

    def test_visibility_conflict(self):
        """Should refuse a repository with different visibility."""
        provider, _ = make_provider({('GET', '/repos/acme/fleet'): FakeResponse(200, dict(REPO_BODY, visibility='public', private=False))})

        with pytest.raises(ConflictError, match="visibility"):
            provider.ensure_repository(RepositorySpec(owner='acme', name='fleet'))

    def test_archived_conflict(self):
        """Should refuse archived repositories."""
        provider, _ = make_provider({('GET', '/repos/acme/fleet'): FakeResponse(200, dict(REPO_BODY, archived=True))})

        with pytest.raises(ConflictError, match="archived"):
            provider.get_repository(RepositorySpec(owner='acme', name='fleet'))

    def test_create_in_org(self):
        """Should create a missing repository under the organization."""
        provider, session = make_provider({('POST', '/orgs/acme/repos'): FakeResponse(201, REPO_BODY)})

        repo, created = provider.ensure_repository(RepositorySpec(owner='acme', name='fleet'))

        assert created is True
        body = session.called('POST', '/orgs/acme/repos')[0][2]
        assert body['auto_init'] is True
        assert body['private'] is True

    def test_create_personal(self):
        """Should create personal repositories under /user/repos."""
        provider, session = make_provider({('POST', '/user/repos'): FakeResponse(201, REPO_BODY)})

        provider.ensure_repository(RepositorySpec(owner='acme', name='fleet', personal=True))

        assert len(session.called('POST', '/user/repos')) == 1

    def test_created_shape_checked(self):
        """Should fail on the first run when the created repository has another visibility."""
        provider, _ = make_provider({
            ('POST', '/orgs/acme/repos'): FakeResponse(201, dict(REPO_BODY, visibility='public', private=False)),
        })

        with pytest.raises(ConflictError, match="visibility"):
            provider.ensure_repository(RepositorySpec(owner='acme', name='fleet'))

    def test_enterprise_host(self):
        """Should derive the SSH host from an enterprise API URL."""
        provider, _ = make_provider({}, api_url='https://api.ghe.example.com')

        assert provider.clone_url(ref()) == 'ssh://git@ghe.example.com/acme/fleet'
        assert provider.ssh_host(ref()) == ('ghe.example.com', 22)


class TestGitHubDeployKeys:
    """Test deploy key registration."""

    def test_reuses_identical_key(self):
        """Should not register a key whose fingerprint is already present."""
        pair = generate_key_pair()
        provider, session = make_provider({
            ('GET', '/repos/acme/fleet/keys'): FakeResponse(200, [{'id': 7, 'title': 'old', 'key': pair.public_key}]),
        })

        key_id = provider.register_deploy_key(ref(), 'flux', pair.public_key + ' comment')

        assert key_id == '7'
        assert session.called('POST', '/keys') == []

    def test_registers_new_key(self):
        """Should register a read-only key."""
        pair = generate_key_pair()
        provider, session = make_provider({
            ('GET', '/repos/acme/fleet/keys'): FakeResponse(200, []),
            ('POST', '/repos/acme/fleet/keys'): FakeResponse(201, {'id': 9}),
        })

        assert provider.register_deploy_key(ref(), 'flux', pair.public_key) == '9'
        assert session.called('POST', '/keys')[0][2]['read_only'] is True

    def test_key_limit(self):
        """Should raise QuotaError when the provider refuses more keys."""
        pair = generate_key_pair()
        provider, _ = make_provider({
            ('GET', '/repos/acme/fleet/keys'): FakeResponse(200, []),
            ('POST', '/repos/acme/fleet/keys'): FakeResponse(422, {'message': 'Validation Failed', 'errors': [{'message': 'key limit reached'}]}),
        })

        with pytest.raises(QuotaError):
            provider.register_deploy_key(ref(), 'flux', pair.public_key)


class TestGitHubCommit:
    """Test multi-file commits through the Git data API."""

    def intent(self):
        return CommitIntent(
            files=ManifestSet(kind='install', files=(
                ManifestFile(path='clusters/flux-system/a.yaml', content=b'a: 1\n'),
                ManifestFile(path='clusters/flux-system/b.yaml', content=b'b: 2\n'),
            )),
            branch='main',
            path='clusters/flux-system',
            author_name='Flux',
            author_email='flux@example.com',
            message='Add Flux: install manifests',
        )

    def routes(self, tree):
        return {
            ('GET', '/git/ref/heads/main'): FakeResponse(200, {'object': {'sha': 'tip'}}),
            ('GET', '/git/commits/tip'): FakeResponse(200, {'tree': {'sha': 'root-tree'}}),
            ('GET', '/git/trees/root-tree'): FakeResponse(200, {'tree': tree}),
            ('POST', '/git/trees'): FakeResponse(201, {'sha': 'new-tree'}),
            ('POST', '/git/commits'): FakeResponse(201, {'sha': 'newcommit0000'}),
            ('PATCH', '/git/refs/heads/main'): FakeResponse(200, {}),
        }

    def test_unchanged_skips(self):
        """Should not write when every blob id matches the tip."""
        tree = [
            {'path': 'clusters/flux-system/a.yaml', 'type': 'blob', 'sha': git_blob_sha(b'a: 1\n')},
            {'path': 'clusters/flux-system/b.yaml', 'type': 'blob', 'sha': git_blob_sha(b'b: 2\n')},
        ]
        provider, session = make_provider(self.routes(tree))

        result = provider.commit_files(ref(), self.intent())

        assert result.skipped is True
        assert session.called('POST', '/git/trees') == []
        assert session.called('PATCH', '/git/refs/heads/main') == []

    def test_commits_only_changed(self):
        """Should include only drifted files in one commit."""
        tree = [
            {'path': 'clusters/flux-system/a.yaml', 'type': 'blob', 'sha': git_blob_sha(b'a: 1\n')},
            {'path': 'clusters/flux-system/b.yaml', 'type': 'blob', 'sha': git_blob_sha(b'b: old\n')},
            {'path': 'README.md', 'type': 'blob', 'sha': 'x'},
        ]
        provider, session = make_provider(self.routes(tree))

        result = provider.commit_files(ref(), self.intent())

        assert result.skipped is False
        assert result.changed_paths == ['clusters/flux-system/b.yaml']
        tree_body = session.called('POST', '/git/trees')[0][2]
        assert [entry['path'] for entry in tree_body['tree']] == ['clusters/flux-system/b.yaml']
        assert tree_body['base_tree'] == 'root-tree'
        assert session.called('PATCH', '/git/refs/heads/main')[0][2]['sha'] == 'newcommit0000'

    def test_empty_repository_has_no_hashes(self):
        """Should treat a repository without commits as having no files."""
        provider, _ = make_provider({
            ('GET', '/git/ref/heads/main'): FakeResponse(409, {'message': 'Git Repository is empty.'}),
        })

        assert provider.list_file_hashes(ref(), 'main', 'clusters/flux-system') == {}

    def test_first_commit_to_empty_repository(self):
        """Should seed an empty repository through the contents API."""
        provider, session = make_provider({
            ('GET', '/git/ref/heads/main'): FakeResponse(409, {'message': 'Git Repository is empty.'}),
            ('PUT', '/contents/clusters/flux-system/a.yaml'): FakeResponse(201, {'commit': {'sha': 'seed'}}),
            ('GET', '/git/commits/seed'): FakeResponse(200, {'tree': {'sha': 'seed-tree'}}),
            ('POST', '/git/trees'): FakeResponse(201, {'sha': 'new-tree'}),
            ('POST', '/git/commits'): FakeResponse(201, {'sha': 'newcommit0000'}),
            ('PATCH', '/git/refs/heads/main'): FakeResponse(200, {}),
        })

        result = provider.commit_files(ref(), self.intent())

        assert result.skipped is False
        assert result.sha == 'newcommit0000'
        assert result.changed_paths == ['clusters/flux-system/a.yaml', 'clusters/flux-system/b.yaml']
        seed_body = session.called('PUT', '/contents/clusters/flux-system/a.yaml')[0][2]
        assert base64.b64decode(seed_body['content']) == b'a: 1\n'
        assert seed_body['branch'] == 'main'
        tree_body = session.called('POST', '/git/trees')[0][2]
        assert [entry['path'] for entry in tree_body['tree']] == ['clusters/flux-system/b.yaml']
        assert session.called('POST', '/git/commits')[0][2]['parents'] == ['seed']

    def test_other_conflicts_propagate(self):
        provider, _ = make_provider({
            ('GET', '/git/ref/heads/main'): FakeResponse(409, {'message': 'Reference update conflict'}),
        })

        with pytest.raises(ConflictError):
            provider.list_file_hashes(ref(), 'main', 'clusters/flux-system')


class TestGitHubErrors:
    """Test HTTP status classification."""

    def spec(self):
        return RepositorySpec(owner='acme', name='fleet')

    def test_unauthorized(self):
        provider, _ = make_provider({('GET', '/repos/acme/fleet'): FakeResponse(401, {'message': 'Bad credentials'})})

        with pytest.raises(AuthError, match="Bad credentials"):
            provider.get_repository(self.spec())

    def test_rate_limited(self):
        """Should carry Retry-After on rate limit errors."""
        provider, _ = make_provider({
            ('GET', '/repos/acme/fleet'): FakeResponse(429, {'message': 'slow'}, headers={'Retry-After': '12'}),
        })

        with pytest.raises(RateLimitError) as exc_info:
            provider.get_repository(self.spec())
        assert exc_info.value.retry_after == 12.0

    def test_exhausted_quota_403(self):
        """Should treat 403 with no remaining requests as rate limiting."""
        provider, _ = make_provider({
            ('GET', '/repos/acme/fleet'): FakeResponse(403, {'message': 'API rate limit exceeded'}, headers={
                'X-RateLimit-Remaining': '0',
                'Retry-After': '3',
            }),
        })

        with pytest.raises(RateLimitError):
            provider.get_repository(self.spec())
        assert provider.api.rate_limit_remaining == 0

    def test_server_error_transient(self):
        provider, _ = make_provider({('GET', '/repos/acme/fleet'): FakeResponse(502, {'message': 'Bad gateway'})})

        with pytest.raises(TransientError):
            provider.get_repository(self.spec())

    def test_connection_error_transient(self):
        """Should classify network failures as transient."""
        session = Mock()
        session.headers = {}
        session.request.side_effect = requests.exceptions.ConnectionError("reset")
        provider = GitHubProvider(token='t', session=session)

        with pytest.raises(TransientError):
            provider.get_repository(self.spec())
