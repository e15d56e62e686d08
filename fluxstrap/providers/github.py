"""
GitHub provider.

Repository, deploy key and commit operations against the GitHub REST API.
Multi-file commits go through the Git data API (tree, commit, ref update) so
that every changed file lands in a single atomic commit.
"""
import base64
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from fluxstrap.errors import ConflictError
from fluxstrap.models import CommitIntent, CommitResult, DeployKey, RepositoryRef
from fluxstrap.providers.base import (
    ApiSession,
    Capabilities,
    GitProvider,
    changed_paths,
    check_repository_shape,
    find_key_by_fingerprint,
    safe_fingerprint,
)
from fluxstrap.request import RepositorySpec
from fluxstrap.sshkeys import ssh_fingerprint


logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"


def _visibility(repo: Dict[str, Any]) -> str:
    if repo.get('visibility'):
        return repo['visibility']
    return 'private' if repo.get('private') else 'public'


class GitHubProvider(GitProvider):
    """Handles GitHub API operations for one bootstrap run."""

    kind = "github"
    capabilities = Capabilities(
        supports_repository_create=True,
        supports_deploy_keys=True,
        supports_server_side_commit=True,
    )

    def __init__(
        self,
        token: str,
        api_url: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        # api.github.com -> github.com, api.ghe.example.com -> ghe.example.com
        self.host = urlparse(api_url or DEFAULT_API_URL).hostname or "github.com"
        if self.host.startswith("api."):
            self.host = self.host[4:]
        self.api = ApiSession(
            api_url or DEFAULT_API_URL,
            headers={
                'Authorization': f'token {token}',
                'Accept': 'application/vnd.github.v3+json',
            },
            timeout=timeout,
            session=session,
        )

    # ------------------------------------------------------------ Repository

    def _to_ref(self, repo: Dict[str, Any]) -> RepositoryRef:
        return RepositoryRef(
            owner=repo['owner']['login'],
            name=repo['name'],
            default_branch=repo.get('default_branch') or 'main',
            visibility=_visibility(repo),
            exists=True,
            project_id=str(repo['id']) if 'id' in repo else None,
            ssh_url=repo.get('ssh_url'),
            http_url=repo.get('clone_url'),
        )

    def get_repository(self, spec: RepositorySpec) -> Optional[RepositoryRef]:
        repo = self.api.get_json(f"/repos/{spec.owner}/{spec.name}", allow_404=True)
        if repo is None:
            return None
        if repo.get('archived'):
            raise ConflictError(f"Repository {spec.full_name} is archived")
        return self._to_ref(repo)

    def ensure_repository(self, spec: RepositorySpec) -> Tuple[RepositoryRef, bool]:
        existing = self.get_repository(spec)
        if existing is not None:
            check_repository_shape(spec, existing)
            return existing, False

        body = {
            'name': spec.name,
            'private': spec.visibility.value != 'public',
            'auto_init': True,
        }
        if spec.visibility.value == 'internal':
            body['visibility'] = 'internal'

        if spec.personal:
            path = "/user/repos"
        else:
            path = f"/orgs/{spec.owner}/repos"

        response = self.api.request('POST', path, json=body)
        ref = self._to_ref(response.json())
        logger.info(f"Created GitHub repository {ref.full_name}")
        check_repository_shape(spec, ref)

        if ref.default_branch != spec.branch:
            self._ensure_branch(ref, spec.branch)
        return ref, True

    # ----------------------------------------------------------- Deploy keys

    def list_deploy_keys(self, ref: RepositoryRef) -> List[DeployKey]:
        keys = []
        for item in self.api.paginate(f"/repos/{ref.owner}/{ref.name}/keys"):
            keys.append(DeployKey(
                key_id=str(item['id']),
                title=item.get('title', ''),
                public_key=item['key'],
                fingerprint=safe_fingerprint(item['key']),
                read_only=item.get('read_only', True),
            ))
        return keys

    def register_deploy_key(self, ref: RepositoryRef, title: str, public_key: str, read_only: bool = True) -> str:
        existing = find_key_by_fingerprint(self.list_deploy_keys(ref), ssh_fingerprint(public_key))
        if existing is not None:
            return existing.key_id

        response = self.api.request('POST', f"/repos/{ref.owner}/{ref.name}/keys", json={
            'title': title,
            'key': public_key,
            'read_only': read_only,
        })
        return str(response.json()['id'])

    def delete_deploy_key(self, ref: RepositoryRef, key_id: str):
        self.api.request('DELETE', f"/repos/{ref.owner}/{ref.name}/keys/{key_id}", allow_404=True)

    # ---------------------------------------------------------------- Content

    def _branch_tip(self, ref: RepositoryRef, branch: str) -> Optional[str]:
        try:
            data = self.api.get_json(f"/repos/{ref.owner}/{ref.name}/git/ref/heads/{branch}", allow_404=True)
        except ConflictError as e:
            # 409 "Git Repository is empty." means no branch has a tip yet
            if 'empty' in str(e).lower():
                return None
            raise
        if data is None:
            return None
        return data['object']['sha']

    def _ensure_branch(self, ref: RepositoryRef, branch: str) -> str:
        """Create branch from the default branch tip if missing. Returns the tip sha."""
        tip = self._branch_tip(ref, branch)
        if tip is not None:
            return tip
        base = self._branch_tip(ref, ref.default_branch)
        if base is None:
            raise ConflictError(f"Repository {ref.full_name} has no commits on {ref.default_branch}")
        self.api.request('POST', f"/repos/{ref.owner}/{ref.name}/git/refs", json={
            'ref': f"refs/heads/{branch}",
            'sha': base,
        })
        return base

    def _tree_hashes(self, ref: RepositoryRef, commit_sha: str, path: str) -> Dict[str, str]:
        commit = self.api.get_json(f"/repos/{ref.owner}/{ref.name}/git/commits/{commit_sha}")
        tree = self.api.get_json(
            f"/repos/{ref.owner}/{ref.name}/git/trees/{commit['tree']['sha']}",
            params={'recursive': '1'}
        )
        prefix = f"{path}/" if path else ""
        return {
            entry['path']: entry['sha']
            for entry in tree.get('tree', [])
            if entry.get('type') == 'blob' and entry['path'].startswith(prefix)
        }

    def list_file_hashes(self, ref: RepositoryRef, branch: str, path: str) -> Dict[str, str]:
        tip = self._branch_tip(ref, branch)
        if tip is None:
            return {}
        return self._tree_hashes(ref, tip, path)

    def read_file(self, ref: RepositoryRef, branch: str, path: str) -> Optional[bytes]:
        response = self.api.request(
            'GET',
            f"/repos/{ref.owner}/{ref.name}/contents/{path}",
            params={'ref': branch},
            headers={'Accept': 'application/vnd.github.raw'},
            allow_404=True,
        )
        if response is None:
            return None
        return response.content

    def commit_files(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        tip = self._branch_tip(ref, intent.branch)
        if tip is None:
            if ref.default_branch == intent.branch or self._branch_tip(ref, ref.default_branch) is None:
                return self._commit_to_empty(ref, intent)
            tip = self._ensure_branch(ref, intent.branch)

        current = self._tree_hashes(ref, tip, intent.path)
        changed = changed_paths(intent.files, current)
        if not changed:
            return CommitResult(sha=tip, skipped=True)

        sha = self._commit_tree(ref, intent, tip, changed)
        logger.info(f"Committed {len(changed)} file(s) to {ref.full_name}@{intent.branch}: {sha[:12]}")
        return CommitResult(sha=sha, skipped=False, changed_paths=changed)

    def _commit_tree(self, ref: RepositoryRef, intent: CommitIntent, tip: str, paths: List[str]) -> str:
        """Commit paths on top of tip through the Git data API and move the branch. Returns the commit sha."""
        base_commit = self.api.get_json(f"/repos/{ref.owner}/{ref.name}/git/commits/{tip}")
        tree_entries = []
        for manifest in intent.files.subset(paths):
            tree_entries.append({
                'path': manifest.path,
                'mode': '100644',
                'type': 'blob',
                'content': manifest.content.decode('utf-8'),
            })

        tree = self.api.request('POST', f"/repos/{ref.owner}/{ref.name}/git/trees", json={
            'base_tree': base_commit['tree']['sha'],
            'tree': tree_entries,
        }).json()

        commit = self.api.request('POST', f"/repos/{ref.owner}/{ref.name}/git/commits", json={
            'message': intent.message,
            'tree': tree['sha'],
            'parents': [tip],
            'author': {'name': intent.author_name, 'email': intent.author_email},
        }).json()

        self.api.request('PATCH', f"/repos/{ref.owner}/{ref.name}/git/refs/heads/{intent.branch}", json={
            'sha': commit['sha'],
            'force': False,
        })
        return commit['sha']

    def _commit_to_empty(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        """
        Create the first commits of a repository that has none.

        The Git data API rejects empty repositories, so the first file is
        written through the contents API, which creates the branch. Remaining
        files follow as one commit on top of it.
        """
        first, rest = intent.files.files[0], intent.files.paths[1:]
        author = {'name': intent.author_name, 'email': intent.author_email}
        response = self.api.request('PUT', f"/repos/{ref.owner}/{ref.name}/contents/{first.path}", json={
            'message': intent.message,
            'content': base64.b64encode(first.content).decode('ascii'),
            'branch': intent.branch,
            'author': author,
            'committer': author,
        })
        sha = response.json()['commit']['sha']
        if rest:
            sha = self._commit_tree(ref, intent, sha, rest)

        logger.info(f"Initialized empty repository {ref.full_name}@{intent.branch} with {len(intent.files)} file(s)")
        return CommitResult(sha=sha, skipped=False, changed_paths=intent.files.paths)

    def clone_url(self, ref: RepositoryRef, ssh: bool = True) -> str:
        if ssh:
            return f"ssh://git@{self.host}/{ref.owner}/{ref.name}"
        return ref.http_url or f"https://{self.host}/{ref.owner}/{ref.name}.git"
