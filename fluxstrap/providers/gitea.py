"""
Gitea provider.

Uses the Gitea API v1. Multi-file commits go through the contents endpoint
that accepts a list of file operations and applies them as one commit.
"""
import base64
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from fluxstrap.errors import ConfigError, ConflictError, ProviderError
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


class GiteaProvider(GitProvider):
    """Handles Gitea API operations for one bootstrap run."""

    kind = "gitea"
    capabilities = Capabilities(
        supports_repository_create=True,
        supports_deploy_keys=True,
        supports_server_side_commit=True,
    )

    def __init__(
        self,
        token: str,
        api_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        if not api_url:
            raise ConfigError("Gitea requires an API URL")
        api_url = api_url.rstrip('/')
        if not api_url.endswith('/api/v1'):
            api_url = f"{api_url}/api/v1"
        self.host = urlparse(api_url).hostname or ""
        self.api = ApiSession(
            api_url,
            headers={'Authorization': f'token {token}'},
            timeout=timeout,
            session=session,
        )

    def _to_ref(self, repo: Dict[str, Any]) -> RepositoryRef:
        if repo.get('internal'):
            visibility = 'internal'
        elif repo.get('private'):
            visibility = 'private'
        else:
            visibility = 'public'
        return RepositoryRef(
            owner=repo['owner']['login'],
            name=repo['name'],
            default_branch=repo.get('default_branch') or 'main',
            visibility=visibility,
            exists=True,
            project_id=str(repo['id']) if 'id' in repo else None,
            ssh_url=repo.get('ssh_url'),
            http_url=repo.get('clone_url'),
        )

    # ------------------------------------------------------------ Repository

    def _check_visibility(self, spec: RepositorySpec):
        # Gitea has no per-repository internal visibility; it cannot be created or read back
        if spec.visibility.value == 'internal':
            raise ConfigError("Gitea repositories cannot be created with visibility 'internal'; use private or public")

    def get_repository(self, spec: RepositorySpec) -> Optional[RepositoryRef]:
        self._check_visibility(spec)
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
            'default_branch': spec.branch,
        }
        path = "/user/repos" if spec.personal else f"/orgs/{spec.owner}/repos"
        ref = self._to_ref(self.api.request('POST', path, json=body).json())
        logger.info(f"Created Gitea repository {ref.full_name}")
        check_repository_shape(spec, ref)
        return ref, True

    # ----------------------------------------------------------- Deploy keys

    def list_deploy_keys(self, ref: RepositoryRef) -> List[DeployKey]:
        keys = []
        for item in self.api.paginate(f"/repos/{ref.owner}/{ref.name}/keys", per_page=50):
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
        data = self.api.get_json(f"/repos/{ref.owner}/{ref.name}/branches/{branch}", allow_404=True)
        if data is None:
            return None
        return data['commit']['id']

    def list_file_hashes(self, ref: RepositoryRef, branch: str, path: str) -> Dict[str, str]:
        tip = self._branch_tip(ref, branch)
        if tip is None:
            return {}
        prefix = f"{path}/" if path else ""
        hashes = {}
        page = 1
        while True:
            tree = self.api.get_json(
                f"/repos/{ref.owner}/{ref.name}/git/trees/{tip}",
                params={'recursive': 'true', 'page': page, 'per_page': 1000}
            )
            for entry in tree.get('tree') or []:
                if entry.get('type') == 'blob' and entry['path'].startswith(prefix):
                    hashes[entry['path']] = entry['sha']
            if not tree.get('truncated'):
                break
            page += 1
        return hashes

    def read_file(self, ref: RepositoryRef, branch: str, path: str) -> Optional[bytes]:
        response = self.api.request(
            'GET',
            f"/repos/{ref.owner}/{ref.name}/raw/{path}",
            params={'ref': branch},
            allow_404=True,
        )
        if response is None:
            return None
        return response.content

    def commit_files(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        tip = self._branch_tip(ref, intent.branch)
        current = self.list_file_hashes(ref, intent.branch, intent.path) if tip else {}
        changed = changed_paths(intent.files, current)
        if not changed:
            return CommitResult(sha=tip, skipped=True)

        operations = []
        for manifest in intent.files.subset(changed):
            operation = {
                'operation': 'update' if manifest.path in current else 'create',
                'path': manifest.path,
                'content': base64.b64encode(manifest.content).decode('ascii'),
            }
            if manifest.path in current:
                operation['sha'] = current[manifest.path]
            operations.append(operation)

        body = {
            'branch': ref.default_branch if tip is None else intent.branch,
            'message': intent.message,
            'author': {'name': intent.author_name, 'email': intent.author_email},
            'files': operations,
        }
        if tip is None:
            body['new_branch'] = intent.branch

        response = self.api.request('POST', f"/repos/{ref.owner}/{ref.name}/contents", json=body).json()
        commit = response.get('commit') or {}
        sha = commit.get('sha')
        if not sha:
            raise ProviderError(f"Gitea did not report a commit for {ref.full_name}@{intent.branch}")

        logger.info(f"Committed {len(changed)} file(s) to {ref.full_name}@{intent.branch}: {sha[:12]}")
        return CommitResult(sha=sha, skipped=False, changed_paths=changed)

    def clone_url(self, ref: RepositoryRef, ssh: bool = True) -> str:
        if ssh:
            if ref.ssh_url and ref.ssh_url.startswith('ssh://'):
                return ref.ssh_url.rsplit('.git', 1)[0]
            return f"ssh://git@{self.host}/{ref.owner}/{ref.name}"
        return ref.http_url or f"https://{self.host}/{ref.owner}/{ref.name}.git"
