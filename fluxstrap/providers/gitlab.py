"""
GitLab provider.

Uses the GitLab REST v4 API. Multi-file commits go through the commits API
with one action per changed file, which GitLab applies atomically.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import requests

from fluxstrap.errors import ConflictError, ProviderError
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

DEFAULT_API_URL = "https://gitlab.com/api/v4"


def _encode(value: str) -> str:
    return quote(value, safe='')


class GitLabProvider(GitProvider):
    """Handles GitLab API operations for one bootstrap run."""

    kind = "gitlab"
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
        api_url = api_url or DEFAULT_API_URL
        if not api_url.rstrip('/').endswith('/api/v4'):
            api_url = f"{api_url.rstrip('/')}/api/v4"
        self.host = urlparse(api_url).hostname or "gitlab.com"
        self.api = ApiSession(
            api_url,
            headers={'PRIVATE-TOKEN': token},
            timeout=timeout,
            session=session,
        )

    def _project(self, ref: RepositoryRef) -> str:
        return ref.project_id or _encode(ref.full_name)

    def _to_ref(self, project: Dict[str, Any], spec: RepositorySpec) -> RepositoryRef:
        return RepositoryRef(
            owner=spec.owner,
            name=project.get('path', spec.name),
            default_branch=project.get('default_branch') or 'main',
            visibility=project.get('visibility', 'private'),
            exists=True,
            project_id=str(project['id']),
            ssh_url=project.get('ssh_url_to_repo'),
            http_url=project.get('http_url_to_repo'),
        )

    # ------------------------------------------------------------ Repository

    def get_repository(self, spec: RepositorySpec) -> Optional[RepositoryRef]:
        project = self.api.get_json(f"/projects/{_encode(spec.full_name)}", allow_404=True)
        if project is None:
            return None
        if project.get('archived'):
            raise ConflictError(f"Project {spec.full_name} is archived")
        return self._to_ref(project, spec)

    def _namespace_id(self, spec: RepositorySpec) -> Optional[int]:
        if spec.personal:
            # Projects created without namespace_id land in the user's namespace
            return None
        namespace = self.api.get_json(f"/namespaces/{_encode(spec.owner)}", allow_404=True)
        if namespace is None:
            raise ConflictError(f"GitLab group {spec.owner} not found")
        return namespace['id']

    def ensure_repository(self, spec: RepositorySpec) -> Tuple[RepositoryRef, bool]:
        existing = self.get_repository(spec)
        if existing is not None:
            check_repository_shape(spec, existing)
            return existing, False

        body = {
            'name': spec.name,
            'path': spec.name,
            'visibility': spec.visibility.value,
            'initialize_with_readme': True,
        }
        namespace_id = self._namespace_id(spec)
        if namespace_id is not None:
            body['namespace_id'] = namespace_id

        project = self.api.request('POST', "/projects", json=body).json()
        ref = self._to_ref(project, spec)
        logger.info(f"Created GitLab project {ref.full_name}")
        check_repository_shape(spec, ref)

        if ref.default_branch != spec.branch:
            self._ensure_branch(ref, spec.branch)
        return ref, True

    # ----------------------------------------------------------- Deploy keys

    def list_deploy_keys(self, ref: RepositoryRef) -> List[DeployKey]:
        keys = []
        for item in self.api.paginate(f"/projects/{self._project(ref)}/deploy_keys"):
            keys.append(DeployKey(
                key_id=str(item['id']),
                title=item.get('title', ''),
                public_key=item['key'],
                fingerprint=safe_fingerprint(item['key']),
                read_only=not item.get('can_push', False),
            ))
        return keys

    def register_deploy_key(self, ref: RepositoryRef, title: str, public_key: str, read_only: bool = True) -> str:
        existing = find_key_by_fingerprint(self.list_deploy_keys(ref), ssh_fingerprint(public_key))
        if existing is not None:
            return existing.key_id

        response = self.api.request('POST', f"/projects/{self._project(ref)}/deploy_keys", json={
            'title': title,
            'key': public_key,
            'can_push': not read_only,
        })
        return str(response.json()['id'])

    def delete_deploy_key(self, ref: RepositoryRef, key_id: str):
        self.api.request('DELETE', f"/projects/{self._project(ref)}/deploy_keys/{key_id}", allow_404=True)

    # ---------------------------------------------------------------- Content

    def _branch_exists(self, ref: RepositoryRef, branch: str) -> bool:
        data = self.api.get_json(
            f"/projects/{self._project(ref)}/repository/branches/{_encode(branch)}",
            allow_404=True
        )
        return data is not None

    def _ensure_branch(self, ref: RepositoryRef, branch: str):
        if self._branch_exists(ref, branch):
            return
        self.api.request('POST', f"/projects/{self._project(ref)}/repository/branches", params={
            'branch': branch,
            'ref': ref.default_branch,
        })

    def list_file_hashes(self, ref: RepositoryRef, branch: str, path: str) -> Dict[str, str]:
        if not self._branch_exists(ref, branch):
            return {}
        params = {'ref': branch, 'recursive': 'true'}
        if path:
            params['path'] = path
        hashes = {}
        try:
            for entry in self.api.paginate(f"/projects/{self._project(ref)}/repository/tree", params=params):
                if entry.get('type') == 'blob':
                    hashes[entry['path']] = entry['id']
        except ProviderError as e:
            # GitLab answers 404 for a tree path that does not exist yet
            if e.status_code == 404:
                return {}
            raise
        return hashes

    def read_file(self, ref: RepositoryRef, branch: str, path: str) -> Optional[bytes]:
        response = self.api.request(
            'GET',
            f"/projects/{self._project(ref)}/repository/files/{_encode(path)}/raw",
            params={'ref': branch},
            allow_404=True,
        )
        if response is None:
            return None
        return response.content

    def commit_files(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        branch_exists = self._branch_exists(ref, intent.branch)
        current = self.list_file_hashes(ref, intent.branch, intent.path) if branch_exists else {}
        changed = changed_paths(intent.files, current)
        if not changed:
            tip = self.api.get_json(
                f"/projects/{self._project(ref)}/repository/branches/{_encode(intent.branch)}"
            )['commit']['id']
            return CommitResult(sha=tip, skipped=True)

        actions = []
        for manifest in intent.files.subset(changed):
            actions.append({
                'action': 'update' if manifest.path in current else 'create',
                'file_path': manifest.path,
                'content': manifest.content.decode('utf-8'),
            })

        body = {
            'branch': intent.branch,
            'commit_message': intent.message,
            'author_name': intent.author_name,
            'author_email': intent.author_email,
            'actions': actions,
        }
        if not branch_exists:
            body['start_branch'] = ref.default_branch

        commit = self.api.request('POST', f"/projects/{self._project(ref)}/repository/commits", json=body).json()
        logger.info(f"Committed {len(changed)} file(s) to {ref.full_name}@{intent.branch}: {commit['id'][:12]}")
        return CommitResult(sha=commit['id'], skipped=False, changed_paths=changed)

    def clone_url(self, ref: RepositoryRef, ssh: bool = True) -> str:
        if ssh:
            return f"ssh://git@{self.host}/{ref.owner}/{ref.name}"
        return ref.http_url or f"https://{self.host}/{ref.owner}/{ref.name}.git"
