"""
Generic Git server provider.

For servers without a hosting API. The repository must already exist, deploy
keys are registered out of band, and commits go through Git plumbing.
"""
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse, urlunparse

from fluxstrap.errors import ConflictError, ProviderError
from fluxstrap.models import CommitIntent, CommitResult, DeployKey, RepositoryRef
from fluxstrap.providers.base import Capabilities, GitProvider, changed_paths
from fluxstrap.providers.plumbing import GitPlumbing, SubprocessGitPlumbing, split_branch_refs
from fluxstrap.request import RepositorySpec


logger = logging.getLogger(__name__)


def build_authenticated_url(url: str, username: str, token: Optional[str]) -> str:
    """
    Inject credentials into an HTTPS URL. Other schemes are returned unchanged.

    Args:
        url: Repository URL
        username: Basic auth user
        token: Password or token (None leaves the URL untouched)
    """
    parsed = urlparse(url)
    if not token or parsed.scheme not in ('http', 'https'):
        return url
    netloc = f"{quote(username, safe='')}:{quote(token, safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


class ServerProvider(GitProvider):
    """Plain Git server reachable over SSH or HTTPS."""

    kind = "server"
    capabilities = Capabilities(
        supports_repository_create=False,
        supports_deploy_keys=False,
        supports_server_side_commit=False,
    )

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        username: str = 'git',
        plumbing: Optional[GitPlumbing] = None
    ):
        self.url = url
        self.remote_url = build_authenticated_url(url, username, token)
        self.plumbing = plumbing or SubprocessGitPlumbing()

    def _refs(self) -> Optional[Dict[str, str]]:
        return self.plumbing.ls_remote(self.remote_url)

    def get_repository(self, spec: RepositorySpec) -> Optional[RepositoryRef]:
        refs = self._refs()
        if refs is None:
            return None
        default, branches = split_branch_refs(refs)
        if default is None:
            default = spec.branch if spec.branch in branches or not branches else sorted(branches)[0]
        return RepositoryRef(
            owner=spec.owner,
            name=spec.name,
            default_branch=default,
            # The server exposes no visibility; the requested one is assumed
            visibility=spec.visibility.value,
            exists=True,
            ssh_url=self.url if not self.url.startswith('http') else None,
            http_url=self.url if self.url.startswith('http') else None,
        )

    def ensure_repository(self, spec: RepositorySpec) -> Tuple[RepositoryRef, bool]:
        ref = self.get_repository(spec)
        if ref is None:
            raise ConflictError(
                f"Repository {self.url} does not exist; generic Git servers cannot create repositories"
            )
        return ref, False

    def list_deploy_keys(self, ref: RepositoryRef) -> List[DeployKey]:
        return []

    def register_deploy_key(self, ref: RepositoryRef, title: str, public_key: str, read_only: bool = True) -> str:
        raise ProviderError("Generic Git servers do not support deploy key registration")

    def delete_deploy_key(self, ref: RepositoryRef, key_id: str):
        pass

    def _branch_exists(self, branch: str) -> Tuple[bool, Optional[str], Dict[str, str]]:
        refs = self._refs() or {}
        default, branches = split_branch_refs(refs)
        return branch in branches, default, branches

    def list_file_hashes(self, ref: RepositoryRef, branch: str, path: str) -> Dict[str, str]:
        exists, _, _ = self._branch_exists(branch)
        if not exists:
            return {}
        return self.plumbing.list_tree(self.remote_url, branch, path)

    def read_file(self, ref: RepositoryRef, branch: str, path: str) -> Optional[bytes]:
        exists, _, _ = self._branch_exists(branch)
        if not exists:
            return None
        return self.plumbing.read_blob(self.remote_url, branch, path)

    def commit_files(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        exists, default, branches = self._branch_exists(intent.branch)
        current = self.plumbing.list_tree(self.remote_url, intent.branch, intent.path) if exists else {}
        changed = changed_paths(intent.files, current)
        if not changed:
            return CommitResult(sha=branches.get(intent.branch), skipped=True)

        if exists:
            base_branch = intent.branch
        elif default in branches:
            base_branch = default
        else:
            base_branch = None

        files = {f.path: f.content for f in intent.files.subset(changed)}
        sha = self.plumbing.commit_and_push(
            self.remote_url,
            intent.branch,
            base_branch,
            files,
            intent.message,
            intent.author_name,
            intent.author_email,
        )
        logger.info(f"Pushed {len(changed)} file(s) to {self.url}@{intent.branch}: {sha[:12]}")
        return CommitResult(sha=sha, skipped=False, changed_paths=changed)

    def clone_url(self, ref: RepositoryRef, ssh: bool = True) -> str:
        return self.url
