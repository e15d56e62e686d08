"""
Provider interface shared by all Git hosting backends.

A provider instance is the live session for one bootstrap run: it holds the
authentication context, rate-limit state and capability flags, and is never
shared across concurrent runs.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from fluxstrap.errors import (
    AuthError,
    ConflictError,
    ProviderError,
    QuotaError,
    RateLimitError,
    TransientError,
)
from fluxstrap.models import CommitIntent, CommitResult, DeployKey, ManifestSet, RepositoryRef
from fluxstrap.request import RepositorySpec
from fluxstrap.sshkeys import ssh_fingerprint


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """What a backend can do remotely."""
    supports_repository_create: bool = True
    supports_deploy_keys: bool = True
    supports_server_side_commit: bool = True


class GitProvider(ABC):
    """
    Abstract base class for Git hosting backends.

    Providers are responsible for:
    1. Ensuring the target repository exists with the requested shape
    2. Registering the cluster's deploy key (reusing an identical one)
    3. Committing generated files atomically, skipping when nothing changed

    Side effects are exclusively remote; no local state survives a call.
    """

    kind: str = ""
    capabilities: Capabilities = Capabilities()

    @abstractmethod
    def get_repository(self, spec: RepositorySpec) -> Optional[RepositoryRef]:
        """Return the remote repository, or None if it does not exist."""
        pass

    @abstractmethod
    def ensure_repository(self, spec: RepositorySpec) -> Tuple[RepositoryRef, bool]:
        """
        Ensure the repository exists with the requested shape.

        Returns:
            (repository, created)

        Raises:
            AuthError: If credentials are rejected
            ConflictError: If an incompatible repository already exists
        """
        pass

    @abstractmethod
    def list_deploy_keys(self, ref: RepositoryRef) -> List[DeployKey]:
        """List deploy keys registered on the repository."""
        pass

    @abstractmethod
    def register_deploy_key(self, ref: RepositoryRef, title: str, public_key: str, read_only: bool = True) -> str:
        """
        Register a deploy key, reusing an already registered identical key.

        Returns:
            Provider key id

        Raises:
            QuotaError: If the provider refuses more deploy keys
        """
        pass

    @abstractmethod
    def delete_deploy_key(self, ref: RepositoryRef, key_id: str):
        """Remove a deploy key. Missing keys are ignored."""
        pass

    @abstractmethod
    def list_file_hashes(self, ref: RepositoryRef, branch: str, path: str) -> Dict[str, str]:
        """
        Return blob ids of the files under path at the branch tip.

        Returns:
            Mapping of repository path to blob sha; empty if the branch or path
            does not exist
        """
        pass

    @abstractmethod
    def read_file(self, ref: RepositoryRef, branch: str, path: str) -> Optional[bytes]:
        """Return a file's content at the branch tip, or None if absent."""
        pass

    @abstractmethod
    def commit_files(self, ref: RepositoryRef, intent: CommitIntent) -> CommitResult:
        """
        Commit the intent's files in a single commit.

        Returns:
            CommitResult with skipped=True when every file already matches
            the branch tip
        """
        pass

    @abstractmethod
    def clone_url(self, ref: RepositoryRef, ssh: bool = True) -> str:
        """URL the cluster uses to fetch the repository."""
        pass

    def ssh_host(self, ref: RepositoryRef) -> Tuple[str, int]:
        """Host and port for known_hosts collection."""
        parsed = urlparse(self.clone_url(ref, ssh=True))
        return parsed.hostname or "", parsed.port or 22


def check_repository_shape(spec: RepositorySpec, ref: RepositoryRef):
    """
    Verify an existing repository is compatible with the request.

    Raises:
        ConflictError: If visibility differs from the requested one
    """
    if ref.visibility != spec.visibility.value:
        raise ConflictError(
            f"Repository {ref.full_name} exists with visibility '{ref.visibility}', "
            f"requested '{spec.visibility.value}'"
        )


def find_key_by_fingerprint(keys: List[DeployKey], fingerprint: str) -> Optional[DeployKey]:
    """Return the registered key matching the fingerprint, if any."""
    for key in keys:
        if key.fingerprint == fingerprint:
            return key
    return None


def safe_fingerprint(public_key: str) -> str:
    """Fingerprint a key reported by a provider; unparsable keys never match."""
    try:
        return ssh_fingerprint(public_key)
    except ValueError:
        return ""


def changed_paths(files: ManifestSet, current: Dict[str, str]) -> List[str]:
    """Paths whose blob sha differs from (or is missing in) current."""
    return [f.path for f in files if current.get(f.path) != f.sha]


def join_path(*parts: str) -> str:
    return '/'.join(p.strip('/') for p in parts if p and p.strip('/'))


class ApiSession:
    """
    HTTP session for a REST hosting API.

    Classifies responses into fluxstrap errors and tracks the provider's
    rate-limit headers.
    """

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str],
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(headers)
        self.rate_limit_remaining: Optional[int] = None
        self.rate_limit_reset: Optional[float] = None

    def url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        allow_404: bool = False,
        headers: Optional[Dict[str, str]] = None
    ) -> Optional[requests.Response]:
        """
        Perform one API call.

        Args:
            method: HTTP method
            path: Path relative to the API base (or an absolute URL)
            params: Query parameters
            json: JSON body
            allow_404: Return None instead of raising on 404
            headers: Extra headers for this call

        Returns:
            Response, or None for an allowed 404
        """
        try:
            response = self.session.request(
                method,
                self.url(path),
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientError(f"{method} {path} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"{method} {path} connection failed: {e}") from e

        self._record_rate_limit(response)

        if response.status_code < 400:
            return response
        if response.status_code == 404 and allow_404:
            return None
        self._raise_for_status(method, path, response)
        return response

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None, allow_404: bool = False) -> Any:
        response = self.request('GET', path, params=params, allow_404=allow_404)
        if response is None:
            return None
        return response.json()

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None, per_page: int = 100) -> Iterator[Any]:
        """Yield items from a list endpoint, following Link rel="next" headers."""
        params = dict(params or {})
        params.setdefault('per_page', per_page)
        response = self.request('GET', path, params=params)
        while response is not None:
            for item in response.json():
                yield item
            next_link = response.links.get('next', {}).get('url')
            if not next_link:
                break
            response = self.request('GET', next_link)

    def _record_rate_limit(self, response: requests.Response):
        headers = response.headers
        remaining = headers.get('X-RateLimit-Remaining') or headers.get('RateLimit-Remaining')
        reset = headers.get('X-RateLimit-Reset') or headers.get('RateLimit-Reset')
        if remaining is not None:
            try:
                self.rate_limit_remaining = int(remaining)
            except ValueError:
                pass
        if reset is not None:
            try:
                self.rate_limit_reset = float(reset)
            except ValueError:
                pass

    def _retry_after(self, response: requests.Response) -> Optional[float]:
        value = response.headers.get('Retry-After')
        if value:
            try:
                return float(value)
            except ValueError:
                return None
        if self.rate_limit_reset is not None:
            return max(0.0, self.rate_limit_reset - time.time())
        return None

    def _raise_for_status(self, method: str, path: str, response: requests.Response):
        status = response.status_code
        message = _error_message(response)
        summary = f"{method} {path} returned {status}: {message}"

        if status == 429 or (status == 403 and self.rate_limit_remaining == 0):
            raise RateLimitError(summary, retry_after=self._retry_after(response))
        if status in (401, 403):
            raise AuthError(summary)
        if status >= 500:
            raise TransientError(summary)
        if status in (409, 422):
            lowered = message.lower()
            if 'limit' in lowered or 'quota' in lowered or 'maximum' in lowered:
                raise QuotaError(summary)
            raise ConflictError(summary)
        raise ProviderError(summary, status_code=status)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        parts = []
        for key in ('message', 'error', 'error_description'):
            if body.get(key):
                parts.append(str(body[key]))
        for err in body.get('errors', []) or []:
            if isinstance(err, dict) and err.get('message'):
                parts.append(str(err['message']))
            elif isinstance(err, str):
                parts.append(err)
        if parts:
            return '; '.join(parts)
    return str(body)[:200]
