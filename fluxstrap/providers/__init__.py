"""
Git hosting provider abstraction.

Providers implement one capability contract over distinct backends:
- GitHubProvider: GitHub REST API
- GitLabProvider: GitLab REST v4 API
- GiteaProvider: Gitea API v1
- ServerProvider: plain Git server through git plumbing
"""
from typing import Optional

from fluxstrap.errors import ConfigError
from fluxstrap.providers.base import Capabilities, GitProvider
from fluxstrap.request import BootstrapRequest, ProviderKind


def get_provider(request: BootstrapRequest, token: Optional[str], timeout: float = 30.0) -> GitProvider:
    """
    Create a fresh provider session for one bootstrap run.

    Args:
        request: Bootstrap request (selects backend and API URL)
        token: Provider API token
        timeout: Per-call HTTP timeout in seconds

    Returns:
        Provider instance owned by the caller's run

    Raises:
        ConfigError: If a required token or URL is missing
    """
    kind = request.provider

    if kind == ProviderKind.SERVER:
        from fluxstrap.providers.server import ServerProvider
        return ServerProvider(
            url=request.provider_url,
            token=token or request.token,
            username=request.token_auth_username,
        )

    if not token:
        raise ConfigError(f"An API token is required for provider '{kind.value}'")

    if kind == ProviderKind.GITHUB:
        from fluxstrap.providers.github import GitHubProvider
        return GitHubProvider(token=token, api_url=request.provider_url, timeout=timeout)
    if kind == ProviderKind.GITLAB:
        from fluxstrap.providers.gitlab import GitLabProvider
        return GitLabProvider(token=token, api_url=request.provider_url, timeout=timeout)
    if kind == ProviderKind.GITEA:
        if not request.provider_url:
            raise ConfigError("provider 'gitea' requires provider_url")
        from fluxstrap.providers.gitea import GiteaProvider
        return GiteaProvider(token=token, api_url=request.provider_url, timeout=timeout)

    raise ConfigError(f"Unknown provider: {kind}")


__all__ = ["Capabilities", "GitProvider", "get_provider"]
