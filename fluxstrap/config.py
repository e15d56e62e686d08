"""
Runtime configuration for fluxstrap.

Loads settings that do not belong to a bootstrap request (provider tokens,
kubeconfig selection, retry tuning) from environment variables.
"""
import os
from pathlib import Path
from typing import Optional

from fluxstrap.errors import ConfigError
from fluxstrap.request import ProviderKind


TOKEN_ENV_VARS = {
    ProviderKind.GITHUB: "GITHUB_TOKEN",
    ProviderKind.GITLAB: "GITLAB_TOKEN",
    ProviderKind.GITEA: "GITEA_TOKEN",
    ProviderKind.SERVER: "GIT_TOKEN",
}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


class FluxstrapConfig:
    """Configuration loaded from the environment."""

    def __init__(self):
        """Load configuration from environment."""
        # Kubernetes access
        kubeconfig = os.getenv("KUBECONFIG")
        self.kubeconfig = Path(kubeconfig) if kubeconfig else None
        self.kube_context = os.getenv("FLUXSTRAP_KUBE_CONTEXT") or None
        self.in_cluster = os.getenv("FLUXSTRAP_IN_CLUSTER", "false").lower() == "true"

        # Manifest generator input
        manifests_dir = os.getenv("FLUXSTRAP_MANIFESTS_DIR")
        if manifests_dir:
            self.manifests_dir = Path(manifests_dir)
        else:
            self.manifests_dir = Path.home() / ".fluxstrap" / "manifests"
        self.flux_version = os.getenv("FLUXSTRAP_FLUX_VERSION", "v2.4.0")

        # Retry tuning for transient provider/cluster failures
        self.retry_attempts = _int_env("FLUXSTRAP_RETRY_ATTEMPTS", 4)
        self.retry_base_delay = _float_env("FLUXSTRAP_RETRY_BASE_DELAY", 1.0)
        self.retry_max_delay = _float_env("FLUXSTRAP_RETRY_MAX_DELAY", 30.0)

        # HTTP timeout per provider call
        self.http_timeout = _float_env("FLUXSTRAP_HTTP_TIMEOUT", 30.0)

        if self.retry_attempts < 1:
            raise ConfigError("FLUXSTRAP_RETRY_ATTEMPTS must be at least 1")

    def provider_token(self, kind: ProviderKind) -> Optional[str]:
        """Return the API token for a provider from its environment variable."""
        return os.getenv(TOKEN_ENV_VARS[kind]) or None


def get_config() -> FluxstrapConfig:
    """Get fluxstrap configuration."""
    return FluxstrapConfig()
