"""
Bootstrap request schema.

A BootstrapRequest is the immutable input of one bootstrap run. It is loaded
from YAML (or built in code) and validated before any remote call is made.
"""
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fluxstrap.errors import ConfigError


DEFAULT_NAMESPACE = "flux-system"

DEFAULT_COMPONENTS = [
    "source-controller",
    "kustomize-controller",
    "helm-controller",
    "notification-controller",
]

EXTRA_COMPONENTS = [
    "image-reflector-controller",
    "image-automation-controller",
]


class ProviderKind(str, Enum):
    """Supported Git hosting backends."""
    GITHUB = "github"
    GITLAB = "gitlab"
    GITEA = "gitea"
    SERVER = "server"


class CredentialPolicy(str, Enum):
    """How the cluster's pull credential is obtained."""
    REUSE = "reuse"         # Reuse a valid existing key, generate otherwise
    GENERATE = "generate"   # Always rotate to a freshly generated key
    TOKEN = "token"         # Store the supplied token for HTTPS access


class KeyAlgorithm(str, Enum):
    """Deploy key algorithms."""
    ED25519 = "ed25519"
    RSA = "rsa"
    ECDSA = "ecdsa"


class Visibility(str, Enum):
    """Repository visibility."""
    PRIVATE = "private"
    INTERNAL = "internal"
    PUBLIC = "public"


class RepositorySpec(BaseModel):
    """Requested repository identity and shape."""
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    branch: str = Field("main", min_length=1)
    path: str = Field("", description="Directory inside the repository holding the cluster config")
    visibility: Visibility = Visibility.PRIVATE
    personal: bool = Field(False, description="Owner is the authenticated user rather than an organization")

    @field_validator('path')
    @classmethod
    def normalize_path(cls, value: str) -> str:
        value = value.strip().strip('/')
        if value.startswith('./'):
            value = value[2:]
        if value == '.':
            value = ''
        if '..' in value.split('/'):
            raise ValueError("path must not contain '..'")
        return value

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class BootstrapRequest(BaseModel):
    """Immutable input of one bootstrap run."""
    model_config = ConfigDict(frozen=True)

    namespace: str = Field(DEFAULT_NAMESPACE, min_length=1)
    repository: RepositorySpec
    provider: ProviderKind
    provider_url: Optional[str] = Field(None, description="API base URL (clone URL for server)")

    credential_policy: CredentialPolicy = CredentialPolicy.REUSE
    token: Optional[str] = Field(None, repr=False)
    token_auth_username: str = "git"
    key_algorithm: KeyAlgorithm = KeyAlgorithm.ED25519
    rsa_bits: int = 4096
    ecdsa_curve: str = "p384"
    known_hosts: Optional[str] = None
    secret_name: Optional[str] = None

    components: List[str] = Field(default_factory=lambda: list(DEFAULT_COMPONENTS))
    components_extra: List[str] = Field(default_factory=list)

    author_name: str = "Flux"
    author_email: str = "flux@users.noreply.local"
    commit_message_prefix: str = "Add Flux"

    timeout: float = Field(900.0, gt=0, description="Aggregate run timeout in seconds")
    ready_timeout: float = Field(300.0, gt=0)
    poll_interval: float = Field(2.0, gt=0)
    max_parallel_polls: int = Field(4, ge=1)

    dry_run: bool = False

    @field_validator('rsa_bits')
    @classmethod
    def check_rsa_bits(cls, value: int) -> int:
        if value not in (2048, 3072, 4096):
            raise ValueError("rsa_bits must be one of 2048, 3072, 4096")
        return value

    @field_validator('ecdsa_curve')
    @classmethod
    def check_ecdsa_curve(cls, value: str) -> str:
        if value not in ('p256', 'p384', 'p521'):
            raise ValueError("ecdsa_curve must be one of p256, p384, p521")
        return value

    @field_validator('components_extra')
    @classmethod
    def check_components_extra(cls, value: List[str]) -> List[str]:
        unknown = [c for c in value if c not in EXTRA_COMPONENTS]
        if unknown:
            raise ValueError(f"unknown extra components: {', '.join(unknown)}")
        return value

    @model_validator(mode='after')
    def check_consistency(self) -> 'BootstrapRequest':
        if self.credential_policy == CredentialPolicy.TOKEN and not self.token:
            raise ValueError("credential_policy 'token' requires a token")
        if self.provider == ProviderKind.SERVER and not self.provider_url:
            raise ValueError("provider 'server' requires provider_url (the repository URL)")
        if 'source-controller' not in self.components:
            raise ValueError("components must include source-controller")
        if self.ready_timeout > self.timeout:
            raise ValueError("ready_timeout must not exceed timeout")
        return self

    @property
    def read_write(self) -> bool:
        """Whether remote mutations are allowed."""
        return not self.dry_run

    @property
    def all_components(self) -> List[str]:
        return list(self.components) + list(self.components_extra)

    @property
    def effective_secret_name(self) -> str:
        return self.secret_name or self.namespace

    @property
    def manifests_path(self) -> str:
        """Repository directory that holds the generated manifests."""
        if self.repository.path:
            return f"{self.repository.path}/{self.namespace}"
        return self.namespace

    @property
    def deploy_key_title(self) -> str:
        return f"{self.namespace}-{self.repository.branch}-{self.repository.path or '.'}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BootstrapRequest':
        """
        Build a request from a plain dict.

        Raises:
            ConfigError: If any field is missing or invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Bootstrap request must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = []
            for err in e.errors():
                location = '.'.join(str(part) for part in err['loc']) or 'request'
                problems.append(f"{location}: {err['msg']}")
            raise ConfigError(f"Invalid bootstrap request: {'; '.join(problems)}") from e

    @classmethod
    def from_yaml(cls, yaml_path: Path, overrides: Optional[Dict[str, Any]] = None) -> 'BootstrapRequest':
        """
        Load a bootstrap request from a YAML file.

        Args:
            yaml_path: Path to request YAML file
            overrides: Top-level values that replace the file's values

        Returns:
            BootstrapRequest instance

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise ConfigError(f"Bootstrap request not found: {yaml_path}")

        try:
            with open(yaml_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {yaml_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Bootstrap request must be a mapping: {yaml_path}")

        if overrides:
            data.update({k: v for k, v in overrides.items() if v is not None})

        return cls.from_dict(data)
