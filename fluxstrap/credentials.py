"""
Secret provisioning for the cluster's repository credential.

Reads the existing cluster secret and the provider's registered keys, then
decides between reuse and generation. The read-then-write sequence spans two
systems without a lock, so callers must run at most one bootstrap per target
at a time.
"""
import hashlib
import subprocess
from typing import Dict, Optional

from fluxstrap.cluster import MANAGED_BY_LABEL, ClusterClient
from fluxstrap.context import RunContext
from fluxstrap.errors import ConfigError, TransientError
from fluxstrap.models import DeployCredential, RepositoryRef
from fluxstrap.providers.base import GitProvider, find_key_by_fingerprint, safe_fingerprint
from fluxstrap.request import BootstrapRequest, CredentialPolicy
from fluxstrap.sshkeys import generate_key_pair


IDENTITY_KEY = 'identity'
IDENTITY_PUB_KEY = 'identity.pub'
KNOWN_HOSTS_KEY = 'known_hosts'
USERNAME_KEY = 'username'
PASSWORD_KEY = 'password'

SECRET_LABELS = {MANAGED_BY_LABEL: 'fluxstrap'}


def token_fingerprint(token: str) -> str:
    return "sha256:" + hashlib.sha256(token.encode('utf-8')).hexdigest()


def scan_known_hosts(host: str, port: int = 22, timeout: float = 30.0) -> str:
    """
    Collect host keys with ssh-keyscan.

    Args:
        host: SSH host name
        port: SSH port
        timeout: Seconds before giving up

    Returns:
        known_hosts content

    Raises:
        ConfigError: If ssh-keyscan is not installed
        TransientError: If the host could not be scanned
    """
    if not host:
        raise ConfigError("Cannot collect known_hosts without an SSH host; set known_hosts in the request")

    command = ['ssh-keyscan', '-T', str(int(timeout))]
    if port != 22:
        command += ['-p', str(port)]
    command.append(host)

    try:
        result = subprocess.run(command, capture_output=True, timeout=timeout + 5)
    except FileNotFoundError as e:
        raise ConfigError("ssh-keyscan not found; install OpenSSH or set known_hosts in the request") from e
    except subprocess.TimeoutExpired as e:
        raise TransientError(f"ssh-keyscan {host} timed out") from e

    output = result.stdout.decode('utf-8', errors='replace')
    lines = [line for line in output.splitlines() if line.strip() and not line.startswith('#')]
    if not lines:
        raise TransientError(f"ssh-keyscan returned no host keys for {host}:{port}")
    return '\n'.join(lines) + '\n'


class SecretProvisioner:
    """Ensures the cluster holds a credential the provider accepts."""

    def __init__(self, provider: GitProvider, cluster: ClusterClient, keyscan=scan_known_hosts):
        """
        Initialize provisioner.

        Args:
            provider: Provider session of the current run
            cluster: Cluster client
            keyscan: Callable (host, port) -> known_hosts content
        """
        self.provider = provider
        self.cluster = cluster
        self.keyscan = keyscan

    def ensure_credential(
        self,
        request: BootstrapRequest,
        repo: RepositoryRef,
        ctx: RunContext
    ) -> DeployCredential:
        """
        Ensure the cluster secret holds a valid repository credential.

        Args:
            request: Bootstrap request
            repo: Repository the credential grants access to
            ctx: Run context

        Returns:
            DeployCredential (created=False when nothing was written)
        """
        namespace = request.namespace
        name = request.effective_secret_name
        existing = self.cluster.get_secret(namespace, name)

        if request.credential_policy == CredentialPolicy.TOKEN:
            return self._ensure_token(request, existing, ctx)

        if request.credential_policy == CredentialPolicy.REUSE and existing:
            reused = self._reusable(repo, existing, namespace, name, ctx)
            if reused is not None:
                return reused

        return self._generate(request, repo, ctx)

    def _ensure_token(
        self,
        request: BootstrapRequest,
        existing: Optional[Dict[str, bytes]],
        ctx: RunContext
    ) -> DeployCredential:
        data = {
            USERNAME_KEY: request.token_auth_username.encode('utf-8'),
            PASSWORD_KEY: request.token.encode('utf-8'),
        }
        credential = DeployCredential(
            kind='token',
            fingerprint=token_fingerprint(request.token),
            secret_namespace=request.namespace,
            secret_name=request.effective_secret_name,
        )
        if existing == data:
            ctx.logger.info(f"Secret {request.namespace}/{credential.secret_name} already holds the token")
            return credential

        credential.created = True
        if request.dry_run:
            ctx.logger.info(f"[dry-run] Would write token secret {request.namespace}/{credential.secret_name}")
            return credential

        self.cluster.put_secret(request.namespace, credential.secret_name, data, labels=SECRET_LABELS)
        ctx.logger.info(f"Wrote token secret {request.namespace}/{credential.secret_name}")
        return credential

    def _reusable(
        self,
        repo: RepositoryRef,
        existing: Dict[str, bytes],
        namespace: str,
        name: str,
        ctx: RunContext
    ) -> Optional[DeployCredential]:
        public_key = existing.get(IDENTITY_PUB_KEY, b'').decode('utf-8').strip()
        if not public_key or IDENTITY_KEY not in existing:
            return None

        fingerprint = safe_fingerprint(public_key)
        if not fingerprint:
            ctx.logger.warning(f"Secret {namespace}/{name} holds an unparsable public key; regenerating")
            return None

        credential = DeployCredential(
            kind='ssh',
            fingerprint=fingerprint,
            secret_namespace=namespace,
            secret_name=name,
            public_key=public_key,
        )

        if not self.provider.capabilities.supports_deploy_keys:
            # Registration happens out of band; the secret alone decides reuse
            ctx.logger.info(f"Reusing deploy key {fingerprint} from {namespace}/{name}")
            return credential

        if not repo.exists:
            return None

        registered = find_key_by_fingerprint(self.provider.list_deploy_keys(repo), fingerprint)
        if registered is None:
            ctx.logger.info(f"Deploy key {fingerprint} is no longer registered on {repo.full_name}")
            return None

        credential.key_id = registered.key_id
        credential.registered = True
        ctx.logger.info(f"Reusing deploy key {fingerprint} (id {registered.key_id})")
        return credential

    def _generate(self, request: BootstrapRequest, repo: RepositoryRef, ctx: RunContext) -> DeployCredential:
        namespace = request.namespace
        name = request.effective_secret_name

        if request.dry_run:
            ctx.logger.info(
                f"[dry-run] Would generate a {request.key_algorithm.value} deploy key "
                f"and write secret {namespace}/{name}"
            )
            return DeployCredential(
                kind='ssh',
                fingerprint='',
                secret_namespace=namespace,
                secret_name=name,
                created=True,
            )

        key_pair = generate_key_pair(request.key_algorithm.value, request.rsa_bits, request.ecdsa_curve)
        ctx.logger.info(f"Generated {request.key_algorithm.value} deploy key {key_pair.fingerprint}")

        known_hosts = request.known_hosts
        if not known_hosts:
            host, port = self.provider.ssh_host(repo)
            known_hosts = self.keyscan(host, port)

        credential = DeployCredential(
            kind='ssh',
            fingerprint=key_pair.fingerprint,
            secret_namespace=namespace,
            secret_name=name,
            public_key=key_pair.public_key,
            created=True,
        )

        if self.provider.capabilities.supports_deploy_keys:
            title = request.deploy_key_title
            previous = [key for key in self.provider.list_deploy_keys(repo) if key.title == title]
            credential.key_id = self.provider.register_deploy_key(repo, title, key_pair.public_key, read_only=True)
            credential.registered = True
            ctx.logger.info(f"Registered deploy key '{title}' on {repo.full_name}")
            for key in previous:
                if key.key_id != credential.key_id:
                    self.provider.delete_deploy_key(repo, key.key_id)
                    ctx.logger.info(f"Removed superseded deploy key {key.key_id}")
        else:
            ctx.logger.warning(
                f"{self.provider.kind} cannot register deploy keys; add this read-only key manually: "
                f"{key_pair.public_key}"
            )

        self.cluster.put_secret(
            namespace,
            name,
            {
                IDENTITY_KEY: key_pair.private_key,
                IDENTITY_PUB_KEY: key_pair.public_key.encode('utf-8'),
                KNOWN_HOSTS_KEY: known_hosts.encode('utf-8'),
            },
            labels=SECRET_LABELS,
        )
        ctx.logger.info(f"Wrote deploy key secret {namespace}/{name}")
        return credential
