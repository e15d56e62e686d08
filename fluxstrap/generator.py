"""
Manifest generation.

Generation is a pure function of the request: identical input always yields
byte-identical output, which is what makes hash comparison against the
repository meaningful across runs.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from fluxstrap.errors import ConfigError
from fluxstrap.models import ManifestFile, ManifestSet
from fluxstrap.request import BootstrapRequest


MANAGED_MARKER = "# This manifest was generated by fluxstrap. DO NOT EDIT."

INSTALL = "install"
SYNC = "sync"

COMPONENTS_FILE = "gotk-components.yaml"
SYNC_FILE = "gotk-sync.yaml"
KUSTOMIZATION_FILE = "kustomization.yaml"

SOURCE_API_VERSION = "source.toolkit.fluxcd.io/v1"
KUSTOMIZE_API_VERSION = "kustomize.toolkit.fluxcd.io/v1"

# Namespace the upstream component manifests are published for
UPSTREAM_NAMESPACE = "flux-system"

BINDING_KINDS = ('RoleBinding', 'ClusterRoleBinding')


def render_documents(documents: List[Dict[str, Any]], header: Optional[List[str]] = None) -> bytes:
    """Serialize documents deterministically, prefixed by the managed marker."""
    lines = [MANAGED_MARKER] + [f"# {line}" for line in (header or [])]
    body = yaml.safe_dump_all(documents, sort_keys=True, default_flow_style=False, explicit_start=True)
    return ('\n'.join(lines) + '\n' + body).encode('utf-8')


def relocate(doc: Dict[str, Any], namespace: str) -> Dict[str, Any]:
    """Move an upstream document from flux-system into namespace."""
    metadata = doc.get('metadata') or {}
    if doc.get('kind') == 'Namespace' and metadata.get('name') == UPSTREAM_NAMESPACE:
        metadata['name'] = namespace
    if metadata.get('namespace') == UPSTREAM_NAMESPACE:
        metadata['namespace'] = namespace
    if doc.get('kind') in BINDING_KINDS:
        for subject in doc.get('subjects') or []:
            if subject.get('namespace') == UPSTREAM_NAMESPACE:
                subject['namespace'] = namespace
    return doc


class ManifestGenerator(ABC):
    """Produces the install and sync manifest sets for a request."""

    @abstractmethod
    def generate(self, kind: str, request: BootstrapRequest, source_url: Optional[str] = None) -> ManifestSet:
        """
        Generate a manifest set.

        Args:
            kind: 'install' or 'sync'
            request: Bootstrap request
            source_url: Repository URL the cluster pulls from (sync only)
        """
        pass


class DefaultManifestGenerator(ManifestGenerator):
    """
    Builds manifests from per-component upstream YAML files.

    The components directory holds one `<component>.yaml` per controller,
    either directly or under a subdirectory named after the Flux version.
    """

    def __init__(self, components_dir: Path, flux_version: str = "v2.4.0"):
        self.components_dir = Path(components_dir)
        self.flux_version = flux_version

    def _source_dir(self) -> Path:
        versioned = self.components_dir / self.flux_version
        return versioned if versioned.is_dir() else self.components_dir

    def _load_component(self, component: str) -> List[Dict[str, Any]]:
        path = self._source_dir() / f"{component}.yaml"
        if not path.exists():
            raise ConfigError(f"Manifests for component '{component}' not found: {path}")
        try:
            with open(path, 'r') as f:
                return [doc for doc in yaml.safe_load_all(f) if doc]
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    def generate(self, kind: str, request: BootstrapRequest, source_url: Optional[str] = None) -> ManifestSet:
        if kind == INSTALL:
            return self._install(request)
        if kind == SYNC:
            if not source_url:
                raise ConfigError("Sync manifests require the repository URL")
            return self._sync(request, source_url)
        raise ConfigError(f"Unknown manifest kind: {kind}")

    def _install(self, request: BootstrapRequest) -> ManifestSet:
        documents = [{
            'apiVersion': 'v1',
            'kind': 'Namespace',
            'metadata': {
                'name': request.namespace,
                'labels': {
                    'app.kubernetes.io/instance': request.namespace,
                    'app.kubernetes.io/part-of': 'flux',
                    'app.kubernetes.io/version': self.flux_version,
                },
            },
        }]
        for component in request.all_components:
            for doc in self._load_component(component):
                if doc.get('kind') == 'Namespace':
                    continue
                documents.append(relocate(doc, request.namespace))

        content = render_documents(documents, header=[
            f"Flux Version: {self.flux_version}",
            f"Components: {','.join(request.all_components)}",
        ])
        return ManifestSet(kind=INSTALL, files=(
            ManifestFile(path=f"{request.manifests_path}/{COMPONENTS_FILE}", content=content),
        ))

    def _sync(self, request: BootstrapRequest, source_url: str) -> ManifestSet:
        name = request.namespace
        repo_path = f"./{request.repository.path}" if request.repository.path else "./"
        source = {
            'apiVersion': SOURCE_API_VERSION,
            'kind': 'GitRepository',
            'metadata': {'name': name, 'namespace': request.namespace},
            'spec': {
                'interval': '1m0s',
                'ref': {'branch': request.repository.branch},
                'secretRef': {'name': request.effective_secret_name},
                'url': source_url,
            },
        }
        kustomization = {
            'apiVersion': KUSTOMIZE_API_VERSION,
            'kind': 'Kustomization',
            'metadata': {'name': name, 'namespace': request.namespace},
            'spec': {
                'interval': '10m0s',
                'path': repo_path,
                'prune': True,
                'sourceRef': {'kind': 'GitRepository', 'name': name},
            },
        }
        build = {
            'apiVersion': 'kustomize.config.k8s.io/v1beta1',
            'kind': 'Kustomization',
            'resources': [COMPONENTS_FILE, SYNC_FILE],
        }

        return ManifestSet(kind=SYNC, files=(
            ManifestFile(
                path=f"{request.manifests_path}/{SYNC_FILE}",
                content=render_documents([source, kustomization]),
            ),
            # Consumed by kustomize inside the cluster, never applied directly
            ManifestFile(
                path=f"{request.manifests_path}/{KUSTOMIZATION_FILE}",
                content=render_documents([build]),
                appliable=False,
            ),
        ))
