"""
Cluster access for bootstrap.

The core depends on three things only: applying a manifest set, reading
object status, and creating/updating one Secret. Applies use server-side
apply, so applying identical content twice changes nothing.
"""
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import urllib3
import yaml
from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, NotFoundError, ResourceNotFoundError

from fluxstrap.errors import AuthError, ConfigError, ConflictError, ProviderError, TransientError
from fluxstrap.models import AppliedObjectRef, ManifestSet


logger = logging.getLogger(__name__)

FIELD_MANAGER = "fluxstrap"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

# Objects other documents depend on are applied first
KIND_PRIORITY = {
    'Namespace': 0,
    'CustomResourceDefinition': 1,
}


class ClusterError(ProviderError):
    """Raised for cluster API responses that fit no other class."""
    pass


def parse_manifest_documents(manifests: ManifestSet) -> List[Dict[str, Any]]:
    """
    Parse the appliable files of a manifest set into Kubernetes objects.

    Namespaces and CRDs sort first; everything else keeps generation order.
    """
    documents = []
    for manifest in manifests.appliable():
        try:
            for doc in yaml.safe_load_all(manifest.content):
                if not doc:
                    continue
                if not isinstance(doc, dict) or 'kind' not in doc or 'apiVersion' not in doc:
                    raise ConfigError(f"{manifest.path} contains a document without apiVersion/kind")
                if doc['kind'].endswith('List') and 'items' in doc:
                    documents.extend(doc['items'])
                else:
                    documents.append(doc)
        except yaml.YAMLError as e:
            raise ConfigError(f"{manifest.path} is not valid YAML: {e}") from e

    indexed = list(enumerate(documents))
    indexed.sort(key=lambda pair: (KIND_PRIORITY.get(pair[1]['kind'], 2), pair[0]))
    return [doc for _, doc in indexed]


def classify_api_error(e: Exception, action: str) -> Exception:
    """Map a Kubernetes client exception to a fluxstrap error."""
    status = getattr(e, 'status', None)
    reason = getattr(e, 'reason', None) or str(e)
    summary = f"{action}: {status} {reason}"
    if status in (401, 403):
        return AuthError(summary)
    if status == 409:
        return ConflictError(summary)
    if status == 429 or (status is not None and status >= 500):
        return TransientError(summary)
    return ClusterError(summary, status_code=status)


class ClusterClient(ABC):
    """Contract the bootstrap core needs from the cluster."""

    @abstractmethod
    def apply(self, manifests: ManifestSet) -> List[AppliedObjectRef]:
        """Apply a manifest set and return the objects it touched."""
        pass

    @abstractmethod
    def get_object(self, api_version: str, kind: str, name: str, namespace: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return an object as a dict, or None if it (or its kind) does not exist."""
        pass

    @abstractmethod
    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, bytes]]:
        """Return decoded secret data, or None if the secret does not exist."""
        pass

    @abstractmethod
    def put_secret(self, namespace: str, name: str, data: Dict[str, bytes], labels: Optional[Dict[str, str]] = None) -> bool:
        """
        Create or overwrite a secret, creating the namespace if needed.

        Returns:
            True if anything was written
        """
        pass


class KubernetesCluster(ClusterClient):
    """ClusterClient backed by the official Kubernetes client."""

    def __init__(
        self,
        in_cluster: bool = False,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        field_manager: str = FIELD_MANAGER,
        api_client: Optional[client.ApiClient] = None
    ):
        """
        Initialize cluster client.

        Args:
            in_cluster: Whether running inside a cluster
            kubeconfig: Kubeconfig path (default: $KUBECONFIG or ~/.kube/config)
            context: Kubeconfig context name
            field_manager: Server-side apply field manager
            api_client: Preconfigured API client (skips config loading)
        """
        if api_client is None:
            try:
                if in_cluster:
                    config.load_incluster_config()
                else:
                    config.load_kube_config(config_file=kubeconfig, context=context)
            except config.ConfigException as e:
                raise ConfigError(f"Cannot load Kubernetes configuration: {e}") from e
            api_client = client.ApiClient()

        self.field_manager = field_manager
        self.core_api = client.CoreV1Api(api_client)
        self.dynamic = dynamic.DynamicClient(api_client)

    def _resource(self, api_version: str, kind: str):
        try:
            return self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            # Kinds from freshly applied CRDs are missing from cached discovery
            self.dynamic.resources.invalidate_cache()
            return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def apply(self, manifests: ManifestSet) -> List[AppliedObjectRef]:
        applied = []
        for doc in parse_manifest_documents(manifests):
            api_version = doc['apiVersion']
            kind = doc['kind']
            name = doc.get('metadata', {}).get('name')
            action = f"apply {kind}/{name}"
            try:
                resource = self._resource(api_version, kind)
                namespace = doc.get('metadata', {}).get('namespace') if resource.namespaced else None

                before = None
                try:
                    before = resource.get(name=name, namespace=namespace).metadata.resourceVersion
                except NotFoundError:
                    pass

                result = self.dynamic.server_side_apply(
                    resource,
                    body=doc,
                    name=name,
                    namespace=namespace,
                    field_manager=self.field_manager,
                    force_conflicts=True,
                )
            except ResourceNotFoundError as e:
                # CRD not yet established; retrying later succeeds
                raise TransientError(f"{action}: kind not served yet ({e})") from e
            except (DynamicApiError, ApiException) as e:
                raise classify_api_error(e, action) from e
            except urllib3.exceptions.HTTPError as e:
                raise TransientError(f"{action}: {e}") from e

            changed = before != result.metadata.resourceVersion
            applied.append(AppliedObjectRef(
                api_version=api_version,
                kind=kind,
                name=name,
                namespace=namespace,
                changed=changed,
            ))
            if changed:
                logger.debug(f"Applied {kind}/{name}")
        return applied

    def get_object(self, api_version: str, kind: str, name: str, namespace: Optional[str]) -> Optional[Dict[str, Any]]:
        action = f"get {kind}/{name}"
        try:
            resource = self._resource(api_version, kind)
            return resource.get(name=name, namespace=namespace).to_dict()
        except (NotFoundError, ResourceNotFoundError):
            return None
        except (DynamicApiError, ApiException) as e:
            raise classify_api_error(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(f"{action}: {e}") from e

    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, bytes]]:
        try:
            secret = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise classify_api_error(e, f"read secret {namespace}/{name}") from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(f"read secret {namespace}/{name}: {e}") from e

        return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}

    def _ensure_namespace(self, namespace: str):
        try:
            self.core_api.read_namespace(name=namespace)
            return
        except ApiException as e:
            if e.status != 404:
                raise classify_api_error(e, f"read namespace {namespace}") from e

        try:
            self.core_api.create_namespace(body={
                'apiVersion': 'v1',
                'kind': 'Namespace',
                'metadata': {'name': namespace},
            })
            logger.info(f"Created namespace {namespace}")
        except ApiException as e:
            if e.status != 409:
                raise classify_api_error(e, f"create namespace {namespace}") from e

    def put_secret(self, namespace: str, name: str, data: Dict[str, bytes], labels: Optional[Dict[str, str]] = None) -> bool:
        action = f"write secret {namespace}/{name}"
        try:
            self._ensure_namespace(namespace)
            existing = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise classify_api_error(e, action) from e
            existing = None
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(f"{action}: {e}") from e

        body = {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'type': 'Opaque',
            'metadata': {'name': name, 'namespace': namespace, 'labels': labels or {}},
            'data': {key: base64.b64encode(value).decode('ascii') for key, value in data.items()},
        }

        try:
            if existing is None:
                self.core_api.create_namespaced_secret(namespace=namespace, body=body)
                return True

            current = {key: base64.b64decode(value) for key, value in (existing.data or {}).items()}
            current_labels = existing.metadata.labels or {}
            if current == data and all(current_labels.get(k) == v for k, v in (labels or {}).items()):
                return False

            body['metadata']['resourceVersion'] = existing.metadata.resource_version
            self.core_api.replace_namespaced_secret(name=name, namespace=namespace, body=body)
            return True
        except ApiException as e:
            raise classify_api_error(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(f"{action}: {e}") from e
