"""Cluster access for the feature engine.

Wraps the Kubernetes dynamic client so the rest of the engine works with
plain resource dicts (the same shape manifests render to) and never has to
know about typed API classes.

Credential resolution follows the usual operator pattern:
1. In-cluster service account, when running inside a pod
2. Local kubeconfig (explicit path/context from settings, or default rules)
"""

import copy
import logging
from typing import Any, Callable, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.dynamic import DynamicClient

from config import ConfigError, EngineSettings, get_settings

logger = logging.getLogger(__name__)

# A meta option mutates an object's metadata in place before it is applied
MetaOption = Callable[[dict], None]


def is_not_found(err: BaseException) -> bool:
    return getattr(err, 'status', None) == 404


def is_conflict(err: BaseException) -> bool:
    """True for optimistic-concurrency conflicts (HTTP 409, not AlreadyExists)."""
    return getattr(err, 'status', None) == 409 and not is_already_exists(err)


def is_already_exists(err: BaseException) -> bool:
    if getattr(err, 'status', None) != 409:
        return False
    reason = str(getattr(err, 'reason', '') or '')
    body = str(getattr(err, 'body', '') or '')
    return 'AlreadyExists' in reason or 'AlreadyExists' in body or 'already exists' in body


def load_configuration(settings: Optional[EngineSettings] = None) -> k8s_client.Configuration:
    """Resolve a client Configuration: in-cluster first, local kubeconfig second.

    Raises:
        ConfigError: If neither source provides usable credentials
    """
    settings = settings or get_settings()
    configuration = k8s_client.Configuration()

    if not settings.kubeconfig:
        try:
            k8s_config.load_incluster_config(client_configuration=configuration)
            logger.debug("Using in-cluster credentials")
            return configuration
        except k8s_config.ConfigException:
            logger.debug("Not running in-cluster, falling back to kubeconfig")

    try:
        k8s_config.load_kube_config(
            config_file=settings.kubeconfig,
            context=settings.context,
            client_configuration=configuration,
        )
    except (k8s_config.ConfigException, OSError) as e:
        raise ConfigError(f"Unable to load cluster credentials: {e}") from e

    logger.debug(f"Using kubeconfig {settings.kubeconfig or '(default)'}")
    return configuration


def new_cluster(configuration: Optional[k8s_client.Configuration] = None) -> 'Cluster':
    """Create a Cluster for the given configuration (default credentials if None)."""
    if configuration is None:
        configuration = load_configuration()
    api_client = k8s_client.ApiClient(configuration=configuration)
    return Cluster(DynamicClient(api_client))


class Cluster:
    """Thin resource-dict facade over the Kubernetes dynamic client.

    All methods take and return plain dicts. API errors propagate as the
    client library raises them; use is_not_found()/is_conflict() to classify.
    """

    def __init__(self, dynamic_client: DynamicClient):
        self._client = dynamic_client

    def _resource(self, api_version: str, kind: str):
        return self._client.resources.get(api_version=api_version, kind=kind)

    def get(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> dict:
        resource = self._resource(api_version, kind)
        return resource.get(name=name, namespace=namespace).to_dict()

    def list(self, api_version: str, kind: str, namespace: Optional[str] = None,
             label_selector: Optional[str] = None) -> list[dict]:
        resource = self._resource(api_version, kind)
        result = resource.get(namespace=namespace, label_selector=label_selector)
        return result.to_dict().get('items', [])

    def create(self, obj: dict) -> dict:
        resource = self._resource(obj['apiVersion'], obj['kind'])
        namespace = obj.get('metadata', {}).get('namespace')
        return resource.create(body=obj, namespace=namespace).to_dict()

    def update(self, obj: dict) -> dict:
        resource = self._resource(obj['apiVersion'], obj['kind'])
        namespace = obj.get('metadata', {}).get('namespace')
        return resource.replace(body=obj, namespace=namespace).to_dict()

    def update_status(self, obj: dict) -> dict:
        resource = self._resource(obj['apiVersion'], obj['kind'])
        namespace = obj.get('metadata', {}).get('namespace')
        return resource.status.replace(body=obj, namespace=namespace).to_dict()

    def merge_patch(self, obj: dict) -> dict:
        """Merge-patch an existing object with the given partial body."""
        resource = self._resource(obj['apiVersion'], obj['kind'])
        metadata = obj.get('metadata', {})
        return resource.patch(
            body=obj,
            name=metadata.get('name'),
            namespace=metadata.get('namespace'),
            content_type='application/merge-patch+json',
        ).to_dict()

    def delete(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        resource = self._resource(api_version, kind)
        resource.delete(name=name, namespace=namespace)


def owner_reference(obj: dict, controller: Optional[bool] = None) -> dict:
    """Build an ownerReference pointing at obj."""
    metadata = obj.get('metadata', {})
    ref: dict[str, Any] = {
        'apiVersion': obj['apiVersion'],
        'kind': obj['kind'],
        'name': metadata['name'],
        'uid': metadata.get('uid', ''),
    }
    if controller is not None:
        ref['controller'] = controller
    return ref


def owned_by(ref: dict) -> MetaOption:
    """Replace the object's owner references with ref."""
    def _apply(obj: dict) -> None:
        obj.setdefault('metadata', {})['ownerReferences'] = [copy.deepcopy(ref)]
    return _apply


def with_annotations(**annotations: str) -> MetaOption:
    def _apply(obj: dict) -> None:
        metadata = obj.setdefault('metadata', {})
        current = metadata.get('annotations') or {}
        current.update(annotations)
        metadata['annotations'] = current
    return _apply


def with_labels(labels: dict[str, str]) -> MetaOption:
    def _apply(obj: dict) -> None:
        metadata = obj.setdefault('metadata', {})
        current = metadata.get('labels') or {}
        current.update(labels)
        metadata['labels'] = current
    return _apply


def apply_meta_options(obj: dict, options: list[MetaOption]) -> None:
    for option in options:
        option(obj)
