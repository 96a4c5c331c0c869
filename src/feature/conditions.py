"""Reusable actions for pre/postconditions and cleanups."""

import logging
from typing import Optional

from cluster import is_not_found
from common import wait_until
from feature.errors import FeatureError
from feature.feature import Action, Feature

logger = logging.getLogger(__name__)

CRD_API_VERSION = 'apiextensions.k8s.io/v1'


def create_namespace_if_not_exists(name: str) -> Action:
    """Create the namespace unless it is already there."""
    def _ensure(f: Feature) -> None:
        try:
            f.cluster.get('v1', 'Namespace', name)
            logger.debug(f"[{f.name}] Namespace {name} already exists")
            return
        except Exception as e:
            if not is_not_found(e):
                raise
        logger.info(f"[{f.name}] Creating namespace {name}")
        f.cluster.create({'apiVersion': 'v1', 'kind': 'Namespace', 'metadata': {'name': name}})
    return _ensure


def ensure_crd_is_installed(name: str) -> Action:
    """Fail unless the named CustomResourceDefinition exists."""
    def _check(f: Feature) -> None:
        f.cluster.get(CRD_API_VERSION, 'CustomResourceDefinition', name)
    return _check


def _pod_ready(pod: dict) -> bool:
    status = pod.get('status') or {}
    if status.get('phase') != 'Running':
        return False
    for condition in status.get('conditions') or []:
        if condition.get('type') == 'Ready':
            return condition.get('status') == 'True'
    return False


def wait_for_pods_to_be_ready(namespace: str, timeout: float = 300, interval: float = 5) -> Action:
    """Wait until every pod in the namespace is running and ready."""
    def _wait(f: Feature) -> None:
        logger.info(f"[{f.name}] Waiting for pods in {namespace} to be ready...")

        def _all_ready() -> bool:
            pods = f.cluster.list('v1', 'Pod', namespace=namespace)
            not_ready = [p['metadata']['name'] for p in pods if not _pod_ready(p)]
            if not_ready:
                logger.debug(f"[{f.name}] {len(not_ready)}/{len(pods)} pods not ready in {namespace}")
            return bool(pods) and not not_ready

        if not wait_until(_all_ready, timeout=timeout, interval=interval):
            raise FeatureError(f"pods in namespace {namespace} not ready after {timeout}s")
    return _wait


def wait_for_resource_to_be_created(namespace: str, api_version: str, kind: str,
                                    timeout: float = 300, interval: float = 5) -> Action:
    """Wait until at least one object of the given kind exists in the namespace."""
    def _wait(f: Feature) -> None:
        logger.info(f"[{f.name}] Waiting for {kind} in {namespace}...")

        def _exists() -> bool:
            return bool(f.cluster.list(api_version, kind, namespace=namespace))

        if not wait_until(_exists, timeout=timeout, interval=interval):
            raise FeatureError(f"no {kind} found in namespace {namespace} after {timeout}s")
    return _wait


def delete_resource(api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> Action:
    """Cleanup action deleting one object; absence is fine."""
    def _delete(f: Feature) -> None:
        try:
            f.cluster.delete(api_version, kind, name, namespace)
            logger.info(f"[{f.name}] Deleted {kind}/{name}")
        except Exception as e:
            if not is_not_found(e):
                raise
    return _delete
