"""Shared pytest fixtures for feature engine tests."""

import copy
import sys
from pathlib import Path

import pytest
from kubernetes.client.exceptions import ApiException

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineSettings, reset_settings  # noqa: E402


def _not_found(kind, name):
    err = ApiException(status=404, reason='Not Found')
    err.body = f'{kind} "{name}" not found'
    return err


class FakeCluster:
    """In-memory stand-in for cluster.Cluster.

    Stores objects by (apiVersion, kind, namespace, name), assigns uids and
    resourceVersions, enforces optimistic concurrency on updates and
    cascades deletes to objects owned by the deleted one (like the garbage
    collector would).

    Attributes:
        writes: Log of (verb, kind, name) for every mutating call
        status_conflicts: Number of upcoming update_status calls to reject with 409
    """

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.status_conflicts = 0
        self._counter = 0

    @staticmethod
    def _key(api_version, kind, name, namespace):
        return (api_version, kind, namespace or '', name)

    def _key_of(self, obj):
        metadata = obj.get('metadata', {})
        return self._key(obj['apiVersion'], obj['kind'], metadata.get('name'), metadata.get('namespace'))

    def _next(self) -> str:
        self._counter += 1
        return str(self._counter)

    def get(self, api_version, kind, name, namespace=None):
        key = self._key(api_version, kind, name, namespace)
        if key not in self.objects:
            raise _not_found(kind, name)
        return copy.deepcopy(self.objects[key])

    def list(self, api_version, kind, namespace=None, label_selector=None):
        return [
            copy.deepcopy(obj) for (av, k, ns, _), obj in self.objects.items()
            if av == api_version and k == kind and (namespace is None or ns == namespace)
        ]

    def create(self, obj):
        key = self._key_of(obj)
        if key in self.objects:
            err = ApiException(status=409, reason='AlreadyExists')
            err.body = f'{obj["kind"]} "{key[3]}" already exists'
            raise err
        stored = copy.deepcopy(obj)
        stored['metadata']['uid'] = f"uid-{self._next()}"
        stored['metadata']['resourceVersion'] = self._next()
        self.objects[key] = stored
        self.writes.append(('create', obj['kind'], key[3]))
        return copy.deepcopy(stored)

    def _check_version(self, key, obj):
        if key not in self.objects:
            raise _not_found(obj['kind'], key[3])
        sent = obj.get('metadata', {}).get('resourceVersion')
        if sent and sent != self.objects[key]['metadata']['resourceVersion']:
            raise ApiException(status=409, reason='Conflict')

    def update(self, obj):
        key = self._key_of(obj)
        self._check_version(key, obj)
        stored = copy.deepcopy(obj)
        stored['metadata']['uid'] = self.objects[key]['metadata']['uid']
        stored['metadata']['resourceVersion'] = self._next()
        self.objects[key] = stored
        self.writes.append(('update', obj['kind'], key[3]))
        return copy.deepcopy(stored)

    def update_status(self, obj):
        key = self._key_of(obj)
        if self.status_conflicts > 0:
            self.status_conflicts -= 1
            self.objects[key]['metadata']['resourceVersion'] = self._next()
            raise ApiException(status=409, reason='Conflict')
        self._check_version(key, obj)
        stored = self.objects[key]
        stored['status'] = copy.deepcopy(obj.get('status'))
        stored['metadata']['resourceVersion'] = self._next()
        self.writes.append(('update_status', obj['kind'], key[3]))
        return copy.deepcopy(stored)

    def merge_patch(self, obj):
        key = self._key_of(obj)
        if key not in self.objects:
            raise _not_found(obj['kind'], key[3])
        _merge(self.objects[key], copy.deepcopy(obj))
        self.objects[key]['metadata']['resourceVersion'] = self._next()
        self.writes.append(('patch', obj['kind'], key[3]))
        return copy.deepcopy(self.objects[key])

    def delete(self, api_version, kind, name, namespace=None):
        key = self._key(api_version, kind, name, namespace)
        if key not in self.objects:
            raise _not_found(kind, name)
        removed = self.objects.pop(key)
        self.writes.append(('delete', kind, name))
        self._collect_garbage(removed['metadata']['uid'])

    def _collect_garbage(self, owner_uid):
        for key, obj in list(self.objects.items()):
            refs = obj.get('metadata', {}).get('ownerReferences') or []
            if any(ref.get('uid') == owner_uid for ref in refs) and key in self.objects:
                del self.objects[key]
                self._collect_garbage(obj['metadata']['uid'])

    def exists(self, api_version, kind, name, namespace=None) -> bool:
        return self._key(api_version, kind, name, namespace) in self.objects


def _merge(target: dict, patch: dict) -> None:
    """JSON merge patch (RFC 7386) semantics."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep tests independent of the caller's FEATURES_* environment."""
    for name in ('FEATURES_CONFIG', 'FEATURES_KUBECONFIG', 'FEATURES_KUBE_CONTEXT',
                 'FEATURES_KUSTOMIZE_BIN', 'FEATURES_KUSTOMIZE_TIMEOUT',
                 'FEATURES_STATUS_UPDATE_ATTEMPTS', 'FEATURES_STATUS_UPDATE_BACKOFF',
                 'FEATURES_TRACKER_API_VERSION'):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def fake_cluster():
    return FakeCluster()


@pytest.fixture
def settings():
    return EngineSettings(status_update_backoff=0)


@pytest.fixture
def manifests_dir(tmp_path):
    """Manifest tree used across loader and feature tests.

    Creates:
    - raw/configmap.yaml (two documents)
    - raw/namespace.yaml (cluster-scoped, no namespace)
    - templated/service.tmpl.yaml
    - patches/deployment.patch.yaml
    - overlay/kustomization.yaml + overlay/resource.yaml
    """
    (tmp_path / 'raw').mkdir()
    (tmp_path / 'raw' / 'configmap.yaml').write_text("""apiVersion: v1
kind: ConfigMap
metadata:
  name: first
  namespace: app-ns
data:
  key: value
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: second
  namespace: app-ns
""")
    (tmp_path / 'raw' / 'namespace.yaml').write_text("""apiVersion: v1
kind: Namespace
metadata:
  name: embedded-test-ns
""")

    (tmp_path / 'templated').mkdir()
    (tmp_path / 'templated' / 'service.tmpl.yaml').write_text("""apiVersion: v1
kind: Service
metadata:
  name: knative-local-gateway
  namespace: {{ Namespace }}
  labels:
    domain: {{ Domain | replace_char('.', '-') }}
spec:
  ports:
  - port: 80
""")

    (tmp_path / 'patches').mkdir()
    (tmp_path / 'patches' / 'deployment.patch.yaml').write_text("""apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: app-ns
spec:
  replicas: 3
""")

    (tmp_path / 'overlay').mkdir()
    (tmp_path / 'overlay' / 'kustomization.yaml').write_text("""apiVersion: kustomize.config.k8s.io/v1beta1
kind: Kustomization
resources:
- resource.yaml
""")
    (tmp_path / 'overlay' / 'resource.yaml').write_text("""apiVersion: v1
kind: ConfigMap
metadata:
  name: my-configmap
data:
  key: value
""")
    return tmp_path
