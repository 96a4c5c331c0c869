"""Transformers applied to overlay build output.

Handlers attach these to every feature they create so overlay resources
land in the handler's namespace and carry the owning component's labels.
"""

from feature.manifest import Plugin, is_cluster_scoped

APP_LABEL_PREFIX = 'app.opendatahub.io'
PART_OF_LABEL = 'app.kubernetes.io/part-of'


def component_label(component: str) -> str:
    return f"{APP_LABEL_PREFIX}/{component}"


def namespace_applier(namespace: str) -> Plugin:
    """Set metadata.namespace on every namespaced resource."""
    def _apply(obj: dict) -> None:
        if is_cluster_scoped(obj):
            return
        obj.setdefault('metadata', {})['namespace'] = namespace
    return _apply


def add_labels(component: str) -> Plugin:
    """Label resources as belonging to the given component."""
    def _apply(obj: dict) -> None:
        metadata = obj.setdefault('metadata', {})
        labels = metadata.get('labels') or {}
        labels[component_label(component)] = 'true'
        labels[PART_OF_LABEL] = component
        metadata['labels'] = labels
    return _apply
