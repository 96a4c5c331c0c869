"""Idempotent application of rendered resources.

Two modes:
- apply (default): create when absent; when present, update only objects
  explicitly annotated as managed. Anything else is left alone so user
  changes to unmanaged objects survive reconciliation.
- patch: merge-patch an existing object. A missing object is an error;
  patches never create.
"""

import logging

from cluster import Cluster, MetaOption, apply_meta_options, is_not_found
from feature.manifest import describe

logger = logging.getLogger(__name__)

MANAGED_ANNOTATION = 'opendatahub.io/managed'


def is_managed(obj: dict) -> bool:
    annotations = (obj.get('metadata') or {}).get('annotations') or {}
    return str(annotations.get(MANAGED_ANNOTATION, '')).lower() == 'true'


def apply_resources(
    cluster: Cluster,
    resources: list[dict],
    meta_options: list[MetaOption],
    patch: bool = False,
) -> None:
    """Apply each resource in order, stopping at the first failure."""
    for obj in resources:
        if patch:
            logger.debug(f"Patching {describe(obj)}")
            cluster.merge_patch(obj)
            continue
        _create_or_update(cluster, obj, meta_options)


def _create_or_update(cluster: Cluster, obj: dict, meta_options: list[MetaOption]) -> None:
    apply_meta_options(obj, meta_options)

    metadata = obj.get('metadata', {})
    try:
        existing = cluster.get(obj['apiVersion'], obj['kind'], metadata.get('name'), metadata.get('namespace'))
    except Exception as e:
        if not is_not_found(e):
            raise
        logger.debug(f"Creating {describe(obj)}")
        cluster.create(obj)
        return

    if not is_managed(existing):
        logger.debug(f"Skipping {describe(obj)}: exists and is not managed")
        return

    resource_version = (existing.get('metadata') or {}).get('resourceVersion')
    if resource_version:
        obj['metadata']['resourceVersion'] = resource_version
    logger.debug(f"Updating managed {describe(obj)}")
    cluster.update(obj)
