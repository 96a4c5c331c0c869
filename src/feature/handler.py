"""Coordination of multiple features as one unit.

A handler owns a list of feature providers: callables that receive the
handler (as a registry) and add builders to it. Every apply()/delete()
re-runs the providers against current configuration, so the same providers
serve both directions.

Ordering contract:
- apply() walks features in registration order
- delete() walks them in reverse, so later features (which may depend on
  earlier ones) are torn down first

Both are best-effort: every feature is attempted and failures are
aggregated into one MultiError.
"""

import logging
from typing import Callable, Optional, Protocol

from cluster import Cluster, owner_reference
from feature.builder import FeatureBuilder
from feature.errors import ErrorList, FeatureError
from feature.feature import Feature
from feature.plugins import add_labels, namespace_applier
from feature.tracker import Source, SourceType

logger = logging.getLogger(__name__)


class FeaturesRegistry(Protocol):
    def add(self, *builders: FeatureBuilder) -> None:
        ...


FeaturesProvider = Callable[[FeaturesRegistry], None]


class FeaturesHandler:
    """Applies and deletes the features produced by its providers."""

    def __init__(
        self,
        target_namespace: str,
        source: Source,
        owner: Optional[dict] = None,
        providers: Optional[list[FeaturesProvider]] = None,
        cluster: Optional[Cluster] = None,
    ):
        self.target_namespace = target_namespace
        self.source = source
        self.owner = owner
        self.providers = list(providers or [])
        self.cluster = cluster
        self.features: list[Feature] = []

    def add(self, *builders: FeatureBuilder) -> None:
        """Create features from builders, filling in the handler's shared context.

        Every builder is attempted; only successfully created features are kept.

        Raises:
            MultiError: If any builder failed to create
        """
        plugins = [namespace_applier(self.target_namespace)]
        if self.source.type is SourceType.COMPONENT:
            plugins.append(add_labels(self.source.name))

        errors = ErrorList()
        for builder in builders:
            builder.target_namespace(self.target_namespace).source(self.source)
            if self.owner is not None:
                builder.owned_by(self.owner)
            builder.enrich_manifests(*plugins)
            if builder.cluster is None and builder.configuration is None and self.cluster is not None:
                builder.using_cluster(self.cluster)
            try:
                self.features.append(builder.create())
            except Exception as e:
                logger.error(f"[{builder.name}] Failed to create feature: {e}")
                errors.append(e)
        errors.raise_if_any()

    def _materialize(self, phase: str) -> None:
        self.features = []
        for provider in self.providers:
            try:
                provider(self)
            except Exception as e:
                raise FeatureError(f"failed adding features to the handler during {phase}: {e}") from e

    def apply(self) -> None:
        """Apply all features in registration order.

        Raises:
            FeatureError: If a provider fails (nothing is applied)
            MultiError: Failures of individual features
        """
        self._materialize('apply')

        errors = ErrorList()
        for f in self.features:
            try:
                f.apply()
            except Exception as e:
                errors.append(_wrap(f"failed applying feature {f.name}", e))
        errors.raise_if_any()

    def delete(self) -> None:
        """Clean up all features in reverse registration order.

        Raises:
            FeatureError: If a provider fails (nothing is cleaned up)
            MultiError: Failures of individual cleanups
        """
        self._materialize('delete')

        errors = ErrorList()
        for f in reversed(self.features):
            try:
                f.cleanup()
            except Exception as e:
                errors.append(_wrap(f"failed executing cleanup of feature {f.name}", e))
        errors.raise_if_any()


def cluster_features_handler(initialization: dict, *providers: FeaturesProvider,
                             cluster: Optional[Cluster] = None) -> FeaturesHandler:
    """Handler for features caused by the cluster initialization object.

    The target namespace is the object's spec.applicationsNamespace and the
    object becomes the controlling owner of every tracker.
    """
    return FeaturesHandler(
        target_namespace=(initialization.get('spec') or {}).get('applicationsNamespace', ''),
        source=Source(SourceType.DSCI, initialization['metadata']['name']),
        owner=owner_reference(initialization, controller=True),
        providers=list(providers),
        cluster=cluster,
    )


def component_features_handler(owner: dict, component_name: str, target_namespace: str,
                               *providers: FeaturesProvider,
                               cluster: Optional[Cluster] = None) -> FeaturesHandler:
    """Handler for features belonging to a single component."""
    return FeaturesHandler(
        target_namespace=target_namespace,
        source=Source(SourceType.COMPONENT, component_name),
        owner=owner,
        providers=list(providers),
        cluster=cluster,
    )


def empty_features_handler() -> FeaturesHandler:
    """No-op handler, safe to apply and delete."""
    return FeaturesHandler(target_namespace='', source=Source(SourceType.UNKNOWN, ''))


class ConditionReporter(Protocol):
    def report_condition(self, err: Optional[BaseException]) -> object:
        ...


class HandlerWithReporter:
    """Runs a handler and reports its outcome through a reporter.

    Both the handler failure and a reporting failure are surfaced.
    """

    def __init__(self, handler: FeaturesHandler, reporter: ConditionReporter):
        self.handler = handler
        self.reporter = reporter

    def apply(self) -> None:
        self._run(self.handler.apply)

    def delete(self) -> None:
        self._run(self.handler.delete)

    def _run(self, operation: Callable[[], None]) -> None:
        errors = ErrorList()
        outcome: Optional[BaseException] = None
        try:
            operation()
        except Exception as e:
            outcome = e
        errors.append(outcome)
        errors.collect(self.reporter.report_condition, outcome)
        errors.raise_if_any()


def _wrap(message: str, cause: BaseException) -> FeatureError:
    err = FeatureError(f"{message}: {cause}")
    err.__cause__ = cause
    return err
