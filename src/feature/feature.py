"""Feature runtime unit.

A Feature is a named set of cluster changes with its own lifecycle:

    apply():   enabled? -> tracker -> data -> preconditions -> resources
               -> manifests -> postconditions -> report status
    cleanup(): data -> registered cleanups -> tracker removal

Apply stops at the first failing stage and tags the failure with that
stage's condition reason; the outcome is always written to the tracker.
Cleanup is best-effort: every cleanup runs and failures are aggregated.

Features are built with feature.builder.define(...).create().
"""

import logging
from typing import Callable, Optional

from cluster import Cluster, MetaOption, owned_by, owner_reference, with_annotations
from config import EngineSettings, get_settings
from feature.applier import MANAGED_ANNOTATION, apply_resources
from feature.data import DataBag
from feature.errors import ErrorList, FeatureError, StageError
from feature.manifest import Manifest, render
from feature.tracker import (
    ConditionReason,
    Source,
    SourceType,
    StatusReporter,
    ensure_tracker,
    get_tracker,
    remove_tracker,
    tracker_name,
)

logger = logging.getLogger(__name__)

# Actions signal failure by raising
Action = Callable[['Feature'], None]
EnabledFunc = Callable[['Feature'], bool]


def always_enabled(_feature: 'Feature') -> bool:
    return True


class Feature:
    """A composable unit of cluster configuration.

    Attributes:
        name: Feature name, unique within its target namespace
        target_namespace: Namespace the feature is applied for
        cluster: Cluster client used by every stage
        managed: Mark created resources as reconciled on later applies
        enabled: Predicate deciding whether apply installs or cleans up
        source: What caused this feature to exist
        owner: Owner reference placed on the tracker
        data: Values loaded by data providers for templates and actions
        tracker: Live tracker object once apply has started
    """

    def __init__(
        self,
        name: str,
        target_namespace: str,
        cluster: Cluster,
        managed: bool = False,
        enabled: Optional[EnabledFunc] = None,
        source: Optional[Source] = None,
        owner: Optional[dict] = None,
        manifests: Optional[list[Manifest]] = None,
        data_providers: Optional[list[Action]] = None,
        preconditions: Optional[list[Action]] = None,
        cluster_operations: Optional[list[Action]] = None,
        postconditions: Optional[list[Action]] = None,
        cleanups: Optional[list[Action]] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.name = name
        self.target_namespace = target_namespace
        self.cluster = cluster
        self.managed = managed
        self.enabled: EnabledFunc = enabled or always_enabled
        self.source = source or Source(SourceType.UNKNOWN, name)
        self.owner = owner
        self.settings = settings or get_settings()
        self.data = DataBag()
        self.tracker: Optional[dict] = None

        self._manifests = list(manifests or [])
        self._data_providers = list(data_providers or [])
        self._preconditions = list(preconditions or [])
        self._cluster_operations = list(cluster_operations or [])
        self._postconditions = list(postconditions or [])
        self._cleanups = list(cleanups or [])

    def __repr__(self) -> str:
        return f"Feature({self.name}, namespace={self.target_namespace})"

    @property
    def tracker_name(self) -> str:
        return tracker_name(self.target_namespace, self.name)

    @property
    def manifests(self) -> list[Manifest]:
        return list(self._manifests)

    def apply(self) -> None:
        """Apply the feature, or clean it up if it has been disabled.

        Exceptions from the enabled predicate propagate untouched, before
        any cluster write.

        Raises:
            MultiError: Holding the stage failure and/or status report failure
        """
        if not self.enabled(self):
            if get_tracker(self.cluster, self.tracker_name, self.settings.tracker_api_version) is None:
                logger.info(f"[{self.name}] Feature disabled, nothing to clean up")
                return
            logger.info(f"[{self.name}] Feature disabled, cleaning up previously applied resources")
            self.cleanup()
            return

        logger.info(f"[{self.name}] Applying feature in namespace {self.target_namespace}")
        self.tracker = ensure_tracker(
            self.cluster,
            self.tracker_name,
            self.source,
            self.target_namespace,
            owner=self.owner,
            api_version=self.settings.tracker_api_version,
        )

        reporter = StatusReporter(self.cluster, self.tracker, self.name, self.settings)
        self.tracker = reporter.report_progressing()

        errors = ErrorList()
        apply_err: Optional[StageError] = None
        try:
            self._run_pipeline()
        except StageError as e:
            logger.error(f"[{self.name}] Apply failed at {e.reason}: {e.cause}")
            apply_err = e
        errors.append(apply_err)

        try:
            self.tracker = reporter.report_condition(apply_err)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to report status: {e}")
            errors.append(e)

        errors.raise_if_any()
        logger.info(f"[{self.name}] Feature applied")

    def cleanup(self) -> None:
        """Run cleanup actions, then remove the tracker.

        Data providers run first because cleanups often need the same
        context apply had; if any of them fails nothing else runs.

        Raises:
            MultiError: Every failure collected along the way
        """
        logger.info(f"[{self.name}] Cleaning up feature")
        errors = ErrorList()
        for provider in self._data_providers:
            errors.collect(provider, self)
        errors.raise_if_any()

        for action in [*self._cleanups, _remove_own_tracker]:
            errors.collect(action, self)
        errors.raise_if_any()

    def as_owner_reference(self) -> dict:
        """Owner reference to this feature's tracker.

        Raises:
            FeatureError: If the tracker has not been created yet
        """
        if self.tracker is None:
            raise FeatureError(f"feature {self.name} has no tracker; apply it first")
        return owner_reference(self.tracker)

    def default_meta_options(self) -> list[MetaOption]:
        options = [owned_by(self.as_owner_reference())]
        if self.managed:
            options.append(with_annotations(**{MANAGED_ANNOTATION: 'true'}))
        return options

    def _run_pipeline(self) -> None:
        self._run_all(ConditionReason.LOAD_TEMPLATE_DATA, self._data_providers)
        self._run_all(ConditionReason.PRE_CONDITIONS, self._preconditions)

        for operation in self._cluster_operations:
            try:
                operation(self)
            except Exception as e:
                raise StageError(ConditionReason.RESOURCE_CREATION, e) from e

        meta_options = self.default_meta_options()
        data = self.data.as_dict()
        for manifest in self._manifests:
            try:
                resources = render(manifest, data, self.settings)
                apply_resources(self.cluster, resources, meta_options, patch=manifest.patch)
            except Exception as e:
                raise StageError(ConditionReason.APPLY_MANIFESTS, e) from e

        self._run_all(ConditionReason.POST_CONDITIONS, self._postconditions)

    def _run_all(self, reason: str, actions: list[Action]) -> None:
        """Run every action of a stage; fail the stage with everything collected."""
        errors = ErrorList()
        for action in actions:
            errors.collect(action, self)
        if (err := errors.error()) is not None:
            raise StageError(reason, err) from err


def _remove_own_tracker(f: Feature) -> None:
    remove_tracker(f.cluster, f.tracker_name, f.settings.tracker_api_version)
    f.tracker = None
