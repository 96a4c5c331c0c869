"""Feature definition and construction.

A FeatureBuilder is a plain configuration record. Its chainable setters
only assign fields; nothing touches the cluster or the filesystem until
create(), which validates the record, resolves a cluster client, loads
every manifest and returns a Feature.

    feature = (define('create-secret')
               .target_namespace('opendatahub')
               .pre_conditions(create_namespace_if_not_exists('opendatahub'))
               .with_resources(create_secret)
               .create())
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from kubernetes import client as k8s_client

from cluster import Cluster, new_cluster, owner_reference
from config import ConfigError, EngineSettings, get_settings
from feature.feature import Action, EnabledFunc, Feature
from feature.manifest import Manifest, Plugin, load_manifests
from feature.tracker import Source, SourceType

logger = logging.getLogger(__name__)


@dataclass
class FeatureBuilder:
    """Configuration of a feature prior to creation.

    Attributes:
        name: Feature name
        namespace: Target namespace (required)
        origin: Source descriptor (defaults to Unknown/<name>)
        owner: Owner reference for the tracker
        is_managed: Mark resources for reconciliation on later applies
        location: Manifest root (pathlib.Path or importlib.resources Traversable)
        manifest_paths: Paths relative to location, loaded at create()
        plugins: Transformers attached to overlay manifests
        data_providers: Actions loading data before any other stage
        resources: Programmatic cluster operations
        preconditions: Checks run before resources are created
        postconditions: Checks run after manifests are applied
        cleanups: Extra actions run on cleanup (before tracker removal)
        enabled: Predicate deciding install vs cleanup
        configuration: Client configuration (default credentials when None)
        cluster: Ready cluster client; takes precedence over configuration
        settings: Engine settings (process-wide settings when None)
    """
    name: str
    namespace: str = ''
    origin: Optional[Source] = None
    owner: Optional[dict] = None
    is_managed: bool = False
    location: Any = None
    manifest_paths: list[str] = field(default_factory=list)
    plugins: list[Plugin] = field(default_factory=list)
    data_providers: list[Action] = field(default_factory=list)
    resources: list[Action] = field(default_factory=list)
    preconditions: list[Action] = field(default_factory=list)
    postconditions: list[Action] = field(default_factory=list)
    cleanups: list[Action] = field(default_factory=list)
    enabled: Optional[EnabledFunc] = None
    configuration: Optional[k8s_client.Configuration] = None
    cluster: Optional[Cluster] = None
    settings: Optional[EngineSettings] = None

    def target_namespace(self, namespace: str) -> 'FeatureBuilder':
        self.namespace = namespace
        return self

    def source(self, source: Source) -> 'FeatureBuilder':
        self.origin = source
        return self

    def owned_by(self, owner: dict) -> 'FeatureBuilder':
        """Set the tracker's owner.

        Accepts either an owner reference or the owning object itself.
        """
        if 'metadata' in owner:
            owner = owner_reference(owner)
        self.owner = owner
        return self

    def managed(self) -> 'FeatureBuilder':
        self.is_managed = True
        return self

    def manifests_location(self, location) -> 'FeatureBuilder':
        self.location = location
        return self

    def manifests(self, *paths: str) -> 'FeatureBuilder':
        """Add manifest paths, relative to the manifests location.

        Raises:
            ConfigError: If no location has been set yet
        """
        if self.location is None:
            raise ConfigError(f"feature '{self.name}': manifests_location() must be set before manifests()")
        self.manifest_paths.extend(paths)
        return self

    def enrich_manifests(self, *plugins: Plugin) -> 'FeatureBuilder':
        self.plugins.extend(plugins)
        return self

    def with_data(self, *providers: Action) -> 'FeatureBuilder':
        self.data_providers.extend(providers)
        return self

    def with_resources(self, *actions: Action) -> 'FeatureBuilder':
        self.resources.extend(actions)
        return self

    def pre_conditions(self, *actions: Action) -> 'FeatureBuilder':
        self.preconditions.extend(actions)
        return self

    def post_conditions(self, *actions: Action) -> 'FeatureBuilder':
        self.postconditions.extend(actions)
        return self

    def on_delete(self, *actions: Action) -> 'FeatureBuilder':
        self.cleanups.extend(actions)
        return self

    def enabled_when(self, predicate: EnabledFunc) -> 'FeatureBuilder':
        self.enabled = predicate
        return self

    def using_config(self, configuration: k8s_client.Configuration) -> 'FeatureBuilder':
        self.configuration = configuration
        return self

    def using_cluster(self, cluster: Cluster) -> 'FeatureBuilder':
        self.cluster = cluster
        return self

    def create(self) -> Feature:
        return create_feature(self)


def define(name: str) -> FeatureBuilder:
    """Start defining a feature with the given name."""
    return FeatureBuilder(name=name)


def create_feature(builder: FeatureBuilder) -> Feature:
    """Validate a builder and construct its Feature.

    Raises:
        ConfigError: If required configuration is missing or credentials
            cannot be resolved
        ManifestError: If any referenced manifest fails to load
    """
    if not builder.name:
        raise ConfigError("feature name is not defined")
    if not builder.namespace:
        raise ConfigError(f"target namespace for '{builder.name}' feature is not defined")
    if builder.manifest_paths and builder.location is None:
        raise ConfigError(f"feature '{builder.name}' lists manifests without a manifests location")

    settings = builder.settings or get_settings()
    cluster = builder.cluster or new_cluster(builder.configuration)

    manifests: list[Manifest] = []
    for path in builder.manifest_paths:
        manifests.extend(load_manifests(builder.location, path, plugins=builder.plugins))

    logger.debug(f"[{builder.name}] Created feature with {len(manifests)} manifest(s)")
    return Feature(
        name=builder.name,
        target_namespace=builder.namespace,
        cluster=cluster,
        managed=builder.is_managed,
        enabled=builder.enabled,
        source=builder.origin or Source(SourceType.UNKNOWN, builder.name),
        owner=builder.owner,
        manifests=manifests,
        data_providers=builder.data_providers,
        preconditions=builder.preconditions,
        cluster_operations=builder.resources,
        postconditions=builder.postconditions,
        cleanups=builder.cleanups,
        settings=settings,
    )
