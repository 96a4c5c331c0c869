"""Declarative feature engine for cluster configuration.

A feature is a named unit of cluster changes (data loading, precondition
checks, programmatic resources, manifests, postconditions, cleanup) tracked
by a cluster-scoped FeatureTracker that anchors status and ownership.
"""

from feature.builder import FeatureBuilder, create_feature, define
from feature.data import DataBag, entry, value
from feature.errors import ErrorList, FeatureError, ManifestError, MultiError, StageError
from feature.feature import Action, EnabledFunc, Feature
from feature.handler import (
    FeaturesHandler,
    HandlerWithReporter,
    cluster_features_handler,
    component_features_handler,
    empty_features_handler,
)
from feature.tracker import ConditionReason, Phase, Source, SourceType

__all__ = [
    'Action',
    'ConditionReason',
    'DataBag',
    'EnabledFunc',
    'ErrorList',
    'Feature',
    'FeatureBuilder',
    'FeatureError',
    'FeaturesHandler',
    'HandlerWithReporter',
    'ManifestError',
    'MultiError',
    'Phase',
    'Source',
    'SourceType',
    'StageError',
    'cluster_features_handler',
    'component_features_handler',
    'create_feature',
    'define',
    'empty_features_handler',
    'entry',
    'value',
]
