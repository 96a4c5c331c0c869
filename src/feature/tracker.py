"""FeatureTracker management and status reporting.

Every applied feature gets one cluster-scoped FeatureTracker named
<app-namespace>-<feature-name>. The tracker:
- records where the feature came from (spec.origin) and its namespace
- reports pipeline outcome through status conditions and a phase
- owns every resource the feature creates, so deleting it lets the garbage
  collector cascade-delete them
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from cluster import Cluster, is_already_exists, is_conflict, is_not_found
from common import retry_on_conflict
from config import EngineSettings, get_settings
from feature.errors import StageError

logger = logging.getLogger(__name__)

TRACKER_KIND = 'FeatureTracker'


class SourceType(str, Enum):
    COMPONENT = 'Component'
    DSCI = 'DSCI'
    UNKNOWN = 'Unknown'


@dataclass(frozen=True)
class Source:
    """Higher-level entity that caused a feature to exist."""
    type: SourceType
    name: str

    def to_dict(self) -> dict:
        return {'type': self.type.value, 'name': self.name}

    @classmethod
    def from_dict(cls, data: dict) -> 'Source':
        return cls(type=SourceType(data.get('type', SourceType.UNKNOWN.value)), name=data.get('name', ''))


class ConditionReason:
    """Condition reasons, one per pipeline stage."""
    FEATURE_CREATED = 'FeatureCreated'
    PRE_CONDITIONS = 'PreConditions'
    LOAD_TEMPLATE_DATA = 'LoadTemplateData'
    RESOURCE_CREATION = 'ResourceCreation'
    APPLY_MANIFESTS = 'ApplyManifests'
    POST_CONDITIONS = 'PostConditions'
    FAILED_APPLYING = 'FailedApplying'


class ConditionType:
    AVAILABLE = 'Available'
    PROGRESSING = 'Progressing'
    DEGRADED = 'Degraded'


class Phase:
    PROGRESSING = 'Progressing'
    AVAILABLE = 'Available'
    DEGRADED = 'Degraded'


def tracker_name(app_namespace: str, feature_name: str) -> str:
    return f"{app_namespace}-{feature_name}"


def new_tracker(
    name: str,
    source: Source,
    app_namespace: str,
    owner: Optional[dict] = None,
    api_version: Optional[str] = None,
) -> dict:
    """Build a FeatureTracker body (not yet persisted)."""
    metadata: dict = {'name': name}
    if owner:
        metadata['ownerReferences'] = [copy.deepcopy(owner)]
    return {
        'apiVersion': api_version or get_settings().tracker_api_version,
        'kind': TRACKER_KIND,
        'metadata': metadata,
        'spec': {
            'origin': source.to_dict(),
            'appNamespace': app_namespace,
        },
    }


def get_tracker(cluster: Cluster, name: str, api_version: Optional[str] = None) -> Optional[dict]:
    """Fetch a tracker, returning None if it does not exist."""
    try:
        return cluster.get(api_version or get_settings().tracker_api_version, TRACKER_KIND, name)
    except Exception as e:
        if is_not_found(e):
            return None
        raise


def ensure_tracker(
    cluster: Cluster,
    name: str,
    source: Source,
    app_namespace: str,
    owner: Optional[dict] = None,
    api_version: Optional[str] = None,
) -> dict:
    """Get the tracker, creating it on first apply."""
    api_version = api_version or get_settings().tracker_api_version
    if (existing := get_tracker(cluster, name, api_version)) is not None:
        return existing

    body = new_tracker(name, source, app_namespace, owner=owner, api_version=api_version)
    try:
        created = cluster.create(body)
    except Exception as e:
        if not is_already_exists(e):
            raise
        # Lost a creation race; the winner's object is just as good
        return cluster.get(api_version, TRACKER_KIND, name)
    logger.info(f"Created {TRACKER_KIND} {name}")
    return created


def remove_tracker(cluster: Cluster, name: str, api_version: Optional[str] = None) -> None:
    """Delete the tracker; absence is not an error."""
    try:
        cluster.delete(api_version or get_settings().tracker_api_version, TRACKER_KIND, name)
        logger.info(f"Removed {TRACKER_KIND} {name}")
    except Exception as e:
        if not is_not_found(e):
            raise


def _now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def set_condition(conditions: list[dict], type_: str, status: bool, reason: str, message: str) -> None:
    """Set or replace a condition in place.

    lastTransitionTime only moves when the condition's status actually flips.
    """
    status_str = 'True' if status else 'False'
    for condition in conditions:
        if condition.get('type') != type_:
            continue
        if condition.get('status') != status_str:
            condition['lastTransitionTime'] = _now()
        condition.update({'status': status_str, 'reason': reason, 'message': message})
        return
    conditions.append({
        'type': type_,
        'status': status_str,
        'reason': reason,
        'message': message,
        'lastTransitionTime': _now(),
    })


def find_condition(tracker: dict, type_: str) -> Optional[dict]:
    for condition in (tracker.get('status') or {}).get('conditions') or []:
        if condition.get('type') == type_:
            return condition
    return None


def update_with_retry(
    cluster: Cluster,
    tracker: dict,
    mutate: Callable[[dict], None],
    settings: Optional[EngineSettings] = None,
) -> dict:
    """Fetch the latest tracker, apply mutate to it and write the status back.

    Version conflicts re-run the whole cycle, up to settings.status_update_attempts.
    """
    settings = settings or get_settings()
    name = tracker['metadata']['name']
    api_version = tracker['apiVersion']

    def _attempt() -> dict:
        saved = cluster.get(api_version, TRACKER_KIND, name)
        status = saved.get('status') or {}
        status.setdefault('conditions', [])
        saved['status'] = status
        mutate(saved)
        return cluster.update_status(saved)

    return retry_on_conflict(
        _attempt,
        is_conflict,
        attempts=settings.status_update_attempts,
        backoff=settings.status_update_backoff,
    )


class StatusReporter:
    """Reports a feature's pipeline outcome onto its tracker."""

    def __init__(self, cluster: Cluster, tracker: dict, feature_name: str,
                 settings: Optional[EngineSettings] = None):
        self.cluster = cluster
        self.tracker = tracker
        self.feature_name = feature_name
        self.settings = settings

    def report_progressing(self) -> dict:
        def _mutate(saved: dict) -> None:
            conditions = saved['status']['conditions']
            set_condition(conditions, ConditionType.PROGRESSING, True,
                          ConditionReason.FEATURE_CREATED, f"Applying feature [{self.feature_name}]")
            saved['status']['phase'] = Phase.PROGRESSING

        self.tracker = update_with_retry(self.cluster, self.tracker, _mutate, self.settings)
        return self.tracker

    def report_condition(self, err: Optional[BaseException]) -> dict:
        """Map an apply outcome to tracker status.

        None -> Available; StageError -> Degraded with the stage's reason;
        anything else -> Degraded with FailedApplying.
        """
        if err is None:
            def _mutate(saved: dict) -> None:
                conditions = saved['status']['conditions']
                message = f"Applied feature [{self.feature_name}] successfully"
                set_condition(conditions, ConditionType.AVAILABLE, True, ConditionReason.FEATURE_CREATED, message)
                set_condition(conditions, ConditionType.PROGRESSING, False, ConditionReason.FEATURE_CREATED, message)
                set_condition(conditions, ConditionType.DEGRADED, False, ConditionReason.FEATURE_CREATED, message)
                saved['status']['phase'] = Phase.AVAILABLE
        else:
            reason = _reason_of(err)
            message = str(err)

            def _mutate(saved: dict) -> None:
                conditions = saved['status']['conditions']
                set_condition(conditions, ConditionType.DEGRADED, True, reason, message)
                set_condition(conditions, ConditionType.AVAILABLE, False, reason, message)
                set_condition(conditions, ConditionType.PROGRESSING, False, reason, message)
                saved['status']['phase'] = Phase.DEGRADED

        self.tracker = update_with_retry(self.cluster, self.tracker, _mutate, self.settings)
        return self.tracker


def _reason_of(err: BaseException) -> str:
    if isinstance(err, StageError):
        return err.reason
    for inner in getattr(err, 'errors', []) or []:
        if isinstance(inner, StageError):
            return inner.reason
    return ConditionReason.FAILED_APPLYING
