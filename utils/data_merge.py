"""
Data Merge Engine
Folds inbound payloads into a plugin instance's canonical data snapshot
"""
import copy
import logging
from typing import Any, Dict, Optional, Tuple

from models import db, DataStrategy, PluginData, PluginInstance, utcnow
from utils.errors import (
    DataFormatError, InstanceInactiveError, InstanceNeedsReconfigurationError,
    InstanceNotFoundError, UnknownMergeStrategyError
)
from utils.plugin_settings import MERGE_STRATEGIES, decode_instance_settings

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = 'default'


# ============================================================================
# STRATEGIES
# ============================================================================

def deep_merge(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge incoming into a copy of existing

    Objects on both sides are merged key by key; any other value
    (arrays included) replaces what was there.
    """
    result = copy.deepcopy(existing)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def stream_merge(existing: Dict[str, Any], incoming: Dict[str, Any], limit: int) -> Dict[str, Any]:
    """
    Append incoming values to per-key arrays, keeping the newest `limit`

    An existing non-array value becomes the first element of its array.
    Array inputs are appended element-wise.
    """
    result = copy.deepcopy(existing)
    for key, value in incoming.items():
        current = result.get(key)
        if current is None:
            current = []
        elif not isinstance(current, list):
            current = [current]

        if isinstance(value, list):
            current = current + copy.deepcopy(value)
        else:
            current = current + [copy.deepcopy(value)]

        result[key] = current[-limit:]
    return result


def resolve_stream_limit(payload: Dict[str, Any], default_limit: int) -> int:
    if 'stream_limit' not in payload or payload['stream_limit'] is None:
        return default_limit

    limit = payload['stream_limit']
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise DataFormatError(f"stream_limit must be a positive integer, got {limit!r}")
    return limit


def extract_merge_variables(payload) -> Dict[str, Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get('merge_variables'), dict):
        raise DataFormatError("webhook payload missing merge_variables object")
    return payload['merge_variables']


def merge_payload(existing: Optional[Dict[str, Any]], payload: Dict[str, Any], strategy: str,
                  default_stream_limit: int = 10) -> Dict[str, Any]:
    """
    Compute the new snapshot for a payload without touching storage

    Args:
        existing: Current merged data (None when nothing was merged yet)
        payload: Envelope holding merge_variables and optionally stream_limit
        strategy: default, deep_merge or stream
        default_stream_limit: Stream bound when the payload names none

    Returns:
        New merged data; existing is never mutated

    Raises:
        UnknownMergeStrategyError: strategy is not supported
        DataFormatError: payload lacks a merge_variables object
    """
    if strategy not in MERGE_STRATEGIES:
        raise UnknownMergeStrategyError(strategy)

    variables = extract_merge_variables(payload)
    existing = existing or {}

    if strategy == 'deep_merge':
        return deep_merge(existing, variables)

    if strategy == 'stream':
        limit = resolve_stream_limit(payload, default_stream_limit)
        return stream_merge(existing, variables, limit)

    return copy.deepcopy(variables)


# ============================================================================
# PERSISTED MERGE
# ============================================================================

class DataMergeService:
    """Applies merges to merge records, one instance at a time"""

    def __init__(self, settings_store):
        self.settings_store = settings_store

    def resolve_strategy(self, instance: PluginInstance, payload: Dict[str, Any],
                         strategy: Optional[str] = None) -> str:
        """Explicit argument, then the payload, then the instance's webhook settings"""
        if strategy:
            return strategy
        if isinstance(payload, dict) and payload.get('merge_strategy'):
            return payload['merge_strategy']
        if instance.definition.data_strategy == DataStrategy.WEBHOOK:
            return decode_instance_settings(instance.definition, instance.settings).merge_strategy
        return DEFAULT_STRATEGY

    def merge(self, instance_id: int, payload: Dict[str, Any], strategy: Optional[str] = None,
              **metadata) -> Dict[str, Any]:
        """Merge a payload and return the new merged data"""
        merged, _ = self.apply_merge(instance_id, payload, strategy, **metadata)
        return merged

    def apply_merge(self, instance_id: int, payload: Dict[str, Any], strategy: Optional[str] = None,
                    content_type: Optional[str] = None, content_size: Optional[int] = None,
                    source_ip: Optional[str] = None) -> Tuple[Dict[str, Any], str]:
        """
        Merge a payload into an instance's snapshot in one transaction

        The instance row is locked for the duration so concurrent merges
        for the same instance apply one after the other.

        Returns:
            (merged data, strategy applied)
        """
        try:
            instance = PluginInstance.query.filter_by(id=instance_id).with_for_update().first()
            if instance is None:
                raise InstanceNotFoundError(instance_id)
            if not instance.is_active or not instance.definition.is_active:
                raise InstanceInactiveError(instance_id)
            if instance.needs_config_update:
                raise InstanceNeedsReconfigurationError(instance_id)

            strategy = self.resolve_strategy(instance, payload, strategy)
            record = PluginData.query.filter_by(plugin_instance_id=instance_id).first()
            existing = record.merged_data if record is not None else None

            merged = merge_payload(
                existing, payload, strategy,
                default_stream_limit=self.settings_store.get_int('merge_stream_limit')
            )

            if record is None:
                record = PluginData(plugin_instance_id=instance_id)
                db.session.add(record)

            record.merged_data = merged
            record.raw_data = copy.deepcopy(payload)
            record.merge_strategy = strategy
            record.received_at = utcnow()
            record.content_type = content_type
            record.content_size = content_size
            record.source_ip = source_ip

            db.session.commit()

        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Merged data for instance {instance_id} using {strategy} ({len(merged)} keys)")
        return merged, strategy

    @staticmethod
    def get_instance_data(instance: PluginInstance) -> Dict[str, Any]:
        """
        Data handed to the renderer for an instance

        Static instances render their configured data; others render the
        merge record, falling back to the definition's sample data.
        """
        definition = instance.definition
        if definition.data_strategy == DataStrategy.STATIC:
            return decode_instance_settings(definition, instance.settings).data

        record = PluginData.query.filter_by(plugin_instance_id=instance.id).first()
        if record is not None:
            return record.merged_data or {}

        return definition.sample_data or {}
