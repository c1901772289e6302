"""
Plugin Service
Definition and instance lifecycle, including cascading deletes
"""
import logging
from typing import Any, Dict, List, Optional

from models import (
    db, DataStrategy, LifecycleState, PluginDefinition, PluginInstance, REFRESH_RATES
)
from utils.errors import ConfigurationError, ConsistencyError, InstanceNotFoundError
from utils.playlist_service import PlaylistService
from utils.plugin_settings import decode_instance_settings, decode_polling_config

logger = logging.getLogger(__name__)


class PluginService:
    """Creates, reconfigures and removes plugins and their derived state"""

    def __init__(self, render_queue, content_cache, settings_store):
        self.render_queue = render_queue
        self.content_cache = content_cache
        self.settings_store = settings_store

    # ========================================================================
    # DEFINITIONS
    # ========================================================================

    def create_definition(self, identifier: str, name: str, markup: str = '',
                          data_strategy: DataStrategy = DataStrategy.WEBHOOK,
                          polling_config: Optional[Dict[str, Any]] = None,
                          sample_data: Optional[Dict[str, Any]] = None,
                          plugin_type: str = 'private', owner_id: Optional[int] = None,
                          description: Optional[str] = None) -> PluginDefinition:
        definition = PluginDefinition(
            identifier=identifier,
            name=name,
            markup=markup,
            data_strategy=data_strategy,
            polling_config=polling_config,
            sample_data=sample_data,
            plugin_type=plugin_type,
            owner_id=owner_id,
            description=description
        )

        if data_strategy == DataStrategy.POLLING:
            decode_polling_config(definition)

        db.session.add(definition)
        db.session.commit()

        logger.info(f"Created plugin definition {identifier}")
        return definition

    def bump_definition_schema(self, definition_id: int) -> int:
        """
        Record a breaking settings change on a definition

        Instances configured against an older schema are flagged
        needs_config_update and their queued renders cancelled.

        Returns:
            Number of instances flagged
        """
        definition = db.session.get(PluginDefinition, definition_id)
        if definition is None:
            raise ConsistencyError(f"plugin definition {definition_id} not found")

        definition.schema_version += 1
        outdated = definition.instances.filter(
            PluginInstance.last_schema_version < definition.schema_version
        ).all()

        for instance in outdated:
            instance.needs_config_update = True
            self.render_queue.cancel_jobs_for_instance(instance.id, 'requires reconfiguration', commit=False)

        db.session.commit()

        logger.info(f"Definition {definition.identifier} now at schema v{definition.schema_version}, "
                    f"{len(outdated)} instances need reconfiguration")
        return len(outdated)

    def set_definition_state(self, definition_id: int, state: LifecycleState) -> PluginDefinition:
        definition = db.session.get(PluginDefinition, definition_id)
        if definition is None:
            raise ConsistencyError(f"plugin definition {definition_id} not found")

        definition.state = state
        if state != LifecycleState.ACTIVE:
            for instance in definition.instances:
                self.render_queue.cancel_jobs_for_instance(instance.id, 'definition deactivated', commit=False)

        db.session.commit()
        return definition

    def delete_definition(self, definition_id: int) -> int:
        """
        Delete a definition and everything derived from its instances

        Returns:
            Number of instances removed
        """
        definition = db.session.get(PluginDefinition, definition_id)
        if definition is None:
            raise ConsistencyError(f"plugin definition {definition_id} not found")

        handles = []
        try:
            definition.state = LifecycleState.PURGE_SCHEDULED
            instances = definition.instances.all()
            for instance in instances:
                handles.extend(self._purge_instance(instance))

            db.session.delete(definition)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        self.content_cache.storage.delete_many(handles)
        logger.info(f"Deleted plugin definition {definition_id} with {len(instances)} instances")
        return len(instances)

    # ========================================================================
    # INSTANCES
    # ========================================================================

    def create_instance(self, definition_id: int, owner_id: int, name: str,
                        settings: Optional[Dict[str, Any]] = None,
                        refresh_interval: Optional[int] = None) -> PluginInstance:
        definition = db.session.get(PluginDefinition, definition_id)
        if definition is None or not definition.is_active:
            raise ConsistencyError(f"plugin definition {definition_id} not available")

        typed = decode_instance_settings(definition, settings)
        interval = refresh_interval or self.settings_store.get_int('default_refresh_interval')
        self.validate_refresh_interval(interval)

        instance = PluginInstance(
            definition_id=definition.id,
            owner_id=owner_id,
            name=name,
            settings=typed.model_dump(),
            refresh_interval=interval,
            last_schema_version=definition.schema_version
        )
        db.session.add(instance)
        db.session.commit()

        logger.info(f"Created plugin instance {instance.id} ({name}) of {definition.identifier}")
        return instance

    @staticmethod
    def validate_refresh_interval(interval: int) -> None:
        if interval not in REFRESH_RATES:
            raise ConfigurationError(f"refresh interval must be one of {', '.join(map(str, REFRESH_RATES))}")

    def get_instance(self, instance_id: int) -> PluginInstance:
        instance = db.session.get(PluginInstance, instance_id)
        if instance is None or instance.state == LifecycleState.PURGE_SCHEDULED:
            raise InstanceNotFoundError(instance_id)
        return instance

    def update_refresh_interval(self, instance_id: int, interval: int) -> PluginInstance:
        """Change the interval and restart the refresh chain on it"""
        self.validate_refresh_interval(interval)
        instance = self.get_instance(instance_id)

        instance.refresh_interval = interval
        db.session.commit()

        self.render_queue.cancel_routine_jobs(instance_id)
        if instance.is_schedulable:
            self.render_queue.enqueue(instance_id)
        return instance

    def reconfigure_instance(self, instance_id: int, settings: Dict[str, Any]) -> PluginInstance:
        """Apply new settings against the current schema and render right away"""
        instance = self.get_instance(instance_id)
        typed = decode_instance_settings(instance.definition, settings)

        instance.settings = typed.model_dump()
        instance.last_schema_version = instance.definition.schema_version
        instance.needs_config_update = False
        db.session.commit()

        if instance.is_schedulable:
            self.render_queue.schedule_immediate_render(instance_id)
            if not self.render_queue.has_pending_routine_job(instance_id):
                self.render_queue.enqueue(instance_id)

        logger.info(f"Reconfigured plugin instance {instance_id}")
        return instance

    def deactivate_instance(self, instance_id: int) -> PluginInstance:
        instance = self.get_instance(instance_id)
        instance.state = LifecycleState.DEACTIVATED
        self.render_queue.cancel_jobs_for_instance(instance_id, 'instance deactivated', commit=False)
        db.session.commit()

        logger.info(f"Deactivated plugin instance {instance_id}")
        return instance

    def activate_instance(self, instance_id: int) -> PluginInstance:
        instance = self.get_instance(instance_id)
        instance.state = LifecycleState.ACTIVE
        db.session.commit()

        if instance.is_schedulable:
            self.render_queue.schedule_immediate_render(instance_id)
            if not self.render_queue.has_pending_routine_job(instance_id):
                self.render_queue.enqueue(instance_id)
        return instance

    def delete_instance(self, instance_id: int) -> None:
        """
        Delete an instance in one transaction

        Order: cancel queued work, then remove playlist items (compacting
        their playlists), render jobs, rendered content, the merge record
        and the instance. Bitmaps are removed once the transaction commits.
        """
        instance = self.get_instance(instance_id)

        try:
            handles = self._purge_instance(instance)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        self.content_cache.storage.delete_many(handles)
        logger.info(f"Deleted plugin instance {instance_id}")

    def _purge_instance(self, instance: PluginInstance) -> List[str]:
        instance.state = LifecycleState.PURGE_SCHEDULED
        db.session.flush()

        self.render_queue.cancel_jobs_for_instance(instance.id, 'instance deleted', commit=False)
        removed_items = PlaylistService.delete_items_for_instance(instance.id)
        removed_jobs = self.render_queue.delete_jobs_for_instance(instance.id)
        handles = self.content_cache.delete_for_instance(instance.id)

        db.session.delete(instance)
        db.session.flush()

        logger.debug(f"Purged instance {instance.id}: {removed_items} playlist items, "
                     f"{removed_jobs} jobs, {len(handles)} rendered bitmaps")
        return handles
