"""
Polling Ingestion
Fetches remote data for polling plugins and merges it into their snapshot
"""
import json
import time
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from models import db, DataStrategy, LifecycleState, PluginData, PluginDefinition, PluginInstance, PlaylistItem, utcnow
from utils.errors import ContentPipelineError
from utils.plugin_settings import PollingConfig, PollingURL, decode_instance_settings, decode_polling_config

logger = logging.getLogger(__name__)


class PollingError(Exception):
    """Custom exception for remote data fetches"""
    pass


def parse_body(content: bytes) -> Any:
    """JSON when the body parses as JSON, otherwise the decoded text"""
    text = content.decode('utf-8', errors='replace')
    try:
        return json.loads(text)
    except ValueError:
        return text


class DataPoller:
    """Polls remote URLs on behalf of polling plugin instances"""

    def __init__(self, merge_service, render_queue=None, sleep=time.sleep):
        self.merge_service = merge_service
        self.render_queue = render_queue
        self.sleep = sleep

    def fetch_url(self, source: PollingURL, config: PollingConfig) -> Any:
        """
        Fetch one source, retrying connection errors and 5xx answers

        Raises:
            PollingError: source failed on every attempt, answered 4xx or
                exceeded the size limit
        """
        headers = {'User-Agent': config.user_agent}
        headers.update(source.headers)
        last_error = None

        for attempt in range(config.retry_count + 1):
            if attempt:
                self.sleep(attempt * attempt)

            try:
                response = requests.request(
                    source.method,
                    source.url,
                    headers=headers,
                    data=source.body,
                    timeout=config.timeout,
                    stream=True
                )
            except requests.exceptions.RequestException as e:
                last_error = str(e)
                logger.debug(f"Poll of {source.url} failed (attempt {attempt + 1}): {e}")
                continue

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                response.close()
                continue

            if response.status_code >= 400:
                response.close()
                raise PollingError(f"{source.url} returned HTTP {response.status_code}")

            content = self._read_limited(response, config.max_size, source.url)
            return parse_body(content)

        raise PollingError(f"{source.url} failed after {config.retry_count + 1} attempts: {last_error}")

    @staticmethod
    def _read_limited(response, max_size: int, url: str) -> bytes:
        chunks = []
        size = 0
        try:
            for chunk in response.iter_content(chunk_size=8192):
                size += len(chunk)
                if size > max_size:
                    raise PollingError(f"{url} response exceeds {max_size} bytes")
                chunks.append(chunk)
        finally:
            response.close()
        return b''.join(chunks)

    def fetch_instance_data(self, instance: PluginInstance) -> Dict[str, Any]:
        """
        Fetch every source of an instance into merge variables

        Results are keyed by each source's key, or its URL. A single
        unkeyed source returning an object becomes the variables itself.
        """
        definition = instance.definition
        settings = decode_instance_settings(definition, instance.settings)
        config = decode_polling_config(definition, settings)

        results = {}
        for source in config.urls:
            results[source.key or source.url] = self.fetch_url(source, config)

        if len(config.urls) == 1 and not config.urls[0].key:
            value = results[config.urls[0].url]
            return value if isinstance(value, dict) else {'data': value}

        return results

    def poll_instance(self, instance: PluginInstance) -> Dict[str, Any]:
        """Fetch and merge (default strategy); queue a render when data changed"""
        previous = PluginData.query.filter_by(plugin_instance_id=instance.id).first()
        previous_data = previous.merged_data if previous is not None else None

        variables = self.fetch_instance_data(instance)
        merged = self.merge_service.merge(
            instance.id,
            {'merge_variables': variables},
            strategy='default',
            content_type='application/json',
            content_size=len(json.dumps(variables))
        )

        if merged != previous_data and self.render_queue is not None:
            self.render_queue.schedule_immediate_render(instance.id)

        return merged

    @staticmethod
    def get_due_instances(now: Optional[datetime] = None) -> List[PluginInstance]:
        """Polling instances in some playlist whose data is older than their refresh interval"""
        now = now or utcnow()

        instances = PluginInstance.query.join(PluginDefinition).filter(
            PluginDefinition.data_strategy == DataStrategy.POLLING,
            PluginDefinition.state == LifecycleState.ACTIVE,
            PluginInstance.state == LifecycleState.ACTIVE,
            PluginInstance.needs_config_update == False,  # noqa: E712
            PluginInstance.id.in_(db.session.query(PlaylistItem.plugin_instance_id))
        ).all()

        due = []
        for instance in instances:
            record = instance.data
            if record is None or now - record.received_at >= timedelta(seconds=instance.refresh_interval):
                due.append(instance)
        return due

    def poll_due_instances(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Poll every due instance; one failing source does not stop the rest

        Returns:
            dict: polled and failed counts
        """
        polled = 0
        failed = 0

        for instance in self.get_due_instances(now):
            try:
                self.poll_instance(instance)
                polled += 1
            except (PollingError, ContentPipelineError) as e:
                failed += 1
                logger.error(f"Polling instance {instance.id} failed: {e}")

        if polled or failed:
            logger.info(f"Polling pass: {polled} instances updated, {failed} failed")
        return {'polled': polled, 'failed': failed}
