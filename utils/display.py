"""
Display Service
Answers device polls: rotation, cached content, on-demand render, fallback
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from models import db, Device, utcnow
from utils.schedule_resolver import get_active_playlist_items

logger = logging.getLogger(__name__)

DEFAULT_SCREEN = 'default.png'


class DisplayService:
    """Chooses what a device shows next; never fails the poll"""

    def __init__(self, content_cache, render_worker, render_queue, on_demand_timeout: float = 2):
        self.content_cache = content_cache
        self.render_worker = render_worker
        self.render_queue = render_queue
        self.on_demand_timeout = on_demand_timeout

    @staticmethod
    def next_index(last_index: int, count: int) -> int:
        return (last_index + 1) % count

    def default_screen(self, device: Device) -> Dict[str, Any]:
        return {
            'status': 0,
            'filename': 'default',
            'image': DEFAULT_SCREEN,
            'refresh_rate': device.refresh_rate,
            'plugin_instance_id': None
        }

    def get_display(self, device: Device, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Pick the next item for a device and the bitmap to show for it

        Returns:
            dict with status, image (storage handle), filename,
            refresh_rate and plugin_instance_id
        """
        now = now or utcnow()
        device.last_seen = now

        items = get_active_playlist_items(device.id, now)
        if not items:
            db.session.commit()
            return self.default_screen(device)

        index = self.next_index(device.last_playlist_index, len(items))
        item = items[index]
        instance = item.plugin_instance

        content = self.content_cache.get_for_display(instance.id, device.id)

        if not self.content_cache.is_fresh(content, instance.refresh_interval, now):
            try:
                content = self.render_worker.render_on_demand(instance, device, timeout=self.on_demand_timeout)
            except Exception as e:
                logger.warning(f"On-demand render of instance {instance.id} for device {device.id} failed: {e}")
                db.session.rollback()
                self.render_queue.schedule_immediate_render(instance.id)

        device.last_playlist_index = index
        device.last_seen = now
        db.session.commit()

        refresh_rate = item.duration_override or device.refresh_rate

        if content is None:
            response = self.default_screen(device)
            response['refresh_rate'] = refresh_rate
            return response

        return {
            'status': 0,
            'filename': f"{instance.id}_{content.content_hash[:12]}",
            'image': content.image_path,
            'refresh_rate': refresh_rate,
            'plugin_instance_id': instance.id
        }
