"""
Content Cache
Last rendered bitmap per (instance, device), deduplicated by content hash
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from models import db, RenderedContent, utcnow
from utils.rendering import RenderResult

logger = logging.getLogger(__name__)


class ContentCache:
    """Stores rendered content rows and their bitmaps"""

    def __init__(self, storage, stale_grace_seconds: int = 300):
        self.storage = storage
        self.stale_grace_seconds = stale_grace_seconds

    @staticmethod
    def get(instance_id: int, device_id: Optional[int]) -> Optional[RenderedContent]:
        query = RenderedContent.query.filter_by(plugin_instance_id=instance_id)
        if device_id is None:
            query = query.filter(RenderedContent.device_id.is_(None))
        else:
            query = query.filter_by(device_id=device_id)
        return query.first()

    def get_for_display(self, instance_id: int, device_id: int) -> Optional[RenderedContent]:
        """Device-specific content, else the device-agnostic render"""
        return self.get(instance_id, device_id) or self.get(instance_id, None)

    def is_fresh(self, content: Optional[RenderedContent], refresh_interval: int,
                 now: Optional[datetime] = None) -> bool:
        if content is None:
            return False
        if now is None:
            now = utcnow()
        max_age = timedelta(seconds=refresh_interval + self.stale_grace_seconds)
        return now - content.rendered_at <= max_age

    def put(self, instance_id: int, device_id: Optional[int], result: RenderResult,
            width: int, height: int, bit_depth: int,
            now: Optional[datetime] = None) -> Tuple[RenderedContent, bool]:
        """
        Upsert rendered content for an (instance, device) pair

        An unchanged hash only refreshes timestamps and never writes a file.
        A changed hash writes the new bitmap, keeps the old hash as
        previous_hash and removes the old file once the row is committed.

        Returns:
            (content row, whether the bitmap changed)
        """
        if now is None:
            now = utcnow()

        content = self.get(instance_id, device_id)

        if (content is not None and content.content_hash == result.content_hash
                and self.storage.exists(content.image_path)):
            content.rendered_at = now
            content.last_checked_at = now
            content.render_attempts = 0
            db.session.commit()
            logger.debug(f"Content unchanged for instance {instance_id} device {device_id}")
            return content, False

        handle = self.storage.save(result.bitmap, instance_id, device_id, result.extension)
        old_handle = content.image_path if content is not None else None

        try:
            if content is None:
                content = RenderedContent(plugin_instance_id=instance_id, device_id=device_id)
                db.session.add(content)
            else:
                content.previous_hash = content.content_hash

            content.width = width
            content.height = height
            content.bit_depth = bit_depth
            content.image_path = handle
            content.file_size = result.size
            content.content_hash = result.content_hash
            content.render_attempts = 0
            content.rendered_at = now
            content.last_checked_at = now

            db.session.commit()
        except Exception:
            db.session.rollback()
            self.storage.delete(handle)
            raise

        if old_handle and old_handle != handle:
            self.storage.delete_many([old_handle])

        logger.info(f"Stored new content for instance {instance_id} device {device_id} "
                    f"({result.size} bytes, {result.content_hash[:12]})")
        return content, True

    def record_failure(self, instance_id: int, device_id: Optional[int]) -> None:
        content = self.get(instance_id, device_id)
        if content is None:
            return
        content.render_attempts += 1
        db.session.commit()

    def delete_for_instance(self, instance_id: int) -> List[str]:
        """
        Remove an instance's content rows within the caller's transaction

        Returns:
            Storage handles to delete once the transaction commits
        """
        contents = RenderedContent.query.filter_by(plugin_instance_id=instance_id).all()
        handles = [c.image_path for c in contents]
        for content in contents:
            db.session.delete(content)
        return handles
