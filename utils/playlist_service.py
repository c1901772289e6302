"""
Playlist Service
Default playlists, item ordering and schedule windows
"""
import re
import logging
from typing import List, Optional

from sqlalchemy import func
from models import db, Device, Playlist, PlaylistItem, PluginInstance, Schedule
from utils.errors import ConfigurationError, ConsistencyError, InstanceNotFoundError
from utils.timezone import normalize_timezone

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$')
ALL_DAYS = 0b1111111


def normalize_time(value) -> str:
    """Validate "HH:MM" or "HH:MM:SS" and return "HH:MM:SS" """
    match = TIME_PATTERN.match(str(value or '').strip())
    if not match:
        raise ConfigurationError(f"invalid time '{value}', expected HH:MM or HH:MM:SS")
    hours, minutes, seconds = match.groups()
    return f"{hours}:{minutes}:{seconds or '00'}"


class PlaylistService:
    """Playlist operations; every write keeps order_index dense from 1"""

    @staticmethod
    def get_default_playlist(device_id: int, create: bool = True) -> Optional[Playlist]:
        playlist = Playlist.query.filter_by(device_id=device_id, is_default=True).first()
        if playlist is not None or not create:
            return playlist

        device = db.session.get(Device, device_id)
        if device is None:
            raise ConsistencyError(f"device {device_id} not found")

        playlist = Playlist(device_id=device_id, name=f"{device.name} Playlist", is_default=True)
        db.session.add(playlist)
        db.session.commit()

        logger.info(f"Created default playlist for device {device_id}")
        return playlist

    @staticmethod
    def add_item(device_id: int, instance_id: int, importance: bool = False, is_visible: bool = True,
                 duration_override: Optional[int] = None, render_queue=None) -> PlaylistItem:
        """
        Append an instance to a device's default playlist

        When a render queue is given and the instance has no refresh chain
        yet, a routine render is queued so content exists before first poll.
        """
        instance = db.session.get(PluginInstance, instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        if duration_override is not None and duration_override <= 0:
            raise ConfigurationError("duration_override must be a positive number of seconds")

        playlist = PlaylistService.get_default_playlist(device_id)

        # Get next position - always append to end
        max_index = db.session.query(func.max(PlaylistItem.order_index)).filter_by(
            playlist_id=playlist.id
        ).scalar()

        item = PlaylistItem(
            playlist_id=playlist.id,
            plugin_instance_id=instance_id,
            order_index=(max_index or 0) + 1,
            importance=importance,
            is_visible=is_visible,
            duration_override=duration_override
        )
        db.session.add(item)
        db.session.commit()

        if render_queue is not None and instance.is_schedulable \
                and not render_queue.has_pending_routine_job(instance_id):
            render_queue.enqueue(instance_id)

        return item

    @staticmethod
    def update_item(item_id: int, **changes) -> PlaylistItem:
        item = db.session.get(PlaylistItem, item_id)
        if item is None:
            raise ConsistencyError(f"playlist item {item_id} not found")

        for field in ('is_visible', 'importance', 'duration_override'):
            if field in changes:
                setattr(item, field, changes[field])

        db.session.commit()
        return item

    @staticmethod
    def compact_order(playlist_id: int) -> None:
        """
        Renumber a playlist's items 1..N in current order

        Runs in the caller's transaction; positions are first moved to
        negative values so the unique constraint never sees a collision.
        """
        items = PlaylistItem.query.filter_by(playlist_id=playlist_id).order_by(
            PlaylistItem.order_index
        ).all()

        for item in items:
            item.order_index = -item.id
        db.session.flush()

        for idx, item in enumerate(items, start=1):
            item.order_index = idx
        db.session.flush()

    @staticmethod
    def delete_item(item_id: int) -> None:
        item = db.session.get(PlaylistItem, item_id)
        if item is None:
            raise ConsistencyError(f"playlist item {item_id} not found")

        playlist_id = item.playlist_id
        try:
            db.session.delete(item)
            db.session.flush()
            PlaylistService.compact_order(playlist_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def delete_items_for_instance(instance_id: int) -> int:
        """
        Remove an instance from every playlist within the caller's transaction

        Returns:
            Number of items removed
        """
        items = PlaylistItem.query.filter_by(plugin_instance_id=instance_id).all()
        playlist_ids = {item.playlist_id for item in items}

        for item in items:
            db.session.delete(item)
        db.session.flush()

        for playlist_id in playlist_ids:
            PlaylistService.compact_order(playlist_id)

        return len(items)

    @staticmethod
    def reorder_items(playlist_id: int, item_ids: List[int]) -> None:
        """Apply a new order; item_ids must name every item of the playlist exactly once"""
        items = PlaylistItem.query.filter_by(playlist_id=playlist_id).all()
        by_id = {item.id: item for item in items}

        if sorted(item_ids) != sorted(by_id):
            raise ConfigurationError("new order must list every playlist item exactly once")

        try:
            # First, set all positions to negative values to avoid unique constraint conflicts
            for item in items:
                item.order_index = -item.id
            db.session.flush()

            for idx, item_id in enumerate(item_ids, start=1):
                by_id[item_id].order_index = idx

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def add_schedule(item_id: int, start_time, end_time, day_mask: int = ALL_DAYS,
                     timezone: str = 'UTC', name: str = '', is_active: bool = True) -> Schedule:
        item = db.session.get(PlaylistItem, item_id)
        if item is None:
            raise ConsistencyError(f"playlist item {item_id} not found")
        if not isinstance(day_mask, int) or not 0 <= day_mask <= ALL_DAYS:
            raise ConfigurationError(f"day_mask must be between 0 and {ALL_DAYS}")

        schedule = Schedule(
            playlist_item_id=item_id,
            name=name,
            day_mask=day_mask,
            start_time=normalize_time(start_time),
            end_time=normalize_time(end_time),
            timezone=normalize_timezone(timezone),
            is_active=is_active
        )
        db.session.add(schedule)
        db.session.commit()
        return schedule

    @staticmethod
    def delete_schedule(schedule_id: int) -> None:
        schedule = db.session.get(Schedule, schedule_id)
        if schedule is None:
            raise ConsistencyError(f"schedule {schedule_id} not found")
        db.session.delete(schedule)
        db.session.commit()
