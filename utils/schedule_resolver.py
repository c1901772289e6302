"""
Schedule Resolver
Decides which playlist items are eligible for display on a device right now
"""
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy.orm import joinedload, selectinload
from models import Device, Playlist, PlaylistItem, PluginInstance, Schedule, utcnow
from utils.timezone import to_zone


def weekday_bit(moment: datetime) -> int:
    """Day-mask bit for a local datetime, 0=Sunday ... 6=Saturday"""
    return 1 << (moment.isoweekday() % 7)


def schedule_matches(schedule: Schedule, now: datetime) -> bool:
    """
    Check whether a schedule window contains the given moment

    The moment is converted to the schedule's zone (UTC when the zone is
    unknown) and compared as an "HH:MM:SS" string against the window.
    Windows whose end is before their start wrap around midnight.
    """
    if not schedule.is_active:
        return False

    local_now = to_zone(now, schedule.timezone)

    if not schedule.day_mask & weekday_bit(local_now):
        return False

    now_str = local_now.strftime('%H:%M:%S')

    # Handle overnight schedules (e.g., 22:00 - 06:00)
    if schedule.end_time < schedule.start_time:
        return now_str >= schedule.start_time or now_str <= schedule.end_time
    return schedule.start_time <= now_str <= schedule.end_time


def is_item_eligible(item: PlaylistItem) -> bool:
    """Visible, and backed by an active, configured instance"""
    if not item.is_visible:
        return False
    instance = item.plugin_instance
    return instance is not None and instance.is_schedulable


def is_item_active(item: PlaylistItem, now: datetime) -> bool:
    active_schedules = [s for s in item.schedules if s.is_active]

    # Items without schedules are always on
    if not active_schedules:
        return True

    return any(schedule_matches(s, now) for s in active_schedules)


def filter_active_items(items: Iterable[PlaylistItem], now: datetime) -> List[PlaylistItem]:
    """
    Apply visibility, schedule windows and the importance override

    Args:
        items: Playlist items in display order
        now: Moment to resolve for (naive values are UTC)

    Returns:
        Active items in the order given; only the important ones when any
        active item is marked important
    """
    active = [item for item in items if is_item_eligible(item) and is_item_active(item, now)]

    important = [item for item in active if item.importance]
    if important:
        return important

    return active


def get_default_playlist_items(device_id: int) -> List[PlaylistItem]:
    return PlaylistItem.query.join(Playlist).filter(
        Playlist.device_id == device_id,
        Playlist.is_default == True  # noqa: E712
    ).options(
        selectinload(PlaylistItem.schedules),
        joinedload(PlaylistItem.plugin_instance).joinedload(PluginInstance.definition)
    ).order_by(PlaylistItem.order_index).all()


def get_active_playlist_items(device_id: int, now: Optional[datetime] = None) -> List[PlaylistItem]:
    """
    Resolve the playlist items a device may show at a given moment

    Args:
        device_id: Device whose default playlist is resolved
        now: Moment to resolve for (default: current UTC time)

    Returns:
        Active items ordered by order_index; empty when the device has no
        default playlist or nothing is eligible
    """
    if now is None:
        now = utcnow()

    return filter_active_items(get_default_playlist_items(device_id), now)


def get_devices_using_instance(instance_id: int) -> List[Device]:
    """Active devices whose default playlist has a visible item for the instance"""
    return Device.query.join(Playlist, Playlist.device_id == Device.id).join(
        PlaylistItem, PlaylistItem.playlist_id == Playlist.id
    ).filter(
        PlaylistItem.plugin_instance_id == instance_id,
        PlaylistItem.is_visible == True,  # noqa: E712
        Playlist.is_default == True,  # noqa: E712
        Device.is_active == True  # noqa: E712
    ).distinct().order_by(Device.id).all()


def is_instance_active_on_device(instance_id: int, device_id: int, now: Optional[datetime] = None) -> bool:
    return any(item.plugin_instance_id == instance_id
               for item in get_active_playlist_items(device_id, now))


def get_devices_showing_instance(instance_id: int, now: Optional[datetime] = None) -> List[Device]:
    """Devices on which the instance is currently among the active items"""
    return [device for device in get_devices_using_instance(instance_id)
            if is_instance_active_on_device(instance_id, device.id, now)]


def is_instance_scheduled(instance_id: int, now: Optional[datetime] = None) -> bool:
    return bool(get_devices_showing_instance(instance_id, now))


def describe_active_items(device_id: int, now: Optional[datetime] = None) -> List[dict]:
    """Summaries of active items, for diagnostics"""
    return [{
        'playlist_item_id': item.id,
        'plugin_instance_id': item.plugin_instance_id,
        'name': item.plugin_instance.name,
        'order_index': item.order_index,
        'importance': item.importance,
        'schedules': [f"{s.days_display} {s.start_time}-{s.end_time} {s.timezone}" for s in item.schedules],
    } for item in get_active_playlist_items(device_id, now)]
