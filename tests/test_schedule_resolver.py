"""
Tests for the schedule resolver.

Covers weekday masks, same-day and overnight windows, timezone handling,
the importance override and eligibility of playlist items.
"""

from datetime import datetime

from models import LifecycleState, Schedule
from utils.playlist_service import PlaylistService
from utils.schedule_resolver import (
    get_active_playlist_items, get_devices_showing_instance, get_devices_using_instance,
    is_instance_scheduled, schedule_matches, weekday_bit
)
from utils.timezone import normalize_timezone, to_zone

# 2025-01-05 is a Sunday
SUNDAY = datetime(2025, 1, 5, 12, 0)
MONDAY = datetime(2025, 1, 6, 12, 0)
TUESDAY = datetime(2025, 1, 7, 12, 0)


def make_schedule(start, end, day_mask=127, timezone='UTC', is_active=True):
    return Schedule(start_time=start, end_time=end, day_mask=day_mask, timezone=timezone, is_active=is_active)


class TestWeekdayBit:

    def test_sunday_is_bit_zero(self):
        assert weekday_bit(SUNDAY) == 1

    def test_monday_and_saturday(self):
        assert weekday_bit(MONDAY) == 2
        assert weekday_bit(datetime(2025, 1, 11)) == 64


class TestScheduleMatches:

    def test_same_day_window(self):
        schedule = make_schedule('09:00:00', '17:00:00')
        assert schedule_matches(schedule, MONDAY.replace(hour=9))
        assert schedule_matches(schedule, MONDAY.replace(hour=17))
        assert not schedule_matches(schedule, MONDAY.replace(hour=8, minute=59))
        assert not schedule_matches(schedule, MONDAY.replace(hour=17, minute=1))

    def test_overnight_window_wraps_midnight(self):
        schedule = make_schedule('22:00:00', '06:00:00')
        assert schedule_matches(schedule, MONDAY.replace(hour=23, minute=30))
        assert schedule_matches(schedule, MONDAY.replace(hour=5))
        assert not schedule_matches(schedule, MONDAY.replace(hour=12))

    def test_day_mask_excludes_other_days(self):
        mondays = make_schedule('00:00:00', '23:59:59', day_mask=0b0000010)
        assert schedule_matches(mondays, MONDAY)
        assert not schedule_matches(mondays, TUESDAY)
        assert not schedule_matches(mondays, SUNDAY)

    def test_empty_day_mask_never_matches(self):
        schedule = make_schedule('00:00:00', '23:59:59', day_mask=0)
        assert not schedule_matches(schedule, MONDAY)

    def test_inactive_schedule_never_matches(self):
        schedule = make_schedule('00:00:00', '23:59:59', is_active=False)
        assert not schedule_matches(schedule, MONDAY)

    def test_window_is_evaluated_in_schedule_timezone(self):
        schedule = make_schedule('09:00:00', '17:00:00', timezone='America/New_York')
        # 15:00 UTC is 10:00 in New York in January
        assert schedule_matches(schedule, MONDAY.replace(hour=15))
        # 23:00 UTC is 18:00 in New York
        assert not schedule_matches(schedule, MONDAY.replace(hour=23))

    def test_weekday_follows_local_date(self):
        # Monday 02:00 UTC is still Sunday evening in Los Angeles
        sundays = make_schedule('00:00:00', '23:59:59', day_mask=0b0000001, timezone='America/Los_Angeles')
        assert schedule_matches(sundays, MONDAY.replace(hour=2))

    def test_unknown_timezone_falls_back_to_utc(self):
        schedule = make_schedule('09:00:00', '17:00:00', timezone='Mars/Olympus_Mons')
        assert schedule_matches(schedule, MONDAY.replace(hour=10))
        assert not schedule_matches(schedule, MONDAY.replace(hour=20))


class TestTimezoneHelpers:

    def test_normalize_timezone(self):
        assert normalize_timezone('Europe/Berlin') == 'Europe/Berlin'
        assert normalize_timezone('Not/AZone') == 'UTC'
        assert normalize_timezone('') == 'UTC'
        assert normalize_timezone(None) == 'UTC'

    def test_naive_moment_is_treated_as_utc(self):
        local = to_zone(MONDAY, 'Europe/Berlin')
        assert local.hour == 13


class TestActivePlaylistItems:

    def test_device_without_playlist_has_no_items(self, sample_device):
        assert get_active_playlist_items(sample_device.id, MONDAY) == []

    def test_unscheduled_items_are_always_active_in_order(self, sample_device, make_instance, add_item):
        first = add_item(sample_device, make_instance())
        second = add_item(sample_device, make_instance())

        items = get_active_playlist_items(sample_device.id, MONDAY)
        assert [item.id for item in items] == [first.id, second.id]

    def test_scheduled_item_only_inside_window(self, sample_device, make_instance, add_item):
        always = add_item(sample_device, make_instance())
        nightly = add_item(sample_device, make_instance())
        PlaylistService.add_schedule(nightly.id, '22:00', '06:00')

        at_noon = get_active_playlist_items(sample_device.id, MONDAY)
        at_night = get_active_playlist_items(sample_device.id, MONDAY.replace(hour=23, minute=30))

        assert [item.id for item in at_noon] == [always.id]
        assert [item.id for item in at_night] == [always.id, nightly.id]

    def test_any_matching_schedule_activates_item(self, sample_device, make_instance, add_item):
        item = add_item(sample_device, make_instance())
        PlaylistService.add_schedule(item.id, '06:00', '08:00')
        PlaylistService.add_schedule(item.id, '11:00', '13:00')

        assert len(get_active_playlist_items(sample_device.id, MONDAY)) == 1
        assert get_active_playlist_items(sample_device.id, MONDAY.replace(hour=9)) == []

    def test_item_with_only_inactive_schedules_is_always_active(self, sample_device, make_instance, add_item):
        item = add_item(sample_device, make_instance())
        PlaylistService.add_schedule(item.id, '06:00', '07:00', is_active=False)

        assert [i.id for i in get_active_playlist_items(sample_device.id, MONDAY)] == [item.id]

    def test_important_items_override_the_rest(self, sample_device, make_instance, add_item):
        add_item(sample_device, make_instance())
        important = add_item(sample_device, make_instance(), importance=True)
        add_item(sample_device, make_instance())

        items = get_active_playlist_items(sample_device.id, MONDAY)
        assert [item.id for item in items] == [important.id]

    def test_important_item_outside_window_does_not_override(self, sample_device, make_instance, add_item):
        normal = add_item(sample_device, make_instance())
        important = add_item(sample_device, make_instance(), importance=True)
        PlaylistService.add_schedule(important.id, '22:00', '23:00')

        items = get_active_playlist_items(sample_device.id, MONDAY)
        assert [item.id for item in items] == [normal.id]

    def test_hidden_items_are_excluded(self, sample_device, make_instance, add_item):
        add_item(sample_device, make_instance(), is_visible=False)
        assert get_active_playlist_items(sample_device.id, MONDAY) == []

    def test_unschedulable_instances_are_excluded(self, db_session, sample_device, make_instance, add_item):
        needs_config = make_instance()
        deactivated = make_instance()
        retired_definition = make_instance()
        for instance in (needs_config, deactivated, retired_definition):
            add_item(sample_device, instance)

        needs_config.needs_config_update = True
        deactivated.state = LifecycleState.DEACTIVATED
        retired_definition.definition.state = LifecycleState.DEACTIVATED
        db_session.commit()

        assert get_active_playlist_items(sample_device.id, MONDAY) == []


class TestInstanceDevices:

    def test_devices_using_instance(self, make_device, make_instance, add_item):
        instance = make_instance()
        kitchen = make_device()
        hallway = make_device()
        make_device()
        add_item(kitchen, instance)
        add_item(hallway, instance)

        assert [d.id for d in get_devices_using_instance(instance.id)] == [kitchen.id, hallway.id]

    def test_inactive_devices_are_not_targets(self, db_session, make_device, make_instance, add_item):
        instance = make_instance()
        device = make_device()
        add_item(device, instance)
        device.is_active = False
        db_session.commit()

        assert get_devices_using_instance(instance.id) == []

    def test_devices_showing_instance_respects_schedules(self, make_device, make_instance, add_item):
        instance = make_instance()
        always = make_device()
        evenings = make_device()
        add_item(always, instance)
        item = add_item(evenings, instance)
        PlaylistService.add_schedule(item.id, '18:00', '22:00')

        assert [d.id for d in get_devices_showing_instance(instance.id, MONDAY)] == [always.id]
        assert is_instance_scheduled(instance.id, MONDAY)

    def test_unplaced_instance_is_not_scheduled(self, sample_instance):
        assert not is_instance_scheduled(sample_instance.id, MONDAY)
