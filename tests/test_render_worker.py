"""
Tests for the render worker.

Jobs are processed synchronously with process_job; the fake renderer
from conftest produces deterministic bitmaps.
"""

import threading
import time
from datetime import timedelta

import pytest

from models import (
    db, LifecycleState, RenderedContent, RenderJob, utcnow,
    JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, JOB_PENDING
)
from utils.errors import RenderPoolBusyError, RenderServiceError, RenderTimeoutError
from utils.render_queue import IMMEDIATE_PRIORITY
from utils.rendering import RenderingService


@pytest.fixture
def worker(app):
    return app.extensions['render_worker']


def pending_routine_jobs(instance_id):
    return RenderJob.query.filter_by(
        plugin_instance_id=instance_id,
        status=JOB_PENDING,
        independent_render=False
    ).all()


class SlowRenderer(RenderingService):

    def __init__(self):
        self.release = threading.Event()

    def render(self, template, data, width, height, bit_depth, timeout):
        self.release.wait(5)
        raise RenderServiceError('released')


class TestRoutineJobs:

    def test_renders_for_each_showing_device(self, worker, render_queue, renderer,
                                             make_device, sample_instance, add_item):
        kitchen = make_device(screen_width=800, screen_height=480)
        hallway = make_device(screen_width=1200, screen_height=825, bit_depth=4)
        add_item(kitchen, sample_instance)
        add_item(hallway, sample_instance)
        job = render_queue.enqueue(sample_instance.id)

        assert worker.process_job(job.id) == JOB_COMPLETED

        contents = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).all()
        assert sorted(c.device_id for c in contents) == [kitchen.id, hallway.id]
        assert sorted((call['width'], call['bit_depth']) for call in renderer.calls) == [(800, 1), (1200, 4)]

    def test_completed_job_schedules_next_render(self, worker, render_queue, sample_device,
                                                 make_instance, add_item):
        instance = make_instance(refresh_interval=900)
        add_item(sample_device, instance)
        job = render_queue.enqueue(instance.id)
        before = utcnow()

        worker.process_job(job.id)

        follow_up = pending_routine_jobs(instance.id)
        assert len(follow_up) == 1
        assert follow_up[0].scheduled_for >= before + timedelta(seconds=900)

    def test_duplicate_routine_jobs_are_superseded(self, worker, render_queue, sample_device,
                                                   sample_instance, add_item):
        add_item(sample_device, sample_instance)
        first = render_queue.enqueue(sample_instance.id)
        duplicate = render_queue.enqueue(sample_instance.id, scheduled_for=utcnow() + timedelta(hours=1))

        worker.process_job(first.id)

        assert db.session.get(RenderJob, duplicate.id).status == JOB_CANCELLED
        assert len(pending_routine_jobs(sample_instance.id)) == 1

    def test_only_devices_inside_schedule_window_are_rendered(self, worker, render_queue, make_device,
                                                              sample_instance, add_item):
        from utils.playlist_service import PlaylistService

        always = make_device()
        nights = make_device()
        add_item(always, sample_instance)
        item = add_item(nights, sample_instance)
        PlaylistService.add_schedule(item.id, '02:00', '02:01', day_mask=0)

        job = render_queue.enqueue(sample_instance.id)
        worker.process_job(job.id)

        contents = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).all()
        assert [c.device_id for c in contents] == [always.id]

    def test_unplaced_instance_ends_its_refresh_chain(self, worker, render_queue, renderer, sample_instance):
        job = render_queue.enqueue(sample_instance.id)

        assert worker.process_job(job.id) == JOB_COMPLETED
        assert renderer.calls == []
        assert pending_routine_jobs(sample_instance.id) == []


class TestIndependentJobs:

    def test_unplaced_instance_gets_device_agnostic_render(self, worker, render_queue, sample_instance):
        job = render_queue.schedule_immediate_render(sample_instance.id)

        assert worker.process_job(job.id) == JOB_COMPLETED

        content = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()
        assert content.device_id is None
        assert (content.width, content.height, content.bit_depth) == worker.default_dimensions
        assert pending_routine_jobs(sample_instance.id) == []

    def test_immediate_render_does_not_touch_refresh_chain(self, worker, render_queue, sample_device,
                                                           sample_instance, add_item):
        add_item(sample_device, sample_instance)
        routine = render_queue.enqueue(sample_instance.id, scheduled_for=utcnow() + timedelta(hours=1))
        urgent = render_queue.schedule_immediate_render(sample_instance.id)

        assert worker.process_job(urgent.id) == JOB_COMPLETED

        assert db.session.get(RenderJob, routine.id).status == JOB_PENDING
        assert len(pending_routine_jobs(sample_instance.id)) == 1

    def test_completed_render_supersedes_waiting_immediate_renders(self, worker, render_queue, renderer,
                                                                   sample_device, sample_instance, add_item):
        add_item(sample_device, sample_instance)
        now = utcnow()
        backlog = [
            render_queue.enqueue(sample_instance.id, priority=IMMEDIATE_PRIORITY, scheduled_for=now,
                                 independent_render=True).id
            for _ in range(5)
        ]

        passes = 0
        due = render_queue.get_due_job_ids()
        while due and passes < 10:
            for job_id in due:
                worker.process_job(job_id)
            passes += 1
            due = render_queue.get_due_job_ids()

        assert passes == 1
        assert len(renderer.calls) == 1
        statuses = [db.session.get(RenderJob, job_id).status for job_id in backlog]
        assert statuses == [JOB_COMPLETED] + [JOB_CANCELLED] * 4

    def test_render_queued_after_claim_is_kept(self, worker, render_queue, sample_device,
                                               sample_instance, add_item):
        add_item(sample_device, sample_instance)
        now = utcnow()
        running = render_queue.schedule_immediate_render(sample_instance.id, now)
        newer = render_queue.enqueue(sample_instance.id, priority=IMMEDIATE_PRIORITY,
                                     scheduled_for=now + timedelta(seconds=30), independent_render=True)

        assert worker.process_job(running.id, now) == JOB_COMPLETED
        assert db.session.get(RenderJob, newer.id).status == JOB_PENDING


class TestDeduplication:

    def test_unchanged_data_keeps_bitmap(self, worker, render_queue, sample_device, sample_instance,
                                         add_item, merge_service):
        storage = worker.cache.storage
        add_item(sample_device, sample_instance)
        merge_service.merge(sample_instance.id, {'merge_variables': {'title': 'Same'}})

        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)
        first = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()
        first_path, first_hash = first.image_path, first.content_hash

        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)
        second = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()

        assert second.image_path == first_path
        assert second.content_hash == first_hash
        assert second.previous_hash is None
        assert storage.list_handles() == [first_path]

    def test_changed_data_replaces_bitmap(self, worker, render_queue, sample_device, sample_instance,
                                          add_item, merge_service):
        storage = worker.cache.storage
        add_item(sample_device, sample_instance)

        merge_service.merge(sample_instance.id, {'merge_variables': {'title': 'Before'}})
        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)
        before = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()
        old_path, old_hash = before.image_path, before.content_hash

        merge_service.merge(sample_instance.id, {'merge_variables': {'title': 'After'}})
        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)
        after = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()

        assert after.content_hash != old_hash
        assert after.previous_hash == old_hash
        assert storage.list_handles() == [after.image_path]
        assert not storage.exists(old_path)


class TestFailures:

    def test_renderer_error_fails_job(self, worker, render_queue, renderer, sample_device,
                                      sample_instance, add_item):
        add_item(sample_device, sample_instance)
        renderer.error = RenderServiceError('renderer returned 502')
        job = render_queue.enqueue(sample_instance.id)

        assert worker.process_job(job.id) == JOB_FAILED

        job = db.session.get(RenderJob, job.id)
        assert 'renderer returned 502' in job.error_message
        assert job.attempts == 1
        assert pending_routine_jobs(sample_instance.id) == []

    def test_failure_is_counted_on_existing_content(self, worker, render_queue, renderer, sample_device,
                                                    sample_instance, add_item):
        add_item(sample_device, sample_instance)
        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)

        renderer.error = RenderServiceError('boom')
        worker.process_job(render_queue.schedule_immediate_render(sample_instance.id).id)

        content = RenderedContent.query.filter_by(plugin_instance_id=sample_instance.id).one()
        assert content.render_attempts == 1

    def test_failed_job_can_be_retried(self, worker, render_queue, renderer, sample_device,
                                       sample_instance, add_item):
        add_item(sample_device, sample_instance)
        renderer.error = RenderServiceError('boom')
        now = utcnow()
        job = render_queue.enqueue(sample_instance.id, scheduled_for=now)
        worker.process_job(job.id, now)

        render_queue.retry_failed_jobs(now)
        renderer.error = None

        assert worker.process_job(job.id, now + timedelta(minutes=1)) == JOB_COMPLETED
        assert db.session.get(RenderJob, job.id).attempts == 2

    def test_render_call_is_bounded_by_timeout(self, worker, sample_device, sample_instance):
        slow = SlowRenderer()
        worker.renderer = slow
        try:
            with pytest.raises(RenderTimeoutError):
                worker.render_target(sample_instance, sample_device, timeout=0.05)
        finally:
            slow.release.set()


class TestCancellation:

    def test_lost_claim_returns_none(self, worker, render_queue, sample_instance):
        job = render_queue.enqueue(sample_instance.id)
        render_queue.claim(job.id)
        assert worker.process_job(job.id) is None

    def test_job_of_deactivated_instance_is_cancelled(self, db_session, worker, render_queue, renderer,
                                                      sample_device, sample_instance, add_item):
        add_item(sample_device, sample_instance)
        job = render_queue.enqueue(sample_instance.id)
        sample_instance.state = LifecycleState.DEACTIVATED
        db_session.commit()

        assert worker.process_job(job.id) == JOB_CANCELLED
        assert renderer.calls == []

    def test_cancel_during_render_discards_result(self, monkeypatch, worker, render_queue,
                                                  sample_device, sample_instance, add_item):
        add_item(sample_device, sample_instance)
        job = render_queue.enqueue(sample_instance.id)

        # Not cancelled before rendering, cancelled once the bitmap is back
        answers = iter([False, True])
        monkeypatch.setattr(render_queue, 'is_cancelled', lambda job_id: next(answers))

        assert worker.process_job(job.id) == JOB_CANCELLED
        assert RenderedContent.query.count() == 0
        assert worker.cache.storage.list_handles() == []


class TestRenderPools:

    def test_stuck_renders_refuse_new_calls_instead_of_queueing(self, worker, sample_device, sample_instance):
        slow = SlowRenderer()
        worker.renderer = slow
        try:
            for _ in range(worker.worker_count):
                with pytest.raises(RenderTimeoutError):
                    worker.render_target(sample_instance, sample_device, timeout=0.05)

            started = time.monotonic()
            with pytest.raises(RenderPoolBusyError):
                worker.render_target(sample_instance, sample_device, timeout=1)
            assert time.monotonic() - started < 0.5
        finally:
            slow.release.set()

    def test_busy_pool_fails_job_for_retry(self, worker, render_queue, sample_device,
                                           sample_instance, add_item):
        add_item(sample_device, sample_instance)
        slow = SlowRenderer()
        worker.renderer = slow
        try:
            for _ in range(worker.worker_count):
                with pytest.raises(RenderTimeoutError):
                    worker.render_target(sample_instance, sample_device, timeout=0.05)

            job = render_queue.enqueue(sample_instance.id)
            assert worker.process_job(job.id) == JOB_FAILED
            assert 'busy' in db.session.get(RenderJob, job.id).error_message
        finally:
            slow.release.set()

    def test_device_poll_renders_survive_stuck_job_renders(self, worker, renderer, sample_device,
                                                           sample_instance):
        slow = SlowRenderer()
        worker.renderer = slow
        try:
            for _ in range(worker.worker_count):
                with pytest.raises(RenderTimeoutError):
                    worker.render_target(sample_instance, sample_device, timeout=0.05)

            worker.renderer = renderer
            started = time.monotonic()
            content = worker.render_on_demand(sample_instance, sample_device, timeout=1)

            assert content.plugin_instance_id == sample_instance.id
            assert time.monotonic() - started < 0.5
        finally:
            slow.release.set()
