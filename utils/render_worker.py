"""
Render Worker
Processes render jobs: resolves targets, renders, stores, reschedules
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, wait
from typing import List, Optional, Tuple

from models import (
    db, Device, PluginInstance, RenderJob, RenderedContent, utcnow,
    JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED
)
from utils.data_merge import DataMergeService
from utils.errors import RenderPoolBusyError, RenderTimeoutError
from utils.rendering import RenderResult
from utils.schedule_resolver import get_devices_using_instance, is_instance_active_on_device

logger = logging.getLogger(__name__)


class RenderCallPool:
    """
    Thread pool for calls to the rendering service that never queues

    A call that timed out keeps its thread until the renderer returns, so
    a slot is only handed back when the call itself finishes. With every
    slot taken, new calls are refused instead of waiting behind stuck ones.
    """

    def __init__(self, size: int, name: str):
        self.size = size
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix=name)
        self._slots = threading.BoundedSemaphore(size)

    def submit(self, fn, *args):
        if not self._slots.acquire(blocking=False):
            raise RenderPoolBusyError(self.name, self.size)
        try:
            future = self._executor.submit(fn, *args)
        except Exception:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def shutdown(self):
        self._executor.shutdown(wait=False)


class RenderWorker:
    """
    Render orchestrator

    Owns a pool that runs jobs side by side and two render-call pools
    that bound each call to the rendering service by its timeout: one for
    queued jobs, one for on-demand renders in the device poll path.
    """

    def __init__(self, queue, cache, renderer, timeout_seconds: float = 30, worker_count: int = 4,
                 default_dimensions: Tuple[int, int, int] = (800, 480, 1), display_worker_count: int = 2):
        self.queue = queue
        self.cache = cache
        self.renderer = renderer
        self.timeout_seconds = timeout_seconds
        self.worker_count = worker_count
        self.default_dimensions = default_dimensions
        self._job_pool = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix='render-job')
        self._render_pool = RenderCallPool(worker_count, 'render-call')
        self._display_pool = RenderCallPool(display_worker_count, 'render-display')

    def dimensions_for(self, device: Optional[Device]) -> Tuple[int, int, int]:
        if device is None:
            return self.default_dimensions
        return device.screen_width, device.screen_height, device.bit_depth

    # ========================================================================
    # RENDERING
    # ========================================================================

    def render_target(self, instance: PluginInstance, device: Optional[Device],
                      timeout: Optional[float] = None, on_demand: bool = False) -> RenderResult:
        """
        Render an instance for one device (or device-agnostic when None)

        Raises:
            RenderTimeoutError: renderer exceeded the timeout
            RenderPoolBusyError: every render thread is still busy
            TransientRenderError: renderer failed
        """
        timeout = timeout or self.timeout_seconds
        width, height, bit_depth = self.dimensions_for(device)
        data = DataMergeService.get_instance_data(instance)
        pool = self._display_pool if on_demand else self._render_pool

        future = pool.submit(
            self.renderer.render, instance.definition.markup, data, width, height, bit_depth, timeout
        )
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            raise RenderTimeoutError(f"render of instance {instance.id} exceeded {timeout}s")

    def render_on_demand(self, instance: PluginInstance, device: Device,
                         timeout: Optional[float] = None) -> RenderedContent:
        """Render synchronously for one device and store the result"""
        result = self.render_target(instance, device, timeout, on_demand=True)
        width, height, bit_depth = self.dimensions_for(device)
        content, _ = self.cache.put(instance.id, device.id, result, width, height, bit_depth)
        return content

    def resolve_targets(self, instance_id: int, independent: bool, now) -> Tuple[List[Optional[Device]], bool]:
        """
        Devices to render for, and whether any playlist uses the instance

        Routine renders only cover devices currently showing the instance.
        Independent renders cover every device using it, or produce one
        device-agnostic render when none does.
        """
        devices = get_devices_using_instance(instance_id)
        reachable = bool(devices)

        if independent:
            return (devices or [None]), reachable

        return [d for d in devices if is_instance_active_on_device(instance_id, d.id, now)], reachable

    # ========================================================================
    # JOB PROCESSING
    # ========================================================================

    def process_job(self, job_id: int, now=None) -> Optional[str]:
        """
        Claim and run one render job

        Returns:
            Final job status, or None when the claim was lost
        """
        now = now or utcnow()

        if not self.queue.claim(job_id, now):
            return None

        job = db.session.get(RenderJob, job_id)
        if job is None:
            return None

        independent = job.independent_render
        instance = db.session.get(PluginInstance, job.plugin_instance_id)

        if instance is None or not instance.is_schedulable:
            self.queue.cancel_job(job_id, 'plugin instance inactive, unconfigured or removed')
            logger.info(f"Cancelled render job {job_id}: instance {job.plugin_instance_id} not renderable")
            return JOB_CANCELLED

        targets, reachable = self.resolve_targets(instance.id, independent, now)
        errors = []

        for device in targets:
            device_id = device.id if device is not None else None

            if self.queue.is_cancelled(job_id):
                logger.info(f"Render job {job_id} cancelled before rendering device {device_id}")
                return JOB_CANCELLED

            try:
                result = self.render_target(instance, device)
            except Exception as e:
                logger.warning(f"Render of instance {instance.id} for device {device_id} failed: {e}")
                errors.append(f"device {device_id if device_id is not None else 'any'}: {e}")
                self.cache.record_failure(instance.id, device_id)
                continue

            if self.queue.is_cancelled(job_id):
                logger.info(f"Render job {job_id} cancelled, discarding render for device {device_id}")
                return JOB_CANCELLED

            width, height, bit_depth = self.dimensions_for(device)
            try:
                self.cache.put(instance.id, device_id, result, width, height, bit_depth)
            except Exception as e:
                logger.error(f"Storing render of instance {instance.id} for device {device_id} failed: {e}")
                errors.append(f"device {device_id if device_id is not None else 'any'}: storage failed: {e}")

        if errors:
            self.queue.fail(job_id, '; '.join(errors))
            return JOB_FAILED

        if not self.queue.complete(job_id):
            return JOB_CANCELLED

        logger.info(f"Render job {job_id} completed for instance {instance.id} ({len(targets)} targets)")

        if independent:
            self.queue.cancel_superseded_renders(instance.id, job_id, claimed_at=now)
        else:
            self.queue.cancel_routine_jobs(instance.id, exclude_job_id=job_id)
            if reachable:
                self.queue.schedule_next_render(instance, utcnow())

        return JOB_COMPLETED

    def _process_in_context(self, app, job_id: int) -> Optional[str]:
        with app.app_context():
            try:
                return self.process_job(job_id)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error processing render job {job_id}: {e}")
                self.queue.fail(job_id, f"internal error: {e}")
                return JOB_FAILED

    def process_due_jobs(self, app, limit: int = 10) -> int:
        """
        Run one queue pass: dispatch due jobs to the job pool and wait

        Returns:
            Number of jobs dispatched
        """
        with app.app_context():
            job_ids = self.queue.get_due_job_ids(limit=limit)

        if not job_ids:
            return 0

        futures = [self._job_pool.submit(self._process_in_context, app, job_id) for job_id in job_ids]
        wait(futures)

        logger.debug(f"Render queue pass processed {len(job_ids)} jobs")
        return len(job_ids)

    def shutdown(self):
        self._job_pool.shutdown(wait=False)
        self._render_pool.shutdown()
        self._display_pool.shutdown()
