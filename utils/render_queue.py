"""
Render Queue Manager
Persisted render jobs: enqueue, atomic claim, retry with backoff, cancellation
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, exists, func
from sqlalchemy.orm import aliased

from models import (
    db, LifecycleState, PluginDefinition, PluginInstance, PlaylistItem, RenderJob, utcnow,
    JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED
)

logger = logging.getLogger(__name__)

IMMEDIATE_PRIORITY = 100
ROUTINE_PRIORITY = 0


class RenderQueueManager:
    """All state transitions of render jobs go through here"""

    def __init__(self, max_attempts: int = 5, retry_base_seconds: int = 60,
                 retry_max_seconds: int = 3600, stale_after_seconds: int = 600):
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_after_seconds = stale_after_seconds

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=config.get('RENDER_MAX_ATTEMPTS', 5),
            retry_base_seconds=config.get('RENDER_RETRY_BASE_SECONDS', 60),
            retry_max_seconds=config.get('RENDER_RETRY_MAX_SECONDS', 3600),
            stale_after_seconds=config.get('RENDER_STALE_AFTER_SECONDS', 600)
        )

    # ========================================================================
    # ENQUEUE
    # ========================================================================

    def enqueue(self, instance_id: int, priority: int = ROUTINE_PRIORITY,
                scheduled_for: Optional[datetime] = None, independent_render: bool = False,
                commit: bool = True) -> RenderJob:
        job = RenderJob(
            plugin_instance_id=instance_id,
            priority=priority,
            scheduled_for=scheduled_for or utcnow(),
            status=JOB_PENDING,
            independent_render=independent_render
        )
        db.session.add(job)
        if commit:
            db.session.commit()

        logger.debug(f"Queued render for instance {instance_id} at {job.scheduled_for} "
                     f"(priority {priority}, independent={independent_render})")
        return job

    def schedule_immediate_render(self, instance_id: int, now: Optional[datetime] = None) -> RenderJob:
        """
        High-priority, due-now render that does not start a refresh chain

        A waiting immediate render for the instance is reused: it has not
        read the instance data yet, so it will pick up the latest merge.
        """
        now = now or utcnow()
        waiting = RenderJob.query.filter_by(
            plugin_instance_id=instance_id,
            status=JOB_PENDING,
            independent_render=True
        ).order_by(RenderJob.id.asc()).first()

        if waiting is None:
            return self.enqueue(instance_id, priority=IMMEDIATE_PRIORITY,
                                scheduled_for=now, independent_render=True)

        if waiting.scheduled_for > now:
            waiting.scheduled_for = now
            db.session.commit()
        logger.debug(f"Immediate render for instance {instance_id} already queued as job {waiting.id}")
        return waiting

    def has_pending_routine_job(self, instance_id: int) -> bool:
        return RenderJob.query.filter_by(
            plugin_instance_id=instance_id,
            status=JOB_PENDING,
            independent_render=False
        ).first() is not None

    def schedule_next_render(self, instance: PluginInstance, now: Optional[datetime] = None) -> Optional[RenderJob]:
        """Queue the follow-up routine render unless one is already waiting"""
        if self.has_pending_routine_job(instance.id):
            return None

        now = now or utcnow()
        return self.enqueue(instance.id, scheduled_for=now + timedelta(seconds=instance.refresh_interval))

    def schedule_initial_renders(self, now: Optional[datetime] = None) -> int:
        """
        Start refresh chains for schedulable instances that have none

        Only instances placed in at least one playlist are considered.
        """
        now = now or utcnow()

        instances = PluginInstance.query.join(PluginDefinition).filter(
            PluginInstance.state == LifecycleState.ACTIVE,
            PluginInstance.needs_config_update == False,  # noqa: E712
            PluginDefinition.state == LifecycleState.ACTIVE,
            PluginInstance.id.in_(db.session.query(PlaylistItem.plugin_instance_id))
        ).all()

        queued = 0
        for instance in instances:
            if self.has_pending_routine_job(instance.id):
                continue
            self.enqueue(instance.id, scheduled_for=now, commit=False)
            queued += 1

        db.session.commit()
        if queued:
            logger.info(f"Queued initial renders for {queued} instances")
        return queued

    # ========================================================================
    # DEQUEUE & CLAIM
    # ========================================================================

    def get_due_job_ids(self, now: Optional[datetime] = None, limit: int = 10) -> List[int]:
        """
        Pending jobs that are due, highest priority first, one per instance

        Jobs of instances that are inactive, awaiting reconfiguration or
        already being rendered are left waiting.
        """
        now = now or utcnow()
        busy = aliased(RenderJob)

        # Rank each instance's due jobs so only its head job competes
        ranked = db.session.query(
            RenderJob.id.label('job_id'),
            RenderJob.priority.label('priority'),
            RenderJob.scheduled_for.label('scheduled_for'),
            func.row_number().over(
                partition_by=RenderJob.plugin_instance_id,
                order_by=(RenderJob.priority.desc(), RenderJob.scheduled_for.asc(), RenderJob.id.asc())
            ).label('position')
        ).join(
            PluginInstance, PluginInstance.id == RenderJob.plugin_instance_id
        ).filter(
            RenderJob.status == JOB_PENDING,
            RenderJob.scheduled_for <= now,
            PluginInstance.state == LifecycleState.ACTIVE,
            PluginInstance.needs_config_update == False,  # noqa: E712
            ~exists().where(and_(
                busy.plugin_instance_id == RenderJob.plugin_instance_id,
                busy.status == JOB_PROCESSING
            ))
        ).subquery()

        rows = db.session.query(ranked.c.job_id).filter(
            ranked.c.position == 1
        ).order_by(
            ranked.c.priority.desc(),
            ranked.c.scheduled_for.asc(),
            ranked.c.job_id.asc()
        ).limit(limit).all()

        return [row.job_id for row in rows]

    def claim(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a pending job to processing

        Returns:
            True if this caller won the job, False if it was taken,
            cancelled or removed in the meantime
        """
        now = now or utcnow()
        claimed = RenderJob.query.filter_by(id=job_id, status=JOB_PENDING).update({
            RenderJob.status: JOB_PROCESSING,
            RenderJob.attempts: RenderJob.attempts + 1,
            RenderJob.last_attempt: now,
            RenderJob.updated_at: now
        }, synchronize_session=False)
        db.session.commit()

        if claimed != 1:
            logger.debug(f"Render job {job_id} already claimed or gone")
            return False
        return True

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def _transition(self, job_id: int, from_statuses, values: Dict) -> bool:
        values = dict(values)
        values[RenderJob.updated_at] = utcnow()
        changed = RenderJob.query.filter(
            RenderJob.id == job_id,
            RenderJob.status.in_(from_statuses)
        ).update(values, synchronize_session=False)
        db.session.commit()
        return changed == 1

    def complete(self, job_id: int) -> bool:
        """processing -> completed; False if the job was cancelled meanwhile"""
        return self._transition(job_id, [JOB_PROCESSING], {
            RenderJob.status: JOB_COMPLETED,
            RenderJob.error_message: None
        })

    def fail(self, job_id: int, message: str) -> bool:
        """processing -> failed with a readable cause"""
        failed = self._transition(job_id, [JOB_PROCESSING], {
            RenderJob.status: JOB_FAILED,
            RenderJob.error_message: message[:2000]
        })
        if failed:
            logger.warning(f"Render job {job_id} failed: {message}")
        return failed

    def cancel_job(self, job_id: int, reason: str) -> bool:
        return self._transition(job_id, [JOB_PENDING, JOB_PROCESSING], {
            RenderJob.status: JOB_CANCELLED,
            RenderJob.error_message: reason
        })

    def cancel_jobs_for_instance(self, instance_id: int, reason: str, commit: bool = True) -> int:
        """Cancel an instance's pending and processing jobs"""
        cancelled = RenderJob.query.filter(
            RenderJob.plugin_instance_id == instance_id,
            RenderJob.status.in_([JOB_PENDING, JOB_PROCESSING])
        ).update({
            RenderJob.status: JOB_CANCELLED,
            RenderJob.error_message: reason,
            RenderJob.updated_at: utcnow()
        }, synchronize_session=False)
        if commit:
            db.session.commit()

        if cancelled:
            logger.info(f"Cancelled {cancelled} render jobs for instance {instance_id}: {reason}")
        return cancelled

    def cancel_routine_jobs(self, instance_id: int, exclude_job_id: Optional[int] = None) -> int:
        """Cancel waiting routine jobs, leaving immediate renders alone"""
        query = RenderJob.query.filter(
            RenderJob.plugin_instance_id == instance_id,
            RenderJob.status == JOB_PENDING,
            RenderJob.independent_render == False  # noqa: E712
        )
        if exclude_job_id is not None:
            query = query.filter(RenderJob.id != exclude_job_id)

        cancelled = query.update({
            RenderJob.status: JOB_CANCELLED,
            RenderJob.error_message: 'superseded',
            RenderJob.updated_at: utcnow()
        }, synchronize_session=False)
        db.session.commit()
        return cancelled

    def cancel_superseded_renders(self, instance_id: int, completed_job_id: int, claimed_at: datetime) -> int:
        """
        Cancel waiting immediate renders that a finished render already covered

        Only jobs due at or before the claim of the completed job are
        cancelled; later ones were queued for data the render never saw.
        """
        cancelled = RenderJob.query.filter(
            RenderJob.plugin_instance_id == instance_id,
            RenderJob.id != completed_job_id,
            RenderJob.status == JOB_PENDING,
            RenderJob.independent_render == True,  # noqa: E712
            RenderJob.scheduled_for <= claimed_at
        ).update({
            RenderJob.status: JOB_CANCELLED,
            RenderJob.error_message: f'superseded by job {completed_job_id}',
            RenderJob.updated_at: utcnow()
        }, synchronize_session=False)
        db.session.commit()

        if cancelled:
            logger.info(f"Cancelled {cancelled} immediate renders of instance {instance_id} "
                        f"covered by job {completed_job_id}")
        return cancelled

    @staticmethod
    def get_status(job_id: int) -> Optional[str]:
        return db.session.query(RenderJob.status).filter(RenderJob.id == job_id).scalar()

    def is_cancelled(self, job_id: int) -> bool:
        """Fresh read; a removed job counts as cancelled"""
        status = self.get_status(job_id)
        return status is None or status == JOB_CANCELLED

    @staticmethod
    def delete_jobs_for_instance(instance_id: int) -> int:
        """Delete an instance's jobs within the caller's transaction"""
        return RenderJob.query.filter_by(plugin_instance_id=instance_id).delete(synchronize_session=False)

    # ========================================================================
    # RETRY & MAINTENANCE
    # ========================================================================

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next attempt: base * 2^(attempts-1), capped"""
        exponent = max(attempts - 1, 0)
        return min(self.retry_base_seconds * (2 ** exponent), self.retry_max_seconds)

    def retry_failed_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Return failed jobs with attempts left to the queue

        Jobs that used up their attempts stay failed with their error
        message for operators to inspect.
        """
        now = now or utcnow()

        jobs = RenderJob.query.join(PluginInstance).filter(
            RenderJob.status == JOB_FAILED,
            RenderJob.attempts < self.max_attempts,
            PluginInstance.state == LifecycleState.ACTIVE
        ).all()

        for job in jobs:
            base = job.last_attempt or now
            job.status = JOB_PENDING
            job.scheduled_for = base + timedelta(seconds=self.backoff_seconds(job.attempts))
            job.updated_at = now

        db.session.commit()

        if jobs:
            logger.info(f"Re-queued {len(jobs)} failed render jobs")
        return len(jobs)

    def recover_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """Fail processing jobs whose worker went away so they can be retried"""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_after_seconds)

        recovered = RenderJob.query.filter(
            RenderJob.status == JOB_PROCESSING,
            RenderJob.last_attempt < cutoff
        ).update({
            RenderJob.status: JOB_FAILED,
            RenderJob.error_message: f"worker did not finish within {self.stale_after_seconds}s",
            RenderJob.updated_at: now
        }, synchronize_session=False)
        db.session.commit()

        if recovered:
            logger.warning(f"Recovered {recovered} stale render jobs")
        return recovered

    def cleanup_old_jobs(self, max_age_days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete finished jobs older than max_age_days"""
        now = now or utcnow()
        cutoff = now - timedelta(days=max_age_days)

        deleted = RenderJob.query.filter(
            RenderJob.status.in_([JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED]),
            RenderJob.updated_at < cutoff
        ).delete(synchronize_session=False)
        db.session.commit()

        if deleted:
            logger.info(f"Deleted {deleted} old render jobs")
        return deleted

    def get_exhausted_jobs(self, limit: int = 50) -> List[RenderJob]:
        """Failed jobs that will not be retried"""
        return RenderJob.query.filter(
            RenderJob.status == JOB_FAILED,
            RenderJob.attempts >= self.max_attempts
        ).order_by(RenderJob.updated_at.desc()).limit(limit).all()

    def get_queue_stats(self, now: Optional[datetime] = None) -> Dict:
        now = now or utcnow()

        counts = dict(db.session.query(RenderJob.status, func.count(RenderJob.id)).group_by(RenderJob.status).all())
        due = RenderJob.query.filter(
            RenderJob.status == JOB_PENDING,
            RenderJob.scheduled_for <= now
        ).count()
        oldest_due = db.session.query(func.min(RenderJob.scheduled_for)).filter(
            RenderJob.status == JOB_PENDING,
            RenderJob.scheduled_for <= now
        ).scalar()

        return {
            'pending': counts.get(JOB_PENDING, 0),
            'processing': counts.get(JOB_PROCESSING, 0),
            'completed': counts.get(JOB_COMPLETED, 0),
            'failed': counts.get(JOB_FAILED, 0),
            'cancelled': counts.get(JOB_CANCELLED, 0),
            'due': due,
            'oldest_due_seconds': int((now - oldest_due).total_seconds()) if oldest_due else 0,
            'exhausted': RenderJob.query.filter(
                RenderJob.status == JOB_FAILED,
                RenderJob.attempts >= self.max_attempts
            ).count()
        }
