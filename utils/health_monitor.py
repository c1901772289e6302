"""
Render Pipeline Health Monitor
Surfaces exhausted jobs, stuck workers, stale content and disk pressure
"""
from datetime import timedelta
from typing import Any, Dict

import psutil
from flask import current_app

from models import Device, RenderedContent, RenderJob, PluginInstance, LifecycleState, utcnow, JOB_PROCESSING


class RenderHealthMonitor:
    """Checks the content pipeline for conditions operators should act on"""

    # Health check thresholds
    STORAGE_WARNING_THRESHOLD = 80  # percent
    STORAGE_CRITICAL_THRESHOLD = 90  # percent
    QUEUE_BACKLOG_WARNING = 300  # seconds a due job may wait

    @staticmethod
    def check_all_health() -> Dict[str, Any]:
        """
        Run all health checks

        Returns:
            Dict with health status for all components
        """
        results = {
            'checked_at': utcnow().isoformat(),
            'queue': RenderHealthMonitor.check_queue_health(),
            'content': RenderHealthMonitor.check_content_health(),
            'devices': RenderHealthMonitor.check_device_health(),
            'storage': RenderHealthMonitor.check_storage_health()
        }

        statuses = [v['status'] for v in results.values() if isinstance(v, dict)]
        if 'critical' in statuses:
            results['status'] = 'critical'
        elif 'warning' in statuses:
            results['status'] = 'warning'
        else:
            results['status'] = 'healthy'

        current_app.logger.info(f"Health check completed: {results['status']}")
        return results

    @staticmethod
    def check_queue_health() -> Dict[str, Any]:
        """Exhausted failures, stuck processing jobs and backlog age"""
        queue = current_app.extensions['render_queue']
        stats = queue.get_queue_stats()
        now = utcnow()

        stuck = RenderJob.query.filter(
            RenderJob.status == JOB_PROCESSING,
            RenderJob.last_attempt < now - timedelta(seconds=queue.stale_after_seconds)
        ).count()

        exhausted = [job.to_dict() for job in queue.get_exhausted_jobs(limit=20)]

        if stuck or stats['oldest_due_seconds'] > RenderHealthMonitor.QUEUE_BACKLOG_WARNING:
            status = 'warning'
        elif exhausted:
            status = 'warning'
        else:
            status = 'healthy'

        return {
            'status': status,
            'stats': stats,
            'stuck_jobs': stuck,
            'exhausted_jobs': exhausted
        }

    @staticmethod
    def check_content_health() -> Dict[str, Any]:
        """Rendered content older than its instance refresh interval allows"""
        cache = current_app.extensions['content_cache']
        now = utcnow()

        stale = []
        contents = RenderedContent.query.join(PluginInstance).filter(
            PluginInstance.state == LifecycleState.ACTIVE
        ).all()
        for content in contents:
            if not cache.is_fresh(content, content.plugin_instance.refresh_interval, now):
                stale.append({
                    'plugin_instance_id': content.plugin_instance_id,
                    'device_id': content.device_id,
                    'rendered_at': content.rendered_at.isoformat(),
                    'render_attempts': content.render_attempts
                })

        return {
            'status': 'warning' if stale else 'healthy',
            'total': len(contents),
            'stale': stale
        }

    @staticmethod
    def check_device_health() -> Dict[str, Any]:
        devices = Device.query.filter_by(is_active=True).all()
        offline = [{
            'id': device.id,
            'name': device.name,
            'last_seen': device.last_seen.isoformat() if device.last_seen else None
        } for device in devices if not device.is_online]

        return {
            'status': 'healthy',
            'total_devices': len(devices),
            'online': len(devices) - len(offline),
            'offline_devices': offline
        }

    @staticmethod
    def check_storage_health() -> Dict[str, Any]:
        """Disk usage of the rendered content folder"""
        storage = current_app.extensions['image_storage']

        try:
            disk_usage = psutil.disk_usage(storage.folder)
            stats = storage.get_storage_statistics()
        except OSError as e:
            return {
                'status': 'unknown',
                'error': str(e)
            }

        used_percent = disk_usage.percent
        return {
            'status': 'critical' if used_percent >= RenderHealthMonitor.STORAGE_CRITICAL_THRESHOLD
                      else 'warning' if used_percent >= RenderHealthMonitor.STORAGE_WARNING_THRESHOLD
                      else 'healthy',
            'used_percent': used_percent,
            'free_gb': disk_usage.free / (1024 ** 3),
            'file_count': stats['file_count'],
            'rendered_size_mb': stats['total_size_mb']
        }
