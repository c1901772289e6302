"""
API Routes Blueprint
REST API endpoints for e-ink devices to fetch their next screen
"""
import time
import logging
from functools import wraps
from flask import Blueprint, request, jsonify, send_from_directory, current_app, url_for
from sqlalchemy import or_

from models import db, Device, RenderedContent, utcnow
from utils.display import DEFAULT_SCREEN
from utils.health_monitor import RenderHealthMonitor
from utils.schedule_resolver import describe_active_items

api_bp = Blueprint('api', __name__)

# Setup API logger
api_logger = logging.getLogger('api')


# ============================================================================
# AUTHENTICATION DECORATOR
# ============================================================================

def require_api_key(f):
    """Decorator to require API key authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-Device-Key')

        if not api_key:
            log_api_request(None, request.path, request.method, 401)
            return jsonify({'error': 'Missing API key'}), 401

        # Find device with matching API key
        device = None
        for d in Device.query.filter_by(is_active=True).all():
            if d.verify_api_key(api_key):
                device = d
                break

        if not device:
            current_app.logger.warning(f'Invalid API key attempt from {request.remote_addr}')
            log_api_request(None, request.path, request.method, 401)
            return jsonify({'error': 'Invalid API key'}), 401

        # Store device in request context
        request.device = device  # type: ignore

        return f(*args, **kwargs)

    return decorated_function


def log_api_request(device_id, endpoint, method, status_code, response_time=None):
    """Log API request to the api log"""
    timing = f' {response_time:.1f}ms' if response_time is not None else ''
    api_logger.info(f'{method} {endpoint} - Device:{device_id} IP:{request.remote_addr} Status:{status_code}{timing}')


# ============================================================================
# DISPLAY
# ============================================================================

@api_bp.route('/display', methods=['GET'])
@require_api_key
def get_display():
    """
    Next screen for the authenticated device

    Response JSON:
    {
        "status": 0,
        "image_url": "http://server/api/rendered/12_3_ab12cd34ef56ab78.png",
        "filename": "12_0a1b2c3d4e5f",
        "refresh_rate": "1800",
        "plugin_instance_id": 12
    }
    """
    start_time = time.time()
    device = request.device  # type: ignore

    display = current_app.extensions['display_service'].get_display(device, utcnow())

    if display['image'] == DEFAULT_SCREEN:
        image_url = url_for('static', filename=DEFAULT_SCREEN, _external=True)
    else:
        image_url = url_for('api.rendered_image', filename=display['image'], _external=True)

    response_time = (time.time() - start_time) * 1000
    log_api_request(device.id, '/display', 'GET', 200, response_time)

    return jsonify({
        'status': display['status'],
        'image_url': image_url,
        'filename': display['filename'],
        'refresh_rate': str(display['refresh_rate']),
        'plugin_instance_id': display['plugin_instance_id']
    }), 200


@api_bp.route('/display/items', methods=['GET'])
@require_api_key
def get_active_items():
    """Playlist items currently eligible on the authenticated device"""
    device = request.device  # type: ignore
    items = describe_active_items(device.id, utcnow())

    log_api_request(device.id, '/display/items', 'GET', 200)
    return jsonify({'device_id': device.id, 'items': items}), 200


@api_bp.route('/rendered/<filename>', methods=['GET'])
@require_api_key
def rendered_image(filename):
    """
    Serve a rendered bitmap to an authenticated device

    Only content rendered for this device, or device-agnostic content,
    is served.
    """
    device = request.device  # type: ignore

    content = RenderedContent.query.filter(
        RenderedContent.image_path == filename,
        or_(RenderedContent.device_id == device.id, RenderedContent.device_id.is_(None))
    ).first()

    if not content:
        log_api_request(device.id, f'/rendered/{filename}', 'GET', 404)
        return jsonify({'error': 'Image not found'}), 404

    log_api_request(device.id, f'/rendered/{filename}', 'GET', 200)
    return send_from_directory(current_app.extensions['image_storage'].folder, filename)


# ============================================================================
# HEALTH & QUEUE
# ============================================================================

@api_bp.route('/health', methods=['GET'])
def health_check():
    """
    Pipeline health check (no authentication required)

    Response JSON:
    {
        "status": "healthy",
        "checked_at": "2025-10-31T10:00:00",
        "queue": {...}, "content": {...}, "devices": {...}, "storage": {...}
    }
    """
    results = RenderHealthMonitor.check_all_health()
    code = 503 if results['status'] == 'critical' else 200
    return jsonify(results), code


@api_bp.route('/render-queue/stats', methods=['GET'])
def render_queue_stats():
    return jsonify(current_app.extensions['render_queue'].get_queue_stats()), 200


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@api_bp.errorhandler(500)
def api_internal_error(error):
    db.session.rollback()
    return jsonify({'error': 'Internal server error'}), 500
