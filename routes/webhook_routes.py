"""
Webhook Routes Blueprint
Inbound data for webhook plugins: size check, rate limit, merge, render
"""
from flask import Blueprint, request, jsonify, current_app

from models import db, PluginInstance
from utils.errors import ContentPipelineError
from utils.plugin_settings import decode_webhook_envelope
from utils.scheduler import request_queue_pass

webhook_bp = Blueprint('webhooks', __name__)


# ============================================================================
# RATE LIMITING
# ============================================================================

def webhook_rate_key():
    """Rate limit bucket: the owner of the target instance"""
    instance_id = (request.view_args or {}).get('instance_id')
    instance = db.session.get(PluginInstance, instance_id) if instance_id else None
    if instance is None:
        return f'instance:{instance_id}'
    return f'owner:{instance.owner_id}'


def webhook_rate_limit():
    per_hour = current_app.extensions['settings_store'].get_int('webhook_rate_limit_per_hour')
    return f'{per_hour} per hour'


def register_webhook_limits(limiter):
    """Apply the per-owner hourly limit to every webhook POST"""
    limiter.limit(webhook_rate_limit, key_func=webhook_rate_key, methods=['POST'])(webhook_bp)


# ============================================================================
# INGESTION
# ============================================================================

@webhook_bp.route('/<int:instance_id>', methods=['POST'])
def receive_webhook(instance_id):
    """
    Merge a webhook payload into a plugin instance and queue a render

    Request JSON:
    {
        "merge_variables": {"temperature": 21.5},
        "merge_strategy": "deep_merge",
        "stream_limit": 20
    }

    Response JSON:
    {
        "message": "Data received",
        "plugin_instance_id": 12,
        "merge_strategy": "deep_merge",
        "keys": 1
    }
    """
    settings = current_app.extensions['settings_store']
    max_bytes = settings.get_int('webhook_max_request_size_kb') * 1024

    if request.content_length is not None and request.content_length > max_bytes:
        return jsonify({'error': f'Request body exceeds {max_bytes // 1024} KB'}), 413

    raw = request.get_data(cache=True)
    if len(raw) > max_bytes:
        return jsonify({'error': f'Request body exceeds {max_bytes // 1024} KB'}), 413

    body = request.get_json(silent=True)
    if body is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    try:
        envelope = decode_webhook_envelope(body)
        merged, strategy = current_app.extensions['merge_service'].apply_merge(
            instance_id,
            envelope.model_dump(exclude_none=True),
            content_type=request.mimetype,
            content_size=len(raw),
            source_ip=request.remote_addr
        )
    except ContentPipelineError as e:
        current_app.logger.warning(f'Webhook for instance {instance_id} rejected: {e}')
        return jsonify({'error': str(e)}), e.status_code

    current_app.extensions['render_queue'].schedule_immediate_render(instance_id)
    request_queue_pass()

    current_app.logger.info(f'Webhook data received for instance {instance_id} from {request.remote_addr}')

    return jsonify({
        'message': 'Data received',
        'plugin_instance_id': instance_id,
        'merge_strategy': strategy,
        'keys': len(merged)
    }), 200
