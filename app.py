"""
Inkwell - E-Ink Display Content Server
Main Flask application entry point
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config import config
from models import db


def create_app(config_name=None, config_overrides=None):
    """Application factory pattern"""

    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)
    config[config_name].init_app(app)

    # Initialize extensions
    db.init_app(app)

    # CORS configuration
    CORS(app, resources={
        r"/api/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST"],
            "allow_headers": ["Content-Type", "X-Device-Key"]
        }
    })

    # Rate limiting (webhook limits are registered on their blueprint)
    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[],
        storage_uri=app.config['RATELIMIT_STORAGE_URL'],
        enabled=app.config['RATELIMIT_ENABLED']
    )

    # Setup logging
    setup_logging(app)

    # Content pipeline components
    init_pipeline(app)

    # Register blueprints
    from routes.api_routes import api_bp
    from routes.webhook_routes import webhook_bp, register_webhook_limits

    register_webhook_limits(limiter)
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(webhook_bp, url_prefix='/api/webhooks')

    # Error handlers
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({'error': 'Internal server error'}), 500

    @app.errorhandler(413)
    def too_large(error):
        return jsonify({'error': 'Request body too large'}), 413

    @app.errorhandler(429)
    def rate_limited(error):
        return jsonify({'error': f'Rate limit exceeded: {error.description}'}), 429

    # Store limiter in app for use in blueprints
    app.limiter = limiter  # type: ignore

    # Background scheduler for render queue, retries and polling
    if app.config['SCHEDULER_ENABLED']:
        from utils.scheduler import init_scheduler, shutdown_scheduler
        init_scheduler(app)

        # Register shutdown handler
        import atexit
        atexit.register(shutdown_scheduler)
        atexit.register(app.extensions['render_worker'].shutdown)

    return app


def init_pipeline(app):
    """Build the content pipeline components and attach them to the app"""
    from utils.content_cache import ContentCache
    from utils.data_merge import DataMergeService
    from utils.display import DisplayService
    from utils.image_storage import ImageStorage
    from utils.plugin_service import PluginService
    from utils.render_queue import RenderQueueManager
    from utils.render_worker import RenderWorker
    from utils.rendering import HttpRenderingService
    from utils.settings_store import SettingsStore

    settings_store = SettingsStore(app.config)
    storage = ImageStorage(app.config['RENDERED_FOLDER'])
    renderer = HttpRenderingService(app.config['RENDERER_URL'])
    cache = ContentCache(storage, app.config['CONTENT_STALE_GRACE_SECONDS'])
    queue = RenderQueueManager.from_config(app.config)
    worker = RenderWorker(
        queue, cache, renderer,
        timeout_seconds=app.config['RENDER_TIMEOUT_SECONDS'],
        worker_count=app.config['RENDER_WORKER_COUNT'],
        display_worker_count=app.config['DISPLAY_RENDER_WORKER_COUNT'],
        default_dimensions=(
            app.config['DEFAULT_SCREEN_WIDTH'],
            app.config['DEFAULT_SCREEN_HEIGHT'],
            app.config['DEFAULT_BIT_DEPTH']
        )
    )

    app.extensions.update({
        'settings_store': settings_store,
        'image_storage': storage,
        'renderer': renderer,
        'content_cache': cache,
        'render_queue': queue,
        'render_worker': worker,
        'merge_service': DataMergeService(settings_store),
        'plugin_service': PluginService(queue, cache, settings_store),
        'display_service': DisplayService(
            cache, worker, queue,
            on_demand_timeout=app.config['DISPLAY_RENDER_TIMEOUT_SECONDS']
        )
    })


def setup_logging(app):
    """Configure application logging"""

    if not app.debug and not app.testing:
        # Create logs directory if it doesn't exist
        if not os.path.exists(app.config['LOG_FOLDER']):
            os.mkdir(app.config['LOG_FOLDER'])

        # Application log handler
        file_handler = RotatingFileHandler(
            app.config['APP_LOG_FILE'],
            maxBytes=10240000,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)

        # Device API log handler
        api_handler = RotatingFileHandler(
            app.config['API_LOG_FILE'],
            maxBytes=10240000,
            backupCount=5
        )
        api_handler.setFormatter(logging.Formatter('%(asctime)s %(message)s'))
        api_logger = logging.getLogger('api')
        api_logger.addHandler(api_handler)
        api_logger.setLevel(logging.INFO)

        app.logger.setLevel(logging.INFO)
        app.logger.info('Inkwell startup')


if __name__ == '__main__':
    app = create_app()

    # Create database tables if they don't exist
    with app.app_context():
        db.create_all()

    app.run(
        host=app.config['FLASK_HOST'],
        port=app.config['FLASK_PORT'],
        debug=app.config['DEBUG']
    )
