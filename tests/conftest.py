"""
Pytest configuration and fixtures for Inkwell tests.

This module provides shared fixtures for testing:
- Flask application with test configuration
- In-memory SQLite database and a temporary rendered folder
- Test client
- A deterministic in-process renderer
- Factories for devices, plugins and playlist items
"""

import itertools
import json
import tempfile

import pytest

from app import create_app
from models import db, DataStrategy, Device
from utils.playlist_service import PlaylistService
from utils.rendering import RenderingService, RenderResult

SAMPLE_API_KEY = 'test-device-key'
SAMPLE_MARKUP = '<h1>{{ title }}</h1>'


class FakeRenderer(RenderingService):
    """Renders the template and data to JSON bytes, so equal input gives an equal hash"""

    def __init__(self):
        self.calls = []
        self.error = None

    def render(self, template, data, width, height, bit_depth, timeout):
        self.calls.append({
            'template': template,
            'data': data,
            'width': width,
            'height': height,
            'bit_depth': bit_depth
        })
        if self.error is not None:
            raise self.error

        bitmap = json.dumps({
            'template': template,
            'data': data,
            'size': [width, height, bit_depth]
        }, sort_keys=True).encode()
        return RenderResult(bitmap)


@pytest.fixture(scope='function')
def app():
    """
    Create a Flask application configured for testing.

    Yields:
        Flask application instance with clean tables and a fake renderer
    """
    temp_dir = tempfile.mkdtemp()

    application = create_app('testing', config_overrides={
        'RENDERED_FOLDER': f'{temp_dir}/rendered',
        'LOG_FOLDER': f'{temp_dir}/logs'
    })
    application.extensions['render_worker'].renderer = FakeRenderer()

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()

    application.extensions['render_worker'].shutdown()


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    with app.app_context():
        yield db.session


@pytest.fixture(scope='function')
def renderer(app):
    return app.extensions['render_worker'].renderer


@pytest.fixture(scope='function')
def render_queue(app):
    return app.extensions['render_queue']


@pytest.fixture(scope='function')
def content_cache(app):
    return app.extensions['content_cache']


@pytest.fixture(scope='function')
def plugin_service(app):
    return app.extensions['plugin_service']


@pytest.fixture(scope='function')
def merge_service(app):
    return app.extensions['merge_service']


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture(scope='function')
def make_device(db_session):
    """
    Factory for Device records.

    Every device authenticates with SAMPLE_API_KEY unless api_key is given.
    """
    counter = itertools.count(1)

    def _make(name=None, api_key=SAMPLE_API_KEY, **kwargs):
        n = next(counter)
        device = Device(
            name=name or f'Display {n}',
            serial=f'EINK-{n:03d}-TEST',
            api_key_hash=Device.hash_api_key(api_key),
            **kwargs
        )
        db_session.add(device)
        db_session.commit()
        return device

    return _make


@pytest.fixture(scope='function')
def make_definition(plugin_service):
    counter = itertools.count(1)

    def _make(data_strategy=DataStrategy.WEBHOOK, markup=SAMPLE_MARKUP, **kwargs):
        n = next(counter)
        kwargs.setdefault('identifier', f'plugin-{n}')
        kwargs.setdefault('name', f'Plugin {n}')
        return plugin_service.create_definition(markup=markup, data_strategy=data_strategy, **kwargs)

    return _make


@pytest.fixture(scope='function')
def make_instance(plugin_service, make_definition):
    """Factory for PluginInstance records; creates a webhook definition when none is given"""
    counter = itertools.count(1)

    def _make(definition=None, settings=None, refresh_interval=3600, owner_id=1, name=None):
        n = next(counter)
        definition = definition or make_definition()
        return plugin_service.create_instance(
            definition.id,
            owner_id=owner_id,
            name=name or f'Instance {n}',
            settings=settings,
            refresh_interval=refresh_interval
        )

    return _make


@pytest.fixture(scope='function')
def add_item(db_session):
    def _add(device, instance, **kwargs):
        return PlaylistService.add_item(device.id, instance.id, **kwargs)

    return _add


@pytest.fixture(scope='function')
def sample_device(make_device):
    return make_device(name='Kitchen Display')


@pytest.fixture(scope='function')
def sample_instance(make_instance):
    return make_instance(name='Kitchen Messages')


@pytest.fixture(scope='function')
def auth_headers():
    return {'X-Device-Key': SAMPLE_API_KEY}
