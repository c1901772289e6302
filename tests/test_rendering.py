"""
Tests for the HTTP rendering client.

The session's post is patched, so no renderer is contacted; a scripted
clock stands in for time passing while the body streams in.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from utils.errors import RenderServiceError, RenderTimeoutError
from utils.rendering import HttpRenderingService, calculate_content_hash

RENDERER_URL = 'http://renderer.test'


def fake_response(status_code=200, chunks=(b'PNG', b'DATA'), headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {'Content-Type': 'image/png'}
    response.iter_content.return_value = list(chunks)
    return response


def render(service, timeout=5):
    return service.render('<h1>{{ title }}</h1>', {'title': 'Hi'}, 800, 480, 1, timeout)


class TestHttpRenderingService:

    def test_bitmap_and_hash(self):
        service = HttpRenderingService(RENDERER_URL)
        with patch.object(service.session, 'post', return_value=fake_response()) as post:
            result = render(service)

        assert result.bitmap == b'PNGDATA'
        assert result.content_hash == calculate_content_hash(b'PNGDATA')
        _, kwargs = post.call_args
        assert kwargs['timeout'] == 5
        assert kwargs['stream'] is True
        assert kwargs['json']['width'] == 800

    def test_renderer_supplied_hash(self):
        service = HttpRenderingService(RENDERER_URL)
        response = fake_response(headers={'Content-Type': 'image/bmp', 'X-Content-Hash': 'abc123'})
        with patch.object(service.session, 'post', return_value=response):
            result = render(service)

        assert result.content_hash == 'abc123'
        assert result.extension == 'bmp'

    def test_slow_body_hits_overall_deadline(self):
        ticks = iter([0, 1, 2, 9])
        service = HttpRenderingService(RENDERER_URL, clock=lambda: next(ticks))
        response = fake_response(chunks=(b'a', b'b', b'c'))

        with patch.object(service.session, 'post', return_value=response):
            with pytest.raises(RenderTimeoutError, match='did not finish within 5s'):
                render(service, timeout=5)

        response.close.assert_called_once()

    def test_connect_timeout(self):
        service = HttpRenderingService(RENDERER_URL)
        with patch.object(service.session, 'post', side_effect=requests.exceptions.ConnectTimeout()):
            with pytest.raises(RenderTimeoutError):
                render(service)

    def test_unreachable_renderer(self):
        service = HttpRenderingService(RENDERER_URL)
        with patch.object(service.session, 'post', side_effect=requests.exceptions.ConnectionError('refused')):
            with pytest.raises(RenderServiceError, match='unreachable'):
                render(service)

    def test_error_status(self):
        service = HttpRenderingService(RENDERER_URL)
        with patch.object(service.session, 'post', return_value=fake_response(500, chunks=(b'template error',))):
            with pytest.raises(RenderServiceError, match='500: template error'):
                render(service)

    def test_empty_bitmap(self):
        service = HttpRenderingService(RENDERER_URL)
        with patch.object(service.session, 'post', return_value=fake_response(chunks=())):
            with pytest.raises(RenderServiceError, match='empty bitmap'):
                render(service)
