"""
Rendering Service Client
Turns a template plus data into a device bitmap via an external renderer
"""
import hashlib
import logging
import time
from typing import Any, Dict, Optional

import requests

from utils.errors import RenderServiceError, RenderTimeoutError

logger = logging.getLogger(__name__)


def calculate_content_hash(bitmap: bytes) -> str:
    """SHA256 hex digest of a bitmap"""
    return hashlib.sha256(bitmap).hexdigest()


class RenderResult:
    """Bitmap produced by a rendering service"""

    def __init__(self, bitmap: bytes, content_hash: Optional[str] = None, mime_type: str = 'image/png'):
        self.bitmap = bitmap
        self.content_hash = content_hash or calculate_content_hash(bitmap)
        self.mime_type = mime_type

    @property
    def size(self) -> int:
        return len(self.bitmap)

    @property
    def extension(self) -> str:
        return {'image/png': 'png', 'image/bmp': 'bmp'}.get(self.mime_type, 'bin')


class RenderingService:
    """Interface every renderer implements"""

    def render(self, template: str, data: Dict[str, Any], width: int, height: int,
               bit_depth: int, timeout: float) -> RenderResult:
        raise NotImplementedError


class HttpRenderingService(RenderingService):
    """Renderer reached over HTTP"""

    def __init__(self, base_url: str, user_agent: str = 'Inkwell/1.0', clock=time.monotonic):
        self.base_url = base_url.rstrip('/')
        self.session = requests.Session()
        self.session.headers.update({'User-Agent': user_agent})
        self.clock = clock

    def render(self, template, data, width, height, bit_depth, timeout):
        """
        POST the template and data to the renderer

        Response body is the bitmap; an X-Content-Hash header, when present,
        is used as the content hash. The whole exchange, body included, must
        finish within `timeout` seconds.

        Raises:
            RenderTimeoutError: renderer did not answer in time
            RenderServiceError: renderer unreachable or answered with an error
        """
        deadline = self.clock() + timeout
        try:
            response = self.session.post(
                f"{self.base_url}/render",
                json={
                    'template': template,
                    'data': data,
                    'width': width,
                    'height': height,
                    'bit_depth': bit_depth
                },
                timeout=timeout,
                stream=True
            )
        except requests.exceptions.Timeout:
            raise RenderTimeoutError(f"renderer did not answer within {timeout}s")
        except requests.exceptions.RequestException as e:
            raise RenderServiceError(f"renderer unreachable: {e}")

        bitmap = self._read_body(response, deadline, timeout)

        if response.status_code != 200:
            raise RenderServiceError(
                f"renderer returned {response.status_code}: {bitmap[:200].decode('utf-8', 'replace')}"
            )

        if not bitmap:
            raise RenderServiceError("renderer returned an empty bitmap")

        return RenderResult(
            bitmap,
            content_hash=response.headers.get('X-Content-Hash'),
            mime_type=response.headers.get('Content-Type', 'image/png').split(';')[0]
        )

    def _read_body(self, response, deadline: float, timeout: float) -> bytes:
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=65536):
                if self.clock() > deadline:
                    logger.warning(f"Renderer body still streaming after {timeout}s, giving up")
                    raise RenderTimeoutError(f"renderer did not finish within {timeout}s")
                chunks.append(chunk)
        except requests.exceptions.Timeout:
            raise RenderTimeoutError(f"renderer did not finish within {timeout}s")
        except requests.exceptions.RequestException as e:
            raise RenderServiceError(f"renderer connection failed: {e}")
        finally:
            response.close()
        return b''.join(chunks)
