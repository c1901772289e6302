"""
Image Storage Utilities
Rendered bitmap files on disk, addressed by opaque handles
"""
import os
import secrets
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from models import db, RenderedContent

logger = logging.getLogger(__name__)


class ImageStorageError(Exception):
    """Custom exception for bitmap storage operations"""
    pass


class ImageStorage:
    """Writes, resolves and removes rendered bitmaps"""

    def __init__(self, folder: str):
        self.folder = folder
        os.makedirs(self.folder, exist_ok=True)

    @staticmethod
    def make_handle(instance_id: int, device_id: Optional[int], extension: str = 'png') -> str:
        device_part = device_id if device_id is not None else 'any'
        return f"{instance_id}_{device_part}_{secrets.token_hex(8)}.{extension}"

    def path_for(self, handle: str) -> str:
        # Handles are bare file names
        if os.path.basename(handle) != handle or handle in ('', '.', '..'):
            raise ImageStorageError(f"Invalid image handle: {handle}")
        return os.path.join(self.folder, handle)

    def save(self, bitmap: bytes, instance_id: int, device_id: Optional[int], extension: str = 'png') -> str:
        """
        Write a bitmap and return its handle

        The file is written under a temporary name and moved into place,
        so readers never see a partial image.
        """
        handle = self.make_handle(instance_id, device_id, extension)
        path = self.path_for(handle)
        tmp_path = f"{path}.tmp"

        try:
            with open(tmp_path, 'wb') as f:
                f.write(bitmap)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise ImageStorageError(f"Failed to write bitmap {handle}: {e}")

        return handle

    def read(self, handle: str) -> bytes:
        try:
            with open(self.path_for(handle), 'rb') as f:
                return f.read()
        except OSError as e:
            raise ImageStorageError(f"Failed to read bitmap {handle}: {e}")

    def exists(self, handle: str) -> bool:
        return os.path.exists(self.path_for(handle))

    def delete(self, handle: Optional[str]) -> bool:
        """Remove a bitmap; a missing file is not an error"""
        if not handle:
            return False

        path = self.path_for(handle)
        if not os.path.exists(path):
            return False

        os.remove(path)
        return True

    def delete_many(self, handles: Iterable[str]) -> Dict:
        """
        Remove several bitmaps, collecting failures instead of stopping

        Returns:
            dict: Deletion results with deleted count and errors
        """
        deleted = 0
        errors = []

        for handle in handles:
            try:
                if self.delete(handle):
                    deleted += 1
            except (OSError, ImageStorageError) as e:
                errors.append(f'Failed to delete bitmap {handle}: {e}')

        for error in errors:
            logger.warning(error)

        return {'deleted': deleted, 'errors': errors}

    def list_handles(self) -> List[str]:
        return sorted(name for name in os.listdir(self.folder) if not name.endswith('.tmp'))

    def find_orphaned_files(self) -> List[str]:
        """Bitmaps on disk that no rendered content row points to"""
        known = {path for (path,) in db.session.query(RenderedContent.image_path).all()}
        return [handle for handle in self.list_handles() if handle not in known]

    def get_storage_statistics(self) -> Dict:
        """
        Get storage statistics for rendered content

        Returns:
            dict: File count, total bytes on disk and tracked bytes
        """
        handles = self.list_handles()
        total_size = sum(os.path.getsize(self.path_for(h)) for h in handles)
        tracked_size = db.session.query(func.sum(RenderedContent.file_size)).scalar() or 0

        return {
            'file_count': len(handles),
            'total_size': total_size,
            'total_size_mb': total_size / (1024 ** 2),
            'tracked_size': tracked_size,
            'rendered_count': RenderedContent.query.count()
        }
