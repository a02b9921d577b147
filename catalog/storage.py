import hashlib
import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def calculate_etag(content: bytes) -> str:
    return f'"{hashlib.md5(content).hexdigest()}"'


class ContentStorage:
    """Write-once blob files under a root directory.

    Structure: <root>/<bucket>/<name_hash>/<uuid>
    The name is hashed to avoid filesystem issues with arbitrary object names.
    Blobs are never rewritten; a new revision always gets a new file.
    """

    def __init__(self, root):
        self.root = Path(root)
        os.makedirs(self.root, exist_ok=True)

    def get_file_path(self, storage_path: str) -> Path:
        return self.root / storage_path

    def save_file(self, bucket: str, name: str, content: bytes) -> str:
        name_hash = hashlib.md5(name.encode()).hexdigest()
        directory = self.root / bucket / name_hash
        os.makedirs(directory, exist_ok=True)

        filename = uuid.uuid4().hex
        with open(directory / filename, "wb") as buffer:
            buffer.write(content)

        # Path relative to the storage root
        return f"{bucket}/{name_hash}/{filename}"

    def get_file_content(self, storage_path: str) -> bytes:
        """Raises OSError when the blob is missing or unreadable."""
        with open(self.get_file_path(storage_path), "rb") as f:
            return f.read()

    def delete_physical_file(self, storage_path: str):
        full_path = self.get_file_path(storage_path)
        if os.path.exists(full_path):
            os.remove(full_path)
            logger.debug("Removed blob %s", storage_path)
