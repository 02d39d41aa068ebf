"""
Append-only audit sink backed by the local filesystem.

Each object is written once under base_dir/<key> with an atomic rename.
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class LocalAuditSink:
    """Object sink writing one file per key."""

    def __init__(self, base_dir: str = "data/audit"):
        self.base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"Key escapes audit directory: {key}")
        return path

    def put_object(self, key: str, body: str) -> str:
        """
        Write an object.

        Args:
            key: Relative object key (e.g. vectors-log/2024-01-01/<id>.json)
            body: Serialized content

        Returns:
            Absolute path written
        """
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_name(path.name + '.tmp')
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                f.write(body)
            os.replace(temp_path, path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

        return str(path)

    def get_object(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding='utf-8')

    def list_keys(self, prefix: str = "") -> List[str]:
        """List object keys under a prefix, sorted."""
        if not self.base_dir.exists():
            return []

        keys = []
        for path in self.base_dir.rglob('*'):
            if path.is_file() and not path.name.endswith('.tmp'):
                key = path.relative_to(self.base_dir).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)
