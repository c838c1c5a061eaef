"""
Media path management for the drone relay.
Resolves and creates the folders that hold photos, recordings and logs.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from drone_relay.config import settings
from drone_relay.constants import (
    CURRENT_FRAME_FILE, LOGS_DIR, RECORDINGS_DIR, SNAPSHOTS_DIR, TS_RECORDINGS_DIR
)

logger = logging.getLogger(__name__)


class MediaPathManager:
    """Manages the media directory tree under one root"""

    def __init__(self, root: Optional[Path] = None):
        self._root = Path(root) if root else settings.MEDIA_ROOT
        self._dirs: Dict[str, Path] = {
            'root': self._root,
            'photos': self._root / SNAPSHOTS_DIR,
            'recordings': self._root / RECORDINGS_DIR,
            'ts_recordings': self._root / TS_RECORDINGS_DIR,
            'logs': self._root / LOGS_DIR,
        }

    def ensure_directories(self) -> None:
        """
        Create every media directory.

        Raises:
            OSError: a directory could not be created; the relay cannot run without it
        """
        for dir_name, dir_path in self._dirs.items():
            try:
                dir_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.critical(f"Failed to create media directory {dir_name} at {dir_path}: {e}")
                raise
            logger.debug(f"Media directory ready: {dir_name} -> {dir_path}")

    @property
    def root_path(self) -> Path:
        return self._root

    @property
    def photos_path(self) -> Path:
        """Snapshots and captured photos"""
        return self._dirs['photos']

    @property
    def recordings_path(self) -> Path:
        """Finished MP4 recordings"""
        return self._dirs['recordings']

    @property
    def ts_recordings_path(self) -> Path:
        """Raw transport-stream companion copies"""
        return self._dirs['ts_recordings']

    @property
    def logs_path(self) -> Path:
        return self._dirs['logs']

    @property
    def current_frame_path(self) -> Path:
        """Still image continuously overwritten by the transcoder"""
        return self.photos_path / CURRENT_FRAME_FILE


# Global instance for easy access
_path_manager: Optional[MediaPathManager] = None


def get_path_manager() -> MediaPathManager:
    """Get the global MediaPathManager instance"""
    global _path_manager
    if _path_manager is None:
        _path_manager = MediaPathManager()
    return _path_manager
