"""
Locked, atomic file helpers and the small preference store used for the
developer token
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

import portalocker

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def safe_read_text(filepath: PathLike) -> Optional[str]:
    """Read a file under a shared lock; None when missing, unreadable or not UTF-8"""
    filepath = str(filepath)
    if not os.path.exists(filepath):
        return None
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_SH)
            try:
                return f.read()
            finally:
                portalocker.unlock(f)
    except OSError as e:
        logger.warning("Error reading %s: %s", filepath, e)
        return None
    except UnicodeDecodeError as e:
        logger.warning("%s is not valid UTF-8, ignoring it: %s", filepath, e)
        return None


def safe_write_text(filepath: PathLike, data: str) -> bool:
    """Write via a unique temp file + fsync + rename so readers never see a partial file"""
    filepath = str(filepath)
    directory = os.path.dirname(filepath) or "."
    temp_filepath = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, temp_filepath = tempfile.mkstemp(
            dir=directory, prefix=os.path.basename(filepath) + ".", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            finally:
                portalocker.unlock(f)
        os.replace(temp_filepath, filepath)
        return True
    except OSError as e:
        logger.warning("Error writing %s: %s", filepath, e)
        if temp_filepath and os.path.exists(temp_filepath):
            try:
                os.remove(temp_filepath)
            except OSError:
                logger.debug("Could not remove temp file %s", temp_filepath)
        return False


def safe_read_json(filepath: PathLike, default=None):
    """Locked JSON read; corrupt or empty files yield the default"""
    content = safe_read_text(filepath)
    if content is None or not content.strip():
        return default
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        logger.warning("%s is corrupted, ignoring it", filepath)
        return default


def safe_write_json(filepath: PathLike, data, indent=2) -> bool:
    return safe_write_text(filepath, json.dumps(data, indent=indent))


class JsonPreferenceStore:
    """Opaque string preferences kept in one JSON file (not a secret store)"""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        data = safe_read_json(self.path, default={})
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def put(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            if not safe_write_json(self.path, data):
                raise OSError(f"Could not persist preference {key!r} to {self.path}")

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is None:
                return
            if not safe_write_json(self.path, data):
                raise OSError(f"Could not remove preference {key!r} from {self.path}")
