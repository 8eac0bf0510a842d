"""
Client-side session pointer cache.

One string pointer per funnel id, so a user can be mid-flow in two funnels
at once. Pointers survive reloads but are plain cache entries: anything read
back is validated by the recovery layer before use.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "funnel_session_"


class PointerCache(ABC):
    """Key-value store for session pointers, keyed by funnel id."""

    def __init__(self, key_prefix: str = DEFAULT_KEY_PREFIX):
        self.key_prefix = key_prefix

    def key_for(self, funnel_id: str) -> str:
        return f"{self.key_prefix}{funnel_id}"

    @abstractmethod
    def get(self, funnel_id: str) -> Optional[str]:
        """Cached pointer for a funnel, or None."""

    @abstractmethod
    def set(self, funnel_id: str, session_id: str) -> None:
        """Cache a pointer for a funnel."""

    @abstractmethod
    def remove(self, funnel_id: str) -> None:
        """Forget the pointer for a funnel."""


class InMemoryPointerCache(PointerCache):
    """Pointer cache held in a dict (tests, single-process embedding)."""

    def __init__(self, key_prefix: str = DEFAULT_KEY_PREFIX):
        super().__init__(key_prefix)
        self.entries: Dict[str, object] = {}

    def get(self, funnel_id: str) -> Optional[str]:
        value = self.entries.get(self.key_for(funnel_id))
        return value if isinstance(value, str) else None

    def set(self, funnel_id: str, session_id: str) -> None:
        self.entries[self.key_for(funnel_id)] = session_id

    def remove(self, funnel_id: str) -> None:
        self.entries.pop(self.key_for(funnel_id), None)


class JsonFilePointerCache(PointerCache):
    """
    Pointer cache persisted to a JSON file.

    An unreadable or malformed file is treated as empty; it is overwritten on
    the next write.
    """

    def __init__(self, path: Path, key_prefix: str = DEFAULT_KEY_PREFIX):
        super().__init__(key_prefix)
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, object]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding unreadable pointer cache {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp_path.replace(self.path)

    def get(self, funnel_id: str) -> Optional[str]:
        with self._lock:
            value = self._read().get(self.key_for(funnel_id))
        return value if isinstance(value, str) else None

    def set(self, funnel_id: str, session_id: str) -> None:
        with self._lock:
            data = self._read()
            data[self.key_for(funnel_id)] = session_id
            self._write(data)

    def remove(self, funnel_id: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(self.key_for(funnel_id), None) is not None:
                self._write(data)


def create_pointer_cache(path: Optional[Path] = None) -> PointerCache:
    """
    Pointer cache keyed with the configured FUNNEL_POINTER_KEY_PREFIX.

    Args:
        path: JSON file to persist pointers in; in-memory when omitted
    """
    from config.settings import get_funnel_settings
    key_prefix = get_funnel_settings().pointer_key_prefix
    if path is None:
        return InMemoryPointerCache(key_prefix)
    return JsonFilePointerCache(path, key_prefix)
