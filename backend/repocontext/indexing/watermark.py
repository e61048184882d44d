"""Per-source "last processed" watermarks persisted in a JSON state file."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from ..utils.clock import Clock, SystemClock, format_timestamp
from ..utils.file_utils import atomic_write_bytes

logger = logging.getLogger(__name__)


class WatermarkStore:
    """State file layout::

        {"sources": {"<name>": {"last_processed": "...", "updated_at": "..."}}}

    Advancing to the current value does not touch the file.
    """

    def __init__(self, path: Union[str, Path], clock: Optional[Clock] = None) -> None:
        self.path = Path(path)
        self.clock = clock or SystemClock()
        self._state: Optional[Dict[str, Dict[str, str]]] = None

    def _load(self) -> Dict[str, Dict[str, str]]:
        if self._state is None:
            self._state = {}
            if self.path.exists():
                try:
                    data = json.loads(self.path.read_text(encoding="utf-8"))
                    self._state = dict(data.get("sources", {}))
                except (OSError, ValueError, AttributeError) as e:
                    logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
        return self._state

    def _save(self) -> None:
        payload = json.dumps({"sources": self._load()}, indent=2, sort_keys=True, ensure_ascii=False)
        atomic_write_bytes(self.path, payload.encode("utf-8"))

    def get(self, name: str) -> Optional[str]:
        entry = self._load().get(name)
        return entry.get("last_processed") if entry else None

    def advance(self, name: str, value: Optional[str]) -> bool:
        """Record `value` for `name`; returns False when nothing changed."""
        if value is None or self.get(name) == value:
            return False
        self._load()[name] = {
            "last_processed": value,
            "updated_at": format_timestamp(self.clock.now()),
        }
        self._save()
        logger.debug(f"Watermark {name} -> {value}")
        return True

    def reset(self) -> None:
        self._state = {}
        if self.path.exists():
            self._save()
        logger.info(f"Watermarks reset ({self.path})")

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {name: entry.get("last_processed") for name, entry in self._load().items()}
