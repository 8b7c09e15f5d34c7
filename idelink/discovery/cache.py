"""Offline snapshot of a host's capability list.

The host rewrites the snapshot whenever it (re)registers its tools; the relay
only reads it, to answer ``tools/list`` while no host is reachable.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import structlog

log = structlog.get_logger()


class CapabilityCache:
    """Single JSON file of the form ``{"tools": [...]}``."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def write(self, tools: list[dict[str, Any]]) -> bool:
        """Persist a capability list. Never raises.

        Returns:
            True if the snapshot was written
        """
        try:
            payload = json.dumps({"tools": list(tools)}, separators=(",", ":"))
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".tmp-cache-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, self.path)
            finally:
                Path(tmp_name).unlink(missing_ok=True)
        except Exception as e:
            log.warning("capability_cache_write_failed", path=str(self.path), error=str(e))
            return False

        log.debug("capability_cache_written", path=str(self.path), tools=len(tools))
        return True

    def read(self) -> Optional[str]:
        """Raw snapshot text, or None if no snapshot is available."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("capability_cache_read_failed", path=str(self.path), error=str(e))
            return None
        except UnicodeDecodeError as e:
            log.warning("capability_cache_corrupt", path=str(self.path), error=str(e))
            return None

    def tools(self) -> list[dict[str, Any]]:
        """Parsed capability list; empty when nothing is known."""
        raw = self.read()
        if raw is None:
            return []

        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            log.warning("capability_cache_corrupt", path=str(self.path), error=str(e))
            return []

        tools = data.get("tools") if isinstance(data, dict) else None
        if not isinstance(tools, list):
            return []
        return [t for t in tools if isinstance(t, dict)]

    def count(self) -> int:
        return len(self.tools())
