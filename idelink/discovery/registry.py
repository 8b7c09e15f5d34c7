"""File-based registry of running host instances.

Each host publishes one small file named ``<prefix><pid><suffix>`` into a
per-user directory. Readers prune records whose owning process has exited;
cleanup is opportunistic and safe to run from many processes at once.
"""

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import psutil
import structlog

log = structlog.get_logger()


@dataclass
class InstanceRecord:
    """How to reach one running host process."""

    process_id: int
    port: int
    project_path: str = ""
    modified: float = 0.0

    @property
    def has_project(self) -> bool:
        return bool(self.project_path)

    def to_json(self) -> str:
        """Serialize to the on-disk format."""
        return json.dumps({"port": self.port, "sln": self.project_path}, separators=(",", ":"))

    @classmethod
    def parse(cls, process_id: int, text: str, modified: float = 0.0) -> Optional["InstanceRecord"]:
        """Parse a record file body.

        Accepts the JSON object format and the legacy bare-port format.
        Returns None for anything else.
        """
        text = text.strip()
        if not text:
            return None

        if text.isascii() and text.isdigit():
            port = int(text)
            if not 0 < port < 65536:
                return None
            return cls(process_id=process_id, port=port, modified=modified)

        try:
            data = json.loads(text)
        except (ValueError, RecursionError):
            return None

        if not isinstance(data, dict):
            return None

        port = data.get("port")
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            return None

        project_path = data.get("sln") or ""
        if not isinstance(project_path, str):
            project_path = ""

        return cls(
            process_id=process_id,
            port=port,
            project_path=project_path,
            modified=modified,
        )


class InstanceRegistry:
    """Directory of instance records keyed by process id."""

    def __init__(
        self,
        directory: Path,
        prefix: str = "server.",
        suffix: str = ".port",
        pid_exists: Optional[Callable[[int], bool]] = None,
    ):
        """Initialize registry.

        Args:
            directory: Directory holding the record files
            prefix: File name prefix before the process id
            suffix: File name suffix after the process id
            pid_exists: Liveness check, defaults to psutil.pid_exists
        """
        self.directory = Path(directory).expanduser()
        self.prefix = prefix
        self.suffix = suffix
        self._pid_exists = pid_exists or psutil.pid_exists

    def path_for(self, process_id: int) -> Path:
        return self.directory / f"{self.prefix}{process_id}{self.suffix}"

    def publish(self, process_id: int, port: int, project_path: str = "") -> None:
        """Write (or overwrite) the record for a process."""
        record = InstanceRecord(process_id=process_id, port=port, project_path=project_path or "")
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_atomic(self.path_for(process_id), record.to_json())
        log.info("registry_published", pid=process_id, port=port, project=record.project_path)

    def update_project_path(self, process_id: int, project_path: str) -> bool:
        """Rewrite only the project path of an existing record.

        Returns:
            True if a record was updated, False if none exists
        """
        path = self.path_for(process_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.debug("registry_update_missing", pid=process_id)
            return False
        except (OSError, UnicodeDecodeError) as e:
            log.warning("registry_update_unreadable", pid=process_id, path=str(path), error=str(e))
            return False

        record = InstanceRecord.parse(process_id, text)
        if record is None:
            log.warning("registry_update_unreadable", pid=process_id, path=str(path))
            return False

        record.project_path = project_path or ""
        self._write_atomic(path, record.to_json())
        log.info("registry_project_updated", pid=process_id, project=record.project_path)
        return True

    def unpublish(self, process_id: int) -> None:
        """Remove a record. Never raises."""
        self._remove(self.path_for(process_id))

    def get(self, process_id: int) -> Optional[InstanceRecord]:
        """Return the live record for a process, pruning it if the process is gone."""
        path = self.path_for(process_id)
        if not path.exists():
            return None

        if not self._is_alive(process_id):
            log.info("registry_record_pruned", pid=process_id)
            self._remove(path)
            return None

        return self._read(process_id, path)

    def list_all(self) -> list[InstanceRecord]:
        """Return every live record, most recently modified first.

        Records owned by exited processes are deleted as a side effect.
        """
        records = []
        for process_id, path in self._scan():
            if not self._is_alive(process_id):
                log.info("registry_record_pruned", pid=process_id)
                self._remove(path)
                continue

            record = self._read(process_id, path)
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: r.modified, reverse=True)
        return records

    def cleanup_stale(self) -> int:
        """Delete every record whose process has exited.

        Returns:
            Number of records removed
        """
        removed = 0
        for process_id, path in self._scan():
            if not self._is_alive(process_id):
                self._remove(path)
                removed += 1
        if removed:
            log.info("registry_cleanup", removed=removed)
        return removed

    def _scan(self) -> list[tuple[int, Path]]:
        if not self.directory.is_dir():
            return []

        found = []
        for path in self.directory.glob(f"{self.prefix}*{self.suffix}"):
            pid_text = path.name[len(self.prefix):len(path.name) - len(self.suffix)]
            if pid_text.isascii() and pid_text.isdigit():
                found.append((int(pid_text), path))
        return found

    def _is_alive(self, process_id: int) -> bool:
        try:
            return bool(self._pid_exists(process_id))
        except Exception as e:
            log.debug("registry_liveness_check_failed", pid=process_id, error=str(e))
            return False

    def _read(self, process_id: int, path: Path) -> Optional[InstanceRecord]:
        try:
            text = path.read_text(encoding="utf-8")
            modified = path.stat().st_mtime
        except (OSError, UnicodeDecodeError) as e:
            log.debug("registry_read_failed", path=str(path), error=str(e))
            return None

        record = InstanceRecord.parse(process_id, text, modified=modified)
        if record is None:
            log.warning("registry_record_unreadable", path=str(path))
        return record

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.debug("registry_remove_failed", path=str(path), error=str(e))

    def _write_atomic(self, path: Path, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=self.suffix + ".new")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
