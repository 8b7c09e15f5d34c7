"""Pick the host instance a relay should talk to.

Resolution order:
1. Explicit process id (optionally cross-checked against a project path)
2. Explicit project path
3. Project descriptors found by walking up from the working directory
4. The most recently active live instance
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import structlog

from idelink.discovery.registry import InstanceRecord, InstanceRegistry

log = structlog.get_logger()

LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True)
class Selector:
    """Hints a relay was started with."""

    process_id: Optional[int] = None
    project_path: Optional[str] = None

    @property
    def is_auto(self) -> bool:
        return self.process_id is None and not self.project_path


@dataclass(frozen=True)
class Endpoint:
    """Network address of one host instance."""

    port: int
    process_id: Optional[int] = None
    project_path: str = ""
    host: str = LOOPBACK_HOST

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @classmethod
    def from_record(cls, record: InstanceRecord) -> "Endpoint":
        return cls(
            port=record.port,
            process_id=record.process_id,
            project_path=record.project_path,
        )


@dataclass
class Resolution:
    """Outcome of one resolve pass."""

    record: Optional[InstanceRecord] = None
    candidates: list[Path] = field(default_factory=list)
    target_project: Optional[str] = None

    @property
    def endpoint(self) -> Optional[Endpoint]:
        if self.record is None:
            return None
        return Endpoint.from_record(self.record)

    @property
    def found(self) -> bool:
        return self.record is not None


def normalize_project_path(path: str) -> str:
    """Absolute, normalized, case-folded form used for comparisons."""
    if not path:
        return ""
    expanded = os.path.expanduser(path.strip())
    normalized = os.path.normpath(os.path.realpath(expanded))
    return os.path.normcase(normalized).replace("\\", "/").casefold()


def same_project(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return normalize_project_path(a) == normalize_project_path(b)


def find_project_descriptors(
    start: Path,
    patterns: Sequence[str],
    max_depth: int = 32,
) -> list[Path]:
    """Collect project descriptors from ``start`` and each of its ancestors.

    Every level is scanned (not just the first one with a match), stopping at
    the filesystem root or after ``max_depth`` levels.

    Args:
        start: Directory to start from
        patterns: Glob patterns such as ``*.sln``
        max_depth: Maximum number of directory levels to inspect

    Returns:
        Matching files in discovery order (nearest level first, by name within a level)
    """
    found: list[Path] = []
    seen: set[Path] = set()
    current = Path(start).expanduser().resolve()

    for _ in range(max_depth):
        try:
            level: set[Path] = set()
            for pattern in patterns:
                level.update(p for p in current.glob(pattern) if p.is_file())
        except OSError as e:
            log.debug("descriptor_scan_failed", directory=str(current), error=str(e))
            level = set()

        for path in sorted(level, key=lambda p: p.name.lower()):
            if path not in seen:
                seen.add(path)
                found.append(path)

        parent = current.parent
        if parent == current:
            break
        current = parent

    return found


class InstanceResolver:
    """Maps a Selector onto a live registry record."""

    def __init__(
        self,
        registry: InstanceRegistry,
        start_dir: Optional[Path] = None,
        descriptor_patterns: Sequence[str] = ("*.sln", "*.slnx"),
        max_walk_depth: int = 32,
    ):
        self.registry = registry
        self.start_dir = Path(start_dir) if start_dir else Path.cwd()
        self.descriptor_patterns = list(descriptor_patterns)
        self.max_walk_depth = max_walk_depth

    def resolve(self, selector: Selector) -> Resolution:
        """Resolve a selector to a record. Never raises for a missing instance."""
        if selector.process_id is not None:
            return self._resolve_pid(selector.process_id, selector.project_path)

        if selector.project_path:
            target = str(Path(selector.project_path).expanduser().resolve())
            return Resolution(record=self._match_project(target), target_project=target)

        return self._resolve_auto()

    def discover_candidates(self) -> list[Path]:
        return find_project_descriptors(
            self.start_dir, self.descriptor_patterns, self.max_walk_depth
        )

    def _resolve_pid(self, process_id: int, project_path: Optional[str]) -> Resolution:
        record = self.registry.get(process_id)
        if record is None:
            log.debug("resolve_pid_missing", pid=process_id)
            return Resolution(target_project=project_path)

        if project_path and not same_project(record.project_path, project_path):
            log.info(
                "resolve_pid_project_mismatch",
                pid=process_id,
                expected=project_path,
                actual=record.project_path,
            )
            return Resolution(target_project=project_path)

        return Resolution(record=record, target_project=project_path)

    def _match_project(
        self, project_path: str, records: Optional[list[InstanceRecord]] = None
    ) -> Optional[InstanceRecord]:
        if records is None:
            records = self.registry.list_all()
        for record in records:
            if same_project(record.project_path, project_path):
                return record
        return None

    def _resolve_auto(self) -> Resolution:
        candidates = self.discover_candidates()

        if not candidates:
            records = self.registry.list_all()
            return Resolution(record=records[0] if records else None, candidates=[])

        if len(candidates) == 1:
            target = str(candidates[0])
            return Resolution(
                record=self._match_project(target),
                candidates=candidates,
                target_project=target,
            )

        records = self.registry.list_all()
        for candidate in candidates:
            record = self._match_project(str(candidate), records)
            if record is not None:
                return Resolution(
                    record=record,
                    candidates=candidates,
                    target_project=str(candidate),
                )

        log.info("resolve_no_candidate_open", candidates=[str(c) for c in candidates])
        return Resolution(candidates=candidates)
