"""Detect host IDE installations that could be started.

Used only to enrich offline error messages; nothing here launches anything.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

log = structlog.get_logger()

# Install folder name -> product name
VERSION_DISPLAY_NAMES = {
    "2019": "VS 2019",
    "2022": "VS 2022",
    "18": "VS 2026",
    "19": "VS 19",
    "20": "VS 20",
}

EDITIONS = ("Community", "Professional", "Enterprise", "Preview")

EXECUTABLE_PARTS = ("Common7", "IDE", "devenv.exe")


@dataclass(frozen=True)
class HostInstallation:
    """One installed IDE that can host the automation extension."""

    display_name: str
    executable: Path

    def to_dict(self) -> dict[str, str]:
        return {"displayName": self.display_name, "executable": str(self.executable)}


def detect_installations(install_root: Optional[Path]) -> list[HostInstallation]:
    """Scan ``<root>/<version>/<edition>/Common7/IDE/devenv.exe``.

    Args:
        install_root: Folder containing one sub-folder per product version

    Returns:
        Installations found, in version then edition order
    """
    if install_root is None:
        return []

    root = Path(install_root)
    try:
        if not root.is_dir():
            return []
    except OSError:
        return []

    results = []
    for version, name in VERSION_DISPLAY_NAMES.items():
        for edition in EDITIONS:
            executable = root.joinpath(version, edition, *EXECUTABLE_PARTS)
            try:
                exists = executable.is_file()
            except OSError as e:
                log.debug("installation_probe_failed", path=str(executable), error=str(e))
                continue
            if exists:
                results.append(HostInstallation(f"{name} {edition}", executable))

    log.debug("installations_detected", root=str(root), count=len(results))
    return results
