"""Host instance discovery.

Hosts publish a small record file per process; relays read those records,
correlate them with project descriptors found near the working directory,
and fall back to a cached capability list when no host is reachable.
"""

from idelink.discovery.cache import CapabilityCache
from idelink.discovery.installations import HostInstallation, detect_installations
from idelink.discovery.registry import InstanceRecord, InstanceRegistry
from idelink.discovery.resolver import (
    Endpoint,
    InstanceResolver,
    Resolution,
    Selector,
    find_project_descriptors,
    normalize_project_path,
)

__all__ = [
    "CapabilityCache",
    "Endpoint",
    "HostInstallation",
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceResolver",
    "Resolution",
    "Selector",
    "detect_installations",
    "find_project_descriptors",
    "normalize_project_path",
]
