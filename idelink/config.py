"""Configuration for idelink with validation."""

import os
from pathlib import Path
from typing import Optional

import structlog
import toml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from idelink.core.retry import RetryConfig

log = structlog.get_logger()


def _default_install_root() -> Path:
    program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
    return Path(program_files) / "Microsoft Visual Studio"


class HostConfig(BaseModel):
    """Host-side dispatch configuration."""
    probe_timeout: float = Field(gt=0, default=10.0)
    handler_timeout: float = Field(gt=0, default=90.0)
    max_workers: int = Field(gt=0, le=64, default=4)


class IdelinkConfig(BaseModel):
    """Main configuration for idelink with validation."""

    model_config = ConfigDict(validate_assignment=True)

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".idelink")
    record_prefix: str = "server."
    record_suffix: str = ".port"
    cache_file: str = "tools-cache.json"
    install_root: Path = Field(default_factory=_default_install_root)

    # Discovery
    descriptor_patterns: list[str] = Field(default_factory=lambda: ["*.sln", "*.slnx"])
    max_walk_depth: int = Field(gt=0, default=32)
    discovery_attempts: int = Field(gt=0, default=10)
    discovery_interval: float = Field(ge=0, default=1.0)

    # Relay
    request_timeout: float = Field(gt=0, default=120.0)
    max_line_bytes: int = Field(gt=0, default=16 * 1024 * 1024)

    # Host
    host: HostConfig = Field(default_factory=HostConfig)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    log_json: bool = False

    @field_validator('record_prefix', 'record_suffix', 'cache_file')
    @classmethod
    def no_separators(cls, v):
        if "/" in v or "\\" in v:
            raise ValueError('File name parts cannot contain path separators')
        return v

    @field_validator('descriptor_patterns')
    @classmethod
    def patterns_not_empty(cls, v):
        patterns = [p.strip() for p in v if p and p.strip()]
        if not patterns:
            raise ValueError('At least one project descriptor pattern is required')
        return patterns

    @model_validator(mode='after')
    def relay_outlasts_host(self):
        host_worst_case = self.host.probe_timeout + self.host.handler_timeout
        if self.request_timeout <= host_worst_case:
            raise ValueError(
                f'request_timeout ({self.request_timeout:g}s) must exceed the host '
                f'worst case ({host_worst_case:g}s = probe_timeout + handler_timeout)'
            )
        return self

    @property
    def cache_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.cache_file

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'IdelinkConfig':
        """Load configuration from TOML file.

        Search order if path not provided:
        1. ./idelink.toml (project-specific)
        2. ~/.idelink/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            IdelinkConfig instance
        """
        if path is None:
            candidates = [
                Path("idelink.toml"),
                Path("~/.idelink/config.toml").expanduser()
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.debug("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.debug("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.debug("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            data = self.model_dump(mode='json', exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: IdelinkConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    margin = config.request_timeout - (config.host.probe_timeout + config.host.handler_timeout)
    if margin < 10:
        warnings.append(
            f"Relay timeout leaves only {margin:.1f}s over the host worst case; "
            "slow host successes may be reported as relay timeouts"
        )

    discovery_wait = RetryConfig.fixed_interval(
        config.discovery_attempts, config.discovery_interval, ()
    ).total_wait()
    if discovery_wait > 60:
        warnings.append(f"Start-up discovery may take up to {discovery_wait:.0f}s")

    # Check data directory is writable
    data_dir = Path(config.data_dir).expanduser()
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        test_file = data_dir / ".write_test"
        test_file.touch()
        test_file.unlink()
    except Exception as e:
        warnings.append(f"Data directory not writable: {e}")

    return warnings
