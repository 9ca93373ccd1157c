"""Configuration loading from environment variables and memkeep.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_STORE_DIR = Path.home() / ".memkeep" / "memories"
_CONFIG_FILENAME = "memkeep.toml"


@dataclass
class StoreConfig:
    """Record store and write-path settings."""

    dir: Path = _DEFAULT_STORE_DIR
    dedup_window_seconds: float = 300.0
    access_boost: float = 0.02


@dataclass
class LifecycleConfig:
    """Decay, archival and consolidation parameters."""

    half_life_days: float = 30.0
    archive_age_days: float = 90.0
    archive_relevance_floor: float = 0.3
    merge_threshold: float = 0.85
    chain_depth: int = 2


@dataclass
class SchedulerConfig:
    """Periodic maintenance settings."""

    maintenance_interval: int = 3600
    consolidate: bool = False


@dataclass
class ServerConfig:
    """HTTP surface for external collaborators."""

    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class MemkeepConfig:
    """Top-level configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    pid_file: Path = Path.home() / ".memkeep" / "memkeep.pid"
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> MemkeepConfig:
    """Load configuration from environment variables and optional memkeep.toml.

    Priority: environment variables > memkeep.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memkeep/
        for candidate in [
            Path.cwd() / _CONFIG_FILENAME,
            Path.home() / ".memkeep" / _CONFIG_FILENAME,
        ]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    store_data = file_data.get("store", {})
    lifecycle_data = file_data.get("lifecycle", {})
    scheduler_data = file_data.get("scheduler", {})
    server_data = file_data.get("server", {})

    config = MemkeepConfig(
        store=StoreConfig(
            dir=Path(
                os.getenv("MEMKEEP_DIR", store_data.get("dir", str(_DEFAULT_STORE_DIR)))
            ).expanduser(),
            dedup_window_seconds=float(
                os.getenv("MEMKEEP_DEDUP_WINDOW", store_data.get("dedup_window_seconds", 300))
            ),
            access_boost=float(store_data.get("access_boost", 0.02)),
        ),
        lifecycle=LifecycleConfig(
            half_life_days=float(
                os.getenv("MEMKEEP_HALF_LIFE_DAYS", lifecycle_data.get("half_life_days", 30))
            ),
            archive_age_days=float(
                os.getenv("MEMKEEP_ARCHIVE_AGE_DAYS", lifecycle_data.get("archive_age_days", 90))
            ),
            archive_relevance_floor=float(lifecycle_data.get("archive_relevance_floor", 0.3)),
            merge_threshold=float(
                os.getenv("MEMKEEP_MERGE_THRESHOLD", lifecycle_data.get("merge_threshold", 0.85))
            ),
            chain_depth=int(lifecycle_data.get("chain_depth", 2)),
        ),
        scheduler=SchedulerConfig(
            maintenance_interval=int(
                os.getenv(
                    "MEMKEEP_MAINTENANCE_INTERVAL",
                    scheduler_data.get("maintenance_interval", 3600),
                )
            ),
            consolidate=bool(scheduler_data.get("consolidate", False)),
        ),
        server=ServerConfig(
            host=os.getenv("MEMKEEP_HOST", server_data.get("host", "127.0.0.1")),
            port=int(os.getenv("MEMKEEP_PORT", server_data.get("port", 8765))),
        ),
        log_level=os.getenv("MEMKEEP_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    if "pid_file" in file_data:
        config.pid_file = Path(file_data["pid_file"]).expanduser()
    return config
