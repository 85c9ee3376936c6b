"""
settings.py
===========
Configuration for the updater, read from ``config.json``.

Layout (every key optional)::

    {
      "paths":    {"plugins_dir": "plugins", "list_file": "list.yml",
                   "update_dir": "plugins/update", "use_update_folder": true},
      "updates":  {"platform": "paper", "max_parallel": 4, "interval_minutes": 0,
                   "ignore_duplicates": true},
      "http":     {"connect_timeout": 10, "read_timeout": 30, "max_retries": 4,
                   "backoff_base": 0.5, "backoff_max": 8.0, "github_token": ""},
      "rollback": {"enabled": false, "path": "plugins/aup-rollbacks",
                   "max_copies": 3, "filters": []},
      "build":    {"auto_compile": true, "compile_when_no_jar": true,
                   "timeout": 1200, "jitpack_poll_attempts": 10,
                   "jitpack_poll_delay": 3.0, "min_jar_size": 10240}
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("config.json")


@dataclass
class UpdateSettings:
    """Flat view of config.json with defaults filled in."""

    # paths
    plugins_dir: Path = Path("plugins")
    list_file: Path = Path("list.yml")
    update_dir: Path = Path("plugins") / "update"
    use_update_folder: bool = True

    # updates
    platform: str = "paper"
    max_parallel: int = 4
    interval_minutes: float = 0
    ignore_duplicates: bool = True

    # http
    connect_timeout: float = 10
    read_timeout: float = 30
    max_retries: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    github_token: str = ""

    # rollback
    rollback_enabled: bool = False
    rollback_path: Path = Path("plugins") / "aup-rollbacks"
    rollback_max_copies: int = 3
    rollback_filters: List[str] = field(default_factory=list)

    # build
    auto_compile: bool = True
    compile_when_no_jar: bool = True
    build_timeout: int = 1200
    jitpack_poll_attempts: int = 10
    jitpack_poll_delay: float = 3.0
    min_jar_size: int = 10 * 1024

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "UpdateSettings":
        """Build settings from a parsed config.json dictionary."""
        paths = config.get("paths", {})
        updates = config.get("updates", {})
        http = config.get("http", {})
        rollback = config.get("rollback", {})
        build = config.get("build", {})
        defaults = cls()

        plugins_dir = Path(paths.get("plugins_dir", defaults.plugins_dir))
        return cls(
            plugins_dir=plugins_dir,
            list_file=Path(paths.get("list_file", defaults.list_file)),
            update_dir=Path(paths.get("update_dir", plugins_dir / "update")),
            use_update_folder=bool(paths.get("use_update_folder", True)),
            platform=str(updates.get("platform", defaults.platform)).lower(),
            max_parallel=max(1, int(updates.get("max_parallel", defaults.max_parallel))),
            interval_minutes=float(updates.get("interval_minutes", 0)),
            ignore_duplicates=bool(updates.get("ignore_duplicates", True)),
            connect_timeout=float(http.get("connect_timeout", defaults.connect_timeout)),
            read_timeout=float(http.get("read_timeout", defaults.read_timeout)),
            max_retries=int(http.get("max_retries", defaults.max_retries)),
            backoff_base=float(http.get("backoff_base", defaults.backoff_base)),
            backoff_max=float(http.get("backoff_max", defaults.backoff_max)),
            github_token=str(http.get("github_token") or ""),
            rollback_enabled=bool(rollback.get("enabled", False)),
            rollback_path=Path(rollback.get("path", plugins_dir / "aup-rollbacks")),
            rollback_max_copies=max(1, int(rollback.get("max_copies", defaults.rollback_max_copies))),
            rollback_filters=[str(f) for f in rollback.get("filters") or []],
            auto_compile=bool(build.get("auto_compile", True)),
            compile_when_no_jar=bool(build.get("compile_when_no_jar", True)),
            build_timeout=int(build.get("timeout", defaults.build_timeout)),
            jitpack_poll_attempts=int(build.get("jitpack_poll_attempts", defaults.jitpack_poll_attempts)),
            jitpack_poll_delay=float(build.get("jitpack_poll_delay", defaults.jitpack_poll_delay)),
            min_jar_size=int(build.get("min_jar_size", defaults.min_jar_size)),
        )

    def to_config(self) -> Dict[str, Any]:
        return {
            "paths": {
                "plugins_dir": str(self.plugins_dir),
                "list_file": str(self.list_file),
                "update_dir": str(self.update_dir),
                "use_update_folder": self.use_update_folder,
            },
            "updates": {
                "platform": self.platform,
                "max_parallel": self.max_parallel,
                "interval_minutes": self.interval_minutes,
                "ignore_duplicates": self.ignore_duplicates,
            },
            "http": {
                "connect_timeout": self.connect_timeout,
                "read_timeout": self.read_timeout,
                "max_retries": self.max_retries,
                "backoff_base": self.backoff_base,
                "backoff_max": self.backoff_max,
                "github_token": self.github_token,
            },
            "rollback": {
                "enabled": self.rollback_enabled,
                "path": str(self.rollback_path),
                "max_copies": self.rollback_max_copies,
                "filters": list(self.rollback_filters),
            },
            "build": {
                "auto_compile": self.auto_compile,
                "compile_when_no_jar": self.compile_when_no_jar,
                "timeout": self.build_timeout,
                "jitpack_poll_attempts": self.jitpack_poll_attempts,
                "jitpack_poll_delay": self.jitpack_poll_delay,
                "min_jar_size": self.min_jar_size,
            },
        }


def load_settings(path: str | Path = CONFIG_PATH) -> UpdateSettings:
    """Load config.json; a missing or unreadable file yields the defaults."""
    path = Path(path)
    config: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                config = json.load(fh)
            logger.debug("Config loaded from %s", path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load config: %s", exc)
            config = {}
    else:
        logger.info("Config file not found, using defaults")

    if not isinstance(config, dict):
        logger.error("Config root must be an object, using defaults")
        config = {}
    return UpdateSettings.from_config(config)


def save_settings(settings: UpdateSettings, path: str | Path = CONFIG_PATH) -> bool:
    """Persist settings back to config.json."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings.to_config(), fh, indent=2)
        logger.debug("Config saved to %s", path)
        return True
    except OSError as exc:
        logger.error("Failed to save config: %s", exc)
        return False
