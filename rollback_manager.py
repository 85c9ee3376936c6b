"""
rollback_manager.py
===================
Snapshots plugin JARs before they are replaced and restores them when the
server log shows the new build failing.

Lifecycle of one tracked plugin:
  1. prepare_backup()  – copy the active JAR into ``<root>/<base>/<base>-<stamp>.jar``
  2. mark_installed()  – remember where the new JAR landed
  3. handle_log_line() – match failure signatures, extract plugin names
  4. perform_rollback() – archive the failing JAR to ``<root>/failed/``,
     copy the snapshot back, or queue the restore in ``<root>/pending.json``
     when the destination is locked
  5. process_pending() – replay queued restores on the next start

A RollbackMonitor is a logging handler feeding log lines to a single
consumer thread, so signals from many workers are handled one at a time.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y%m%d-%H%M%S"
DEFAULT_ROOT = Path("plugins") / "aup-rollbacks"
PENDING_FILE = "pending.json"
FAILED_DIR = "failed"

DEFAULT_FILTERS = [
    "Unsupported API version",
    "Could not load plugin",
    "Error occurred while enabling",
    "Unsupported MC version",
    "You are running an unsupported server version",
]

# Tried in order; every match of every pattern becomes a lookup candidate.
IDENTIFIER_HINTS = [
    re.compile(r"(?i)plugin ['\"]?([^'\"\s]+?\.jar)['\"]?"),
    re.compile(r"(?i)plugin ['\"]?([^'\"\s]+)['\"]?"),
    re.compile(r"(?i)enabling\s+([A-Za-z0-9_\-]+)\b"),
    re.compile(r"(?i)disabling\s+([A-Za-z0-9_\-]+)\b"),
    re.compile(r"\[([^\]]+)\]"),
]

# Records from these loggers never count as failure signals.
OWN_LOGGERS = frozenset({
    "rollback_manager", "plugin_updater", "plugin_fetcher", "github_build",
    "source_resolver", "http_client", "plugin_list", "plugin_validator",
    "locator", "api_models", "scheduler", "settings", "plugin_auto_updater", "__main__",
})


def normalize_key(value: Optional[str]) -> str:
    """Lower-case, strip ``.jar`` and turn spaces into underscores."""
    if not value:
        return ""
    key = value.strip().lower()
    if key.endswith(".jar"):
        key = key[:-4]
    return key.replace(" ", "_")


def sanitize_file_base(name: Optional[str]) -> str:
    if not name:
        return ""
    base = name[:-4] if name.lower().endswith(".jar") else name
    return re.sub(r"[^A-Za-z0-9._-]+", "_", base)


def _stamp() -> str:
    return datetime.now(tz=timezone.utc).strftime(STAMP_FORMAT)


def _absolute(path: str | Path) -> Path:
    return Path(os.path.abspath(path))


# ──────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────

@dataclass
class BackupRecord:
    """In-memory snapshot bookkeeping for one plugin."""

    plugin_key: str
    jar_key: str
    active_path: Optional[Path]
    target_path: Optional[Path]
    backup_path: Optional[Path]
    timestamp: float = field(default_factory=time.time)
    new_jar_path: Optional[Path] = None
    rollback_triggered: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_trigger(self) -> bool:
        """Flip rollback_triggered to True; False if it already was."""
        with self.lock:
            if self.rollback_triggered:
                return False
            self.rollback_triggered = True
            return True

    def current_jar_path(self) -> Optional[Path]:
        return self.new_jar_path or self.active_path or self.target_path

    def copy_targets(self) -> List[Path]:
        targets: List[Path] = []
        if self.active_path is not None:
            targets.append(self.active_path)
        if self.target_path is not None and self.target_path != self.active_path:
            targets.append(self.target_path)
        return targets


@dataclass
class PendingTask:
    """Serializable form of a restore that could not complete."""

    plugin_key: str
    jar_key: str
    active_path: Optional[str] = None
    target_path: Optional[str] = None
    backup_path: Optional[str] = None

    @classmethod
    def from_record(cls, record: BackupRecord) -> "PendingTask":
        return cls(
            plugin_key=record.plugin_key,
            jar_key=record.jar_key,
            active_path=str(record.active_path) if record.active_path else None,
            target_path=str(record.target_path) if record.target_path else None,
            backup_path=str(record.backup_path) if record.backup_path else None,
        )

    def to_record(self) -> BackupRecord:
        active = Path(self.active_path) if self.active_path else None
        target = Path(self.target_path) if self.target_path else active
        return BackupRecord(
            plugin_key=self.plugin_key,
            jar_key=self.jar_key,
            active_path=active,
            target_path=target,
            backup_path=Path(self.backup_path) if self.backup_path else None,
        )

    def to_dict(self) -> dict:
        return {
            "plugin_key": self.plugin_key,
            "jar_key": self.jar_key,
            "active_path": self.active_path,
            "target_path": self.target_path,
            "backup_path": self.backup_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingTask":
        return cls(
            plugin_key=data.get("plugin_key", ""),
            jar_key=data.get("jar_key", ""),
            active_path=data.get("active_path"),
            target_path=data.get("target_path"),
            backup_path=data.get("backup_path"),
        )

    def same_plugin(self, other: "PendingTask") -> bool:
        return (self.plugin_key, self.jar_key) == (other.plugin_key, other.jar_key)


# ──────────────────────────────────────────────
#  Rollback Manager
# ──────────────────────────────────────────────

class RollbackManager:
    """
    Owns every snapshot, signal filter and pending restore for one process.

    Args:
        enabled:     Master switch; when off every hook is a no-op
        root:        Snapshot root (default: plugins/aup-rollbacks)
        filters:     Failure-signature regexes (built-in defaults when empty)
        max_copies:  Snapshots kept per plugin
        plugins_dir: Active plugins directory
        update_dir:  Custom staging directory, if the server uses one
        platform:    Server platform name used in the restart prompt
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        root: Optional[str | Path] = None,
        filters: Optional[Iterable[str]] = None,
        max_copies: int = 3,
        plugins_dir: str | Path = "plugins",
        update_dir: Optional[str | Path] = None,
        platform: str = "paper",
    ) -> None:
        self.enabled = enabled
        self.root_setting = Path(root) if root else DEFAULT_ROOT
        self.filter_setting = list(filters or [])
        self.max_copies = max_copies
        self.plugins_dir = Path(plugins_dir)
        self.update_dir = Path(update_dir) if update_dir else None
        self.platform = platform

        self.root: Optional[Path] = None
        self.filters: List[re.Pattern] = []

        self._by_plugin: Dict[str, BackupRecord] = {}
        self._by_jar: Dict[str, BackupRecord] = {}
        self._records_lock = threading.Lock()
        self._fs_lock = threading.RLock()
        self._guard = threading.local()

        self.refresh_configuration()

    @classmethod
    def from_settings(cls, settings) -> "RollbackManager":
        return cls(
            enabled=settings.rollback_enabled,
            root=settings.rollback_path,
            filters=settings.rollback_filters,
            max_copies=settings.rollback_max_copies,
            plugins_dir=settings.plugins_dir,
            update_dir=settings.update_dir,
            platform=settings.platform,
        )

    def refresh_configuration(self) -> None:
        """Recompile filters and recreate the snapshot root."""
        if not self.enabled:
            self.filters = []
            return
        self._ensure_root()
        self._compile_filters()

    def _compile_filters(self) -> None:
        compiled: List[re.Pattern] = []
        for expr in self.filter_setting or DEFAULT_FILTERS:
            if not expr or not expr.strip():
                continue
            try:
                compiled.append(re.compile(expr, re.IGNORECASE))
            except re.error as exc:
                logger.warning("Invalid rollback filter '%s': %s", expr, exc)
        if not compiled:
            compiled = [re.compile(expr, re.IGNORECASE) for expr in DEFAULT_FILTERS]
        self.filters = compiled

    def _ensure_root(self) -> Optional[Path]:
        if self.root is not None:
            return self.root
        try:
            self.root_setting.mkdir(parents=True, exist_ok=True)
            self.root = _absolute(self.root_setting)
        except OSError as exc:
            logger.warning("Failed to create rollback directory at %s: %s", self.root_setting, exc)
            self.root = None
        return self.root

    # ================================================================
    #  SNAPSHOTS
    # ================================================================

    def prepare_backup(self, plugin_name: str, install_target: str | Path) -> Optional[BackupRecord]:
        """Snapshot whatever JAR is currently active for ``install_target``."""
        if not self.enabled:
            return None

        target = _absolute(install_target)
        active = self.resolve_active_path(target)
        if active is None or not active.exists():
            return None

        jar_name = active.name or target.name or plugin_name or "plugin"
        backup = self._create_backup(active, jar_name)
        if backup is None:
            return None

        record = BackupRecord(
            plugin_key=normalize_key(plugin_name or jar_name),
            jar_key=normalize_key(jar_name),
            active_path=active,
            target_path=target,
            backup_path=backup,
        )
        with self._records_lock:
            self._by_plugin[record.plugin_key] = record
            self._by_jar[record.jar_key] = record
        logger.debug("Stored rollback snapshot for %s -> %s", jar_name, backup)
        return record

    def mark_installed(self, plugin_name: str, target_path: str | Path) -> None:
        if not self.enabled:
            return
        target = _absolute(target_path)
        record = self.find_record(plugin_name, target)
        if record is None:
            return
        record.new_jar_path = target
        with self._records_lock:
            self._by_jar[record.jar_key] = record

    def register_alias(self, alias: str, plugin_name: str) -> None:
        """Make ``alias`` (e.g. a declared plugin name) resolve to the same record."""
        if not self.enabled or not alias:
            return
        record = self.find_record(plugin_name)
        if record is None:
            return
        with self._records_lock:
            self._by_plugin.setdefault(normalize_key(alias), record)

    def find_record(self, identifier: Optional[str], target_path: Optional[Path] = None) -> Optional[BackupRecord]:
        with self._records_lock:
            if identifier:
                for candidate in (identifier, os.path.basename(identifier)):
                    key = normalize_key(candidate)
                    record = self._by_plugin.get(key) or self._by_jar.get(key)
                    if record is not None:
                        return record
            if target_path is not None and target_path.name:
                return self._by_jar.get(normalize_key(target_path.name))
        return None

    def resolve_active_path(self, target: Path) -> Optional[Path]:
        """
        Map an install target to the JAR the server is actually running.

        A target inside ``update/`` (or the custom update dir) aliases the
        same-named JAR in the plugins directory.
        """
        if target.exists():
            return target
        parent = target.parent
        if parent.name.lower() == "update":
            candidate = parent.parent / target.name
            if candidate.exists():
                return candidate
        if self.update_dir is not None:
            custom = _absolute(self.update_dir)
            if custom in target.parents:
                candidate = _absolute(self.plugins_dir / target.name)
                if candidate.exists():
                    return candidate
        return None

    def _create_backup(self, source: Path, jar_name: str) -> Optional[Path]:
        root = self._ensure_root()
        if root is None:
            return None
        base = sanitize_file_base(jar_name) or "plugin"
        plugin_dir = root / base
        try:
            with self._fs_lock:
                plugin_dir.mkdir(parents=True, exist_ok=True)
                backup = plugin_dir / f"{base}-{_stamp()}.jar"
                shutil.copy2(source, backup)
                self._trim_backups(plugin_dir)
            return backup
        except (OSError, shutil.Error) as exc:
            logger.warning("Could not snapshot previous jar for rollback: %s", exc)
            return None

    def _trim_backups(self, plugin_dir: Path) -> None:
        if self.max_copies <= 0:
            return
        backups = sorted(plugin_dir.glob("*.jar"), key=lambda p: p.name.lower(), reverse=True)
        for stale in backups[self.max_copies:]:
            try:
                stale.unlink()
            except OSError as exc:
                logger.debug("Could not remove old snapshot %s: %s", stale, exc)

    def list_backups(self, plugin_name: str) -> List[Path]:
        """Snapshots for a plugin, newest first."""
        root = self._ensure_root()
        if root is None:
            return []
        plugin_dir = root / (sanitize_file_base(plugin_name) or "plugin")
        return sorted(plugin_dir.glob("*.jar"), key=lambda p: p.name.lower(), reverse=True)

    # ================================================================
    #  SIGNALS
    # ================================================================

    def handle_log_line(self, message: Optional[str]) -> bool:
        """
        Check one log line against the failure filters.

        Returns True when a matching record was rolled back (or already had
        been). Lines logged while this thread is inside a rollback are ignored.
        """
        if not self.enabled or not message:
            return False
        if getattr(self._guard, "active", False):
            return False

        self._guard.active = True
        try:
            if not any(p.search(message) for p in self.filters):
                return False
            return self._attempt_rollback(message)
        finally:
            self._guard.active = False

    def handle_exception(self, exc: BaseException) -> bool:
        text = str(exc)
        return self.handle_log_line(text) if text else False

    @staticmethod
    def extract_candidates(message: str) -> List[str]:
        found: Dict[str, None] = {}
        for hint in IDENTIFIER_HINTS:
            for match in hint.finditer(message):
                candidate = match.group(1)
                if candidate:
                    found.setdefault(candidate, None)
        return list(found)

    def _attempt_rollback(self, message: str) -> bool:
        for candidate in self.extract_candidates(message):
            record = self.find_record(candidate)
            if record is not None:
                return self.perform_rollback(record, message)
        return False

    # ================================================================
    #  RESTORE
    # ================================================================

    def perform_rollback(self, record: BackupRecord, trigger: str) -> bool:
        """
        Restore ``record``'s snapshot at most once.

        Returns True if the snapshot is back in place (or a restore already
        ran for this record), False if it is missing or had to be queued.
        """
        if not record.try_trigger():
            return True

        backup = record.backup_path
        if backup is None or not backup.exists():
            logger.warning("Rollback requested for %s but backup is missing.", record.jar_key)
            return False

        self._archive_failed_binary(record)

        restored = False
        for target in record.copy_targets():
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                self._copy_file(backup, target)
                restored = True
            except (OSError, shutil.Error) as exc:
                logger.warning("Failed to restore %s to %s: %s", record.jar_key, target, exc)

        if restored:
            logger.info("Rollback completed for %s. Trigger: %s", record.jar_key, trigger)
            logger.info("Please restart the %s server to finalize the rollback.", self.platform)
            self._cleanup_staged(record)
            return True

        self._queue_pending(record)
        logger.warning("Rollback queued for retry (file may be locked): %s", record.jar_key)
        return False

    @staticmethod
    def _copy_file(source: Path, dest: Path) -> None:
        shutil.copy2(source, dest)

    def _archive_failed_binary(self, record: BackupRecord) -> None:
        current = record.current_jar_path()
        if current is None or not current.exists():
            return
        root = self._ensure_root()
        if root is None:
            return
        base = sanitize_file_base(current.name) or sanitize_file_base(record.jar_key)
        dest = root / FAILED_DIR / f"{base}-{_stamp()}.failed.jar"
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(current, dest)
        except (OSError, shutil.Error) as exc:
            logger.debug("Failed to archive broken binary for %s: %s", record.jar_key, exc)

    def _cleanup_staged(self, record: BackupRecord) -> None:
        target = record.target_path
        if target is None or target == record.active_path:
            return
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Could not remove staged jar %s: %s", target, exc)

    # ================================================================
    #  PENDING QUEUE
    # ================================================================

    @property
    def pending_file(self) -> Optional[Path]:
        root = self._ensure_root()
        return root / PENDING_FILE if root else None

    def load_pending(self) -> List[PendingTask]:
        path = self.pending_file
        if path is None or not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
            if not content.strip():
                return []
            return [PendingTask.from_dict(item) for item in json.loads(content)]
        except (OSError, json.JSONDecodeError, AttributeError, TypeError) as exc:
            logger.warning("Could not read pending rollbacks: %s", exc)
            return []

    def _save_pending(self, tasks: List[PendingTask]) -> None:
        path = self.pending_file
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                json.dump([t.to_dict() for t in tasks], fh, indent=2)
        except OSError as exc:
            logger.error("Could not save pending rollbacks: %s", exc)

    def _purge_pending(self) -> None:
        path = self.pending_file
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Could not remove %s: %s", path, exc)

    def _queue_pending(self, record: BackupRecord) -> None:
        task = PendingTask.from_record(record)
        with self._fs_lock:
            tasks = self.load_pending()
            if not any(t.same_plugin(task) for t in tasks):
                tasks.append(task)
                self._save_pending(tasks)

    def process_pending(self) -> int:
        """
        Replay queued restores. Returns how many are still pending.

        With rollback disabled the queue file is deleted unread.
        """
        with self._fs_lock:
            if not self.enabled:
                self._purge_pending()
                return 0

            tasks = self.load_pending()
            if not tasks:
                return 0

            failures = [
                task for task in tasks
                if not self.perform_rollback(task.to_record(), "Pending rollback replay")
            ]
            if failures:
                self._save_pending(failures)
            else:
                self._purge_pending()

        if failures:
            logger.warning("%d rollback(s) still pending", len(failures))
        return len(failures)


# ──────────────────────────────────────────────
#  Log Monitor
# ──────────────────────────────────────────────

class RollbackMonitor(logging.Handler):
    """
    Logging handler that forwards host log lines to a RollbackManager.

    Lines are queued and handled by one consumer thread. Attach it to the
    logger the host writes to, or feed it a process stdout / log file.
    """

    def __init__(self, manager: RollbackManager) -> None:
        super().__init__(level=logging.DEBUG)
        self.manager = manager
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._attached: List[logging.Logger] = []
        self._consumer = threading.Thread(
            target=self._consume, daemon=True, name="rollback-signal-consumer",
        )
        self._consumer.start()

    def attach(self, target: Optional[logging.Logger] = None) -> "RollbackMonitor":
        target = target or logging.getLogger()
        target.addHandler(self)
        self._attached.append(target)
        return self

    def detach(self) -> None:
        for target in self._attached:
            target.removeHandler(self)
        self._attached.clear()

    def emit(self, record: logging.LogRecord) -> None:
        if not self.manager.enabled:
            return
        if record.name.split(".")[0] in OWN_LOGGERS:
            return
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        self.feed_line(message)
        if record.exc_info and record.exc_info[1] is not None:
            self.feed_line(str(record.exc_info[1]))

    def feed_line(self, line: Optional[str]) -> None:
        if line:
            self._queue.put(line)

    def watch_stream(self, stream: IO[bytes]) -> threading.Thread:
        """Read a process stdout line by line in a background thread."""

        def _reader():
            try:
                for raw_line in iter(stream.readline, b""):
                    self.feed_line(raw_line.decode("utf-8", errors="replace").rstrip())
            except (OSError, ValueError) as exc:
                logger.debug("Log stream reader ended: %s", exc)

        thread = threading.Thread(target=_reader, daemon=True, name="rollback-stream-reader")
        thread.start()
        return thread

    def follow_file(self, path: str | Path, stop: threading.Event, poll_interval: float = 0.5) -> None:
        """Tail a log file until ``stop`` is set, starting at its current end."""
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            fh.seek(0, os.SEEK_END)
            while not stop.is_set():
                line = fh.readline()
                if line:
                    self.feed_line(line.rstrip())
                else:
                    stop.wait(poll_interval)

    def join(self, timeout: Optional[float] = None) -> None:
        """Block until every queued line has been handled."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() > deadline:
                return
            time.sleep(0.01)

    def _consume(self) -> None:
        while True:
            line = self._queue.get()
            try:
                if line is None:
                    return
                self.manager.handle_log_line(line)
            except Exception as exc:
                logger.error("Rollback signal handling failed: %s", exc)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        self.detach()
        self._queue.put(None)
        super().close()
