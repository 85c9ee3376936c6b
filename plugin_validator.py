"""
plugin_validator.py
===================
Reads plugin descriptors out of downloaded JAR files.

Used by the fetcher to:
  - tell a plugin JAR apart from a ZIP that merely contains one
  - sanity-check the file that ends up installed
  - learn the plugin's declared name, which the rollback manager uses as
    an extra lookup key when matching server log lines

Descriptors understood:
  - ``plugin.yml`` / ``paper-plugin.yml`` → Bukkit, Spigot, Paper
  - ``bungee.yml``                        → BungeeCord, Waterfall
  - ``velocity-plugin.json``              → Velocity
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

logger = logging.getLogger(__name__)

YAML_DESCRIPTORS = {
    "plugin.yml": "bukkit",
    "paper-plugin.yml": "paper",
    "bungee.yml": "bungeecord",
}
JSON_DESCRIPTORS = {
    "velocity-plugin.json": "velocity",
}
MANIFEST = "META-INF/MANIFEST.MF"


# ──────────────────────────────────────────────
#  Validation Results
# ──────────────────────────────────────────────

@dataclass
class ValidationIssue:
    """A single problem found while checking a JAR."""
    severity: str  # "error", "warning"
    message: str


@dataclass
class ValidationResult:
    """Aggregated result of the checks run on one file."""
    path: Path
    is_valid: bool = True
    issues: List[ValidationIssue] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.issues.append(ValidationIssue("error", message))
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.issues.append(ValidationIssue("warning", message))

    def summary(self) -> str:
        return "; ".join(i.message for i in self.issues)


# ──────────────────────────────────────────────
#  Plugin Metadata Extraction
# ──────────────────────────────────────────────

@dataclass
class PluginMeta:
    """Metadata declared inside a plugin JAR."""
    name: str = "Unknown"
    version: str = "Unknown"
    main_class: str = ""
    plugin_type: str = "bukkit"


def extract_plugin_meta(jar_path: str | Path) -> Optional[PluginMeta]:
    """Return the descriptor metadata of a JAR, or None if it has none."""
    jar_path = Path(jar_path)
    if not jar_path.is_file():
        return None

    try:
        with zipfile.ZipFile(jar_path, "r") as zf:
            names = set(zf.namelist())

            for descriptor, plugin_type in YAML_DESCRIPTORS.items():
                if descriptor in names:
                    data = yaml.safe_load(zf.read(descriptor).decode("utf-8")) or {}
                    return _meta_from_mapping(data, plugin_type, name_key="name")

            for descriptor, plugin_type in JSON_DESCRIPTORS.items():
                if descriptor in names:
                    data = json.loads(zf.read(descriptor))
                    return _meta_from_mapping(data, plugin_type, name_key="id")

    except (zipfile.BadZipFile, OSError, UnicodeDecodeError,
            yaml.YAMLError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read plugin descriptor from %s: %s", jar_path, exc)

    return None


def _meta_from_mapping(data: object, plugin_type: str, name_key: str) -> PluginMeta:
    if not isinstance(data, dict):
        return PluginMeta(plugin_type=plugin_type)
    return PluginMeta(
        name=str(data.get(name_key) or data.get("name") or "Unknown"),
        version=str(data.get("version", "Unknown")),
        main_class=str(data.get("main", "")),
        plugin_type=plugin_type,
    )


def looks_like_plugin_jar(path: str | Path) -> bool:
    """
    True if a ZIP file is itself a JAR (descriptor or manifest at the root)
    rather than a container holding JARs.
    """
    try:
        with zipfile.ZipFile(path, "r") as zf:
            names = set(zf.namelist())
    except (zipfile.BadZipFile, OSError):
        return False
    markers = set(YAML_DESCRIPTORS) | set(JSON_DESCRIPTORS) | {MANIFEST}
    return bool(names & markers)


# ──────────────────────────────────────────────
#  Validator
# ──────────────────────────────────────────────

def validate_jar(jar_path: str | Path) -> ValidationResult:
    """Check that a file is a readable, non-empty JAR with a descriptor."""
    jar_path = Path(jar_path)
    result = ValidationResult(path=jar_path)

    if not jar_path.is_file():
        result.add_error(f"File not found: {jar_path}")
        return result

    if jar_path.stat().st_size == 0:
        result.add_error("JAR file is empty (0 bytes)")
        return result

    try:
        with zipfile.ZipFile(jar_path, "r") as zf:
            if not zf.infolist():
                result.add_error("JAR contains no entries")
                return result
            bad = zf.testzip()
            if bad:
                result.add_warning(f"Corrupted file inside JAR: {bad}")
    except zipfile.BadZipFile:
        result.add_error("File is not a valid JAR/ZIP archive")
        return result

    if extract_plugin_meta(jar_path) is None:
        result.add_warning("No plugin descriptor found")

    return result
