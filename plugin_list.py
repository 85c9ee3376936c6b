"""
plugin_list.py
==============
The plugin list file: one ``Name: locator`` entry per line.

A leading ``#`` marks an entry as disabled. Disabled entries stay in the
file and show up in listings, but batch updates skip them.

Every mutation rewrites the whole file and keeps all other lines exactly
as they were, comments and blank lines included.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DISABLED_PREFIX = "# "
_ENABLE_RE = re.compile(r"#\s*")
EMPTY_LIST_HINT = "File is empty. Please put FileSaveName: [link to plugin]"


@dataclass
class PluginEntry:
    """A single entry of the list file."""
    name: str
    link: str
    enabled: bool = True
    line_no: int = 0

    def to_dict(self) -> dict:
        return {"name": self.name, "link": self.link, "enabled": self.enabled}


def parse_line(line: str) -> Optional[PluginEntry]:
    """Parse one line; None for blank lines, comments, and lines without a ':'."""
    text = line.strip()
    if not text:
        return None

    enabled = True
    if text.startswith("#"):
        enabled = False
        text = text.lstrip("#").strip()

    if ":" not in text:
        return None

    name, link = text.split(":", 1)
    name, link = name.strip(), link.strip()
    if not name or not link:
        return None
    return PluginEntry(name=name, link=link, enabled=enabled)


class PluginList:
    """
    Reads and edits the list file.

    Args:
        path: Location of the list file (created on first write)
    """

    def __init__(self, path: str | Path = "list.yml") -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    # ================================================================
    #  READING
    # ================================================================

    def _read_lines(self) -> List[str]:
        if not self.path.is_file():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read().splitlines()

    def entries(self) -> List[PluginEntry]:
        """
        All entries in file order.

        A name that appears more than once keeps its first position and
        its last value.
        """
        by_name: Dict[str, PluginEntry] = {}
        for line_no, line in enumerate(self._read_lines(), start=1):
            entry = parse_line(line)
            if entry is None:
                continue
            entry.line_no = line_no
            if entry.name in by_name:
                previous = by_name[entry.name]
                entry.line_no = previous.line_no
            by_name[entry.name] = entry
        return list(by_name.values())

    def enabled_links(self) -> Dict[str, str]:
        """Name to locator for every enabled entry, in file order."""
        links = {e.name: e.link for e in self.entries() if e.enabled}
        if not links and not self.entries():
            logger.warning(EMPTY_LIST_HINT)
        return links

    def get(self, name: str) -> Optional[PluginEntry]:
        for entry in self.entries():
            if entry.name == name:
                return entry
        return None

    def page(self, number: int, per_page: int = 8) -> Tuple[List[PluginEntry], int]:
        """Return one page of entries (1-based) and the page count."""
        entries = self.entries()
        pages = max(1, -(-len(entries) // per_page))
        number = min(max(1, number), pages)
        start = (number - 1) * per_page
        return entries[start:start + per_page], pages

    # ================================================================
    #  MUTATIONS
    # ================================================================

    def _write_lines(self, lines: List[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n" if lines else "")

    def add(self, name: str, link: str) -> bool:
        """Append a new enabled entry. False if the name already exists."""
        name, link = name.strip(), link.strip()
        if not name or not link or ":" in name:
            raise ValueError("Usage: add <name> <link>")

        with self._lock:
            if self.get(name) is not None:
                logger.info("%s is already in %s", name, self.path)
                return False
            lines = self._read_lines()
            lines.append(f"{name}: {link}")
            self._write_lines(lines)

        logger.info("Added %s: %s", name, link)
        return True

    def remove(self, name: str) -> bool:
        """Drop every line for a name. False if it was not present."""
        with self._lock:
            lines = self._read_lines()
            kept = [line for line in lines if not self._matches(line, name)]
            if len(kept) == len(lines):
                return False
            self._write_lines(kept)

        logger.info("Removed %s", name)
        return True

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """
        Toggle an entry. Returns False if the name is unknown or already in
        the requested state.
        """
        changed = False
        with self._lock:
            lines = self._read_lines()
            for i, line in enumerate(lines):
                if not self._matches(line, name):
                    continue
                is_enabled = not line.lstrip().startswith("#")
                if is_enabled == enabled:
                    continue
                if enabled:
                    lines[i] = _ENABLE_RE.sub("", line, count=1)
                else:
                    lines[i] = DISABLED_PREFIX + line
                changed = True
            if changed:
                self._write_lines(lines)

        if changed:
            logger.info("%s %s", "Enabled" if enabled else "Disabled", name)
        return changed

    def enable(self, name: str) -> bool:
        return self.set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self.set_enabled(name, False)

    @staticmethod
    def _matches(line: str, name: str) -> bool:
        entry = parse_line(line)
        return entry is not None and entry.name == name
