"""
locator.py
==========
Classifies a plugin source locator into the hosting convention it follows.

A locator is the right-hand side of a ``name: locator`` entry in the list
file. Classification is pure string matching, evaluated in a fixed priority
order so that build-aggregator domains win over the generic hosts they
mention (a BusyBiscuit URL contains "github", a Jenkins URL may contain
"github.com" in its job name, and so on).

Supported suffixes on the raw text:
  - ``[n]``         → 1-based artifact index (default 1)
  - ``?get=regex``  → GitHub release asset name filter
  - ``?autobuild=true`` → skip GitHub releases and build from source
  - ``| some/dir``  → install into a custom directory
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs

logger = logging.getLogger(__name__)


class LocatorError(ValueError):
    """Raised when a locator's bracket index cannot be parsed."""


# ──────────────────────────────────────────────
#  Source Kinds
# ──────────────────────────────────────────────

class SourceKind(str, Enum):
    """Artifact hosting conventions a locator can follow."""

    SPIGOT = "spigot"
    GITHUB_RELEASE = "github-release"
    GITHUB_ACTIONS = "github-actions"
    JENKINS = "jenkins"
    JENKINS_ALTERNATE = "jenkins-archive"
    BUKKIT_DEV = "bukkit-dev"
    MODRINTH = "modrinth"
    HANGAR = "hangar"
    JITPACK = "jitpack"
    BLOB_BUILD = "blob-build"
    BUSY_BISCUIT = "busybiscuit"
    GUIZHANSS = "guizhanss"
    MINEBBS = "minebbs"
    CURSEFORGE = "curseforge"
    DIRECT = "direct"


# Checked top to bottom; the first phrase contained in the locator wins.
CLASSIFICATION_RULES: List[Tuple[str, SourceKind]] = [
    ("blob.build", SourceKind.BLOB_BUILD),
    ("thebusybiscuit.github.io/builds", SourceKind.BUSY_BISCUIT),
    ("builds.guizhanss.com", SourceKind.GUIZHANSS),
    ("jitpack.io", SourceKind.JITPACK),
    ("spigotmc.org", SourceKind.SPIGOT),
    ("github.com", SourceKind.GITHUB_RELEASE),
    ("*zip*/archive.zip", SourceKind.JENKINS_ALTERNATE),
    ("https://ci.", SourceKind.JENKINS),
    ("/job/", SourceKind.JENKINS),
    ("dev.bukkit.org", SourceKind.BUKKIT_DEV),
    ("modrinth.com", SourceKind.MODRINTH),
    ("hangar.papermc.io", SourceKind.HANGAR),
    ("minebbs.com", SourceKind.MINEBBS),
    ("curseforge.com", SourceKind.CURSEFORGE),
]

_ACTIONS_RE = re.compile(r"/actions/?(?:$|[\[?#])")
_GITHUB_KINDS = (SourceKind.GITHUB_RELEASE, SourceKind.GITHUB_ACTIONS)


def classify(text: str) -> SourceKind:
    """Return the single SourceKind for a raw locator string."""
    for phrase, kind in CLASSIFICATION_RULES:
        if phrase in text:
            if kind is SourceKind.GITHUB_RELEASE and _ACTIONS_RE.search(text):
                return SourceKind.GITHUB_ACTIONS
            return kind
    return SourceKind.DIRECT


def parse_index(text: str) -> Tuple[str, int]:
    """
    Split an optional ``[n]`` suffix off a locator.

    Returns ``(base, index)``. Without brackets the index is 1. A bracket
    with no closing ``]``, a non-numeric body or an index below 1 raises
    LocatorError.
    """
    lb = text.find("[")
    if lb == -1:
        return text, 1

    rb = text.find("]", lb + 1)
    if rb == -1:
        raise LocatorError(f"Missing closing bracket in locator: {text}")

    body = text[lb + 1:rb].strip()
    try:
        index = int(body)
    except ValueError:
        raise LocatorError(f"Artifact index is not a number: [{body}]") from None

    if index < 1:
        raise LocatorError(f"Artifact index must be 1 or greater: [{index}]")
    return text[:lb], index


def split_custom_path(text: str) -> Tuple[str, Optional[str]]:
    """Split ``link | custom/dir`` into its link and directory parts."""
    link, sep, path = text.partition("|")
    if not sep:
        return text.strip(), None
    path = path.strip()
    return link.strip(), path or None


# ──────────────────────────────────────────────
#  Locator
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Locator:
    """
    A classified source locator.

    Attributes:
        raw:         The text exactly as it appeared in the list file
        value:       Normalised locator with bracket, query and custom path removed
        kind:        Hosting convention
        index:       1-based artifact index
        query:       Query string of a GitHub locator (``get=...&autobuild=...``)
        custom_path: Optional install directory override
    """

    raw: str
    value: str
    kind: SourceKind
    index: int = 1
    query: str = ""
    custom_path: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "Locator":
        text, custom_path = split_custom_path(raw.strip())
        kind = classify(text)

        query = ""
        if kind in _GITHUB_KINDS and "?" in text:
            text, _, query = text.partition("?")

        if kind is not SourceKind.DIRECT and not text.endswith(("/", "]")):
            text += "/"

        value, index = parse_index(text)
        logger.debug("Classified %s as %s (index=%d)", raw, kind.value, index)
        return cls(
            raw=raw,
            value=value,
            kind=kind,
            index=index,
            query=query,
            custom_path=custom_path,
        )

    def option(self, name: str) -> Optional[str]:
        """Return the first value of a query option, if present."""
        values: Dict[str, List[str]] = parse_qs(self.query)
        found = values.get(name)
        return found[0] if found else None

    @property
    def force_build(self) -> bool:
        return (self.option("autobuild") or "").lower() == "true"

    def segments(self) -> List[str]:
        """Non-empty path segments of the locator, scheme and host included."""
        return [part for part in self.value.split("/") if part]
