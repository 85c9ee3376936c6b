"""
api_models.py
=============
Typed response records for the remote APIs the resolver talks to.

Every record is built through ``from_json``. A missing or null field the
resolver depends on raises ResolutionError instead of surfacing later as a
KeyError or a ``None`` URL.

APIs covered:
  - GitHub REST     – releases, workflow artifacts, repository info
  - Jenkins         – lastSuccessfulBuild/api/json
  - Modrinth v2     – search, project versions
  - BlobBuild       – latest build of a project/channel
  - builds.json     – BusyBiscuit and Guizhanss build manifests
  - CurseForge      – servermods projects search, project files
  - JitPack         – build status
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional


class ResolutionError(Exception):
    """A remote response lacked a field needed to resolve an artifact."""


def _require(data: Any, key: str, source: str) -> Any:
    if not isinstance(data, dict):
        raise ResolutionError(f"{source}: expected an object, got {type(data).__name__}")
    value = data.get(key)
    if value is None:
        raise ResolutionError(f"{source}: missing field '{key}'")
    return value


def _require_list(data: Any, key: str, source: str) -> list:
    value = _require(data, key, source)
    if not isinstance(value, list):
        raise ResolutionError(f"{source}: field '{key}' is not a list")
    return value


# ──────────────────────────────────────────────
#  GitHub
# ──────────────────────────────────────────────

@dataclass
class GitHubAsset:
    name: str
    browser_download_url: str
    size: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "GitHubAsset":
        return cls(
            name=str(_require(data, "name", "GitHub asset")),
            browser_download_url=str(
                _require(data, "browser_download_url", "GitHub asset")
            ),
            size=int(data.get("size") or 0),
        )

    @property
    def is_jar(self) -> bool:
        return self.name.lower().endswith(".jar")


@dataclass
class GitHubRelease:
    tag_name: str
    assets: List[GitHubAsset] = field(default_factory=list)
    prerelease: bool = False

    @classmethod
    def from_json(cls, data: Any) -> "GitHubRelease":
        return cls(
            tag_name=str(data.get("tag_name") or "") if isinstance(data, dict) else "",
            assets=[
                GitHubAsset.from_json(a)
                for a in _require_list(data, "assets", "GitHub release")
            ],
            prerelease=bool(data.get("prerelease", False)),
        )

    @classmethod
    def list_from_json(cls, data: Any) -> List["GitHubRelease"]:
        if not isinstance(data, list):
            raise ResolutionError("GitHub releases: expected a list")
        return [cls.from_json(item) for item in data]


@dataclass
class WorkflowArtifact:
    """One entry of ``/actions/artifacts``. Entries without a name are kept
    so index counting can skip them explicitly."""

    name: Optional[str]
    archive_download_url: Optional[str]
    size_in_bytes: int = 0
    expired: bool = False

    @classmethod
    def list_from_json(cls, data: Any) -> List["WorkflowArtifact"]:
        items = _require_list(data, "artifacts", "GitHub artifacts")
        return [
            cls(
                name=item.get("name") or None,
                archive_download_url=item.get("archive_download_url"),
                size_in_bytes=int(item.get("size_in_bytes") or 0),
                expired=bool(item.get("expired", False)),
            )
            for item in items if isinstance(item, dict)
        ]

    def download_url(self) -> str:
        if not self.archive_download_url:
            raise ResolutionError(
                f"GitHub artifact '{self.name}': missing field 'archive_download_url'"
            )
        return self.archive_download_url


@dataclass
class GitHubRepoInfo:
    full_name: str
    default_branch: str

    @classmethod
    def from_json(cls, data: Any) -> "GitHubRepoInfo":
        return cls(
            full_name=str(data.get("full_name") or "") if isinstance(data, dict) else "",
            default_branch=str(_require(data, "default_branch", "GitHub repo")).strip(),
        )


# ──────────────────────────────────────────────
#  Jenkins
# ──────────────────────────────────────────────

@dataclass
class JenkinsArtifact:
    file_name: str
    relative_path: str


@dataclass
class JenkinsBuild:
    number: int
    artifacts: List[JenkinsArtifact] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "JenkinsBuild":
        artifacts = [
            JenkinsArtifact(
                file_name=str(item.get("fileName") or ""),
                relative_path=str(_require(item, "relativePath", "Jenkins artifact")),
            )
            for item in _require_list(data, "artifacts", "Jenkins build")
        ]
        return cls(number=int(data.get("number") or 0), artifacts=artifacts)

    def pick(self, index: int) -> Optional[JenkinsArtifact]:
        """The n-th artifact, or the first one when n is out of range."""
        if not self.artifacts:
            return None
        if 1 <= index <= len(self.artifacts):
            return self.artifacts[index - 1]
        return self.artifacts[0]


# ──────────────────────────────────────────────
#  Modrinth
# ──────────────────────────────────────────────

@dataclass
class ModrinthHit:
    project_id: str
    slug: str = ""

    @classmethod
    def first_from_search(cls, data: Any) -> "ModrinthHit":
        hits = _require_list(data, "hits", "Modrinth search")
        if not hits:
            raise ResolutionError("Modrinth search: no hits")
        hit = hits[0]
        return cls(
            project_id=str(_require(hit, "project_id", "Modrinth hit")),
            slug=str(hit.get("slug") or ""),
        )


@dataclass
class ModrinthFile:
    url: str
    filename: str = ""
    size: int = 0


@dataclass
class ModrinthVersion:
    version_number: str
    loaders: List[str] = field(default_factory=list)
    files: List[ModrinthFile] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "ModrinthVersion":
        files = [
            ModrinthFile(
                url=str(_require(f, "url", "Modrinth file")),
                filename=str(f.get("filename") or ""),
                size=int(f.get("size") or 0),
            )
            for f in _require_list(data, "files", "Modrinth version")
        ]
        return cls(
            version_number=str(data.get("version_number") or ""),
            loaders=[str(x) for x in _require_list(data, "loaders", "Modrinth version")],
            files=files,
        )

    @classmethod
    def list_from_json(cls, data: Any) -> List["ModrinthVersion"]:
        if not isinstance(data, list):
            raise ResolutionError("Modrinth versions: expected a list")
        return [cls.from_json(item) for item in data]

    def supports(self, platform: str) -> bool:
        return platform.lower() in " ".join(self.loaders).lower()


# ──────────────────────────────────────────────
#  CurseForge servermods
# ──────────────────────────────────────────────

@dataclass
class CurseForgeProject:
    project_id: str
    slug: str = ""

    @classmethod
    def pick(cls, data: Any, slug: str) -> "CurseForgeProject":
        """The search hit whose slug matches, else the first hit."""
        if not isinstance(data, list) or not data:
            raise ResolutionError(f"CurseForge projects: no match for {slug}")
        projects = [
            cls(
                project_id=str(_require(item, "id", "CurseForge project")),
                slug=str(item.get("slug") or ""),
            )
            for item in data
        ]
        wanted = slug.lower()
        return next((p for p in projects if p.slug.lower() == wanted), projects[0])


@dataclass
class CurseForgeFile:
    file_id: str = ""
    download_url: str = ""
    file_name: str = ""

    @classmethod
    def latest_from_json(cls, data: Any) -> "CurseForgeFile":
        # servermods lists files oldest first
        if not isinstance(data, list) or not data:
            raise ResolutionError("CurseForge files: project has no files")
        last = data[-1]
        if not isinstance(last, dict):
            raise ResolutionError("CurseForge files: expected an object")
        return cls(
            file_id=str(last.get("id") or ""),
            download_url=str(last.get("downloadUrl") or ""),
            file_name=str(last.get("fileName") or ""),
        )


# ──────────────────────────────────────────────
#  BlobBuild / builds.json / JitPack
# ──────────────────────────────────────────────

@dataclass
class BlobBuildLatest:
    file_download_url: str
    build_id: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "BlobBuildLatest":
        if not isinstance(data, dict):
            raise ResolutionError("BlobBuild: expected an object")
        if not data.get("success", False):
            raise ResolutionError(f"BlobBuild: {data.get('error') or 'request failed'}")
        body = _require(data, "data", "BlobBuild")
        return cls(
            file_download_url=str(_require(body, "fileDownloadUrl", "BlobBuild")),
            build_id=int(body.get("buildId") or 0),
        )


@dataclass
class BuildsManifest:
    """``builds.json`` as published by the BusyBiscuit and Guizhanss build sites."""

    last_successful: str

    @classmethod
    def from_json(cls, data: Any) -> "BuildsManifest":
        return cls(last_successful=str(_require(data, "last_successful", "builds.json")))


@dataclass
class JitPackStatus:
    status: str = ""
    jar_path: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> "JitPackStatus":
        status = str(data.get("status") or "") if isinstance(data, dict) else ""
        return cls(status=status, jar_path=next(_jar_paths(data), None))


def _jar_paths(node: Any) -> Iterator[str]:
    """Yield every ``path`` value ending in .jar, depth first."""
    if isinstance(node, dict):
        path = node.get("path")
        if isinstance(path, str) and path.lower().endswith(".jar"):
            yield path
        for value in node.values():
            if isinstance(value, (dict, list)):
                yield from _jar_paths(value)
    elif isinstance(node, list):
        for item in node:
            yield from _jar_paths(item)
