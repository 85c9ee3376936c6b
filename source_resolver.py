"""
source_resolver.py
==================
Turns a classified Locator into a concrete download URL.

One strategy per SourceKind:
  - **Spigot**        – Spiget download endpoint for the resource id
  - **GitHub**        – n-th ``.jar`` asset across releases, newest first
  - **GitHub Actions**– n-th named workflow artifact (ZIP, token required)
  - **Jenkins**       – n-th artifact of lastSuccessfulBuild, or the
                        workspace archive when the JSON API is unreachable
  - **dev.bukkit**    – ``files/latest`` redirect
  - **Modrinth**      – first version whose loaders include the platform
  - **Hangar**        – latest release for the platform
  - **BlobBuild**     – latest build of project/channel
  - **BusyBiscuit / Guizhanss** – ``builds.json`` last_successful
  - **MineBBS**       – resource ``/download`` redirect
  - **CurseForge**    – last file of the project found via servermods search
  - **JitPack**       – remote build of the referenced GitHub repo
  - **Direct**        – the locator itself

A strategy returns None when nothing usable exists; every failure is logged
and stays confined to that one entry.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import aiohttp

from api_models import (
    BlobBuildLatest,
    BuildsManifest,
    CurseForgeFile,
    CurseForgeProject,
    GitHubRelease,
    JenkinsBuild,
    ModrinthHit,
    ModrinthVersion,
    ResolutionError,
    WorkflowArtifact,
)
from github_build import JitPackClient, Repo
from http_client import ACCEPT_JSON, HttpStatusError, build_headers, fetch_json, fetch_text
from locator import Locator, SourceKind

logger = logging.getLogger(__name__)

SPIGET_BASE = "https://api.spiget.org/v2"
GITHUB_API = "https://api.github.com"
MODRINTH_BASE = "https://api.modrinth.com/v2"
HANGAR_BASE = "https://hangar.papermc.io/api/v1"
BLOB_BUILD_BASE = "https://blob.build/api/builds"
BUSY_BISCUIT_BASE = "https://thebusybiscuit.github.io/builds"
GUIZHANSS_BASE = "https://builds.guizhanss.com"
CURSEFORGE_API = "https://api.curseforge.com/servermods"
CURSEFORGE_SITE = "https://www.curseforge.com/minecraft/bukkit-plugins"

SPIGOT_ID_RE = re.compile(r"\.(\d+)/")
GITHUB_REPO_RE = re.compile(r"github\.com/([^/\s?#\[]+)/([^/\s?#\[]+)")
BUSY_BISCUIT_RE = re.compile(r"builds/([^/]+)/([^/]+)")
GUIZHANSS_RE = re.compile(r"builds\.guizhanss\.com/([^/]+)/([^/]+)")
JITPACK_RE = re.compile(r"jitpack\.io/#?(?:com/github/)?([^/#]+)/([^/#]+)")
CURSEFORGE_SLUG_RE = re.compile(r"curseforge\.com/minecraft/[^/]+/([^/?#]+)", re.IGNORECASE)

HANGAR_PLATFORMS = {
    "paper": "PAPER",
    "spigot": "PAPER",
    "bukkit": "PAPER",
    "purpur": "PAPER",
    "folia": "PAPER",
    "waterfall": "WATERFALL",
    "bungeecord": "WATERFALL",
    "bungee": "WATERFALL",
    "velocity": "VELOCITY",
}


def hangar_platform(platform: str) -> str:
    return HANGAR_PLATFORMS.get(platform.lower(), "PAPER")


def github_repo(text: str) -> Optional[Repo]:
    match = GITHUB_REPO_RE.search(text)
    if not match:
        return None
    name = match.group(2)
    if name.endswith(".git"):
        name = name[:-4]
    return Repo(owner=match.group(1), name=name)


# ──────────────────────────────────────────────
#  Candidate
# ──────────────────────────────────────────────

@dataclass
class ArtifactCandidate:
    """
    A resolved artifact.

    ``archive`` marks a whole-workspace ZIP (Jenkins fallback).
    ``build_repo`` is set instead of a usable URL when the artifact has to
    be built from a GitHub repository.
    """

    url: str
    file_name: str = ""
    size: Optional[int] = None
    kind: SourceKind = SourceKind.DIRECT
    archive: bool = False
    build_repo: Optional[str] = None

    @classmethod
    def build_from_source(cls, repo: Repo, kind: SourceKind) -> "ArtifactCandidate":
        url = f"https://github.com/{repo.owner}/{repo.name}"
        return cls(url=url, kind=kind, build_repo=url)

    @property
    def requires_build(self) -> bool:
        return self.build_repo is not None


Strategy = Callable[[Locator, aiohttp.ClientSession], Awaitable[Optional[ArtifactCandidate]]]


# ──────────────────────────────────────────────
#  Resolver
# ──────────────────────────────────────────────

class SourceResolver:
    """
    Dispatches a Locator to its source strategy.

    Args:
        platform:  Server platform (filters Modrinth loaders, picks Hangar platform)
        token:     GitHub token for API calls
        jitpack:   JitPack client used for ``jitpack.io`` locators
    """

    def __init__(
        self,
        *,
        platform: str = "paper",
        token: Optional[str] = None,
        jitpack: Optional[JitPackClient] = None,
    ) -> None:
        self.platform = platform
        self.token = token or None
        self.jitpack = jitpack or JitPackClient()
        self._strategies: Dict[SourceKind, Strategy] = {
            SourceKind.SPIGOT: self._resolve_spigot,
            SourceKind.GITHUB_RELEASE: self._resolve_github_release,
            SourceKind.GITHUB_ACTIONS: self._resolve_github_actions,
            SourceKind.JENKINS: self._resolve_jenkins,
            SourceKind.JENKINS_ALTERNATE: self._resolve_jenkins_archive,
            SourceKind.BUKKIT_DEV: self._resolve_bukkit,
            SourceKind.MODRINTH: self._resolve_modrinth,
            SourceKind.HANGAR: self._resolve_hangar,
            SourceKind.JITPACK: self._resolve_jitpack,
            SourceKind.BLOB_BUILD: self._resolve_blob_build,
            SourceKind.BUSY_BISCUIT: self._resolve_busy_biscuit,
            SourceKind.GUIZHANSS: self._resolve_guizhanss,
            SourceKind.MINEBBS: self._resolve_minebbs,
            SourceKind.CURSEFORGE: self._resolve_curseforge,
            SourceKind.DIRECT: self._resolve_direct,
        }

    async def resolve(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        """Resolve a locator; None means nothing usable was found."""
        strategy = self._strategies[locator.kind]
        try:
            candidate = await strategy(locator, session)
        except ResolutionError as exc:
            logger.warning("Could not resolve %s: %s", locator.raw, exc)
            return None
        except HttpStatusError as exc:
            logger.warning("Could not resolve %s: %s", locator.raw, exc)
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Network error resolving %s: %s", locator.raw, exc or type(exc).__name__)
            return None
        except ValueError as exc:
            logger.warning("Malformed response while resolving %s: %s", locator.raw, exc)
            return None

        if candidate is not None:
            candidate.kind = locator.kind
            logger.debug("Resolved %s -> %s", locator.raw, candidate.build_repo or candidate.url)
        return candidate

    # ================================================================
    #  SPIGOT / BUKKIT / MINEBBS / DIRECT
    # ================================================================

    async def _resolve_spigot(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        match = SPIGOT_ID_RE.search(locator.value)
        if not match:
            logger.warning("No Spigot resource id in %s", locator.raw)
            return None
        resource_id = match.group(1)
        return ArtifactCandidate(
            url=f"{SPIGET_BASE}/resources/{resource_id}/download",
            file_name=f"{resource_id}.jar",
        )

    async def _resolve_bukkit(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        base = locator.value if locator.value.endswith("/") else locator.value + "/"
        return ArtifactCandidate(url=base + "files/latest")

    async def _resolve_minebbs(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        return ArtifactCandidate(url=locator.value.rstrip("/") + "/download")

    async def _resolve_direct(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        url = locator.value
        return ArtifactCandidate(url=url, file_name=url.rsplit("/", 1)[-1])

    # ================================================================
    #  GITHUB
    # ================================================================

    async def _resolve_github_release(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        repo = github_repo(locator.value)
        if repo is None:
            logger.warning("Repository path not found for %s", locator.raw)
            return None

        if locator.force_build:
            logger.info("autobuild requested for %s", repo.slug)
            return ArtifactCandidate.build_from_source(repo, locator.kind)

        url = f"{GITHUB_API}/repos/{repo.owner}/{repo.name}/releases"
        try:
            releases = GitHubRelease.list_from_json(await fetch_json(session, url, token=self.token))
        except (HttpStatusError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.info("Releases unavailable for %s (%s), building from source", repo.slug, exc)
            return ArtifactCandidate.build_from_source(repo, locator.kind)

        name_filter = self._asset_filter(locator)
        jars = [
            asset
            for release in releases
            for asset in release.assets
            if asset.is_jar and (name_filter is None or name_filter.search(asset.name))
        ]
        if not jars:
            logger.info("No .jar release assets for %s, building from source", repo.slug)
            return ArtifactCandidate.build_from_source(repo, locator.kind)

        if locator.index > len(jars):
            logger.warning(
                "%s has %d jar asset(s), index [%d] requested",
                repo.slug, len(jars), locator.index,
            )
            return None

        asset = jars[locator.index - 1]
        return ArtifactCandidate(url=asset.browser_download_url, file_name=asset.name, size=asset.size)

    @staticmethod
    def _asset_filter(locator: Locator) -> Optional[re.Pattern]:
        expr = locator.option("get")
        if not expr:
            return None
        try:
            return re.compile(expr)
        except re.error as exc:
            raise ResolutionError(f"Invalid get= pattern '{expr}': {exc}") from None

    async def _resolve_github_actions(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        repo = github_repo(locator.value)
        if repo is None:
            logger.warning("Repository path not found for %s", locator.raw)
            return None

        url = f"{GITHUB_API}/repos/{repo.owner}/{repo.name}/actions/artifacts"
        artifacts = WorkflowArtifact.list_from_json(await fetch_json(session, url, token=self.token))
        named = [a for a in artifacts if a.name]
        if not named:
            logger.info("No workflow artifacts for %s, building from source", repo.slug)
            return ArtifactCandidate.build_from_source(repo, locator.kind)

        if locator.index > len(named):
            logger.warning(
                "%s has %d artifact(s), index [%d] requested",
                repo.slug, len(named), locator.index,
            )
            return None

        artifact = named[locator.index - 1]
        return ArtifactCandidate(
            url=artifact.download_url(),
            file_name=f"{artifact.name}.zip",
            size=artifact.size_in_bytes or None,
        )

    # ================================================================
    #  JENKINS
    # ================================================================

    @staticmethod
    def _jenkins_base(value: str) -> str:
        base = value.split("lastSuccessfulBuild", 1)[0]
        return base if base.endswith("/") else base + "/"

    async def _resolve_jenkins(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        base = self._jenkins_base(locator.value)
        try:
            data = await fetch_json(session, base + "lastSuccessfulBuild/api/json")
        except (HttpStatusError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.info("Jenkins API unavailable for %s (%s), using the workspace archive", base, exc)
            return self._jenkins_archive(base)

        artifact = JenkinsBuild.from_json(data).pick(locator.index)
        if artifact is None:
            logger.warning("Jenkins build at %s has no artifacts", base)
            return None
        return ArtifactCandidate(
            url=base + "lastSuccessfulBuild/artifact/" + artifact.relative_path,
            file_name=artifact.file_name,
        )

    async def _resolve_jenkins_archive(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        return self._jenkins_archive(self._jenkins_base(locator.value))

    @staticmethod
    def _jenkins_archive(base: str) -> ArtifactCandidate:
        return ArtifactCandidate(
            url=base + "lastSuccessfulBuild/artifact/*zip*/archive.zip",
            file_name="archive.zip",
            archive=True,
        )

    # ================================================================
    #  MODRINTH / HANGAR
    # ================================================================

    async def _resolve_modrinth(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        slug = locator.segments()[-1]
        search = await fetch_json(session, f"{MODRINTH_BASE}/search?query={quote(slug)}")
        hit = ModrinthHit.first_from_search(search)

        versions = ModrinthVersion.list_from_json(
            await fetch_json(session, f"{MODRINTH_BASE}/project/{hit.project_id}/version")
        )
        version = next((v for v in versions if v.supports(self.platform)), None)
        if version is None:
            logger.warning("No Modrinth version of %s supports %s", slug, self.platform)
            return None
        if not version.files:
            raise ResolutionError(f"Modrinth version {version.version_number} has no files")

        primary = version.files[0]
        return ArtifactCandidate(url=primary.url, file_name=primary.filename, size=primary.size or None)

    async def _resolve_hangar(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        project = locator.segments()[-1]
        version = (await fetch_text(session, f"{HANGAR_BASE}/projects/{quote(project)}/latestrelease")).strip()
        if not version:
            raise ResolutionError(f"Hangar returned no release for {project}")
        target = hangar_platform(self.platform)
        return ArtifactCandidate(
            url=f"{HANGAR_BASE}/projects/{quote(project)}/versions/{quote(version)}/{target}/download",
            file_name=f"{project}-{version}.jar",
        )

    # ================================================================
    #  BUILD SITES
    # ================================================================

    async def _resolve_blob_build(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        segments = locator.segments()
        if len(segments) < 4:
            raise ResolutionError(f"Expected .../<project>/<channel> in {locator.raw}")
        project, channel = segments[-2], segments[-1]
        url = f"{BLOB_BUILD_BASE}/{quote(project)}/{quote(channel)}/latest"
        # Error responses carry {"success": false, "error": ...}; keep that message.
        async with session.get(url, headers=build_headers(url, accept=ACCEPT_JSON)) as resp:
            status = resp.status
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
        if status != 200:
            logger.debug("BlobBuild answered HTTP %d for %s", status, url)
            if not isinstance(data, dict) or "error" not in data:
                raise HttpStatusError(url, status)
        latest = BlobBuildLatest.from_json(data)
        return ArtifactCandidate(url=latest.file_download_url, file_name=f"{project}-{latest.build_id}.jar")

    async def _resolve_busy_biscuit(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        match = BUSY_BISCUIT_RE.search(locator.value)
        if not match:
            raise ResolutionError(f"Expected builds/<owner>/<repo> in {locator.raw}")
        owner, repo = match.group(1), match.group(2)
        base = f"{BUSY_BISCUIT_BASE}/{owner}/{repo}/master"
        manifest = BuildsManifest.from_json(await fetch_json(session, f"{base}/builds.json"))
        build = manifest.last_successful
        return ArtifactCandidate(
            url=f"{base}/download/{build}/{repo}-{build}.jar",
            file_name=f"{repo}-{build}.jar",
        )

    async def _resolve_guizhanss(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        match = GUIZHANSS_RE.search(locator.value)
        if not match:
            raise ResolutionError(f"Expected builds.guizhanss.com/<owner>/<repo> in {locator.raw}")
        owner, repo = match.group(1), match.group(2)
        base = f"{GUIZHANSS_BASE}/{owner}/{repo}/master"
        manifest = BuildsManifest.from_json(await fetch_json(session, f"{base}/builds.json"))
        build = manifest.last_successful
        return ArtifactCandidate(
            url=f"{base}/download/{build}/{repo}-{build}.jar",
            file_name=f"{repo}-{build}.jar",
        )

    # ================================================================
    #  JITPACK
    # ================================================================

    async def _resolve_jitpack(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        match = JITPACK_RE.search(locator.value)
        if not match:
            raise ResolutionError(f"Expected jitpack.io/#<owner>/<repo> in {locator.raw}")
        repo = Repo(owner=match.group(1), name=match.group(2))
        for version in repo.jitpack_versions():
            url = await self.jitpack.jar_url(repo, version, session)
            if url:
                return ArtifactCandidate(url=url, file_name=url.rsplit("/", 1)[-1])
        logger.warning("JitPack has no build of %s", repo.slug)
        return None

    # ================================================================
    #  CURSEFORGE
    # ================================================================

    async def _resolve_curseforge(self, locator: Locator, session: aiohttp.ClientSession) -> Optional[ArtifactCandidate]:
        match = CURSEFORGE_SLUG_RE.search(locator.value)
        if not match:
            raise ResolutionError(f"Expected curseforge.com/minecraft/<category>/<slug> in {locator.raw}")
        slug = match.group(1)

        project = CurseForgeProject.pick(
            await fetch_json(session, f"{CURSEFORGE_API}/projects?search={quote(slug)}"), slug,
        )
        logger.debug("CurseForge slug %s is project %s", slug, project.project_id)
        latest = CurseForgeFile.latest_from_json(
            await fetch_json(session, f"{CURSEFORGE_API}/files?projectIds={quote(project.project_id)}")
        )

        if latest.download_url:
            url = latest.download_url
        elif latest.file_id:
            url = f"{CURSEFORGE_SITE}/{slug}/download/{latest.file_id}/file"
        else:
            raise ResolutionError(f"CurseForge file of {slug} has neither downloadUrl nor id")
        return ArtifactCandidate(url=url, file_name=latest.file_name or f"{slug}.jar")
