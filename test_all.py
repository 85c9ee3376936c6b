#!/usr/bin/env python3
"""
test_all.py
===========
Test suite for the Plugin Auto-Updater.

Usage:
    pytest test_all.py -v
    pytest test_all.py -v -k rollback
    pytest test_all.py -v --cov=.
"""

import json
import logging
import os
import sys
import tempfile
import threading
import time
import zipfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest


# ══════════════════════════════════════════════════════════════════════════════
#  FAKE HTTP
# ══════════════════════════════════════════════════════════════════════════════


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the code under test."""

    def __init__(self, status=200, payload=None, body=b""):
        self.status = status
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
        self._body = body
        self.content = self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return json.loads(self._body.decode("utf-8"))

    async def text(self):
        return self._body.decode("utf-8")

    async def read(self):
        return self._body

    async def iter_chunked(self, size):
        for i in range(0, len(self._body), size):
            yield self._body[i:i + size]


class FakeSession:
    """
    Routes URLs to canned responses.

    A route may be a list of responses, consumed in order; the last one
    repeats. Unknown URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs.get("headers") or {}))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status=404)
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    async def close(self):
        pass

    @property
    def urls(self):
        return [url for url, _ in self.requests]


# ══════════════════════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


def make_jar(path, name="TestPlugin", version="1.0.0", padding=0):
    """Write a minimal plugin JAR and return its bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("plugin.yml", f"name: {name}\nversion: {version}\nmain: com.example.{name}\n")
        zf.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")
        if padding:
            zf.writestr("data.bin", os.urandom(padding))
    return path.read_bytes()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def plugins_dir(temp_dir):
    path = temp_dir / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def mock_plugin_jar(temp_dir):
    """Create a mock plugin JAR file."""
    jar_path = temp_dir / "TestPlugin.jar"
    make_jar(jar_path)
    return jar_path


@pytest.fixture
def settings(temp_dir, plugins_dir):
    """UpdateSettings pointing at the temp directory."""
    from settings import UpdateSettings

    return UpdateSettings(
        plugins_dir=plugins_dir,
        list_file=temp_dir / "list.yml",
        update_dir=plugins_dir / "update",
        rollback_path=temp_dir / "rollbacks",
        max_retries=0,
    )


@pytest.fixture
def rollback(temp_dir, plugins_dir):
    """An enabled RollbackManager with a temp snapshot root."""
    from rollback_manager import RollbackManager

    return RollbackManager(
        enabled=True,
        root=temp_dir / "rollbacks",
        plugins_dir=plugins_dir,
    )


# ══════════════════════════════════════════════════════════════════════════════
#  1. LOCATOR TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("link, expected", [
    ("https://blob.build/project/Slimefun4/Dev", "blob-build"),
    ("https://thebusybiscuit.github.io/builds/TheBusyBiscuit/Slimefun4/master/", "busybiscuit"),
    ("https://builds.guizhanss.com/ybw0014/Slimefun4/master", "guizhanss"),
    ("https://jitpack.io/#acme/foo", "jitpack"),
    ("https://www.spigotmc.org/resources/essentialsx.9089/", "spigot"),
    ("https://github.com/acme/foo", "github-release"),
    ("https://github.com/acme/foo/actions", "github-actions"),
    ("https://github.com/acme/foo/actions/[2]", "github-actions"),
    ("https://ci.example.com/job/Foo/lastSuccessfulBuild/artifact/*zip*/archive.zip", "jenkins-archive"),
    ("https://ci.ender.zone/job/EssentialsX/", "jenkins"),
    ("https://build.example.org/job/Foo/", "jenkins"),
    ("https://dev.bukkit.org/projects/worldedit", "bukkit-dev"),
    ("https://modrinth.com/plugin/luckperms", "modrinth"),
    ("https://hangar.papermc.io/HelpChat/PlaceholderAPI", "hangar"),
    ("https://www.minebbs.com/resources/foo.123/", "minebbs"),
    ("https://www.curseforge.com/minecraft/bukkit-plugins/worldedit", "curseforge"),
    ("https://example.com/files/plugin.jar", "direct"),
])
def test_classify(link, expected):
    """Each locator maps to exactly one source kind, first rule wins."""
    from locator import classify

    assert classify(link).value == expected


def test_classify_priority_spigot_over_github():
    """A Spigot page mentioning github.com is still a Spigot locator."""
    from locator import SourceKind, classify

    assert classify("https://www.spigotmc.org/resources/x.1/?src=github.com") is SourceKind.SPIGOT


def test_parse_index():
    """Bracket suffix yields (base, n); no brackets yields index 1."""
    from locator import parse_index

    assert parse_index("https://github.com/acme/foo[3]") == ("https://github.com/acme/foo", 3)
    assert parse_index("https://github.com/acme/foo") == ("https://github.com/acme/foo", 1)


@pytest.mark.parametrize("text", ["https://x/foo[2", "https://x/foo[a]", "https://x/foo[0]"])
def test_parse_index_errors(text):
    from locator import LocatorError, parse_index

    with pytest.raises(LocatorError):
        parse_index(text)


def test_locator_parse_github_options():
    """Query options and the custom path are split off a GitHub locator."""
    from locator import Locator, SourceKind

    loc = Locator.parse("https://github.com/acme/foo?get=core&autobuild=true | plugins/custom")

    assert loc.kind is SourceKind.GITHUB_RELEASE
    assert loc.value == "https://github.com/acme/foo/"
    assert loc.index == 1
    assert loc.option("get") == "core"
    assert loc.force_build
    assert loc.custom_path == "plugins/custom"


def test_locator_parse_keeps_direct_url():
    from locator import Locator, SourceKind

    loc = Locator.parse("https://example.com/plugin.jar")

    assert loc.kind is SourceKind.DIRECT
    assert loc.value == "https://example.com/plugin.jar"
    assert not loc.force_build


# ══════════════════════════════════════════════════════════════════════════════
#  2. API MODEL TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_jenkins_pick_falls_back_to_first():
    """Index past the end of a one-artifact build returns that artifact."""
    from api_models import JenkinsBuild

    build = JenkinsBuild.from_json({
        "number": 12,
        "artifacts": [{"fileName": "Foo.jar", "relativePath": "target/Foo.jar"}],
    })

    assert build.pick(2).relative_path == "target/Foo.jar"
    assert JenkinsBuild(number=1).pick(1) is None


def test_missing_fields_raise_resolution_error():
    from api_models import BlobBuildLatest, BuildsManifest, GitHubRelease, ResolutionError

    with pytest.raises(ResolutionError):
        GitHubRelease.from_json({"tag_name": "v1"})
    with pytest.raises(ResolutionError):
        BuildsManifest.from_json({"last_successful": None})
    with pytest.raises(ResolutionError, match="Project not found"):
        BlobBuildLatest.from_json({"success": False, "error": "Project not found"})


def test_jitpack_status_finds_jar_path():
    from api_models import JitPackStatus

    status = JitPackStatus.from_json({
        "status": "ok",
        "files": [{"path": "com/github/acme/foo/x.pom"}, {"path": "com/github/acme/foo/x.jar"}],
    })

    assert status.jar_path == "com/github/acme/foo/x.jar"


# ══════════════════════════════════════════════════════════════════════════════
#  3. HTTP CLIENT TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_token_only_sent_to_github_api():
    from http_client import USER_AGENT, build_headers

    api = build_headers("https://api.github.com/repos/a/b/actions/artifacts", "secret")
    other = build_headers("https://example.com/file.jar", "secret")

    assert api["Authorization"] == "Bearer secret"
    assert "Authorization" not in other
    assert other["User-Agent"] == USER_AGENT


@pytest.mark.asyncio
async def test_download_retries_server_errors(temp_dir):
    from http_client import download_file

    url = "https://example.com/a.jar"
    session = FakeSession({url: [FakeResponse(status=503), FakeResponse(body=b"jar-bytes")]})

    with patch("http_client.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        written = await download_file(session, url, temp_dir / "a.jar", max_retries=2)

    assert written == len(b"jar-bytes")
    assert (temp_dir / "a.jar").read_bytes() == b"jar-bytes"
    assert mock_sleep.await_count == 1


@pytest.mark.asyncio
async def test_download_does_not_retry_not_found(temp_dir):
    from http_client import HttpStatusError, download_file

    session = FakeSession()

    with pytest.raises(HttpStatusError) as err:
        await download_file(session, "https://example.com/missing.jar", temp_dir / "x", max_retries=3)

    assert err.value.status == 404
    assert len(session.requests) == 1


# ══════════════════════════════════════════════════════════════════════════════
#  4. SOURCE RESOLVER TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_resolve_spigot():
    from locator import Locator
    from source_resolver import SourceResolver

    loc = Locator.parse("https://www.spigotmc.org/resources/essentialsx.9089/")
    candidate = await SourceResolver().resolve(loc, FakeSession())

    assert candidate.url == "https://api.spiget.org/v2/resources/9089/download"


GITHUB_RELEASES = [
    {"tag_name": "v2", "assets": [
        {"name": "foo-2.0.jar", "browser_download_url": "https://dl.example/foo-2.0.jar", "size": 100},
    ]},
    {"tag_name": "v1", "assets": [
        {"name": "foo-1.0.jar", "browser_download_url": "https://dl.example/foo-1.0.jar", "size": 90},
        {"name": "foo-1.0-extra.jar", "browser_download_url": "https://dl.example/foo-1.0-extra.jar"},
    ]},
]
RELEASES_URL = "https://api.github.com/repos/acme/foo/releases"


@pytest.mark.asyncio
async def test_resolve_github_index_spans_releases():
    """Index 2 is the first jar of the second release."""
    from locator import Locator
    from source_resolver import SourceResolver

    session = FakeSession({RELEASES_URL: FakeResponse(payload=GITHUB_RELEASES)})
    candidate = await SourceResolver().resolve(Locator.parse("https://github.com/acme/foo[2]"), session)

    assert candidate.url == "https://dl.example/foo-1.0.jar"
    assert not candidate.requires_build


@pytest.mark.asyncio
async def test_resolve_github_index_out_of_range():
    from locator import Locator
    from source_resolver import SourceResolver

    session = FakeSession({RELEASES_URL: FakeResponse(payload=GITHUB_RELEASES)})

    assert await SourceResolver().resolve(Locator.parse("https://github.com/acme/foo[4]"), session) is None


@pytest.mark.asyncio
async def test_resolve_github_get_filter():
    from locator import Locator
    from source_resolver import SourceResolver

    session = FakeSession({RELEASES_URL: FakeResponse(payload=GITHUB_RELEASES)})
    candidate = await SourceResolver().resolve(
        Locator.parse("https://github.com/acme/foo?get=extra"), session,
    )

    assert candidate.file_name == "foo-1.0-extra.jar"


@pytest.mark.asyncio
async def test_resolve_github_without_jars_requests_build():
    from locator import Locator
    from source_resolver import SourceResolver

    releases = [{"tag_name": "v1", "assets": [
        {"name": "source.zip", "browser_download_url": "https://dl.example/source.zip"},
    ]}]
    session = FakeSession({RELEASES_URL: FakeResponse(payload=releases)})
    candidate = await SourceResolver().resolve(Locator.parse("https://github.com/acme/foo"), session)

    assert candidate.requires_build
    assert candidate.build_repo == "https://github.com/acme/foo"


@pytest.mark.asyncio
async def test_resolve_github_actions_artifact():
    from locator import Locator
    from source_resolver import SourceResolver

    artifacts = {"artifacts": [
        {"name": None, "archive_download_url": "https://api.github.com/x/0/zip"},
        {"name": "foo-build", "archive_download_url": "https://api.github.com/x/1/zip"},
    ]}
    session = FakeSession({
        "https://api.github.com/repos/acme/foo/actions/artifacts": FakeResponse(payload=artifacts),
    })
    candidate = await SourceResolver(token="t").resolve(
        Locator.parse("https://github.com/acme/foo/actions"), session,
    )

    assert candidate.url == "https://api.github.com/x/1/zip"
    assert session.requests[0][1]["Authorization"] == "Bearer t"


@pytest.mark.asyncio
async def test_resolve_jenkins_index_fallback():
    """[2] against a one-artifact build picks the only artifact."""
    from locator import Locator
    from source_resolver import SourceResolver

    base = "https://ci.example.com/job/Foo/"
    session = FakeSession({
        base + "lastSuccessfulBuild/api/json": FakeResponse(payload={
            "number": 7,
            "artifacts": [{"fileName": "Foo.jar", "relativePath": "target/Foo.jar"}],
        }),
    })
    candidate = await SourceResolver().resolve(Locator.parse(base + "[2]"), session)

    assert candidate.url == base + "lastSuccessfulBuild/artifact/target/Foo.jar"
    assert not candidate.archive


@pytest.mark.asyncio
async def test_resolve_jenkins_api_failure_uses_archive():
    from locator import Locator
    from source_resolver import SourceResolver

    candidate = await SourceResolver().resolve(
        Locator.parse("https://ci.example.com/job/Foo/"), FakeSession(),
    )

    assert candidate.archive
    assert candidate.url.endswith("lastSuccessfulBuild/artifact/*zip*/archive.zip")


@pytest.mark.asyncio
async def test_resolve_modrinth_platform_filter():
    from locator import Locator
    from source_resolver import SourceResolver

    session = FakeSession({
        "https://api.modrinth.com/v2/search?query=luckperms": FakeResponse(payload={
            "hits": [{"project_id": "Vebnzrzj", "slug": "luckperms"}],
        }),
        "https://api.modrinth.com/v2/project/Vebnzrzj/version": FakeResponse(payload=[
            {"version_number": "5.4-fabric", "loaders": ["fabric"],
             "files": [{"url": "https://cdn.example/fabric.jar"}]},
            {"version_number": "5.4", "loaders": ["bukkit", "paper"],
             "files": [{"url": "https://cdn.example/paper.jar", "filename": "paper.jar"}]},
        ]),
    })
    candidate = await SourceResolver(platform="paper").resolve(
        Locator.parse("https://modrinth.com/plugin/luckperms"), session,
    )

    assert candidate.url == "https://cdn.example/paper.jar"


@pytest.mark.asyncio
async def test_resolve_hangar_maps_platform():
    from locator import Locator
    from source_resolver import SourceResolver

    api = "https://hangar.papermc.io/api/v1/projects/PlaceholderAPI"
    session = FakeSession({api + "/latestrelease": FakeResponse(body=b"2.11.6")})
    candidate = await SourceResolver(platform="bungeecord").resolve(
        Locator.parse("https://hangar.papermc.io/HelpChat/PlaceholderAPI"), session,
    )

    assert candidate.url == api + "/versions/2.11.6/WATERFALL/download"


@pytest.mark.asyncio
async def test_resolve_blob_build_error_body():
    from locator import Locator
    from source_resolver import SourceResolver

    session = FakeSession({
        "https://blob.build/api/builds/Slimefun4/Dev/latest": FakeResponse(
            payload={"success": False, "error": "Project not found"},
        ),
    })

    assert await SourceResolver().resolve(
        Locator.parse("https://blob.build/project/Slimefun4/Dev"), session,
    ) is None


@pytest.mark.asyncio
async def test_resolve_blob_build_server_error():
    from http_client import USER_AGENT
    from locator import Locator
    from source_resolver import SourceResolver

    url = "https://blob.build/api/builds/Slimefun4/Dev/latest"
    session = FakeSession({url: FakeResponse(status=502, body=b"<html>Bad gateway</html>")})

    assert await SourceResolver().resolve(
        Locator.parse("https://blob.build/project/Slimefun4/Dev"), session,
    ) is None
    assert session.requests[0][1]["User-Agent"] == USER_AGENT


@pytest.mark.asyncio
async def test_resolve_curseforge_uses_last_file():
    from locator import Locator
    from source_resolver import CURSEFORGE_API, SourceResolver

    session = FakeSession({
        CURSEFORGE_API + "/projects?search=worldedit": FakeResponse(payload=[
            {"id": 1, "slug": "worldedit-for-bukkit"},
            {"id": 31043, "slug": "worldedit"},
        ]),
        CURSEFORGE_API + "/files?projectIds=31043": FakeResponse(payload=[
            {"id": 100, "fileName": "worldedit-7.2.jar", "downloadUrl": "https://edge.forgecdn.net/files/100/worldedit-7.2.jar"},
            {"id": 200, "fileName": "worldedit-7.3.jar", "downloadUrl": "https://edge.forgecdn.net/files/200/worldedit-7.3.jar"},
        ]),
    })

    candidate = await SourceResolver().resolve(
        Locator.parse("https://www.curseforge.com/minecraft/bukkit-plugins/worldedit"), session,
    )

    assert candidate.url == "https://edge.forgecdn.net/files/200/worldedit-7.3.jar"
    assert candidate.file_name == "worldedit-7.3.jar"


@pytest.mark.asyncio
async def test_resolve_curseforge_falls_back_to_file_page():
    from locator import Locator
    from source_resolver import CURSEFORGE_API, SourceResolver

    session = FakeSession({
        CURSEFORGE_API + "/projects?search=essentials": FakeResponse(payload=[{"id": 93271, "slug": "other"}]),
        CURSEFORGE_API + "/files?projectIds=93271": FakeResponse(payload=[{"id": 4567}]),
    })

    candidate = await SourceResolver().resolve(
        Locator.parse("https://www.curseforge.com/minecraft/bukkit-plugins/essentials/"), session,
    )

    assert candidate.url == "https://www.curseforge.com/minecraft/bukkit-plugins/essentials/download/4567/file"


@pytest.mark.asyncio
async def test_resolve_curseforge_without_files():
    from locator import Locator
    from source_resolver import CURSEFORGE_API, SourceResolver

    session = FakeSession({
        CURSEFORGE_API + "/projects?search=ghost": FakeResponse(payload=[{"id": 5, "slug": "ghost"}]),
        CURSEFORGE_API + "/files?projectIds=5": FakeResponse(payload=[]),
    })

    assert await SourceResolver().resolve(
        Locator.parse("https://www.curseforge.com/minecraft/bukkit-plugins/ghost"), session,
    ) is None


@pytest.mark.asyncio
async def test_resolve_busybiscuit():
    from locator import Locator
    from source_resolver import SourceResolver

    base = "https://thebusybiscuit.github.io/builds/TheBusyBiscuit/Slimefun4/master"
    session = FakeSession({base + "/builds.json": FakeResponse(payload={"last_successful": 1100})})
    candidate = await SourceResolver().resolve(Locator.parse(base + "/"), session)

    assert candidate.url == base + "/download/1100/Slimefun4-1100.jar"


def test_hangar_platform_mapping():
    from source_resolver import hangar_platform

    assert hangar_platform("Purpur") == "PAPER"
    assert hangar_platform("velocity") == "VELOCITY"
    assert hangar_platform("bungee") == "WATERFALL"
    assert hangar_platform("something-else") == "PAPER"


# ══════════════════════════════════════════════════════════════════════════════
#  5. PLUGIN VALIDATOR TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_extract_plugin_meta(mock_plugin_jar):
    from plugin_validator import extract_plugin_meta, looks_like_plugin_jar

    meta = extract_plugin_meta(mock_plugin_jar)

    assert meta.name == "TestPlugin"
    assert meta.version == "1.0.0"
    assert looks_like_plugin_jar(mock_plugin_jar)


def test_validate_corrupted_jar(temp_dir):
    from plugin_validator import validate_jar

    bad = temp_dir / "bad.jar"
    bad.write_bytes(b"this is not a zip file")

    result = validate_jar(bad)

    assert not result.is_valid
    assert "not a valid" in result.summary()


# ══════════════════════════════════════════════════════════════════════════════
#  6. FETCHER TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_container_zip_extracts_first_usable_jar(temp_dir, plugins_dir):
    from plugin_fetcher import Outcome, PluginFetcher

    inner = make_jar(temp_dir / "inner.jar", name="Foo")
    tmp = plugins_dir / "Foo.zip"
    with zipfile.ZipFile(tmp, "w") as zf:
        zf.writestr("README.txt", "hello")
        zf.writestr("build/libs/Foo-1.0-sources.jar", b"sources")
        zf.writestr("build/libs/Foo-1.0.jar", inner)

    fetcher = PluginFetcher(plugins_dir)
    result = fetcher.install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    assert result.outcome == Outcome.UPDATED
    assert (plugins_dir / "Foo.jar").read_bytes() == inner
    assert not tmp.exists()


def test_container_without_jar_keeps_temp(plugins_dir):
    from plugin_fetcher import Outcome, PluginFetcher

    tmp = plugins_dir / "Foo.zip"
    with zipfile.ZipFile(tmp, "w") as zf:
        zf.writestr("docs/index.html", "<html></html>")
        zf.writestr("libs/Foo-javadoc.jar", b"docs")

    result = PluginFetcher(plugins_dir).install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    assert not result.success
    assert result.outcome == Outcome.DOWNLOAD_FAILED
    assert tmp.exists()
    assert not (plugins_dir / "Foo.jar").exists()


def test_identical_download_is_unchanged(plugins_dir):
    from plugin_fetcher import Outcome, PluginFetcher

    current = make_jar(plugins_dir / "Foo.jar", name="Foo")
    tmp = plugins_dir / "Foo.zip"
    tmp.write_bytes(current)

    result = PluginFetcher(plugins_dir).install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    assert result.outcome == Outcome.UNCHANGED
    assert not tmp.exists()


def test_install_path_staging_and_custom(plugins_dir):
    from plugin_fetcher import PluginFetcher

    fetcher = PluginFetcher(plugins_dir)
    assert fetcher.decide_install_path("Foo") == plugins_dir / "Foo.jar"

    (plugins_dir / "update").mkdir()
    (plugins_dir / "update" / "Foo.jar").write_bytes(b"staged")
    assert fetcher.decide_install_path("Foo") == plugins_dir / "update" / "Foo.jar"
    assert fetcher.decide_install_path("Bar") == plugins_dir / "Bar.jar"
    assert fetcher.decide_install_path("Foo", "custom") == Path("custom") / "Foo.jar"


def test_install_snapshots_previous_jar(plugins_dir, rollback):
    from plugin_fetcher import PluginFetcher

    old = make_jar(plugins_dir / "Foo.jar", name="Foo", version="1.0")
    tmp = plugins_dir / "Foo.zip"
    make_jar(tmp, name="Foo", version="2.0")

    PluginFetcher(plugins_dir, rollback=rollback).install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    backups = rollback.list_backups("Foo")
    assert len(backups) == 1
    assert backups[0].read_bytes() == old


def test_move_staged_updates_for_proxies(plugins_dir):
    from plugin_fetcher import PluginFetcher

    (plugins_dir / "update").mkdir()
    (plugins_dir / "update" / "Foo.jar").write_bytes(b"new")
    fetcher = PluginFetcher(plugins_dir)

    assert fetcher.move_staged_updates("paper") == 0
    assert fetcher.move_staged_updates("velocity") == 1
    assert (plugins_dir / "Foo.jar").read_bytes() == b"new"


@pytest.mark.asyncio
async def test_html_page_never_replaces_installed_jar(plugins_dir, rollback):
    """A 200 answer with an HTML challenge page is rejected before the swap."""
    from plugin_fetcher import Outcome, PluginFetcher

    old = make_jar(plugins_dir / "Foo.jar", name="Foo")
    url = "https://api.spiget.org/v2/resources/1/download"
    session = FakeSession({url: FakeResponse(body=b"<!doctype html><html>Just a moment...</html>")})

    result = await PluginFetcher(plugins_dir, rollback=rollback).fetch(url, "Foo", session)

    assert not result.success
    assert result.outcome == Outcome.DOWNLOAD_FAILED
    assert "not a valid JAR" in result.message
    assert (plugins_dir / "Foo.jar").read_bytes() == old
    assert not (plugins_dir / "Foo.zip").exists()
    assert rollback.list_backups("Foo") == []


def test_corrupt_container_entry_keeps_installed_jar(temp_dir, plugins_dir, rollback):
    """A read error while extracting leaves the active JAR untouched."""
    from plugin_fetcher import Outcome, PluginFetcher

    old = make_jar(plugins_dir / "Foo.jar", name="Foo")
    inner = make_jar(temp_dir / "inner.jar", name="Foo", version="2.0", padding=4096)
    tmp = plugins_dir / "Foo.zip"
    with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_STORED) as zf:
        zf.writestr("build/Foo-1.0.jar", inner)

    raw = bytearray(tmp.read_bytes())
    flip = raw.find(inner) + len(inner) // 2
    raw[flip] ^= 0xFF
    tmp.write_bytes(bytes(raw))

    result = PluginFetcher(plugins_dir, rollback=rollback).install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    assert not result.success
    assert result.outcome == Outcome.DOWNLOAD_FAILED
    assert (plugins_dir / "Foo.jar").read_bytes() == old
    assert not (plugins_dir / "Foo.jar.temp").exists()
    assert rollback.list_backups("Foo") == []


def test_container_entry_that_is_not_a_jar_is_rejected(plugins_dir):
    from plugin_fetcher import Outcome, PluginFetcher

    old = make_jar(plugins_dir / "Foo.jar", name="Foo")
    tmp = plugins_dir / "Foo.zip"
    with zipfile.ZipFile(tmp, "w") as zf:
        zf.writestr("libs/Foo.jar", b"<html>not found</html>")

    result = PluginFetcher(plugins_dir).install_from_temp(tmp, plugins_dir / "Foo.jar", "Foo")

    assert result.outcome == Outcome.DOWNLOAD_FAILED
    assert (plugins_dir / "Foo.jar").read_bytes() == old
    assert not (plugins_dir / "Foo.jar.temp").exists()


def test_empty_archive_is_not_a_valid_jar(temp_dir):
    from plugin_validator import validate_jar

    empty = temp_dir / "empty.jar"
    with zipfile.ZipFile(empty, "w"):
        pass

    result = validate_jar(empty)

    assert not result.is_valid
    assert "no entries" in result.summary()


def test_install_into_custom_dir_on_another_filesystem(temp_dir, plugins_dir):
    """Renames across directories fail as they would across devices."""
    import errno

    from plugin_fetcher import Outcome, PluginFetcher

    real_rename, real_replace = os.rename, os.replace

    def rename_same_dir_only(src, dst, *args, **kwargs):
        if Path(src).parent != Path(dst).parent:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_rename(src, dst, *args, **kwargs)

    def replace_same_dir_only(src, dst, *args, **kwargs):
        if Path(src).parent != Path(dst).parent:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_replace(src, dst, *args, **kwargs)

    tmp = plugins_dir / "Foo.zip"
    body = make_jar(tmp, name="Foo")
    fetcher = PluginFetcher(plugins_dir)
    dest = fetcher.decide_install_path("Foo", str(temp_dir / "other-disk"))

    with patch("os.rename", side_effect=rename_same_dir_only), \
            patch("os.replace", side_effect=replace_same_dir_only):
        result = fetcher.install_from_temp(tmp, dest, "Foo")

    assert result.outcome == Outcome.UPDATED
    assert dest.read_bytes() == body
    assert not tmp.exists()
    assert not fetcher.staging_path(dest).exists()


# ══════════════════════════════════════════════════════════════════════════════
#  7. BUILD FALLBACK TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_build_candidates_order(temp_dir):
    """Wrappers first (Gradle before Maven), then system tools."""
    from github_build import GitHubBuilder

    project = temp_dir / "foo-main"
    project.mkdir()
    for name in ("gradlew", "mvnw", "build.gradle", "pom.xml"):
        (project / name).write_text("")

    builder = GitHubBuilder()
    builder._windows = False
    with patch("github_build.shutil.which", side_effect=lambda tool: f"/usr/bin/{tool}"):
        labels = [tool.label for tool in builder.build_candidates(project)]

    assert labels == ["Gradle wrapper", "Maven wrapper", "system Gradle", "system Maven"]


def test_build_project_falls_through_to_next_tool(temp_dir):
    from github_build import GitHubBuilder

    project = temp_dir / "foo-main"
    (project / "target").mkdir(parents=True)
    (project / "gradlew").write_text("")
    (project / "mvnw").write_text("")
    (project / "target" / "foo-1.0.jar").write_bytes(b"x" * 2048)
    (project / "target" / "foo-1.0-sources.jar").write_bytes(b"y" * 4096)

    builder = GitHubBuilder()
    builder._windows = False
    out_jar = temp_dir / "out" / "Foo.jar"
    with patch("github_build.shutil.which", return_value=None):
        with patch.object(builder, "run_build", side_effect=[False, True]) as mock_run:
            assert builder.build_project(project, out_jar)

    assert [c.args[1].label for c in mock_run.call_args_list] == ["Gradle wrapper", "Maven wrapper"]
    assert out_jar.read_bytes() == b"x" * 2048


def test_build_project_stops_after_gradle_wrapper(temp_dir):
    """Maven is never invoked once the Gradle wrapper has produced a JAR."""
    from github_build import GitHubBuilder

    project = temp_dir / "foo-main"
    (project / "build" / "libs").mkdir(parents=True)
    (project / "gradlew").write_text("")
    (project / "mvnw").write_text("")
    (project / "build" / "libs" / "foo-1.0.jar").write_bytes(b"g" * 2048)

    builder = GitHubBuilder()
    builder._windows = False
    out_jar = temp_dir / "out" / "Foo.jar"
    with patch("github_build.shutil.which", return_value="/usr/bin/mvn"):
        with patch.object(builder, "run_build", side_effect=[True]) as mock_run:
            assert builder.build_project(project, out_jar)

    assert mock_run.call_count == 1
    assert mock_run.call_args.args[1].label == "Gradle wrapper"
    assert out_jar.read_bytes() == b"g" * 2048


def test_select_built_jar_skips_wrappers(temp_dir):
    from github_build import GitHubBuilder

    (temp_dir / "gradle" / "wrapper").mkdir(parents=True)
    (temp_dir / "gradle" / "wrapper" / "gradle-wrapper.jar").write_bytes(b"w" * 9000)
    (temp_dir / "build" / "libs").mkdir(parents=True)
    (temp_dir / "build" / "libs" / "Foo-all.jar").write_bytes(b"a" * 5000)
    (temp_dir / "build" / "libs" / "Foo-javadoc.jar").write_bytes(b"d" * 8000)

    assert GitHubBuilder.select_built_jar(temp_dir).name == "Foo-all.jar"


def test_unpack_rejects_path_traversal(temp_dir):
    from github_build import GitHubBuilder, Repo

    archive = temp_dir / "src.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../evil.txt", "nope")

    with pytest.raises(OSError):
        GitHubBuilder.unpack(archive, temp_dir / "out", Repo("acme", "foo"))


def test_unpack_returns_project_root(temp_dir):
    from github_build import GitHubBuilder, Repo

    archive = temp_dir / "src.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("foo-main/build.gradle", "")

    root = GitHubBuilder.unpack(archive, temp_dir / "out", Repo("acme", "foo", "main"))

    assert root.name == "foo-main"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell script")
def test_run_build_streams_output(temp_dir, caplog):
    from github_build import BuildTool, GitHubBuilder

    script = temp_dir / "gradlew"
    script.write_text("#!/bin/sh\necho compiling plugin\nexit 0\n")
    builder = GitHubBuilder()
    builder._windows = False

    with caplog.at_level(logging.INFO, logger="github_build"):
        assert builder.run_build(temp_dir, BuildTool("Gradle wrapper", (str(script),)))

    assert any("[BUILD] compiling plugin" in r.getMessage() for r in caplog.records)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell script")
def test_run_build_times_out(temp_dir):
    from github_build import BuildTool, GitHubBuilder

    script = temp_dir / "gradlew"
    script.write_text("#!/bin/sh\nsleep 30\n")
    builder = GitHubBuilder(build_timeout=1)
    builder._windows = False

    started = time.monotonic()
    assert not builder.run_build(temp_dir, BuildTool("Gradle wrapper", (str(script),)))
    assert time.monotonic() - started < 20


@pytest.mark.asyncio
async def test_jitpack_triggers_and_polls():
    from github_build import JitPackClient, Repo

    repo = Repo("acme", "foo")
    client = JitPackClient(poll_attempts=3, poll_delay=0)
    status = client.status_url(repo, "master-SNAPSHOT")
    session = FakeSession({
        status: [FakeResponse(status=404), FakeResponse(status=404), FakeResponse(payload={"status": "ok"})],
        "https://jitpack.io" + client.conventional_path(repo, "master-SNAPSHOT"): FakeResponse(body=b"x"),
    })

    url = await client.jar_url(repo, "master-SNAPSHOT", session)

    assert url == "https://jitpack.io/com/github/acme/foo/master-SNAPSHOT/foo-master-SNAPSHOT.jar"
    assert session.urls.count(status) == 3


def test_jitpack_versions():
    from github_build import Repo

    assert Repo("a", "b", "main").jitpack_versions() == ["main-SNAPSHOT", "master-SNAPSHOT"]
    assert Repo.parse("https://github.com/acme/foo.git").name == "foo"


# ══════════════════════════════════════════════════════════════════════════════
#  8. ROLLBACK MANAGER TESTS
# ══════════════════════════════════════════════════════════════════════════════


FAILURE_LINE = "[Server thread/ERROR]: Could not load plugin 'Foo.jar' in folder 'plugins'"


def _install_update(plugins_dir, rollback):
    """Snapshot v1 of Foo.jar, then overwrite it with v2. Returns v1 bytes."""
    old = make_jar(plugins_dir / "Foo.jar", name="Foo", version="1.0")
    rollback.prepare_backup("Foo", plugins_dir / "Foo.jar")
    make_jar(plugins_dir / "Foo.jar", name="Foo", version="2.0")
    return old


def test_rollback_filters_fall_back_to_defaults(temp_dir):
    from rollback_manager import DEFAULT_FILTERS, RollbackManager

    broken = RollbackManager(enabled=True, root=temp_dir / "rb", filters=["(unclosed"])
    custom = RollbackManager(enabled=True, root=temp_dir / "rb", filters=["Boom"])

    assert len(broken.filters) == len(DEFAULT_FILTERS)
    assert [p.pattern for p in custom.filters] == ["Boom"]


def test_extract_candidates():
    from rollback_manager import RollbackManager

    candidates = RollbackManager.extract_candidates(FAILURE_LINE)

    assert candidates[0] == "Foo.jar"
    assert "Server thread/ERROR" in candidates


def test_rollback_restores_backup(plugins_dir, rollback):
    old = _install_update(plugins_dir, rollback)

    assert rollback.handle_log_line(FAILURE_LINE)
    assert (plugins_dir / "Foo.jar").read_bytes() == old
    assert len(list((rollback.root / "failed").glob("*.failed.jar"))) == 1


def test_rollback_ignores_unrelated_lines(plugins_dir, rollback):
    _install_update(plugins_dir, rollback)

    assert not rollback.handle_log_line("Done (3.2s)! For help, type \"help\"")
    assert not rollback.handle_log_line("Could not load plugin 'Other.jar'")


def test_rollback_single_fire_under_concurrency(plugins_dir, rollback):
    """Two threads delivering the same signal cause exactly one copy."""
    _install_update(plugins_dir, rollback)
    copies = []
    lock = threading.Lock()

    def counting_copy(source, dest):
        with lock:
            copies.append(dest)
        time.sleep(0.05)

    rollback._copy_file = counting_copy
    barrier = threading.Barrier(2)

    def deliver():
        barrier.wait()
        rollback.handle_log_line(FAILURE_LINE)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(copies) == 1


def test_pending_queue_survives_locked_file(plugins_dir, rollback):
    """A locked destination queues the restore; a later replay applies it."""
    old = _install_update(plugins_dir, rollback)

    rollback._copy_file = Mock(side_effect=PermissionError("file is locked"))
    assert not rollback.handle_log_line(FAILURE_LINE)

    pending = rollback.load_pending()
    assert len(pending) == 1
    assert pending[0].plugin_key == "foo"
    assert json.loads(rollback.pending_file.read_text())[0]["jar_key"] == "foo"

    # still locked: stays queued
    assert rollback.process_pending() == 1
    assert rollback.pending_file.exists()

    del rollback._copy_file
    assert rollback.process_pending() == 0
    assert not rollback.pending_file.exists()
    assert (plugins_dir / "Foo.jar").read_bytes() == old


def test_pending_queue_purged_when_disabled(temp_dir):
    from rollback_manager import RollbackManager

    root = temp_dir / "rb"
    root.mkdir()
    (root / "pending.json").write_text(json.dumps([{"plugin_key": "foo", "jar_key": "foo"}]))

    manager = RollbackManager(enabled=False, root=root)

    assert manager.process_pending() == 0
    assert not (root / "pending.json").exists()


def test_snapshot_retention(plugins_dir, temp_dir):
    from rollback_manager import RollbackManager

    manager = RollbackManager(enabled=True, root=temp_dir / "rb", max_copies=2, plugins_dir=plugins_dir)
    snap_dir = manager.root / "Foo"
    snap_dir.mkdir(parents=True)
    for stamp in ("20240101-000000", "20240301-000000", "20240201-000000"):
        (snap_dir / f"Foo-{stamp}.jar").write_bytes(b"old")

    make_jar(plugins_dir / "Foo.jar", name="Foo")
    manager.prepare_backup("Foo", plugins_dir / "Foo.jar")

    names = [p.name for p in manager.list_backups("Foo")]
    assert len(names) == 2
    assert "Foo-20240301-000000.jar" in names
    assert "Foo-20240101-000000.jar" not in names


def test_staged_target_aliases_active_jar(plugins_dir, rollback):
    """A download staged into update/ snapshots the running jar."""
    old = make_jar(plugins_dir / "Foo.jar", name="Foo")
    (plugins_dir / "update").mkdir()

    record = rollback.prepare_backup("Foo", plugins_dir / "update" / "Foo.jar")

    assert record.active_path.name == "Foo.jar"
    assert record.active_path.parent.name == "plugins"
    assert record.backup_path.read_bytes() == old


def test_monitor_feeds_host_logs(plugins_dir, rollback):
    from rollback_manager import RollbackMonitor

    old = _install_update(plugins_dir, rollback)
    monitor = RollbackMonitor(rollback)
    host = logging.getLogger("minecraft.server")
    monitor.attach()
    try:
        # records from the updater's own modules are never treated as signals
        logging.getLogger("plugin_fetcher").error(FAILURE_LINE)
        monitor.join(timeout=5)
        assert (plugins_dir / "Foo.jar").read_bytes() != old

        host.error(FAILURE_LINE)
        monitor.join(timeout=5)
    finally:
        monitor.close()

    assert (plugins_dir / "Foo.jar").read_bytes() == old


def test_declared_name_alias(plugins_dir, rollback):
    from plugin_fetcher import PluginFetcher

    old = make_jar(plugins_dir / "EssX.jar", name="Essentials", version="1.0")
    tmp = plugins_dir / "EssX.zip"
    make_jar(tmp, name="Essentials", version="2.0")
    PluginFetcher(plugins_dir, rollback=rollback).install_from_temp(tmp, plugins_dir / "EssX.jar", "EssX")

    assert rollback.handle_log_line("Error occurred while enabling Essentials v2.0 (Is it up to date?)")
    assert (plugins_dir / "EssX.jar").read_bytes() == old


# ══════════════════════════════════════════════════════════════════════════════
#  9. PLUGIN LIST TESTS
# ══════════════════════════════════════════════════════════════════════════════


LIST_TEXT = (
    "# managed by the updater\n"
    "Essentials: https://www.spigotmc.org/resources/essentialsx.9089/\n"
    "\n"
    "# Foo: https://github.com/acme/foo[2]\n"
    "Bar: https://example.com/bar.jar\n"
)


def test_list_entries(temp_dir):
    from plugin_list import PluginList

    path = temp_dir / "list.yml"
    path.write_text(LIST_TEXT)
    plugins = PluginList(path)

    first = [e.to_dict() for e in plugins.entries()]
    second = [e.to_dict() for e in plugins.entries()]

    assert first == second
    assert [e["name"] for e in first] == ["Essentials", "Foo", "Bar"]
    assert first[1]["enabled"] is False
    assert list(plugins.enabled_links()) == ["Essentials", "Bar"]


def test_enable_disable_round_trip(temp_dir):
    from plugin_list import PluginList

    path = temp_dir / "list.yml"
    path.write_text(LIST_TEXT)
    plugins = PluginList(path)

    assert plugins.enable("Foo")
    assert "\nFoo: https://github.com/acme/foo[2]\n" in path.read_text()
    assert plugins.get("Foo").enabled

    assert plugins.disable("Foo")
    assert path.read_text() == LIST_TEXT
    assert not plugins.disable("Foo")


def test_add_and_remove(temp_dir):
    from plugin_list import PluginList

    path = temp_dir / "list.yml"
    path.write_text(LIST_TEXT)
    plugins = PluginList(path)

    assert plugins.add("Baz", "https://modrinth.com/plugin/baz")
    assert not plugins.add("Baz", "https://elsewhere")
    assert plugins.get("Baz").link == "https://modrinth.com/plugin/baz"

    assert plugins.remove("Baz")
    assert path.read_text() == LIST_TEXT
    assert not plugins.remove("Baz")


def test_list_paging(temp_dir):
    from plugin_list import PluginList

    path = temp_dir / "list.yml"
    path.write_text("".join(f"P{i}: https://example.com/{i}.jar\n" for i in range(10)))

    entries, pages = PluginList(path).page(2, per_page=8)

    assert pages == 2
    assert [e.name for e in entries] == ["P8", "P9"]


def test_empty_list_logs_hint(temp_dir, caplog):
    from plugin_list import EMPTY_LIST_HINT, PluginList

    with caplog.at_level(logging.WARNING, logger="plugin_list"):
        assert PluginList(temp_dir / "missing.yml").enabled_links() == {}

    assert EMPTY_LIST_HINT in caplog.text


# ══════════════════════════════════════════════════════════════════════════════
#  10. SETTINGS TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_settings_defaults(temp_dir):
    from settings import load_settings

    s = load_settings(temp_dir / "missing.json")

    assert s.plugins_dir == Path("plugins")
    assert s.platform == "paper"
    assert s.max_parallel == 4
    assert not s.rollback_enabled
    assert s.rollback_max_copies == 3
    assert s.rollback_filters == []
    assert s.build_timeout == 1200
    assert s.min_jar_size == 10 * 1024


def test_settings_round_trip(temp_dir):
    from settings import UpdateSettings, load_settings, save_settings

    config = {
        "paths": {"plugins_dir": "srv/plugins"},
        "updates": {"platform": "Velocity", "max_parallel": 2},
        "rollback": {"enabled": True, "filters": ["Boom"]},
        "http": {"github_token": "abc"},
    }
    s = UpdateSettings.from_config(config)

    assert s.update_dir == Path("srv/plugins") / "update"
    assert s.rollback_path == Path("srv/plugins") / "aup-rollbacks"
    assert s.platform == "velocity"

    path = temp_dir / "config.json"
    assert save_settings(s, path)
    assert load_settings(path) == s


def test_settings_corrupt_file(temp_dir):
    from settings import load_settings

    path = temp_dir / "config.json"
    path.write_text("{not json")

    assert load_settings(path).max_parallel == 4


# ══════════════════════════════════════════════════════════════════════════════
#  11. SCHEDULER TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_threaded_scheduler_outside_loop():
    from scheduler import ThreadedScheduler, select_scheduler

    scheduler = select_scheduler()
    try:
        assert isinstance(scheduler, ThreadedScheduler)

        async def answer():
            return 42

        assert scheduler.submit(answer()).result(timeout=5) == 42
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_asyncio_scheduler_inside_loop():
    from scheduler import AsyncioScheduler, select_scheduler

    scheduler = select_scheduler()
    assert isinstance(scheduler, AsyncioScheduler)

    async def answer():
        return 7

    assert await scheduler.submit(answer()) == 7


# ══════════════════════════════════════════════════════════════════════════════
#  12. UPDATER TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_spigot_end_to_end(settings, temp_dir):
    """A Spigot entry lands in plugins/ with the response bytes unchanged."""
    from plugin_fetcher import Outcome
    from plugin_updater import PluginUpdater

    settings.list_file.write_text("Essentials: https://www.spigotmc.org/resources/essentialsx.9089/\n")
    body = make_jar(temp_dir / "served.jar", name="Essentials")
    session = FakeSession({
        "https://api.spiget.org/v2/resources/9089/download": FakeResponse(body=body),
    })

    results = await PluginUpdater(settings).run_batch(session=session)

    assert results["Essentials"].outcome == Outcome.UPDATED
    assert "9089" in session.urls[0]
    assert (settings.plugins_dir / "Essentials.jar").read_bytes() == body
    assert not (settings.plugins_dir / "Essentials.zip").exists()


@pytest.mark.asyncio
async def test_batch_isolates_failures(settings, temp_dir):
    from plugin_fetcher import Outcome
    from plugin_updater import PluginUpdater

    body = make_jar(temp_dir / "served.jar", name="Bar")
    session = FakeSession({"https://example.com/bar.jar": FakeResponse(body=body)})
    links = {
        "Broken": "https://github.com/acme/foo[x]",
        "Missing": "https://example.com/missing.jar",
        "Bar": "https://example.com/bar.jar",
    }

    results = await PluginUpdater(settings).run_batch(links, session=session)

    assert list(results) == ["Broken", "Missing", "Bar"]
    assert results["Broken"].outcome == Outcome.INVALID_LOCATOR
    assert results["Missing"].outcome == Outcome.DOWNLOAD_FAILED
    assert results["Bar"].outcome == Outcome.UPDATED


@pytest.mark.asyncio
async def test_batch_is_single_flight(settings):
    from plugin_updater import BATCH_BUSY_NOTICE, PluginUpdater

    updater = PluginUpdater(settings, scheduler=Mock())
    updater._batch_lock.acquire()
    try:
        busy = updater.start_batch()
        assert not busy.success
        assert busy.message == BATCH_BUSY_NOTICE
        assert await updater.run_batch({}, session=FakeSession()) is None
        updater.scheduler.submit.assert_not_called()
    finally:
        updater._batch_lock.release()

    assert await updater.run_batch({}, session=FakeSession()) == {}
    assert not updater.batch_running


def test_single_update_is_fire_and_forget(settings):
    from plugin_updater import PluginUpdater

    scheduler = Mock()
    updater = PluginUpdater(settings, scheduler=scheduler)
    updater._batch_lock.acquire()
    try:
        result = updater.update_plugin("Foo", "https://example.com/foo.jar")
    finally:
        updater._batch_lock.release()

    assert result.success
    scheduler.submit.assert_called_once()
    scheduler.submit.call_args.args[0].close()


@pytest.mark.asyncio
async def test_github_without_jar_builds_from_source(settings, temp_dir):
    from plugin_fetcher import Outcome
    from plugin_updater import PluginUpdater

    built = make_jar(temp_dir / "built.jar", name="Foo")
    session = FakeSession({RELEASES_URL: FakeResponse(payload=[])})
    updater = PluginUpdater(settings)

    async def fake_build(repo_url, out_jar, session):
        out_jar.write_bytes(built)
        return True

    with patch.object(updater.builder, "build", new=AsyncMock(side_effect=fake_build)) as mock_build:
        result = await updater.update_entry("Foo", "https://github.com/acme/foo", session)

    assert result.outcome == Outcome.UPDATED
    assert mock_build.await_args.args[0] == "https://github.com/acme/foo"
    assert (settings.plugins_dir / "Foo.jar").read_bytes() == built


@pytest.mark.asyncio
async def test_github_without_jar_and_compile_disabled(settings):
    from plugin_fetcher import Outcome
    from plugin_updater import PluginUpdater

    settings.auto_compile = False
    session = FakeSession({RELEASES_URL: FakeResponse(payload=[])})
    updater = PluginUpdater(settings)

    with patch.object(updater.builder, "build", new=AsyncMock()) as mock_build:
        result = await updater.update_entry("Foo", "https://github.com/acme/foo", session)

    assert result.outcome == Outcome.NOT_FOUND
    mock_build.assert_not_awaited()


@pytest.mark.asyncio
async def test_build_failure_is_reported(settings):
    from plugin_fetcher import Outcome
    from plugin_updater import PluginUpdater

    updater = PluginUpdater(settings)
    with patch.object(updater.builder, "build", new=AsyncMock(return_value=False)):
        result = await updater.update_entry(
            "Foo", "https://github.com/acme/foo?autobuild=true", FakeSession(),
        )

    assert result.outcome == Outcome.BUILD_FAILED


def test_startup_replays_pending(settings, plugins_dir):
    from plugin_updater import PluginUpdater

    settings.rollback_enabled = True
    updater = PluginUpdater(settings)
    old = _install_update(plugins_dir, updater.rollback)
    updater.rollback._copy_file = Mock(side_effect=PermissionError("locked"))
    updater.rollback.handle_log_line(FAILURE_LINE)
    del updater.rollback._copy_file

    updater.startup()

    assert updater.rollback.load_pending() == []
    assert (plugins_dir / "Foo.jar").read_bytes() == old


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
