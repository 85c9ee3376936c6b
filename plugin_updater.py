"""
plugin_updater.py
=================
Runs updates for the entries of the plugin list.

Handles:
  - Full batches over every enabled entry (only one at a time)
  - Single on-demand updates, fire-and-forget, never blocked by a batch
  - Per-entry pipeline: parse → resolve → download/install, with the
    GitHub build fallback when no usable asset exists
  - Startup housekeeping: replay pending rollbacks, move staged proxy updates

Usage::

    updater = PluginUpdater(load_settings())
    updater.startup()
    results = asyncio.run(updater.run_batch())
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

import aiohttp

from github_build import GitHubBuilder, JitPackClient
from http_client import create_session
from locator import Locator, LocatorError, SourceKind
from plugin_fetcher import Outcome, PluginFetcher, Result
from plugin_list import PluginList
from rollback_manager import RollbackManager
from scheduler import TaskScheduler, select_scheduler
from settings import UpdateSettings
from source_resolver import ArtifactCandidate, SourceResolver, github_repo

logger = logging.getLogger(__name__)

BATCH_BUSY_NOTICE = "An update is already in progress. Please wait for it to finish."

GITHUB_KINDS = frozenset({SourceKind.GITHUB_RELEASE, SourceKind.GITHUB_ACTIONS})


class PluginUpdater:
    """
    Update orchestrator.

    Args:
        settings:     Loaded UpdateSettings
        rollback:     Shared RollbackManager (built from settings if omitted)
        scheduler:    Where background work runs (selected on first use)
        plugin_list:  List file wrapper (defaults to settings.list_file)
    """

    def __init__(
        self,
        settings: UpdateSettings,
        *,
        rollback: Optional[RollbackManager] = None,
        scheduler: Optional[TaskScheduler] = None,
        plugin_list: Optional[PluginList] = None,
    ) -> None:
        self.settings = settings
        self.rollback = rollback or RollbackManager.from_settings(settings)
        self.plugin_list = plugin_list or PluginList(settings.list_file)

        token = settings.github_token or None
        jitpack = JitPackClient(
            poll_attempts=settings.jitpack_poll_attempts,
            poll_delay=settings.jitpack_poll_delay,
        )
        self.resolver = SourceResolver(platform=settings.platform, token=token, jitpack=jitpack)
        self.builder = GitHubBuilder(
            token=token,
            build_timeout=settings.build_timeout,
            min_jar_size=settings.min_jar_size,
            jitpack=jitpack,
        )
        self.fetcher = PluginFetcher(
            settings.plugins_dir,
            update_dir=settings.update_dir,
            use_update_folder=settings.use_update_folder,
            token=token,
            rollback=self.rollback,
            ignore_duplicates=settings.ignore_duplicates,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
        )

        self._scheduler = scheduler
        self._batch_lock = threading.Lock()

    @property
    def scheduler(self) -> TaskScheduler:
        if self._scheduler is None:
            self._scheduler = select_scheduler()
        return self._scheduler

    @property
    def batch_running(self) -> bool:
        return self._batch_lock.locked()

    def _session(self) -> aiohttp.ClientSession:
        return create_session(self.settings.connect_timeout, self.settings.read_timeout)

    # ================================================================
    #  STARTUP
    # ================================================================

    def startup(self) -> None:
        """Replay queued rollbacks and move staged updates for proxies."""
        remaining = self.rollback.process_pending()
        if remaining:
            logger.warning("%d pending rollback(s) still could not be applied", remaining)
        moved = self.fetcher.move_staged_updates(self.settings.platform)
        if moved:
            logger.info("Moved %d staged update(s) into %s", moved, self.settings.plugins_dir)

    # ================================================================
    #  BATCH
    # ================================================================

    def start_batch(self, links: Optional[Dict[str, str]] = None) -> Result:
        """
        Start a batch in the background.

        Rejected, not queued, while another batch is running.
        """
        if not self._batch_lock.acquire(blocking=False):
            logger.warning(BATCH_BUSY_NOTICE)
            return Result.fail(BATCH_BUSY_NOTICE, outcome="busy")

        try:
            future = self.scheduler.submit(self._run_locked(links))
        except Exception:
            self._batch_lock.release()
            raise
        return Result.ok("Update started", future=future)

    async def run_batch(
        self,
        links: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Optional[Dict[str, Result]]:
        """
        Update every entry and wait for completion.

        Returns None (after logging the notice) if a batch is already running.
        """
        if not self._batch_lock.acquire(blocking=False):
            logger.warning(BATCH_BUSY_NOTICE)
            return None
        return await self._run_locked(links, session)

    async def _run_locked(
        self,
        links: Optional[Dict[str, str]],
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Dict[str, Result]:
        try:
            return await self._run_batch(links, session)
        finally:
            self._batch_lock.release()

    async def _run_batch(
        self,
        links: Optional[Dict[str, str]],
        session: Optional[aiohttp.ClientSession],
    ) -> Dict[str, Result]:
        if links is None:
            links = self.plugin_list.enabled_links()
        if not links:
            logger.info("Nothing to update")
            return {}

        logger.info("Updating %d plugin(s)", len(links))
        semaphore = asyncio.Semaphore(self.settings.max_parallel)
        own_session = session is None
        if own_session:
            session = self._session()

        async def _one(name: str, link: str) -> Result:
            async with semaphore:
                return await self.update_entry(name, link, session)

        try:
            names = list(links)
            outcomes = await asyncio.gather(
                *(_one(name, links[name]) for name in names),
                return_exceptions=True,
            )
        finally:
            if own_session:
                await session.close()

        results: Dict[str, Result] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Update of %s crashed: %s", name, outcome, exc_info=outcome)
                outcome = Result.fail(
                    f"Update of {name} crashed", error=str(outcome),
                    outcome=Outcome.DOWNLOAD_FAILED,
                )
            results[name] = outcome

        updated = sum(1 for r in results.values() if r.outcome == Outcome.UPDATED)
        unchanged = sum(1 for r in results.values() if r.outcome == Outcome.UNCHANGED)
        failed = sum(1 for r in results.values() if not r.success)
        logger.info(
            "Update finished: %d updated, %d unchanged, %d failed",
            updated, unchanged, failed,
        )
        return results

    def schedule(self, interval_minutes: float) -> bool:
        """Run a batch every ``interval_minutes``; 0 disables."""
        if interval_minutes <= 0:
            return False

        async def _scheduled() -> None:
            await self.run_batch()

        self.scheduler.run_every(interval_minutes * 60, _scheduled)
        logger.info("Scheduled updates every %s minute(s)", interval_minutes)
        return True

    # ================================================================
    #  SINGLE UPDATES
    # ================================================================

    def update_plugin(self, name: str, link: Optional[str] = None) -> Result:
        """Update one entry in the background, independent of any batch."""
        if link is None:
            entry = self.plugin_list.get(name)
            if entry is None:
                return Result.fail(f"{name} is not in {self.plugin_list.path}", outcome=Outcome.NOT_FOUND)
            link = entry.link

        future = self.scheduler.submit(self._update_single(name, link))
        logger.info("Started update of %s", name)
        return Result.ok(f"Started update of {name}", future=future)

    async def _update_single(self, name: str, link: str) -> Result:
        async with self._session() as session:
            return await self.update_entry(name, link, session)

    # ================================================================
    #  PIPELINE
    # ================================================================

    async def update_entry(self, name: str, link: str, session: aiohttp.ClientSession) -> Result:
        """Resolve and install one entry. Never raises for per-entry failures."""
        try:
            locator = Locator.parse(link)
        except LocatorError as exc:
            return self._report(name, Result.fail(
                f"Invalid link for {name}", error=str(exc), outcome=Outcome.INVALID_LOCATOR,
            ))

        candidate = await self.resolver.resolve(locator, session)
        if candidate is None:
            return self._report(name, Result.fail(
                f"No download found for {name}", outcome=Outcome.NOT_FOUND, link=link,
            ))

        if candidate.requires_build:
            if not (locator.force_build or (self.settings.auto_compile and self.settings.compile_when_no_jar)):
                return self._report(name, Result.fail(
                    f"No .jar available for {name} and compiling is disabled",
                    outcome=Outcome.NOT_FOUND, link=link,
                ))
            result = await self.build_and_install(name, candidate.build_repo, locator, session)
            return self._report(name, result)

        result = await self._download(name, candidate, locator, session)
        if (
            not result.success
            and result.outcome == Outcome.DOWNLOAD_FAILED
            and locator.kind in GITHUB_KINDS
            and self.settings.auto_compile
        ):
            repo = github_repo(locator.value)
            if repo is not None:
                logger.info("Download of %s failed, building from source", name)
                result = await self.build_and_install(
                    name, f"https://github.com/{repo.owner}/{repo.name}", locator, session,
                )
        return self._report(name, result)

    async def _download(
        self,
        name: str,
        candidate: ArtifactCandidate,
        locator: Locator,
        session: aiohttp.ClientSession,
    ) -> Result:
        if candidate.archive:
            return await self.fetcher.fetch_jenkins_archive(
                candidate.url, name, session, custom_path=locator.custom_path,
            )
        return await self.fetcher.fetch(candidate.url, name, session, custom_path=locator.custom_path)

    async def build_and_install(
        self,
        name: str,
        repo_url: str,
        locator: Locator,
        session: aiohttp.ClientSession,
    ) -> Result:
        """Build ``repo_url`` and install the produced JAR as ``name``."""
        work = Path(tempfile.mkdtemp(prefix="aup-out-"))
        out_jar = work / f"{name}.jar"
        try:
            if not await self.builder.build(repo_url, out_jar, session):
                return Result.fail(
                    f"Build failed for {name}", outcome=Outcome.BUILD_FAILED, repo=repo_url,
                )
            return await asyncio.to_thread(
                self.fetcher.install_file, out_jar, name, custom_path=locator.custom_path,
            )
        finally:
            shutil.rmtree(work, ignore_errors=True)

    @staticmethod
    def _report(name: str, result: Result) -> Result:
        if result.outcome == Outcome.UPDATED:
            logger.info("Downloaded plugin %s: %s", name, result.details.get("path", ""))
        elif result.outcome == Outcome.UNCHANGED:
            logger.info("%s is already up to date", name)
        else:
            logger.warning("%s [%s]: %s%s", name, result.outcome, result.message,
                           f" ({result.error})" if result.error else "")
        return result
