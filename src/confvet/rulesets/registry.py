"""Build a ruleset's rules and record what they report about themselves."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeAlias

from confvet.core._types import BuildStatus
from confvet.core.config import ConfvetConfig
from confvet.core.errors import (
    BuildError,
    PluginError,
    RepositoryExistsError,
    RulesetBuildError,
    RulesetError,
)
from confvet.core.identity import rule_id
from confvet.core.rule import Rule, Ruleset
from confvet.plugin.host import PluginSession
from confvet.rulesets.acquire import (
    fetch_ruleset,
    parse_version,
    read_manifest,
    rule_source_dirs,
    verify_ruleset,
)
from confvet.rulesets.builder import build_rule
from confvet.rulesets.store import RulesetStore

logger = logging.getLogger("confvet")

ProgressCallback: TypeAlias = Callable[[str], Any]


@dataclass
class RuleBuildResult:
    source: str
    rule_id: str
    status: BuildStatus
    rule: Rule | None = None
    error: str | None = None
    log: bytes = b""


@dataclass
class BuildReport:
    ruleset: str
    results: list[RuleBuildResult] = field(default_factory=list)
    elapsed: float = 0.0
    aborted: bool = False

    @property
    def built(self) -> list[RuleBuildResult]:
        return [r for r in self.results if r.status == BuildStatus.OK]

    @property
    def failed(self) -> list[RuleBuildResult]:
        return [r for r in self.results if r.status not in (BuildStatus.OK, BuildStatus.SKIPPED)]

    @property
    def ok(self) -> bool:
        """At least one rule is usable, or there was nothing to build."""
        return bool(self.built) or not self.results

    @property
    def average_ms(self) -> float:
        return (self.elapsed / len(self.results) * 1000) if self.results else 0.0


@dataclass
class UpdateResult:
    ruleset: str
    previous_version: str
    remote_version: str
    updated: bool
    report: BuildReport | None = None


class RulesetManager:
    """Adds, updates and rebuilds rulesets.

    Operations on one ruleset hold its operation lock for their whole
    duration, so two builds of the same ruleset never overlap and no
    executable is rewritten while this manager has a session open on it.
    """

    def __init__(
        self,
        config: ConfvetConfig,
        store: RulesetStore | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.config = config
        self.store = store or RulesetStore(config.store_path)
        self._on_progress = on_progress

    def _progress(self, message: str) -> None:
        logger.debug(message)
        if self._on_progress is not None:
            self._on_progress(message)

    async def sync_rule(self, ruleset: str, rule_id: str, executable: Path) -> Rule:
        """Describe a built rule and upsert its metadata, keeping the user's enabled flag."""
        session = await PluginSession.open(
            executable,
            connect_timeout=self.config.connect_timeout,
            call_timeout=self.config.call_timeout,
            plugin_logs=self.config.plugin_logs,
        )
        async with session:
            descriptor = await session.describe()
        return self.store.upsert_rule(ruleset, Rule.from_descriptor(rule_id, descriptor))

    async def build_ruleset(self, name: str) -> BuildReport:
        """Build every rule directory of ruleset ``name`` and register the results.

        Isolated failures are recorded and skipped.  After
        ``max_consecutive_failures`` failures in a row the remaining rules are
        marked skipped.
        """
        report = BuildReport(ruleset=name)
        repo_path = self.config.repo_path(name)
        if not (repo_path / "rules").is_dir():
            raise RulesetError(f"ruleset {name!r} has no rules directory at {repo_path}")

        sources = rule_source_dirs(repo_path)
        seen: dict[str, str] = {}
        consecutive = 0
        start = time.monotonic()

        for index, source in enumerate(sources):
            rid = rule_id(source)
            result = RuleBuildResult(source=source.name, rule_id=rid, status=BuildStatus.OK)
            report.results.append(result)

            if (owner := seen.get(rid)) is not None:
                result.status = BuildStatus.COLLISION
                result.error = f"rule id {rid} of {source.name!r} collides with {owner!r}"
            else:
                seen[rid] = source.name
                await self._build_one(name, source, result)

            if result.status == BuildStatus.OK:
                consecutive = 0
                continue

            consecutive += 1
            logger.warning("Rule %s in %s failed: %s", source.name, name, result.error)
            self._progress(f"Failed {source.name}: {result.error}")
            if consecutive >= self.config.max_consecutive_failures:
                report.aborted = True
                for rest in sources[index + 1 :]:
                    report.results.append(
                        RuleBuildResult(
                            source=rest.name,
                            rule_id=rule_id(rest),
                            status=BuildStatus.SKIPPED,
                            error="build aborted after consecutive failures",
                        )
                    )
                break

        report.elapsed = time.monotonic() - start
        self._progress(
            f"Compiled {len(report.built)} rule(s) in {report.elapsed:.2f}s "
            f"(average {report.average_ms:.2f}ms/rule)"
        )
        return report

    async def _build_one(self, ruleset: str, source: Path, result: RuleBuildResult) -> None:
        executable = self.config.rule_path(ruleset, result.rule_id)
        self._progress(f"Compiling {source.name}")
        try:
            result.log = await build_rule(
                source,
                executable,
                command=self.config.build_command,
                timeout=self.config.build_timeout,
            )
        except BuildError as exc:
            result.status = BuildStatus.BUILD_FAILED
            result.error = str(exc)
            result.log = exc.log
            return

        self._progress(f"Collecting rule info for {source.name}")
        try:
            result.rule = await self.sync_rule(ruleset, result.rule_id, executable)
        except PluginError as exc:
            result.status = BuildStatus.SYNC_FAILED
            result.error = f"could not describe rule: {exc}"

    async def add_ruleset(self, location: str) -> tuple[Ruleset, BuildReport]:
        """Fetch, verify, register and build the ruleset at ``location``.

        Registration is rolled back when no rule could be built.
        """
        if self.store.repository_exists(location):
            raise RepositoryExistsError(location)

        self._progress(f"Retrieving {location}")
        with tempfile.TemporaryDirectory(prefix="confvet_") as tmp:
            download = Path(tmp) / "repo"
            await asyncio.to_thread(fetch_ruleset, location, download)
            manifest = read_manifest(download)
            self._progress("Verifying ruleset")
            verify_ruleset(download, manifest)

            async with self._operation(manifest.name):
                ruleset = Ruleset(
                    name=manifest.name,
                    version=manifest.version,
                    repository=location,
                    enabled=True,
                )
                self.store.add_ruleset(ruleset)
                try:
                    self._install_repo(manifest.name, download)
                    report = await self.build_ruleset(manifest.name)
                except BaseException:
                    self._discard(manifest.name)
                    raise
                if not report.ok:
                    self._discard(manifest.name)
                    raise RulesetBuildError(
                        f"no rules in ruleset {manifest.name!r} could be built", report
                    )

        return self.store.get_ruleset(manifest.name), report

    async def update_ruleset(self, name: str, *, force: bool = False) -> UpdateResult:
        """Re-fetch ruleset ``name`` and rebuild it when the remote version is newer.

        The new version is recorded only once the rebuild produced a usable
        rule.  Otherwise the previous repository and executables are put
        back, so a later update retries.
        """
        async with self._operation(name):
            current = self.store.get_ruleset(name)
            self._progress(f"Retrieving {current.repository}")
            with tempfile.TemporaryDirectory(prefix="confvet_") as tmp:
                download = Path(tmp) / "repo"
                await asyncio.to_thread(fetch_ruleset, current.repository, download)
                manifest = read_manifest(download)
                verify_ruleset(download, manifest)
                if manifest.name != name:
                    raise RulesetError(
                        f"repository for {name!r} now declares ruleset {manifest.name!r}"
                    )

                result = UpdateResult(
                    ruleset=name,
                    previous_version=current.version,
                    remote_version=manifest.version,
                    updated=False,
                )
                newer = parse_version(manifest.version) > parse_version(current.version)
                if not newer and not force:
                    self._progress(f"Ruleset {name} at newest version ({current.version})")
                    return result

                self._progress(
                    f"Updating {name} (current: {current.version}, remote: {manifest.version})"
                )
                backup = Path(tmp) / "previous"
                shutil.copytree(self.config.ruleset_dir(name), backup, symlinks=True)
                try:
                    self._install_repo(name, download)
                    result.report = await self.build_ruleset(name)
                except BaseException:
                    self._restore(name, backup)
                    raise
                if not result.report.ok:
                    self._restore(name, backup)
                    raise RulesetBuildError(
                        f"no rules in ruleset {name!r} could be rebuilt", result.report
                    )

            self.store.set_ruleset_version(name, manifest.version)
            result.updated = True
            return result

    def remove_ruleset(self, name: str) -> Ruleset:
        with self.store.ruleset_operation(name):
            removed = self.store.remove_ruleset(name)
            shutil.rmtree(self.config.ruleset_dir(name), ignore_errors=True)
        return removed

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        # The blocking wait for the lock runs in a worker thread.
        lock = self.store.ruleset_operation(name)
        await asyncio.to_thread(lock.__enter__)
        try:
            yield
        finally:
            lock.__exit__(None, None, None)

    def _install_repo(self, name: str, download: Path) -> None:
        target = self.config.repo_path(name)
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(download), str(target))

    def _restore(self, name: str, backup: Path) -> None:
        target = self.config.ruleset_dir(name)
        shutil.rmtree(target, ignore_errors=True)
        shutil.copytree(backup, target, symlinks=True)
        logger.warning("Update of ruleset %s failed; previous build restored", name)

    def _discard(self, name: str) -> None:
        self.store.remove_ruleset(name)
        shutil.rmtree(self.config.ruleset_dir(name), ignore_errors=True)


def add_ruleset(
    location: str,
    *,
    config: ConfvetConfig,
    on_progress: ProgressCallback | None = None,
) -> tuple[Ruleset, BuildReport]:
    return asyncio.run(RulesetManager(config, on_progress=on_progress).add_ruleset(location))


def update_ruleset(
    name: str,
    *,
    config: ConfvetConfig,
    force: bool = False,
    on_progress: ProgressCallback | None = None,
) -> UpdateResult:
    manager = RulesetManager(config, on_progress=on_progress)
    return asyncio.run(manager.update_ruleset(name, force=force))
