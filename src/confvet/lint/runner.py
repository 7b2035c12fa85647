from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeAlias

from confvet.core._types import FailureKind
from confvet.core.config import ConfvetConfig
from confvet.core.diagnostic import Diagnostic
from confvet.core.errors import (
    LineResolutionError,
    PluginConnectionError,
    PluginError,
    ProtocolError,
    RuleExecutionError,
    RuleTimeoutError,
)
from confvet.core.rule import Rule, Ruleset
from confvet.lint.documents import read_document, resolve_line, syntax_error
from confvet.plugin.host import PluginSession

logger = logging.getLogger("confvet")

SessionFactory: TypeAlias = Callable[..., Awaitable[PluginSession]]


@dataclass
class LintFinding:
    path: str
    ruleset: str
    rule: Rule
    diagnostic: Diagnostic
    line_text: str


@dataclass
class RuleFailure:
    path: str
    ruleset: str
    rule: Rule
    kind: FailureKind
    message: str


@dataclass
class DocumentResult:
    path: str
    findings: list[LintFinding] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)
    error: str | None = None


@dataclass
class LintReport:
    results: list[DocumentResult] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def findings(self) -> list[LintFinding]:
        ff: list[LintFinding] = []
        for r in self.results:
            ff.extend(r.findings)
        return ff

    @property
    def failures(self) -> list[RuleFailure]:
        ff: list[RuleFailure] = []
        for r in self.results:
            ff.extend(r.failures)
        return ff

    @property
    def linted(self) -> int:
        return sum(1 for r in self.results if r.error is None)

    @property
    def failed_documents(self) -> list[DocumentResult]:
        return [r for r in self.results if r.error is not None]

    @property
    def average_ms(self) -> float:
        return (self.elapsed / len(self.results) * 1000) if self.results else 0.0

    @property
    def clean(self) -> bool:
        return not self.findings and not self.failures and not self.failed_documents


_FAILURE_KINDS: tuple[tuple[type[PluginError], FailureKind], ...] = (
    (RuleTimeoutError, FailureKind.TIMEOUT),
    (RuleExecutionError, FailureKind.EXECUTION),
    (ProtocolError, FailureKind.PROTOCOL),
    (PluginConnectionError, FailureKind.CONNECTION),
)


def _failure_kind(exc: PluginError) -> FailureKind:
    for cls, kind in _FAILURE_KINDS:
        if isinstance(exc, cls):
            return kind
    return FailureKind.CONNECTION


class LintRunner:
    """Run every enabled rule of every enabled ruleset against documents.

    A failing rule never stops the run: its error is recorded as a
    :class:`RuleFailure` and the next rule proceeds.  With
    ``config.reuse_sessions`` each rule process is started once and serves
    every document; all sessions are closed when :meth:`run` returns.
    """

    def __init__(
        self,
        config: ConfvetConfig,
        rulesets: Sequence[Ruleset],
        *,
        on_finding: Callable[[LintFinding], Any] | None = None,
        session_factory: SessionFactory = PluginSession.open,
    ) -> None:
        self.config = config
        self.rulesets = [rs for rs in rulesets if rs.enabled]
        self._on_finding = on_finding
        self._open = session_factory
        self._sessions: dict[tuple[str, str], PluginSession] = {}
        self._dead: dict[tuple[str, str], PluginConnectionError] = {}

    async def run(self, documents: Sequence[Path]) -> LintReport:
        report = LintReport()
        start = time.monotonic()
        try:
            for path in documents:
                report.results.append(await self.lint_document(path))
        finally:
            await self.aclose()
        report.elapsed = time.monotonic() - start
        return report

    async def lint_document(self, path: Path) -> DocumentResult:
        result = DocumentResult(path=str(path))
        content = read_document(path)

        if self.config.syntax_check and (error := syntax_error(path, content)) is not None:
            logger.warning("Skipping %s: %s", path, error)
            result.error = error
            return result

        for ruleset in self.rulesets:
            for rule in ruleset.enabled_rules:
                await self._run_rule(result, ruleset, rule, content)
        return result

    async def _run_rule(
        self,
        result: DocumentResult,
        ruleset: Ruleset,
        rule: Rule,
        content: bytes,
    ) -> None:
        try:
            diagnostics = await self._execute(ruleset, rule, content)
        except PluginError as exc:
            kind = _failure_kind(exc)
            logger.warning("Rule %s/%s failed on %s: %s", ruleset.name, rule.id, result.path, exc)
            result.failures.append(
                RuleFailure(result.path, ruleset.name, rule, kind, str(exc))
            )
            if not isinstance(exc, RuleExecutionError):
                return
            diagnostics = exc.diagnostics

        for diagnostic in diagnostics:
            try:
                line_text = resolve_line(content, diagnostic.line)
            except LineResolutionError as exc:
                result.failures.append(
                    RuleFailure(
                        result.path,
                        ruleset.name,
                        rule,
                        FailureKind.RESOLUTION,
                        f"could not resolve diagnostic: {exc}",
                    )
                )
                continue
            finding = LintFinding(result.path, ruleset.name, rule, diagnostic, line_text)
            result.findings.append(finding)
            if self._on_finding is not None:
                self._on_finding(finding)

    async def _execute(self, ruleset: Ruleset, rule: Rule, content: bytes) -> list[Diagnostic]:
        if not self.config.reuse_sessions:
            async with await self._spawn(ruleset, rule) as session:
                return await session.execute(content)

        key = (ruleset.name, rule.id)
        if (dead := self._dead.get(key)) is not None:
            raise dead

        session = self._sessions.get(key)
        if session is None or session.closed:
            try:
                session = await self._spawn(ruleset, rule)
            except PluginConnectionError as exc:
                self._dead[key] = exc
                raise
            self._sessions[key] = session

        try:
            return await session.execute(content)
        except RuleExecutionError:
            raise
        except PluginError:
            # The connection state is unknown; the next document gets a fresh process.
            self._sessions.pop(key, None)
            await session.close()
            raise

    async def _spawn(self, ruleset: Ruleset, rule: Rule) -> PluginSession:
        return await self._open(
            self.config.rule_path(ruleset.name, rule.id),
            connect_timeout=self.config.connect_timeout,
            call_timeout=self.config.call_timeout,
            plugin_logs=self.config.plugin_logs,
        )

    async def aclose(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()


def run_lint(
    documents: Sequence[Path],
    rulesets: Sequence[Ruleset],
    *,
    config: ConfvetConfig,
    on_finding: Callable[[LintFinding], Any] | None = None,
) -> LintReport:
    """Lint ``documents`` with the enabled rules of ``rulesets`` and return a report."""
    runner = LintRunner(config, rulesets, on_finding=on_finding)
    return asyncio.run(runner.run(documents))
