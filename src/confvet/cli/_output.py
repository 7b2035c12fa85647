from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

from confvet import __version__
from confvet.core._types import BuildStatus

if TYPE_CHECKING:
    from confvet.core.rule import Rule, Ruleset
    from confvet.lint.runner import LintFinding, LintReport, RuleFailure
    from confvet.rulesets.registry import BuildReport

_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_GREEN = "\033[32m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RESET = "\033[0m"

_LINE_WIDTH = 66


def _use_color(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    return not os.environ.get("NO_COLOR", "")


def _c(text: str, code: str, *, color: bool) -> str:
    if not color:
        return text
    return f"{code}{text}{_RESET}"


def _rule_line(header: str, *, color: bool) -> str:
    fill = "─" * max(0, _LINE_WIDTH - len(header))
    return _c(header + fill, _BOLD, color=color)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


# Lint


def format_finding(finding: LintFinding, *, no_color: bool = False) -> str:
    """Render one finding as a compiler-style error block."""
    color = _use_color(no_color)
    d = finding.diagnostic
    rule = finding.rule
    lines: list[str] = []
    w = lines.append

    number = str(d.line)
    pad = " " * (len(number) + 1)
    bar = _c("|", _CYAN, color=color)

    w(f"{_c(f'Error[{rule.id}]', _RED + _BOLD, color=color)}: {_c(rule.short, _BOLD, color=color)}")
    w(f"{pad}{_c('-->', _CYAN, color=color)} {finding.path}:{d.line}:{d.column}")
    w(f"{pad}{bar}")
    w(f"{_c(number, _CYAN, color=color)} {bar} {finding.line_text}")
    w(f"{pad}{bar} {' ' * max(0, d.column - 1)}{_c('^', _RED, color=color)}")
    w(f"{pad}= additional information:")

    info = [("name", rule.name)]
    if rule.link:
        info.append(("link", rule.link))
    if d.suggestion:
        info.append(("suggestion", d.suggestion))
    if d.remediation:
        info.append(("remediation", f"`{d.remediation}`"))
    info.extend(sorted(d.metadata.items()))
    key_w = max(len(k) for k, _ in info) + 1
    for key, value in info:
        w(f"{pad}  • {(key + ':').ljust(key_w)} {value}")

    w("")
    w(
        "For more information about this error, try running "
        f"`confvet rule describe {finding.ruleset} {rule.id}`."
    )
    return "\n".join(lines)


def _failure_line(failure: RuleFailure, *, color: bool) -> str:
    label = _c(f"[{failure.kind}]", _YELLOW, color=color)
    return f"  {label} {failure.ruleset}/{failure.rule}: {failure.message}"


def format_lint_text(report: LintReport, *, no_color: bool = False) -> str:
    color = _use_color(no_color)
    lines: list[str] = []
    w = lines.append

    for finding in report.findings:
        w(format_finding(finding, no_color=no_color))
        w("")

    if report.failed_documents:
        w(_rule_line(f"── Skipped documents ({len(report.failed_documents)}) ", color=color))
        for result in report.failed_documents:
            w(f"  {_c('ERROR', _RED, color=color)} {result.path}: {result.error}")
        w("")

    if report.failures:
        w(_rule_line(f"── Rule failures ({len(report.failures)}) ", color=color))
        current = None
        for failure in report.failures:
            if failure.path != current:
                current = failure.path
                w(f"  {failure.path}")
            w(_failure_line(failure, color=color))
        w("")

    w(
        f"Linted {report.linted} file(s) in {report.elapsed:.2f}s "
        f"(average {report.average_ms:.2f}ms/file)"
    )
    w(_summary_line(report, color=color))
    return "\n".join(lines)


def _summary_line(report: LintReport, *, color: bool) -> str:
    if report.clean:
        return _c("No problems found.", _GREEN, color=color)
    parts = []
    if report.findings:
        parts.append(_c(_plural(len(report.findings), "finding"), _RED, color=color))
    if report.failures:
        parts.append(_c(_plural(len(report.failures), "rule failure"), _YELLOW, color=color))
    if report.failed_documents:
        parts.append(_c(_plural(len(report.failed_documents), "skipped document"), _YELLOW, color=color))
    return ", ".join(parts)


def format_lint_json(report: LintReport) -> str:
    data = {
        "version": __version__,
        "findings": [
            {
                "filepath": f.path,
                "ruleset": f.ruleset,
                "rule": {"id": f.rule.id, "name": f.rule.name, "short": f.rule.short, "link": f.rule.link},
                "line": f.line_text,
                "location": {
                    "start": {"line": f.diagnostic.location.start.line, "column": f.diagnostic.location.start.column},
                    "end": {"line": f.diagnostic.location.end.line, "column": f.diagnostic.location.end.column},
                },
                "suggestion": f.diagnostic.suggestion,
                "remediation": f.diagnostic.remediation,
                "metadata": dict(f.diagnostic.metadata),
            }
            for f in report.findings
        ],
        "failures": [
            {
                "filepath": f.path,
                "ruleset": f.ruleset,
                "rule": f.rule.id,
                "kind": str(f.kind),
                "message": f.message,
            }
            for f in report.failures
        ],
        "skipped": [{"filepath": r.path, "error": r.error} for r in report.failed_documents],
        "summary": {
            "linted": report.linted,
            "findings": len(report.findings),
            "failures": len(report.failures),
            "skipped": len(report.failed_documents),
            "elapsed": round(report.elapsed, 4),
            "average_ms": round(report.average_ms, 2),
        },
    }
    return json.dumps(data, indent=2)


# Rulesets and rules


def format_rulesets_text(rulesets: list[Ruleset], *, no_color: bool = False) -> str:
    color = _use_color(no_color)
    if not rulesets:
        return "No rulesets installed. Add one with `confvet ruleset add <repository>`."

    headers = ("Name", "Version", "Repository", "Enabled", "Rules")
    rows = [
        (rs.name, rs.version, rs.repository, str(rs.enabled).lower(), str(len(rs.rules)))
        for rs in rulesets
    ]
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

    lines = [_c("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip(), _BOLD, color=color)]
    lines.append("  ".join("-" * wd for wd in widths))
    lines.extend("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip() for row in rows)
    return "\n".join(lines)


def format_ruleset_text(ruleset: Ruleset, *, no_color: bool = False) -> str:
    color = _use_color(no_color)
    state = "enabled" if ruleset.enabled else "disabled"
    lines: list[str] = []
    w = lines.append

    w(f"Ruleset: {ruleset.name} {ruleset.version} :: {_plural(len(ruleset.rules), 'rule')} :: {state}")
    w(f"Repository: {ruleset.repository}")
    w("")
    w(_rule_line("── Rules ", color=color))
    if not ruleset.rules:
        w("  (none)")
        return "\n".join(lines)

    id_w = max(len(r.id) for r in ruleset.rules)
    name_w = max(len(r.name) for r in ruleset.rules)
    for r in ruleset.rules:
        rule_id = _c(r.id.ljust(id_w), _BOLD, color=color)
        flag = _c("on ", _GREEN, color=color) if r.enabled else _c("off", _DIM, color=color)
        w(f"  {rule_id}  {flag}  {r.name.ljust(name_w)}  {r.short}")
    return "\n".join(lines)


def _ruleset_json(ruleset: Ruleset, *, with_rules: bool) -> dict:
    data: dict = {
        "name": ruleset.name,
        "version": ruleset.version,
        "repository": ruleset.repository,
        "enabled": ruleset.enabled,
    }
    if with_rules:
        data["rules"] = [_rule_json(r) for r in ruleset.rules]
    else:
        data["rule_count"] = len(ruleset.rules)
    return data


def _rule_json(rule: Rule) -> dict:
    return {
        "id": rule.id,
        "name": rule.name,
        "short": rule.short,
        "long": rule.long,
        "link": rule.link,
        "enabled": rule.enabled,
    }


def format_rulesets_json(rulesets: list[Ruleset]) -> str:
    data = {
        "version": __version__,
        "rulesets": [_ruleset_json(rs, with_rules=False) for rs in rulesets],
        "total": len(rulesets),
    }
    return json.dumps(data, indent=2)


def format_ruleset_json(ruleset: Ruleset) -> str:
    return json.dumps(_ruleset_json(ruleset, with_rules=True), indent=2)


def format_rule_text(rule: Rule, *, no_color: bool = False) -> str:
    color = _use_color(no_color)
    lines = [_c(str(rule), _BOLD, color=color), "", rule.short]
    if rule.long:
        lines.extend(["", rule.long.strip()])
    lines.extend(["", f"Enabled: {str(rule.enabled).lower()} | Link: {rule.link or '-'}"])
    return "\n".join(lines)


def format_rule_json(rule: Rule) -> str:
    return json.dumps(_rule_json(rule), indent=2)


# Builds


def format_build_report(report: BuildReport, *, no_color: bool = False) -> str:
    color = _use_color(no_color)
    lines: list[str] = []
    w = lines.append

    for result in report.results:
        if result.status == BuildStatus.OK:
            mark = _c("ok", _GREEN, color=color)
            name = result.rule.name if result.rule is not None else result.source
            w(f"  {mark}  [{result.rule_id}] {name}")
        else:
            mark = _c(str(result.status), _RED if result.status != BuildStatus.SKIPPED else _DIM, color=color)
            w(f"  {mark}  {result.source}: {result.error}")
            log = result.log.decode("utf-8", errors="replace").strip()
            if log:
                for log_line in log.splitlines()[-10:]:
                    w(f"      {_c(log_line, _DIM, color=color)}")

    summary = f"{_plural(len(report.built), 'rule')} built, {len(report.failed)} failed"
    if report.aborted:
        summary += _c(" (aborted after consecutive failures)", _YELLOW, color=color)
    w(summary)
    return "\n".join(lines)
