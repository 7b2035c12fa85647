from confvet.lint.documents import collect_documents, resolve_line
from confvet.lint.runner import (
    DocumentResult,
    LintFinding,
    LintReport,
    LintRunner,
    RuleFailure,
    run_lint,
)

__all__ = [
    "DocumentResult",
    "LintFinding",
    "LintReport",
    "LintRunner",
    "RuleFailure",
    "collect_documents",
    "resolve_line",
    "run_lint",
]
