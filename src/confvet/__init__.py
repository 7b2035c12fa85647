from importlib.metadata import version

from confvet.core._types import FailureKind
from confvet.core.config import ConfvetConfig, load_config
from confvet.core.diagnostic import Diagnostic, Location, Position
from confvet.core.errors import ConfigError, ConfvetError
from confvet.core.rule import Rule, RuleDescriptor, Ruleset
from confvet.lint import LintReport, collect_documents, run_lint

__version__ = version("confvet")


__all__ = [
    "ConfigError",
    "ConfvetConfig",
    "ConfvetError",
    "Diagnostic",
    "FailureKind",
    "LintReport",
    "Location",
    "Position",
    "Rule",
    "RuleDescriptor",
    "Ruleset",
    "__version__",
    "collect_documents",
    "load_config",
    "run_lint",
]
