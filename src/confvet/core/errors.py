"""Exception hierarchy.

Rule-scoped errors (everything under :class:`PluginError`) are caught by the
lint orchestrator and turned into per-rule failure records.  Structural
errors propagate to the command line and end the run.
"""

from __future__ import annotations

from pathlib import Path


class ConfvetError(Exception):
    """Base class for all confvet errors."""


# Rule-scoped


class PluginError(ConfvetError):
    """A single rule invocation failed."""


class PluginConnectionError(PluginError):
    """The rule executable could not be spawned or connected to."""


class HandshakeError(PluginConnectionError):
    """The handshake line was missing, malformed, or did not match."""


class ProtocolError(PluginError):
    """A response from the plugin could not be decoded."""


class RuleExecutionError(PluginError):
    """The rule's own check logic reported a failure."""

    def __init__(self, message: str, diagnostics: list | None = None) -> None:
        self.diagnostics = diagnostics or []
        super().__init__(message)


class RuleTimeoutError(PluginError):
    """A plugin call did not complete within the configured timeout."""


class LineResolutionError(ConfvetError):
    """A diagnostic references a line the document does not have."""

    def __init__(self, line: int, line_count: int) -> None:
        self.line = line
        self.line_count = line_count
        super().__init__(f"line {line} is out of range (document has {line_count} lines)")


# Build


class BuildError(ConfvetError):
    """The toolchain failed to produce a rule executable."""

    def __init__(self, message: str, log: bytes = b"") -> None:
        self.log = log
        super().__init__(message)


class BuildTimeoutError(BuildError):
    """The toolchain exceeded the build timeout and was killed."""


# Structural


class ConfigError(ConfvetError, ValueError):
    """Raised when a config file contains an invalid value."""


class StoreError(ConfvetError):
    """The ruleset store could not be read or written."""


class RulesetNotFoundError(StoreError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"ruleset {name!r} not found")


class RuleNotFoundError(StoreError):
    def __init__(self, ruleset: str, rule_id: str) -> None:
        self.ruleset = ruleset
        self.rule_id = rule_id
        super().__init__(f"rule {rule_id!r} not found in ruleset {ruleset!r}")


class RulesetError(ConfvetError):
    """A ruleset repository is missing or does not have the required layout."""


class RepositoryExistsError(RulesetError):
    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__(
            f"repository {location!r} already added; "
            "use `confvet ruleset update` to refresh it"
        )


class RulesetBuildError(RulesetError):
    """None of a ruleset's rules could be built and registered."""

    def __init__(self, message: str, report: object = None) -> None:
        self.report = report
        super().__init__(message)


class DocumentError(ConfvetError):
    """A lint target could not be found or read."""

    def __init__(self, path: Path | str, detail: str) -> None:
        self.path = Path(path)
        self.detail = detail
        super().__init__(f"{detail}: {path}")
