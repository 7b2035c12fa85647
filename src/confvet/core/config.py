from __future__ import annotations

import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from confvet.core.errors import ConfigError

_LOG_LEVELS = frozenset({"debug", "info", "warning", "error", "critical"})

DEFAULT_BUILD_COMMAND: tuple[str, ...] = (
    "{python}",
    "-m",
    "zipapp",
    "{source}",
    "-o",
    "{output}",
    "-p",
    "{python}",
)


def _default_config_dir() -> Path:
    return Path.home() / ".confvet.d"


@dataclass(frozen=True)
class ConfvetConfig:
    """Settings for building rules and running lints.

    Can be loaded from ``.confvet.toml`` or ``pyproject.toml [tool.confvet]``
    via :func:`load_config`.

    Example ``pyproject.toml``::

        [tool.confvet]
        patterns = ["*.tf", "*.tfvars"]
        call_timeout = 10.0
        max_consecutive_failures = 1

    """

    config_dir: Path = field(default_factory=_default_config_dir)
    """Directory holding ``rulesets.yaml`` and built ruleset trees."""

    patterns: tuple[str, ...] = ("*.tf", "*.hcl")
    """Filename globs a directory argument to ``lint`` expands to."""

    # --- Plugin host ---

    connect_timeout: float = 10.0
    """Seconds to wait for a plugin's handshake line."""

    call_timeout: float = 30.0
    """Seconds a single ``describe``/``execute`` call may take."""

    reuse_sessions: bool = True
    """Keep one plugin session per rule open for a whole lint run."""

    plugin_logs: bool = False
    """Pass plugin stderr through instead of discarding it."""

    # --- Builder ---

    build_timeout: float = 600.0
    """Seconds before a rule build is killed."""

    build_command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    """Toolchain argv template; ``{source}``, ``{output}`` and ``{python}`` are substituted."""

    max_consecutive_failures: int = 3
    """Abort building a ruleset after this many rules in a row failed."""

    # --- Lint ---

    syntax_check: bool = True
    """Pre-parse JSON/TOML/YAML documents and skip those that fail."""

    log_level: str = "warning"

    @property
    def store_path(self) -> Path:
        return self.config_dir / "rulesets.yaml"

    @property
    def rulesets_dir(self) -> Path:
        return self.config_dir / "rulesets"

    def ruleset_dir(self, ruleset: str) -> Path:
        return self.rulesets_dir / ruleset

    def repo_path(self, ruleset: str) -> Path:
        """Where the ruleset's source repository is kept."""
        return self.ruleset_dir(ruleset) / "repo"

    def repo_rules_path(self, ruleset: str) -> Path:
        return self.repo_path(ruleset) / "rules"

    def rule_path(self, ruleset: str, rule_id: str) -> Path:
        """Location of the built executable for ``(ruleset, rule_id)``."""
        return self.ruleset_dir(ruleset) / "rules" / rule_id


def load_config(path: Path | str | None = None) -> ConfvetConfig:
    """Load :class:`ConfvetConfig` from a TOML file.

    When ``path`` is ``None``, walks up from the current directory looking for
    ``.confvet.toml`` first, then ``pyproject.toml [tool.confvet]``.  A
    ``pyproject.toml`` without a ``[tool.confvet]`` section acts as a project
    root marker and stops the search.

    ``CONFVET_CONFIG_DIR`` and ``CONFVET_LOG_LEVEL`` override the file.

    Raises:
        :class:`ConfigError`: If the file contains an invalid value.

    """
    if path is not None:
        resolved = Path(path)
        data = _read_file(resolved) if resolved.exists() else {}
    else:
        data = _find_config()

    data = dict(data)
    if env_dir := os.environ.get("CONFVET_CONFIG_DIR"):
        data["config_dir"] = env_dir
    if env_level := os.environ.get("CONFVET_LOG_LEVEL"):
        data["log_level"] = env_level

    return _parse_config(data)


def _find_config() -> dict[str, Any]:
    """Walk up from CWD looking for a config file."""
    current = Path.cwd()
    while True:
        confvet_toml = current / ".confvet.toml"
        if confvet_toml.exists():
            return _read_file(confvet_toml)

        pyproject = current / "pyproject.toml"
        if pyproject.exists():
            return _read_file(pyproject)

        parent = current.parent
        if parent == current:
            break
        current = parent

    return {}


def _read_file(path: Path) -> dict[str, Any]:
    """Read a TOML file and return the confvet-relevant section."""
    try:
        with path.open("rb") as f:
            raw: dict[str, Any] = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    if path.name == "pyproject.toml":
        tool: dict[str, Any] = raw.get("tool", {})
        section: dict[str, Any] = tool.get("confvet", {})
        return section
    return raw


def _parse_config(data: dict[str, Any]) -> ConfvetConfig:
    """Parse raw key/value dict into :class:`ConfvetConfig`.

    Raises:
        :class:`ConfigError`: On values of the wrong type or out of range.

    """
    kwargs: dict[str, Any] = {}
    if (v := data.get("config_dir")) is not None:
        kwargs["config_dir"] = Path(str(v)).expanduser()

    try:
        for key in ("connect_timeout", "call_timeout", "build_timeout"):
            if (v := data.get(key)) is not None:
                kwargs[key] = float(v)
        if (v := data.get("max_consecutive_failures")) is not None:
            kwargs["max_consecutive_failures"] = int(v)
    except (ValueError, TypeError) as exc:
        raise ConfigError(str(exc)) from exc

    for key in ("connect_timeout", "call_timeout", "build_timeout"):
        if key in kwargs and kwargs[key] <= 0:
            raise ConfigError(f"{key} must be positive, got {kwargs[key]!r}")
    if kwargs.get("max_consecutive_failures", 1) < 1:
        raise ConfigError(
            f"max_consecutive_failures must be at least 1, got {kwargs['max_consecutive_failures']!r}"
        )

    for key in ("reuse_sessions", "plugin_logs", "syntax_check"):
        if (v := data.get(key)) is not None:
            if not isinstance(v, bool):
                raise ConfigError(f"{key} must be a boolean, got {v!r}")
            kwargs[key] = v

    if isinstance(patterns := data.get("patterns"), list):
        kwargs["patterns"] = tuple(str(p) for p in patterns)
    if isinstance(command := data.get("build_command"), list):
        if not command:
            raise ConfigError("build_command must not be empty")
        kwargs["build_command"] = tuple(str(c) for c in command)

    if (level := data.get("log_level")) is not None:
        normalized = str(level).lower()
        if normalized not in _LOG_LEVELS:
            known = ", ".join(sorted(_LOG_LEVELS))
            raise ConfigError(f"Unknown log_level {level!r}. Known levels: {known}")
        kwargs["log_level"] = normalized

    return dataclasses.replace(ConfvetConfig(), **kwargs)
