from collections.abc import Callable
from pathlib import Path

import pytest

from confvet.core.config import ConfvetConfig
from confvet.rulesets.store import RulesetStore
from tests._plugins import plugin_source, write_executable


@pytest.fixture
def config(tmp_path: Path) -> ConfvetConfig:
    return ConfvetConfig(
        config_dir=tmp_path / "confvet.d",
        connect_timeout=10.0,
        call_timeout=10.0,
        build_timeout=60.0,
    )


@pytest.fixture
def store(config: ConfvetConfig) -> RulesetStore:
    return RulesetStore(config.store_path)


@pytest.fixture
def make_plugin(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable rule plugin script and return its path."""

    def _make(name: str, body: str) -> Path:
        return write_executable(tmp_path / "plugins" / name, plugin_source(body))

    return _make


@pytest.fixture
def install_plugin(config: ConfvetConfig) -> Callable[[str, str, str], Path]:
    """Write a plugin script where the lint runner looks for ``(ruleset, rule_id)``."""

    def _install(ruleset: str, rule_id: str, body: str) -> Path:
        return write_executable(config.rule_path(ruleset, rule_id), plugin_source(body))

    return _install


@pytest.fixture
def make_repo(tmp_path: Path) -> Callable[..., Path]:
    """Create a local ruleset repository with one directory per rule."""

    def _make(
        rules: dict[str, str],
        *,
        name: str = "example",
        version: str = "0.1.0",
        directory: str = "repo",
    ) -> Path:
        repo = tmp_path / directory
        (repo / "rules").mkdir(parents=True, exist_ok=True)
        (repo / "ruleset.toml").write_text(
            f'name = "{name}"\nversion = "{version}"\n', encoding="utf-8"
        )
        for rule_dir, body in rules.items():
            source = repo / "rules" / rule_dir
            source.mkdir(exist_ok=True)
            (source / "__main__.py").write_text(plugin_source(body), encoding="utf-8")
        return repo

    return _make
