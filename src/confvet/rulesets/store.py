"""The on-disk registry of rulesets and their rules.

Stored as YAML at ``<config_dir>/rulesets.yaml``::

    rulesets:
      - name: example
        version: 0.2.0
        repository: github.com/example/confvet-ruleset
        enabled: true
        rules:
          - id: 1f0e4
            name: no_foo
            short: Attribute 'foo' is not allowed
            long: ''
            link: https://example.com/no_foo
            enabled: false
    repo_map:
      github.com/example/confvet-ruleset: example

Every mutation is a read-modify-write of the whole file under an exclusive
lock, so concurrent writers never lose each other's updates.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from confvet.core.errors import RuleNotFoundError, RulesetNotFoundError, StoreError
from confvet.core.rule import Rule, Ruleset
from confvet.rulesets._locking import exclusive_lock

logger = logging.getLogger("confvet")


@dataclass
class _State:
    rulesets: list[Ruleset] = field(default_factory=list)
    repo_map: dict[str, str] = field(default_factory=dict)

    def index(self, name: str) -> int:
        for i, ruleset in enumerate(self.rulesets):
            if ruleset.name == name:
                return i
        raise RulesetNotFoundError(name)


class RulesetStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    # Reads

    def get_rulesets(self) -> list[Ruleset]:
        return list(self._read().rulesets)

    def get_enabled_rulesets(self) -> list[Ruleset]:
        return [rs for rs in self._read().rulesets if rs.enabled]

    def get_ruleset(self, name: str) -> Ruleset:
        state = self._read()
        return state.rulesets[state.index(name)]

    def get_rule(self, ruleset: str, rule_id: str) -> Rule:
        rule = self.get_ruleset(ruleset).get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(ruleset, rule_id)
        return rule

    def repository_exists(self, location: str) -> bool:
        return location in self._read().repo_map

    # Writes

    def add_ruleset(self, ruleset: Ruleset) -> None:
        def apply(state: _State) -> None:
            if any(rs.name == ruleset.name for rs in state.rulesets):
                raise StoreError(f"ruleset {ruleset.name!r} already exists")
            state.rulesets.append(ruleset)
            state.repo_map[ruleset.repository] = ruleset.name

        self._mutate(apply)
        logger.debug("Added ruleset %s v%s", ruleset.name, ruleset.version)

    def set_ruleset_version(self, name: str, version: str) -> None:
        """Record a new version for ``name``, leaving its rules and flags untouched."""

        def apply(state: _State) -> None:
            i = state.index(name)
            state.rulesets[i] = dataclasses.replace(state.rulesets[i], version=version)

        self._mutate(apply)
        logger.debug("Ruleset %s now at v%s", name, version)

    def remove_ruleset(self, name: str) -> Ruleset:
        removed: list[Ruleset] = []

        def apply(state: _State) -> None:
            removed.append(state.rulesets.pop(state.index(name)))
            state.repo_map = {k: v for k, v in state.repo_map.items() if v != name}

        self._mutate(apply)
        return removed[0]

    def upsert_rule(self, ruleset_name: str, rule: Rule) -> Rule:
        """Add ``rule`` or refresh an existing rule with the same id.

        An existing rule keeps its stored ``enabled`` flag; the incoming flag
        only applies to rules seen for the first time.  Returns the rule as
        stored.
        """
        stored: list[Rule] = []

        def apply(state: _State) -> None:
            i = state.index(ruleset_name)
            ruleset = state.rulesets[i]
            rules = list(ruleset.rules)
            for j, existing in enumerate(rules):
                if existing.id == rule.id:
                    rules[j] = dataclasses.replace(rule, enabled=existing.enabled)
                    stored.append(rules[j])
                    break
            else:
                rules.append(rule)
                stored.append(rule)
            state.rulesets[i] = dataclasses.replace(ruleset, rules=tuple(rules))

        self._mutate(apply)
        logger.debug("Upserted rule %s in ruleset %s", rule.id, ruleset_name)
        return stored[0]

    def set_ruleset_enabled(self, name: str, enabled: bool) -> None:
        def apply(state: _State) -> None:
            i = state.index(name)
            state.rulesets[i] = dataclasses.replace(state.rulesets[i], enabled=enabled)

        self._mutate(apply)

    def enable_ruleset(self, name: str) -> None:
        self.set_ruleset_enabled(name, True)

    def disable_ruleset(self, name: str) -> None:
        self.set_ruleset_enabled(name, False)

    def set_rule_enabled(self, ruleset_name: str, rule_id: str, enabled: bool) -> None:
        def apply(state: _State) -> None:
            i = state.index(ruleset_name)
            ruleset = state.rulesets[i]
            if ruleset.get_rule(rule_id) is None:
                raise RuleNotFoundError(ruleset_name, rule_id)
            rules = tuple(
                dataclasses.replace(r, enabled=enabled) if r.id == rule_id else r
                for r in ruleset.rules
            )
            state.rulesets[i] = dataclasses.replace(ruleset, rules=rules)

        self._mutate(apply)

    def enable_rule(self, ruleset_name: str, rule_id: str) -> None:
        self.set_rule_enabled(ruleset_name, rule_id, True)

    def disable_rule(self, ruleset_name: str, rule_id: str) -> None:
        self.set_rule_enabled(ruleset_name, rule_id, False)

    @contextmanager
    def ruleset_operation(self, name: str) -> Iterator[None]:
        """Make the caller the only writer building ``name`` until the block exits."""
        with exclusive_lock(self.path.parent / "rulesets" / f"{name}.op", timeout=600.0):
            yield

    # Persistence

    def _mutate(self, apply: Callable[[_State], None]) -> None:
        with exclusive_lock(self.path):
            state = self._read()
            apply(state)
            self._write(state)

    def _read(self) -> _State:
        if not self.path.exists():
            return _State()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise StoreError(f"Invalid YAML in {self.path}: {exc}") from exc
        except OSError as exc:
            raise StoreError(f"Could not read {self.path}: {exc}") from exc
        if raw is None:
            return _State()
        if not isinstance(raw, dict):
            raise StoreError(f"{self.path} must contain a mapping")
        try:
            return _State(
                rulesets=[_ruleset_from_raw(item) for item in raw.get("rulesets") or []],
                repo_map={str(k): str(v) for k, v in (raw.get("repo_map") or {}).items()},
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise StoreError(f"Malformed ruleset store {self.path}: {exc}") from exc

    def _write(self, state: _State) -> None:
        payload = {
            "rulesets": [_ruleset_to_raw(rs) for rs in state.rulesets],
            "repo_map": dict(state.repo_map),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, default_flow_style=False, sort_keys=False)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StoreError(f"Could not write {self.path}: {exc}") from exc


def _ruleset_from_raw(raw: dict[str, Any]) -> Ruleset:
    return Ruleset(
        name=str(raw["name"]),
        version=str(raw["version"]),
        repository=str(raw.get("repository", "")),
        enabled=bool(raw.get("enabled", True)),
        rules=tuple(_rule_from_raw(r) for r in raw.get("rules") or []),
    )


def _rule_from_raw(raw: dict[str, Any]) -> Rule:
    return Rule(
        id=str(raw["id"]),
        name=str(raw.get("name", "")),
        short=str(raw.get("short", "")),
        long=str(raw.get("long", "")),
        link=str(raw.get("link", "")),
        enabled=bool(raw.get("enabled", True)),
    )


def _ruleset_to_raw(ruleset: Ruleset) -> dict[str, Any]:
    return {
        "name": ruleset.name,
        "version": ruleset.version,
        "repository": ruleset.repository,
        "enabled": ruleset.enabled,
        "rules": [dataclasses.asdict(rule) for rule in ruleset.rules],
    }
