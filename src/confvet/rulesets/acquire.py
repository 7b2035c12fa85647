"""Fetch ruleset repositories and validate their layout.

A ruleset repository looks like::

    ruleset.toml        # name = "example", version = "0.1.0"
    rules/
        no_foo/__main__.py
        require_bar/__main__.py

"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tomllib
from pathlib import Path

from packaging.version import InvalidVersion, Version

from confvet.core.errors import RulesetError
from confvet.core.rule import RulesetManifest

logger = logging.getLogger("confvet")

MANIFEST_FILENAME = "ruleset.toml"
RULES_DIRNAME = "rules"
MIN_NAME_LENGTH = 3

_GIT_TIMEOUT = 300.0


def is_git_location(location: str) -> bool:
    return (
        location.startswith(("git@", "git+", "git://"))
        or location.endswith(".git")
        or location.startswith(("https://github.com/", "https://gitlab.com/"))
    )


def fetch_ruleset(location: str, destination: Path) -> None:
    """Copy or clone the repository at ``location`` into ``destination``.

    ``destination`` is replaced if it exists.  Local directories are copied;
    git locations are shallow-cloned with the ``git`` executable.

    Raises:
        :class:`RulesetError`: If the location cannot be retrieved.

    """
    if destination.exists():
        shutil.rmtree(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    local = Path(location).expanduser()
    if local.is_dir():
        logger.debug("Copying ruleset from %s", local)
        shutil.copytree(local, destination, ignore=shutil.ignore_patterns(".git"))
        return

    if not is_git_location(location):
        raise RulesetError(f"ruleset location {location!r} is not a directory or git repository")

    url = location.removeprefix("git+")
    logger.debug("Cloning ruleset from %s", url)
    try:
        result = subprocess.run(
            ["git", "clone", "--depth", "1", "--quiet", url, str(destination)],
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
            check=False,
        )
    except FileNotFoundError:
        raise RulesetError("git is required to retrieve remote rulesets") from None
    except subprocess.TimeoutExpired:
        raise RulesetError(f"timed out cloning {url}") from None
    if result.returncode != 0:
        raise RulesetError(f"could not clone {url}: {result.stderr.strip()}")


def read_manifest(repo_path: Path) -> RulesetManifest:
    """Parse ``ruleset.toml`` at the repository root."""
    path = repo_path / MANIFEST_FILENAME
    try:
        with path.open("rb") as f:
            raw = tomllib.load(f)
    except FileNotFoundError:
        raise RulesetError(f"no {MANIFEST_FILENAME} found in {repo_path}") from None
    except tomllib.TOMLDecodeError as exc:
        raise RulesetError(f"Invalid TOML in {path}: {exc}") from exc

    name = raw.get("name")
    version = raw.get("version")
    if not isinstance(name, str) or not isinstance(version, str):
        raise RulesetError(f"{path} must define string 'name' and 'version'")
    return RulesetManifest(name=name, version=version)


def verify_ruleset(repo_path: Path, manifest: RulesetManifest) -> None:
    """Check a fetched ruleset has a usable name, version and rules directory."""
    if len(manifest.name) < MIN_NAME_LENGTH:
        raise RulesetError(f"ruleset name cannot be less than {MIN_NAME_LENGTH} characters")
    if "/" in manifest.name or manifest.name.startswith("."):
        raise RulesetError(f"ruleset name {manifest.name!r} is not a valid directory name")
    parse_version(manifest.version)
    if not (repo_path / RULES_DIRNAME).is_dir():
        raise RulesetError(
            f"no {RULES_DIRNAME} directory found; all rulesets must have a {RULES_DIRNAME} directory"
        )


def parse_version(text: str) -> Version:
    try:
        return Version(text)
    except InvalidVersion as exc:
        raise RulesetError(
            f"ruleset version {text!r} malformed; should be in semantic version notation"
        ) from exc


def rule_source_dirs(repo_path: Path) -> list[Path]:
    """Rule source directories in declaration (sorted name) order."""
    rules_dir = repo_path / RULES_DIRNAME
    return sorted(
        (p for p in rules_dir.iterdir() if p.is_dir() and not p.name.startswith((".", "_"))),
        key=lambda p: p.name,
    )
