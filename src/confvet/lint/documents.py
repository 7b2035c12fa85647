from __future__ import annotations

import fnmatch
import glob
import io
import json
import tomllib
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path

import yaml

from confvet.core.errors import DocumentError, LineResolutionError


def _is_glob(pattern: str) -> bool:
    return any(c in pattern for c in "*?[")


def _matches(path: Path, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(path.name, p) for p in patterns)


def _walk(directory: Path, patterns: Sequence[str]) -> Iterator[Path]:
    for candidate in sorted(directory.rglob("*")):
        relative = candidate.relative_to(directory)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if candidate.is_file() and _matches(candidate, patterns):
            yield candidate


def collect_documents(paths: Iterable[str | Path], patterns: Sequence[str]) -> list[Path]:
    """Expand lint arguments into the list of documents to lint.

    Files named explicitly are always linted.  Directories are walked
    recursively (skipping hidden entries) and glob arguments are expanded;
    both keep only files whose name matches one of ``patterns``.

    Raises:
        :class:`DocumentError`: If a non-glob path does not exist.

    """
    found: list[Path] = []
    for raw in paths:
        text = str(raw)
        if _is_glob(text):
            for match in sorted(glob.glob(text, recursive=True)):
                candidate = Path(match)
                if candidate.is_dir():
                    found.extend(_walk(candidate, patterns))
                elif _matches(candidate, patterns):
                    found.append(candidate)
            continue

        path = Path(text)
        if path.is_dir():
            found.extend(_walk(path, patterns))
        elif path.is_file():
            found.append(path)
        else:
            raise DocumentError(path, "could not open path")

    return list(dict.fromkeys(found))


def read_document(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise DocumentError(path, f"could not read document ({exc.strerror or exc})") from exc


def iter_lines(document: bytes) -> Iterator[bytes]:
    """Yield the document's lines without their ``\\n`` / ``\\r\\n`` terminators."""
    for raw in io.BytesIO(document):
        yield raw.rstrip(b"\n").removesuffix(b"\r")


def resolve_line(document: bytes, line: int) -> str:
    """Return the literal text of 1-indexed ``line``.

    Raises:
        :class:`LineResolutionError`: If the document has no such line.

    """
    count = 0
    if line >= 1:
        for count, text in enumerate(iter_lines(document), start=1):
            if count == line:
                return text.decode("utf-8", errors="replace")
    else:
        count = sum(1 for _ in iter_lines(document))
    raise LineResolutionError(line, count)


def syntax_error(path: Path, document: bytes) -> str | None:
    """Pre-parse documents whose format confvet understands.

    Returns a description of the first parse error, or ``None`` when the
    document parsed or its format is not checked.
    """
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            json.loads(document)
        elif suffix == ".toml":
            tomllib.loads(document.decode("utf-8"))
        elif suffix in (".yaml", ".yml"):
            for _ in yaml.safe_load_all(document):
                pass
    except (ValueError, yaml.YAMLError) as exc:
        return f"{type(exc).__name__}: {exc}"
    return None
