"""Turn a rule's source directory into a standalone executable."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from confvet.core.config import DEFAULT_BUILD_COMMAND
from confvet.core.errors import BuildError, BuildTimeoutError

logger = logging.getLogger("confvet")

DEFAULT_BUILD_TIMEOUT = 600.0


def build_argv(command: Sequence[str], source_dir: Path, output_path: Path) -> list[str]:
    """Substitute ``{source}``, ``{output}`` and ``{python}`` into a command template."""
    values = {"source": str(source_dir), "output": str(output_path), "python": sys.executable}
    try:
        return [part.format(**values) for part in command]
    except (KeyError, IndexError) as exc:
        raise BuildError(f"invalid build command template {list(command)!r}: {exc}") from exc


async def build_rule(
    source_dir: Path,
    output_path: Path,
    *,
    command: Sequence[str] = DEFAULT_BUILD_COMMAND,
    timeout: float = DEFAULT_BUILD_TIMEOUT,
) -> bytes:
    """Run one toolchain step and return its combined stdout/stderr.

    The toolchain writes to a staging file next to ``output_path`` which then
    replaces the previous artifact in one rename, so a half-written
    executable is never visible at the final path.

    Raises:
        :class:`BuildError`: If the toolchain cannot be started, exits
            non-zero, or leaves no artifact behind.  ``log`` holds its output.
        :class:`BuildTimeoutError`: If the build exceeds ``timeout`` seconds.

    """
    if not source_dir.is_dir():
        raise BuildError(f"rule source {source_dir} is not a directory")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    staging = output_path.with_name(f".{output_path.name}.building")
    staging.unlink(missing_ok=True)
    argv = build_argv(command, source_dir.resolve(), staging)

    logger.debug("Building %s -> %s: %s", source_dir, output_path, " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=source_dir,
        )
    except OSError as exc:
        raise BuildError(f"could not start build toolchain {argv[0]!r}: {exc}") from exc

    stdout = process.stdout
    assert stdout is not None
    chunks: list[bytes] = []

    async def collect() -> None:
        while chunk := await stdout.read(65536):
            chunks.append(chunk)
        await process.wait()

    try:
        await asyncio.wait_for(collect(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        staging.unlink(missing_ok=True)
        with contextlib.suppress(TimeoutError):
            chunks.append(await asyncio.wait_for(stdout.read(), timeout=1.0))
        raise BuildTimeoutError(
            f"build of {source_dir.name} exceeded {timeout:g}s and was killed",
            b"".join(chunks),
        ) from None

    log = b"".join(chunks)

    if process.returncode != 0:
        staging.unlink(missing_ok=True)
        raise BuildError(
            f"build of {source_dir.name} failed with exit code {process.returncode}", log
        )
    if not staging.exists():
        raise BuildError(f"build of {source_dir.name} produced no executable", log)

    os.replace(staging, output_path)
    logger.debug("Built %s in place at %s", source_dir.name, output_path)
    return log
