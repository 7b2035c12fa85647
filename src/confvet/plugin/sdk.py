"""Rule author SDK.

A rule is a directory with a ``__main__.py`` that hands a :class:`Rule` to
:func:`serve`::

    from confvet.plugin.sdk import Diagnostic, Rule, serve


    def check(content: bytes) -> list[Diagnostic]:
        return [
            Diagnostic.at(n, 1, suggestion="remove the foo attribute")
            for n, line in enumerate(content.decode().splitlines(), start=1)
            if line.lstrip().startswith("foo")
        ]


    if __name__ == "__main__":
        serve(Rule(name="no_foo", short="Attribute 'foo' is not allowed", check=check))

The check receives the whole document and returns its findings.  To report
a failure together with partial findings, raise :class:`RuleExecutionError`
with ``diagnostics=``.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeAlias

from confvet.core._types import NetworkType
from confvet.core.diagnostic import Diagnostic, Location, Position
from confvet.core.errors import ProtocolError, RuleExecutionError
from confvet.core.rule import RuleDescriptor
from confvet.plugin.protocol import (
    MAGIC_COOKIE_KEY,
    MAGIC_COOKIE_VALUE,
    MAX_MESSAGE_SIZE,
    METHOD_DESCRIBE,
    METHOD_EXECUTE,
    PROTOCOL_VERSION,
    Handshake,
    decode_message,
    descriptor_to_wire,
    document_from_params,
    encode_message,
    execute_result_to_wire,
)

CheckFn: TypeAlias = Callable[[bytes], Iterable[Diagnostic]]


@dataclass(frozen=True)
class Rule:
    """A lint rule as served from its own process."""

    name: str
    short: str
    check: CheckFn
    long: str = ""
    link: str = ""
    enabled: bool = True

    def descriptor(self) -> RuleDescriptor:
        return RuleDescriptor(
            name=self.name,
            short=self.short,
            long=self.long,
            link=self.link,
            enabled=self.enabled,
        )

    def problems(self) -> list[str]:
        """Return what is missing for the rule to be servable."""
        found: list[str] = []
        if not self.name:
            found.append("name is required")
        if not self.short:
            found.append("short description is required")
        if not callable(self.check):
            found.append("check must be callable")
        return found


def serve(rule: Rule, *, network: NetworkType | None = None) -> None:
    """Serve ``rule`` to the confvet host until the host goes away.

    Exits with status 1 when the rule is incomplete or when the process was
    not started by confvet.
    """
    if problems := rule.problems():
        sys.stderr.write(f"rule {rule.name or '<unnamed>'} is not valid: {'; '.join(problems)}\n")
        sys.exit(1)
    if os.environ.get(MAGIC_COOKIE_KEY) != MAGIC_COOKIE_VALUE:
        sys.stderr.write(
            "This executable is a confvet rule plugin and is not meant to be run directly.\n"
        )
        sys.exit(1)

    if network is None:
        network = NetworkType.UNIX if hasattr(asyncio, "start_unix_server") else NetworkType.TCP
    asyncio.run(_serve(rule, network))


async def _serve(rule: Rule, network: NetworkType) -> None:
    connections: list[asyncio.StreamWriter] = []

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connections.append(writer)
        try:
            while line := await reader.readline():
                response = await handle_message(rule, line)
                writer.write(encode_message(response))
                await writer.drain()
        except (ConnectionError, ValueError):
            pass
        finally:
            writer.close()

    tmpdir: str | None = None
    if network == NetworkType.UNIX:
        tmpdir = tempfile.mkdtemp(prefix="confvet-plugin-")
        address = str(Path(tmpdir) / "plugin.sock")
        server = await asyncio.start_unix_server(on_connect, address, limit=MAX_MESSAGE_SIZE)
    else:
        server = await asyncio.start_server(on_connect, "127.0.0.1", 0, limit=MAX_MESSAGE_SIZE)
        host, port = server.sockets[0].getsockname()[:2]
        address = f"{host}:{port}"

    try:
        handshake = Handshake(PROTOCOL_VERSION, MAGIC_COOKIE_VALUE, network, address)
        sys.stdout.write(handshake.encode())
        sys.stdout.flush()
        # Nothing reads stdout after the handshake; keep stray prints off the pipe.
        sys.stdout = sys.stderr

        # The host holds our stdin open for as long as it wants us alive.
        await asyncio.to_thread(sys.stdin.buffer.read)
    finally:
        server.close()
        for writer in connections:
            writer.close()
        if tmpdir is not None:
            shutil.rmtree(tmpdir, ignore_errors=True)


async def handle_message(rule: Rule, raw: bytes) -> dict[str, Any]:
    """Answer a single request line."""
    try:
        message = decode_message(raw)
    except ProtocolError as exc:
        return {"id": None, "error": {"message": str(exc)}}

    call_id = message.get("id")
    method = message.get("method")
    params = message.get("params") or {}

    if method == METHOD_DESCRIBE:
        return {"id": call_id, "result": descriptor_to_wire(rule.descriptor())}

    if method == METHOD_EXECUTE:
        try:
            document = document_from_params(params)
        except ProtocolError as exc:
            return {"id": call_id, "error": {"message": str(exc)}}
        diagnostics, error = await asyncio.to_thread(_run_check, rule, document)
        return {"id": call_id, "result": execute_result_to_wire(diagnostics, error)}

    return {"id": call_id, "error": {"message": f"unknown method {method!r}"}}


def _run_check(rule: Rule, document: bytes) -> tuple[list[Diagnostic], str | None]:
    try:
        return list(rule.check(document)), None
    except RuleExecutionError as exc:
        return list(exc.diagnostics), str(exc)
    except Exception as exc:  # noqa: BLE001
        return [], f"{type(exc).__name__}: {exc}"


__all__ = [
    "Diagnostic",
    "Location",
    "Position",
    "Rule",
    "RuleExecutionError",
    "handle_message",
    "serve",
]
