"""Spawn rule executables and talk to them over the handshake connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
from types import TracebackType
from typing import Any

from confvet.core._types import NetworkType
from confvet.core.diagnostic import Diagnostic
from confvet.core.errors import (
    HandshakeError,
    PluginConnectionError,
    ProtocolError,
    RuleExecutionError,
    RuleTimeoutError,
)
from confvet.core.rule import RuleDescriptor
from confvet.plugin.protocol import (
    MAGIC_COOKIE_KEY,
    MAGIC_COOKIE_VALUE,
    MAX_MESSAGE_SIZE,
    METHOD_DESCRIBE,
    METHOD_EXECUTE,
    decode_message,
    descriptor_from_wire,
    encode_message,
    execute_params,
    execute_result_from_wire,
    parse_handshake,
    request,
    unwrap_response,
)

logger = logging.getLogger("confvet")

_EXIT_GRACE = 1.0


class PluginSession:
    """A live connection to one rule executable.

    Always close a session, on success and on error; the ``async with`` form
    does this for you::

        async with await PluginSession.open(path) as session:
            descriptor = await session.describe()

    """

    def __init__(
        self,
        executable: Path,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        call_timeout: float,
    ) -> None:
        self.executable = executable
        self.call_timeout = call_timeout
        self._process = process
        self._reader = reader
        self._writer = writer
        self._next_id = 0
        self._closed = False

    @classmethod
    async def open(
        cls,
        executable: Path | str,
        *,
        connect_timeout: float = 10.0,
        call_timeout: float = 30.0,
        plugin_logs: bool = False,
        cookie: str = MAGIC_COOKIE_VALUE,
    ) -> PluginSession:
        """Spawn ``executable``, validate its handshake and connect to it.

        Raises:
            :class:`PluginConnectionError`: If the process cannot be started or
                the connection cannot be established.
            :class:`HandshakeError`: If the handshake is missing or invalid.

        """
        path = Path(executable)
        env = {**os.environ, MAGIC_COOKIE_KEY: cookie}
        try:
            process = await asyncio.create_subprocess_exec(
                str(path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None if plugin_logs else asyncio.subprocess.DEVNULL,
                env=env,
            )
        except OSError as exc:
            raise PluginConnectionError(f"could not start plugin {path}: {exc}") from exc

        logger.debug("Started plugin %s (pid %d)", path, process.pid)
        try:
            reader, writer = await cls._connect(process, path, connect_timeout, cookie)
        except BaseException:
            await _terminate(process)
            raise

        return cls(path, process, reader, writer, call_timeout=call_timeout)

    @staticmethod
    async def _connect(
        process: asyncio.subprocess.Process,
        path: Path,
        timeout: float,
        cookie: str,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        assert process.stdout is not None
        try:
            line = await asyncio.wait_for(process.stdout.readline(), timeout=timeout)
        except TimeoutError:
            raise HandshakeError(f"plugin {path} sent no handshake within {timeout}s") from None
        except ValueError as exc:
            raise HandshakeError(f"plugin {path} wrote an oversized handshake: {exc}") from exc

        handshake = parse_handshake(line, cookie=cookie)
        logger.debug("Plugin %s listening on %s %s", path, handshake.network, handshake.address)

        try:
            if handshake.network == NetworkType.UNIX:
                conn = asyncio.open_unix_connection(handshake.address, limit=MAX_MESSAGE_SIZE)
            else:
                host, port = handshake.tcp_address
                conn = asyncio.open_connection(host, port, limit=MAX_MESSAGE_SIZE)
            return await asyncio.wait_for(conn, timeout=timeout)
        except TimeoutError:
            raise PluginConnectionError(
                f"timed out connecting to plugin {path} at {handshake.address}"
            ) from None
        except OSError as exc:
            raise PluginConnectionError(
                f"could not connect to plugin {path} at {handshake.address}: {exc}"
            ) from exc

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    async def describe(self) -> RuleDescriptor:
        """Ask the rule for its self-reported metadata."""
        result = await self._call(METHOD_DESCRIBE, {})
        return descriptor_from_wire(result)

    async def execute(self, document: bytes) -> list[Diagnostic]:
        """Run the rule against a whole document.

        Raises:
            :class:`RuleExecutionError`: If the rule reported a failure.  Any
                diagnostics it produced before failing are attached.

        """
        result = await self._call(METHOD_EXECUTE, execute_params(document))
        diagnostics, error = execute_result_from_wire(result)
        if error is not None:
            raise RuleExecutionError(error, diagnostics)
        return diagnostics

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if self._closed:
            raise PluginConnectionError(f"session for {self.executable} is closed")

        self._next_id += 1
        call_id = self._next_id
        payload = encode_message(request(call_id, method, params))

        try:
            raw = await asyncio.wait_for(self._roundtrip(payload), timeout=self.call_timeout)
        except TimeoutError:
            await self.close()
            raise RuleTimeoutError(
                f"{method} on {self.executable} did not finish within {self.call_timeout}s"
            ) from None
        except ValueError as exc:
            await self.close()
            raise ProtocolError(f"oversized response from {self.executable}: {exc}") from exc
        except (ConnectionError, OSError) as exc:
            await self.close()
            raise PluginConnectionError(f"lost connection to {self.executable}: {exc}") from exc

        if not raw:
            await self.close()
            raise PluginConnectionError(
                f"plugin {self.executable} closed the connection during {method}"
            )
        return unwrap_response(decode_message(raw), call_id)

    async def _roundtrip(self, payload: bytes) -> bytes:
        self._writer.write(payload)
        await self._writer.drain()
        return await self._reader.readline()

    async def close(self) -> None:
        """Close the connection and make sure the subprocess is gone.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()
        await _terminate(self._process)
        logger.debug("Closed plugin %s (exit code %s)", self.executable, self._process.returncode)

    async def __aenter__(self) -> PluginSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Stop a plugin process: EOF on stdin first, then SIGTERM, then SIGKILL."""
    if process.stdin is not None and not process.stdin.is_closing():
        process.stdin.close()
    if process.returncode is not None:
        return

    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(process.wait(), timeout=_EXIT_GRACE)
        return

    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(process.wait(), timeout=_EXIT_GRACE)
        return

    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
