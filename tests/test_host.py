import asyncio

import pytest

from confvet.core.errors import (
    HandshakeError,
    PluginConnectionError,
    RuleExecutionError,
    RuleTimeoutError,
)
from confvet.core.rule import RuleDescriptor
from confvet.plugin.host import PluginSession
from confvet.plugin.protocol import MAGIC_COOKIE_VALUE, PROTOCOL_VERSION
from tests._plugins import NO_FOO, plugin_source, write_executable

DOCUMENT = b'resource "x" "y" {\n  name = "a"\n  foo  = 1\n}\n'

SLOW = """
def check(content):
    time.sleep(30)
    return []


RULE = Rule(name="slow", short="Never finishes in time", check=check)
"""

PARTIAL = """
def check(content):
    raise RuleExecutionError("gave up halfway", diagnostics=[Diagnostic.at(2, 3)])


RULE = Rule(name="partial", short="Fails after one finding", check=check)
"""

CRASHING = """
def check(content):
    raise ValueError("cannot parse")


RULE = Rule(name="crashing", short="Raises", check=check)
"""


class TestSession:
    async def test_describe(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        async with await PluginSession.open(exe) as session:
            descriptor = await session.describe()
        assert descriptor == RuleDescriptor(
            name="no_foo",
            short="Attribute 'foo' is not allowed",
            long="The foo attribute was removed in provider v2.",
            link="https://example.com/rules/no_foo",
            enabled=True,
        )

    async def test_execute(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        async with await PluginSession.open(exe) as session:
            diagnostics = await session.execute(DOCUMENT)
        assert len(diagnostics) == 1
        d = diagnostics[0]
        assert (d.line, d.column) == (3, 3)
        assert d.suggestion == "remove the foo attribute"
        assert d.metadata == {"severity": "error"}

    async def test_session_serves_many_calls(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        async with await PluginSession.open(exe) as session:
            first = await session.execute(DOCUMENT)
            second = await session.execute(b"foo = 1\n")
            await session.describe()
        assert len(first) == 1
        assert second[0].line == 1

    async def test_execution_error_keeps_partial_diagnostics(self, make_plugin) -> None:
        exe = make_plugin("partial", PARTIAL)
        async with await PluginSession.open(exe) as session:
            with pytest.raises(RuleExecutionError, match="gave up halfway") as info:
                await session.execute(DOCUMENT)
            assert [(d.line, d.column) for d in info.value.diagnostics] == [(2, 3)]
            # The session stays usable after a rule-level failure.
            assert (await session.describe()).name == "partial"

    async def test_check_exception_becomes_execution_error(self, make_plugin) -> None:
        exe = make_plugin("crashing", CRASHING)
        async with await PluginSession.open(exe) as session:
            with pytest.raises(RuleExecutionError, match="ValueError: cannot parse"):
                await session.execute(DOCUMENT)

    async def test_tcp_plugin(self, tmp_path) -> None:
        source = plugin_source(NO_FOO).replace(
            "serve(RULE)", "serve(RULE, network=NetworkType.TCP)"
        )
        source = "from confvet.core._types import NetworkType\n" + source
        exe = write_executable(tmp_path / "tcp_rule", source)
        async with await PluginSession.open(exe) as session:
            assert (await session.describe()).name == "no_foo"

    async def test_close_is_idempotent_and_reaps_process(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        session = await PluginSession.open(exe)
        await session.close()
        await session.close()
        assert session.closed
        assert session._process.returncode is not None

    async def test_call_after_close(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        session = await PluginSession.open(exe)
        await session.close()
        with pytest.raises(PluginConnectionError, match="closed"):
            await session.describe()


class TestFailures:
    async def test_missing_executable(self, tmp_path) -> None:
        with pytest.raises(PluginConnectionError, match="could not start"):
            await PluginSession.open(tmp_path / "absent")

    async def test_plugin_refuses_wrong_cookie(self, make_plugin) -> None:
        exe = make_plugin("no_foo", NO_FOO)
        with pytest.raises(HandshakeError, match="no handshake"):
            await PluginSession.open(exe, cookie="not-the-cookie")

    async def test_host_rejects_wrong_cookie(self, tmp_path) -> None:
        exe = write_executable(
            tmp_path / "impostor",
            "import sys\n"
            f"print('{PROTOCOL_VERSION}|wrong-cookie|unix|/tmp/none.sock|jsonl', flush=True)\n"
            "sys.stdin.read()\n",
        )
        with pytest.raises(HandshakeError, match="magic cookie"):
            await PluginSession.open(exe)

    async def test_host_rejects_old_protocol(self, tmp_path) -> None:
        exe = write_executable(
            tmp_path / "old",
            "import sys\n"
            f"print('1|{MAGIC_COOKIE_VALUE}|unix|/tmp/none.sock|jsonl', flush=True)\n"
            "sys.stdin.read()\n",
        )
        with pytest.raises(HandshakeError, match="incompatible"):
            await PluginSession.open(exe)

    async def test_handshake_timeout(self, tmp_path) -> None:
        exe = write_executable(tmp_path / "silent", "import time\ntime.sleep(30)\n")
        with pytest.raises(HandshakeError, match="no handshake within"):
            await PluginSession.open(exe, connect_timeout=0.5)

    async def test_unreachable_address(self, tmp_path) -> None:
        exe = write_executable(
            tmp_path / "liar",
            "import sys\n"
            f"print('{PROTOCOL_VERSION}|{MAGIC_COOKIE_VALUE}|unix|{tmp_path}/missing.sock|jsonl', flush=True)\n"
            "sys.stdin.read()\n",
        )
        with pytest.raises(PluginConnectionError, match="could not connect"):
            await PluginSession.open(exe)

    async def test_call_timeout_kills_session(self, make_plugin) -> None:
        exe = make_plugin("slow", SLOW)
        session = await PluginSession.open(exe, call_timeout=0.5)
        with pytest.raises(RuleTimeoutError, match="did not finish"):
            await session.execute(DOCUMENT)
        assert session.closed
        assert session._process.returncode is not None

    async def test_plugin_dies_mid_call(self, tmp_path) -> None:
        body = """
def check(content):
    import os
    os._exit(3)


RULE = Rule(name="dies", short="Exits", check=check)
"""
        exe = write_executable(tmp_path / "dies", plugin_source(body))
        session = await PluginSession.open(exe)
        with pytest.raises(PluginConnectionError):
            await session.execute(DOCUMENT)
        assert session.closed

    async def test_sessions_are_independent(self, make_plugin) -> None:
        good = make_plugin("no_foo", NO_FOO)
        slow = make_plugin("slow", SLOW)
        async with await PluginSession.open(good) as a, await PluginSession.open(
            slow, call_timeout=0.5
        ) as b:
            results = await asyncio.gather(
                a.execute(DOCUMENT), b.execute(DOCUMENT), return_exceptions=True
            )
        assert len(results[0]) == 1
        assert isinstance(results[1], RuleTimeoutError)
