"""Wire contract shared by the plugin host and rule executables.

A rule executable announces where it listens with a single handshake line
on stdout::

    2|<magic cookie>|unix|/tmp/confvet-xyz/plugin.sock|jsonl

Afterwards host and plugin exchange newline-delimited JSON objects over that
socket, one request and one response per call::

    -> {"id": 1, "method": "execute", "params": {"document": "<base64>"}}
    <- {"id": 1, "result": {"diagnostics": [...], "error": null}}

Protocol revision 1 carried a ``severity`` field on descriptors.  Revision 2
dropped it and added suggestion/remediation/metadata to diagnostics.  The
version is checked strictly; there is no cross-revision negotiation.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from confvet.core._types import NetworkType
from confvet.core.diagnostic import Diagnostic, Location, Position
from confvet.core.errors import HandshakeError, ProtocolError
from confvet.core.rule import RuleDescriptor

PROTOCOL_VERSION = 2
MAGIC_COOKIE_KEY = "CONFVET_PLUGIN_MAGIC_COOKIE"
MAGIC_COOKIE_VALUE = "8b1c0f6e2d5a4e7f9c3b"
TRANSPORT = "jsonl"

METHOD_DESCRIBE = "describe"
METHOD_EXECUTE = "execute"
METHODS = frozenset({METHOD_DESCRIBE, METHOD_EXECUTE})

# A single message may carry a whole document plus its diagnostics.
MAX_MESSAGE_SIZE = 64 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class Handshake:
    protocol_version: int
    cookie: str
    network: NetworkType
    address: str
    transport: str = TRANSPORT

    def encode(self) -> str:
        return (
            f"{self.protocol_version}|{self.cookie}|{self.network}|{self.address}|{self.transport}\n"
        )

    @property
    def tcp_address(self) -> tuple[str, int]:
        host, _, port = self.address.rpartition(":")
        return host, int(port)


def parse_handshake(line: str | bytes, *, cookie: str = MAGIC_COOKIE_VALUE) -> Handshake:
    """Parse and validate a plugin handshake line.

    Raises:
        :class:`HandshakeError`: If the line is empty, has the wrong shape, or
            announces a different protocol version, cookie, network or transport.

    """
    if isinstance(line, bytes):
        try:
            line = line.decode()
        except UnicodeDecodeError as exc:
            raise HandshakeError(f"handshake is not valid UTF-8: {exc}") from exc
    text = line.strip()
    if not text:
        raise HandshakeError("plugin exited or wrote no handshake line")

    parts = text.split("|")
    if len(parts) != 5:
        raise HandshakeError(f"malformed handshake {text!r}: expected 5 fields, got {len(parts)}")
    raw_version, raw_cookie, raw_network, address, transport = parts

    try:
        version = int(raw_version)
    except ValueError:
        raise HandshakeError(f"malformed handshake {text!r}: bad protocol version") from None
    if version != PROTOCOL_VERSION:
        raise HandshakeError(
            f"incompatible plugin protocol version {version} (host speaks {PROTOCOL_VERSION})"
        )
    if raw_cookie != cookie:
        raise HandshakeError("magic cookie mismatch; executable is not a confvet rule")
    try:
        network = NetworkType(raw_network)
    except ValueError:
        raise HandshakeError(f"unsupported network type {raw_network!r}") from None
    if not address:
        raise HandshakeError("handshake carries an empty address")
    if transport != TRANSPORT:
        raise HandshakeError(f"unsupported transport {transport!r} (expected {TRANSPORT!r})")

    if network == NetworkType.TCP:
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise HandshakeError(f"malformed tcp address {address!r}")

    return Handshake(version, raw_cookie, network, address, transport)


# Message framing


def encode_message(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode() + b"\n"


def decode_message(raw: bytes) -> dict[str, Any]:
    if not raw:
        raise ProtocolError("connection closed before a response was received")
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"malformed message: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError(f"message must be an object, got {type(message).__name__}")
    return message


def request(call_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"id": call_id, "method": method, "params": params or {}}


def execute_params(document: bytes) -> dict[str, Any]:
    return {"document": base64.b64encode(document).decode("ascii")}


def document_from_params(params: dict[str, Any]) -> bytes:
    raw = params.get("document")
    if not isinstance(raw, str):
        raise ProtocolError("execute request is missing 'document'")
    try:
        return base64.b64decode(raw, validate=True)
    except binascii.Error as exc:
        raise ProtocolError(f"document is not valid base64: {exc}") from exc


def unwrap_response(message: dict[str, Any], call_id: int) -> dict[str, Any]:
    """Return the ``result`` object of a response to ``call_id``.

    A transport-level ``error`` member (unknown method, undecodable request)
    is a protocol error.  Rule failures travel inside ``result``.
    """
    if message.get("id") != call_id:
        raise ProtocolError(f"response id {message.get('id')!r} does not match request {call_id}")
    if (error := message.get("error")) is not None:
        detail = error.get("message") if isinstance(error, dict) else error
        raise ProtocolError(f"plugin rejected request: {detail}")
    result = message.get("result")
    if not isinstance(result, dict):
        raise ProtocolError("response has no result object")
    return result


# Descriptor / diagnostic payloads


def descriptor_to_wire(descriptor: RuleDescriptor) -> dict[str, Any]:
    return {
        "name": descriptor.name,
        "short": descriptor.short,
        "long": descriptor.long,
        "link": descriptor.link,
        "enabled": descriptor.enabled,
    }


def descriptor_from_wire(data: dict[str, Any]) -> RuleDescriptor:
    if "severity" in data:
        raise ProtocolError("descriptor uses protocol revision 1 (severity field present)")
    name = data.get("name")
    short = data.get("short")
    if not isinstance(name, str) or not name:
        raise ProtocolError("descriptor is missing 'name'")
    if not isinstance(short, str) or not short:
        raise ProtocolError("descriptor is missing 'short'")
    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ProtocolError("descriptor 'enabled' must be a boolean")
    return RuleDescriptor(
        name=name,
        short=short,
        long=_optional_str(data, "long"),
        link=_optional_str(data, "link"),
        enabled=enabled,
    )


def diagnostic_to_wire(diagnostic: Diagnostic) -> dict[str, Any]:
    loc = diagnostic.location
    return {
        "location": {
            "start": {"line": loc.start.line, "column": loc.start.column},
            "end": {"line": loc.end.line, "column": loc.end.column},
        },
        "suggestion": diagnostic.suggestion,
        "remediation": diagnostic.remediation,
        "metadata": dict(diagnostic.metadata),
    }


def diagnostic_from_wire(data: Any) -> Diagnostic:
    if not isinstance(data, dict):
        raise ProtocolError("diagnostic must be an object")
    location = data.get("location")
    if not isinstance(location, dict):
        raise ProtocolError("diagnostic is missing 'location'")
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ProtocolError("diagnostic 'metadata' must be an object")
    return Diagnostic(
        location=Location(
            start=_position(location.get("start")),
            end=_position(location.get("end")),
        ),
        suggestion=_optional_str(data, "suggestion"),
        remediation=_optional_str(data, "remediation"),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


def execute_result_to_wire(diagnostics: list[Diagnostic], error: str | None) -> dict[str, Any]:
    return {"diagnostics": [diagnostic_to_wire(d) for d in diagnostics], "error": error}


def execute_result_from_wire(data: dict[str, Any]) -> tuple[list[Diagnostic], str | None]:
    raw = data.get("diagnostics")
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        raise ProtocolError("'diagnostics' must be a list")
    error = data.get("error")
    if error is not None and not isinstance(error, str):
        raise ProtocolError("'error' must be a string or null")
    return [diagnostic_from_wire(d) for d in raw], error or None


def _position(data: Any) -> Position:
    if not isinstance(data, dict):
        raise ProtocolError("location position must be an object")
    line = data.get("line")
    column = data.get("column")
    if isinstance(line, bool) or not isinstance(line, int):
        raise ProtocolError("position 'line' must be an integer")
    if isinstance(column, bool) or not isinstance(column, int):
        raise ProtocolError("position 'column' must be an integer")
    return Position(line, column)


def _optional_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"{key!r} must be a string")
    return value
