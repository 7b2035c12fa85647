from enum import StrEnum


class NetworkType(StrEnum):
    """Socket families a plugin may announce in its handshake."""

    UNIX = "unix"
    TCP = "tcp"


class FailureKind(StrEnum):
    """Why a single rule invocation did not produce diagnostics."""

    CONNECTION = "connection"
    PROTOCOL = "protocol"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    RESOLUTION = "resolution"
    SYNTAX = "syntax"


class BuildStatus(StrEnum):
    """Outcome of building and registering a single rule."""

    OK = "ok"
    BUILD_FAILED = "build_failed"
    SYNC_FAILED = "sync_failed"
    COLLISION = "collision"
    SKIPPED = "skipped"


class OutputFormat(StrEnum):
    TEXT = "text"
    JSON = "json"
