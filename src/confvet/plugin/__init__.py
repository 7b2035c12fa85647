from confvet.plugin.host import PluginSession
from confvet.plugin.protocol import (
    MAGIC_COOKIE_KEY,
    MAGIC_COOKIE_VALUE,
    PROTOCOL_VERSION,
    Handshake,
    parse_handshake,
)

__all__ = [
    "MAGIC_COOKIE_KEY",
    "MAGIC_COOKIE_VALUE",
    "PROTOCOL_VERSION",
    "Handshake",
    "PluginSession",
    "parse_handshake",
]
