"""mcsocks package namespace.

Forwards local Minecraft client connections to a remote server through a
SOCKS5 proxy, re-resolving the server's SRV record for every connection.
"""

from .__about__ import __version__
from . import config
from . import network
from . import resolver
from . import socks5
from . import relay
from . import session
from . import supervisor

__all__ = [
    "__version__",
    "config",
    "network",
    "resolver",
    "socks5",
    "relay",
    "session",
    "supervisor",
]
