"""onionrelay package namespace.

A layered-encryption relay network: users wrap messages in one RSA/AES layer
per hop of a random three-router circuit, and every onion router peels one
layer and forwards the rest.
"""

from .__about__ import __version__
from . import config
from . import crypto
from . import network
from . import discovery
from . import layered_crypto
from . import circuit
from . import relay
from . import user

__all__ = [
    "__version__",
    "config",
    "crypto",
    "network",
    "discovery",
    "layered_crypto",
    "circuit",
    "relay",
    "user",
]
