"""toothpaste package namespace.

Secure pairing, encrypted fragmenting transport and an authenticated local
key store for streaming text to a small-MTU wireless peripheral.
"""

from .__about__ import __version__
from . import codec
from . import config
from . import ecdh
from . import errors
from . import kdf
from . import link
from . import session
from . import store
from . import transport
from . import webauthn

__all__ = [
    "__version__",
    "codec",
    "config",
    "ecdh",
    "errors",
    "kdf",
    "link",
    "session",
    "store",
    "transport",
    "webauthn",
]
