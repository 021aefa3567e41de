"""
toothpaste.errors - Error taxonomy for pairing, transport and the key store.

Integrity failures (bad keys, bad signatures, cloned authenticators,
broken fragment streams) always surface to the caller. Cancellation is a
separate branch so a UI can tell "the user backed out" from "a security
check failed" and avoid prompting a blind retry after the latter.
"""

from enum import Enum
from typing import Any


class ErrorType(Enum):
    CRYPTO = "crypto"
    STORE = "store"
    AUTH = "auth"
    TRANSPORT = "transport"
    CONFIG = "config"
    GENERAL = "general"


class ToothpasteError(Exception):
    default_type = ErrorType.GENERAL
    security_failure = False

    def __init__(self, message: str, error_type: ErrorType = None, context: dict[str, Any] = None):
        super().__init__(message)
        self.error_type = error_type or self.default_type
        self.context = context or {}


# ----- key exchange -----


class FormatError(ToothpasteError):
    """Malformed key encoding (wrong length or prefix)."""

    default_type = ErrorType.CRYPTO


class InvalidKeyError(ToothpasteError):
    """Key bytes that do not describe a usable point or scalar."""

    default_type = ErrorType.CRYPTO
    security_failure = True


# ----- key store -----


class NotUnlockedError(ToothpasteError):
    default_type = ErrorType.STORE


class CorruptionError(ToothpasteError):
    default_type = ErrorType.STORE


# ----- authentication -----


class SignatureError(ToothpasteError):
    """Assertion signature, challenge or relying-party check failed."""

    default_type = ErrorType.AUTH
    security_failure = True


class UnknownCredentialError(SignatureError):
    pass


class ClonedAuthenticatorError(ToothpasteError):
    """Signature counter did not increase since the last accepted assertion."""

    default_type = ErrorType.AUTH
    security_failure = True


class UnlockCancelledError(ToothpasteError):
    """User dismissed the prompt or the platform call timed out."""

    default_type = ErrorType.AUTH


# ----- transport -----


class TransportError(ToothpasteError):
    default_type = ErrorType.TRANSPORT


class ReassemblyError(ToothpasteError):
    default_type = ErrorType.TRANSPORT
    security_failure = True


class FragmentAuthenticationError(ReassemblyError):
    """One fragment failed its tag check; earlier fragments stay buffered."""


class StateError(ToothpasteError):
    default_type = ErrorType.TRANSPORT


class AlreadyPairedError(ToothpasteError):
    default_type = ErrorType.GENERAL


class ConfigError(ToothpasteError):
    default_type = ErrorType.CONFIG
