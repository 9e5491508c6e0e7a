"""Typed failures raised across utxoshell.

Every error carries a stable ``kind`` string so that callers (and the CLI's
JSON output) can branch on the failure class without parsing messages. Error
messages never include passwords, mnemonics, or key material.
"""

from __future__ import annotations

from typing import Any


class UtxoShellError(RuntimeError):
    """Base class for all utxoshell failures."""

    kind = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = {key: str(value) for key, value in self.details.items()}
        return payload


# Caller mistakes --------------------------------------------------------------


class ValidationError(UtxoShellError):
    """Raised when input supplied by the caller is invalid. Never retried."""

    kind = "validation"


class ConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    kind = "configuration"


class StorageError(UtxoShellError):
    """Raised when the store file cannot be read or written."""

    kind = "storage"


class InvalidWordCount(ValidationError):
    kind = "invalid_word_count"


class InvalidMnemonic(ValidationError):
    kind = "invalid_mnemonic"


class InvalidName(ValidationError):
    kind = "invalid_name"


class DuplicateName(ValidationError):
    kind = "duplicate_name"


class NotFound(ValidationError):
    kind = "not_found"


class TemplateParseError(ValidationError):
    kind = "template_parse"


class MissingArgument(ValidationError):
    kind = "missing_argument"


class TypeMismatch(ValidationError):
    kind = "type_mismatch"


class UnknownArgument(ValidationError):
    kind = "unknown_argument"


class EmptySignerList(ValidationError):
    kind = "empty_signer_list"


class NetworkMismatch(ValidationError):
    kind = "network_mismatch"


# Key material ---------------------------------------------------------------------


class CryptoError(UtxoShellError):
    """Raised when key material cannot be decrypted or used."""

    kind = "crypto"


class WrongPassword(CryptoError):
    kind = "wrong_password"


class CorruptSecret(CryptoError):
    kind = "corrupt_secret"


# Template resolution ----------------------------------------------------------------


class ResolutionError(UtxoShellError):
    """Raised when a request cannot be satisfied against current chain state."""

    kind = "resolution"


class InsufficientFunds(ResolutionError):
    kind = "insufficient_funds"


class NoMatchingUtxo(ResolutionError):
    kind = "no_matching_utxo"


class ResolverError(ResolutionError):
    kind = "resolver"


# Transport ------------------------------------------------------------------------


class NetworkError(UtxoShellError):
    """Raised when a provider cannot be reached or answers unusably."""

    kind = "network"

    def __init__(
        self, message: str, *, status_code: int | None = None, transient: bool = False, **details: Any
    ) -> None:
        super().__init__(message, **details)
        self.status_code = status_code
        self.transient = transient


class ConnectivityError(NetworkError):
    kind = "connectivity"


class AuthenticationError(NetworkError):
    kind = "authentication"


class MalformedResponse(NetworkError):
    kind = "malformed_response"


class ProtocolRejection(UtxoShellError):
    """Raised when the ledger network refuses a transaction."""

    kind = "protocol_rejection"

    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(f"Transaction rejected: {reason}", **details)
        self.reason = reason


class PreSubmitCheckFailed(UtxoShellError):
    """Raised when a local pre-submission check ran and failed."""

    kind = "pre_submit_check"

    def __init__(self, check: str, message: str) -> None:
        super().__init__(f"Pre-submission check '{check}' failed: {message}", check=check)
        self.check = check
