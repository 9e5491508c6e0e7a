"""Key material primitives: mnemonics, HD derivation, encryption at rest, signing.

Root keys are Ed25519-BIP32 extended keys derived from BIP-39 entropy with the
Icarus scheme (via :mod:`pycardano`). The BIP-39 passphrase is always empty, so
restoring a mnemonic under a different spending password reproduces the same
keys. At rest a root key only exists as an :class:`EncryptedSecret` built from
an scrypt-derived key and AES-256-GCM.

Nothing in this module performs I/O.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from mnemonic import Mnemonic
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from pycardano import Address, ExtendedSigningKey, PaymentVerificationKey
from pycardano import Network as LedgerNetwork
from pycardano.crypto.bip32 import HDWallet

from .errors import CorruptSecret, InvalidMnemonic, InvalidWordCount, WrongPassword
from .model import NetworkKind

logger = logging.getLogger(__name__)

# word count -> entropy bits
WORD_COUNT_STRENGTH = {12: 128, 15: 160, 18: 192, 21: 224, 24: 256}
DEFAULT_WORD_COUNT = 24

PURPOSE = 1852
COIN_TYPE = 1815

_XPRV_SIZE = 64
_PUBLIC_KEY_SIZE = 32
_CHAIN_CODE_SIZE = 32
ROOT_KEY_SIZE = _XPRV_SIZE + _PUBLIC_KEY_SIZE + _CHAIN_CODE_SIZE

SECRET_VERSION = 1
_AESGCM_NONCE_SIZE = 12
_SCRYPT_SALT_SIZE = 16
_SCRYPT_KEY_LENGTH = 32
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

_wordlist = Mnemonic("english")


@dataclass(frozen=True)
class RootKeySeed:
    """A validated mnemonic and the entropy it encodes."""

    phrase: str = field(repr=False)
    entropy: bytes = field(repr=False)

    @property
    def word_count(self) -> int:
        return len(self.phrase.split())


class RootKey:
    """In-memory extended root key: ``xprv (64) || public key (32) || chain code (32)``.

    The material lives in a mutable buffer so :meth:`wipe` can zero it once the
    caller's operation ends.
    """

    __slots__ = ("_material",)

    def __init__(self, material: bytes | bytearray) -> None:
        if len(material) != ROOT_KEY_SIZE:
            raise CorruptSecret(f"Root key must be {ROOT_KEY_SIZE} bytes, got {len(material)}")
        self._material = bytearray(material)

    def __repr__(self) -> str:
        return "RootKey(<redacted>)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RootKey):
            return NotImplemented
        return bytes(self._material) == bytes(other._material)

    __hash__ = None  # type: ignore[assignment]

    @property
    def wiped(self) -> bool:
        return not any(self._material)

    def to_bytes(self) -> bytes:
        return bytes(self._material)

    def wipe(self) -> None:
        for index in range(len(self._material)):
            self._material[index] = 0

    def __enter__(self) -> "RootKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def _hdwallet(self) -> HDWallet:
        if self.wiped:
            raise CorruptSecret("Root key has been wiped")
        xprv = bytes(self._material[:_XPRV_SIZE])
        public_key = bytes(self._material[_XPRV_SIZE : _XPRV_SIZE + _PUBLIC_KEY_SIZE])
        chain_code = bytes(self._material[_XPRV_SIZE + _PUBLIC_KEY_SIZE :])
        return HDWallet(
            root_xprivate_key=xprv,
            root_public_key=public_key,
            root_chain_code=chain_code,
            xprivate_key=xprv,
            public_key=public_key,
            chain_code=chain_code,
        )


@dataclass
class EncryptedSecret:
    """Ciphertext plus everything except the password needed to decrypt it."""

    ciphertext: bytes
    salt: bytes
    nonce: bytes
    kdf: str = "scrypt"
    kdf_params: dict[str, int] = field(
        default_factory=lambda: {"n": _SCRYPT_N, "r": _SCRYPT_R, "p": _SCRYPT_P}
    )
    cipher: str = "aes-256-gcm"
    version: int = SECRET_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "cipher": self.cipher,
            "kdf": self.kdf,
            "kdf_params": dict(self.kdf_params),
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedSecret":
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"]),
                salt=base64.b64decode(data["salt"]),
                nonce=base64.b64decode(data["nonce"]),
                kdf=str(data.get("kdf", "scrypt")),
                kdf_params={k: int(v) for k, v in (data.get("kdf_params") or {}).items()},
                cipher=str(data.get("cipher", "aes-256-gcm")),
                version=int(data.get("version", SECRET_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptSecret("Encrypted secret is malformed") from exc


# Mnemonics ----------------------------------------------------------------------


def generate_mnemonic(word_count: int = DEFAULT_WORD_COUNT) -> str:
    """Return a fresh BIP-39 English mnemonic with ``word_count`` words."""

    strength = WORD_COUNT_STRENGTH.get(word_count)
    if strength is None:
        allowed = ", ".join(str(count) for count in WORD_COUNT_STRENGTH)
        raise InvalidWordCount(f"Unsupported word count {word_count}; expected one of {allowed}")
    return _wordlist.generate(strength=strength)


def validate_mnemonic(words: str | list[str]) -> RootKeySeed:
    """Check word count, vocabulary and checksum, returning the normalized seed."""

    if isinstance(words, str):
        words = words.split()
    normalized = [word.strip().lower() for word in words if word.strip()]
    if len(normalized) not in WORD_COUNT_STRENGTH:
        raise InvalidMnemonic(
            f"Mnemonic has {len(normalized)} words; expected 12, 15, 18, 21 or 24"
        )
    unknown = [word for word in normalized if word not in _wordlist.wordlist]
    if unknown:
        raise InvalidMnemonic(f"Mnemonic contains {len(unknown)} word(s) outside the BIP-39 list")
    phrase = " ".join(normalized)
    if not _wordlist.check(phrase):
        raise InvalidMnemonic("Mnemonic checksum does not match")
    return RootKeySeed(phrase=phrase, entropy=bytes(_wordlist.to_entropy(phrase)))


def derive_root_key(seed: RootKeySeed) -> RootKey:
    """Derive the Icarus root key for ``seed``. Same seed, same key."""

    wallet = HDWallet.from_mnemonic(seed.phrase)
    return RootKey(wallet.xprivate_key + wallet.public_key + wallet.chain_code)


def derivation_path(account: int = 0, role: int = 0, index: int = 0) -> str:
    """CIP-1852 path for a key of ``role`` (0 external, 1 internal, 2 stake)."""

    if min(account, role, index) < 0:
        raise ValueError("Derivation indices must be non-negative")
    return f"m/{PURPOSE}'/{COIN_TYPE}'/{account}'/{role}/{index}"


DEFAULT_PAYMENT_PATH = derivation_path()


def _child_signing_key(root_key: RootKey, path: str) -> ExtendedSigningKey:
    child = root_key._hdwallet().derive_from_path(path)
    return ExtendedSigningKey.from_hdwallet(child)


def public_key(root_key: RootKey, path: str = DEFAULT_PAYMENT_PATH) -> bytes:
    """Return the 32-byte Ed25519 public key at ``path``."""

    signing_key = _child_signing_key(root_key, path)
    return bytes(signing_key.to_verification_key().payload[:_PUBLIC_KEY_SIZE])


def address_for(public_key_bytes: bytes, network: NetworkKind | str) -> str:
    """Enterprise (payment-only) bech32 address for a payment public key."""

    network = NetworkKind.parse(network)
    ledger_network = LedgerNetwork.MAINNET if network is NetworkKind.MAINNET else LedgerNetwork.TESTNET
    payment_key = PaymentVerificationKey(public_key_bytes)
    return str(Address(payment_part=payment_key.hash(), network=ledger_network))


def sign(root_key: RootKey, path: str, message: bytes) -> bytes:
    """Sign ``message`` with the child key at ``path``; the child key is dropped afterwards."""

    signing_key = _child_signing_key(root_key, path)
    try:
        return bytes(signing_key.sign(message))
    finally:
        del signing_key


def verify(public_key_bytes: bytes, message: bytes, signature: bytes) -> bool:
    try:
        VerifyKey(bytes(public_key_bytes)).verify(message, bytes(signature))
    except (BadSignatureError, ValueError):
        return False
    return True


# Encryption at rest ----------------------------------------------------------------


def _derive_key(password: str, salt: bytes, params: dict[str, int] | None = None) -> bytes:
    params = params or {}
    kdf = Scrypt(
        salt=salt,
        length=_SCRYPT_KEY_LENGTH,
        n=params.get("n", _SCRYPT_N),
        r=params.get("r", _SCRYPT_R),
        p=params.get("p", _SCRYPT_P),
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt(root_key: RootKey, password: str) -> EncryptedSecret:
    """Encrypt ``root_key`` under ``password`` with a fresh salt and nonce."""

    salt = os.urandom(_SCRYPT_SALT_SIZE)
    nonce = os.urandom(_AESGCM_NONCE_SIZE)
    key = _derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, root_key.to_bytes(), _associated_data(SECRET_VERSION))
    logger.debug("Encrypted root key with scrypt + AES-GCM")
    return EncryptedSecret(ciphertext=ciphertext, salt=salt, nonce=nonce)


def decrypt(secret: EncryptedSecret, password: str) -> RootKey:
    """Return the root key, or raise :class:`WrongPassword` on tag mismatch."""

    if secret.kdf != "scrypt" or secret.cipher != "aes-256-gcm":
        raise CorruptSecret(f"Unsupported secret format {secret.kdf}/{secret.cipher}")
    if len(secret.nonce) != _AESGCM_NONCE_SIZE:
        raise CorruptSecret("Encrypted secret has an invalid nonce")
    key = _derive_key(password, secret.salt, secret.kdf_params)
    try:
        plaintext = AESGCM(key).decrypt(
            secret.nonce, secret.ciphertext, _associated_data(secret.version)
        )
    except InvalidTag:
        raise WrongPassword("Wrong password or tampered wallet secret") from None
    root_key = RootKey(plaintext)
    del plaintext
    return root_key


def _associated_data(version: int) -> bytes:
    return f"utxoshell-root-key-v{version}".encode("ascii")
