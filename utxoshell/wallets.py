"""Named wallets: encrypted root keys plus cached public metadata."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

from . import keys
from .errors import CorruptSecret, ValidationError
from .model import NetworkKind
from .store import NamedCollection, StoreFile, validate_name

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass
class Wallet:
    name: str
    encrypted_root_key: keys.EncryptedSecret = field(repr=False)
    public_key: str
    addresses: dict[str, str]
    is_default: bool = False
    created: str = ""
    modified: str = ""

    def address(self, network: NetworkKind | str) -> str:
        return self.addresses[NetworkKind.parse(network).value]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "is_default": self.is_default,
            "public_key": self.public_key,
            "addresses": dict(self.addresses),
            "created": self.created,
            "modified": self.modified,
            "encrypted_root_key": self.encrypted_root_key.to_dict(),
        }

    def summary(self) -> dict[str, Any]:
        """Metadata safe to display; the ciphertext is left out."""

        data = self.to_dict()
        data.pop("encrypted_root_key")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Wallet":
        try:
            return cls(
                name=str(data["name"]),
                encrypted_root_key=keys.EncryptedSecret.from_dict(data["encrypted_root_key"]),
                public_key=str(data["public_key"]),
                addresses={str(k): str(v) for k, v in (data.get("addresses") or {}).items()},
                is_default=bool(data.get("is_default", False)),
                created=str(data.get("created", "")),
                modified=str(data.get("modified", "")),
            )
        except KeyError as exc:
            raise CorruptSecret(f"Stored wallet entry is missing '{exc.args[0]}'") from exc


class SigningHandle:
    """Ephemeral access to one wallet's decrypted root key.

    Only obtainable through :meth:`WalletStore.signer`, which wipes the key
    material when the ``with`` block exits.
    """

    def __init__(self, wallet: Wallet, root_key: keys.RootKey) -> None:
        self.wallet_name = wallet.name
        self.public_key = bytes.fromhex(wallet.public_key)
        self._root_key = root_key

    def sign(self, message: bytes, path: str | None = None) -> bytes:
        return keys.sign(self._root_key, path or keys.DEFAULT_PAYMENT_PATH, message)

    def close(self) -> None:
        self._root_key.wipe()

    @property
    def closed(self) -> bool:
        return self._root_key.wiped


def _wallet_from_root_key(name: str, root_key: keys.RootKey, password: str) -> Wallet:
    payment_key = keys.public_key(root_key)
    timestamp = _now()
    return Wallet(
        name=name,
        encrypted_root_key=keys.encrypt(root_key, password),
        public_key=payment_key.hex(),
        addresses={kind.value: keys.address_for(payment_key, kind) for kind in NetworkKind},
        created=timestamp,
        modified=timestamp,
    )


def _require_password(password: str, *, label: str = "Password") -> None:
    if not isinstance(password, str) or not password:
        raise ValidationError(f"{label} must be a non-empty string")


class WalletStore(NamedCollection):
    """CRUD over the ``wallets`` section of a :class:`StoreFile`.

    Exactly one wallet is default at a time once any default has been chosen;
    the first wallet added to an empty store becomes the default.
    """

    section = "wallets"
    label = "wallet"

    def __init__(self, store: StoreFile, *, case_sensitive: bool = False) -> None:
        super().__init__(store, case_sensitive=case_sensitive)

    def create(self, name: str, password: str, word_count: int = keys.DEFAULT_WORD_COUNT) -> tuple[Wallet, str]:
        """Create a wallet from a fresh mnemonic and return it with that mnemonic.

        The mnemonic is returned exactly once and never stored.
        """

        name = validate_name(name, label="wallet name")
        _require_password(password)
        self._ensure_unique(self._entries(), name)
        phrase = keys.generate_mnemonic(word_count)
        wallet = self._add(name, password, keys.validate_mnemonic(phrase))
        logger.info("Created wallet %s", wallet.name)
        return wallet, phrase

    def restore(self, name: str, password: str, mnemonic: str | list[str]) -> Wallet:
        name = validate_name(name, label="wallet name")
        _require_password(password)
        seed = keys.validate_mnemonic(mnemonic)
        self._ensure_unique(self._entries(), name)
        wallet = self._add(name, password, seed)
        logger.info("Restored wallet %s", wallet.name)
        return wallet

    def _add(self, name: str, password: str, seed: keys.RootKeySeed) -> Wallet:
        with keys.derive_root_key(seed) as root_key:
            wallet = _wallet_from_root_key(name, root_key, password)
        with self.store.transaction() as document:
            entries = document[self.section]
            self._ensure_unique(entries, name)
            wallet.is_default = not entries
            entries.append(wallet.to_dict())
        return wallet

    def edit(
        self,
        name: str,
        *,
        new_name: str | None = None,
        new_password: str | None = None,
        old_password: str | None = None,
        set_default: bool | None = None,
    ) -> Wallet:
        """Rename, re-encrypt and/or change the default flag in a single write.

        Nothing is persisted unless every requested change succeeds, so a failed
        re-encryption leaves the previous ciphertext in place.
        """

        with self.store.transaction() as document:
            entries = document[self.section]
            index = self._require(entries, name)
            wallet = Wallet.from_dict(entries[index])

            if new_name is not None:
                new_name = validate_name(new_name, label="wallet name")
                self._ensure_unique(entries, new_name, skip=index)
                wallet.name = new_name

            if new_password is not None:
                _require_password(new_password, label="New password")
                if old_password is None:
                    raise ValidationError("Changing the password requires the current password")
                with keys.decrypt(wallet.encrypted_root_key, old_password) as root_key:
                    wallet.encrypted_root_key = keys.encrypt(root_key, new_password)

            if set_default is True:
                self._set_default(entries, index)
                wallet.is_default = True
            elif set_default is False:
                wallet.is_default = False

            wallet.modified = _now()
            entries[index] = wallet.to_dict()
        logger.info("Updated wallet %s", wallet.name)
        return wallet

    def delete(self, name: str) -> None:
        """Remove a wallet. Deleting the default leaves the store without one."""

        with self.store.transaction() as document:
            entries = document[self.section]
            index = self._require(entries, name)
            removed = entries.pop(index)
        logger.info("Deleted wallet %s", removed.get("name"))

    def get(self, name: str) -> Wallet:
        entries = self._entries()
        return Wallet.from_dict(entries[self._require(entries, name)])

    def default(self) -> Wallet | None:
        for entry in self._entries():
            if entry.get("is_default"):
                return Wallet.from_dict(entry)
        return None

    def list(self) -> list[Wallet]:
        return [Wallet.from_dict(entry) for entry in self._entries()]

    @contextmanager
    def signer(self, name: str, password: str) -> Iterator[SigningHandle]:
        """Yield a :class:`SigningHandle`, zeroing its key on every exit path."""

        wallet = self.get(name)
        handle = SigningHandle(wallet, keys.decrypt(wallet.encrypted_root_key, password))
        try:
            yield handle
        finally:
            handle.close()
