"""Domain models shared by the provider clients and the invocation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ValidationError


class NetworkKind(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"

    @classmethod
    def parse(cls, value: "str | NetworkKind") -> "NetworkKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(
                f"Unknown network kind '{value}'; expected mainnet or testnet"
            ) from exc


class TxStatus(str, Enum):
    """Ledger-side view of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


@dataclass
class ChainTip:
    slot: int
    hash: str
    height: int | None = None


@dataclass
class Asset:
    policy_id: str
    name: str
    quantity: int


@dataclass
class Utxo:
    tx_hash: str
    index: int
    address: str
    coin: int
    assets: list[Asset] = field(default_factory=list)
    datum_hash: str | None = None

    @property
    def ref(self) -> str:
        return f"{self.tx_hash}#{self.index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "address": self.address,
            "coin": self.coin,
            "assets": [
                {"policy_id": asset.policy_id, "name": asset.name, "quantity": asset.quantity}
                for asset in self.assets
            ],
            "datum_hash": self.datum_hash,
        }


@dataclass
class Balance:
    """Aggregated value held by an address."""

    address: str
    coin: int
    assets: dict[str, int] = field(default_factory=dict)
    utxo_count: int = 0

    @classmethod
    def from_utxos(cls, address: str, utxos: list[Utxo]) -> "Balance":
        assets: dict[str, int] = {}
        for utxo in utxos:
            for asset in utxo.assets:
                unit = f"{asset.policy_id}.{asset.name}"
                assets[unit] = assets.get(unit, 0) + asset.quantity
        return cls(
            address=address,
            coin=sum(utxo.coin for utxo in utxos),
            assets=assets,
            utxo_count=len(utxos),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "coin": self.coin,
            "assets": dict(self.assets),
            "utxo_count": self.utxo_count,
        }


@dataclass
class UnsignedTx:
    """Transaction body produced by a template resolver, ready to sign."""

    cbor: bytes
    hash: str


@dataclass
class SignatureRecord:
    wallet: str
    public_key: bytes
    signature: bytes

    def to_dict(self) -> dict[str, str]:
        return {
            "wallet": self.wallet,
            "public_key": self.public_key.hex(),
            "signature": self.signature.hex(),
        }


@dataclass
class SignedTx:
    """A transaction with verification-key witnesses attached."""

    cbor: bytes
    tx_id: str
    signatures: list[SignatureRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "cbor": self.cbor.hex(),
            "signatures": [record.to_dict() for record in self.signatures],
        }
