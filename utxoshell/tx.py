"""Helpers over serialized ledger transactions and addresses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from pycardano import Address, Transaction, VerificationKeyWitness
from pycardano import Network as LedgerNetwork
from pycardano import PaymentVerificationKey

from .errors import MalformedResponse, ResolverError, ValidationError
from .model import NetworkKind, SignatureRecord

logger = logging.getLogger(__name__)

_LEDGER_NETWORKS = {
    LedgerNetwork.MAINNET: NetworkKind.MAINNET,
    LedgerNetwork.TESTNET: NetworkKind.TESTNET,
}


def address_bytes(address: str) -> bytes:
    """Raw header+payload bytes of a bech32 address."""

    try:
        return bytes(Address.from_primitive(address).to_primitive())
    except Exception as exc:  # pycardano raises several decode error types
        raise ValidationError(f"Not a valid address: {address}") from exc


def address_text(raw: bytes) -> str:
    try:
        return str(Address.from_primitive(bytes(raw)))
    except Exception as exc:  # pycardano raises several decode error types
        raise MalformedResponse("Provider returned an undecodable address") from exc


def address_network(address: str) -> NetworkKind:
    try:
        parsed = Address.from_primitive(address)
    except Exception as exc:  # pycardano raises several decode error types
        raise ValidationError(f"Not a valid address: {address}") from exc
    return _LEDGER_NETWORKS[parsed.network]


@dataclass
class TxSummary:
    """Fields of a transaction body inspected before submission."""

    body_hash: str
    fee: int
    output_addresses: list[str]


def _decode(cbor: bytes) -> Transaction:
    try:
        return Transaction.from_cbor(bytes(cbor))
    except Exception as exc:  # cbor2 and pycardano decode errors
        raise ResolverError("Resolved transaction is not a valid ledger transaction") from exc


def summarize(cbor: bytes) -> TxSummary:
    tx = _decode(cbor)
    body = tx.transaction_body
    return TxSummary(
        body_hash=bytes(body.hash()).hex(),
        fee=int(body.fee),
        output_addresses=[str(output.address) for output in body.outputs],
    )


def body_hash(cbor: bytes) -> bytes:
    """Hash of the transaction body; this is what every signer signs."""

    return bytes(_decode(cbor).transaction_body.hash())


def attach_witnesses(cbor: bytes, signatures: Iterable[SignatureRecord]) -> bytes:
    """Return ``cbor`` with a verification-key witness appended per signature."""

    tx = _decode(cbor)
    witness_set = tx.transaction_witness_set
    witnesses = list(witness_set.vkey_witnesses or [])
    for record in signatures:
        witnesses.append(
            VerificationKeyWitness(PaymentVerificationKey(record.public_key), record.signature)
        )
    witness_set.vkey_witnesses = witnesses
    signed = bytes.fromhex(tx.to_cbor_hex())
    logger.debug("Attached %d witness(es) to %s", len(witnesses), tx.transaction_body.id)
    return signed
