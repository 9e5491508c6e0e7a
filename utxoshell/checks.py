"""Local checks run on a signed invocation before anything is submitted."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from . import keys
from .errors import PreSubmitCheckFailed
from .model import NetworkKind, SignatureRecord, UnsignedTx
from .tx import TxSummary, address_network, summarize

logger = logging.getLogger(__name__)


@dataclass
class CheckContext:
    unsigned: UnsignedTx
    signatures: list[SignatureRecord]
    network: NetworkKind
    max_fee: int
    summary: TxSummary = field(init=False)

    def __post_init__(self) -> None:
        self.summary = summarize(self.unsigned.cbor)


def check_body_hash(ctx: CheckContext) -> None:
    reported = (ctx.unsigned.hash or "").lower()
    if reported and reported != ctx.summary.body_hash:
        raise PreSubmitCheckFailed(
            "body_hash",
            f"resolver reported {reported} but the body hashes to {ctx.summary.body_hash}",
        )


def check_signatures(ctx: CheckContext) -> None:
    payload = bytes.fromhex(ctx.summary.body_hash)
    for record in ctx.signatures:
        if not keys.verify(record.public_key, payload, record.signature):
            raise PreSubmitCheckFailed("signatures", f"signature from wallet '{record.wallet}' does not verify")


def check_network(ctx: CheckContext) -> None:
    for address in ctx.summary.output_addresses:
        if address_network(address) is not ctx.network:
            raise PreSubmitCheckFailed(
                "network", f"output address {address} is not a {ctx.network.value} address"
            )


def check_fee_limit(ctx: CheckContext) -> None:
    if ctx.summary.fee > ctx.max_fee:
        raise PreSubmitCheckFailed(
            "fee_limit", f"fee {ctx.summary.fee} lovelace exceeds the limit of {ctx.max_fee}"
        )


PRE_SUBMIT_CHECKS: list[tuple[str, Callable[[CheckContext], None]]] = [
    ("body_hash", check_body_hash),
    ("signatures", check_signatures),
    ("network", check_network),
    ("fee_limit", check_fee_limit),
]
CHECK_NAMES = [name for name, _ in PRE_SUBMIT_CHECKS]


def run_checks(ctx: CheckContext) -> list[str]:
    """Run every check in order, stopping at the first failure. Returns the names run."""

    ran = []
    for name, check in PRE_SUBMIT_CHECKS:
        check(ctx)
        ran.append(name)
        logger.debug("Pre-submission check %s passed", name)
    return ran
