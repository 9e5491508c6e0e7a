"""Invocation engine: Load -> Resolve -> Sign -> Submit -> Observe.

:meth:`InvocationEngine.prepare` performs the Load stage synchronously and never
touches the network, so argument and signer mistakes surface before any
provider is contacted. :meth:`InvocationEngine.execute` drives the remaining
stages on the event loop; blocking provider calls run in worker threads.

Once submission has started it is shielded from cancellation: the transaction
id is always returned, and a cancelled Observe stage reports ``submitted``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from . import tx
from .checks import CHECK_NAMES, CheckContext, run_checks
from .config import ShellConfig
from .errors import (
    EmptySignerList,
    NetworkError,
    NotFound,
    ProtocolRejection,
    UtxoShellError,
)
from .model import NetworkKind, SignatureRecord, SignedTx, TxStatus, UnsignedTx
from .providers import Provider, ProviderRegistry
from .resolver import TemplateResolver, resolver_for
from .retry import RetryPolicy
from .rpc_client import ProviderClient, client_for
from .template import TxTemplate, load_template, validate_args
from .wallets import WalletStore

logger = logging.getLogger(__name__)

PasswordSource = Callable[[str], str]


class InvocationState(str, Enum):
    LOADED = "loaded"
    RESOLVED = "resolved"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class InvocationRequest:
    template_path: str | Path
    signers: list[str]
    args: dict[str, Any] = field(default_factory=dict)
    allow_unsafe: bool = False
    transaction: str | None = None
    provider: str | None = None
    required_network: NetworkKind | str | None = None
    confirm: bool = False
    submit: bool = True


@dataclass
class InvocationResult:
    tx_id: str
    status: str
    reason: str | None = None
    signatures: list[SignatureRecord] = field(default_factory=list)
    checks_run: list[str] = field(default_factory=list)
    checks_skipped: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)
    cbor: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "status": self.status,
            "reason": self.reason,
            "signatures": [record.to_dict() for record in self.signatures],
            "checks_run": list(self.checks_run),
            "checks_skipped": list(self.checks_skipped),
            "history": list(self.history),
            "cbor": self.cbor,
        }


@dataclass
class Invocation:
    """Mutable record of one request moving through the pipeline."""

    request: InvocationRequest
    provider: Provider
    client: ProviderClient
    template: TxTemplate
    args: dict[str, Any]
    state: InvocationState = InvocationState.LOADED
    history: list[str] = field(default_factory=lambda: [InvocationState.LOADED.value])
    failed_stage: str | None = None
    error: BaseException | None = None
    chain_params: dict[str, Any] = field(default_factory=dict)
    unsigned: UnsignedTx | None = None
    signing_payload: bytes | None = None
    signatures: list[SignatureRecord] = field(default_factory=list)
    signed_cbor: bytes | None = None
    checks_run: list[str] = field(default_factory=list)
    checks_skipped: list[str] = field(default_factory=list)
    tx_id: str | None = None
    reason: str | None = None

    def advance(self, state: InvocationState) -> None:
        self.state = state
        self.history.append(state.value)
        logger.debug("Invocation of %s is %s", self.template.name, state.value)

    def fail(self, stage: str, error: BaseException) -> None:
        self.failed_stage = stage
        self.error = error
        self.advance(InvocationState.FAILED)

    def result(self) -> InvocationResult:
        return InvocationResult(
            tx_id=self.tx_id or "",
            status=self.state.value,
            reason=self.reason,
            signatures=list(self.signatures),
            checks_run=list(self.checks_run),
            checks_skipped=list(self.checks_skipped),
            history=list(self.history),
            cbor=self.signed_cbor.hex() if self.signed_cbor else "",
        )


def _uncancel() -> None:
    task = asyncio.current_task()
    if task is not None:
        task.uncancel()


class InvocationEngine:
    def __init__(
        self,
        wallets: WalletStore,
        providers: ProviderRegistry,
        *,
        config: ShellConfig | None = None,
        client_factory: Callable[[Provider], ProviderClient] | None = None,
        resolver_factory: Callable[[ProviderClient], TemplateResolver] = resolver_for,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.wallets = wallets
        self.providers = providers
        self.config = config
        if client_factory is None:
            if config is not None:
                client_factory = functools.partial(
                    client_for, timeout=config.request_timeout, retry=RetryPolicy.from_config(config)
                )
            else:
                client_factory = client_for
        self.client_factory = client_factory
        self.resolver_factory = resolver_factory
        self._sleep = sleep

    @property
    def max_fee(self) -> int:
        return self.config.max_fee_lovelace if self.config else ShellConfig.max_fee_lovelace

    @property
    def confirm_attempts(self) -> int:
        return self.config.confirm_attempts if self.config else ShellConfig.confirm_attempts

    @property
    def confirm_interval(self) -> float:
        return self.config.confirm_interval if self.config else ShellConfig.confirm_interval

    # Load -------------------------------------------------------------------

    def prepare(self, request: InvocationRequest, *, require_signers: bool = True) -> Invocation:
        """Run the Load stage: template, arguments, signers and network, all offline."""

        signers = list(request.signers or [])
        if require_signers and not signers:
            raise EmptySignerList("At least one signer wallet is required")
        for name in signers:
            self.wallets.get(name)

        provider = self.providers.resolve(request.provider)
        client = self.client_factory(provider)
        client.ensure_network(request.required_network)

        protocol = load_template(request.template_path)
        template = protocol.select(request.transaction)
        args = validate_args(template, request.args, address_lookup=self._address_lookup(provider.network))
        logger.info(
            "Loaded %s.%s for provider %s with %d signer(s)",
            protocol.name,
            template.name,
            provider.name,
            len(signers),
        )
        return Invocation(request=request, provider=provider, client=client, template=template, args=args)

    def _address_lookup(self, network: NetworkKind) -> Callable[[str], str | None]:
        def lookup(name: str) -> str | None:
            try:
                return self.wallets.get(name).address(network)
            except NotFound:
                return None

        return lookup

    # Pipeline ---------------------------------------------------------------

    async def invoke(self, request: InvocationRequest, passwords: PasswordSource) -> InvocationResult:
        return await self.execute(self.prepare(request), passwords)

    async def invoke_all(
        self, requests: Iterable[InvocationRequest], passwords: PasswordSource
    ) -> list[InvocationResult | BaseException]:
        """Run independent invocations concurrently; each entry is a result or its error."""

        async def run(request: InvocationRequest) -> InvocationResult:
            return await self.invoke(request, passwords)

        return list(await asyncio.gather(*(run(request) for request in requests), return_exceptions=True))

    async def resolve(self, invocation: Invocation) -> UnsignedTx:
        """Resolve stage on its own, for callers that only want the unsigned transaction."""

        try:
            await self._resolve(invocation)
        except (UtxoShellError, asyncio.CancelledError) as exc:
            invocation.fail("resolve", exc)
            raise
        assert invocation.unsigned is not None
        return invocation.unsigned

    async def execute(self, invocation: Invocation, passwords: PasswordSource) -> InvocationResult:
        stage = "resolve"
        try:
            await self._resolve(invocation)
            stage = "sign"
            await asyncio.to_thread(self._sign, invocation, passwords)
            stage = "submit"
            self._run_checks(invocation)
            invocation.signed_cbor = tx.attach_witnesses(invocation.unsigned.cbor, invocation.signatures)
        except (UtxoShellError, asyncio.CancelledError) as exc:
            invocation.fail(stage, exc)
            logger.debug("Invocation failed at %s", stage, exc_info=True)
            raise

        if not invocation.request.submit:
            invocation.tx_id = invocation.signing_payload.hex()
            logger.info("Signed %s without submitting", invocation.tx_id)
            return invocation.result()

        cancelled = await self._submit(invocation)
        if invocation.state is InvocationState.SUBMITTED and invocation.request.confirm and not cancelled:
            await self._observe(invocation)
        return invocation.result()

    async def _resolve(self, invocation: Invocation) -> None:
        client = invocation.client
        tip = await asyncio.to_thread(client.query_tip)
        invocation.chain_params = {
            "tip_slot": tip.slot,
            "tip_hash": tip.hash,
            "network": client.network.value,
        }
        resolver = self.resolver_factory(client)
        invocation.unsigned = await asyncio.to_thread(
            resolver.resolve, invocation.template, invocation.args, invocation.chain_params
        )
        invocation.signing_payload = tx.body_hash(invocation.unsigned.cbor)
        invocation.advance(InvocationState.RESOLVED)

    def _sign(self, invocation: Invocation, passwords: PasswordSource) -> None:
        payload = invocation.signing_payload
        assert payload is not None
        invocation.signatures = self._collect_signatures(invocation.request.signers, payload, passwords)
        invocation.advance(InvocationState.SIGNED)

    def _collect_signatures(
        self, signers: Iterable[str], payload: bytes, passwords: PasswordSource
    ) -> list[SignatureRecord]:
        signatures: list[SignatureRecord] = []
        for name in signers:
            with self.wallets.signer(name, passwords(name)) as handle:
                signatures.append(
                    SignatureRecord(
                        wallet=handle.wallet_name,
                        public_key=handle.public_key,
                        signature=handle.sign(payload),
                    )
                )
        logger.info("Collected %d signature(s)", len(signatures))
        return signatures

    def sign_transaction(self, cbor: bytes, signers: list[str], passwords: PasswordSource) -> SignedTx:
        """Witness an existing transaction with the named wallets, without any network call."""

        if not signers:
            raise EmptySignerList("At least one signer wallet is required")
        for name in signers:
            self.wallets.get(name)
        payload = tx.body_hash(cbor)
        signatures = self._collect_signatures(signers, payload, passwords)
        return SignedTx(
            cbor=tx.attach_witnesses(cbor, signatures),
            tx_id=payload.hex(),
            signatures=signatures,
        )

    def _run_checks(self, invocation: Invocation) -> None:
        if invocation.request.allow_unsafe:
            invocation.checks_skipped = list(CHECK_NAMES)
            logger.warning("Skipping pre-submission checks: %s", ", ".join(CHECK_NAMES))
            return
        context = CheckContext(
            unsigned=invocation.unsigned,
            signatures=invocation.signatures,
            network=invocation.client.network,
            max_fee=self.max_fee,
        )
        invocation.checks_run = run_checks(context)

    async def _submit(self, invocation: Invocation) -> bool:
        """Submit the signed transaction. Returns True when a cancellation arrived meanwhile."""

        cbor = invocation.signed_cbor
        assert cbor is not None
        task = asyncio.ensure_future(asyncio.to_thread(invocation.client.submit_tx, cbor))
        cancelled = False
        try:
            try:
                tx_id = await asyncio.shield(task)
            except asyncio.CancelledError:
                cancelled = True
                _uncancel()
                logger.warning("Cancellation requested during submission; waiting for the transaction id")
                tx_id = await task
        except ProtocolRejection as exc:
            invocation.error = exc
            invocation.reason = exc.reason
            invocation.tx_id = tx.body_hash(cbor).hex()
            invocation.advance(InvocationState.REJECTED)
            logger.warning("Transaction rejected: %s", exc.reason)
            return cancelled
        except UtxoShellError as exc:
            invocation.fail("submit", exc)
            raise
        invocation.tx_id = tx_id
        invocation.advance(InvocationState.SUBMITTED)
        return cancelled

    async def _observe(self, invocation: Invocation) -> None:
        tx_id = invocation.tx_id
        assert tx_id is not None
        try:
            for attempt in range(1, self.confirm_attempts + 1):
                try:
                    status = await asyncio.to_thread(invocation.client.query_tx_status, tx_id)
                except NetworkError as exc:
                    logger.warning("Status query %d for %s failed: %s", attempt, tx_id, exc.message)
                    status = TxStatus.UNKNOWN
                if status is TxStatus.CONFIRMED:
                    invocation.advance(InvocationState.CONFIRMED)
                    logger.info("Transaction %s confirmed", tx_id)
                    return
                if status is TxStatus.REJECTED:
                    invocation.reason = "dropped by the network after submission"
                    invocation.advance(InvocationState.REJECTED)
                    return
                if attempt < self.confirm_attempts:
                    await self._sleep(self.confirm_interval)
        except asyncio.CancelledError:
            _uncancel()
            logger.info("Stopped waiting for %s; it remains submitted", tx_id)
            return
        logger.info("Transaction %s not confirmed after %d check(s)", tx_id, self.confirm_attempts)
