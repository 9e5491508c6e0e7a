"""Network clients for remote ledger providers.

Two protocol variants share one capability set (tip, UTxO search, submission,
transaction status):

* :class:`UtxoRpcClient` speaks UTxO RPC through the Connect protocol's unary
  JSON mapping: every method is an HTTP POST to ``/<package>.<Service>/<Method>``
  with a protobuf-JSON body, byte fields base64 encoded.
* :class:`TxResolutionClient` speaks the transaction resolution protocol over
  JSON-RPC 2.0 (``trp.*`` methods) and can additionally resolve a transaction
  template into an unsigned transaction.

Use :func:`client_for` to obtain the right variant for a stored provider.
Transient transport failures are retried according to the client's
:class:`~utxoshell.retry.RetryPolicy`; everything else surfaces immediately as
a typed error.
"""

from __future__ import annotations

import base64
import json
import logging
import time
import uuid
from typing import Any, Callable, Mapping

import requests
from requests import RequestException, Response

from .errors import (
    AuthenticationError,
    InsufficientFunds,
    MalformedResponse,
    NetworkError,
    NetworkMismatch,
    NoMatchingUtxo,
    ProtocolRejection,
    ResolverError,
)
from .model import Asset, ChainTip, NetworkKind, TxStatus, UnsignedTx, Utxo
from .providers import Provider, ProviderProtocol
from .retry import RetryPolicy, retry_call
from .tx import address_bytes, address_text

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
_TRANSIENT_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}
_AUTH_HTTP_STATUSES = {401, 403}


def _transient_status(status: int) -> bool:
    return status in _TRANSIENT_HTTP_STATUSES or status >= 500


class ProviderClient:
    """Shared transport for the provider protocol variants."""

    protocol: ProviderProtocol

    def __init__(
        self,
        provider: Provider,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retry: RetryPolicy | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self._session = session or requests.Session()
        self._sleep = sleep

    @property
    def network(self) -> NetworkKind:
        return self.provider.network

    def ensure_network(self, required: NetworkKind | str | None) -> None:
        """Raise :class:`NetworkMismatch` when ``required`` differs from the provider's network."""

        if required is None:
            return
        required = NetworkKind.parse(required)
        if required is not self.network:
            raise NetworkMismatch(
                f"Provider '{self.provider.name}' serves {self.network.value}, "
                f"but {required.value} is required",
                provider=self.provider.name,
            )

    def close(self) -> None:
        self._session.close()

    # Capabilities ---------------------------------------------------------

    def query_tip(self) -> ChainTip:
        raise NotImplementedError

    def query_utxos(self, address: str) -> list[Utxo]:
        raise NotImplementedError

    def submit_tx(self, cbor: bytes) -> str:
        raise NotImplementedError

    def query_tx_status(self, tx_id: str) -> TxStatus:
        raise NotImplementedError

    # Transport ------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        headers.update(self.provider.headers)
        return headers

    def _post(self, url: str, payload: Mapping[str, Any], *, description: str) -> Any:
        return retry_call(
            lambda: self._post_once(url, payload, description=description),
            self.retry,
            description=description,
            sleep=self._sleep,
        )

    def _post_once(self, url: str, payload: Mapping[str, Any], *, description: str) -> Any:
        logger.debug("%s -> %s", description, url)
        try:
            response = self._session.post(
                url,
                data=json.dumps(payload),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.debug("%s transport failure", description, exc_info=True)
            raise NetworkError(
                f"{description} could not reach {self.provider.url}: {exc.__class__.__name__}",
                transient=True,
            ) from exc
        except RequestException as exc:
            logger.debug("%s request failure", description, exc_info=True)
            raise NetworkError(f"{description} failed: {exc}") from exc
        return self._handle_response(response, description=description)

    def _handle_response(self, response: Response, *, description: str) -> Any:
        raise NotImplementedError

    def _raise_for_status(self, response: Response, *, description: str) -> None:
        status = response.status_code
        if status < 400:
            return
        logger.debug("%s HTTP %s body: %s", description, status, _truncate(response.text))
        if status in _AUTH_HTTP_STATUSES:
            raise AuthenticationError(
                f"Provider '{self.provider.name}' rejected the credentials (HTTP {status}); "
                "check the configured headers",
                status_code=status,
            )
        raise NetworkError(
            f"{description} returned HTTP {status}",
            status_code=status,
            transient=_transient_status(status),
        )

    @staticmethod
    def _json_body(response: Response, *, description: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse(f"{description} returned malformed JSON") from exc


def _truncate(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any, *, field: str) -> bytes:
    if value in (None, ""):
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (TypeError, ValueError) as exc:
        raise MalformedResponse(f"Field '{field}' is not valid base64") from exc


def _as_int(value: Any, *, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedResponse(f"Field '{field}' is not an integer: {value!r}") from exc


# UTxO RPC (Connect JSON) ------------------------------------------------------


_CONNECT_TRANSIENT = {"unavailable", "deadline_exceeded", "resource_exhausted", "aborted"}
_CONNECT_AUTH = {"unauthenticated", "permission_denied"}
_CONNECT_REJECTION = {"invalid_argument", "failed_precondition"}


class UtxoRpcClient(ProviderClient):
    """UTxO RPC v1alpha over Connect unary JSON."""

    protocol = ProviderProtocol.UTXORPC
    package = "utxorpc.v1alpha"
    page_size = 100

    def call(self, service: str, method: str, body: Mapping[str, Any] | None = None) -> Any:
        """Invoke ``<package>.<service>/<method>`` and return the decoded response body."""

        url = f"{self.provider.url}/{self.package}.{service}/{method}"
        return self._post(url, body or {}, description=f"{service}/{method}")

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers.setdefault("connect-protocol-version", "1")
        return headers

    def _handle_response(self, response: Response, *, description: str) -> Any:
        if response.status_code >= 400:
            try:
                error = response.json()
            except ValueError:
                error = None
            if isinstance(error, dict) and "code" in error:
                raise self._connect_error(error, response.status_code, description)
            self._raise_for_status(response, description=description)
        return self._json_body(response, description=description)

    def _connect_error(self, error: dict[str, Any], status: int, description: str) -> NetworkError:
        code = str(error.get("code", "unknown"))
        message = str(error.get("message", "")) or code
        logger.debug("%s Connect error %s: %s", description, code, message)
        if code in _CONNECT_AUTH:
            return AuthenticationError(
                f"Provider '{self.provider.name}' rejected the credentials ({code}): {message}",
                status_code=status,
                code=code,
            )
        return NetworkError(
            f"{description} failed with {code}: {message}",
            status_code=status,
            transient=code in _CONNECT_TRANSIENT or _transient_status(status),
            code=code,
        )

    def query_tip(self) -> ChainTip:
        body = self.call("sync.SyncService", "ReadTip")
        tip = body.get("tip") if isinstance(body, dict) else None
        if not isinstance(tip, dict):
            raise MalformedResponse("ReadTip response carries no tip")
        slot = tip.get("slot", tip.get("index"))
        height = tip.get("height")
        return ChainTip(
            slot=_as_int(slot, field="tip.slot"),
            hash=_unb64(tip.get("hash"), field="tip.hash").hex(),
            height=_as_int(height, field="tip.height") if height is not None else None,
        )

    def query_utxos(self, address: str) -> list[Utxo]:
        predicate = {"match": {"cardano": {"address": {"exactAddress": _b64(address_bytes(address))}}}}
        utxos: list[Utxo] = []
        token: str | None = None
        while True:
            request: dict[str, Any] = {"predicate": predicate, "maxItems": self.page_size}
            if token:
                request["startToken"] = token
            body = self.call("query.QueryService", "SearchUtxos", request)
            if not isinstance(body, dict):
                raise MalformedResponse("SearchUtxos response is not an object")
            for item in body.get("items") or []:
                utxos.append(self._parse_utxo(item))
            token = body.get("nextToken")
            if not token:
                return utxos

    def _parse_utxo(self, item: dict[str, Any]) -> Utxo:
        ref = item.get("txoRef") or {}
        output = item.get("cardano") or {}
        assets: list[Asset] = []
        for multiasset in output.get("assets") or []:
            policy_id = _unb64(multiasset.get("policyId"), field="policyId").hex()
            for asset in multiasset.get("assets") or []:
                quantity = asset.get("outputCoin", asset.get("quantity", 0))
                assets.append(
                    Asset(
                        policy_id=policy_id,
                        name=_unb64(asset.get("name"), field="asset.name").hex(),
                        quantity=_as_int(quantity, field="asset.outputCoin"),
                    )
                )
        datum = output.get("datum") or {}
        datum_hash = _unb64(datum.get("hash"), field="datum.hash").hex() or None
        return Utxo(
            tx_hash=_unb64(ref.get("hash"), field="txoRef.hash").hex(),
            index=_as_int(ref.get("index", 0), field="txoRef.index"),
            address=address_text(_unb64(output.get("address"), field="address")),
            coin=_as_int(output.get("coin", 0), field="coin"),
            assets=assets,
            datum_hash=datum_hash,
        )

    def submit_tx(self, cbor: bytes) -> str:
        try:
            body = self.call("submit.SubmitService", "SubmitTx", {"tx": {"raw": _b64(cbor)}})
        except NetworkError as exc:
            if exc.details.get("code") in _CONNECT_REJECTION:
                raise ProtocolRejection(exc.message) from exc
            raise
        if not isinstance(body, dict) or not body.get("ref"):
            raise MalformedResponse("SubmitTx response carries no transaction reference")
        tx_id = _unb64(body["ref"], field="ref").hex()
        logger.info("Submitted transaction %s via %s", tx_id, self.provider.name)
        return tx_id

    def query_tx_status(self, tx_id: str) -> TxStatus:
        try:
            body = self.call("query.QueryService", "ReadTx", {"hash": _b64(bytes.fromhex(tx_id))})
        except NetworkError as exc:
            if exc.details.get("code") == "not_found":
                return TxStatus.PENDING
            raise
        if isinstance(body, dict) and body.get("tx"):
            return TxStatus.CONFIRMED
        return TxStatus.PENDING


# Transaction resolution protocol (JSON-RPC) ----------------------------------


# JSON-RPC error codes reported by resolution servers.
_TRP_ERRORS: dict[int, type] = {
    -32001: NoMatchingUtxo,
    -32002: InsufficientFunds,
    -32003: ResolverError,
    -32602: ResolverError,
}
_TRP_STATUS = {
    "pending": TxStatus.PENDING,
    "propagated": TxStatus.PENDING,
    "acknowledged": TxStatus.PENDING,
    "confirmed": TxStatus.CONFIRMED,
    "finalized": TxStatus.CONFIRMED,
    "dropped": TxStatus.REJECTED,
    "rolledback": TxStatus.REJECTED,
    "rejected": TxStatus.REJECTED,
}


class TrpRemoteError(NetworkError):
    """JSON-RPC error object returned by a resolution server."""

    kind = "rpc"

    def __init__(
        self,
        code: int,
        message: str,
        data: Any = None,
        *,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(
            f"RPC error {code}: {message}", status_code=status_code, transient=transient, code=code
        )
        self.code = code
        self.rpc_message = message
        self.data = data


class TxResolutionClient(ProviderClient):
    """JSON-RPC 2.0 client for ``trp.*`` methods."""

    protocol = ProviderProtocol.TRP

    def call(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        """Perform a JSON-RPC request and return its ``result``."""

        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": dict(params or {}),
        }
        return self._post(self.provider.url, payload, description=method)

    def _handle_response(self, response: Response, *, description: str) -> Any:
        # Servers commonly return JSON-RPC error objects with HTTP 500.
        try:
            body = response.json()
        except ValueError:
            body = None
        status = response.status_code
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            if not isinstance(error, dict):
                self._raise_for_status(response, description=description)
                raise MalformedResponse(f"{description} returned a malformed error object")
            code = _as_int(error.get("code", -1), field="error.code")
            raise TrpRemoteError(
                code,
                str(error.get("message", "unknown")),
                error.get("data"),
                status_code=status,
                # resolution failures are answers, not outages
                transient=_transient_status(status) and code not in _TRP_ERRORS,
            )
        self._raise_for_status(response, description=description)
        if not isinstance(body, dict) or "result" not in body:
            raise MalformedResponse(f"{description} returned malformed JSON")
        return body["result"]

    def resolve(self, tir: Mapping[str, Any], args: Mapping[str, Any], env: Mapping[str, Any] | None = None) -> UnsignedTx:
        """Resolve a template against ``args`` and chain ``env`` into an unsigned transaction."""

        params = {"tir": dict(tir), "args": dict(args), "env": dict(env or {})}
        try:
            result = self.call("trp.resolve", params)
        except TrpRemoteError as exc:
            error_cls = _TRP_ERRORS.get(exc.code, ResolverError)
            raise error_cls(exc.rpc_message, code=exc.code) from exc
        if not isinstance(result, dict) or "tx" not in result:
            raise MalformedResponse("trp.resolve returned no transaction")
        try:
            cbor = bytes.fromhex(str(result["tx"]))
        except ValueError as exc:
            raise MalformedResponse("trp.resolve returned a non-hex transaction") from exc
        return UnsignedTx(cbor=cbor, hash=str(result.get("hash", "")).lower())

    def query_tip(self) -> ChainTip:
        result = self.call("trp.readTip")
        if not isinstance(result, dict):
            raise MalformedResponse("trp.readTip returned no tip")
        height = result.get("height")
        return ChainTip(
            slot=_as_int(result.get("slot"), field="slot"),
            hash=str(result.get("hash", "")),
            height=_as_int(height, field="height") if height is not None else None,
        )

    def query_utxos(self, address: str) -> list[Utxo]:
        result = self.call("trp.searchUtxos", {"address": address})
        if not isinstance(result, dict):
            raise MalformedResponse("trp.searchUtxos returned no utxos")
        utxos = []
        for item in result.get("utxos") or []:
            tx_hash, _, index = str(item.get("ref", "")).partition("#")
            utxos.append(
                Utxo(
                    tx_hash=tx_hash,
                    index=_as_int(index or 0, field="ref"),
                    address=str(item.get("address", address)),
                    coin=_as_int(item.get("coin", 0), field="coin"),
                    assets=[
                        Asset(
                            policy_id=str(asset.get("policy", "")),
                            name=str(asset.get("name", "")),
                            quantity=_as_int(asset.get("amount", 0), field="amount"),
                        )
                        for asset in item.get("assets") or []
                    ],
                    datum_hash=item.get("datumHash"),
                )
            )
        return utxos

    def submit_tx(self, cbor: bytes) -> str:
        params = {"tx": {"encoding": "hex", "content": cbor.hex()}, "witnesses": []}
        try:
            result = self.call("trp.submit", params)
        except TrpRemoteError as exc:
            raise ProtocolRejection(exc.rpc_message, code=exc.code) from exc
        if not isinstance(result, dict) or not result.get("hash"):
            raise MalformedResponse("trp.submit returned no transaction hash")
        tx_id = str(result["hash"]).lower()
        logger.info("Submitted transaction %s via %s", tx_id, self.provider.name)
        return tx_id

    def query_tx_status(self, tx_id: str) -> TxStatus:
        result = self.call("trp.checkStatus", {"hashes": [tx_id]})
        if not isinstance(result, dict):
            raise MalformedResponse("trp.checkStatus returned no statuses")
        statuses = result.get("statuses") or {}
        if not isinstance(statuses, dict):
            raise MalformedResponse("trp.checkStatus statuses must be an object keyed by hash")
        entry = statuses.get(tx_id) or {}
        if not isinstance(entry, dict):
            raise MalformedResponse(f"trp.checkStatus entry for {tx_id} is not an object")
        stage = str(entry.get("stage", "unknown")).replace("_", "").lower()
        return _TRP_STATUS.get(stage, TxStatus.UNKNOWN)


_CLIENT_CLASSES: dict[ProviderProtocol, type[ProviderClient]] = {
    ProviderProtocol.UTXORPC: UtxoRpcClient,
    ProviderProtocol.TRP: TxResolutionClient,
}


def client_for(provider: Provider, **kwargs: Any) -> ProviderClient:
    """Build the client variant matching ``provider.protocol``."""

    return _CLIENT_CLASSES[provider.protocol](provider, **kwargs)
