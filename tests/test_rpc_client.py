from __future__ import annotations

import base64
import json
from typing import Any

import pytest
import requests

from utxoshell.errors import (
    AuthenticationError,
    InsufficientFunds,
    MalformedResponse,
    NetworkError,
    NetworkMismatch,
    NoMatchingUtxo,
    ProtocolRejection,
)
from utxoshell.keys import address_for
from utxoshell.model import NetworkKind, TxStatus
from utxoshell.providers import Provider, ProviderProtocol
from utxoshell.retry import RetryPolicy, backoff_delay
from utxoshell.rpc_client import TxResolutionClient, UtxoRpcClient
from utxoshell.tx import address_bytes


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.requests.append({"url": url, "body": json.loads(data), "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        pass


def _provider(protocol: ProviderProtocol, **kwargs) -> Provider:
    return Provider(
        name="test",
        protocol=protocol,
        network=kwargs.pop("network", NetworkKind.TESTNET),
        url="http://provider.local",
        headers=kwargs.pop("headers", {"dmtr-api-key": "secret"}),
    )


def _trp(*responses, retry: RetryPolicy | None = None, sleeps: list | None = None) -> tuple[TxResolutionClient, FakeSession]:
    session = FakeSession(*responses)
    client = TxResolutionClient(
        _provider(ProviderProtocol.TRP),
        session=session,  # type: ignore[arg-type]
        retry=retry or RetryPolicy(max_retries=2, base=0.01, max_delay=0.02),
        sleep=(sleeps.append if sleeps is not None else lambda _delay: None),
    )
    return client, session


def _u5c(*responses) -> tuple[UtxoRpcClient, FakeSession]:
    session = FakeSession(*responses)
    client = UtxoRpcClient(
        _provider(ProviderProtocol.UTXORPC),
        session=session,  # type: ignore[arg-type]
        retry=RetryPolicy(max_retries=1, base=0.01, max_delay=0.01),
        sleep=lambda _delay: None,
    )
    return client, session


def _rpc_result(result: Any) -> FakeResponse:
    return FakeResponse(200, {"jsonrpc": "2.0", "id": "1", "result": result})


def _rpc_error(code: int, message: str, status: int = 200) -> FakeResponse:
    return FakeResponse(status, {"jsonrpc": "2.0", "id": "1", "error": {"code": code, "message": message}})


def test_backoff_delay_is_capped() -> None:
    for attempt in range(1, 10):
        delay = backoff_delay(attempt, base=0.5, max_delay=2.0)
        assert 0.0 <= delay <= min(2.0, 0.5 * 2 ** (attempt - 1))


def test_trp_sends_headers_and_json_rpc_envelope() -> None:
    client, session = _trp(_rpc_result({"slot": 100, "hash": "ff" * 32, "height": 9}))

    tip = client.query_tip()

    assert tip.slot == 100 and tip.height == 9
    request = session.requests[0]
    assert request["url"] == "http://provider.local"
    assert request["headers"]["dmtr-api-key"] == "secret"
    assert request["body"]["jsonrpc"] == "2.0"
    assert request["body"]["method"] == "trp.readTip"


def test_transient_failures_are_retried_with_backoff() -> None:
    sleeps: list[float] = []
    client, session = _trp(
        requests.ConnectionError("refused"),
        FakeResponse(503, None, text="busy"),
        _rpc_result({"slot": 1, "hash": "00"}),
        sleeps=sleeps,
    )

    assert client.query_tip().slot == 1
    assert len(session.requests) == 3
    assert len(sleeps) == 2


def test_retry_budget_exhaustion_raises_network_error() -> None:
    client, session = _trp(
        requests.Timeout("slow"), requests.Timeout("slow"), requests.Timeout("slow")
    )

    with pytest.raises(NetworkError) as excinfo:
        client.query_tip()

    assert "after 3 attempt(s)" in str(excinfo.value)
    assert len(session.requests) == 3


def test_authentication_errors_are_not_retried() -> None:
    client, session = _trp(FakeResponse(401, None, text="unauthorized"), _rpc_result({}))

    with pytest.raises(AuthenticationError):
        client.query_tip()
    assert len(session.requests) == 1


def test_malformed_json_is_reported() -> None:
    client, _ = _trp(FakeResponse(200, None, text="<html>"))

    with pytest.raises(MalformedResponse):
        client.query_tip()


def test_resolve_returns_unsigned_tx() -> None:
    client, session = _trp(_rpc_result({"tx": "84a0a0f5f6", "hash": "AB" * 32}))

    unsigned = client.resolve({"version": "v1beta0", "encoding": "hex", "content": "00"}, {"q": 1}, {"tip_slot": 5})

    assert unsigned.cbor == bytes.fromhex("84a0a0f5f6")
    assert unsigned.hash == "ab" * 32
    params = session.requests[0]["body"]["params"]
    assert params["args"] == {"q": 1}
    assert params["env"] == {"tip_slot": 5}


@pytest.mark.parametrize(
    "code, error_cls",
    [(-32001, NoMatchingUtxo), (-32002, InsufficientFunds)],
)
def test_resolve_maps_resolution_errors(code: int, error_cls: type) -> None:
    client, session = _trp(_rpc_error(code, "cannot resolve", status=500))

    with pytest.raises(error_cls):
        client.resolve({"version": "v1", "encoding": "hex", "content": "00"}, {}, {})
    assert len(session.requests) == 1


def test_submit_rejection_is_protocol_rejection() -> None:
    client, _ = _trp(_rpc_error(-32000, "BadInputsUTxO"))

    with pytest.raises(ProtocolRejection) as excinfo:
        client.submit_tx(b"\x84")

    assert excinfo.value.reason == "BadInputsUTxO"


def test_trp_status_mapping() -> None:
    tx_id = "cd" * 32
    client, _ = _trp(
        _rpc_result({"statuses": {tx_id: {"stage": "finalized"}}}),
        _rpc_result({"statuses": {tx_id: {"stage": "dropped"}}}),
        _rpc_result({"statuses": {}}),
    )

    assert client.query_tx_status(tx_id) is TxStatus.CONFIRMED
    assert client.query_tx_status(tx_id) is TxStatus.REJECTED
    assert client.query_tx_status(tx_id) is TxStatus.UNKNOWN


def test_ensure_network_rejects_other_kind() -> None:
    client, _ = _trp()

    client.ensure_network(None)
    client.ensure_network("testnet")
    with pytest.raises(NetworkMismatch):
        client.ensure_network(NetworkKind.MAINNET)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_utxorpc_read_tip_uses_connect_route() -> None:
    client, session = _u5c(FakeResponse(200, {"tip": {"slot": "1234", "hash": _b64(b"\xaa" * 32), "height": "10"}}))

    tip = client.query_tip()

    assert tip.slot == 1234
    assert tip.hash == "aa" * 32
    request = session.requests[0]
    assert request["url"] == "http://provider.local/utxorpc.v1alpha.sync.SyncService/ReadTip"
    assert request["headers"]["connect-protocol-version"] == "1"


def test_utxorpc_search_utxos_follows_pages() -> None:
    address = address_for(b"\x01" * 32, "testnet")
    raw_address = _b64(address_bytes(address))
    item = {
        "txoRef": {"hash": _b64(b"\x11" * 32), "index": 1},
        "cardano": {
            "address": raw_address,
            "coin": "5000000",
            "assets": [{"policyId": _b64(b"\x22" * 28), "assets": [{"name": _b64(b"tok"), "outputCoin": "3"}]}],
        },
    }
    client, session = _u5c(
        FakeResponse(200, {"items": [item], "nextToken": "page2"}),
        FakeResponse(200, {"items": [item]}),
    )

    utxos = client.query_utxos(address)

    assert len(utxos) == 2
    assert utxos[0].address == address
    assert utxos[0].coin == 5_000_000
    assert utxos[0].ref == f"{'11' * 32}#1"
    assert utxos[0].assets[0].quantity == 3
    assert session.requests[1]["body"]["startToken"] == "page2"
    assert session.requests[0]["body"]["predicate"]["match"]["cardano"]["address"]["exactAddress"] == raw_address


def test_utxorpc_connect_errors() -> None:
    client, session = _u5c(
        FakeResponse(503, {"code": "unavailable", "message": "try later"}),
        FakeResponse(401, {"code": "unauthenticated", "message": "bad key"}),
    )

    with pytest.raises(AuthenticationError):
        client.query_tip()
    assert len(session.requests) == 2


def test_utxorpc_submit_and_rejection() -> None:
    client, _ = _u5c(
        FakeResponse(200, {"ref": _b64(b"\x33" * 32)}),
        FakeResponse(400, {"code": "invalid_argument", "message": "ValueNotConserved"}),
    )

    assert client.submit_tx(b"\x84") == "33" * 32
    with pytest.raises(ProtocolRejection) as excinfo:
        client.submit_tx(b"\x84")
    assert "ValueNotConserved" in excinfo.value.reason


def test_utxorpc_tx_status() -> None:
    client, _ = _u5c(
        FakeResponse(404, {"code": "not_found", "message": "unknown tx"}),
        FakeResponse(200, {"tx": {"cardano": {}}}),
    )

    assert client.query_tx_status("44" * 32) is TxStatus.PENDING
    assert client.query_tx_status("44" * 32) is TxStatus.CONFIRMED


def test_trp_unavailable_with_error_body_is_retried() -> None:
    sleeps: list[float] = []
    client, session = _trp(
        FakeResponse(503, {"error": "service unavailable"}),
        _rpc_error(-32000, "overloaded", status=503),
        _rpc_result({"slot": 5, "hash": "00"}),
        sleeps=sleeps,
    )

    assert client.query_tip().slot == 5
    assert len(session.requests) == 3
    assert len(sleeps) == 2


def test_trp_submit_retries_through_server_outage() -> None:
    client, session = _trp(
        _rpc_error(-32000, "upstream node down", status=502),
        _rpc_result({"hash": "EF" * 32}),
    )

    assert client.submit_tx(b"\x84") == "ef" * 32
    assert len(session.requests) == 2


def test_trp_string_error_on_success_status_is_malformed() -> None:
    client, _ = _trp(FakeResponse(200, {"error": "oops"}))

    with pytest.raises(MalformedResponse):
        client.query_tip()


def test_trp_status_rejects_non_object_statuses() -> None:
    client, _ = _trp(_rpc_result({"statuses": ["cd" * 32]}), _rpc_result(["unexpected"]))

    with pytest.raises(MalformedResponse):
        client.query_tx_status("cd" * 32)
    with pytest.raises(MalformedResponse):
        client.query_tx_status("cd" * 32)


def test_utxorpc_server_error_with_json_body_is_retried() -> None:
    client, session = _u5c(
        FakeResponse(503, {"code": 503, "message": "maintenance"}),
        FakeResponse(200, {"tip": {"slot": "9", "hash": _b64(b"\x01" * 32)}}),
    )

    assert client.query_tip().slot == 9
    assert len(session.requests) == 2
