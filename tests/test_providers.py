from __future__ import annotations

import threading
from pathlib import Path

import pytest

from utxoshell.errors import (
    ConnectivityError,
    DuplicateName,
    NetworkError,
    NotFound,
    ValidationError,
)
from utxoshell.model import ChainTip, NetworkKind
from utxoshell.providers import Provider, ProviderProtocol, ProviderRegistry
from utxoshell.rpc_client import TxResolutionClient, UtxoRpcClient, client_for
from utxoshell.store import StoreFile


class StubClient:
    def __init__(self, provider: Provider, *, error: Exception | None = None) -> None:
        self.provider = provider
        self.error = error
        self.calls = 0
        self.closed = False

    def query_tip(self) -> ChainTip:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ChainTip(slot=42, hash="ab" * 32, height=7)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store.yaml"


def _registry(store_path: Path, **client_kwargs) -> ProviderRegistry:
    return ProviderRegistry(
        StoreFile(store_path),
        client_factory=lambda provider: StubClient(provider, **client_kwargs),
    )


def test_first_provider_becomes_default(store_path: Path) -> None:
    registry = _registry(store_path)
    first = registry.create("local", "trp", "testnet", "http://localhost:8164/")
    second = registry.create("remote", "utxorpc", "mainnet", "https://u5c.example", {"dmtr-api-key": "k"})

    assert first.is_default is True
    assert first.url == "http://localhost:8164"
    assert second.is_default is False
    assert second.protocol is ProviderProtocol.UTXORPC
    assert second.network is NetworkKind.MAINNET
    assert registry.resolve().name == "local"
    assert registry.resolve("REMOTE").headers == {"dmtr-api-key": "k"}


def test_explicit_default_clears_the_previous_one(store_path: Path) -> None:
    registry = _registry(store_path)
    registry.create("local", "trp", "testnet", "http://localhost:8164")
    registry.create("remote", "trp", "testnet", "http://remote:8164", is_default=True)

    assert [p.name for p in registry.list() if p.is_default] == ["remote"]

    registry.edit("local", set_default=True)
    assert [p.name for p in registry.list() if p.is_default] == ["local"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"url": "ftp://example"},
        {"url": "localhost:8164"},
        {"headers": {"x-key": 1}},
        {"protocol": "grpc"},
        {"network": "preview-ish"},
    ],
)
def test_create_validates_fields(store_path: Path, kwargs: dict) -> None:
    registry = _registry(store_path)
    values = {"protocol": "trp", "network": "testnet", "url": "http://localhost:8164", "headers": None}
    values.update(kwargs)

    with pytest.raises(ValidationError):
        registry.create("local", **values)
    assert registry.list() == []


def test_duplicate_and_missing_names(store_path: Path) -> None:
    registry = _registry(store_path)
    registry.create("local", "trp", "testnet", "http://localhost:8164")

    with pytest.raises(DuplicateName):
        registry.create("Local", "trp", "testnet", "http://localhost:8164")
    with pytest.raises(NotFound):
        registry.delete("missing")
    with pytest.raises(NotFound):
        registry.edit("missing", url="http://other")


def test_edit_updates_fields(store_path: Path) -> None:
    registry = _registry(store_path)
    registry.create("local", "trp", "testnet", "http://localhost:8164")

    updated = registry.edit("local", new_name="devnet", url="http://devnet:8164", headers={"a": "b"})

    assert updated.name == "devnet"
    assert registry.get("devnet").url == "http://devnet:8164"
    assert registry.get("devnet").headers == {"a": "b"}


def test_resolve_without_default_raises(store_path: Path) -> None:
    registry = _registry(store_path)
    registry.create("local", "trp", "testnet", "http://localhost:8164")
    registry.delete("local")

    with pytest.raises(NotFound):
        registry.resolve()


def test_connectivity_test_returns_tip(store_path: Path) -> None:
    registry = _registry(store_path)
    registry.create("local", "trp", "testnet", "http://localhost:8164")

    tip = registry.test()

    assert tip.slot == 42


def test_connectivity_failure_does_not_mutate_store(store_path: Path) -> None:
    registry = _registry(store_path, error=NetworkError("down", transient=True))
    registry.create("local", "trp", "testnet", "http://localhost:8164")
    before = store_path.read_bytes()

    with pytest.raises(ConnectivityError):
        registry.test("local")

    assert store_path.read_bytes() == before


def test_client_for_picks_variant_by_protocol() -> None:
    trp = Provider("a", ProviderProtocol.TRP, NetworkKind.TESTNET, "http://localhost:8164")
    u5c = Provider("b", ProviderProtocol.UTXORPC, NetworkKind.TESTNET, "http://localhost:50051")

    assert isinstance(client_for(trp), TxResolutionClient)
    assert isinstance(client_for(u5c), UtxoRpcClient)


@pytest.mark.parametrize("error", [None, NetworkError("down", transient=True)])
def test_connectivity_test_closes_the_client(store_path: Path, error) -> None:
    clients: list[StubClient] = []

    def factory(provider: Provider) -> StubClient:
        clients.append(StubClient(provider, error=error))
        return clients[-1]

    registry = ProviderRegistry(StoreFile(store_path), client_factory=factory)
    registry.create("local", "trp", "testnet", "http://localhost:8164")

    try:
        registry.test()
    except ConnectivityError:
        pass

    assert [client.closed for client in clients] == [True]


def test_concurrent_registries_on_one_store_keep_every_write(store_path: Path) -> None:
    def add_many(worker: int) -> None:
        registry = ProviderRegistry(StoreFile(store_path), client_factory=StubClient)
        for index in range(15):
            registry.create(f"p{worker}-{index}", "trp", "testnet", "http://localhost:8164")

    threads = [threading.Thread(target=add_many, args=(worker,)) for worker in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    providers = _registry(store_path).list()
    assert len(providers) == 60
    assert sum(p.is_default for p in providers) == 1
    assert not list(store_path.parent.glob(".*.tmp"))
