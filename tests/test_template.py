from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from utxoshell.errors import (
    MissingArgument,
    NotFound,
    TemplateParseError,
    TypeMismatch,
    UnknownArgument,
    ValidationError,
)
from utxoshell.keys import address_for
from utxoshell.template import ParamType, encode_args, load_template, parse_template, validate_args

TEMPLATE_YAML = """
protocol: transfer
parties: [sender, receiver]
transactions:
  transfer:
    params:
      quantity: Int
    tir:
      version: v1beta0
      encoding: hex
      content: "deadbeef"
"""

MULTI_YAML = """
protocol: market
transactions:
  list:
    params:
      price: Int
      listing: UtxoRef
    tir: {version: v1beta0, content: "00"}
  memo:
    params:
      note: Bytes
      urgent: bool
    tir: {version: v1beta0, content: "01"}
"""


@pytest.fixture
def transfer(tmp_path: Path):
    path = tmp_path / "transfer.yaml"
    path.write_text(TEMPLATE_YAML)
    return load_template(path).select()


def test_parties_become_address_params(transfer) -> None:
    assert transfer.params == {
        "sender": ParamType.ADDRESS,
        "receiver": ParamType.ADDRESS,
        "quantity": ParamType.INT,
    }
    assert transfer.tir["content"] == "deadbeef"


def test_json_manifest_is_accepted(tmp_path: Path) -> None:
    path = tmp_path / "transfer.json"
    path.write_text(
        '{"protocol": "p", "transactions": {"t": {"params": {"n": "Int"},'
        ' "tir": {"version": "v1", "encoding": "hex", "content": "00"}}}}'
    )

    assert load_template(path).select().params == {"n": ParamType.INT}


def test_selecting_among_several_transactions() -> None:
    protocol = parse_template(yaml.safe_load(MULTI_YAML))

    with pytest.raises(ValidationError):
        protocol.select()
    with pytest.raises(NotFound):
        protocol.select("burn")
    assert protocol.select("memo").params["urgent"] is ParamType.BOOL


@pytest.mark.parametrize(
    "document",
    [
        "just a string",
        "protocol: p\n",
        "protocol: p\ntransactions: {t: {params: {x: Float}, tir: {version: v1, content: '00'}}}\n",
        "protocol: p\ntransactions: {t: {params: {}}}\n",
        "protocol: p\ntransactions: {t: {tir: {version: v1, content: 'zz'}}}\n",
        "protocol: p\nparties: [a]\ntransactions: {t: {params: {a: Int}, tir: {version: v1, content: '00'}}}\n",
    ],
)
def test_malformed_templates_raise_parse_error(tmp_path: Path, document: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(document)

    with pytest.raises(TemplateParseError):
        load_template(path)


def test_missing_template_file(tmp_path: Path) -> None:
    with pytest.raises(TemplateParseError):
        load_template(tmp_path / "nope.yaml")


def test_validate_args_resolves_wallet_names(transfer) -> None:
    alice = address_for(b"\x01" * 32, "testnet")
    bob = address_for(b"\x02" * 32, "testnet")
    lookup = {"alice": alice}.get

    values = validate_args(
        transfer, {"sender": "alice", "receiver": bob, "quantity": "1500000"}, address_lookup=lookup
    )

    assert values == {"sender": alice, "receiver": bob, "quantity": 1_500_000}


def test_missing_argument(transfer) -> None:
    with pytest.raises(MissingArgument) as excinfo:
        validate_args(transfer, {"sender": address_for(b"\x01" * 32, "testnet"), "quantity": 1})
    assert "receiver" in str(excinfo.value)


def test_unknown_argument(transfer) -> None:
    address = address_for(b"\x01" * 32, "testnet")
    with pytest.raises(UnknownArgument):
        validate_args(transfer, {"sender": address, "receiver": address, "quantity": 1, "memo": "x"})


@pytest.mark.parametrize(
    "args",
    [
        {"quantity": True},
        {"quantity": 1.5},
        {"receiver": "not-a-wallet-or-address"},
        {"receiver": 7},
    ],
)
def test_type_mismatch(transfer, args: dict) -> None:
    address = address_for(b"\x01" * 32, "testnet")
    values = {"sender": address, "receiver": address, "quantity": 1}
    values.update(args)

    with pytest.raises(TypeMismatch):
        validate_args(transfer, values)


def test_bytes_bool_and_utxo_ref_coercion() -> None:
    protocol = parse_template(yaml.safe_load(MULTI_YAML))

    memo = validate_args(protocol.select("memo"), {"note": "0xCAFE", "urgent": "true"})
    listing = validate_args(protocol.select("list"), {"price": 10, "listing": "AB" * 32 + "#2"})

    assert memo == {"note": b"\xca\xfe", "urgent": True}
    assert listing["listing"] == "ab" * 32 + "#2"
    assert encode_args(memo) == {"note": "cafe", "urgent": True}

    with pytest.raises(TypeMismatch):
        validate_args(protocol.select("list"), {"price": 10, "listing": "abc#0"})
    with pytest.raises(TypeMismatch):
        validate_args(protocol.select("memo"), {"note": "xyz", "urgent": False})
