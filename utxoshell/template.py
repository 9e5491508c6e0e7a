"""Transaction template manifests and runtime argument validation.

A manifest is a YAML (or JSON) document describing a protocol::

    protocol: transfer
    parties: [sender, receiver]
    transactions:
      transfer:
        params:
          quantity: Int
        tir:
          version: v1beta0
          encoding: hex
          content: "..."

Every party becomes an ``Address`` parameter of every transaction. The ``tir``
block is the compiled template and is handed to the resolver untouched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from .errors import (
    MissingArgument,
    NotFound,
    TemplateParseError,
    TypeMismatch,
    UnknownArgument,
    ValidationError,
)
from .tx import address_bytes

logger = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class ParamType(str, Enum):
    INT = "Int"
    BOOL = "Bool"
    BYTES = "Bytes"
    ADDRESS = "Address"
    UTXO_REF = "UtxoRef"

    @classmethod
    def parse(cls, value: Any, *, where: str) -> "ParamType":
        if isinstance(value, cls):
            return value
        lookup = {member.value.lower(): member for member in cls}
        try:
            return lookup[str(value).strip().lower()]
        except KeyError:
            allowed = ", ".join(member.value for member in cls)
            raise TemplateParseError(f"{where}: unsupported type '{value}' (expected one of {allowed})") from None


@dataclass
class TxTemplate:
    name: str
    params: dict[str, ParamType]
    tir: dict[str, Any]


@dataclass
class Protocol:
    name: str
    parties: list[str]
    transactions: dict[str, TxTemplate]
    path: Path | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def select(self, name: str | None = None) -> TxTemplate:
        """Return the transaction called ``name``; optional when there is only one."""

        if name is None:
            if len(self.transactions) == 1:
                return next(iter(self.transactions.values()))
            choices = ", ".join(sorted(self.transactions))
            raise ValidationError(
                f"Protocol {self.name} defines several transactions; choose one of: {choices}"
            )
        try:
            return self.transactions[name]
        except KeyError:
            raise NotFound(f"Protocol {self.name} has no transaction named '{name}'") from None


def _require_str(data: Mapping[str, Any], key: str, message: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise TemplateParseError(message)
    return value.strip()


def _parse_params(raw: Any, *, where: str) -> dict[str, ParamType]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TemplateParseError(f"{where}: params must be a mapping of name to type")
    params: dict[str, ParamType] = {}
    for name, type_name in raw.items():
        if not isinstance(name, str) or not name:
            raise TemplateParseError(f"{where}: parameter names must be strings")
        params[name] = ParamType.parse(type_name, where=f"{where}.{name}")
    return params


def _parse_tir(raw: Any, *, where: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise TemplateParseError(f"{where}: tir must be a mapping with version, encoding and content")
    tir = {
        "version": _require_str(raw, "version", f"{where}: tir.version is required"),
        "encoding": str(raw.get("encoding", "hex")),
        "content": _require_str(raw, "content", f"{where}: tir.content is required"),
    }
    if tir["encoding"] == "hex" and not re.fullmatch(r"[0-9a-fA-F]*", tir["content"]):
        raise TemplateParseError(f"{where}: tir.content is not hex encoded")
    return tir


def parse_template(data: Any, *, path: Path | None = None) -> Protocol:
    if not isinstance(data, dict):
        raise TemplateParseError("Template must contain a mapping at the top level")

    name = _require_str(data, "protocol", "Template must name its protocol")
    parties = data.get("parties") or []
    if not isinstance(parties, list) or not all(isinstance(p, str) and p for p in parties):
        raise TemplateParseError(f"Protocol {name}: parties must be a list of names")

    raw_transactions = data.get("transactions")
    if not isinstance(raw_transactions, dict) or not raw_transactions:
        raise TemplateParseError(f"Protocol {name} must define at least one transaction")

    transactions: dict[str, TxTemplate] = {}
    for tx_name, payload in raw_transactions.items():
        where = f"{name}.{tx_name}"
        if not isinstance(payload, dict):
            raise TemplateParseError(f"{where} must be a mapping")
        params = {party: ParamType.ADDRESS for party in parties}
        for param, kind in _parse_params(payload.get("params"), where=where).items():
            if param in params and params[param] is not kind:
                raise TemplateParseError(f"{where}: parameter '{param}' clashes with a party")
            params[param] = kind
        transactions[tx_name] = TxTemplate(
            name=tx_name, params=params, tir=_parse_tir(payload.get("tir"), where=where)
        )

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise TemplateParseError(f"Protocol {name}: metadata must be a mapping")
    return Protocol(
        name=name, parties=list(parties), transactions=transactions, path=path, metadata=dict(metadata)
    )


def load_template(path: str | Path) -> Protocol:
    """Load and validate a template manifest from ``path``."""

    path = Path(path)
    if not path.exists():
        raise TemplateParseError(f"Template file does not exist: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML handles details
        raise TemplateParseError(f"Failed to parse template {path}: {exc}") from exc
    protocol = parse_template(data, path=path)
    logger.debug("Loaded protocol %s with %d transaction(s)", protocol.name, len(protocol.transactions))
    return protocol


# Runtime arguments ------------------------------------------------------------


AddressLookup = Callable[[str], "str | None"]


def _mismatch(name: str, kind: ParamType, value: Any) -> TypeMismatch:
    return TypeMismatch(
        f"Argument '{name}' expects {kind.value}, got {type(value).__name__}",
        argument=name,
        expected=kind.value,
    )


def _coerce(name: str, kind: ParamType, value: Any, address_lookup: AddressLookup | None) -> Any:
    if kind is ParamType.INT:
        if isinstance(value, bool):
            raise _mismatch(name, kind, value)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
            return int(value.strip())
        raise _mismatch(name, kind, value)

    if kind is ParamType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise _mismatch(name, kind, value)

    if kind is ParamType.BYTES:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            text = value[2:] if value.startswith("0x") else value
            try:
                return bytes.fromhex(text)
            except ValueError:
                pass
        raise _mismatch(name, kind, value)

    if kind is ParamType.ADDRESS:
        if not isinstance(value, str) or not value.strip():
            raise _mismatch(name, kind, value)
        resolved = address_lookup(value.strip()) if address_lookup else None
        if resolved:
            return resolved
        try:
            address_bytes(value.strip())
        except ValidationError:
            raise TypeMismatch(
                f"Argument '{name}' is neither a wallet name nor a valid address",
                argument=name,
                expected=kind.value,
            ) from None
        return value.strip()

    # UtxoRef
    if isinstance(value, str):
        tx_hash, sep, index = value.strip().partition("#")
        if sep and _TX_HASH_RE.match(tx_hash) and index.isdigit():
            return f"{tx_hash.lower()}#{int(index)}"
    raise TypeMismatch(
        f"Argument '{name}' expects a UtxoRef formatted as <tx hash>#<index>",
        argument=name,
        expected=kind.value,
    )


def validate_args(
    template: TxTemplate,
    args: Mapping[str, Any],
    *,
    address_lookup: AddressLookup | None = None,
) -> dict[str, Any]:
    """Check ``args`` against the template's parameters and return coerced values.

    The argument set must match the declared parameters exactly: missing names
    raise :class:`MissingArgument`, extra names :class:`UnknownArgument`.
    ``address_lookup`` maps a wallet name to its address for ``Address`` params.
    """

    if not isinstance(args, Mapping):
        raise ValidationError("Runtime arguments must be a JSON object")
    missing = [name for name in template.params if name not in args]
    if missing:
        raise MissingArgument(
            f"Missing argument(s) for {template.name}: {', '.join(missing)}",
            arguments=",".join(missing),
        )
    unknown = sorted(name for name in args if name not in template.params)
    if unknown:
        raise UnknownArgument(
            f"Unknown argument(s) for {template.name}: {', '.join(unknown)}",
            arguments=",".join(unknown),
        )
    return {
        name: _coerce(name, kind, args[name], address_lookup)
        for name, kind in template.params.items()
    }


def encode_args(values: Mapping[str, Any]) -> dict[str, Any]:
    """JSON form of validated arguments: bytes as hex, everything else unchanged."""

    return {
        name: value.hex() if isinstance(value, bytes) else value
        for name, value in values.items()
    }
