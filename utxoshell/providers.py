"""Named remote provider configurations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

from .errors import ConnectivityError, NetworkError, NotFound, ValidationError
from .model import ChainTip, NetworkKind
from .store import NamedCollection, StoreFile, validate_name

logger = logging.getLogger(__name__)


class ProviderProtocol(str, Enum):
    UTXORPC = "utxorpc"
    TRP = "trp"

    @classmethod
    def parse(cls, value: "str | ProviderProtocol") -> "ProviderProtocol":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "").replace("_", "")
        aliases = {"utxorpc": cls.UTXORPC, "u5c": cls.UTXORPC, "trp": cls.TRP, "txresolution": cls.TRP}
        try:
            return aliases[normalized]
        except KeyError:
            raise ValidationError(f"Unknown provider protocol '{value}'; expected utxorpc or trp") from None


@dataclass
class Provider:
    name: str
    protocol: ProviderProtocol
    network: NetworkKind
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "protocol": self.protocol.value,
            "network": self.network.value,
            "url": self.url,
            "headers": dict(self.headers),
            "is_default": self.is_default,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Provider":
        try:
            return cls(
                name=str(data["name"]),
                protocol=ProviderProtocol.parse(data["protocol"]),
                network=NetworkKind.parse(data["network"]),
                url=str(data["url"]),
                headers=_validate_headers(data.get("headers")),
                is_default=bool(data.get("is_default", False)),
            )
        except KeyError as exc:
            raise ValidationError(f"Stored provider entry is missing '{exc.args[0]}'") from exc


def _validate_url(url: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Provider URL must be a non-empty string")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(f"Provider URL must be an http(s) URL: {url}")
    return url.rstrip("/")


def _validate_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    if headers is None:
        return {}
    if not isinstance(headers, Mapping):
        raise ValidationError("Provider headers must be a mapping of strings")
    cleaned: dict[str, str] = {}
    for key, value in headers.items():
        if not isinstance(key, str) or not key.strip() or not isinstance(value, str):
            raise ValidationError("Provider headers must map non-empty strings to strings")
        cleaned[key.strip()] = value
    return cleaned


class ProviderRegistry(NamedCollection):
    """CRUD over the ``providers`` section of a :class:`StoreFile`."""

    section = "providers"
    label = "provider"

    def __init__(
        self,
        store: StoreFile,
        *,
        case_sensitive: bool = False,
        client_factory: Callable[[Provider], Any] | None = None,
    ) -> None:
        super().__init__(store, case_sensitive=case_sensitive)
        if client_factory is None:
            from .rpc_client import client_for

            client_factory = client_for
        self.client_factory = client_factory

    def create(
        self,
        name: str,
        protocol: ProviderProtocol | str,
        network: NetworkKind | str,
        url: str,
        headers: Mapping[str, str] | None = None,
        is_default: bool | None = None,
    ) -> Provider:
        provider = Provider(
            name=validate_name(name, label="provider name"),
            protocol=ProviderProtocol.parse(protocol),
            network=NetworkKind.parse(network),
            url=_validate_url(url),
            headers=_validate_headers(headers),
        )
        with self.store.transaction() as document:
            entries = document[self.section]
            self._ensure_unique(entries, provider.name)
            provider.is_default = not entries if is_default is None else bool(is_default)
            entries.append(provider.to_dict())
            if provider.is_default:
                self._set_default(entries, len(entries) - 1)
        logger.info("Created provider %s (%s, %s)", provider.name, provider.protocol.value, provider.network.value)
        return provider

    def edit(
        self,
        name: str,
        *,
        new_name: str | None = None,
        protocol: ProviderProtocol | str | None = None,
        network: NetworkKind | str | None = None,
        url: str | None = None,
        headers: Mapping[str, str] | None = None,
        set_default: bool | None = None,
    ) -> Provider:
        with self.store.transaction() as document:
            entries = document[self.section]
            index = self._require(entries, name)
            provider = Provider.from_dict(entries[index])
            if new_name is not None:
                new_name = validate_name(new_name, label="provider name")
                self._ensure_unique(entries, new_name, skip=index)
                provider.name = new_name
            if protocol is not None:
                provider.protocol = ProviderProtocol.parse(protocol)
            if network is not None:
                provider.network = NetworkKind.parse(network)
            if url is not None:
                provider.url = _validate_url(url)
            if headers is not None:
                provider.headers = _validate_headers(headers)
            if set_default is True:
                self._set_default(entries, index)
                provider.is_default = True
            elif set_default is False:
                provider.is_default = False
            entries[index] = provider.to_dict()
        logger.info("Updated provider %s", provider.name)
        return provider

    def delete(self, name: str) -> None:
        with self.store.transaction() as document:
            entries = document[self.section]
            removed = entries.pop(self._require(entries, name))
        logger.info("Deleted provider %s", removed.get("name"))

    def get(self, name: str) -> Provider:
        entries = self._entries()
        return Provider.from_dict(entries[self._require(entries, name)])

    def default(self) -> Provider | None:
        for entry in self._entries():
            if entry.get("is_default"):
                return Provider.from_dict(entry)
        return None

    def resolve(self, name: str | None = None) -> Provider:
        """Return the named provider, or the default one when ``name`` is omitted."""

        if name:
            return self.get(name)
        provider = self.default()
        if provider is None:
            raise NotFound("No provider name given and no default provider is configured")
        return provider

    def list(self) -> list[Provider]:
        return [Provider.from_dict(entry) for entry in self._entries()]

    def test(self, name: str | None = None) -> ChainTip:
        """Fetch the chain tip through the provider without touching the store."""

        provider = self.resolve(name)
        client = self.client_factory(provider)
        try:
            tip = client.query_tip()
        except NetworkError as exc:
            logger.debug("Provider %s failed connectivity test", provider.name, exc_info=True)
            raise ConnectivityError(
                f"Provider '{provider.name}' is unreachable: {exc.message}",
                status_code=exc.status_code,
                provider=provider.name,
            ) from exc
        finally:
            client.close()
        logger.info("Provider %s is at slot %s", provider.name, tip.slot)
        return tip
