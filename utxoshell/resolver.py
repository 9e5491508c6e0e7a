"""Template resolution: turning a template plus arguments into an unsigned transaction."""

from __future__ import annotations

import logging
import typing
from typing import Any, Mapping

from .errors import ResolverError
from .model import UnsignedTx
from .rpc_client import ProviderClient, TxResolutionClient
from .template import TxTemplate, encode_args

logger = logging.getLogger(__name__)


class TemplateResolver(typing.Protocol):
    """Anything that can compile a template invocation against chain state."""

    def resolve(
        self, template: TxTemplate, args: Mapping[str, Any], chain_params: Mapping[str, Any]
    ) -> UnsignedTx:
        ...


class TrpResolver:
    """Delegates resolution to a transaction resolution server."""

    def __init__(self, client: TxResolutionClient) -> None:
        self.client = client

    def resolve(
        self, template: TxTemplate, args: Mapping[str, Any], chain_params: Mapping[str, Any]
    ) -> UnsignedTx:
        logger.debug("Resolving %s through %s", template.name, self.client.provider.name)
        unsigned = self.client.resolve(template.tir, encode_args(args), dict(chain_params))
        logger.info("Resolved %s into transaction %s", template.name, unsigned.hash or "<unhashed>")
        return unsigned


def resolver_for(client: ProviderClient) -> TemplateResolver:
    if isinstance(client, TxResolutionClient):
        return TrpResolver(client)
    raise ResolverError(
        f"Provider '{client.provider.name}' ({client.protocol.value}) cannot resolve templates; "
        "use a trp provider"
    )
