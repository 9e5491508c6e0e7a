"""UTxO wallet keystore, provider clients and transaction invocation engine."""

from .config import ShellConfig, load_config
from .errors import (
    CryptoError,
    NetworkError,
    PreSubmitCheckFailed,
    ProtocolRejection,
    ResolutionError,
    UtxoShellError,
    ValidationError,
)
from .invoke import (
    Invocation,
    InvocationEngine,
    InvocationRequest,
    InvocationResult,
    InvocationState,
)
from .model import ChainTip, NetworkKind, TxStatus, UnsignedTx, Utxo
from .providers import Provider, ProviderProtocol, ProviderRegistry
from .resolver import TemplateResolver, TrpResolver
from .rpc_client import ProviderClient, TxResolutionClient, UtxoRpcClient, client_for
from .store import StoreFile
from .wallets import SigningHandle, Wallet, WalletStore

__all__ = [
    "ChainTip",
    "CryptoError",
    "Invocation",
    "InvocationEngine",
    "InvocationRequest",
    "InvocationResult",
    "InvocationState",
    "NetworkError",
    "NetworkKind",
    "PreSubmitCheckFailed",
    "ProtocolRejection",
    "Provider",
    "ProviderClient",
    "ProviderProtocol",
    "ProviderRegistry",
    "ResolutionError",
    "ShellConfig",
    "SigningHandle",
    "StoreFile",
    "TemplateResolver",
    "TrpResolver",
    "TxResolutionClient",
    "TxStatus",
    "UnsignedTx",
    "Utxo",
    "UtxoRpcClient",
    "UtxoShellError",
    "ValidationError",
    "Wallet",
    "WalletStore",
    "client_for",
    "load_config",
]
