"""nutledger: a NIP-60 Cashu wallet core that keeps its ledger on Nostr."""

from .aggregate import BalanceSummary, aggregate
from .config import WalletConfig, load_config
from .token import Token, parse_token, serialize_token
from .types import (
    ConfigError,
    CryptoError,
    ExactCombinationNotFound,
    IncomingToken,
    InsufficientBalance,
    MintError,
    NoActiveKeyset,
    Proof,
    SwapRejected,
    TokenDeliveryError,
    TokenInfo,
    TransportError,
    UntrustedMint,
    WalletError,
    WalletState,
    WalletStats,
)
from .wallet import Wallet

__all__ = [
    "Wallet",
    "WalletConfig",
    "WalletState",
    "WalletStats",
    "TokenInfo",
    "IncomingToken",
    "load_config",
    "Proof",
    "Token",
    "parse_token",
    "serialize_token",
    "BalanceSummary",
    "aggregate",
    "WalletError",
    "TransportError",
    "CryptoError",
    "ConfigError",
    "InsufficientBalance",
    "ExactCombinationNotFound",
    "UntrustedMint",
    "NoActiveKeyset",
    "MintError",
    "SwapRejected",
    "TokenDeliveryError",
]
