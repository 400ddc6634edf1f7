"""Type definitions for the nutledger package following NUT-00 and NIP-60."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, NotRequired, TypedDict


# Standard currency units as per NUT-00
CurrencyUnit = Literal[
    "btc",  # Bitcoin
    "sat",  # Satoshi (1e-8 BTC)
    "msat",  # Millisatoshi (1e-11 BTC)
    "usd",  # US Dollar
    "eur",  # Euro
    "gbp",  # British Pound
    "jpy",  # Japanese Yen
    "auth",  # Authentication tokens
]


class Proof(TypedDict):
    """Extended proof structure for NIP-60 wallet use.

    Extends the basic NUT-00 Proof with mint URL and unit tracking for
    multi-mint support. The ``mint`` and ``unit`` fields never leave the
    wallet; use :func:`to_mint_proof` before sending proofs to a mint.
    """

    id: str
    amount: int
    secret: str
    C: str
    mint: str
    unit: CurrencyUnit
    witness: NotRequired[str]


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


def proof_identity(proof: Proof | dict[str, Any]) -> str:
    """Canonical dedup key for a proof."""
    return f"{proof['secret']}:{proof['C']}"


def to_mint_proof(proof: Proof) -> dict[str, Any]:
    """Strip wallet-only fields so the proof can be sent to a mint."""
    mint_proof: dict[str, Any] = {
        "id": proof["id"],
        "amount": proof["amount"],
        "secret": proof["secret"],
        "C": proof["C"],
    }
    if proof.get("witness"):
        mint_proof["witness"] = proof["witness"]
    return mint_proof


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors."""


class TransportError(WalletError):
    """Relay unreachable, or a fetch/publish did not complete in time."""


class RelayError(TransportError):
    """Raised when a single relay fails or returns an error."""


class TokenDeliveryError(TransportError):
    """The spend was recorded but the token message reached no relay.

    The token is attached so the caller can hand it over another way.
    """

    def __init__(self, token: str, message: str):
        self.token = token
        super().__init__(message)


class CryptoError(WalletError):
    """Decryption failure, malformed token string or malformed event content."""


class ConfigError(WalletError):
    """Missing or invalid wallet configuration."""


class InsufficientBalance(WalletError):
    """Eligible proofs do not cover the requested amount."""

    def __init__(self, needed: int, available: int, detail: str | None = None):
        self.needed = needed
        self.available = available
        message = f"Insufficient balance: need {needed}, have {available}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ExactCombinationNotFound(WalletError):
    """Greedy selection could not hit the amount exactly."""

    def __init__(self, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"No exact combination of proofs for {amount}: {remaining} left unmatched"
        )


class UntrustedMint(WalletError):
    """Token was issued by a mint outside the trusted list."""

    def __init__(self, mint_url: str):
        self.mint_url = mint_url
        super().__init__(f"Mint {mint_url} is not trusted by this wallet")


class NoActiveKeyset(WalletError):
    """The mint has no active keyset for the requested unit."""

    def __init__(self, mint_url: str, unit: str):
        self.mint_url = mint_url
        self.unit = unit
        super().__init__(f"No active keyset for unit {unit} on mint {mint_url}")


class MintError(WalletError):
    """Base exception for mint errors."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class SwapRejected(MintError):
    """The mint refused a swap (spent inputs, unbalanced amounts, ...)."""


class InvalidKeysetError(MintError):
    """Raised when keyset structure is invalid per NUT-01."""


# ──────────────────────────────────────────────────────────────────────────────
# Event kinds
# ──────────────────────────────────────────────────────────────────────────────


class EventKind:
    """Nostr event kinds used by the wallet."""

    # NIP-60 wallet events
    Wallet = 17375  # NIP-60 wallet config (replaceable)
    Token = 7375  # NIP-60 unspent proofs
    SpendingHistory = 7376  # NIP-60 spending history
    Quote = 7374  # NIP-60 pending mint quote

    # Standard Nostr events
    Deletion = 5  # NIP-09 event deletion
    EncryptedDirectMessage = 4  # token delivery between wallets


# ──────────────────────────────────────────────────────────────────────────────
# Ledger data
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class TokenEvent:
    """Decrypted NIP-60 token event."""

    id: str
    mint_url: str
    unit: CurrencyUnit
    proofs: list[Proof]
    supersedes: list[str] = field(default_factory=list)
    created_at: int = 0

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


Direction = Literal["in", "out"]
RefMarker = Literal["created", "destroyed", "redeemed"]


@dataclass(frozen=True)
class EventRef:
    """Reference from a history entry to a token event."""

    event_id: str
    marker: RefMarker
    kind: int = EventKind.Token
    relay: str = ""

    def to_tag(self) -> list[str]:
        return ["e", self.event_id, self.relay, self.marker]


@dataclass
class SpendingHistoryEntry:
    """Decrypted NIP-60 spending history entry."""

    direction: Direction
    amount: int
    unit: str = "sat"
    event_refs: list[EventRef] = field(default_factory=list)
    created_at: int = 0
    event_id: str | None = None

    def refs(self, marker: RefMarker) -> list[str]:
        return [ref.event_id for ref in self.event_refs if ref.marker == marker]


@dataclass
class WalletState:
    """Wallet state reconstructed from the event log."""

    proofs: list[Proof] = field(default_factory=list)
    proof_to_event_id: dict[str, str] = field(default_factory=dict)
    undecryptable_event_ids: list[str] = field(default_factory=list)
    wallet_mints: list[str] = field(default_factory=list)

    @property
    def balance(self) -> int:
        return sum(p["amount"] for p in self.proofs)

    @property
    def event_ids(self) -> set[str]:
        """Token events still holding at least one live proof."""
        return set(self.proof_to_event_id.values())

    @property
    def proofs_by_mint(self) -> dict[str, list[Proof]]:
        grouped: dict[str, list[Proof]] = {}
        for proof in self.proofs:
            grouped.setdefault(proof["mint"], []).append(proof)
        return grouped

    @property
    def proofs_by_keyset(self) -> dict[str, list[Proof]]:
        grouped: dict[str, list[Proof]] = {}
        for proof in self.proofs:
            grouped.setdefault(proof["id"], []).append(proof)
        return grouped

    @property
    def balance_by_mint(self) -> dict[str, int]:
        balances: dict[str, int] = {}
        for proof in self.proofs:
            balances[proof["mint"]] = balances.get(proof["mint"], 0) + proof["amount"]
        return balances

    @property
    def balance_by_unit(self) -> dict[str, int]:
        """Get total balance grouped by currency unit."""
        balances: dict[str, int] = {}
        for proof in self.proofs:
            unit = proof["unit"]
            balances[unit] = balances.get(unit, 0) + proof["amount"]
        return balances


# ──────────────────────────────────────────────────────────────────────────────
# Mint metadata
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class KeysetInfo:
    """Keyset metadata as returned by GET /v1/keysets."""

    id: str
    unit: CurrencyUnit
    active: bool
    input_fee_ppk: int = 0
    keys: dict[str, str] = field(default_factory=dict)  # amount -> pubkey

    @property
    def denominations(self) -> list[int]:
        return sorted(int(amount) for amount in self.keys)


@dataclass
class MintInfo:
    """Cached per-mint metadata."""

    url: str
    name: str | None = None
    description: str | None = None
    keysets: list[KeysetInfo] = field(default_factory=list)
    active: bool = True

    def keyset(self, keyset_id: str) -> KeysetInfo | None:
        return next((ks for ks in self.keysets if ks.id == keyset_id), None)

    def active_keyset(self, unit: str) -> KeysetInfo | None:
        return next(
            (ks for ks in self.keysets if ks.active and ks.unit == unit), None
        )

    @property
    def units(self) -> list[str]:
        return list(dict.fromkeys(ks.unit for ks in self.keysets))


@dataclass
class ProofBreakdown:
    """Balance of one (mint, unit) bucket."""

    mint_url: str
    unit: str
    total_balance: int = 0
    proof_count: int = 0
    denominations: dict[int, int] = field(default_factory=dict)


@dataclass
class WalletStats:
    """Headline numbers for a wallet."""

    balance: int
    proof_count: int
    token_events: int
    mints: list[str] = field(default_factory=list)
    undecryptable_events: int = 0


@dataclass
class TokenInfo:
    """What a Cashu token holds, read without contacting the mint."""

    mint_url: str
    unit: str
    amount: int
    amount_display: str
    proof_count: int
    memo: str | None = None
    trusted: bool = False


@dataclass
class IncomingToken:
    """A token delivered to the wallet in an encrypted direct message."""

    event_id: str
    sender: str
    token: str
    amount: int
    mint_url: str
    unit: str
    created_at: int = 0
