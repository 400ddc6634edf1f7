"""Ledger reconstruction from the wallet's NIP-60 event log.

Relays hand back an unordered, possibly duplicated and partially deleted set
of token events. The state is rebuilt on every read:

1. every id referenced by a kind 5 deletion is invalid;
2. token events are walked newest first (ties broken by id);
3. an event's ``del`` list invalidates the events it supersedes;
4. proofs are deduplicated by ``secret:C``, first (newest) holder wins.

Decryption is async, so events are decrypted up front and the walk itself
is the pure :func:`build_wallet_state`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping

from loguru import logger

from .crypto import NostrSigner
from .events import (
    decode_history_content,
    decode_token_content,
    decode_wallet_content,
)
from .relay import NostrEvent, NostrFilter, RelayClient
from .types import (
    CryptoError,
    EventKind,
    Proof,
    SpendingHistoryEntry,
    TokenEvent,
    WalletState,
    proof_identity,
)


# ──────────────────────────────────────────────────────────────────────────────
# Pure reconstruction
# ──────────────────────────────────────────────────────────────────────────────


def collect_deleted_ids(events: Iterable[NostrEvent]) -> set[str]:
    """Ids referenced by ``e`` tags of NIP-09 deletion events."""
    deleted: set[str] = set()
    for event in events:
        if event["kind"] != EventKind.Deletion:
            continue
        for tag in event["tags"]:
            if len(tag) >= 2 and tag[0] == "e":
                deleted.add(tag[1])
    return deleted


def build_wallet_state(
    token_events: Iterable[TokenEvent],
    deleted_ids: Iterable[str] = (),
    undecryptable: Mapping[str, int] | None = None,
) -> WalletState:
    """Fold decoded token events into the live proof set.

    Args:
        token_events: Decoded token events, in any order, duplicates allowed
        deleted_ids: Event ids destroyed by deletion events
        undecryptable: ``event id -> created_at`` for token events whose
            content could not be read; reported only if still live

    Returns:
        WalletState whose proofs each belong to an event that is neither
        deleted nor superseded, with no identity repeated
    """
    slots: dict[str, tuple[int, TokenEvent | None]] = {}
    for event_id, created_at in (undecryptable or {}).items():
        slots[event_id] = (created_at, None)
    for token_event in token_events:
        slots[token_event.id] = (token_event.created_at, token_event)

    ordered = sorted(slots.items(), key=lambda item: (item[1][0], item[0]), reverse=True)

    invalid: set[str] = set(deleted_ids)
    seen: set[str] = set()
    state = WalletState()

    for event_id, (_, token_event) in ordered:
        if event_id in invalid:
            continue
        if token_event is None:
            state.undecryptable_event_ids.append(event_id)
            continue

        invalid.update(token_event.supersedes)
        # A newer event may have listed this one in its own ``del``
        if event_id in invalid:
            continue

        for proof in token_event.proofs:
            identity = proof_identity(proof)
            if identity in seen:
                continue
            seen.add(identity)
            state.proofs.append(proof)
            state.proof_to_event_id[identity] = event_id

    return state


def latest_wallet_event(events: Iterable[NostrEvent]) -> NostrEvent | None:
    """Newest kind 17375 event; replaceable, so only it is authoritative."""
    wallet_events = [e for e in events if e["kind"] == EventKind.Wallet]
    if not wallet_events:
        return None
    return max(wallet_events, key=lambda e: (e["created_at"], e["id"]))


def group_proofs_by_event(state: WalletState) -> dict[str, list[Proof]]:
    """Live proofs keyed by the token event that holds them."""
    grouped: dict[str, list[Proof]] = {}
    for proof in state.proofs:
        event_id = state.proof_to_event_id[proof_identity(proof)]
        grouped.setdefault(event_id, []).append(proof)
    return grouped


def summarize_history(
    entries: Iterable[SpendingHistoryEntry], unit: str | None = None
) -> tuple[int, int, int]:
    """Return (total_in, total_out, net) over history entries."""
    total_in = 0
    total_out = 0
    for entry in entries:
        if unit is not None and entry.unit != unit:
            continue
        if entry.direction == "in":
            total_in += entry.amount
        else:
            total_out += entry.amount
    return total_in, total_out, total_in - total_out


# ──────────────────────────────────────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────────────────────────────────────


class LedgerEngine:
    """Reads the event log from relays and rebuilds wallet state."""

    def __init__(
        self,
        relay_client: RelayClient,
        signer: NostrSigner,
        *,
        fetch_timeout: float = 10.0,
    ) -> None:
        self.relays = relay_client
        self.signer = signer
        self.fetch_timeout = fetch_timeout

    async def _decrypt(self, event: NostrEvent) -> str:
        return await self.signer.decrypt(event["pubkey"], event["content"])

    async def _decode_token_event(self, event: NostrEvent) -> TokenEvent | None:
        try:
            return decode_token_content(event, await self._decrypt(event))
        except CryptoError as e:
            logger.warning(f"Skipping unreadable token event {event['id']}: {e}")
            return None

    async def fetch_events(self, pubkey: str, kinds: list[int]) -> list[NostrEvent]:
        """One batched query for the given kinds authored by ``pubkey``."""
        filters: list[NostrFilter] = [{"authors": [pubkey], "kinds": kinds}]
        return await self.relays.fetch_events(filters, timeout=self.fetch_timeout)

    async def reconstruct(self, pubkey: str | None = None) -> WalletState:
        """Rebuild wallet state from relays.

        Raises:
            TransportError: If no relay answered within the fetch timeout
        """
        pubkey = pubkey or await self.signer.get_public_key()
        events = await self.fetch_events(
            pubkey, [EventKind.Wallet, EventKind.Token, EventKind.Deletion]
        )

        deleted_ids = collect_deleted_ids(events)
        # Only the wallet's own token events count
        token_events = [
            e
            for e in events
            if e["kind"] == EventKind.Token
            and e["pubkey"] == pubkey
            and e["id"] not in deleted_ids
        ]

        decoded = await asyncio.gather(
            *(self._decode_token_event(event) for event in token_events)
        )
        readable = [token_event for token_event in decoded if token_event is not None]
        undecryptable = {
            event["id"]: event["created_at"]
            for event, token_event in zip(token_events, decoded)
            if token_event is None
        }

        state = build_wallet_state(readable, deleted_ids, undecryptable)

        wallet_event = latest_wallet_event(events)
        if wallet_event is not None:
            try:
                state.wallet_mints, _ = decode_wallet_content(
                    await self._decrypt(wallet_event)
                )
            except CryptoError as e:
                logger.warning(f"Could not read wallet event {wallet_event['id']}: {e}")

        logger.debug(
            f"Reconstructed {len(state.proofs)} proofs from {len(token_events)} token events "
            f"({len(deleted_ids)} deleted, {len(state.undecryptable_event_ids)} unreadable)"
        )
        return state

    async def fetch_history(self, pubkey: str | None = None) -> list[SpendingHistoryEntry]:
        """Spending history entries, newest first. Unreadable entries are skipped."""
        pubkey = pubkey or await self.signer.get_public_key()
        events = await self.fetch_events(pubkey, [EventKind.SpendingHistory])

        entries: list[SpendingHistoryEntry] = []
        for event in events:
            try:
                entries.append(decode_history_content(event, await self._decrypt(event)))
            except CryptoError as e:
                logger.warning(f"Skipping unreadable history event {event['id']}: {e}")
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries
