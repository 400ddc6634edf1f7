"""NIP-60 event construction and decoding.

Token, spending history and wallet config events carry NIP-44 content
encrypted to the wallet's own pubkey. Decoding helpers here are pure apart
from decryption, so the ledger can be rebuilt from any set of raw events.
"""

from __future__ import annotations

import json
from typing import Any, cast

from loguru import logger

from .relay import EventBuilder, NostrEvent, RelayClient
from .types import (
    CryptoError,
    CurrencyUnit,
    Direction,
    EventKind,
    EventRef,
    Proof,
    SpendingHistoryEntry,
    TokenEvent,
)


# ──────────────────────────────────────────────────────────────────────────────
# Content codecs
# ──────────────────────────────────────────────────────────────────────────────


def encode_token_content(
    mint_url: str,
    unit: str,
    proofs: list[Proof],
    deleted_token_ids: list[str] | None = None,
) -> str:
    stored_proofs = []
    for proof in proofs:
        entry: dict[str, Any] = {
            "id": proof["id"],
            "amount": proof["amount"],
            "secret": proof["secret"],
            "C": proof["C"],
        }
        if proof.get("witness"):
            entry["witness"] = proof["witness"]
        stored_proofs.append(entry)

    content: dict[str, Any] = {"mint": mint_url, "unit": unit, "proofs": stored_proofs}
    if deleted_token_ids:
        content["del"] = list(deleted_token_ids)
    return json.dumps(content)


def decode_token_content(event: NostrEvent, plaintext: str) -> TokenEvent:
    """Decode decrypted token event content.

    Raises:
        CryptoError: If the content is not a well-formed token payload
    """
    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise CryptoError(f"Token event {event['id']} is not JSON") from e
    if not isinstance(data, dict):
        raise CryptoError(f"Token event {event['id']} content is not an object")

    mint_url = data.get("mint")
    if not mint_url or not isinstance(mint_url, str):
        raise CryptoError(f"No mint URL found in token event {event['id']}")
    mint_url = mint_url.rstrip("/")
    unit = data.get("unit") or "sat"
    if not isinstance(unit, str):
        raise CryptoError(f"Invalid unit in token event {event['id']}: {unit!r}")
    unit = cast(CurrencyUnit, unit)

    raw_proofs = data.get("proofs", [])
    supersedes = data.get("del", [])
    if not isinstance(raw_proofs, list) or not isinstance(supersedes, list):
        raise CryptoError(f"Token event {event['id']} has non-list proofs or del")

    proofs: list[Proof] = []
    try:
        for raw in raw_proofs:
            proof = Proof(
                id=raw["id"],
                amount=int(raw["amount"]),
                secret=raw["secret"],
                C=raw["C"],
                mint=mint_url,
                unit=unit,
            )
            if raw.get("witness"):
                proof["witness"] = raw["witness"]
            proofs.append(proof)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CryptoError(f"Malformed proof in token event {event['id']}: {e}") from e

    return TokenEvent(
        id=event["id"],
        mint_url=mint_url,
        unit=unit,
        proofs=proofs,
        supersedes=[str(i) for i in supersedes],
        created_at=event["created_at"],
    )


def encode_history_content(
    direction: Direction, amount: int, unit: str, refs: list[EventRef]
) -> str:
    tags: list[list[str]] = [
        ["direction", direction],
        ["amount", str(amount)],
        ["unit", unit],
    ]
    tags.extend(ref.to_tag() for ref in refs if ref.marker != "redeemed")
    return json.dumps(tags)


def decode_history_content(event: NostrEvent, plaintext: str) -> SpendingHistoryEntry:
    """Decode spending history content.

    Accepts the NIP-60 tag array and the older ``{"direction", "amount",
    "events"}`` object. Public ``redeemed`` tags on the event are merged in.
    """
    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise CryptoError(f"History event {event['id']} is not JSON") from e

    direction: str | None = None
    amount: int | None = None
    unit = "sat"
    refs: list[EventRef] = []

    try:
        if isinstance(data, list):
            for tag in data:
                if not tag:
                    continue
                if tag[0] == "direction":
                    direction = tag[1]
                elif tag[0] == "amount":
                    amount = int(tag[1])
                elif tag[0] == "unit":
                    unit = tag[1]
                elif tag[0] == "e" and len(tag) >= 4:
                    refs.append(EventRef(event_id=tag[1], relay=tag[2], marker=tag[3]))
        elif isinstance(data, dict):
            direction = data.get("direction")
            amount = int(data["amount"])
            unit = data.get("unit", unit)
            for ref in data.get("events", []):
                refs.append(
                    EventRef(
                        event_id=ref["id"] if isinstance(ref, dict) else ref[1],
                        marker=ref["marker"] if isinstance(ref, dict) else ref[3],
                    )
                )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise CryptoError(f"Malformed history event {event['id']}: {e}") from e

    for tag in event.get("tags", []):
        if len(tag) >= 4 and tag[0] == "e" and tag[3] == "redeemed":
            refs.append(EventRef(event_id=tag[1], relay=tag[2], marker="redeemed"))

    if direction not in ("in", "out") or amount is None:
        raise CryptoError(f"History event {event['id']} lacks direction or amount")

    return SpendingHistoryEntry(
        direction=cast(Direction, direction),
        amount=amount,
        unit=unit,
        event_refs=refs,
        created_at=event["created_at"],
        event_id=event["id"],
    )


def encode_wallet_content(mint_urls: list[str], wallet_privkey: str | None = None) -> str:
    tags: list[list[str]] = [["mint", url] for url in mint_urls]
    if wallet_privkey:
        tags.append(["privkey", wallet_privkey])
    return json.dumps(tags)


def decode_wallet_content(plaintext: str) -> tuple[list[str], str | None]:
    """Return (mint_urls, wallet_privkey) from wallet config content."""
    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise CryptoError("Wallet event is not JSON") from e

    mints: list[str] = []
    privkey: str | None = None
    if isinstance(data, list):
        for item in data:
            # Skip anything that is not a [name, value, ...] string tag
            if not isinstance(item, list) or len(item) < 2:
                continue
            if not isinstance(item[0], str) or not isinstance(item[1], str):
                continue
            if item[0] == "mint":
                mints.append(item[1].rstrip("/"))
            elif item[0] == "privkey":
                privkey = item[1]
    elif isinstance(data, dict):
        urls = data.get("mints", [])
        if not isinstance(urls, list):
            raise CryptoError("Wallet event mints is not a list")
        mints = [url.rstrip("/") for url in urls if isinstance(url, str)]
        raw_privkey = data.get("privkey")
        privkey = raw_privkey if isinstance(raw_privkey, str) else None
    else:
        raise CryptoError("Wallet event content has unknown shape")
    return list(dict.fromkeys(mints)), privkey


# ──────────────────────────────────────────────────────────────────────────────
# Event manager
# ──────────────────────────────────────────────────────────────────────────────


class EventManager:
    """Builds, encrypts and publishes the wallet's NIP-60 events."""

    def __init__(self, relay_client: RelayClient) -> None:
        self.relays = relay_client
        self.signer = relay_client.signer

    async def _encrypt_to_self(self, plaintext: str) -> str:
        pubkey = await self.signer.get_public_key()
        return await self.signer.encrypt(pubkey, plaintext)

    async def decrypt(self, event: NostrEvent) -> str:
        """Decrypt NIP-44 content that ``event["pubkey"]`` encrypted to this wallet."""
        return await self.signer.decrypt(event["pubkey"], event["content"])

    async def publish_token_event(
        self,
        mint_url: str,
        unit: str,
        proofs: list[Proof],
        deleted_token_ids: list[str] | None = None,
    ) -> str:
        """Publish a kind 7375 token event and return its id."""
        content = await self._encrypt_to_self(
            encode_token_content(mint_url, unit, proofs, deleted_token_ids)
        )
        event_id = await self.relays.publish(EventBuilder(kind=EventKind.Token, content=content))
        logger.debug(
            f"Published token event {event_id} with {len(proofs)} proofs "
            f"(supersedes {deleted_token_ids or []})"
        )
        return event_id

    async def delete_token_events(self, event_ids: list[str], reason: str = "") -> str:
        """Publish one NIP-09 deletion for the given token events."""
        tags = [["e", event_id] for event_id in event_ids]
        tags.append(["k", str(EventKind.Token)])
        return await self.relays.publish(
            EventBuilder(kind=EventKind.Deletion, content=reason, tags=tags)
        )

    async def publish_spending_history(
        self,
        *,
        direction: Direction,
        amount: int,
        unit: str = "sat",
        created_token_ids: list[str] | None = None,
        destroyed_token_ids: list[str] | None = None,
        redeemed_event_ids: list[str] | None = None,
    ) -> str:
        """Publish a kind 7376 spending history entry."""
        refs = [EventRef(i, "created") for i in created_token_ids or []]
        refs += [EventRef(i, "destroyed") for i in destroyed_token_ids or []]
        redeemed = [EventRef(i, "redeemed") for i in redeemed_event_ids or []]

        content = await self._encrypt_to_self(
            encode_history_content(direction, amount, unit, refs)
        )
        # Redeemed references stay public so the sender can see the nutzap was claimed
        tags = [ref.to_tag() for ref in redeemed]
        return await self.relays.publish(
            EventBuilder(kind=EventKind.SpendingHistory, content=content, tags=tags)
        )

    async def publish_wallet_event(
        self, mint_urls: list[str], wallet_privkey: str | None = None
    ) -> str:
        """Publish the replaceable kind 17375 wallet config."""
        content = await self._encrypt_to_self(
            encode_wallet_content(mint_urls, wallet_privkey)
        )
        return await self.relays.publish(
            EventBuilder(kind=EventKind.Wallet, content=content)
        )

    async def publish_token_message(self, recipient_pubkey: str, token: str) -> str:
        """Deliver a Cashu token string as a NIP-44 encrypted direct message."""
        content = await self.signer.encrypt(recipient_pubkey, token)
        return await self.relays.publish(
            EventBuilder(
                kind=EventKind.EncryptedDirectMessage,
                content=content,
                tags=[["p", recipient_pubkey]],
            )
        )
