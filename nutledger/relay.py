"""Nostr Relay websocket client for NIP-60 wallet operations."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, TypedDict, cast
from uuid import uuid4

import websockets
from loguru import logger

from .crypto import NostrSigner, verify_event
from .types import RelayError, TransportError


# ──────────────────────────────────────────────────────────────────────────────
# Nostr protocol types
# ──────────────────────────────────────────────────────────────────────────────


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


# Tag filters use the "#<tag>" keys, which class syntax cannot spell
NostrFilter = TypedDict(
    "NostrFilter",
    {
        "ids": list[str],
        "authors": list[str],
        "kinds": list[int],
        "#e": list[str],
        "#p": list[str],
        "since": int,
        "until": int,
        "limit": int,
    },
    total=False,
)


@dataclass
class EventBuilder:
    """Unsigned event; the signer fills in pubkey, id and signature."""

    kind: int
    content: str = ""
    tags: list[list[str]] = field(default_factory=list)
    created_at: int | None = None


# ──────────────────────────────────────────────────────────────────────────────
# Single relay
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client for NIP-60 wallet operations."""

    def __init__(self, url: str) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
        """
        self.url = url
        self.ws: Any = None
        # One REQ/EVENT conversation at a time over the socket
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.connected:
            return
        try:
            async with asyncio.timeout(5.0):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            raise RelayError(f"Connection timeout: {self.url}") from e
        except (OSError, websockets.WebSocketException) as e:
            raise RelayError(f"Connection to {self.url} failed: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.connected:
            await self.ws.close()

    async def _send(self, message: list[Any]) -> None:
        """Send a message to the relay."""
        if not self.connected:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        """Receive a message from the relay."""
        if not self.connected:
            raise RelayError("Not connected to relay")
        data = await self.ws.recv()
        return json.loads(data)

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent, *, timeout: float = 10.0) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected.

        Raises:
            RelayError: If the relay cannot be reached or does not answer in time
        """
        async with self._lock:
            await self.connect()
            try:
                await self._send(["EVENT", event])
                async with asyncio.timeout(timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "OK" and msg[1] == event["id"]:
                            if not msg[2]:
                                reason = msg[3] if len(msg) > 3 else ""
                                logger.warning(
                                    f"Relay {self.url} rejected event {event['id']}: {reason}"
                                )
                            return bool(msg[2])
                        elif msg[0] == "NOTICE":
                            logger.info(f"Relay {self.url} notice: {msg[1]}")
            except TimeoutError as e:
                raise RelayError(f"Timeout waiting for OK from {self.url}") from e
            except (websockets.WebSocketException, json.JSONDecodeError) as e:
                raise RelayError(f"Error publishing to {self.url}: {e}") from e

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(
        self,
        filters: list[NostrFilter],
        *,
        timeout: float = 10.0,
    ) -> list[NostrEvent]:
        """Fetch stored events matching filters.

        Collects events until the relay signals EOSE.

        Raises:
            RelayError: If the relay does not send EOSE within ``timeout``
        """
        async with self._lock:
            await self.connect()

            sub_id = str(uuid4())
            events: list[NostrEvent] = []

            try:
                await self._send(["REQ", sub_id, *filters])
                async with asyncio.timeout(timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "EVENT" and msg[1] == sub_id and isinstance(msg[2], dict):
                            events.append(msg[2])
                        elif msg[0] == "EOSE" and msg[1] == sub_id:
                            break
                        elif msg[0] == "CLOSED" and msg[1] == sub_id:
                            raise RelayError(
                                f"Relay {self.url} closed subscription: {msg[2:]}"
                            )
                        elif msg[0] == "NOTICE":
                            logger.info(f"Relay {self.url} notice: {msg[1]}")
            except TimeoutError as e:
                raise RelayError(f"Timeout fetching events from {self.url}") from e
            except (websockets.WebSocketException, json.JSONDecodeError) as e:
                raise RelayError(f"Error fetching from {self.url}: {e}") from e
            finally:
                if self.connected:
                    try:
                        await self._send(["CLOSE", sub_id])
                    except websockets.WebSocketException as e:
                        logger.debug(f"Could not close subscription on {self.url}: {e}")

        return events


# ──────────────────────────────────────────────────────────────────────────────
# Relay set
# ──────────────────────────────────────────────────────────────────────────────


class RelayClient:
    """Fan-out client over the wallet's relays.

    Fetches merge and deduplicate results from every relay that answers;
    publishes succeed when at least one relay accepts the event.
    """

    def __init__(self, signer: NostrSigner, relay_urls: list[str] | None = None) -> None:
        self.signer = signer
        self.relays: dict[str, NostrRelay] = {}
        for url in relay_urls or []:
            self.add_relay(url)

    def add_relay(self, url: str) -> None:
        if url not in self.relays:
            self.relays[url] = NostrRelay(url)

    @property
    def relay_urls(self) -> list[str]:
        return list(self.relays)

    def _require_relays(self) -> list[NostrRelay]:
        if not self.relays:
            raise TransportError("No relays configured")
        return list(self.relays.values())

    async def connect(self) -> None:
        """Connect to every relay; fail only if none is reachable."""
        relays = self._require_relays()
        results = await asyncio.gather(
            *(relay.connect() for relay in relays), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, Exception)]
        for relay, result in zip(relays, results):
            if isinstance(result, Exception):
                logger.warning(f"Could not connect to relay {relay.url}: {result}")
        if len(errors) == len(relays):
            raise TransportError("Could not connect to any relay")

    async def disconnect(self) -> None:
        await asyncio.gather(
            *(relay.disconnect() for relay in self.relays.values()),
            return_exceptions=True,
        )

    async def fetch_events(
        self, filters: list[NostrFilter], *, timeout: float = 10.0
    ) -> list[NostrEvent]:
        """Fetch events from all relays, keeping only correctly signed ones.

        Raises:
            TransportError: If no relay completed the query within ``timeout``
        """
        verified: list[NostrEvent] = []
        for event in await self._query(filters, timeout=timeout):
            if verify_event(cast(dict[str, Any], event)):
                verified.append(event)
            else:
                logger.warning(f"Dropping event {event.get('id')!r} with a bad id or signature")
        return verified

    async def _query(
        self, filters: list[NostrFilter], *, timeout: float = 10.0
    ) -> list[NostrEvent]:
        """Query all relays concurrently and merge results by event id."""
        relays = self._require_relays()
        results = await asyncio.gather(
            *(relay.fetch_events(filters, timeout=timeout) for relay in relays),
            return_exceptions=True,
        )

        events: dict[str, NostrEvent] = {}
        succeeded = 0
        for relay, result in zip(relays, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Fetch from relay {relay.url} failed: {result}")
                continue
            succeeded += 1
            for event in result:
                events.setdefault(event["id"], event)

        if not succeeded:
            raise TransportError(
                f"Could not fetch events from any of {len(relays)} relays"
            )
        return list(events.values())

    async def publish_event(self, event: NostrEvent) -> str:
        """Publish a signed event to all relays.

        Raises:
            TransportError: If no relay accepted the event
        """
        relays = self._require_relays()
        results = await asyncio.gather(
            *(relay.publish_event(event) for relay in relays), return_exceptions=True
        )
        accepted = 0
        for relay, result in zip(relays, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Publish to relay {relay.url} failed: {result}")
            elif result:
                accepted += 1
        if not accepted:
            raise TransportError(f"No relay accepted event {event['id']}")
        return event["id"]

    async def publish(self, builder: EventBuilder) -> str:
        """Sign an event with the wallet signer and publish it."""
        event = await self.signer.sign_event(
            builder.kind, builder.content, builder.tags, builder.created_at
        )
        return await self.publish_event(event)  # type: ignore[arg-type]
