"""Test the relay fan-out and the single relay REQ/EVENT conversation."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets

from nutledger.relay import EventBuilder, NostrRelay, RelayClient
from nutledger.types import RelayError, TransportError


def fake_socket(*messages):
    ws = MagicMock()
    ws.close_code = None
    ws.send = AsyncMock()
    ws.recv = AsyncMock(side_effect=[json.dumps(m) for m in messages])
    return ws


def sent_messages(ws):
    return [json.loads(call.args[0]) for call in ws.send.await_args_list]


async def signed(signer, content):
    return await signer.sign_event(7375, content, [], 1_700_000_000)


class TestNostrRelay:
    @pytest.mark.asyncio
    async def test_fetch_collects_until_eose(self):
        relay = NostrRelay("wss://relay.test")
        with patch("nutledger.relay.uuid4", return_value="sub"):
            relay.ws = fake_socket(
                ["NOTICE", "hello"],
                ["EVENT", "sub", {"id": "a"}],
                ["EVENT", "other-sub", {"id": "x"}],
                ["EVENT", "sub", {"id": "b"}],
                ["EOSE", "sub"],
            )
            events = await relay.fetch_events([{"kinds": [7375]}])

        assert [e["id"] for e in events] == ["a", "b"]
        assert sent_messages(relay.ws) == [["REQ", "sub", {"kinds": [7375]}], ["CLOSE", "sub"]]

    @pytest.mark.asyncio
    async def test_closed_subscription_raises(self):
        relay = NostrRelay("wss://relay.test")
        with patch("nutledger.relay.uuid4", return_value="sub"):
            relay.ws = fake_socket(["CLOSED", "sub", "auth-required: nope"])
            with pytest.raises(RelayError, match="closed subscription"):
                await relay.fetch_events([{"kinds": [7375]}])

    @pytest.mark.asyncio
    async def test_closed_socket_during_request_raises_relay_error(self):
        relay = NostrRelay("wss://relay.test")
        relay.ws = fake_socket()
        relay.ws.send.side_effect = websockets.ConnectionClosed(None, None)

        with pytest.raises(RelayError, match="Error fetching"):
            await relay.fetch_events([{"kinds": [7375]}])

    @pytest.mark.asyncio
    async def test_publish_waits_for_ok(self):
        relay = NostrRelay("wss://relay.test")
        relay.ws = fake_socket(["OK", "other", True], ["OK", "ev1", False, "blocked: spam"])

        accepted = await relay.publish_event({"id": "ev1"})  # type: ignore[typeddict-item]

        assert accepted is False
        assert sent_messages(relay.ws) == [["EVENT", {"id": "ev1"}]]


class TestRelayClient:
    def client(self, signer, *urls):
        return RelayClient(signer, list(urls))

    @pytest.mark.asyncio
    async def test_fetch_merges_and_deduplicates(self, signer):
        client = self.client(signer, "wss://a.test", "wss://b.test")
        a, b = client.relays.values()
        one, two, three = [await signed(signer, str(i)) for i in range(3)]

        with patch.object(
            a, "fetch_events", new_callable=AsyncMock, return_value=[one, two]
        ), patch.object(b, "fetch_events", new_callable=AsyncMock, return_value=[two, three]):
            events = await client.fetch_events([{"kinds": [7375]}])

        assert sorted(e["id"] for e in events) == sorted(e["id"] for e in (one, two, three))

    @pytest.mark.asyncio
    async def test_fetch_tolerates_some_failures(self, signer):
        client = self.client(signer, "wss://a.test", "wss://b.test")
        a, b = client.relays.values()
        event = await signed(signer, "x")

        with patch.object(
            a, "fetch_events", new_callable=AsyncMock, side_effect=RelayError("timeout")
        ), patch.object(b, "fetch_events", new_callable=AsyncMock, return_value=[event]):
            events = await client.fetch_events([{"kinds": [7375]}])

        assert events == [event]

    @pytest.mark.asyncio
    async def test_fetch_drops_events_with_bad_signatures(self, signer):
        client = self.client(signer, "wss://a.test")
        (a,) = client.relays.values()
        good = await signed(signer, "good")
        forged_sig = await signed(signer, "forged")
        forged_sig["sig"] = "00" * 64
        tampered = await signed(signer, "orig")
        tampered["content"] = "changed"
        unsigned = {"id": "1", "kind": 5}

        with patch.object(
            a,
            "fetch_events",
            new_callable=AsyncMock,
            return_value=[good, forged_sig, tampered, unsigned],
        ):
            events = await client.fetch_events([{"kinds": [7375]}])

        assert events == [good]

    @pytest.mark.asyncio
    async def test_fetch_fails_when_every_relay_fails(self, signer):
        client = self.client(signer, "wss://a.test")
        (a,) = client.relays.values()

        with patch.object(a, "fetch_events", new_callable=AsyncMock, side_effect=RelayError("down")):
            with pytest.raises(TransportError):
                await client.fetch_events([{"kinds": [7375]}])

    @pytest.mark.asyncio
    async def test_publish_signs_and_needs_one_acceptance(self, signer):
        client = self.client(signer, "wss://a.test", "wss://b.test")
        a, b = client.relays.values()

        with patch.object(
            a, "publish_event", new_callable=AsyncMock, return_value=False
        ), patch.object(b, "publish_event", new_callable=AsyncMock, return_value=True) as publish_b:
            event_id = await client.publish(EventBuilder(kind=7375, content="x"))

        event = publish_b.await_args.args[0]
        assert event["id"] == event_id
        assert event["pubkey"] == signer.pubkey

    @pytest.mark.asyncio
    async def test_publish_rejected_everywhere(self, signer):
        client = self.client(signer, "wss://a.test")
        (a,) = client.relays.values()

        with patch.object(a, "publish_event", new_callable=AsyncMock, return_value=False):
            with pytest.raises(TransportError):
                await client.publish(EventBuilder(kind=7375, content="x"))

    @pytest.mark.asyncio
    async def test_no_relays_configured(self, signer):
        with pytest.raises(TransportError, match="No relays"):
            await RelayClient(signer).fetch_events([])
