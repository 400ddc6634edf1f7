"""Unit tests for the wallet against an in-memory relay and a fake mint."""

from unittest.mock import AsyncMock, patch

import pytest

from nutledger.config import WalletConfig
from nutledger.crypto import NostrSigner, compute_proof_y, encode_npub, generate_privkey
from nutledger.ledger import build_wallet_state
from nutledger.mint import calculate_input_fees
from nutledger.token import Token, parse_token, serialize_token
from nutledger.types import (
    ConfigError,
    CryptoError,
    EventKind,
    InsufficientBalance,
    KeysetInfo,
    MintError,
    TokenDeliveryError,
    TokenEvent,
    TransportError,
)
from nutledger.wallet import Wallet

from fakes import MINT_URL, KEYSET_ID, make_proof, publish_token_event

OTHER_MINT = "https://other.mint"


async def fund(wallet, mint_server, amounts):
    """Publish freshly minted proofs as one token event."""
    proofs = mint_server.issue(amounts)
    await publish_token_event(wallet.relay_client, proofs)
    return proofs


class TestFeeCalculation:
    def test_fee_calculation_empty_proofs(self):
        keysets = {KEYSET_ID: KeysetInfo(id=KEYSET_ID, unit="sat", active=True, input_fee_ppk=1000)}
        assert calculate_input_fees([], keysets) == 0

    def test_fee_calculation_rounds_up(self):
        """100 ppk on three proofs is 0.3, charged as 1."""
        keysets = {KEYSET_ID: KeysetInfo(id=KEYSET_ID, unit="sat", active=True, input_fee_ppk=100)}
        proofs = [make_proof(1, f"s{i}") for i in range(3)]
        assert calculate_input_fees(proofs, keysets) == 1

    def test_fee_calculation_unknown_keyset(self):
        proofs = [make_proof(1, "s", id="ffffffffffffffff")]
        assert calculate_input_fees(proofs, {}) == 0


class TestSend:
    @pytest.mark.asyncio
    async def test_exact_send_rolls_over_remaining_proofs(self, wallet, relay, mint_server):
        """Sending 13 from 8+4+2+1 needs no swap and keeps the 2."""
        await fund(wallet, mint_server, [8, 4, 2, 1])
        seed_id = relay.events[0]["id"]

        token = await wallet.send(13)

        parsed = parse_token(token)
        assert parsed.amount == 13
        assert sorted(p["amount"] for p in parsed.proofs) == [1, 4, 8]
        assert all(mint_server.is_valid(p) for p in parsed.proofs)
        assert "POST /v1/swap" not in mint_server.requests

        # Replacement first, then the deletion, then history
        kinds = [e["kind"] for e in relay.events[1:]]
        assert kinds == [EventKind.Token, EventKind.Deletion, EventKind.SpendingHistory]
        deletion = relay.of_kind(EventKind.Deletion)[0]
        assert ["e", seed_id] in deletion["tags"]
        assert ["k", "7375"] in deletion["tags"]

        assert await wallet.get_balance() == 2
        (entry,) = await wallet.get_spending_history()
        assert (entry.direction, entry.amount) == ("out", 13)
        assert entry.refs("destroyed") == [seed_id]
        assert entry.refs("created") == [relay.of_kind(EventKind.Token)[-1]["id"]]

    @pytest.mark.asyncio
    async def test_send_with_change_swaps_at_mint(self, wallet, relay, mint_server):
        """{2, 2} cannot make 3 exactly, so the mint splits them."""
        await fund(wallet, mint_server, [2, 2])

        token = await wallet.send(3)

        parsed = parse_token(token)
        assert parsed.amount == 3
        assert all(mint_server.is_valid(p) for p in parsed.proofs)
        assert mint_server.requests.count("POST /v1/swap") == 1
        assert len(mint_server.spent_ys) == 2

        state = await wallet.fetch_wallet_state()
        assert state.balance == 1
        assert all(mint_server.is_valid(p) for p in state.proofs)

    @pytest.mark.asyncio
    async def test_send_everything_publishes_no_rollover(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [4])

        await wallet.send(4)

        assert [e["kind"] for e in relay.events[1:]] == [
            EventKind.Deletion,
            EventKind.SpendingHistory,
        ]
        assert await wallet.get_balance() == 0

    @pytest.mark.asyncio
    async def test_failed_deletion_is_tolerated_after_rollover(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [8, 2])
        relay.fail_kinds = {EventKind.Deletion}

        await wallet.send(8)

        # The rollover's del list still retires the old event
        assert relay.of_kind(EventKind.Deletion) == []
        assert await wallet.get_balance() == 2

    @pytest.mark.asyncio
    async def test_failed_deletion_without_rollover_raises(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [8])
        relay.fail_kinds = {EventKind.Deletion}

        with pytest.raises(TransportError):
            await wallet.send(8)

        assert relay.of_kind(EventKind.SpendingHistory) == []

    @pytest.mark.asyncio
    async def test_failed_rollover_publishes_nothing_else(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [8, 2])
        relay.fail_kinds = {EventKind.Token}

        with pytest.raises(TransportError):
            await wallet.send(8)

        assert relay.of_kind(EventKind.Deletion) == []
        assert await wallet.get_balance() == 10

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [4])

        with pytest.raises(InsufficientBalance) as exc_info:
            await wallet.send(5)

        assert exc_info.value.available == 4
        assert len(relay.events) == 1

    @pytest.mark.asyncio
    async def test_send_token_v3_with_memo(self, wallet, mint_server):
        await fund(wallet, mint_server, [1])

        token = await wallet.send(1, token_version=3, memo="coffee")

        assert token.startswith("cashuA")
        assert parse_token(token).memo == "coffee"

    @pytest.mark.asyncio
    async def test_send_token_invalid_version(self, wallet):
        with pytest.raises(ValueError, match="Unsupported token version"):
            await wallet.send(1, token_version=5)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_swap_failure_leaves_events_untouched(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [2, 2])
        mint_server.reject_swaps = True

        with pytest.raises(MintError):
            await wallet.send(3)

        assert len(relay.events) == 1
        assert await wallet.get_balance() == 4

    def test_select_mint_holding_most(self, wallet):
        state = build_wallet_state(
            [
                TokenEvent(id="a", mint_url=MINT_URL, unit="sat", proofs=[make_proof(4, "a")], created_at=1),
                TokenEvent(
                    id="b",
                    mint_url=OTHER_MINT,
                    unit="sat",
                    proofs=[make_proof(16, "b", mint=OTHER_MINT)],
                    created_at=2,
                ),
            ]
        )

        assert wallet._select_mint_for_amount(state, 10, "sat") == OTHER_MINT
        with pytest.raises(InsufficientBalance):
            wallet._select_mint_for_amount(state, 17, "sat")
        with pytest.raises(InsufficientBalance):
            wallet._select_mint_for_amount(state, 1, "usd")


class TestBalances:
    @pytest.mark.asyncio
    async def test_balance_filters(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [8])
        await publish_token_event(
            relay, [make_proof(4, "elsewhere", mint=OTHER_MINT)], mint_url=OTHER_MINT
        )

        assert await wallet.get_balance() == 12
        assert await wallet.get_balance(mint_url=OTHER_MINT + "/") == 4
        assert await wallet.get_balance(unit="msat") == 0

    @pytest.mark.asyncio
    async def test_aggregate_balances_includes_configured_mints(self, wallet, mint_server):
        await fund(wallet, mint_server, [8])
        wallet.mint_urls.append(OTHER_MINT)

        summary = await wallet.aggregate_balances()

        assert summary.total_balance == 8
        assert [b.total_balance for b in summary.for_mint(OTHER_MINT)] == [0]


class TestProofStates:
    @pytest.mark.asyncio
    async def test_prune_spent_proofs(self, wallet, relay, mint_server):
        spent = await fund(wallet, mint_server, [8, 1])
        await fund(wallet, mint_server, [4])
        mint_server.spent_ys.add(compute_proof_y(spent[0]["secret"]))

        removed = await wallet.prune_spent_proofs()

        assert removed == 8
        assert await wallet.get_balance() == 5
        assert relay.of_kind(EventKind.SpendingHistory) == []

    @pytest.mark.asyncio
    async def test_check_proof_states(self, wallet, mint_server):
        proofs = await fund(wallet, mint_server, [2, 1])
        mint_server.spent_ys.add(compute_proof_y(proofs[1]["secret"]))

        states = await wallet.check_proof_states()

        assert sorted(states.values()) == ["SPENT", "UNSPENT"]

    @pytest.mark.asyncio
    async def test_prune_with_nothing_spent(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [2])
        assert await wallet.prune_spent_proofs() == 0
        assert len(relay.events) == 1


class TestMintConfig:
    @pytest.mark.asyncio
    async def test_update_mints_publishes_wallet_event(self, wallet, relay):
        await wallet.update_mints([OTHER_MINT + "/", MINT_URL, OTHER_MINT])

        assert wallet.mint_urls == [OTHER_MINT, MINT_URL]
        assert len(relay.of_kind(EventKind.Wallet)) == 1

        wallet.mint_urls = []
        await wallet.fetch_wallet_state()
        assert wallet.mint_urls == [OTHER_MINT, MINT_URL]

    @pytest.mark.asyncio
    async def test_update_mints_persists_to_env(self, wallet, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        await wallet.update_mints([MINT_URL], persist_env=True)

        assert "CASHU_MINTS" in (tmp_path / ".env").read_text()

    @pytest.mark.asyncio
    async def test_update_mints_requires_one(self, wallet):
        with pytest.raises(ConfigError):
            await wallet.update_mints([])

    @pytest.mark.asyncio
    async def test_publish_wallet_config_uses_current_mints(self, wallet, relay):
        await wallet.publish_wallet_config()

        assert len(relay.of_kind(EventKind.Wallet)) == 1
        assert wallet.mint_urls == [MINT_URL]

    @pytest.mark.asyncio
    async def test_redeem_without_mints(self, signer, relay, mint_server):
        wallet = Wallet(WalletConfig(nsec=generate_privkey()), signer=signer, relay_client=relay)
        token = serialize_token(Token(mint_url=MINT_URL, unit="sat", proofs=mint_server.issue([1])))

        with pytest.raises(ConfigError):
            await wallet.redeem(token)


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_summary_after_redeem_and_send(self, wallet, mint_server):
        token = serialize_token(
            Token(mint_url=MINT_URL, unit="sat", proofs=mint_server.issue([8, 4, 2, 1]))
        )
        await wallet.redeem(token)
        await wallet.send(5)

        assert await wallet.get_history_summary() == (15, 5, 10)
        directions = sorted(e.direction for e in await wallet.get_spending_history())
        assert directions == ["in", "out"]

async def deliver(sender, recipient_pubkey, relay, text):
    """Drop a direct message from ``sender`` straight into the relay."""
    content = await sender.encrypt(recipient_pubkey, text)
    event = await sender.sign_event(EventKind.EncryptedDirectMessage, content, [["p", recipient_pubkey]])
    relay.events.append(event)
    return event


class TestTokenMessages:
    @pytest.mark.asyncio
    async def test_send_to_pubkey_delivers_encrypted_token(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [8, 4])
        friend = NostrSigner.from_nsec(generate_privkey())

        await wallet.send_to_pubkey(encode_npub(friend.pubkey), 4)

        (message,) = relay.of_kind(EventKind.EncryptedDirectMessage)
        assert message["tags"] == [["p", friend.pubkey]]
        token = parse_token(await friend.decrypt(wallet.pubkey, message["content"]))
        assert token.amount == 4
        assert all(mint_server.is_valid(p) for p in token.proofs)
        assert await wallet.get_balance() == 8

    @pytest.mark.asyncio
    async def test_undelivered_token_is_returned_on_error(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [2, 1])
        relay.fail_kinds = {EventKind.EncryptedDirectMessage}
        friend = NostrSigner.from_nsec(generate_privkey())

        with pytest.raises(TokenDeliveryError) as exc_info:
            await wallet.send_to_pubkey(friend.pubkey, 2)

        assert parse_token(exc_info.value.token).amount == 2
        assert await wallet.get_balance() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("recipient", ["npub1notreal", "abcd", "zz" * 32])
    async def test_invalid_recipient_spends_nothing(self, wallet, relay, mint_server, recipient):
        await fund(wallet, mint_server, [4])

        with pytest.raises(CryptoError):
            await wallet.send_to_pubkey(recipient, 4)

        assert len(relay.events) == 1
        assert mint_server.spent_ys == set()

    @pytest.mark.asyncio
    async def test_send_to_self_shows_up_as_incoming(self, wallet, mint_server):
        await fund(wallet, mint_server, [4, 2])

        event_id = await wallet.send_to_self(4, memo="later")

        (incoming,) = await wallet.check_incoming_tokens()
        assert incoming.event_id == event_id
        assert incoming.sender == wallet.pubkey
        assert (incoming.amount, incoming.mint_url, incoming.unit) == (4, MINT_URL, "sat")
        assert parse_token(incoming.token).memo == "later"

    @pytest.mark.asyncio
    async def test_send_token_string_to_self_spends_nothing(self, wallet, relay, mint_server):
        token = serialize_token(Token(mint_url=MINT_URL, unit="sat", proofs=mint_server.issue([2])))

        await wallet.send_token_string_to_self(token + "\n")

        assert [e["kind"] for e in relay.events] == [EventKind.EncryptedDirectMessage]
        (incoming,) = await wallet.check_incoming_tokens()
        assert incoming.token == token

    @pytest.mark.asyncio
    async def test_send_token_string_to_self_rejects_garbage(self, wallet, relay):
        with pytest.raises(CryptoError):
            await wallet.send_token_string_to_self("cashuBnotatoken")
        assert relay.events == []

    @pytest.mark.asyncio
    async def test_incoming_skips_foreign_and_non_token_messages(self, wallet, relay, mint_server):
        friend = NostrSigner.from_nsec(generate_privkey())
        stranger = NostrSigner.from_nsec(generate_privkey())
        token = serialize_token(Token(mint_url=MINT_URL, unit="sat", proofs=mint_server.issue([1])))

        await deliver(friend, wallet.pubkey, relay, "hello there")
        await deliver(friend, wallet.pubkey, relay, "cashuBbroken")
        await deliver(friend, stranger.pubkey, relay, token)
        good = await deliver(friend, wallet.pubkey, relay, token)
        # Encrypted to someone else but tagged with our key
        bogus = await deliver(friend, stranger.pubkey, relay, token)
        bogus_tagged = await friend.sign_event(
            EventKind.EncryptedDirectMessage, bogus["content"], [["p", wallet.pubkey]]
        )
        relay.events.append(bogus_tagged)

        incoming = await wallet.check_incoming_tokens()

        assert [m.event_id for m in incoming] == [good["id"]]
        assert incoming[0].sender == friend.pubkey

    @pytest.mark.asyncio
    async def test_receive_incoming_tokens_redeems_once(self, wallet, relay, mint_server):
        friend = NostrSigner.from_nsec(generate_privkey())
        token = serialize_token(Token(mint_url=MINT_URL, unit="sat", proofs=mint_server.issue([8, 2])))
        message = await deliver(friend, wallet.pubkey, relay, token)

        assert await wallet.receive_incoming_tokens() == 10

        (entry,) = await wallet.get_spending_history()
        assert entry.direction == "in"
        assert entry.refs("redeemed") == [message["id"]]
        history_event = relay.of_kind(EventKind.SpendingHistory)[0]
        assert any(tag[1] == message["id"] for tag in history_event["tags"])

        assert await wallet.receive_incoming_tokens() == 0
        assert await wallet.get_balance() == 10

    @pytest.mark.asyncio
    async def test_receive_skips_untrusted_mints(self, wallet, relay, mint_server):
        friend = NostrSigner.from_nsec(generate_privkey())
        foreign = serialize_token(
            Token(mint_url=OTHER_MINT, unit="sat", proofs=[make_proof(4, "ab", mint=OTHER_MINT)])
        )
        await deliver(friend, wallet.pubkey, relay, foreign)

        assert await wallet.receive_incoming_tokens() == 0
        assert relay.of_kind(EventKind.Token) == []


class TestStats:
    @pytest.mark.asyncio
    async def test_get_stats(self, wallet, relay, mint_server):
        await fund(wallet, mint_server, [4, 1])
        await fund(wallet, mint_server, [2])
        relay.events.append(await wallet.signer.sign_event(EventKind.Token, "not encrypted"))

        stats = await wallet.get_stats()

        assert (stats.balance, stats.proof_count, stats.token_events) == (7, 3, 2)
        assert stats.mints == [MINT_URL]
        assert stats.undecryptable_events == 1

    def test_analyze_trusted_token(self, wallet, mint_server):
        token = serialize_token(
            Token(mint_url=MINT_URL + "/", unit="sat", proofs=mint_server.issue([1024, 1]), memo="rent")
        )

        info = wallet.analyze_token(token)

        assert (info.mint_url, info.unit, info.amount) == (MINT_URL, "sat", 1025)
        assert info.amount_display == "1,025 sat"
        assert (info.proof_count, info.memo, info.trusted) == (2, "rent", True)
        assert mint_server.requests == []

    def test_analyze_untrusted_token(self, wallet):
        token = serialize_token(
            Token(mint_url=OTHER_MINT, unit="usd", proofs=[make_proof(250, "cd", mint=OTHER_MINT, unit="usd")]),
            version=3,
        )

        info = wallet.analyze_token(token)

        assert info.trusted is False
        assert info.amount_display == "$2.50"
        assert info.memo is None



class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_closes_mints(self, wallet):
        mint = wallet.mints[MINT_URL]
        with patch.object(mint, "aclose", new_callable=AsyncMock) as mock_close:
            async with wallet as w:
                assert w is wallet
        mock_close.assert_awaited_once()
