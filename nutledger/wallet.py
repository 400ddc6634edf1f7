from __future__ import annotations

from pathlib import Path
from typing import cast

from loguru import logger

from .aggregate import BalanceSummary, aggregate
from .config import WalletConfig, load_config, save_mints
from .crypto import NostrSigner, compute_proof_y, decode_npub
from .display import format_amount
from .events import EventManager
from .ledger import LedgerEngine, summarize_history
from .mint import Mint, calculate_input_fees, normalize_mint_url
from .redeem import Redeemer
from .relay import RelayClient
from .selection import plan_rollover, select_covering, select_exact
from .token import Token, TokenVersion, parse_token, serialize_token
from .types import (
    ConfigError,
    CryptoError,
    CurrencyUnit,
    EventKind,
    ExactCombinationNotFound,
    IncomingToken,
    InsufficientBalance,
    Proof,
    SpendingHistoryEntry,
    SwapRejected,
    TokenDeliveryError,
    TokenInfo,
    TransportError,
    UntrustedMint,
    WalletState,
    WalletStats,
    proof_identity,
)


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Stateless Cashu wallet implementing NIP-60.

    Every read rebuilds state from relays; nothing is cached between calls
    except per-mint keyset metadata.
    """

    def __init__(
        self,
        config: WalletConfig,
        *,
        signer: NostrSigner | None = None,
        relay_client: RelayClient | None = None,
    ) -> None:
        self.config = config
        self.signer = signer or NostrSigner.from_nsec(config.nsec)
        self.pubkey = self.signer.pubkey

        self.mint_urls: list[str] = list(config.mint_urls)
        self.mints: dict[str, Mint] = {}

        self.relay_client = relay_client or RelayClient(self.signer, config.relay_urls)
        self.event_manager = EventManager(self.relay_client)
        self.ledger = LedgerEngine(
            self.relay_client, self.signer, fetch_timeout=config.fetch_timeout
        )

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> Wallet:
        return cls(load_config(env_file))

    def _get_mint(self, mint_url: str) -> Mint:
        """Get or create mint instance for URL."""
        mint_url = normalize_mint_url(mint_url)
        if mint_url not in self.mints:
            self.mints[mint_url] = Mint(mint_url)
        return self.mints[mint_url]

    # ───────────────────────── State & Balance ─────────────────────────────────

    async def fetch_wallet_state(self) -> WalletState:
        """Rebuild wallet state from the event log.

        The newest wallet config event, when it lists mints, replaces the
        configured mint list.
        """
        state = await self.ledger.reconstruct(self.pubkey)
        if state.wallet_mints:
            self.mint_urls = list(state.wallet_mints)
        return state

    async def get_balance(
        self, *, unit: CurrencyUnit | None = None, mint_url: str | None = None
    ) -> int:
        """Sum of live proofs, optionally for one unit and/or mint."""
        state = await self.fetch_wallet_state()
        mint_url = normalize_mint_url(mint_url) if mint_url else None
        return sum(
            p["amount"]
            for p in state.proofs
            if (unit is None or p["unit"] == unit)
            and (mint_url is None or p["mint"] == mint_url)
        )

    async def aggregate_balances(self) -> BalanceSummary:
        """Per-mint, per-unit breakdown with a total in the canonical unit."""
        state = await self.fetch_wallet_state()
        return aggregate(state, self.mint_urls, self.config.canonical_unit)

    async def get_stats(self) -> WalletStats:
        state = await self.fetch_wallet_state()
        return WalletStats(
            balance=state.balance,
            proof_count=len(state.proofs),
            token_events=len(state.event_ids),
            mints=list(self.mint_urls),
            undecryptable_events=len(state.undecryptable_event_ids),
        )

    # ───────────────────────── Receive ─────────────────────────────────

    async def redeem(self, token: str, *, source_event_id: str | None = None) -> int:
        """Redeem a Cashu token from a trusted mint into the wallet.

        Returns:
            Amount credited after mint input fees
        """
        if not self.mint_urls:
            raise ConfigError("No mints configured; cannot decide which tokens to trust")
        redeemer = Redeemer(self.mint_urls, self._get_mint, self.event_manager)
        return await redeemer.redeem(token, source_event_id=source_event_id)

    def analyze_token(self, token: str) -> TokenInfo:
        """Describe a token without redeeming it or contacting its mint."""
        parsed = parse_token(token)
        mint_url = normalize_mint_url(parsed.mint_url)
        return TokenInfo(
            mint_url=mint_url,
            unit=parsed.unit,
            amount=parsed.amount,
            amount_display=format_amount(parsed.amount, parsed.unit),
            proof_count=len(parsed.proofs),
            memo=parsed.memo,
            trusted=mint_url in self.mint_urls,
        )

    # ───────────────────────── Send ─────────────────────────────────

    def _select_mint_for_amount(
        self, state: WalletState, amount: int, unit: CurrencyUnit
    ) -> str:
        """Mint holding the most of ``unit``, provided it covers ``amount``."""
        balances: dict[str, int] = {}
        for proof in state.proofs:
            if proof["unit"] == unit:
                balances[proof["mint"]] = balances.get(proof["mint"], 0) + proof["amount"]
        if not balances:
            raise InsufficientBalance(amount, 0, f"no {unit} proofs at any mint")

        mint_url, balance = max(balances.items(), key=lambda item: item[1])
        if balance < amount:
            raise InsufficientBalance(
                amount,
                balance,
                f"no single mint holds enough {unit}; total is {sum(balances.values())}",
            )
        return mint_url

    async def _split_at_mint(
        self, mint: Mint, inputs: list[Proof], amount: int, unit: CurrencyUnit
    ) -> tuple[list[Proof], list[Proof]]:
        """Swap inputs into a set worth exactly ``amount`` plus change."""
        keyset = await mint.get_active_keyset(unit)
        fees = await mint.get_input_fees(inputs)
        input_amount = sum(p["amount"] for p in inputs)
        change_amount = input_amount - fees - amount
        if change_amount < 0:
            raise InsufficientBalance(amount + fees, input_amount, f"{fees} in mint fees")

        send_amounts = await mint.plan_outputs(amount, keyset)
        change_amounts = await mint.plan_outputs(change_amount, keyset) if change_amount else []
        send_proofs, change_proofs = await mint.swap_for_amounts(
            inputs, [send_amounts, change_amounts], keyset
        )
        logger.debug(
            f"Split {input_amount} into {amount} to send and {change_amount} change "
            f"({fees} in fees)"
        )
        return send_proofs, change_proofs

    async def _record_spend(
        self,
        state: WalletState,
        spent: list[Proof],
        change: list[Proof],
        amount: int,
        mint_url: str,
        unit: CurrencyUnit,
        *,
        with_history: bool = True,
    ) -> None:
        """Roll over the events holding ``spent`` proofs.

        The replacement event (kept proofs plus change, with ``del`` naming
        the old events) is published before the deletion, so a crash in
        between never loses funds.
        """
        plan = plan_rollover(state, spent)
        keep = plan.kept_proofs + change

        created: list[str] = []
        if keep:
            created.append(
                await self.event_manager.publish_token_event(
                    mint_url, unit, keep, deleted_token_ids=plan.destroyed_event_ids
                )
            )

        if plan.destroyed_event_ids:
            try:
                await self.event_manager.delete_token_events(plan.destroyed_event_ids)
            except TransportError as e:
                if not created:
                    # Nothing supersedes the old events; they would still count
                    raise
                logger.warning(
                    f"Could not delete events {plan.destroyed_event_ids}, relying on rollover: {e}"
                )

        if with_history:
            await self.event_manager.publish_spending_history(
                direction="out",
                amount=amount,
                unit=unit,
                created_token_ids=created,
                destroyed_token_ids=plan.destroyed_event_ids,
            )

    async def send(
        self,
        amount: int,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit = "sat",
        memo: str | None = None,
        token_version: TokenVersion = 4,
    ) -> str:
        """Create a Cashu token worth exactly ``amount``.

        Proofs summing exactly to the amount are sent as-is. Otherwise enough
        proofs to cover the amount plus fees are swapped at the mint for a
        send set and change, and the change stays in the wallet.

        Args:
            amount: Amount to send in ``unit``
            mint_url: Mint to spend from (defaults to the one holding most)
            unit: Currency unit to send
            memo: Optional memo carried in the token
            token_version: 3 for cashuA, 4 for cashuB

        Raises:
            InsufficientBalance: If the mint's proofs cannot cover the amount
            MintError: If the change swap fails
            TransportError: If the spend could not be recorded

        Example:
            token = await wallet.send(100)
            token = await wallet.send(100, token_version=3, memo="coffee")
        """
        if token_version not in (3, 4):
            raise ValueError(f"Unsupported token version: {token_version}. Use 3 or 4.")
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")

        state = await self.fetch_wallet_state()
        if mint_url is None:
            mint_url = self._select_mint_for_amount(state, amount, unit)
        mint_url = normalize_mint_url(mint_url)

        change: list[Proof] = []
        try:
            send_proofs, _ = select_exact(state, amount, mint_url, unit)
            spent = send_proofs
        except ExactCombinationNotFound:
            mint = self._get_mint(mint_url)
            info = await mint.get_mint_info()
            keysets = {ks.id: ks for ks in info.keysets}
            spent, _ = select_covering(
                state,
                amount,
                mint_url,
                unit,
                fee_calculator=lambda proofs: calculate_input_fees(proofs, keysets),
            )
            send_proofs, change = await self._split_at_mint(mint, spent, amount, unit)

        token = serialize_token(
            Token(mint_url=mint_url, unit=unit, proofs=send_proofs, memo=memo),
            token_version,
        )
        await self._record_spend(state, spent, change, amount, mint_url, unit)
        return token

    # ───────────────────────── Token messages ─────────────────────────────────

    @staticmethod
    def _resolve_recipient(recipient: str) -> str:
        """Hex pubkey for an ``npub`` or hex recipient."""
        if recipient.startswith("npub"):
            return decode_npub(recipient)
        try:
            if len(bytes.fromhex(recipient)) == 32:
                return recipient.lower()
        except ValueError:
            pass
        raise CryptoError(f"Invalid recipient pubkey: {recipient!r}")

    async def send_to_pubkey(
        self,
        recipient: str,
        amount: int,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit = "sat",
        memo: str | None = None,
        token_version: TokenVersion = 4,
    ) -> str:
        """Send ``amount`` as a token inside an encrypted direct message.

        Args:
            recipient: Hex pubkey or ``npub`` of the receiving wallet

        Returns:
            Id of the message event

        Raises:
            CryptoError: If the recipient is not a valid pubkey
            TokenDeliveryError: If the spend was recorded but no relay took
                the message; the token is on the exception
        """
        recipient_pubkey = self._resolve_recipient(recipient)
        token = await self.send(
            amount, mint_url=mint_url, unit=unit, memo=memo, token_version=token_version
        )
        try:
            return await self.event_manager.publish_token_message(recipient_pubkey, token)
        except TransportError as e:
            raise TokenDeliveryError(token, f"Token for {recipient_pubkey} not delivered: {e}") from e

    async def send_to_self(self, amount: int, **kwargs) -> str:
        """Move ``amount`` out of the ledger into a token message to this wallet."""
        return await self.send_to_pubkey(self.pubkey, amount, **kwargs)

    async def send_token_string_to_self(self, token: str) -> str:
        """Park an existing token in a message to this wallet without redeeming it."""
        parse_token(token)
        return await self.event_manager.publish_token_message(self.pubkey, token.strip())

    async def check_incoming_tokens(self, *, limit: int = 50) -> list[IncomingToken]:
        """Tokens delivered to this wallet in encrypted direct messages, newest first.

        Messages that cannot be decrypted or hold no valid token are skipped.
        Nothing is redeemed.
        """
        events = await self.relay_client.fetch_events(
            [{"kinds": [EventKind.EncryptedDirectMessage], "#p": [self.pubkey], "limit": limit}],
            timeout=self.config.fetch_timeout,
        )

        incoming: list[IncomingToken] = []
        for event in sorted(events, key=lambda e: (e["created_at"], e["id"]), reverse=True):
            if ["p", self.pubkey] not in [tag[:2] for tag in event["tags"]]:
                continue
            try:
                text = (await self.event_manager.decrypt(event)).strip()
            except CryptoError as e:
                logger.debug(f"Skipping message {event['id']} we cannot decrypt: {e}")
                continue
            if not text.startswith(("cashuA", "cashuB", "cashu:")):
                continue
            try:
                token = parse_token(text)
            except CryptoError as e:
                logger.warning(f"Skipping malformed token in message {event['id']}: {e}")
                continue
            incoming.append(
                IncomingToken(
                    event_id=event["id"],
                    sender=event["pubkey"],
                    token=text,
                    amount=token.amount,
                    mint_url=normalize_mint_url(token.mint_url),
                    unit=token.unit,
                    created_at=event["created_at"],
                )
            )
        return incoming

    async def receive_incoming_tokens(self) -> int:
        """Redeem delivered tokens from trusted mints not redeemed before.

        Tokens already spent or from untrusted mints are skipped.

        Returns:
            Total amount credited
        """
        redeemed = {
            event_id
            for entry in await self.get_spending_history()
            for event_id in entry.refs("redeemed")
        }
        credited = 0
        for message in await self.check_incoming_tokens():
            if message.event_id in redeemed:
                continue
            try:
                credited += await self.redeem(message.token, source_event_id=message.event_id)
            except (UntrustedMint, SwapRejected) as e:
                logger.info(f"Not redeeming token from message {message.event_id}: {e}")
        return credited

    # ───────────────────────── Mint configuration ─────────────────────────────────

    async def update_mints(self, mint_urls: list[str], *, persist_env: bool = False) -> str:
        """Replace the wallet's mint list and publish it as the wallet config."""
        mint_urls = list(dict.fromkeys(normalize_mint_url(u) for u in mint_urls))
        if not mint_urls:
            raise ConfigError("At least one mint is required")
        event_id = await self.event_manager.publish_wallet_event(mint_urls)
        self.mint_urls = mint_urls
        if persist_env:
            save_mints(mint_urls)
        return event_id

    async def publish_wallet_config(self) -> str:
        """Publish the current mint list as the wallet config event."""
        return await self.update_mints(self.mint_urls)

    # ───────────────────────── History ─────────────────────────────────

    async def get_spending_history(self) -> list[SpendingHistoryEntry]:
        return await self.ledger.fetch_history(self.pubkey)

    async def get_history_summary(self, unit: str | None = None) -> tuple[int, int, int]:
        """(total_in, total_out, net) over the spending history."""
        return summarize_history(await self.get_spending_history(), unit)

    # ───────────────────────── Proof Validation ─────────────────────────────────

    async def check_proof_states(self, state: WalletState | None = None) -> dict[str, str]:
        """Ask each mint for the state of its proofs (NUT-07).

        Returns:
            ``secret:C`` identity -> "UNSPENT" | "PENDING" | "SPENT"
        """
        state = state or await self.fetch_wallet_state()
        states: dict[str, str] = {}
        for mint_url, proofs in state.proofs_by_mint.items():
            y_to_identity = {compute_proof_y(p["secret"]): proof_identity(p) for p in proofs}
            response = await self._get_mint(mint_url).check_state(Ys=list(y_to_identity))
            for entry in response.get("states", []):
                identity = y_to_identity.get(entry.get("Y", ""))
                if identity is not None:
                    states[identity] = entry.get("state", "UNSPENT")
        return states

    async def prune_spent_proofs(self) -> int:
        """Drop proofs the mints report as spent. Returns the amount removed."""
        state = await self.fetch_wallet_state()
        states = await self.check_proof_states(state)

        spent_groups: dict[tuple[str, str], list[Proof]] = {}
        for proof in state.proofs:
            if states.get(proof_identity(proof)) == "SPENT":
                spent_groups.setdefault((proof["mint"], proof["unit"]), []).append(proof)

        removed = 0
        for (mint_url, unit), spent in spent_groups.items():
            amount = sum(p["amount"] for p in spent)
            await self._record_spend(
                state, spent, [], amount, mint_url, cast(CurrencyUnit, unit), with_history=False
            )
            removed += amount
            logger.info(f"Pruned {amount} spent {unit} at {mint_url}")
        return removed

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def aclose(self) -> None:
        """Close relay connections and mint HTTP clients."""
        await self.relay_client.disconnect()
        for mint in self.mints.values():
            await mint.aclose()

    async def __aenter__(self) -> Wallet:
        await self.relay_client.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
