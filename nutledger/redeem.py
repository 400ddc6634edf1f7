"""Redeeming third-party Cashu tokens into the wallet.

A received token is worthless until swapped: the sender still knows its
secrets. Redeeming swaps every input proof at the issuing mint for fresh
proofs only this wallet can spend, then records them on Nostr. Nothing is
published unless the swap succeeded.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable

from loguru import logger

from .events import EventManager
from .mint import Mint, normalize_mint_url
from .token import Token, parse_token
from .types import (
    CurrencyUnit,
    MintError,
    SwapRejected,
    UntrustedMint,
    WalletError,
)


class RedeemStage(enum.Enum):
    PARSED = "parsed"
    VALIDATED = "validated"
    OUTPUTS_BUILT = "outputs_built"
    SWAPPED = "swapped"
    PERSISTED = "persisted"


class Redeemer:
    """Runs one token through parse, trust check, swap and persistence."""

    def __init__(
        self,
        trusted_mints: Iterable[str],
        get_mint: Callable[[str], Mint],
        event_manager: EventManager,
    ) -> None:
        self.trusted_mints = {normalize_mint_url(url) for url in trusted_mints}
        self.get_mint = get_mint
        self.events = event_manager
        self.stage: RedeemStage | None = None

    async def _resolve_unit(self, mint: Mint, token: Token) -> CurrencyUnit:
        """Unit of the keyset the proofs were issued under, else the token's."""
        info = await mint.get_mint_info()
        for keyset_id in token.keyset_ids:
            keyset = info.keyset(keyset_id)
            if keyset is not None:
                return keyset.unit
        return token.unit

    async def redeem(self, token_string: str, *, source_event_id: str | None = None) -> int:
        """Redeem a token and return the amount credited after mint fees.

        ``source_event_id`` names the event the token arrived in; it is
        recorded as a public ``redeemed`` reference on the history entry.

        Raises:
            CryptoError: If the token string is malformed
            UntrustedMint: If the issuing mint is not trusted
            NoActiveKeyset: If the mint cannot issue new proofs in the unit
            SwapRejected: If the mint refuses the swap
            TransportError: If the new proofs could not be published
        """
        self.stage = None
        token = parse_token(token_string)
        self.stage = RedeemStage.PARSED

        mint_url = normalize_mint_url(token.mint_url)
        if mint_url not in self.trusted_mints:
            raise UntrustedMint(mint_url)

        mint = self.get_mint(mint_url)
        unit = await self._resolve_unit(mint, token)
        keyset = await mint.get_active_keyset(unit)

        fees = await mint.get_input_fees(token.proofs)
        output_amount = token.amount - fees
        if output_amount <= 0:
            raise WalletError(
                f"Token worth {token.amount} {unit} does not cover {fees} in mint fees"
            )
        self.stage = RedeemStage.VALIDATED

        amounts = await mint.plan_outputs(output_amount, keyset)
        self.stage = RedeemStage.OUTPUTS_BUILT

        try:
            (new_proofs,) = await mint.swap_for_amounts(token.proofs, [amounts], keyset)
        except MintError as e:
            if e.status_code is None:
                # Never reached the mint's verdict
                raise
            raise SwapRejected(
                f"Mint {mint_url} rejected swap: {e}",
                status_code=e.status_code,
                code=e.code,
            ) from e
        self.stage = RedeemStage.SWAPPED

        # Swap already happened: publish failures propagate, the proofs are in memory only
        token_event_id = await self.events.publish_token_event(mint_url, unit, new_proofs)
        await self.events.publish_spending_history(
            direction="in",
            amount=output_amount,
            unit=unit,
            created_token_ids=[token_event_id],
            redeemed_event_ids=[source_event_id] if source_event_id else None,
        )
        self.stage = RedeemStage.PERSISTED

        logger.info(f"Redeemed {output_amount} {unit} from {mint_url} ({fees} in fees)")
        return output_amount
