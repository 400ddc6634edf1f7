"""Multi-mint balance aggregation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from loguru import logger

from .types import ProofBreakdown, WalletState

# Size of each unit in millisatoshis
_MSAT_PER_UNIT = {
    "msat": 1,
    "sat": 1000,
    "btc": 100_000_000_000,
}


def to_canonical(amount: int, unit: str, canonical_unit: str = "sat") -> int | None:
    """Convert an amount to the canonical unit.

    Conversion to a larger unit truncates (5500 msat -> 5 sat). Returns None
    for units that have no fixed rate to the canonical unit (fiat and so on).
    """
    if unit == canonical_unit:
        return amount
    if unit not in _MSAT_PER_UNIT or canonical_unit not in _MSAT_PER_UNIT:
        return None
    return amount * _MSAT_PER_UNIT[unit] // _MSAT_PER_UNIT[canonical_unit]


@dataclass
class BalanceSummary:
    """Balances across every mint and unit, totalled in one unit."""

    canonical_unit: str
    total_balance: int = 0
    per_mint: list[ProofBreakdown] = field(default_factory=list)
    unconverted: dict[str, int] = field(default_factory=dict)

    def for_mint(self, mint_url: str) -> list[ProofBreakdown]:
        return [b for b in self.per_mint if b.mint_url == mint_url.rstrip("/")]


def build_breakdowns(state: WalletState) -> list[ProofBreakdown]:
    """One breakdown per (mint, unit) holding proofs, in first-seen order."""
    buckets: dict[tuple[str, str], ProofBreakdown] = {}
    for proof in state.proofs:
        key = (proof["mint"], proof["unit"])
        breakdown = buckets.get(key)
        if breakdown is None:
            breakdown = buckets[key] = ProofBreakdown(mint_url=key[0], unit=key[1])
        breakdown.total_balance += proof["amount"]
        breakdown.proof_count += 1
        breakdown.denominations[proof["amount"]] = (
            breakdown.denominations.get(proof["amount"], 0) + 1
        )
    return list(buckets.values())


def aggregate(
    state: WalletState,
    mints: Iterable[str] | None = None,
    canonical_unit: str = "sat",
) -> BalanceSummary:
    """Summarize balances per mint and unit.

    Configured ``mints`` without proofs are reported with a zero balance in
    the canonical unit. Units that cannot be converted are left out of the
    total and listed in ``unconverted``.
    """
    summary = BalanceSummary(canonical_unit=canonical_unit)
    summary.per_mint = build_breakdowns(state)

    for breakdown in summary.per_mint:
        converted = to_canonical(breakdown.total_balance, breakdown.unit, canonical_unit)
        if converted is None:
            logger.info(
                f"Leaving {breakdown.total_balance} {breakdown.unit} at {breakdown.mint_url} "
                f"out of the {canonical_unit} total"
            )
            summary.unconverted[breakdown.unit] = (
                summary.unconverted.get(breakdown.unit, 0) + breakdown.total_balance
            )
            continue
        summary.total_balance += converted

    holding = {b.mint_url for b in summary.per_mint}
    for mint_url in mints or []:
        mint_url = mint_url.rstrip("/")
        if mint_url not in holding:
            holding.add(mint_url)
            summary.per_mint.append(ProofBreakdown(mint_url=mint_url, unit=canonical_unit))

    return summary
