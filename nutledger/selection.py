"""Coin selection over reconstructed wallet state."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .ledger import group_proofs_by_event
from .types import (
    ExactCombinationNotFound,
    InsufficientBalance,
    Proof,
    WalletState,
    proof_identity,
)

FeeCalculator = Callable[[list[Proof]], int]


def _eligible(state: WalletState, mint_url: str, unit: str | None) -> list[Proof]:
    mint_url = mint_url.rstrip("/")
    return [
        p
        for p in state.proofs
        if p["mint"] == mint_url and (unit is None or p["unit"] == unit)
    ]


def _split_retained(eligible: list[Proof], selected: list[Proof]) -> list[Proof]:
    chosen = {proof_identity(p) for p in selected}
    return [p for p in eligible if proof_identity(p) not in chosen]


def select_exact(
    state: WalletState, amount: int, mint_url: str, unit: str | None = None
) -> tuple[list[Proof], list[Proof]]:
    """Pick proofs summing exactly to ``amount``, largest first.

    Greedy: a proof is taken only if it does not overshoot what is still
    needed. This is not a complete subset-sum search; ``{2, 2}`` cannot
    produce 3 and neither can some sets where a solution exists.

    Returns:
        (selected, retained) among the mint's eligible proofs

    Raises:
        InsufficientBalance: If eligible proofs total less than ``amount``
        ExactCombinationNotFound: If greedy selection leaves a remainder
    """
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")

    eligible = _eligible(state, mint_url, unit)
    available = sum(p["amount"] for p in eligible)
    if available < amount:
        raise InsufficientBalance(amount, available, f"at mint {mint_url}")

    selected: list[Proof] = []
    remaining = amount
    for proof in sorted(eligible, key=lambda p: p["amount"], reverse=True):
        if remaining == 0:
            break
        if proof["amount"] <= remaining:
            selected.append(proof)
            remaining -= proof["amount"]

    if remaining:
        raise ExactCombinationNotFound(amount, remaining)
    return selected, _split_retained(eligible, selected)


def select_covering(
    state: WalletState,
    amount: int,
    mint_url: str,
    unit: str | None = None,
    fee_calculator: FeeCalculator | None = None,
) -> tuple[list[Proof], list[Proof]]:
    """Pick proofs, largest first, until they cover ``amount`` plus input fees.

    Raises:
        InsufficientBalance: If all eligible proofs minus fees fall short
    """
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")

    eligible = _eligible(state, mint_url, unit)
    selected: list[Proof] = []
    total = 0
    fees = 0
    for proof in sorted(eligible, key=lambda p: p["amount"], reverse=True):
        selected.append(proof)
        total += proof["amount"]
        fees = fee_calculator(selected) if fee_calculator else 0
        if total - fees >= amount:
            return selected, _split_retained(eligible, selected)

    raise InsufficientBalance(
        amount + fees, total, f"at mint {mint_url}, including {fees} in fees"
    )


@dataclass
class RolloverPlan:
    """Token events touched by a spend and the proofs that must survive them."""

    destroyed_event_ids: list[str] = field(default_factory=list)
    kept_proofs: list[Proof] = field(default_factory=list)


def plan_rollover(state: WalletState, spent: list[Proof]) -> RolloverPlan:
    """Work out which events a spend destroys.

    Every live event holding a spent proof is destroyed; its proofs that were
    not spent are carried into the replacement event.
    """
    spent_ids = {proof_identity(p) for p in spent}
    plan = RolloverPlan()
    for event_id, event_proofs in group_proofs_by_event(state).items():
        if not any(proof_identity(p) in spent_ids for p in event_proofs):
            continue
        plan.destroyed_event_ids.append(event_id)
        plan.kept_proofs.extend(
            p for p in event_proofs if proof_identity(p) not in spent_ids
        )
    return plan
