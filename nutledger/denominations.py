"""Denomination planning for Cashu outputs."""

from __future__ import annotations

from .types import KeysetInfo


def split_amount(amount: int) -> list[int]:
    """Split an amount into power-of-two denominations, ascending.

    The binary decomposition is unique and minimal: ``13 -> [1, 4, 8]``.
    Ascending order keeps swap outputs sorted as NUT-03 recommends.
    """
    if amount < 0:
        raise ValueError(f"Cannot split negative amount: {amount}")

    parts = []
    bit = 1
    while bit <= amount:
        if amount & bit:
            parts.append(bit)
        bit <<= 1
    return parts


class DenominationSystem:
    """Manages denomination calculation based on keyset information."""

    @staticmethod
    def get_keyset_denominations(keyset_info: KeysetInfo) -> list[int]:
        """Extract denominations from keyset keys.

        Args:
            keyset_info: Keyset information containing keys

        Returns:
            Sorted list of denominations (ascending order)
        """
        denominations = []
        for amount_str in keyset_info.keys:
            try:
                denominations.append(int(amount_str))
            except (ValueError, TypeError):
                continue
        return sorted(denominations)

    @staticmethod
    def calculate_optimal_split(
        amount: int, available_denominations: list[int] | None = None
    ) -> dict[int, int]:
        """Calculate denomination breakdown for an amount.

        Greedy over the keyset's denominations, falling back to plain powers
        of two when the keyset does not advertise any.

        Returns:
            Dict of denomination -> count

        Raises:
            ValueError: If the amount cannot be expressed exactly
        """
        if not available_denominations:
            split: dict[int, int] = {}
            for denom in split_amount(amount):
                split[denom] = split.get(denom, 0) + 1
            return split

        denominations: dict[int, int] = {}
        remaining = amount
        for denom in sorted(available_denominations, reverse=True):
            if remaining >= denom:
                count = remaining // denom
                denominations[denom] = count
                remaining -= denom * count

        if remaining > 0:
            raise ValueError(
                f"Amount {amount} cannot be expressed with denominations "
                f"{sorted(available_denominations)}"
            )
        return denominations

    @staticmethod
    def expand(denominations: dict[int, int]) -> list[int]:
        """Flatten a denomination -> count mapping into ascending amounts."""
        amounts: list[int] = []
        for denom, count in sorted(denominations.items()):
            amounts.extend([denom] * count)
        return amounts

    @staticmethod
    def plan_outputs(amount: int, keyset_info: KeysetInfo | None = None) -> list[int]:
        """Output amounts for a swap or mint, ascending."""
        available = (
            DenominationSystem.get_keyset_denominations(keyset_info)
            if keyset_info
            else None
        )
        return DenominationSystem.expand(
            DenominationSystem.calculate_optimal_split(amount, available)
        )
