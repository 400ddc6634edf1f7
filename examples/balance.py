import asyncio

from nutledger import Wallet
from nutledger.config import setup_logging
from nutledger.display import print_balance_summary


async def main():
    """Show balances per mint and unit, then drop proofs the mints report spent."""
    setup_logging("INFO")

    async with Wallet.from_env() as wallet:
        print_balance_summary(await wallet.aggregate_balances())

        removed = await wallet.prune_spent_proofs()
        if removed:
            print(f"\nPruned {removed} in spent proofs")
            print_balance_summary(await wallet.aggregate_balances())

        total_in, total_out, net = await wallet.get_history_summary("sat")
        print(f"\nHistory: +{total_in} / -{total_out} (net {net}) sat")


if __name__ == "__main__":
    asyncio.run(main())
