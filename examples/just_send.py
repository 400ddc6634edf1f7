import asyncio
import sys

from nutledger import ConfigError, InsufficientBalance, Wallet


async def just_send():
    """Sends Cashu tokens from the wallet and prints the resulting token string."""
    if len(sys.argv) < 2:
        print("Usage: python just_send.py <amount_to_send> [memo]")
        print("Example: python just_send.py 100")
        sys.exit(1)

    try:
        amount_to_send = int(sys.argv[1])
        if amount_to_send <= 0:
            raise ValueError("Amount to send must be a positive integer.")
    except ValueError as e:
        print(f"Error: Invalid amount provided. {e}")
        sys.exit(1)
    memo = sys.argv[2] if len(sys.argv) > 2 else None

    try:
        wallet = Wallet.from_env()
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    async with wallet:
        current_balance = await wallet.get_balance(unit="sat")
        print(f"Current wallet balance: {current_balance} sats")

        print(f"Attempting to send {amount_to_send} sats from your wallet...")
        try:
            token = await wallet.send(amount_to_send, memo=memo)
        except InsufficientBalance as e:
            print(f"Error: {e}")
            return

        print("\n----------------------------------------------------")
        print("         CASHU TOKEN GENERATED SUCCESSFULLY         ")
        print("----------------------------------------------------")
        print(f"Token (for {amount_to_send} sats):\n{token}")
        print("----------------------------------------------------")
        print("\nRemember to provide this token to the recipient.")

        final_balance = await wallet.get_balance(unit="sat")
        print(f"New wallet balance: {final_balance} sats")


if __name__ == "__main__":
    asyncio.run(just_send())
