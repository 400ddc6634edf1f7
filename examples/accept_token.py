import asyncio
import sys

from nutledger import UntrustedMint, Wallet, parse_token


async def accept_payment(token: str):
    """Redeem a Cashu token from one of the wallet's trusted mints."""
    parsed = parse_token(token)
    print(f"Token from: {parsed.mint_url}")
    print(f"Amount: {parsed.amount} {parsed.unit}")
    if parsed.memo:
        print(f"Memo: {parsed.memo}")

    async with Wallet.from_env() as wallet:
        # The wallet event on the relays is the authoritative mint list
        await wallet.fetch_wallet_state()
        try:
            amount = await wallet.redeem(token)
        except UntrustedMint as e:
            print(f"Refusing token: {e.mint_url} is not one of {wallet.mint_urls}")
            return None

        fees = parsed.amount - amount
        print(f"\nReceived: {amount} {parsed.unit}")
        if fees > 0:
            print(f"Mint fees: {fees} {parsed.unit}")
        return amount


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python accept_token.py <cashu_token>")
        sys.exit(1)
    asyncio.run(accept_payment(sys.argv[1]))
