import asyncio
import sys

from nutledger import TokenDeliveryError, Wallet


async def send_to_friend(recipient: str, amount: int):
    """Send sats to another Nostr user as an encrypted token message."""
    async with Wallet.from_env() as wallet:
        try:
            event_id = await wallet.send_to_pubkey(recipient, amount)
        except TokenDeliveryError as e:
            print(f"Spent, but no relay took the message: {e}")
            print(f"Hand this token over yourself:\n{e.token}")
            return None

        print(f"Sent {amount} sat in message {event_id}")
        print(f"Remaining balance: {await wallet.get_balance()} sat")
        return event_id


async def collect():
    """Redeem every token other wallets have sent us."""
    async with Wallet.from_env() as wallet:
        await wallet.fetch_wallet_state()
        for message in await wallet.check_incoming_tokens():
            print(f"{message.amount} {message.unit} from {message.sender[:12]}... ({message.mint_url})")
        received = await wallet.receive_incoming_tokens()
        print(f"Redeemed: {received}")


if __name__ == "__main__":
    if len(sys.argv) == 2 and sys.argv[1] == "collect":
        asyncio.run(collect())
    elif len(sys.argv) == 3:
        asyncio.run(send_to_friend(sys.argv[1], int(sys.argv[2])))
    else:
        print("Usage: python send_to_friend.py <npub> <amount> | collect")
        sys.exit(1)
