"""Shared fixtures for unit tests."""

import pytest

from nutledger.config import WalletConfig
from nutledger.crypto import NostrSigner, generate_privkey
from nutledger.wallet import Wallet

from fakes import MINT_URL, FakeMintServer, MemoryRelayClient


@pytest.fixture
def signer() -> NostrSigner:
    return NostrSigner.from_nsec(generate_privkey())


@pytest.fixture
def relay(signer: NostrSigner) -> MemoryRelayClient:
    return MemoryRelayClient(signer)


@pytest.fixture
def mint_server() -> FakeMintServer:
    return FakeMintServer()


@pytest.fixture
def wallet(signer: NostrSigner, relay: MemoryRelayClient, mint_server: FakeMintServer) -> Wallet:
    config = WalletConfig(
        nsec=generate_privkey(),
        mint_urls=[MINT_URL],
        relay_urls=["wss://relay.test"],
    )
    w = Wallet(config, signer=signer, relay_client=relay)
    w.mints[MINT_URL] = mint_server.client()
    return w
