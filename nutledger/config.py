"""Wallet configuration.

Configuration is an explicit value handed to the wallet. ``load_config``
builds it from the process environment layered over a ``.env`` file:

    NSEC="nsec1..."
    CASHU_MINTS="https://mint1.com,https://mint2.com"
    NOSTR_RELAYS="wss://relay.damus.io,wss://nos.lol"
    NUTLEDGER_FETCH_TIMEOUT="10"
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values, set_key, unset_key
from loguru import logger

from .crypto import decode_nsec
from .mint import normalize_mint_url
from .types import ConfigError, CryptoError

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
]
DEFAULT_FETCH_TIMEOUT = 10.0

_KEYS = {"NSEC", "CASHU_MINTS", "NOSTR_RELAYS", "NUTLEDGER_FETCH_TIMEOUT"}


def validate_mint_url(url: str) -> bool:
    """Check that a mint URL is http(s) and has no trailing slash."""
    if not url:
        return False
    if not url.startswith(("http://", "https://")):
        return False
    return not url.endswith("/")


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    items = (item.strip() for item in value.split(","))
    # Drop empties and duplicates while preserving order
    return list(dict.fromkeys(item for item in items if item))


@dataclass
class WalletConfig:
    nsec: str
    mint_urls: list[str] = field(default_factory=list)
    relay_urls: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    canonical_unit: str = "sat"

    def __post_init__(self) -> None:
        try:
            decode_nsec(self.nsec)
        except CryptoError as e:
            raise ConfigError(f"Invalid NSEC: {e}") from e

        self.mint_urls = list(dict.fromkeys(normalize_mint_url(u) for u in self.mint_urls))
        for url in self.mint_urls:
            if not validate_mint_url(url):
                raise ConfigError(f"Invalid mint URL: {url!r}")
        for url in self.relay_urls:
            if not url.startswith(("ws://", "wss://")):
                raise ConfigError(f"Invalid relay URL: {url!r}")
        if self.fetch_timeout <= 0:
            raise ConfigError("fetch_timeout must be positive")


def _env_path(env_file: str | Path | None) -> Path:
    return Path(env_file) if env_file is not None else Path.cwd() / ".env"


def load_config(env_file: str | Path | None = None) -> WalletConfig:
    """Build a WalletConfig from the environment and a ``.env`` file.

    Process environment variables take precedence over the file.

    Raises:
        ConfigError: If NSEC is missing or any value is invalid
    """
    path = _env_path(env_file)
    values: dict[str, str | None] = {}
    if path.exists():
        values.update(dotenv_values(path))
    values.update({k: v for k, v in os.environ.items() if k in _KEYS})

    nsec = values.get("NSEC")
    if not nsec:
        raise ConfigError("NSEC is not set. Put it in the environment or a .env file.")

    raw_timeout = values.get("NUTLEDGER_FETCH_TIMEOUT")
    try:
        fetch_timeout = float(raw_timeout) if raw_timeout else DEFAULT_FETCH_TIMEOUT
    except ValueError as e:
        raise ConfigError(f"Invalid NUTLEDGER_FETCH_TIMEOUT: {raw_timeout!r}") from e

    return WalletConfig(
        nsec=nsec,
        mint_urls=_split_list(values.get("CASHU_MINTS")),
        relay_urls=_split_list(values.get("NOSTR_RELAYS")) or list(DEFAULT_RELAYS),
        fetch_timeout=fetch_timeout,
    )


def save_mints(mints: list[str], env_file: str | Path | None = None) -> None:
    """Persist the mint list to the ``.env`` file."""
    if not mints:
        return
    path = _env_path(env_file)
    path.touch(exist_ok=True)
    set_key(str(path), "CASHU_MINTS", ",".join(mints))
    logger.debug(f"Saved {len(mints)} mints to {path}")


def clear_mints(env_file: str | Path | None = None) -> bool:
    """Remove the mint list from the ``.env`` file.

    Returns:
        True if mints were cleared, False if none were set
    """
    path = _env_path(env_file)
    if not path.exists() or "CASHU_MINTS" not in dotenv_values(path):
        return False
    unset_key(str(path), "CASHU_MINTS")
    return True


def setup_logging(level: str = "INFO") -> None:
    """Send nutledger logs to stderr at ``level``.

    ``MINT_DEBUG=true`` additionally lets mint request logs through at DEBUG.
    """
    level = level.upper()
    mint_debug = os.environ.get("MINT_DEBUG", "false").lower() == "true"
    threshold = logger.level(level).no

    def _filter(record) -> bool:
        if record["level"].no >= threshold:
            return True
        return mint_debug and record["name"] == "nutledger.mint"

    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if mint_debug else level,
        filter=_filter,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
