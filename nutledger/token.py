"""Cashu token string codec (V3 ``cashuA`` JSON and V4 ``cashuB`` CBOR)."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Literal, cast

import cbor2

from .types import CryptoError, CurrencyUnit, Proof

TokenVersion = Literal[3, 4]


@dataclass
class Token:
    """A decoded Cashu token: proofs from a single mint."""

    mint_url: str
    unit: CurrencyUnit
    proofs: list[Proof] = field(default_factory=list)
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)

    @property
    def keyset_ids(self) -> list[str]:
        return list(dict.fromkeys(p["id"] for p in self.proofs))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64url_decode(encoded: str) -> bytes:
    # Add correct padding – (-len) % 4 equals 0,1,2,3
    encoded += "=" * ((-len(encoded)) % 4)
    # Some encoders emit standard base64; accept both alphabets
    return base64.urlsafe_b64decode(encoded.replace("+", "-").replace("/", "_"))


def _make_proof(
    keyset_id: str,
    amount: Any,
    secret: Any,
    C: str,
    mint_url: str,
    unit: CurrencyUnit,
    witness: Any = None,
) -> Proof:
    if not isinstance(amount, int) or amount <= 0:
        raise CryptoError(f"Invalid proof amount: {amount!r}")
    if not isinstance(secret, str) or not secret:
        raise CryptoError("Proof secret must be a non-empty string")
    if not isinstance(keyset_id, str) or not isinstance(C, str):
        raise CryptoError("Proof keyset id and C must be strings")
    proof = Proof(
        id=keyset_id,
        amount=amount,
        secret=secret,
        C=C,
        mint=mint_url,
        unit=unit,
    )
    if witness:
        proof["witness"] = witness if isinstance(witness, str) else json.dumps(witness)
    return proof


# ───────────────────────── Serialization ─────────────────────────────────


def serialize_v3(token: Token) -> str:
    """Serialize into CashuA (V3) token format."""
    token_proofs = []
    for proof in token.proofs:
        entry: dict[str, Any] = {
            "id": proof["id"],
            "amount": proof["amount"],
            "secret": proof["secret"],
            "C": proof["C"],
        }
        if proof.get("witness"):
            entry["witness"] = proof["witness"]
        token_proofs.append(entry)

    # CashuA token format: cashuA<base64url(json)>
    token_data: dict[str, Any] = {
        "token": [{"mint": token.mint_url, "proofs": token_proofs}],
        "unit": token.unit,
    }
    if token.memo is not None:
        token_data["memo"] = token.memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"cashuA{_b64url_encode(json_str.encode())}"


def serialize_v4(token: Token) -> str:
    """Serialize into CashuB (V4) token format using CBOR."""
    # Group proofs by keyset ID, preserving first-seen order
    proofs_by_keyset: dict[str, list[Proof]] = {}
    for proof in token.proofs:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    tokens = []
    for keyset_id, keyset_proofs in proofs_by_keyset.items():
        v4_proofs = []
        for proof in keyset_proofs:
            entry: dict[str, Any] = {
                "a": proof["amount"],
                "s": proof["secret"],
                "c": bytes.fromhex(proof["C"]),
            }
            if proof.get("witness"):
                entry["w"] = proof["witness"]
            v4_proofs.append(entry)
        tokens.append({"i": bytes.fromhex(keyset_id), "p": v4_proofs})

    token_data: dict[str, Any] = {"m": token.mint_url, "u": token.unit}
    if token.memo is not None:
        token_data["d"] = token.memo
    token_data["t"] = tokens

    return f"cashuB{_b64url_encode(cbor2.dumps(token_data))}"


def serialize_token(token: Token, version: TokenVersion = 4) -> str:
    """Serialize a token in the requested format version."""
    if not token.proofs:
        raise ValueError("Cannot serialize a token without proofs")
    if version == 3:
        return serialize_v3(token)
    if version == 4:
        return serialize_v4(token)
    raise ValueError(f"Unsupported token version: {version}. Use 3 or 4.")


# ───────────────────────── Parsing ─────────────────────────────────


def _check_header(mint_url: Any, unit: Any, memo: Any) -> None:
    if not isinstance(mint_url, str) or not mint_url:
        raise CryptoError(f"Token mint URL must be a non-empty string, got {mint_url!r}")
    if not isinstance(unit, str) or not unit:
        raise CryptoError(f"Token unit must be a non-empty string, got {unit!r}")
    if memo is not None and not isinstance(memo, str):
        raise CryptoError("Token memo must be a string")


def _parse_v3(encoded: str) -> Token:
    token_data = json.loads(_b64url_decode(encoded).decode("utf-8"))
    entries = token_data["token"]
    if not entries:
        raise CryptoError("Token contains no mint entries")
    mint_urls = {entry["mint"] for entry in entries}
    if len(mint_urls) > 1:
        raise CryptoError("Multi-mint tokens are not supported")

    mint_url = entries[0]["mint"]
    # Cashu V3 tokens without a unit are sat tokens
    unit = cast(CurrencyUnit, token_data.get("unit") or "sat")
    _check_header(mint_url, unit, token_data.get("memo"))
    proofs = [
        _make_proof(
            proof["id"],
            proof["amount"],
            proof["secret"],
            proof["C"],
            mint_url,
            unit,
            proof.get("witness"),
        )
        for entry in entries
        for proof in entry["proofs"]
    ]
    return Token(mint_url=mint_url, unit=unit, proofs=proofs, memo=token_data.get("memo"))


def _parse_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64url_decode(encoded))
    # 'm' = mint URL, 'u' = unit, 'd' = memo, 't' = tokens array
    mint_url = token_data["m"]
    unit = cast(CurrencyUnit, token_data["u"])
    _check_header(mint_url, unit, token_data.get("d"))
    proofs = []
    for token_entry in token_data["t"]:
        keyset_id = token_entry["i"].hex()
        for proof in token_entry["p"]:
            proofs.append(
                _make_proof(
                    keyset_id,
                    proof["a"],
                    proof["s"],
                    proof["c"].hex(),
                    mint_url,
                    unit,
                    proof.get("w"),
                )
            )
    return Token(mint_url=mint_url, unit=unit, proofs=proofs, memo=token_data.get("d"))


def parse_token(token: str) -> Token:
    """Parse a ``cashuA``/``cashuB`` token string.

    Raises:
        CryptoError: If the string is not a well-formed Cashu token
    """
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]

    try:
        if token.startswith("cashuA"):
            parsed = _parse_v3(token[6:])
        elif token.startswith("cashuB"):
            parsed = _parse_v4(token[6:])
        else:
            raise CryptoError(f"Unknown token version: {token[:7]!r}")
    except CryptoError:
        raise
    except (
        KeyError,
        TypeError,
        AttributeError,
        ValueError,
        binascii.Error,
        cbor2.CBORDecodeError,
    ) as e:
        raise CryptoError(f"Malformed token: {e}") from e

    if not parsed.proofs:
        raise CryptoError("Token contains no proofs")
    return parsed
