"""Cashu cryptographic primitives for BDHKE (Blind Diffie-Hellmann Key Exchange),
NIP-44 encryption and Nostr event signing."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Any, Tuple

import bech32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .types import (
    BlindedMessage,
    BlindedSignature,
    CryptoError,
    CurrencyUnit,
    Proof,
)

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"

# secp256k1 field prime
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F


# ──────────────────────────────────────────────────────────────────────────────
# BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a point on secp256k1 as defined in NUT-00.

    ``Y = PublicKey("02" || SHA256(msg_hash || counter))`` for the first
    counter that yields a valid point, where
    ``msg_hash = SHA256(DOMAIN_SEPARATOR || message)``.
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise CryptoError("No valid curve point found for message")


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a message for the mint.

    Args:
        secret: The secret to blind. Cashu hashes the UTF-8 bytes of the
            secret string, not its hex decoding.
        r: Optional blinding factor (will be generated if not provided)

    Returns:
        Tuple of (blinded_point, blinding_factor)
    """
    Y = hash_to_curve(secret.encode("utf-8"))
    if r is None:
        r = secrets.token_bytes(32)
    r_key = PrivateKey(r)

    # B_ = Y + r*G
    B_ = PublicKey.combine_keys([Y, r_key.public_key])
    return B_, r


def _negate(point: PublicKey) -> PublicKey:
    raw = point.format(compressed=False)
    x = raw[1:33]
    y_int = int.from_bytes(raw[33:65], "big")
    neg_y = ((_P - y_int) % _P).to_bytes(32, "big")
    return PublicKey(b"\x04" + x + neg_y)


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a signature from the mint: ``C = C_ - r*K``."""
    rK = K.multiply(PrivateKey(r).secret)
    return PublicKey.combine_keys([C_, _negate(rK)])


def compute_proof_y(secret: str) -> str:
    """Y value of a proof secret, as used by NUT-07 checkstate."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


@dataclass
class BlindedOutput:
    """A blinded message together with the values needed to unblind it."""

    amount: int
    secret: str  # hex string, hashed as UTF-8
    r: str  # blinding factor (hex)
    message: BlindedMessage


def create_blinded_outputs(amounts: list[int], keyset_id: str) -> list[BlindedOutput]:
    """Create one fresh blinded output per amount, keeping the given order."""
    outputs: list[BlindedOutput] = []
    for amount in amounts:
        secret = secrets.token_hex(32)
        B_, r = blind_message(secret)
        outputs.append(
            BlindedOutput(
                amount=amount,
                secret=secret,
                r=r.hex(),
                message=BlindedMessage(
                    amount=amount,
                    B_=B_.format(compressed=True).hex(),
                    id=keyset_id,
                ),
            )
        )
    return outputs


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    """Look up the mint public key that signs a given amount."""
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def unblind_outputs(
    outputs: list[BlindedOutput],
    signatures: list[BlindedSignature],
    keys: dict[str, str],
    *,
    mint_url: str,
    unit: CurrencyUnit,
) -> list[Proof]:
    """Turn blind signatures into proofs, matching outputs by position."""
    if len(signatures) != len(outputs):
        raise CryptoError(
            f"Mint returned {len(signatures)} signatures for {len(outputs)} outputs"
        )

    proofs: list[Proof] = []
    for output, sig in zip(outputs, signatures):
        if sig["amount"] != output.amount:
            raise CryptoError(
                f"Signature amount {sig['amount']} does not match output {output.amount}"
            )
        K = get_mint_pubkey_for_amount(keys, sig["amount"])
        if K is None:
            raise CryptoError(f"Could not find mint public key for amount {sig['amount']}")

        C_ = PublicKey(bytes.fromhex(sig["C_"]))
        C = unblind_signature(C_, bytes.fromhex(output.r), K)
        proofs.append(
            Proof(
                id=sig["id"],
                amount=sig["amount"],
                secret=output.secret,
                C=C.format(compressed=True).hex(),
                mint=mint_url,
                unit=unit,
            )
        )
    return proofs


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Error(CryptoError):
    """Base exception for NIP-44 encryption errors."""


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        """Calculate padded length according to NIP-44."""
        if unpadded_len <= 0:
            raise NIP44Error("Invalid unpadded length")
        if unpadded_len <= 32:
            return 32

        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        """Apply NIP-44 padding: 2-byte big-endian length, data, zero fill."""
        unpadded_len = len(plaintext)
        if (
            unpadded_len < NIP44Encrypt.MIN_PLAINTEXT_SIZE
            or unpadded_len > NIP44Encrypt.MAX_PLAINTEXT_SIZE
        ):
            raise NIP44Error(f"Invalid plaintext length: {unpadded_len}")

        padded_len = NIP44Encrypt.calc_padded_len(unpadded_len)
        prefix = struct.pack(">H", unpadded_len)
        return prefix + plaintext + bytes(padded_len - unpadded_len)

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        """Remove NIP-44 padding from plaintext."""
        if len(padded) < 2:
            raise NIP44Error("Invalid padded data")

        unpadded_len = struct.unpack(">H", padded[:2])[0]
        if unpadded_len == 0 or len(padded) < 2 + unpadded_len:
            raise NIP44Error("Invalid padding")
        if len(padded) != 2 + NIP44Encrypt.calc_padded_len(unpadded_len):
            raise NIP44Error("Invalid padded length")

        return padded[2 : 2 + unpadded_len]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """Calculate conversation key using ECDH and HKDF-Extract."""
        if len(pubkey_hex) == 64:
            # x-only Nostr pubkey, even y by convention
            pubkey_hex = "02" + pubkey_hex
        try:
            pubkey_obj = PublicKey(bytes.fromhex(pubkey_hex))
        except ValueError as e:
            raise NIP44Error(f"Invalid public key: {e}") from e

        shared_x = pubkey_obj.multiply(privkey.secret).format(compressed=True)[1:]

        # HKDF-Extract is HMAC(salt, ikm)
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> Tuple[bytes, bytes, bytes]:
        """Derive message keys from conversation key and nonce."""
        if len(conversation_key) != 32:
            raise NIP44Error("Invalid conversation key length")
        if len(nonce) != 32:
            raise NIP44Error("Invalid nonce length")

        expanded = HKDFExpand(
            algorithm=hashes.SHA256(), length=76, info=nonce
        ).derive(conversation_key)
        return expanded[0:32], expanded[32:44], expanded[44:76]

    @staticmethod
    def hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        """Calculate HMAC with additional authenticated data."""
        if len(aad) != 32:
            raise NIP44Error("AAD must be 32 bytes")
        return hmac.new(key, aad + message, hashlib.sha256).digest()

    @staticmethod
    def chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        """ChaCha20 keystream XOR (encryption and decryption are the same)."""
        # cryptography takes a 16-byte nonce: 4-byte counter (zero) + 12-byte nonce
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def encrypt(
        plaintext: str,
        sender_privkey: PrivateKey,
        recipient_pubkey: str,
        nonce: bytes | None = None,
    ) -> str:
        """Encrypt a message using NIP-44 v2.

        Returns:
            Base64 encoded payload ``version || nonce || ciphertext || mac``
        """
        nonce = nonce or secrets.token_bytes(32)
        conversation_key = NIP44Encrypt.get_conversation_key(
            sender_privkey, recipient_pubkey
        )
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )

        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)

        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt(
        ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str
    ) -> str:
        """Decrypt a message using NIP-44 v2."""
        if not ciphertext or ciphertext.startswith("#"):
            raise NIP44Error("Unsupported encryption version")

        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e

        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")

        version = payload[0]
        if version != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {version}")

        nonce = payload[1:33]
        mac = payload[-32:]
        encrypted_data = payload[33:-32]

        conversation_key = NIP44Encrypt.get_conversation_key(
            recipient_privkey, sender_pubkey
        )
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )

        calculated_mac = NIP44Encrypt.hmac_aad(hmac_key, encrypted_data, nonce)
        if not hmac.compare_digest(calculated_mac, mac):
            raise NIP44Error("Invalid MAC")

        padded_plaintext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, encrypted_data)
        try:
            return NIP44Encrypt.unpad(padded_plaintext).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NIP44Error("Plaintext is not valid UTF-8") from e


# ──────────────────────────────────────────────────────────────────────────────
# Nostr keys and events
# ──────────────────────────────────────────────────────────────────────────────


def generate_privkey() -> str:
    """Generate a new secp256k1 private key as hex."""
    return PrivateKey().secret.hex()


def _bech32_decode(value: str, expected_hrp: str) -> bytes:
    hrp, data = bech32.bech32_decode(value)
    if hrp != expected_hrp or data is None:
        raise CryptoError(f"Invalid {expected_hrp} string")
    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise CryptoError(f"Invalid {expected_hrp} payload")
    return bytes(decoded)


def _bech32_encode(hrp: str, raw: bytes) -> str:
    return bech32.bech32_encode(hrp, bech32.convertbits(raw, 8, 5))


def decode_nsec(nsec: str) -> PrivateKey:
    """Decode an ``nsec1...`` string or 64-char hex key into a PrivateKey."""
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        raw = _bech32_decode(nsec, "nsec")
    else:
        try:
            raw = bytes.fromhex(nsec)
        except ValueError as e:
            raise CryptoError("Private key must be nsec or hex") from e
        if len(raw) != 32:
            raise CryptoError("Private key must be 32 bytes")
    try:
        return PrivateKey(raw)
    except ValueError as e:
        raise CryptoError(f"Invalid private key: {e}") from e


def encode_nsec(privkey: PrivateKey) -> str:
    return _bech32_encode("nsec", privkey.secret)


def get_pubkey(privkey: PrivateKey) -> str:
    """x-only (32-byte) Nostr public key as hex."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def encode_npub(pubkey_hex: str) -> str:
    return _bech32_encode("npub", bytes.fromhex(pubkey_hex))


def decode_npub(npub: str) -> str:
    return _bech32_decode(npub, "npub").hex()


def compute_event_id(
    pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str
) -> str:
    """NIP-01 event id: sha256 of the canonical serialization."""
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_event(event: dict[str, Any]) -> bool:
    """Check the id and BIP-340 signature of a Nostr event."""
    try:
        expected_id = compute_event_id(
            event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]
        )
        if expected_id != event["id"]:
            return False
        xonly = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return xonly.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, TypeError, ValueError):
        return False


class NostrSigner:
    """Local signer holding the wallet's Nostr key.

    Methods are async so a remote signer (NIP-46) can be dropped in.
    """

    def __init__(self, privkey: PrivateKey) -> None:
        self._privkey = privkey
        self.pubkey = get_pubkey(privkey)

    @classmethod
    def from_nsec(cls, nsec: str) -> NostrSigner:
        return cls(decode_nsec(nsec))

    async def get_public_key(self) -> str:
        return self.pubkey

    async def encrypt(self, recipient_pubkey: str, plaintext: str) -> str:
        return NIP44Encrypt.encrypt(plaintext, self._privkey, recipient_pubkey)

    async def decrypt(self, sender_pubkey: str, ciphertext: str) -> str:
        return NIP44Encrypt.decrypt(ciphertext, self._privkey, sender_pubkey)

    async def sign_event(
        self,
        kind: int,
        content: str,
        tags: list[list[str]] | None = None,
        created_at: int | None = None,
    ) -> dict[str, Any]:
        """Build and sign a complete NIP-01 event."""
        tags = tags or []
        created_at = created_at if created_at is not None else int(time.time())
        event_id = compute_event_id(self.pubkey, created_at, kind, tags, content)
        sig = self._privkey.sign_schnorr(bytes.fromhex(event_id))
        return {
            "id": event_id,
            "pubkey": self.pubkey,
            "created_at": created_at,
            "kind": kind,
            "tags": tags,
            "content": content,
            "sig": sig.hex(),
        }
