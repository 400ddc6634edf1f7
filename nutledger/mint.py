"""Cashu Mint API client wrapper."""

from __future__ import annotations

from typing import Any, TypedDict, cast

import httpx
from loguru import logger

from .crypto import BlindedOutput, create_blinded_outputs, unblind_outputs
from .denominations import DenominationSystem
from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    InvalidKeysetError,
    KeysetInfo,
    MintError,
    MintInfo,
    NoActiveKeyset,
    Proof,
    to_mint_proof,
)


def normalize_mint_url(url: str) -> str:
    """Normalize a mint URL by removing trailing slashes."""
    return url.strip().rstrip("/")


def calculate_input_fees(proofs: list[Proof], keysets: dict[str, KeysetInfo]) -> int:
    """Calculate input fees for proofs across their keysets (NUT-02).

    Example:
        With input_fee_ppk=1000 (1 sat per proof) and 3 proofs:
        fee = (3 * 1000 + 999) // 1000 = 3
    """
    sum_fees = 0
    for proof in proofs:
        keyset = keysets.get(proof["id"])
        if keyset is not None:
            sum_fees += int(keyset.input_fee_ppk or 0)
    # Ceiling division to match mint behavior
    return (sum_fees + 999) // 1000


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.url = normalize_mint_url(url)
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self._mint_info: MintInfo | None = None
        self._keys_cache: dict[str, dict[str, str]] = {}

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint."""
        logger.debug(f"{method} request to {self.url}{path}")
        try:
            response = await self.client.request(
                method,
                f"{self.url}{path}",
                json=json,
                params=params,
            )
        except httpx.HTTPError as e:
            raise MintError(f"Request to {self.url}{path} failed: {e}") from e

        if response.status_code >= 400:
            code = None
            try:
                detail = response.json()
            except ValueError:
                detail = None
            if isinstance(detail, dict):
                code = detail.get("code")
            raise MintError(
                f"Mint returned {response.status_code}: {response.text}",
                status_code=response.status_code,
                code=code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MintError(f"Mint returned invalid JSON for {path}") from e

    # ───────────────────────── Validation ─────────────────────────────────

    @staticmethod
    def _is_valid_compressed_pubkey(pubkey: str) -> bool:
        """Validate that pubkey is a 33-byte compressed secp256k1 key in hex."""
        if not isinstance(pubkey, str) or len(pubkey) != 66:
            return False
        if not pubkey.startswith(("02", "03")):
            return False
        try:
            bytes.fromhex(pubkey)
        except ValueError:
            return False
        return True

    def _validate_keyset(self, keyset: dict[str, Any]) -> bool:
        """Validate keyset structure per NUT-01."""
        if not all(field in keyset for field in ("id", "unit", "keys")):
            return False
        keys = keyset["keys"]
        if not isinstance(keys, dict):
            return False
        return all(self._is_valid_compressed_pubkey(pubkey) for pubkey in keys.values())

    def _validate_keys_response(self, response: dict[str, Any]) -> KeysResponse:
        """Validate and cast response to NUT-01 compliant KeysResponse.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01
        """
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")
        for i, keyset in enumerate(keysets):
            if not self._validate_keyset(keyset):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")
        return cast(KeysResponse, response)

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_info(self) -> MintInfoResponse:
        """Get mint information (NUT-06)."""
        return cast(MintInfoResponse, await self._request("GET", "/v1/info"))

    async def get_keysets(self) -> list[KeysetEntry]:
        """Get all keysets with their unit, active flag and fee (NUT-02)."""
        response = await self._request("GET", "/v1/keysets")
        return cast(list[KeysetEntry], response.get("keysets", []))

    async def get_active_keysets(self) -> list[Keyset]:
        """Get public keys of all active keysets (NUT-01)."""
        response = await self._request("GET", "/v1/keys")
        keysets = self._validate_keys_response(response)["keysets"]
        for keyset in keysets:
            self._keys_cache[keyset["id"]] = keyset["keys"]
        return [Keyset(**keyset) for keyset in keysets]

    async def get_keys(self, keyset_id: str) -> Keyset:
        """Get public keys of one keyset, active or not."""
        response = await self._request("GET", f"/v1/keys/{keyset_id}")
        keyset = self._validate_keys_response(response)["keysets"][0]
        self._keys_cache[keyset["id"]] = keyset["keys"]
        return Keyset(**keyset)

    async def get_keyset_keys(self, keyset_id: str) -> dict[str, str]:
        """Cached amount -> pubkey mapping for a keyset."""
        if keyset_id not in self._keys_cache:
            await self.get_keys(keyset_id)
        return self._keys_cache[keyset_id]

    async def get_mint_info(self, *, refresh: bool = False) -> MintInfo:
        """Mint name, description and keyset metadata, cached per instance."""
        if self._mint_info is not None and not refresh:
            return self._mint_info

        keysets = [
            KeysetInfo(
                id=entry["id"],
                unit=entry["unit"],
                active=bool(entry.get("active", True)),
                input_fee_ppk=int(entry.get("input_fee_ppk") or 0),
            )
            for entry in await self.get_keysets()
        ]
        try:
            info = await self.get_info()
        except MintError as e:
            # /v1/info is optional for the wallet; keysets are not
            logger.warning(f"Could not fetch info for mint {self.url}: {e}")
            info = cast(MintInfoResponse, {})

        self._mint_info = MintInfo(
            url=self.url,
            name=info.get("name"),
            description=info.get("description"),
            keysets=keysets,
            active=any(ks.active for ks in keysets),
        )
        return self._mint_info

    async def get_active_keyset(self, unit: CurrencyUnit) -> KeysetInfo:
        """Active keyset for a unit, with its keys loaded.

        Raises:
            NoActiveKeyset: If the mint has no active keyset for the unit
        """
        info = await self.get_mint_info()
        keyset = info.active_keyset(unit)
        if keyset is None:
            # Keysets rotate; look again before giving up
            info = await self.get_mint_info(refresh=True)
            keyset = info.active_keyset(unit)
        if keyset is None:
            raise NoActiveKeyset(self.url, unit)
        if not keyset.keys:
            keyset.keys = await self.get_keyset_keys(keyset.id)
        return keyset

    async def get_input_fees(self, proofs: list[Proof]) -> int:
        """Input fees the mint charges for spending these proofs."""
        info = await self.get_mint_info()
        keysets = {ks.id: ks for ks in info.keysets}
        if any(p["id"] not in keysets for p in proofs):
            info = await self.get_mint_info(refresh=True)
            keysets = {ks.id: ks for ks in info.keysets}
        return calculate_input_fees(proofs, keysets)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: CurrencyUnit = "sat",
        description: str | None = None,
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        if description is not None:
            body["description"] = description
        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"),
        )

    async def mint(
        self, *, quote: str, outputs: list[BlindedMessage]
    ) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "outputs": outputs}
        return cast(
            PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body)
        )

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(
        self, request: str, *, unit: CurrencyUnit = "sat"
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {
            "quote": quote,
            "inputs": [to_mint_proof(p) for p in inputs],
        }
        if outputs is not None:
            body["outputs"] = outputs
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self,
        *,
        inputs: list[Proof],
        outputs: list[BlindedMessage],
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures (NUT-03)."""
        body: dict[str, Any] = {
            "inputs": [to_mint_proof(p) for p in inputs],
            "outputs": outputs,
        }
        return cast(
            PostSwapResponse, await self._request("POST", "/v1/swap", json=body)
        )

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending (NUT-07)."""
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json={"Ys": Ys}),
        )

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Restore proofs from blinded messages (NUT-09)."""
        return cast(
            PostRestoreResponse,
            await self._request("POST", "/v1/restore", json={"outputs": outputs}),
        )

    async def swap_for_amounts(
        self,
        proofs: list[Proof],
        amount_groups: list[list[int]],
        keyset: KeysetInfo,
    ) -> list[list[Proof]]:
        """Swap proofs into new proofs, returned in the given amount groups.

        All outputs go out in one swap request sorted by amount, then the
        resulting proofs are handed back grouped like ``amount_groups``
        (e.g. ``[send_amounts, change_amounts]``).

        Raises:
            MintError: If the mint rejects the swap
            CryptoError: If the signatures cannot be unblinded
        """
        flat: list[tuple[int, int]] = [
            (amount, group_index)
            for group_index, group in enumerate(amount_groups)
            for amount in group
        ]
        flat.sort(key=lambda item: item[0])
        outputs: list[BlindedOutput] = create_blinded_outputs(
            [amount for amount, _ in flat], keyset.id
        )

        swap_resp = await self.swap(
            inputs=proofs, outputs=[output.message for output in outputs]
        )
        new_proofs = unblind_outputs(
            outputs,
            swap_resp["signatures"],
            keyset.keys or await self.get_keyset_keys(keyset.id),
            mint_url=self.url,
            unit=keyset.unit,
        )

        grouped: list[list[Proof]] = [[] for _ in amount_groups]
        for (_, group_index), proof in zip(flat, new_proofs):
            grouped[group_index].append(proof)
        return grouped

    async def plan_outputs(self, amount: int, keyset: KeysetInfo) -> list[int]:
        """Denominations for an output amount under a keyset."""
        if not keyset.keys:
            keyset.keys = await self.get_keyset_keys(keyset.id)
        return DenominationSystem.plan_outputs(amount, keyset)


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and the mint OpenAPI schema
# ──────────────────────────────────────────────────────────────────────────────


class MintInfoResponse(TypedDict, total=False):
    """Mint information response."""

    name: str
    pubkey: str
    version: str
    description: str
    description_long: str
    contact: list[dict[str, str]]
    motd: str
    nuts: dict[str, dict[str, Any]]


class Keyset(TypedDict):
    """Individual keyset per NUT-01."""

    id: str
    unit: CurrencyUnit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey mapping


class KeysResponse(TypedDict):
    """NUT-01 compliant mint keys response from GET /v1/keys."""

    keysets: list[Keyset]


class KeysetEntryRequired(TypedDict):
    id: str
    unit: CurrencyUnit
    active: bool


class KeysetEntry(KeysetEntryRequired, total=False):
    """Keyset entry from GET /v1/keysets."""

    input_fee_ppk: int  # input fee in parts per thousand


class PostMintQuoteResponse(TypedDict, total=False):
    """Mint quote response."""

    quote: str
    request: str  # bolt11 invoice
    amount: int
    unit: CurrencyUnit
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int


class PostMintResponse(TypedDict):
    """Mint response with signatures."""

    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    state: str
    expiry: int
    payment_preimage: str
    change: list[BlindedSignature]


class PostSwapResponse(TypedDict):
    """Swap response."""

    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    """Check state response."""

    states: list[dict[str, str]]  # {"Y", "state", "witness"}


class PostRestoreResponse(TypedDict, total=False):
    """Restore response."""

    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
