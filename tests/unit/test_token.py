"""Tests for cashuA / cashuB token strings."""

import base64
import json

import cbor2
import pytest

from nutledger.token import Token, parse_token, serialize_token
from nutledger.types import CryptoError

from fakes import KEYSET_ID, MINT_URL, MSAT_KEYSET_ID, make_proof


def sample_token(memo="thanks"):
    proofs = [
        make_proof(8, "secret-eight", "02" + "ab" * 32),
        make_proof(2, "secret-two", "03" + "cd" * 32),
        make_proof(1, "secret-one", "02" + "ef" * 32, id=MSAT_KEYSET_ID),
    ]
    return Token(mint_url=MINT_URL, unit="sat", proofs=proofs, memo=memo)


def v4_with(**overrides):
    data = {
        "m": MINT_URL,
        "u": "sat",
        "t": [{"i": bytes.fromhex(KEYSET_ID), "p": [{"a": 2, "s": "s", "c": bytes.fromhex("02" + "11" * 32)}]}],
    }
    data.update(overrides)
    return "cashuB" + base64.urlsafe_b64encode(cbor2.dumps(data)).decode()


def v3_with(mint=MINT_URL, unit="sat", C="02" + "11" * 32):
    payload = {
        "token": [{"mint": mint, "proofs": [{"id": KEYSET_ID, "amount": 2, "secret": "s", "C": C}]}],
        "unit": unit,
    }
    return "cashuA" + base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


class TestRoundTrip:
    @pytest.mark.parametrize("version", [3, 4])
    def test_parse_serialize_roundtrip(self, version):
        token = sample_token()

        encoded = serialize_token(token, version)
        parsed = parse_token(encoded)

        assert encoded.startswith("cashuA" if version == 3 else "cashuB")
        assert parsed.mint_url == token.mint_url
        assert parsed.unit == token.unit
        assert parsed.memo == token.memo
        assert sorted(parsed.proofs, key=lambda p: p["secret"]) == sorted(
            token.proofs, key=lambda p: p["secret"]
        )

    @pytest.mark.parametrize("version", [3, 4])
    def test_roundtrip_without_memo_and_with_witness(self, version):
        token = sample_token(memo=None)
        token.proofs[0]["witness"] = '{"signatures":["aa"]}'

        parsed = parse_token(serialize_token(token, version))

        assert parsed.memo is None
        assert parsed.proofs[0]["witness"] == '{"signatures":["aa"]}'

    def test_v4_groups_proofs_by_keyset(self):
        encoded = serialize_token(sample_token(), 4)
        raw = encoded[6:] + "=" * (-len(encoded[6:]) % 4)
        data = cbor2.loads(base64.urlsafe_b64decode(raw))

        assert [entry["i"].hex() for entry in data["t"]] == [KEYSET_ID, MSAT_KEYSET_ID]
        assert data["d"] == "thanks"


class TestParsing:
    def test_v3_without_unit_defaults_to_sat(self):
        payload = {
            "token": [
                {
                    "mint": MINT_URL,
                    "proofs": [{"id": KEYSET_ID, "amount": 4, "secret": "s", "C": "02" + "11" * 32}],
                }
            ]
        }
        encoded = "cashuA" + base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()

        token = parse_token(encoded)

        assert token.unit == "sat"
        assert token.amount == 4
        assert token.proofs[0]["mint"] == MINT_URL

    def test_minimal_tokens_parse(self):
        assert parse_token(v4_with()).amount == 2
        assert parse_token(v3_with()).amount == 2

    @pytest.mark.parametrize(
        "bad",
        [
            "",
            "hello",
            "cashuC" + "AAAA",
            "cashuA" + "!!!notbase64",
            "cashuA" + base64.urlsafe_b64encode(b'{"token": []}').decode(),
            "cashuB" + base64.urlsafe_b64encode(cbor2.dumps([1, 2])).decode(),
            "cashuB" + base64.urlsafe_b64encode(cbor2.dumps({"m": MINT_URL, "u": "sat", "t": []})).decode(),
            v4_with(m=5),
            v4_with(u=7),
            v4_with(d=["memo"]),
            v3_with(mint=5),
            v3_with(unit=3),
            v3_with(C=12),
        ],
    )
    def test_malformed_tokens_raise_crypto_error(self, bad):
        with pytest.raises(CryptoError):
            parse_token(bad)

    def test_cashu_uri_prefix_is_accepted(self):
        encoded = serialize_token(sample_token(), 4)
        assert parse_token(f"cashu:{encoded}").amount == 11

    def test_unsupported_version(self):
        with pytest.raises(ValueError):
            serialize_token(sample_token(), 5)  # type: ignore[arg-type]
