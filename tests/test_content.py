"""
Tests for inscription content kinds.
"""

from __future__ import annotations

import base64
import json

import pytest
from pydantic import ValidationError

from zinscribe.content import (
    BinaryContent,
    JsonContent,
    NameContent,
    TextContent,
    Zrc20Content,
    parse_content,
)
from zinscribe.errors import InvalidContent


class TestTextContent:
    def test_defaults(self) -> None:
        content = TextContent(text="hello")
        assert content.content_type == "text/plain;charset=utf-8"
        assert content.payload() == b"hello"

    def test_no_charset(self) -> None:
        assert TextContent(text="x", charset=None).content_type == "text/plain"


class TestZrc20Content:
    """Tests for ZRC-20 token operations."""

    def test_deploy_payload(self) -> None:
        """Test deploy serializes compactly with max and lim."""
        content = Zrc20Content(op="deploy", tick="zats", max="21000000", lim="1000")
        assert content.tick == "ZATS"
        assert json.loads(content.payload()) == {
            "p": "zrc-20",
            "op": "deploy",
            "tick": "ZATS",
            "max": "21000000",
            "lim": "1000",
        }
        assert b" " not in content.payload()

    def test_mint_payload(self) -> None:
        """Test mint carries amt only."""
        content = Zrc20Content(op="mint", tick="ZATS", amt="1000")
        assert json.loads(content.payload()) == {
            "p": "zrc-20",
            "op": "mint",
            "tick": "ZATS",
            "amt": "1000",
        }
        assert content.content_type == "application/json"

    def test_deploy_requires_max(self) -> None:
        with pytest.raises(ValidationError, match="deploy requires max"):
            Zrc20Content(op="deploy", tick="ZATS")

    def test_mint_requires_amt(self) -> None:
        with pytest.raises(ValidationError, match="mint requires amt"):
            Zrc20Content(op="mint", tick="ZATS")

    @pytest.mark.parametrize("tick", ["", "TOOLONG", "ZA-T"])
    def test_invalid_ticker(self, tick: str) -> None:
        """Test tickers must be 1-5 letters or digits."""
        with pytest.raises(ValidationError, match="Invalid ticker"):
            Zrc20Content(op="mint", tick=tick, amt="1")

    @pytest.mark.parametrize("amt", ["0", "-5", "1.5", "abc"])
    def test_invalid_amount(self, amt: str) -> None:
        """Test amounts must be positive integer strings."""
        with pytest.raises(ValidationError):
            Zrc20Content(op="transfer", tick="ZATS", amt=amt)


class TestNameContent:
    """Tests for name registrations."""

    def test_normalized(self) -> None:
        content = NameContent(name="  Alice.ZEC ")
        assert content.name == "alice.zec"
        assert content.payload() == b"alice.zec"

    def test_zcash_suffix(self) -> None:
        assert NameContent(name="bob-1.zcash").name == "bob-1.zcash"

    @pytest.mark.parametrize("name", ["alice.btc", "ab.zec", "-abc.zec", "a--b.zec", "ab_c.zec"])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(ValidationError):
            NameContent(name=name)


class TestBinaryContent:
    def test_base64_input(self) -> None:
        """Test base64 strings are decoded to bytes."""
        content = BinaryContent(mime_type="image/png", data=base64.b64encode(b"\x89PNG").decode())
        assert content.payload() == b"\x89PNG"

    def test_json_round_trip(self) -> None:
        """Test JSON dumps encode bytes as base64 and load back."""
        content = BinaryContent(mime_type="image/png", data=b"\x00\xff")
        dumped = content.model_dump(mode="json")
        assert dumped["data"] == base64.b64encode(b"\x00\xff").decode()
        assert parse_content(dumped) == content


class TestParseContent:
    def test_dispatch_on_kind(self) -> None:
        assert isinstance(parse_content({"kind": "json", "data": {"a": 1}}), JsonContent)
        assert isinstance(parse_content({"kind": "name", "name": "carol.zec"}), NameContent)

    def test_unknown_kind(self) -> None:
        with pytest.raises(InvalidContent):
            parse_content({"kind": "video", "data": ""})

    def test_invalid_fields(self) -> None:
        with pytest.raises(InvalidContent):
            parse_content({"kind": "zrc20", "op": "mint", "tick": "ZATS"})
