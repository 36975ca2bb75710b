"""
Tests for script primitives and the inscription envelope codec.
"""

from __future__ import annotations

import pytest

from zinscribe.constants import MAX_SCRIPT_ELEMENT_SIZE
from zinscribe.content import BinaryContent, TextContent
from zinscribe.errors import ContentTooLarge, InvalidContent
from zinscribe.script import (
    OP_CHECKSIGVERIFY,
    OP_DROP,
    OP_PUSHDATA1,
    OP_PUSHDATA2,
    OP_TRUE,
    InscriptionBuilder,
    count_ops,
    encode_envelope,
    envelope_chunks,
    hash160,
    iter_script,
    p2sh_script,
    parse_envelope,
    push_data,
    split_reveal_script_sig,
)
from zinscribe.transaction import reveal_script_sig

PUBKEY = bytes([0x02]) + bytes(range(32))


class TestPushData:
    """Tests for minimal push encoding."""

    @pytest.mark.parametrize(
        "size,prefix",
        [
            (0, bytes([0x00])),
            (1, bytes([0x01])),
            (75, bytes([75])),
            (76, bytes([OP_PUSHDATA1, 76])),
            (255, bytes([OP_PUSHDATA1, 255])),
            (256, bytes([OP_PUSHDATA2, 0x00, 0x01])),
            (520, bytes([OP_PUSHDATA2, 0x08, 0x02])),
        ],
    )
    def test_prefix(self, size: int, prefix: bytes) -> None:
        """Test each push width is chosen at its boundary."""
        data = bytes([0xAB]) * size
        assert push_data(data) == prefix + data

    def test_iter_script_reports_truncation(self) -> None:
        """Test a push that overruns the script raises."""
        with pytest.raises(ValueError, match="overruns"):
            list(iter_script(bytes([0x05, 0x01])))


class TestEnvelope:
    """Tests for the envelope codec."""

    @pytest.mark.parametrize("size", [0, 1, 75, 76, 255, 256])
    def test_round_trip(self, size: int) -> None:
        """Test envelope decoding returns the exact content type and payload."""
        payload = bytes((i * 7) % 256 for i in range(size))
        script = encode_envelope(envelope_chunks("image/png", payload))
        assert parse_envelope(script) == ("image/png", payload)

    def test_layout(self) -> None:
        """Test the envelope starts with the protocol tag and field markers."""
        script = encode_envelope(envelope_chunks("text/plain", b"hi"))
        assert script == b"\x03ord" + b"\x51" + b"\x0atext/plain" + b"\x00" + b"\x02hi"

    def test_body_is_chunked(self) -> None:
        """Test bodies are split into pushes of at most 520 bytes."""
        payload = bytes(MAX_SCRIPT_ELEMENT_SIZE * 2 + 1)
        chunks = envelope_chunks("application/octet-stream", payload)
        assert len(chunks) == 4 + 3
        assert parse_envelope(encode_envelope(chunks))[1] == payload

    def test_empty_payload_single_push(self) -> None:
        """Test an empty payload still carries one body item."""
        assert envelope_chunks("text/plain", b"")[-1] == b"\x00"

    def test_content_type_too_long(self) -> None:
        """Test a content type above the element size limit is refused."""
        with pytest.raises(ContentTooLarge):
            envelope_chunks("x" * (MAX_SCRIPT_ELEMENT_SIZE + 1), b"")

    def test_parse_rejects_foreign_tag(self) -> None:
        """Test a script without the protocol tag is not an envelope."""
        script = b"\x03abc\x51\x01a\x00\x01b"
        with pytest.raises(InvalidContent, match="protocol tag"):
            parse_envelope(script)

    def test_parse_rejects_opcode_in_body(self) -> None:
        """Test a non-push opcode inside the body is refused."""
        script = encode_envelope(envelope_chunks("text/plain", b"x")) + bytes([OP_DROP])
        with pytest.raises(InvalidContent, match="Non-push"):
            parse_envelope(script)


class TestInscriptionBuilder:
    """Tests for the commit/reveal script pair."""

    def test_reveal_script_layout(self) -> None:
        """Test the reveal script drops one item per envelope chunk."""
        provisional = InscriptionBuilder.from_content(TextContent(text="hello")).provisional()
        final = provisional.finalize(PUBKEY)
        drops = len(provisional.chunks)
        assert final.reveal_script == (
            push_data(PUBKEY) + bytes([OP_CHECKSIGVERIFY]) + bytes([OP_DROP]) * drops
            + bytes([OP_TRUE])
        )
        assert final.funding_script == p2sh_script(hash160(final.reveal_script))

    def test_finalize_changes_funding_script(self) -> None:
        """Test the placeholder key is replaced by the revealer key."""
        provisional = InscriptionBuilder("text/plain", b"x").provisional()
        final = provisional.finalize(PUBKEY)
        assert final.funding_script != provisional.funding_script
        assert final.envelope_script == provisional.envelope_script

    def test_finalize_requires_compressed_key(self) -> None:
        """Test an uncompressed key is refused."""
        provisional = InscriptionBuilder("text/plain", b"x").provisional()
        with pytest.raises(ValueError, match="compressed"):
            provisional.finalize(bytes([0x04]) + bytes(64))

    def test_operation_limit(self) -> None:
        """Test content needing more than 201 operations is refused before selection."""
        payload = bytes(MAX_SCRIPT_ELEMENT_SIZE * 200)
        with pytest.raises(ContentTooLarge, match="operation count"):
            InscriptionBuilder("application/octet-stream", payload).provisional()

    def test_count_ops_ignores_pushes(self) -> None:
        """Test only non-push opcodes count toward the limit."""
        redeem = InscriptionBuilder("text/plain", b"x").provisional().reveal_script
        assert count_ops(redeem) == 1 + 5

    def test_binary_content(self) -> None:
        """Test binary content carries its declared MIME type."""
        content = BinaryContent(mime_type="image/webp", data=b"\x00\x01")
        provisional = InscriptionBuilder.from_content(content).provisional()
        assert parse_envelope(provisional.envelope_script) == ("image/webp", b"\x00\x01")


class TestRevealScriptSig:
    """Tests for splitting the reveal unlocking script."""

    def test_split(self) -> None:
        """Test envelope, signature and redeem script are recovered."""
        final = InscriptionBuilder("text/plain", b"payload").provisional().finalize(PUBKEY)
        signature = bytes(71) + b"\x01"
        script_sig = reveal_script_sig(final.envelope_script, signature, final.reveal_script)
        assert split_reveal_script_sig(script_sig) == (
            final.envelope_script,
            signature,
            final.reveal_script,
        )

    def test_split_rejects_short_script(self) -> None:
        """Test a plain P2PKH unlocking script is not a reveal."""
        with pytest.raises(ValueError):
            split_reveal_script_sig(push_data(bytes(72)) + push_data(PUBKEY))
