"""Tests for handshake messages and the security handshake."""

from __future__ import annotations

import pytest

from grtc.crypto.keys import KeyAgreement, b64encode
from grtc.protocol.errors import MalformedMessage
from grtc.protocol.handler import (
    HANDSHAKE_FIELD,
    SecurityHandshake,
    check_payload,
    decode_message,
    encode_message,
    handshake_message,
    is_handshake,
)


class TestMessages:
    """Tests for message encoding and multiplexing."""

    def test_handshake_is_told_apart_by_field(self):
        """Only messages carrying publicKey are handshake messages."""
        assert is_handshake(handshake_message(b"\x01" * 32))
        assert not is_handshake({"text": "hi"})

    def test_decode_rejects_non_objects(self):
        """Bytes that are not a JSON object are malformed."""
        for data in (b"not json", b"[1, 2]", b"\xff\xfe"):
            with pytest.raises(MalformedMessage):
                decode_message(data)

    def test_encode_decode(self):
        """Messages survive the wire encoding."""
        assert decode_message(encode_message({"text": "hi"})) == {"text": "hi"}
        assert b"\n" not in encode_message({"text": "a\nb"})

    def test_payload_cannot_use_reserved_field(self):
        """Application payloads must be dicts without publicKey."""
        check_payload({"text": "hi"})
        with pytest.raises(ValueError):
            check_payload({HANDSHAKE_FIELD: "x"})
        with pytest.raises(ValueError):
            check_payload(["not", "a", "dict"])


class TestSecurityHandshake:
    """Tests for the one-key-each-way exchange."""

    def test_begin_sends_public_key_once(self):
        """begin() sends one handshake message even when called twice."""
        sent = []
        handshake = SecurityHandshake(KeyAgreement())

        handshake.begin(sent.append)
        handshake.begin(sent.append)

        assert len(sent) == 1
        assert decode_message(sent[0]) == {HANDSHAKE_FIELD: b64encode(handshake.key_pair.public_key)}

    def test_complete_in_either_order(self):
        """Receiving before sending still completes once both happened."""
        remote = KeyAgreement().generate_key_pair()
        handshake = SecurityHandshake(KeyAgreement())

        assert handshake.receive(handshake_message(remote.public_key))
        assert not handshake.complete
        handshake.begin(lambda data: None)
        assert handshake.complete
        assert handshake.remote_public_key == remote.public_key

    def test_repeat_key_ignored(self):
        """Only the first remote key is recorded."""
        first = KeyAgreement().generate_key_pair()
        second = KeyAgreement().generate_key_pair()
        handshake = SecurityHandshake(KeyAgreement())

        assert handshake.receive(handshake_message(first.public_key))
        assert not handshake.receive(handshake_message(second.public_key))
        assert handshake.remote_public_key == first.public_key

    def test_malformed_key_rejected(self):
        """A publicKey that is not base64 is malformed and not recorded."""
        handshake = SecurityHandshake(KeyAgreement())
        with pytest.raises(MalformedMessage):
            handshake.receive({HANDSHAKE_FIELD: "!!!"})
        assert handshake.remote_public_key is None

    def test_unusable_key_not_recorded(self):
        """A base64 publicKey that is not a 32-byte X25519 key is rejected."""
        handshake = SecurityHandshake(KeyAgreement())
        with pytest.raises(MalformedMessage):
            handshake.receive(handshake_message(b"short"))
        assert handshake.remote_public_key is None
        assert not handshake.complete

    def test_sealed_payload_between_two_sides(self):
        """A payload sealed by one side opens on the other."""
        alice, bob = SecurityHandshake(KeyAgreement()), SecurityHandshake(KeyAgreement())
        to_bob, to_alice = [], []
        alice.begin(to_bob.append)
        bob.begin(to_alice.append)
        bob.receive(decode_message(to_bob[0]))
        alice.receive(decode_message(to_alice[0]))

        sealed = alice.seal({"text": "secret"})

        assert "secret" not in str(sealed)
        assert bob.open(sealed) == {"text": "secret"}
        with pytest.raises(MalformedMessage):
            bob.open({"text": "plain"})
