import base64
import hashlib
import os
from collections import namedtuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from grtc.protocol.errors import KeyGenError, MalformedMessage

NONCE_SIZE = 12

KeyPair = namedtuple("KeyPair", ["public_key", "private_key"])


class KeyAgreement:
    """
    Ephemeral X25519 key pairs for one session. The private key stays in
    the KeyPair; only the raw public bytes ever go on the wire.
    """

    def generate_key_pair(self):
        try:
            private_key = X25519PrivateKey.generate()
            public_bytes = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            )
        except Exception as e:
            raise KeyGenError(f"Key pair generation failed: {e}") from e
        return KeyPair(public_key=public_bytes, private_key=private_key)

    def load_public_key(self, peer_public_bytes):
        try:
            return X25519PublicKey.from_public_bytes(peer_public_bytes)
        except (TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid peer public key: {e}") from e

    def derive_shared_key(self, key_pair, peer_public_bytes):
        peer_key = self.load_public_key(peer_public_bytes)
        shared = key_pair.private_key.exchange(peer_key)
        return hashlib.sha256(shared).digest()

    def seal(self, shared_key, plaintext):
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(shared_key).encrypt(nonce, plaintext, None)

    def open(self, shared_key, sealed):
        if len(sealed) <= NONCE_SIZE:
            raise MalformedMessage("Sealed payload too short")
        nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
        try:
            return AESGCM(shared_key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise MalformedMessage("Sealed payload failed authentication") from e


def b64encode(data):
    return base64.b64encode(data).decode()


def b64decode(text):
    try:
        return base64.b64decode(text, validate=True)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Invalid base64 field: {e}") from e
