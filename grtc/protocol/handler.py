import json
import logging

from grtc.crypto.keys import b64decode, b64encode
from grtc.protocol.errors import MalformedMessage

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

# The only field that marks a message as handshake control rather than peer data.
HANDSHAKE_FIELD = "publicKey"
SEALED_FIELD = "sealed"


def encode_message(obj):
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def decode_message(data):
    try:
        msg = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessage(f"Undecodable message: {e}") from e
    if not isinstance(msg, dict):
        raise MalformedMessage(f"Expected a JSON object, got {type(msg).__name__}")
    return msg


def is_handshake(msg):
    return HANDSHAKE_FIELD in msg


def handshake_message(public_bytes):
    return {HANDSHAKE_FIELD: b64encode(public_bytes)}


def check_payload(payload):
    """Application payloads are JSON objects that stay clear of the handshake field."""
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a dict")
    if HANDSHAKE_FIELD in payload:
        raise ValueError(f"'{HANDSHAKE_FIELD}' is reserved for the security handshake")


class SecurityHandshake:
    """
    One public key in each direction over an already connected transport.

    begin() generates the local key pair and sends it; receive() records the
    first public key the remote sends. The handshake is complete once both
    have happened, in either order.
    """

    def __init__(self, key_agreement):
        self.key_agreement = key_agreement
        self.key_pair = None
        self.remote_public_key = None
        self._shared_key = None

    @property
    def sent(self):
        return self.key_pair is not None

    @property
    def complete(self):
        return self.sent and self.remote_public_key is not None

    def begin(self, send):
        if self.sent:
            return
        # KeyGenError propagates to the caller; it is fatal to the session
        self.key_pair = self.key_agreement.generate_key_pair()
        logger.debug("Sending local public key")
        send(encode_message(handshake_message(self.key_pair.public_key)))

    def receive(self, msg):
        """Record the remote key from a handshake message. Returns False for a repeat."""
        public_bytes = b64decode(msg[HANDSHAKE_FIELD])
        # an unusable key is never recorded
        self.key_agreement.load_public_key(public_bytes)
        if self.remote_public_key is not None:
            if public_bytes != self.remote_public_key:
                logger.warning("Ignoring second, different public key from peer")
            return False
        self.remote_public_key = public_bytes
        logger.debug("Recorded remote public key")
        return True

    def shared_key(self):
        if not self.complete:
            return None
        if self._shared_key is None:
            self._shared_key = self.key_agreement.derive_shared_key(self.key_pair, self.remote_public_key)
        return self._shared_key

    def seal(self, payload):
        sealed = self.key_agreement.seal(self.shared_key(), encode_message(payload))
        return {SEALED_FIELD: b64encode(sealed)}

    def open(self, msg):
        if SEALED_FIELD not in msg:
            raise MalformedMessage("Expected a sealed payload")
        plaintext = self.key_agreement.open(self.shared_key(), b64decode(msg[SEALED_FIELD]))
        return decode_message(plaintext)
