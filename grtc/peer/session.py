import logging
import threading
from enum import Enum

from grtc.crypto.keys import KeyAgreement
from grtc.peer.discovery import POLL_INTERVAL, Discovery
from grtc.protocol.errors import (
    ConnectTimeout,
    GrtcError,
    KeyGenError,
    MalformedMessage,
    NotReady,
    PublishError,
    StoreUnavailable,
    TransportError,
)
from grtc.protocol.handler import SecurityHandshake, check_payload, decode_message, encode_message, is_handshake
from grtc.protocol.json_handler import decode_signal, encode_signal

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class Role(Enum):
    INITIATOR = "initiator"
    JOINEE = "joinee"


class ConnectionState(Enum):
    IDLE = "idle"
    OFFER_PENDING = "offer_pending"
    OFFER_PUBLISHED = "offer_published"
    PEER_DISCOVERED = "peer_discovered"
    TRANSPORT_CONNECTING = "transport_connecting"
    TRANSPORT_CONNECTED = "transport_connected"
    SECURITY_PENDING = "security_pending"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = (ConnectionState.FAILED, ConnectionState.CLOSED)


class Session:
    """
    One two-party rendezvous in one room.

    The initiator publishes its offer and then starts polling; the joinee
    polls straight away, since the offer may already be waiting. The first
    signal discovered goes to the transport. Once the transport connects,
    public keys are exchanged and the session becomes READY.

    Every entry point (discovery thread, transport threads, timer, caller)
    runs under one re-entrant lock, so events are applied one at a time.
    Callbacks are invoked with that lock held. Store writes (publish and
    the teardown clear) run on worker threads outside the lock, so neither
    start() nor close() waits on the store.

    Errors end in FAILED. An explicit close() ends in CLOSED instead, a
    terminal state of its own that does not fire the failure callbacks.
    """

    def __init__(self, room_id, role, store, transport, key_agreement=None,
                 poll_interval=POLL_INTERVAL, connect_timeout=None, encrypt_payloads=False):
        self.room_id = room_id
        self.role = Role(role)
        self.store = store
        self.transport = transport
        self.connect_timeout = connect_timeout
        self.encrypt_payloads = encrypt_payloads
        self.state = ConnectionState.IDLE
        self.local_signal = None
        self.remote_signal = None
        self.error = None
        self.handshake = SecurityHandshake(key_agreement or KeyAgreement())
        self.discovery = Discovery(store, room_id, self._on_peer_found,
                                   own_signal=lambda: self.local_signal, interval=poll_interval)
        self._lock = threading.RLock()
        self._settled = threading.Event()
        self._connected = False
        self._connect_timer = None
        self._pending_data = []
        self._callbacks = {"peer_connected": [], "ready": [], "data": [], "failure": []}

    @property
    def seen_peers(self):
        return frozenset(self.discovery.seen)

    @property
    def remote_public_key(self):
        return self.handshake.remote_public_key

    def on_peer_connected(self, callback):
        self._register("peer_connected", callback)

    def on_ready(self, callback):
        self._register("ready", callback)

    def on_data(self, callback):
        self._register("data", callback)

    def on_failure(self, callback):
        self._register("failure", callback)

    def _register(self, event, callback):
        callbacks = self._callbacks[event]
        if callback not in callbacks:
            callbacks.append(callback)

    def _fire(self, event, *args):
        for callback in list(self._callbacks[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"{event} callback raised")

    def _transition(self, new_state):
        logger.debug(f"Room {self.room_id} [{self.role.value}]: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state == ConnectionState.READY or new_state in TERMINAL_STATES:
            self._settled.set()

    def _terminal(self):
        return self.state in TERMINAL_STATES

    def start(self):
        with self._lock:
            if self.state != ConnectionState.IDLE:
                raise RuntimeError(f"Session already started (state {self.state.value})")
            self.transport.set_handlers(
                on_signal=self._on_local_signal,
                on_connect=self._on_connected,
                on_data=self._on_data,
                on_error=self._on_transport_error,
            )
            self._transition(ConnectionState.OFFER_PENDING)
            if self.role == Role.JOINEE:
                self.discovery.start()
            try:
                self.transport.start()
            except TransportError as e:
                self._fail(e)
        return self

    def wait_ready(self, timeout=None):
        """Block until READY or a terminal state. Returns True when READY."""
        self._settled.wait(timeout)
        return self.state == ConnectionState.READY

    def _on_local_signal(self, signal):
        with self._lock:
            if self._terminal():
                return
            if self.local_signal is not None:
                logger.warning("Transport produced a second local signal; ignoring it")
                return
            self.local_signal = encode_signal(signal)
            self._in_background(self._publish, self.local_signal)

    def _in_background(self, target, *args):
        threading.Thread(target=target, args=args, name=f"session-{self.room_id}", daemon=True).start()

    def _publish(self, signal):
        try:
            self.store.set(self.room_id, signal)
            error = None
        except StoreUnavailable as e:
            error = e
        with self._lock:
            late = self._terminal()
            if not late:
                self._on_published(error)
        if late and error is None:
            # landed after teardown cleared the room
            self._clear_room()

    def _on_published(self, error):
        if error is not None:
            self._fail(PublishError(f"Could not publish signal to room {self.room_id}: {error}"))
            return
        logger.debug(f"Published local signal to room {self.room_id}")
        if self.state == ConnectionState.OFFER_PENDING:
            self._transition(ConnectionState.OFFER_PUBLISHED)
        if not self._connected:
            self.discovery.start()

    def _on_peer_found(self, signal):
        with self._lock:
            if self._terminal():
                return
            if self.remote_signal is not None:
                logger.warning(f"Room {self.room_id} already has a counterpart; ignoring extra peer signal")
                return
            try:
                remote = decode_signal(signal)
            except MalformedMessage as e:
                logger.warning(f"Dropping peer signal: {e}")
                return
            previous = self.state
            self.remote_signal = signal
            self._transition(ConnectionState.PEER_DISCOVERED)
            try:
                self.transport.signal(remote)
            except MalformedMessage as e:
                logger.warning(f"Transport rejected peer signal: {e}")
                self.remote_signal = None
                self._transition(previous)
                return
            except TransportError as e:
                self._fail(e)
                return
            if self.state == ConnectionState.PEER_DISCOVERED:
                self._transition(ConnectionState.TRANSPORT_CONNECTING)
                self._start_connect_timer()

    def _start_connect_timer(self):
        if self.connect_timeout is None:
            return
        self._connect_timer = threading.Timer(self.connect_timeout, self._on_connect_timeout)
        self._connect_timer.daemon = True
        self._connect_timer.start()

    def _cancel_connect_timer(self):
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _on_connect_timeout(self):
        with self._lock:
            if self.state in (ConnectionState.PEER_DISCOVERED, ConnectionState.TRANSPORT_CONNECTING):
                self._fail(ConnectTimeout(f"No connection within {self.connect_timeout}s"))

    def _on_connected(self):
        with self._lock:
            if self._terminal() or self._connected:
                return
            self._connected = True
            self._cancel_connect_timer()
            self._transition(ConnectionState.TRANSPORT_CONNECTED)
            self.discovery.stop()
            self._fire("peer_connected")
            if self._terminal():
                return
            self._transition(ConnectionState.SECURITY_PENDING)
            try:
                self.handshake.begin(self.transport.send)
            except (KeyGenError, TransportError) as e:
                self._fail(e)
                return
            self._check_ready()

    def _on_data(self, data):
        with self._lock:
            if self._terminal():
                return
            try:
                msg = decode_message(data)
            except MalformedMessage as e:
                logger.warning(f"Dropping malformed message from peer: {e}")
                return
            if is_handshake(msg):
                try:
                    self.handshake.receive(msg)
                except MalformedMessage as e:
                    logger.warning(f"Dropping malformed handshake message: {e}")
                    return
                self._check_ready()
                return
            if self.state != ConnectionState.READY:
                self._pending_data.append(msg)
                return
            self._deliver(msg)

    def _deliver(self, msg):
        if self.encrypt_payloads:
            try:
                msg = self.handshake.open(msg)
            except MalformedMessage as e:
                logger.warning(f"Dropping payload that could not be opened: {e}")
                return
        self._fire("data", msg)

    def _check_ready(self):
        if self.state != ConnectionState.SECURITY_PENDING or not self.handshake.complete:
            return
        if self.encrypt_payloads:
            try:
                self.handshake.shared_key()
            except MalformedMessage as e:
                self._fail(KeyGenError(f"Could not derive a shared key: {e}"))
                return
        self._transition(ConnectionState.READY)
        self._fire("ready")
        pending, self._pending_data = self._pending_data, []
        for msg in pending:
            if self._terminal():
                break
            self._deliver(msg)

    def _on_transport_error(self, error):
        with self._lock:
            if not isinstance(error, GrtcError):
                error = TransportError(str(error))
            self._fail(error)

    def send(self, payload):
        check_payload(payload)
        with self._lock:
            if self.state != ConnectionState.READY:
                raise NotReady(f"Session in room {self.room_id} is {self.state.value}, not ready")
            msg = self.handshake.seal(payload) if self.encrypt_payloads else payload
            try:
                self.transport.send(encode_message(msg))
            except TransportError as e:
                self._fail(e)
                raise

    def close(self):
        with self._lock:
            if self._terminal():
                return
            self._transition(ConnectionState.CLOSED)
            self._release()

    def _fail(self, error):
        if self._terminal():
            return
        logger.error(f"Session in room {self.room_id} failed: {error}")
        self.error = error
        self._transition(ConnectionState.FAILED)
        self._release()
        self._fire("failure", error)

    def _release(self):
        self.discovery.stop()
        self._cancel_connect_timer()
        self.transport.detach()
        self.transport.close()
        if self.local_signal is not None:
            # a stale offer would confuse the next pair to use this room id
            self._in_background(self._clear_room)

    def _clear_room(self):
        try:
            self.store.force_clear(self.room_id)
        except StoreUnavailable as e:
            logger.warning(f"Could not clear room {self.room_id}: {e}")


def start_session(room_id, role, store, transport, key_agreement=None, **options):
    return Session(room_id, role, store, transport, key_agreement, **options).start()
