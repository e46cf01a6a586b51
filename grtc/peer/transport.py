import json
import logging
import secrets
import socket
import threading

from grtc.protocol.errors import MalformedMessage, TransportError
from grtc.protocol.json_handler import iter_frames, recv_frame, send_frame

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


def _noop(*args):
    pass


class Transport:
    """
    Direct peer channel negotiated by a single offer/answer exchange.

    Subclasses call _emit_signal / _emit_connected / _emit_data / _emit_error;
    the owner receives them through the handlers given to set_handlers().
    """

    def __init__(self, initiator, trickle=False):
        if trickle:
            raise ValueError("Incremental (trickle) signaling is not supported")
        self.initiator = initiator
        self.trickle = trickle
        self.detach()

    def set_handlers(self, on_signal=_noop, on_connect=_noop, on_data=_noop, on_error=_noop):
        self._on_signal = on_signal
        self._on_connect = on_connect
        self._on_data = on_data
        self._on_error = on_error

    def detach(self):
        self.set_handlers()

    def start(self):
        """Begin negotiation. An initiator emits its offer from here."""
        raise NotImplementedError

    def signal(self, remote_signal):
        """Accept the remote peer's signal (a decoded JSON object)."""
        raise NotImplementedError

    def send(self, data):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def _emit_signal(self, signal):
        self._on_signal(signal)

    def _emit_connected(self):
        self._on_connect()

    def _emit_data(self, data):
        self._on_data(data)

    def _emit_error(self, error):
        self._on_error(error)


def local_address():
    hostname = socket.gethostname()
    try:
        return socket.gethostbyname(hostname)
    except socket.gaierror:
        return "127.0.0.1"


class SocketTransport(Transport):
    """
    Transport over one TCP connection.

    The initiator listens and offers {"type": "offer", "host", "port"}. The
    joinee answers {"type": "answer", "token"} and dials the offered address,
    sending its token first. The initiator reports connected only once the
    answer has reached it through signal() and the tokens match, then
    acknowledges so the joinee reports connected too. After that, every
    frame is application data.
    """

    ACK = b'{"ack":true}'

    def __init__(self, initiator, trickle=False, listen_host="0.0.0.0", listen_port=0,
                 advertise_host=None, answer_timeout=None):
        super().__init__(initiator, trickle)
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.advertise_host = advertise_host
        self.answer_timeout = answer_timeout
        self.listener = None
        self.conn = None
        self.closed = False
        self._answer_token = None
        self._answered = threading.Event()
        self._send_lock = threading.Lock()

    def start(self):
        if not self.initiator:
            # a joinee stays silent until it has the initiator's offer
            return
        try:
            self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.listener.bind((self.listen_host, self.listen_port))
            self.listener.listen(1)
        except OSError as e:
            raise TransportError(f"Could not listen on {self.listen_host}:{self.listen_port}: {e}") from e
        port = self.listener.getsockname()[1]
        host = self.advertise_host or local_address()
        logger.debug(f"Listening for peer on {self.listen_host}:{port}, offering {host}:{port}")
        threading.Thread(target=self._accept, daemon=True).start()
        self._emit_signal({"type": "offer", "host": host, "port": port})

    def signal(self, remote_signal):
        kind = remote_signal.get("type") if isinstance(remote_signal, dict) else None
        if self.initiator:
            if kind != "answer" or "token" not in remote_signal:
                raise MalformedMessage(f"Initiator expected an answer, got {kind!r}")
            self._answer_token = remote_signal["token"]
            self._answered.set()
            return
        if kind != "offer" or "host" not in remote_signal or "port" not in remote_signal:
            raise MalformedMessage(f"Joinee expected an offer, got {kind!r}")
        token = secrets.token_hex(16)
        self._emit_signal({"type": "answer", "token": token})
        threading.Thread(
            target=self._dial, args=(remote_signal["host"], int(remote_signal["port"]), token), daemon=True).start()

    def _accept(self):
        try:
            conn, addr = self.listener.accept()
            logger.debug(f"Accepted connection from {addr}")
            frames = iter_frames(conn)
            hello = json.loads(recv_frame(frames).decode("utf-8"))
            while not self._answered.wait(0.5):
                if self.closed:
                    conn.close()
                    return
            if hello.get("token") != self._answer_token:
                conn.close()
                raise TransportError(f"Peer at {addr} presented a token that does not match its answer")
            self.conn = conn
            send_frame(conn, self.ACK)
        except (OSError, ValueError, AttributeError) as e:
            if not self.closed:
                self._emit_error(TransportError(f"Accepting peer connection failed: {e}"))
            return
        except TransportError as e:
            self._emit_error(e)
            return
        finally:
            if self.listener is not None:
                self.listener.close()
        self._emit_connected()
        self._read(frames)

    def _dial(self, host, port, token):
        try:
            conn = socket.create_connection((host, port), timeout=self.answer_timeout)
            conn.settimeout(None)
            logger.debug(f"Connected to peer at {host}:{port}")
            send_frame(conn, json.dumps({"token": token}).encode("utf-8"))
            frames = iter_frames(conn)
            if recv_frame(frames) != self.ACK:
                conn.close()
                raise TransportError(f"Peer at {host}:{port} did not acknowledge the answer")
            self.conn = conn
        except (OSError, ConnectionError) as e:
            if not self.closed:
                self._emit_error(TransportError(f"Could not connect to {host}:{port}: {e}"))
            return
        except TransportError as e:
            self._emit_error(e)
            return
        self._emit_connected()
        self._read(frames)

    def _read(self, frames):
        try:
            for frame in frames:
                self._emit_data(frame)
        except OSError as e:
            if not self.closed:
                self._emit_error(TransportError(f"Connection lost: {e}"))
            return
        if not self.closed:
            self._emit_error(TransportError("Peer closed the connection"))

    def send(self, data):
        if self.conn is None:
            raise TransportError("Not connected")
        with self._send_lock:
            try:
                send_frame(self.conn, data)
            except OSError as e:
                raise TransportError(f"Send failed: {e}") from e

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.detach()
        for sock in (self.conn, self.listener):
            if sock is None:
                continue
            try:
                # shutdown wakes threads blocked in accept() or recv()
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
