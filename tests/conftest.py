"""Shared test fixtures and in-memory doubles for grtc."""

from __future__ import annotations

import threading
import time

import pytest

from grtc.peer.store import SignalStore
from grtc.peer.transport import Transport
from grtc.protocol.errors import MalformedMessage, StoreUnavailable
from grtc.protocol.json_handler import encode_signal

OFFER_I = {"type": "offer", "sdp": "offer-I"}
OFFER_J = {"type": "answer", "sdp": "offer-J"}


def wait_for(predicate, timeout=2.0, interval=0.005):
    """Poll predicate until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class MemorySignalStore(SignalStore):
    """Thread-safe in-memory rendezvous store that records every call."""

    def __init__(self):
        self.rooms = {}
        self.calls = []
        self.get_failures = 0
        self.set_failures = 0
        self.clear_failures = 0
        self._lock = threading.Lock()

    def count(self, verb):
        with self._lock:
            return sum(1 for name, _ in self.calls if name == verb)

    def get(self, room_id):
        with self._lock:
            self.calls.append(("get", room_id))
            if self.get_failures:
                self.get_failures -= 1
                raise StoreUnavailable("store down")
            return list(self.rooms.get(room_id, []))

    def set(self, room_id, signal):
        with self._lock:
            self.calls.append(("set", room_id))
            if self.set_failures:
                self.set_failures -= 1
                raise StoreUnavailable("store down")
            values = self.rooms.setdefault(room_id, [])
            if signal not in values:
                values.append(signal)

    def force_clear(self, room_id):
        with self._lock:
            self.calls.append(("clear", room_id))
            if self.clear_failures:
                self.clear_failures -= 1
                raise StoreUnavailable("store down")
            self.rooms.pop(room_id, None)

    def publish(self, room_id, signal):
        """Publish on behalf of some other party, without recording a call."""
        with self._lock:
            self.rooms.setdefault(room_id, []).append(encode_signal(signal))


class BlockingSignalStore(MemorySignalStore):
    """Memory store whose writes wait until the test releases them."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def set(self, room_id, signal):
        self.release.wait(5.0)
        super().set(room_id, signal)

    def force_clear(self, room_id):
        self.release.wait(5.0)
        super().force_clear(room_id)


class FakeTransport(Transport):
    """Scripted transport: tests drive connect/data/error events by hand."""

    def __init__(self, initiator, offer=None, answer=None):
        super().__init__(initiator)
        self.offer = offer
        self.answer = answer
        self.remote_signals = []
        self.sent = []
        self.closed = False
        self.reject_signals = False
        self.rejected = []

    def start(self):
        if self.initiator and self.offer is not None:
            self._emit_signal(self.offer)

    def signal(self, remote_signal):
        if self.reject_signals:
            self.rejected.append(remote_signal)
            raise MalformedMessage("not a signal this transport understands")
        self.remote_signals.append(remote_signal)
        if not self.initiator and self.answer is not None:
            self._emit_signal(self.answer)

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.closed = True

    def connect(self):
        self._emit_connected()

    def deliver(self, data):
        self._emit_data(data)

    def fail(self, error):
        self._emit_error(error)


class LinkedTransport(FakeTransport):
    """Half of an in-process pair: the initiator connects both ends on the answer."""

    def __init__(self, initiator, offer=None, answer=None):
        super().__init__(initiator, offer, answer)
        self.other = None

    def signal(self, remote_signal):
        super().signal(remote_signal)
        if self.initiator:
            self.other.connect()
            self.connect()

    def send(self, data):
        super().send(data)
        self.other.deliver(data)


def linked_pair(offer=OFFER_I, answer=OFFER_J):
    initiator = LinkedTransport(True, offer=offer)
    joinee = LinkedTransport(False, answer=answer)
    initiator.other, joinee.other = joinee, initiator
    return initiator, joinee


@pytest.fixture
def store() -> MemorySignalStore:
    """Provide an empty in-memory rendezvous store."""
    return MemorySignalStore()
