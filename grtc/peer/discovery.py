import logging
import threading

from grtc.protocol.errors import MalformedMessage, StoreUnavailable
from grtc.protocol.json_handler import encode_signal

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

POLL_INTERVAL = 5.0


def set_difference(set_a, set_b):
    """Elements of set_a missing from set_b. Note: a - b != b - a."""
    difference = set(set_a)
    for elem in set_b:
        difference.discard(elem)
    return difference


class Discovery:
    """
    Polls a room in the signal store and reports every signal it has not
    seen before, except the caller's own.

    One poll runs as soon as start() is called, then one every `interval`
    seconds on a daemon thread until stop().
    """

    def __init__(self, store, room_id, on_peer_found, own_signal=lambda: None, interval=POLL_INTERVAL):
        self.store = store
        self.room_id = room_id
        self.on_peer_found = on_peer_found
        self.own_signal = own_signal
        self.interval = interval
        self.seen = set()
        self.poll_count = 0
        self._lock = threading.Lock()
        self._thread = None
        self._stop_event = None

    @property
    def running(self):
        return self._thread is not None

    def start(self):
        with self._lock:
            if self._thread is not None:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name=f"discovery-{self.room_id}", daemon=True)
            self._thread.start()
        logger.debug(f"Discovery started for room {self.room_id}")

    def stop(self):
        with self._lock:
            if self._thread is None:
                return
            self._stop_event.set()
            self._thread = None
            self._stop_event = None
        logger.debug(f"Discovery stopped for room {self.room_id} after {self.poll_count} polls")

    def _run(self, stop_event):
        self.poll(stop_event)
        while not stop_event.wait(self.interval):
            with self._lock:
                self.poll_count += 1
            self.poll(stop_event)

    def poll(self, stop_event=None):
        """Run one poll. Returns the signals that were newly found."""
        try:
            fetched = self.store.get(self.room_id)
        except StoreUnavailable as e:
            logger.warning(f"Poll of room {self.room_id} failed, retrying next tick: {e}")
            return []
        if stop_event is not None and stop_event.is_set():
            # response arrived after stop()
            return []

        candidates = set()
        for value in fetched:
            try:
                candidates.add(encode_signal(value))
            except MalformedMessage as e:
                logger.warning(f"Ignoring malformed signal in room {self.room_id}: {e}")

        own = self.own_signal()
        with self._lock:
            found = [s for s in set_difference(candidates, self.seen) if s != own]
            self.seen.update(found)

        for signal in found:
            logger.debug(f"New peer signal in room {self.room_id}")
            self.on_peer_found(signal)
        return found
