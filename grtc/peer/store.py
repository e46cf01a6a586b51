import base64
import json
import logging
import uuid

import requests

from grtc.protocol.errors import StoreUnavailable

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


def new_room_id():
    """Time-based unique id for a fresh collaboration room."""
    return str(uuid.uuid1())


class SignalStore:
    """
    Rendezvous key-value store holding the published signals of one room.
    Implementations raise StoreUnavailable on any failure to talk to the store.
    """

    def get(self, room_id):
        raise NotImplementedError

    def set(self, room_id, signal):
        raise NotImplementedError

    def force_clear(self, room_id):
        raise NotImplementedError


class HttpSignalStore(SignalStore):
    """
    Store reached over plain HTTP GETs:

        {url}/get/{room}                    -> JSON list of published signal texts
        {url}/set/{room}/{b64 signal}       -> publish
        {url}/clear/{room}?force=true       -> remove everything, no checks

    Each call is an independent request, so one instance may be shared
    between sessions and threads.
    """

    def __init__(self, url, timeout=10):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def _request(self, path, params=None):
        try:
            resp = requests.get(f"{self.url}/{path}", params=params, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise StoreUnavailable(f"Store request to /{path} failed: {e}") from e
        return resp

    def get(self, room_id):
        resp = self._request(f"get/{room_id}")
        if not resp.content.strip():
            return []
        try:
            values = resp.json()
        except ValueError as e:
            raise StoreUnavailable(f"Store returned invalid JSON: {e}") from e
        if values is None:
            return []
        if not isinstance(values, list):
            values = [values]
        signals = []
        for value in values:
            # values come back as the JSON signal text; only the set path is base64
            if isinstance(value, dict):
                value = json.dumps(value)
            if not isinstance(value, str):
                logger.warning(f"Skipping non-signal value in room {room_id}: {value!r}")
                continue
            signals.append(value)
        return signals

    def set(self, room_id, signal):
        logger.debug(f"Publishing signal to room {room_id}")
        self._request(f"set/{room_id}/{self.encode(signal)}")

    def force_clear(self, room_id):
        logger.debug(f"Force clearing room {room_id}")
        self._request(f"clear/{room_id}", params={"force": "true"})

    @staticmethod
    def encode(signal):
        return base64.urlsafe_b64encode(signal.encode("utf-8")).decode("ascii")
