import json

from grtc.protocol.errors import MalformedMessage


def encode_signal(signal):
    """
    Canonical string form of a signal. Two signals are the same signal
    exactly when their canonical forms are equal.
    """
    if isinstance(signal, str):
        signal = decode_signal(signal)
    return json.dumps(signal, sort_keys=True, separators=(",", ":"))


def decode_signal(text):
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Undecodable signal: {e}") from e


def send_frame(sock, data):
    """
    Send one frame over a socket, ending with a newline.
    """
    if b"\n" in data:
        raise ValueError("Frame payload must not contain a newline")
    sock.sendall(data + b"\n")


def iter_frames(sock, bufsize=4096):
    """
    Yield newline-delimited frames from a socket until the peer closes it.
    Bytes following a delimiter are kept for the next frame.
    """
    buffer = b""
    while True:
        chunk = sock.recv(bufsize)
        if not chunk:
            return
        buffer += chunk
        while b"\n" in buffer:
            frame, buffer = buffer.split(b"\n", 1)
            yield frame


def recv_frame(frames):
    try:
        return next(frames)
    except StopIteration:
        raise ConnectionError("Socket closed while receiving data.")
