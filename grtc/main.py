import json
import logging
import sys

from grtc.config import load_config
from grtc.crypto.keys import KeyAgreement
from grtc.peer.session import Session
from grtc.peer.store import HttpSignalStore, new_room_id
from grtc.peer.transport import SocketTransport
from grtc.protocol.errors import GrtcError, NotReady

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

HELP = (
    "Commands:\n"
    "  status        Show the session state\n"
    "  peers         Show the peer signals seen in the room\n"
    "  send <text>   Send a message to the peer\n"
    "  exit          Quit"
)


def build_session(config):
    room_id = config["room_id"] or new_room_id()
    initiator = config["role"] == "initiator"
    store = HttpSignalStore(config["store_url"], timeout=config["store_timeout"])
    transport = SocketTransport(
        initiator,
        listen_host=config["listen_host"],
        listen_port=config["listen_port"],
        advertise_host=config["advertise_host"],
        answer_timeout=config["connect_timeout"],
    )
    return Session(
        room_id, config["role"], store, transport, KeyAgreement(),
        poll_interval=config["poll_interval"],
        connect_timeout=config["connect_timeout"],
        encrypt_payloads=config["encrypt_payloads"],
    )


def run_cli(session):
    while True:
        try:
            cmd = input(">>> ").strip()
        except (KeyboardInterrupt, EOFError):
            logger.debug("CLI interrupted by user")
            print("\nInterrupted. Exiting")
            break
        if cmd == "exit":
            print("Exiting")
            break
        elif cmd == "help":
            print(HELP)
        elif cmd == "status":
            print(f"Room {session.room_id} [{session.role.value}]: {session.state.value}")
            if session.error is not None:
                print(f"[✗] {session.error}")
        elif cmd == "peers":
            if not session.seen_peers:
                print("No peers found.")
            for signal in sorted(session.seen_peers):
                print(f" - {signal}")
        elif cmd.startswith("send "):
            try:
                session.send({"text": cmd[len("send "):]})
            except NotReady as e:
                print(f"[!] {e}")
            except GrtcError as e:
                print(f"[✗] Send failed: {e}")
        elif cmd:
            print("Unknown command. Type 'help'.")


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config = load_config(argv[0] if argv else "config.yaml")
    session = build_session(config)

    session.on_peer_connected(lambda: print("[✓] Peer connected, exchanging keys"))
    session.on_ready(lambda: print("[✓] Secure channel ready"))
    session.on_data(lambda msg: print(f"\n<<< {msg.get('text', json.dumps(msg))}"))
    session.on_failure(lambda error: print(f"\n[✗] Session failed: {error}"))

    if session.role.value == "initiator":
        print(f"Share this room id with your peer: {session.room_id}")
    session.start()
    try:
        run_cli(session)
    finally:
        session.close()


if __name__ == "__main__":
    main()
