import argparse
import asyncio
import logging
from pathlib import Path

from nacl.signing import SigningKey

from fitchat.config import Settings
from fitchat.crypto.keys import export_key, generate_asymmetric_keypair, generate_symmetric_key
from fitchat.messaging.envelope import Envelope
from fitchat.messaging.service import ChatSession, create_session
from fitchat.network.client import RelayClient
from fitchat.network.relay import RelayServer


DEFAULT_KEYS_DIR = Path("keys")
PRIVATE_KEY_FILE = "rsa_private.key"
PUBLIC_KEY_FILE = "rsa_public.key"
TOPIC_KEY_FILE = "topic.key"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fitchat", description="fitchat encrypted chat CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--relay-host", help="Relay address (default from FITCHAT_RELAY_HOST)")
    parser.add_argument("--relay-port", type=int, help="Relay port (default from FITCHAT_RELAY_PORT)")
    parser.add_argument("--encryption", choices=["none", "aes-gcm"], help="Payload encryption mode")
    parser.add_argument("--topic-key", help="Base64 AES key shared on the topic (aes-gcm mode)")
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Generate an RSA key pair for key wrapping")
    keygen.add_argument("--out", default=str(DEFAULT_KEYS_DIR))
    keygen.add_argument("--with-topic-key", action="store_true", help="Also generate a shared AES topic key")

    relay = sub.add_parser("relay", help="Run a relay node")
    relay.add_argument("--host", default="0.0.0.0")
    relay.add_argument("--port", type=int, help="Listen port (default: relay port setting)")

    send = sub.add_parser("send", help="Send one message")
    send.add_argument("user_id")
    send.add_argument("receiver")
    send.add_argument("message")

    listen = sub.add_parser("listen", help="Print stored and live messages for a user")
    listen.add_argument("user_id")

    dash = sub.add_parser("dashboard", help="Start the HTTP dashboard for a user")
    dash.add_argument("user_id")
    dash.add_argument("--ui-port", type=int, default=8000, help="HTTP port for the dashboard")

    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.relay_host:
        settings.relay_host = args.relay_host
    if args.relay_port:
        settings.relay_port = args.relay_port
    if args.encryption:
        settings.encryption_mode = args.encryption
    if args.topic_key:
        settings.topic_key_b64 = args.topic_key
    return settings


def build_session(user_id: str, settings: Settings) -> ChatSession:
    client = RelayClient(
        SigningKey.generate(),
        settings.hmac_key,
        [(settings.relay_host, settings.relay_port)],
    )
    return create_session(user_id, client, settings)


def _format(envelope: Envelope) -> str:
    return f"[MSG {envelope.sender} -> {envelope.receiver}] {envelope.content}"


def cmd_keygen(args: argparse.Namespace) -> None:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    pair = generate_asymmetric_keypair()
    private_path = out_dir / PRIVATE_KEY_FILE
    public_path = out_dir / PUBLIC_KEY_FILE
    private_path.write_text(export_key(pair.private_key), encoding="ascii")
    public_path.write_text(export_key(pair.public_key), encoding="ascii")
    print(f"Private key: {private_path.resolve()}")
    print(f"Public key:  {public_path.resolve()}")

    if args.with_topic_key:
        topic_path = out_dir / TOPIC_KEY_FILE
        topic_path.write_text(export_key(generate_symmetric_key()), encoding="ascii")
        print(f"Topic key:   {topic_path.resolve()}")


async def run_relay(settings: Settings, host: str, port: int) -> None:
    server = RelayServer(hmac_key=settings.hmac_key, host=host, port=port)
    await server.start()
    print(f"[RELAY] Listening on {host}:{server.port} (node={server.node_id.hex()[:12]}...)")
    await server.serve_forever()


async def run_send(settings: Settings, user_id: str, receiver: str, message: str) -> bool:
    session = build_session(user_id, settings)
    try:
        if not await session.connect():
            return False
        return await session.send_message(receiver, message)
    finally:
        for note in session.drain_notifications():
            print(f"[{note.title}] {note.description}")
        await session.close()


async def run_listen(settings: Settings, user_id: str) -> None:
    session = build_session(user_id, settings)
    session.subscribe(lambda envelope: print(_format(envelope)))
    try:
        if not await session.connect():
            for note in session.drain_notifications():
                print(f"[{note.title}] {note.description}")
            return
        print(f"[LISTEN] Connected as {user_id}. Ctrl-C to stop.")
        await asyncio.Event().wait()
    finally:
        await session.close()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(message)s",
    )
    settings = load_settings(args)

    if args.command == "keygen":
        cmd_keygen(args)
        return

    if args.command == "relay":
        port = args.port if args.port is not None else settings.relay_port
        try:
            asyncio.run(run_relay(settings, args.host, port))
        except KeyboardInterrupt:
            print("\n[RELAY] Shutting down.")
        return

    if args.command == "send":
        if asyncio.run(run_send(settings, args.user_id, args.receiver, args.message)):
            print("Message sent.")
        else:
            print("Failed to send message.")
            raise SystemExit(1)
        return

    if args.command == "listen":
        try:
            asyncio.run(run_listen(settings, args.user_id))
        except KeyboardInterrupt:
            print("\n[LISTEN] Stopped.")
        return

    if args.command == "dashboard":
        from fitchat.ui.dashboard import start_dashboard

        start_dashboard(build_session(args.user_id, settings), port=args.ui_port)
        return

    parser.error("unknown command")


if __name__ == "__main__":
    main()
