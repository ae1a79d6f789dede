"""Realtime transport client.

Connects with the best transport the server offers (socket, then push
stream, then polling), prints every transport switch and incoming message.

    pip install realtime-transport

    python examples/client_python.py \
        --socket-url ws://localhost:8000/ws \
        --push-stream-url http://localhost:8000/events \
        --polling-url http://localhost:8000/api \
        --token <JWT>
"""

import argparse
import asyncio
import logging
import signal

from realtime_transport import MemoryCursorStore, connect


async def main(args: argparse.Namespace):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    manager = connect(
        socket_url=args.socket_url,
        push_stream_url=args.push_stream_url,
        polling_url=args.polling_url,
        auth_token=args.token,
        storage=MemoryCursorStore(),
        enable_upgrade_attempts=args.upgrade,
    )
    # registered before connecting so the initial switch is printed too
    manager.on(
        "transport_switch",
        lambda ev: print(f"-- transport {ev.data['from']} -> {ev.data['to']} ({ev.data['reason']})"),
    )
    manager.on("message", lambda ev: print(f"[{ev.transport}] {ev.data}"))
    manager.on("close", lambda ev: stop.set())

    manager.connect()
    print("Listening for events... (Ctrl+C to stop)\n")
    try:
        await stop.wait()
        print(f"\nFinal state: {manager.get_state()}")
    finally:
        await manager.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Realtime transport client")
    parser.add_argument("--socket-url", default="ws://localhost:8000/ws")
    parser.add_argument("--push-stream-url", default="http://localhost:8000/events")
    parser.add_argument("--polling-url", default="http://localhost:8000/api")
    parser.add_argument("--token", default="", help="JWT passed to every transport")
    parser.add_argument("--upgrade", action="store_true", help="Probe for better transports")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    asyncio.run(main(args))
