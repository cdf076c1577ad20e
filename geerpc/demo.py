"""Example service and a small program that calls it concurrently."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import queue
import socket
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

from geerpc.client import dial
from geerpc.codec import CodecError
from geerpc.server import Server

logger = logging.getLogger(__name__)

__all__ = ["Args", "Foo", "main", "start_server"]


@dataclasses.dataclass
class Args:
    """Two numbers to add."""

    num1: int = 0
    num2: int = 0


class Foo:
    """Example service with one remote method."""

    def Sum(self, args: Args) -> int:
        """Return the sum of the two numbers."""
        return args.num1 + args.num2


def start_server(address_queue: queue.Queue) -> None:
    """Serve Foo on a free local port, putting its address on ``address_queue``."""
    server = Server()
    server.register(Foo())
    listener = socket.create_server(("127.0.0.1", 0))
    host, port = listener.getsockname()[:2]
    address = f"{host}:{port}"
    logger.info("start rpc server on %s", address)
    address_queue.put(address)
    with listener:
        server.accept(listener)


def main(argv: list[str] | None = None) -> int:
    """Start a server and call Foo.Sum on it concurrently, printing each result."""
    parser = argparse.ArgumentParser(
        prog="geerpc-demo", description="Call Foo.Sum on a local RPC server."
    )
    parser.add_argument("-n", "--calls", type=int, default=5, help="number of calls")
    options = parser.parse_args(argv)

    addresses: queue.Queue = queue.Queue()
    threading.Thread(target=start_server, args=(addresses,), daemon=True).start()
    address = addresses.get()

    requests = [Args(i, i * i) for i in range(options.calls)]
    try:
        with dial("tcp", address) as client:
            with ThreadPoolExecutor(max_workers=max(len(requests), 1)) as pool:
                futures = [pool.submit(client.call, "Foo.Sum", args) for args in requests]
                replies = [future.result() for future in futures]
    except (OSError, EOFError, RuntimeError, CodecError) as exc:
        print(f"call Foo.Sum error: {exc}", file=sys.stderr)
        return 1

    for args, reply in zip(requests, replies):
        print(f"{args.num1} + {args.num2} = {reply}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())