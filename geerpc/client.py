"""RPC client: calls remote methods over a codec-framed connection."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import queue
import socket
import threading
from typing import Any, Callable

from geerpc.codec import Codec, CodecError, Header, new_codec
from geerpc.server import DEFAULT_OPTION, Option

logger = logging.getLogger(__name__)

__all__ = [
    "Call",
    "Client",
    "ShutdownError",
    "dial",
    "dial_timeout",
    "new_client",
    "parse_options",
]

_READ_ERRORS = (EOFError, CodecError, OSError, ValueError)


class ShutdownError(ConnectionError):
    """Raised when a call is made on a client that is closed or shut down."""

    def __init__(self, message: str = "connection is shut down") -> None:
        super().__init__(message)


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}s"


@dataclasses.dataclass(eq=False)
class Call:
    """One invocation of a remote method; put on ``done`` when it completes."""

    service_method: str
    args: Any
    done: queue.Queue = dataclasses.field(default_factory=queue.Queue)
    seq: int = 0
    reply: Any = None
    error: BaseException | None = None
    _finished: threading.Event = dataclasses.field(
        default_factory=threading.Event, init=False, repr=False
    )
    _guard: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def _complete(self) -> None:
        with self._guard:
            if self._finished.is_set():
                return
            self._finished.set()
        self.done.put(self)

    def wait(self, timeout: float | None = None) -> Any:
        """Wait for the call to finish; return its reply or raise its error."""
        if not self._finished.wait(timeout):
            raise TimeoutError(
                f"rpc client: call {self.service_method} did not complete in time"
            )
        if self.error is not None:
            raise self.error
        return self.reply


class Client:
    """A connection to an RPC server that may carry many concurrent calls."""

    def __init__(self, codec: Codec, opt: Option) -> None:
        self._codec = codec
        self.opt = opt
        self._sending = threading.Lock()
        self._mu = threading.Lock()
        self._seq = 1  # 0 means an invalid call
        self._pending: dict[int, Call] = {}
        self._closing = False
        self._shutdown = False
        self._receiver = threading.Thread(target=self._receive, daemon=True)
        self._receiver.start()

    def close(self) -> None:
        """Close the connection; ShutdownError if it is already closed."""
        with self._mu:
            if self._closing:
                raise ShutdownError()
            self._closing = True
            self._codec.close()

    def is_available(self) -> bool:
        """True while the client is neither closed nor shut down."""
        with self._mu:
            return not self._shutdown and not self._closing

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        with contextlib.suppress(ShutdownError):
            self.close()

    def _register_call(self, call: Call) -> int:
        with self._mu:
            if self._closing or self._shutdown:
                raise ShutdownError()
            call.seq = self._seq
            self._pending[call.seq] = call
            self._seq += 1
            return call.seq

    def _remove_call(self, seq: int) -> Call | None:
        with self._mu:
            return self._pending.pop(seq, None)

    def _terminate_calls(self, err: BaseException | None) -> None:
        with self._sending, self._mu:
            self._shutdown = True
            error = err if err is not None else ShutdownError()
            for call in self._pending.values():
                call.error = error
                call._complete()
            self._pending.clear()

    def _receive(self) -> None:
        err: BaseException | None = None
        while err is None:
            try:
                header = self._codec.read_header()
            except _READ_ERRORS as exc:
                err = exc
                break
            call = self._remove_call(header.seq)
            body = None
            try:
                body = self._codec.read_body()
            except _READ_ERRORS as exc:
                err = exc
            if call is None:
                continue
            if header.error:
                call.error = RuntimeError(header.error)
            elif err is not None:
                call.error = CodecError(f"reading body {err}")
            else:
                call.reply = body
            call._complete()
        self._terminate_calls(err)

    def _send(self, call: Call) -> None:
        with self._sending:
            try:
                seq = self._register_call(call)
            except ShutdownError as exc:
                call.error = exc
                call._complete()
                return
            header = Header(service_method=call.service_method, seq=seq, error="")
            try:
                self._codec.write(header, call.args)
            except (CodecError, OSError, ValueError) as exc:
                # The call may already be gone if its response arrived first.
                pending = self._remove_call(seq)
                if pending is not None:
                    pending.error = exc
                    pending._complete()

    def go(self, service_method: str, args: Any, done: queue.Queue | None = None) -> Call:
        """Start a call without waiting; the finished Call is put on ``done``."""
        call = Call(
            service_method=service_method,
            args=args,
            done=done if done is not None else queue.Queue(),
        )
        self._send(call)
        return call

    def call(self, service_method: str, args: Any, timeout: float | None = None) -> Any:
        """Call a remote method and return its reply, waiting at most ``timeout`` seconds."""
        call = self.go(service_method, args)
        if not call._finished.wait(timeout):
            self._remove_call(call.seq)
            raise TimeoutError("rpc client: call failed: context deadline exceeded")
        if call.error is not None:
            raise call.error
        return call.reply


class _SocketStream:
    """Buffered byte stream over a socket that fully closes the socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._file = sock.makefile("rwb")

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def readline(self) -> bytes:
        return self._file.readline()

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def flush(self) -> None:
        self._file.flush()

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError, ValueError):
            self._file.close()
        self._sock.close()


def parse_options(*args: Option | None) -> Option:
    """Pick the option to use from at most one optional argument."""
    if not args or args[0] is None:
        return DEFAULT_OPTION
    if len(args) != 1:
        raise ValueError("number of options is more than 1")
    opt = args[0]
    opt.magic_number = DEFAULT_OPTION.magic_number
    if not opt.codec_type:
        opt.codec_type = DEFAULT_OPTION.codec_type
    return opt


def new_client(conn: Any, opt: Option) -> Client:
    """Send ``opt`` on ``conn`` and return a client speaking its codec."""
    stream = _SocketStream(conn) if isinstance(conn, socket.socket) else conn
    try:
        codec = new_codec(opt.codec_type, stream)
    except CodecError as exc:
        logger.error("rpc client: codec error: %s", exc)
        raise
    try:
        stream.write(opt.to_json())
        flush = getattr(stream, "flush", None)
        if flush is not None:
            flush()
    except (OSError, ValueError) as exc:
        logger.error("rpc client: options error: %s", exc)
        with contextlib.suppress(OSError, ValueError):
            stream.close()
        raise
    return Client(codec, opt)


def _connect(network: str, address: str, timeout: float) -> socket.socket:
    limit = timeout if timeout and timeout > 0 else None
    if network in ("tcp", "tcp4", "tcp6"):
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address {address}")
        host = host.strip("[]") or "localhost"
        sock = socket.create_connection((host, int(port)), timeout=limit)
    elif network == "unix":
        family = getattr(socket, "AF_UNIX", None)
        if family is None:
            raise ValueError("unix sockets are not supported on this platform")
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.settimeout(limit)
            sock.connect(address)
        except OSError:
            sock.close()
            raise
    else:
        raise ValueError(f"unknown network {network}")
    sock.settimeout(None)
    return sock


def dial_timeout(
    factory: Callable[[socket.socket, Option], Client | None],
    network: str,
    address: str,
    *args: Option | None,
) -> Client | None:
    """Connect and build a client with ``factory``, within the option's connect timeout."""
    opt = parse_options(*args)
    conn = _connect(network, address, opt.connect_timeout)
    results: queue.Queue = queue.Queue(maxsize=1)

    def build() -> None:
        try:
            results.put((factory(conn, opt), None))
        except Exception as exc:  # handed back to the dialing thread
            results.put((None, exc))

    threading.Thread(target=build, daemon=True).start()
    try:
        client, error = results.get(timeout=opt.connect_timeout or None)
    except queue.Empty:
        conn.close()
        raise TimeoutError(
            "rpc client: connect timeout: expect within "
            + _format_seconds(opt.connect_timeout)
        ) from None
    if error is not None:
        conn.close()
        raise error
    return client


def dial(network: str, address: str, *args: Option | None) -> Client:
    """Connect to an RPC server at ``address`` and return a client."""
    return dial_timeout(new_client, network, address, *args)