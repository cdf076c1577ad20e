"""RPC server: connection handshake, request dispatch and handle timeouts."""

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import socket
import threading
from typing import Any

from geerpc.codec import Codec, CodecError, CodecType, Header, Stream, new_codec
from geerpc.service import MethodType, Service

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_HANDLE_TIMEOUT",
    "DEFAULT_OPTION",
    "DEFAULT_SERVER",
    "MAGIC_NUMBER",
    "Option",
    "Server",
    "accept",
    "register",
]

MAGIC_NUMBER = 0x3BEF5C
DEFAULT_HANDLE_TIMEOUT = 10.0
_NANOSECONDS = 1_000_000_000
_INVALID_REQUEST: dict[str, Any] = {}


def _seconds_to_wire(seconds: float) -> int:
    return round(seconds * _NANOSECONDS)


def _seconds_from_wire(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"rpc option: {field} must be a number")
    return value / _NANOSECONDS


@dataclasses.dataclass
class Option:
    """Connection options sent by a client before any request.

    Timeouts are in seconds; zero means no limit.
    """

    magic_number: int = MAGIC_NUMBER
    codec_type: CodecType | str = CodecType.GOB
    connect_timeout: float = 10.0
    handle_timeout: float = 0.0

    def to_json(self) -> bytes:
        """Encode the option as one JSON line."""
        codec_type = getattr(self.codec_type, "value", self.codec_type)
        document = {
            "MagicNumber": self.magic_number,
            "CodecType": str(codec_type),
            "ConnectTimeout": _seconds_to_wire(self.connect_timeout),
            "HandleTimeout": _seconds_to_wire(self.handle_timeout),
        }
        return json.dumps(document).encode("utf-8") + b"\n"

    @staticmethod
    def from_json(data: bytes | str) -> Option:
        """Decode an option from its JSON form; ValueError if it is malformed."""
        try:
            document = json.loads(data)
        except ValueError as exc:
            raise ValueError(f"rpc option: invalid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ValueError("rpc option: expected a JSON object")
        magic = document.get("MagicNumber", 0)
        if isinstance(magic, bool) or not isinstance(magic, int):
            raise ValueError("rpc option: MagicNumber must be an integer")
        raw_type = document.get("CodecType", "")
        if not isinstance(raw_type, str):
            raise ValueError("rpc option: CodecType must be a string")
        try:
            codec_type: CodecType | str = CodecType(raw_type)
        except ValueError:
            codec_type = raw_type
        return Option(
            magic_number=magic,
            codec_type=codec_type,
            connect_timeout=_seconds_from_wire(document.get("ConnectTimeout", 0), "ConnectTimeout"),
            handle_timeout=_seconds_from_wire(document.get("HandleTimeout", 0), "HandleTimeout"),
        )


DEFAULT_OPTION = Option()


@dataclasses.dataclass
class _Request:
    header: Header
    service: Service
    method: MethodType
    argv: Any


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}s"


class Server:
    """Serves registered services over codec-framed connections."""

    def __init__(self, handle_timeout: float = DEFAULT_HANDLE_TIMEOUT) -> None:
        self.handle_timeout = handle_timeout
        self._services: dict[str, Service] = {}
        self._lock = threading.Lock()

    def register(self, receiver: Any) -> None:
        """Publish the exported methods of ``receiver`` under its type name."""
        svc = Service(receiver)
        with self._lock:
            if svc.name in self._services:
                raise ValueError("rpc: service already defined:" + svc.name)
            self._services[svc.name] = svc

    def find_service(self, service_method: str) -> tuple[Service, MethodType]:
        """Resolve ``"Service.Method"`` to the service and its method."""
        service_name, dot, method_name = service_method.rpartition(".")
        if not dot:
            raise ValueError("rpc server: service/method request ill-formed: " + service_method)
        with self._lock:
            svc = self._services.get(service_name)
        if svc is None:
            raise LookupError("rpc server: can't find service " + service_name)
        method = svc.methods.get(method_name)
        if method is None:
            raise LookupError("rpc server: can't find method " + method_name)
        return svc, method

    def serve_conn(self, conn: Stream) -> None:
        """Read the option line from ``conn`` and serve requests until it ends."""
        try:
            try:
                opt = Option.from_json(conn.readline())
            except (OSError, ValueError) as exc:
                logger.error("rpc server: option error: %s", exc)
                return
            if opt.magic_number != MAGIC_NUMBER:
                logger.error("rpc server: invalid magic number %x", opt.magic_number)
                return
            try:
                codec = new_codec(opt.codec_type, conn)
            except CodecError:
                logger.error("rpc server: invalid codec type %s", opt.codec_type)
                return
            self._serve_codec(codec, opt)
        finally:
            with contextlib.suppress(OSError, ValueError):
                conn.close()

    def accept(self, listener: socket.socket) -> None:
        """Serve each connection accepted on ``listener`` until accepting fails."""
        while True:
            try:
                conn, _ = listener.accept()
            except OSError as exc:
                logger.error("rpc server: accept error: %s", exc)
                return
            threading.Thread(target=self._serve_socket, args=(conn,), daemon=True).start()

    def _serve_socket(self, conn: socket.socket) -> None:
        with conn:
            self.serve_conn(conn.makefile("rwb"))

    def _serve_codec(self, codec: Codec, opt: Option) -> None:
        sending = threading.Lock()
        handlers: list[threading.Thread] = []
        timeout = opt.handle_timeout or self.handle_timeout
        while True:
            header = self._read_request_header(codec)
            if header is None:
                break
            try:
                req = self._read_request(codec, header)
            except (CodecError, EOFError, LookupError, OSError, ValueError) as exc:
                header.error = str(exc)
                self._send_response(codec, header, _INVALID_REQUEST, sending)
                continue
            handler = threading.Thread(
                target=self._handle_request,
                args=(codec, req, sending, timeout),
                daemon=True,
            )
            handler.start()
            handlers.append(handler)
        for handler in handlers:
            handler.join()
        with contextlib.suppress(OSError, ValueError):
            codec.close()

    @staticmethod
    def _read_request_header(codec: Codec) -> Header | None:
        try:
            return codec.read_header()
        except EOFError:
            return None
        except (CodecError, OSError, ValueError) as exc:
            logger.error("rpc server: read header error: %s", exc)
            return None

    def _read_request(self, codec: Codec, header: Header) -> _Request:
        lookup_error: Exception | None = None
        try:
            svc, method = self.find_service(header.service_method)
        except (LookupError, ValueError) as exc:
            lookup_error = exc
        try:
            body = codec.read_body()
        except (CodecError, ValueError) as exc:
            logger.error("rpc server: read body err: %s", exc)
            raise
        if lookup_error is not None:
            raise lookup_error
        argv = method.new_argv() if body is None else body
        return _Request(header, svc, method, argv)

    @staticmethod
    def _send_response(codec: Codec, header: Header, body: Any, sending: threading.Lock) -> None:
        with sending:
            try:
                codec.write(header, body)
            except (CodecError, OSError, ValueError) as exc:
                logger.error("rpc server: write response error: %s", exc)

    def _handle_request(
        self, codec: Codec, req: _Request, sending: threading.Lock, timeout: float
    ) -> None:
        called = threading.Event()
        sent = threading.Event()
        state = threading.Lock()
        timed_out = False

        def run() -> None:
            error = ""
            try:
                reply = req.service.call(req.method, req.argv)
            except Exception as exc:  # the method's failure goes back to the caller
                reply = _INVALID_REQUEST
                error = str(exc) or type(exc).__name__
            with state:
                if timed_out:
                    return
                called.set()
            if error:
                req.header.error = error
            self._send_response(codec, req.header, reply, sending)
            sent.set()

        worker = threading.Thread(target=run, daemon=True)
        worker.start()
        if not timeout or timeout <= 0:
            worker.join()
            return
        if not called.wait(timeout):
            with state:
                if not called.is_set():
                    timed_out = True
            if timed_out:
                req.header.error = (
                    "rpc server: request handle timeout: expect within "
                    + _format_seconds(timeout)
                )
                self._send_response(codec, req.header, _INVALID_REQUEST, sending)
                return
        sent.wait()


DEFAULT_SERVER = Server()


def register(receiver: Any) -> None:
    """Register ``receiver`` on the default server."""
    DEFAULT_SERVER.register(receiver)


def accept(listener: socket.socket) -> None:
    """Serve connections from ``listener`` with the default server."""
    DEFAULT_SERVER.accept(listener)