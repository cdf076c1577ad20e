"""Message codecs: framing of request/response headers and bodies on a stream."""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import json
import logging
import struct
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Protocol

logger = logging.getLogger(__name__)

__all__ = [
    "BinaryCodec",
    "Codec",
    "CodecError",
    "CodecType",
    "Header",
    "JsonCodec",
    "new_codec",
]


class CodecError(Exception):
    """Raised when a message cannot be encoded or decoded."""


class CodecType(str, enum.Enum):
    """Identifiers of the supported body encodings."""

    GOB = "application/gob"
    JSON = "applicaiton/json"


@dataclasses.dataclass
class Header:
    """Header carried in front of every request and response body."""

    service_method: str = ""
    seq: int = 0
    error: str = ""


class Stream(Protocol):
    def read(self, size: int = -1) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> None: ...


def _header_to_wire(header: Header) -> dict[str, Any]:
    if not isinstance(header, Header):
        raise CodecError(f"header must be a Header, not {type(header).__name__}")
    return {"ServiceMethod": header.service_method, "Seq": header.seq, "Error": header.error}


def _header_from_wire(value: Any) -> Header:
    if not isinstance(value, Mapping):
        raise CodecError("malformed header")
    try:
        return Header(
            service_method=str(value.get("ServiceMethod", "")),
            seq=int(value.get("Seq", 0)),
            error=str(value.get("Error", "")),
        )
    except (TypeError, ValueError) as exc:
        raise CodecError(f"malformed header: {exc}") from exc


def _dataclass_fields(value: Any) -> dict[str, Any]:
    return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}


class Codec(ABC):
    """Reads and writes header/body pairs on a byte stream."""

    def __init__(self, conn: Stream) -> None:
        self.conn = conn

    @abstractmethod
    def _encode(self, value: Any) -> bytes:
        """Encode one message, raising CodecError when it cannot be encoded."""

    @abstractmethod
    def _read_message(self) -> Any:
        """Read and decode one message; EOFError at end of stream."""

    def read_header(self) -> Header:
        """Read the next header from the stream."""
        return _header_from_wire(self._read_message())

    def read_body(self) -> Any:
        """Read the next body from the stream."""
        return self._read_message()

    def write(self, header: Header, body: Any) -> None:
        """Encode header and body and send them; on failure close the stream."""
        buffer = bytearray()
        try:
            try:
                buffer += self._encode(_header_to_wire(header))
            except CodecError as exc:
                logger.error("rpc codec: error encoding header: %s", exc)
                raise
            try:
                buffer += self._encode(body)
            except CodecError as exc:
                logger.error("rpc codec: error encoding body: %s", exc)
                raise
        except CodecError:
            with contextlib.suppress(OSError, ValueError):
                self._send(bytes(buffer))
            self.close()
            raise
        try:
            self._send(bytes(buffer))
        except (OSError, ValueError) as exc:
            self.close()
            raise CodecError(f"write failed: {exc}") from exc

    def _send(self, data: bytes) -> None:
        if data:
            self.conn.write(data)
        flush = getattr(self.conn, "flush", None)
        if flush is not None:
            flush()

    def close(self) -> None:
        """Close the underlying stream."""
        self.conn.close()

    def __enter__(self) -> Codec:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


_LENGTH = struct.Struct(">I")
_DOUBLE = struct.Struct(">d")


def _encode_value(value: Any, out: bytearray) -> None:
    if value is None:
        out += b"N"
    elif value is True:
        out += b"T"
    elif value is False:
        out += b"F"
    elif isinstance(value, int):
        number = int(value)
        raw = number.to_bytes(number.bit_length() // 8 + 1, "big", signed=True)
        out += b"i" + _LENGTH.pack(len(raw)) + raw
    elif isinstance(value, float):
        out += b"f" + _DOUBLE.pack(value)
    elif isinstance(value, str):
        raw = value.encode("utf-8")
        out += b"s" + _LENGTH.pack(len(raw)) + raw
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out += b"b" + _LENGTH.pack(len(raw)) + raw
    elif isinstance(value, (list, tuple)):
        out += b"l" + _LENGTH.pack(len(value))
        for item in value:
            _encode_value(item, out)
    elif isinstance(value, Mapping):
        out += b"d" + _LENGTH.pack(len(value))
        for key, item in value.items():
            _encode_value(key, out)
            _encode_value(item, out)
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        _encode_value(_dataclass_fields(value), out)
    else:
        raise CodecError(f"cannot encode value of type {type(value).__name__}")


class _Decoder:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise CodecError("truncated value")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def _length(self) -> int:
        return _LENGTH.unpack(self._take(_LENGTH.size))[0]

    def decode(self) -> Any:
        value = self._value()
        if self._pos != len(self._data):
            raise CodecError("trailing data after value")
        return value

    def _value(self) -> Any:
        tag = self._take(1)
        if tag == b"N":
            return None
        if tag == b"T":
            return True
        if tag == b"F":
            return False
        if tag == b"i":
            return int.from_bytes(self._take(self._length()), "big", signed=True)
        if tag == b"f":
            return _DOUBLE.unpack(self._take(_DOUBLE.size))[0]
        if tag == b"s":
            try:
                return self._take(self._length()).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise CodecError(f"invalid string: {exc}") from exc
        if tag == b"b":
            return self._take(self._length())
        if tag == b"l":
            return [self._value() for _ in range(self._length())]
        if tag == b"d":
            result: dict[Any, Any] = {}
            for _ in range(self._length()):
                key = self._value()
                try:
                    result[key] = self._value()
                except TypeError as exc:
                    raise CodecError(f"unhashable key: {exc}") from exc
            return result
        raise CodecError(f"unknown type tag {tag!r}")


class BinaryCodec(Codec):
    """Length-prefixed, type-tagged binary messages."""

    def _encode(self, value: Any) -> bytes:
        payload = bytearray()
        _encode_value(value, payload)
        return _LENGTH.pack(len(payload)) + bytes(payload)

    def _read_exact(self, size: int, at_boundary: bool) -> bytes:
        chunks: list[bytes] = []
        remaining = size
        while remaining:
            chunk = self.conn.read(remaining)
            if not chunk:
                if at_boundary and remaining == size:
                    raise EOFError("end of stream")
                raise EOFError("unexpected end of stream")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _read_message(self) -> Any:
        (size,) = _LENGTH.unpack(self._read_exact(_LENGTH.size, at_boundary=True))
        payload = self._read_exact(size, at_boundary=False)
        return _Decoder(payload).decode()


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _dataclass_fields(value)
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


class JsonCodec(Codec):
    """Newline-delimited JSON messages."""

    def _encode(self, value: Any) -> bytes:
        try:
            text = json.dumps(value, default=_json_default, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise CodecError(str(exc)) from exc
        return text.encode("utf-8") + b"\n"

    def _read_message(self) -> Any:
        line = self.conn.readline()
        if not line:
            raise EOFError("end of stream")
        if not line.endswith(b"\n"):
            raise EOFError("unexpected end of stream")
        try:
            return json.loads(line)
        except ValueError as exc:
            raise CodecError(f"invalid message: {exc}") from exc


_CODECS: dict[CodecType, type[Codec]] = {
    CodecType.GOB: BinaryCodec,
    CodecType.JSON: JsonCodec,
}


def new_codec(codec_type: CodecType | str, conn: Stream) -> Codec:
    """Create the codec registered for ``codec_type`` on ``conn``."""
    try:
        factory = _CODECS[CodecType(codec_type)]
    except (ValueError, KeyError) as exc:
        raise CodecError(f"invalid codec type {codec_type}") from exc
    return factory(conn)