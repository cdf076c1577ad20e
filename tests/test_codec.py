import dataclasses
import io

import pytest

from geerpc.codec import (
    BinaryCodec,
    CodecError,
    CodecType,
    Header,
    JsonCodec,
    new_codec,
)


@dataclasses.dataclass
class Point:
    x: int
    y: int


CODECS = [BinaryCodec, JsonCodec]
CODEC_TYPES = [CodecType.GOB, CodecType.JSON]


def _roundtrip(codec_cls, header, body):
    buf = io.BytesIO()
    codec_cls(buf).write(header, body)
    buf.seek(0)
    reader = codec_cls(buf)
    return reader.read_header(), reader.read_body()


@pytest.mark.parametrize("codec_cls", CODECS)
def test_header_roundtrip(codec_cls):
    header = Header(service_method="Foo.Sum", seq=7, error="boom")
    got_header, got_body = _roundtrip(codec_cls, header, "geerpc req 7")
    assert got_header == header
    assert got_body == "geerpc req 7"


@pytest.mark.parametrize(
    "body",
    [None, True, False, 0, -1, 2**100, -(2**70), 1.5, "", "héllo",
     b"\x00\xff", [1, "a", [None]], {"k": [1, 2], 3: "x"}],
)
def test_binary_body_roundtrip(body):
    _, got = _roundtrip(BinaryCodec, Header(seq=1), body)
    assert got == body
    assert type(got) is type(body)


@pytest.mark.parametrize(
    "body", [None, True, 0, -1, 2**100, 1.5, "héllo", [1, "a", [None]], {"k": [1, 2]}]
)
def test_json_body_roundtrip(body):
    _, got = _roundtrip(JsonCodec, Header(seq=1), body)
    assert got == body


@pytest.mark.parametrize("codec_cls", CODECS)
def test_tuple_decodes_as_list(codec_cls):
    _, got = _roundtrip(codec_cls, Header(), (1, 2, 3))
    assert got == [1, 2, 3]


@pytest.mark.parametrize("codec_cls", CODECS)
def test_dataclass_body_becomes_field_mapping(codec_cls):
    _, got = _roundtrip(codec_cls, Header(), Point(1, 2))
    assert got == {"x": 1, "y": 2}


@pytest.mark.parametrize("codec_cls", CODECS)
def test_messages_read_in_order(codec_cls):
    buf = io.BytesIO()
    writer = codec_cls(buf)
    for seq in range(3):
        writer.write(Header("Foo.Sum", seq), f"geerpc req {seq}")
    buf.seek(0)
    reader = codec_cls(buf)
    received = [(reader.read_header().seq, reader.read_body()) for _ in range(3)]
    assert received == [(seq, f"geerpc req {seq}") for seq in range(3)]
    with pytest.raises(EOFError):
        reader.read_header()


@pytest.mark.parametrize("codec_type", CODEC_TYPES)
def test_empty_stream_raises_eof(codec_type):
    reader = new_codec(codec_type, io.BytesIO())
    with pytest.raises(EOFError):
        reader.read_header()


@pytest.mark.parametrize("codec_cls", CODECS)
def test_truncated_stream_raises_eof(codec_cls):
    buf = io.BytesIO()
    codec_cls(buf).write(Header("Foo.Sum", 1), "body")
    data = buf.getvalue()[:-1]
    reader = codec_cls(io.BytesIO(data))
    assert reader.read_header().seq == 1
    with pytest.raises(EOFError):
        reader.read_body()


def test_binary_unknown_tag():
    reader = BinaryCodec(io.BytesIO(b"\x00\x00\x00\x01Z"))
    with pytest.raises(CodecError):
        reader.read_body()


def test_json_malformed_line():
    reader = JsonCodec(io.BytesIO(b"{not json\n"))
    with pytest.raises(CodecError):
        reader.read_body()


@pytest.mark.parametrize("codec_cls", CODECS)
def test_header_must_be_mapping(codec_cls):
    buf = io.BytesIO()
    codec_cls(buf).write(Header(), [1, 2])
    buf.seek(0)
    reader = codec_cls(buf)
    reader.read_header()
    with pytest.raises(CodecError):
        reader.read_header()


@pytest.mark.parametrize("codec_cls", CODECS)
def test_unencodable_body_closes_stream(codec_cls):
    buf = io.BytesIO()
    with pytest.raises(CodecError):
        codec_cls(buf).write(Header(), object())
    assert buf.closed


@pytest.mark.parametrize(
    "name, reader_cls",
    [("application/gob", BinaryCodec), ("applicaiton/json", JsonCodec)],
)
def test_new_codec_by_name_matches_codec_class(name, reader_cls):
    buf = io.BytesIO()
    new_codec(name, buf).write(Header("Foo.Sum", 3), "geerpc req 3")
    buf.seek(0)
    reader = reader_cls(buf)
    assert reader.read_header() == Header("Foo.Sum", 3)
    assert reader.read_body() == "geerpc req 3"


@pytest.mark.parametrize("codec_type", CODEC_TYPES)
def test_new_codec_by_enum_roundtrip(codec_type):
    buf = io.BytesIO()
    new_codec(codec_type, buf).write(Header("Foo.Sum", 4), [1, 2])
    buf.seek(0)
    reader = new_codec(codec_type, buf)
    assert reader.read_header().seq == 4
    assert reader.read_body() == [1, 2]


def test_new_codec_invalid_type():
    with pytest.raises(CodecError, match="invalid codec type"):
        new_codec("text/plain", io.BytesIO())


@pytest.mark.parametrize("codec_type", CODEC_TYPES)
def test_close_and_context_manager_close_stream(codec_type):
    first = io.BytesIO()
    new_codec(codec_type, first).close()
    assert first.closed
    second = io.BytesIO()
    with new_codec(codec_type, second) as codec:
        codec.write(Header(seq=2), "x")
        assert not second.closed
    assert second.closed