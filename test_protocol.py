"""
控制协议编解码测试
"""

import asyncio
import struct

import pytest

from errors import ProtocolError, ProtocolVersionError
from protocol import (
    MAX_PAYLOAD_SIZE, PROTOCOL_VERSION, ControlMessage, MsgType, OpenError, RejectReason,
    StreamKind, TunnelKind, TunnelSpec, read_message, read_stream_header, stream_header,
)


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def read_all(data: bytes):
    async def run():
        reader = reader_with(data)
        messages = []
        while True:
            message = await read_message(reader)
            if message is None:
                return messages
            messages.append(message)
    return asyncio.run(run())


def test_messages_read_in_order():
    """同一条流上的多条消息按写入顺序读出"""
    spec = TunnelSpec(3, TunnelKind.REMOTE, '0.0.0.0', 8080, 'localhost', 80)
    stream = b''.join(m.serialize() for m in (
        ControlMessage.tunnel_request(spec),
        ControlMessage.keepalive(),
        ControlMessage.tunnel_accept(3, 8080),
        ControlMessage.tunnel_close(7),
    ))
    messages = read_all(stream)

    assert [m.msg_type for m in messages] == [
        MsgType.TUNNEL_REQUEST, MsgType.KEEPALIVE, MsgType.TUNNEL_ACCEPT, MsgType.TUNNEL_CLOSE,
    ]
    assert messages[0].parse_tunnel_request() == spec
    assert messages[2].parse_tunnel_accept() == (3, 8080)
    assert messages[3].parse_tunnel_close() == 7


@pytest.mark.parametrize('spec', [
    TunnelSpec(1, TunnelKind.LOCAL, 'localhost', 2222, 'example.com', 22),
    TunnelSpec(2, TunnelKind.DYNAMIC, '127.0.0.1', 1080),
    TunnelSpec(3, TunnelKind.REMOTE_DYNAMIC, '::', 0),
    TunnelSpec(4, TunnelKind.REMOTE, '::1', 9000, '2001:db8::2', 443),
])
def test_tunnel_request_fields(spec):
    message, rest = ControlMessage.deserialize(ControlMessage.tunnel_request(spec).serialize())
    assert rest == b''
    assert message.parse_tunnel_request() == spec


def test_data_open_and_ack():
    message = ControlMessage.data_open(5, 11, 'www.example.org', 443)
    assert message.parse_data_open() == (5, 11, 'www.example.org', 443)

    ack = ControlMessage.data_open_ack(11, OpenError.REFUSED, 'connection refused')
    assert ack.parse_data_open_ack() == (11, OpenError.REFUSED, 'connection refused')
    assert ControlMessage.data_open_ack(12).parse_data_open_ack() == (12, OpenError.OK, '')


def test_tunnel_reject():
    message = ControlMessage.tunnel_reject(9, RejectReason.BIND_FAILED, '端口已被占用')
    assert message.parse_tunnel_reject() == (9, RejectReason.BIND_FAILED, '端口已被占用')


def test_hello_version_checked_first():
    """版本不匹配时报告版本错误，而不是认证字段错误"""
    message = ControlMessage.hello(1700000000, b'', version=PROTOCOL_VERSION + 1)
    with pytest.raises(ProtocolVersionError):
        message.parse_hello()

    good = ControlMessage.hello(1700000000, b'\x01' * 32)
    assert good.parse_hello() == (1700000000, b'\x01' * 32)
    with pytest.raises(ProtocolError):
        ControlMessage.hello(1700000000, b'\x01' * 5).parse_hello()


def test_parse_wrong_type():
    with pytest.raises(ProtocolError):
        ControlMessage.keepalive().parse_tunnel_close()


def test_unknown_message_type():
    with pytest.raises(ProtocolError):
        read_all(struct.pack('>BI', 0xEE, 0))


def test_truncated_frames():
    frame = ControlMessage.tunnel_close(1).serialize()
    with pytest.raises(ProtocolError):
        read_all(frame[:3])
    with pytest.raises(ProtocolError):
        read_all(frame[:-1])


def test_oversized_payload():
    with pytest.raises(ProtocolError):
        read_all(struct.pack('>BI', MsgType.KEEPALIVE, MAX_PAYLOAD_SIZE + 1))
    with pytest.raises(ProtocolError):
        ControlMessage(MsgType.KEEPALIVE, b'\x00' * (MAX_PAYLOAD_SIZE + 1)).serialize()


def test_truncated_payload_fields():
    with pytest.raises(ProtocolError):
        ControlMessage(MsgType.TUNNEL_DATA_OPEN, b'\x00\x00\x00\x01\x00').parse_data_open()
    with pytest.raises(ProtocolError):
        ControlMessage(MsgType.TUNNEL_REQUEST, struct.pack('>IB', 1, 99)).parse_tunnel_request()


def test_stream_headers():
    async def run():
        control = await read_stream_header(reader_with(stream_header(StreamKind.CONTROL), eof=False))
        data = await read_stream_header(reader_with(stream_header(StreamKind.DATA, 0x01020304), eof=False))
        return control, data

    assert asyncio.run(run()) == ((StreamKind.CONTROL, 0), (StreamKind.DATA, 0x01020304))


@pytest.mark.parametrize('data', [b'', b'\x09', b'\x02\x00\x01'])
def test_bad_stream_headers(data):
    async def run():
        return await read_stream_header(reader_with(data))

    with pytest.raises(ProtocolError):
        asyncio.run(run())
