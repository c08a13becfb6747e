"""
连接码编解码测试
"""

import ipaddress
import struct

import pytest

from connection_code import (
    CODE_VERSION, MAX_CANDIDATES, Candidate, ConnectionCode, calc_checksum, decode, encode,
    sort_candidates,
)
from errors import MalformedCode, UnsupportedVersion


def make_code(*hosts):
    candidates = [Candidate.parse(host, 40000 + i) for i, host in enumerate(hosts)]
    return ConnectionCode.generate(candidates)


def with_checksum(body: bytes) -> bytes:
    return body + struct.pack('<H', calc_checksum(body))


def test_round_trip_mixed_families():
    """IPv4 和 IPv6 候选地址编码后解码得到相同的连接码"""
    code = make_code('203.0.113.7', '192.168.1.20', '2001:db8::1', '127.0.0.1')
    token = encode(code)

    assert decode(token) == code
    assert '=' not in token
    assert '+' not in token and '/' not in token


def test_decode_ignores_surrounding_whitespace():
    code = make_code('10.0.0.1')
    assert decode(f"  {code.encode()}\n") == code


def test_generate_uses_fresh_identity():
    """每次生成的会话 ID 和密钥都不同"""
    first = make_code('10.0.0.1')
    second = make_code('10.0.0.1')
    assert first.session_id != second.session_id
    assert first.secret != second.secret


def test_candidates_sorted_most_specific_first():
    candidates = [
        Candidate.parse('127.0.0.1', 1),
        Candidate.parse('fe80::1', 2),
        Candidate.parse('192.168.0.5', 3),
        Candidate.parse('8.8.8.8', 4),
    ]
    ordered = sort_candidates(candidates)
    assert [c.port for c in ordered] == [4, 3, 2, 1]


def test_generate_truncates_candidate_list():
    candidates = [Candidate.parse(f"10.0.0.{i}", 1000 + i) for i in range(1, MAX_CANDIDATES + 5)]
    code = ConnectionCode.generate(candidates)
    assert len(code.candidates) == MAX_CANDIDATES


def test_unknown_version_rejected_before_parsing():
    """未知版本字节返回 UnsupportedVersion，即使其余内容无效"""
    data = bytes([CODE_VERSION + 1]) + b'\x00' * 5
    with pytest.raises(UnsupportedVersion) as info:
        ConnectionCode.from_bytes(data)
    assert info.value.version == CODE_VERSION + 1


def test_corrupted_checksum():
    data = bytearray(make_code('10.0.0.1').to_bytes())
    data[-1] ^= 0xFF
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(bytes(data))


def test_flipped_secret_byte_detected():
    data = bytearray(make_code('10.0.0.1').to_bytes())
    data[20] ^= 0x01
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(bytes(data))


@pytest.mark.parametrize('cut', [1, 10, 50, 52, 55])
def test_truncated_code(cut):
    data = make_code('10.0.0.1').to_bytes()
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(data[:cut])


def test_trailing_data_rejected():
    data = make_code('10.0.0.1').to_bytes()
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(data + b'\x00')


def test_zero_candidates_rejected():
    body = bytes([CODE_VERSION]) + b'\x01' * 16 + b'\x02' * 32 + b'\x00'
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(with_checksum(body))


def test_invalid_family_rejected():
    body = bytes([CODE_VERSION]) + b'\x01' * 16 + b'\x02' * 32 + b'\x01'
    body += bytes([5]) + b'\x0a\x00\x00\x01' + struct.pack('>H', 1000)
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(with_checksum(body))


def test_zero_port_rejected():
    body = bytes([CODE_VERSION]) + b'\x01' * 16 + b'\x02' * 32 + b'\x01'
    body += bytes([4]) + b'\x0a\x00\x00\x01' + struct.pack('>H', 0)
    with pytest.raises(MalformedCode):
        ConnectionCode.from_bytes(with_checksum(body))


@pytest.mark.parametrize('token', ['', '!!!!', 'AQ', 'a' * 5])
def test_invalid_base64(token):
    with pytest.raises(MalformedCode):
        decode(token)


def test_candidate_formatting():
    assert str(Candidate.parse('2001:db8::1', 5995)) == '[2001:db8::1]:5995'
    assert Candidate.parse('10.1.2.3', 80).sockaddr == ('10.1.2.3', 80)
    assert Candidate(ipaddress.ip_address('10.1.2.3'), 80).family == 4
