"""
会话加密测试
"""

import time

import pytest

from tunnel.crypto import CERTIFICATE_NAME, SessionCrypto


def test_certificate_is_deterministic():
    """两端从同一密钥独立生成的证书逐字节相同"""
    first = SessionCrypto.from_secret('shared-secret')
    second = SessionCrypto.from_secret('shared-secret')
    assert first.certificate_pem() == second.certificate_pem()
    assert first.fingerprint() == second.fingerprint()


def test_certificate_differs_between_secrets_and_modes():
    direct = SessionCrypto.from_secret('shared-secret')
    other = SessionCrypto.from_secret('other-secret')
    punch = SessionCrypto.from_punch_key(b'shared-secret')
    assert direct.certificate_pem() != other.certificate_pem()
    assert direct.certificate_pem() != punch.certificate_pem()


def test_certificate_names_tunnel_host():
    certificate = SessionCrypto.from_secret('shared-secret').derive_certificate()
    assert CERTIFICATE_NAME in certificate.subject.rfc4514_string()


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        SessionCrypto(b'')


def test_auth_token_round_trip(crypto):
    now = int(time.time())
    token = crypto.generate_auth_token(now, 'opener')
    assert len(token) == 32
    assert crypto.verify_auth_token(token, now, 'opener')


def test_auth_token_bound_to_role(crypto):
    """对端不能把收到的令牌原样发回"""
    now = int(time.time())
    token = crypto.generate_auth_token(now, 'opener')
    assert not crypto.verify_auth_token(token, now, 'acceptor')


def test_auth_token_expires(crypto):
    old = int(time.time()) - 1000
    token = crypto.generate_auth_token(old, 'opener')
    assert not crypto.verify_auth_token(token, old, 'opener', max_age=300)


def test_auth_token_wrong_key(crypto):
    now = int(time.time())
    token = SessionCrypto.from_secret('another-secret').generate_auth_token(now, 'opener')
    assert not crypto.verify_auth_token(token, now, 'opener')
