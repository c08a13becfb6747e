"""
Portal 隧道 - 会话加密模块
处理会话认证令牌和固定证书的派生。

版本: 1.0.0

功能概述:
本模块从共享密钥派生会话所需的全部密钥材料，包括：
1. HELLO 消息的 HMAC-SHA256 认证令牌
2. QUIC 服务器使用的 Ed25519 私钥
3. 由该私钥自签名的确定性证书（客户端只信任这张证书）

共享密钥来源:
- 直连模式: 预共享密钥（配置文件或命令行）
- 打洞模式: 双方连接码派生的打洞会话密钥

密钥派生流程:
1. HKDF-SHA256 从共享密钥派生 64 字节密钥材料
2. 前 32 字节用于 HELLO 认证
3. 后 32 字节作为 Ed25519 私钥种子

Ed25519 签名是确定性的，并且证书的序列号、有效期均由密钥决定，
因此两端独立生成的证书逐字节相同。
"""

import hashlib
import hmac
import logging
import struct
import time
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.x509.oid import NameOID

logger = logging.getLogger('portal-crypto')

CERTIFICATE_NAME = 'portal-tunnel'
CERTIFICATE_NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
CERTIFICATE_NOT_AFTER = datetime(2100, 1, 1, tzinfo=timezone.utc)


class SessionCrypto:
    """
    会话加密类

    Attributes:
        auth_key: HELLO 认证使用的 HMAC 密钥
        cert_seed: Ed25519 私钥种子
    """

    def __init__(self, key_material: bytes, context: bytes = b'portal-direct-v1'):
        """
        使用共享密钥材料初始化

        Args:
            key_material: 共享密钥（字节串）
            context: HKDF 盐值，区分直连模式和打洞模式
        """
        if not key_material:
            raise ValueError("共享密钥不能为空")
        self._derive_keys(key_material, context)
        self._certificate = None

    @classmethod
    def from_secret(cls, secret: str) -> 'SessionCrypto':
        """从直连模式的预共享密钥创建"""
        return cls(secret.encode('utf-8'), b'portal-direct-v1')

    @classmethod
    def from_punch_key(cls, key: bytes) -> 'SessionCrypto':
        """从打洞会话密钥创建"""
        return cls(key, b'portal-punch-v1')

    def _derive_keys(self, key_material: bytes, context: bytes):
        """
        使用 HKDF 从共享密钥派生认证密钥和证书种子

        HKDF 参数:
        - 算法: SHA256
        - 输出长度: 64 字节
        - 盐值: context
        - 信息: b'session-keys'
        """
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=64,
            salt=context,
            info=b'session-keys',
        )
        derived = hkdf.derive(key_material)
        self.auth_key = derived[:32]
        self.cert_seed = derived[32:]
        logger.debug(f"会话密钥派生完成: context={context.decode()}")

    # ------------------------------------------------------------------
    # HELLO 认证
    # ------------------------------------------------------------------

    def generate_auth_token(self, timestamp: int, role: str) -> bytes:
        """
        生成 HELLO 认证令牌

        令牌绑定发送方角色，对端无法把收到的 HELLO 原样发回。

        Args:
            timestamp: Unix 时间戳
            role: 发送方角色（'opener' 或 'acceptor'）

        Returns:
            bytes: 32 字节 HMAC-SHA256
        """
        message = b'portal-hello:' + role.encode() + b':' + struct.pack('>Q', timestamp)
        return hmac.new(self.auth_key, message, hashlib.sha256).digest()

    def verify_auth_token(self, token: bytes, timestamp: int, role: str, max_age: int = 300) -> bool:
        """
        验证 HELLO 认证令牌

        验证内容:
        1. 时间戳新鲜度（防止重放）
        2. HMAC 签名

        Args:
            token: 收到的 HMAC
            timestamp: 收到的时间戳
            role: 对端角色
            max_age: 允许的最大时间差（秒）

        Returns:
            bool: 令牌是否有效
        """
        age = abs(int(time.time()) - timestamp)
        if age > max_age:
            logger.warning(f"认证令牌过期: age={age} 秒，最大允许: {max_age} 秒")
            return False

        expected = self.generate_auth_token(timestamp, role)
        if not hmac.compare_digest(token, expected):
            logger.warning("认证令牌验证失败: HMAC 不匹配")
            return False
        return True

    # ------------------------------------------------------------------
    # 固定证书
    # ------------------------------------------------------------------

    def derive_private_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.cert_seed)

    def derive_certificate(self) -> x509.Certificate:
        """
        生成确定性的自签名证书

        证书同时作为信任锚，因此按 CA 证书的要求设置扩展。

        Returns:
            x509.Certificate: 证书对象
        """
        if self._certificate is not None:
            return self._certificate

        private_key = self.derive_private_key()
        public_key = private_key.public_key()
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Portal Tunnel"),
            x509.NameAttribute(NameOID.COMMON_NAME, CERTIFICATE_NAME),
        ])
        serial = int.from_bytes(hashlib.sha256(self.cert_seed).digest()[:16], 'big') >> 1 | 1

        self._certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(serial)
            .not_valid_before(CERTIFICATE_NOT_BEFORE)
            .not_valid_after(CERTIFICATE_NOT_AFTER)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(CERTIFICATE_NAME)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False)
            # Ed25519 不使用摘要算法
            .sign(private_key, None)
        )
        return self._certificate

    def certificate_pem(self) -> bytes:
        return self.derive_certificate().public_bytes(serialization.Encoding.PEM)

    def fingerprint(self) -> str:
        """证书 SHA-256 指纹（十六进制，用于日志）"""
        return self.derive_certificate().fingerprint(hashes.SHA256()).hex()
