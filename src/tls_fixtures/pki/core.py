"""
测试用 PKI 的核心签发逻辑。
包括生成 RSA 密钥对、构造自签根证书、构造并校验 CSR、用 CA 签发叶子证书，
以及证书信任关系的校验。
"""

from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    PublicFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from loguru import logger

from src.tls_fixtures.config import config
from .errors import ConstructionError, KeyGenerationError
from .schemas import Role

PUBLIC_EXPONENT = 65537
MIN_KEY_SIZE = 2048
# 容忍测试机之间的少量时钟偏差
CLOCK_SKEW = timedelta(minutes=1)


@dataclass(frozen=True)
class KeyPair:
    private_key: rsa.RSAPrivateKey

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()


class SerialCounter:
    """CA 级别的序列号计数器：随机起点，每次签发递增。"""

    def __init__(self, start: int | None = None) -> None:
        # 右移留出递增空间，保证不超过 RFC 5280 的 20 字节上限
        self._next = start if start is not None else x509.random_serial_number() >> 8
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value


class CertificateAuthority:
    """一个 CA：密钥对、根证书与其专属的序列号计数器。"""

    def __init__(self, key_pair: KeyPair, certificate: x509.Certificate, serials: SerialCounter) -> None:
        self.key_pair = key_pair
        self.certificate = certificate
        self._serials = serials

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def common_name(self) -> str | None:
        return get_common_name(self.certificate.subject)

    def next_serial(self) -> int:
        return self._serials.next()


def generate_key_pair(key_size: int | None = None) -> KeyPair:
    """
    生成 RSA 密钥对。
    :param key_size: 密钥长度，缺省使用配置中的 key_size。
    :return: KeyPair
    :raises KeyGenerationError: 长度过小或底层库失败。
    """
    size = key_size if key_size is not None else config.key_size
    if size < MIN_KEY_SIZE:
        raise KeyGenerationError(f"RSA 密钥长度至少为 {MIN_KEY_SIZE} 位，当前为 {size}")
    try:
        private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=size)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"RSA 密钥生成失败: {e}") from e
    return KeyPair(private_key=private_key)


def build_name(common_name: str) -> x509.Name:
    if not common_name or not common_name.strip():
        raise ConstructionError("主体名称不能为空")
    try:
        return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    except ValueError as e:
        raise ConstructionError(f"无效的主体名称 {common_name!r}: {e}") from e


def get_common_name(name: x509.Name) -> str | None:
    try:
        value = name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    except IndexError:
        return None
    return value if isinstance(value, str) else value.decode("utf-8")


def _validity_window(validity_days: int) -> tuple[datetime, datetime]:
    if validity_days <= 0:
        raise ConstructionError(f"有效期必须为正数天，当前为 {validity_days}")
    now = datetime.now(timezone.utc)
    return now - CLOCK_SKEW, now + timedelta(days=validity_days)


def _sign(builder: x509.CertificateBuilder, private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    try:
        return builder.sign(private_key=private_key, algorithm=hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConstructionError(f"证书签名失败: {e}") from e


def build_root_certificate(
    key_pair: KeyPair,
    common_name: str,
    validity_days: int | None = None,
    serial_number: int | None = None,
) -> x509.Certificate:
    """
    构造自签根证书（issuer == subject，BasicConstraints CA=True）。
    :param key_pair: 根 CA 的密钥对，同时用于签名。
    :param common_name: 根证书 CN。
    :param validity_days: 有效天数，缺省使用配置（3650 天）。
    :param serial_number: 序列号，缺省随机。
    :raises ConstructionError: 主体为空、有效期非法或签名失败。
    """
    subject = build_name(common_name)
    not_before, not_after = _validity_window(
        validity_days if validity_days is not None else config.validity_days
    )
    public_key = key_pair.public_key
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(public_key)
        .serial_number(serial_number if serial_number is not None else x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False)
    )
    return _sign(builder, key_pair.private_key)


def create_root_authority(
    key_pair: KeyPair, common_name: str, validity_days: int | None = None
) -> CertificateAuthority:
    """构造根证书，并把密钥对、证书和新的序列号计数器绑定成一个 CA。"""
    serials = SerialCounter()
    certificate = build_root_certificate(key_pair, common_name, validity_days, serials.next())
    logger.debug(f"根证书已生成: CN={common_name}, serial={certificate.serial_number}")
    return CertificateAuthority(key_pair, certificate, serials)


def build_csr(key_pair: KeyPair, common_name: str) -> x509.CertificateSigningRequest:
    """构造由叶子私钥自签的 CSR，用于证明持有该私钥。"""
    subject = build_name(common_name)
    try:
        return (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject)
            .sign(key_pair.private_key, hashes.SHA256())
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConstructionError(f"CSR 签名失败: {e}") from e


def verify_csr(csr: x509.CertificateSigningRequest) -> None:
    """校验 CSR 的自签名，失败抛出 ConstructionError。"""
    try:
        valid = csr.is_signature_valid
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ConstructionError(f"无法校验 CSR 签名: {e}") from e
    if not valid:
        raise ConstructionError("CSR 自签名校验失败")


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def _is_ca_certificate(certificate: x509.Certificate) -> bool:
    try:
        return certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _server_alt_names(dns_names: Iterable[str], ip_addresses: Iterable[str]) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = [x509.DNSName(n) for n in dns_names]
    try:
        names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses)
    except ValueError as e:
        raise ConstructionError(f"无效的 SAN IP 地址: {e}") from e
    if not names:
        raise ConstructionError("服务端证书至少需要一个 SAN 条目")
    return names


def sign_csr(
    csr: x509.CertificateSigningRequest,
    issuer: CertificateAuthority,
    role: Role,
    validity_days: int | None = None,
    dns_names: Iterable[str] | None = None,
    ip_addresses: Iterable[str] | None = None,
) -> x509.Certificate:
    """
    使用 CA 对已校验的 CSR 签发叶子证书，并按角色附加扩展。
    服务端：SAN；客户端：extendedKeyUsage=clientAuth。
    """
    if not _is_ca_certificate(issuer.certificate):
        raise ConstructionError("签发者证书未设置 CA 基本约束")
    if _public_key_der(issuer.key_pair.public_key) != _public_key_der(issuer.certificate.public_key()):
        raise ConstructionError("签发者私钥与其证书公钥不匹配")

    not_before, not_after = _validity_window(
        validity_days if validity_days is not None else config.validity_days
    )
    public_key = csr.public_key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(issuer.subject)
        .public_key(public_key)
        .serial_number(issuer.next_serial())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                key_cert_sign=False,
                crl_sign=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.key_pair.public_key),
            critical=False,
        )
    )

    if role is Role.SERVER:
        alt_names = _server_alt_names(
            dns_names if dns_names is not None else config.server_dns_names,
            ip_addresses if ip_addresses is not None else config.server_ip_addresses,
        )
        builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
    elif role is Role.CLIENT:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False
        )
    else:
        raise ConstructionError(f"未知的证书角色: {role!r}")

    return _sign(builder, issuer.key_pair.private_key)


def issue_leaf_certificate(
    leaf_key_pair: KeyPair,
    common_name: str,
    issuer: CertificateAuthority,
    role: Role,
    validity_days: int | None = None,
    dns_names: Iterable[str] | None = None,
    ip_addresses: Iterable[str] | None = None,
) -> x509.Certificate:
    """
    为叶子身份签发证书：构造 CSR -> 校验自签名 -> 由 CA 签名。
    CSR 只在内存中存在，签发后即丢弃。
    :raises ConstructionError: 主体为空、CSR 无效或签名失败。
    """
    csr = build_csr(leaf_key_pair, common_name)
    verify_csr(csr)
    certificate = sign_csr(csr, issuer, role, validity_days, dns_names, ip_addresses)
    logger.debug(
        f"叶子证书已签发: CN={common_name}, role={role.value}, "
        f"issuer={issuer.common_name}, serial={certificate.serial_number}"
    )
    return certificate


def verify_key_pair(private_key: rsa.RSAPrivateKey, public_key: rsa.RSAPublicKey) -> bool:
    """签名往返校验：私钥签名、公钥验签。"""
    message = b"tls-fixtures key pair check"
    signature = private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    try:
        public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        return True
    except InvalidSignature:
        return False


def verify_issued_by(certificate: x509.Certificate, ca_certificate: x509.Certificate) -> bool:
    """
    判断证书是否在给定 CA 下有效：
    CA 设置了基本约束 CA=True、issuer 与 CA subject 一致、CA 公钥能验证签名。
    """
    if not _is_ca_certificate(ca_certificate):
        return False
    if certificate.issuer != ca_certificate.subject:
        return False
    try:
        certificate.verify_directly_issued_by(ca_certificate)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption(),
    )


def certificate_to_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(Encoding.PEM)


def load_private_key_pem(data: bytes) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConstructionError("仅支持 RSA 私钥")
    return key


def load_certificate_pem(data: bytes) -> x509.Certificate:
    return x509.load_pem_x509_certificate(data)
