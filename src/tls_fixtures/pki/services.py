"""
测试夹具编排层。
按固定阶段依次（或两条链并行）生成可信 CA、服务端、客户端、不可信 CA 与不可信客户端，
全部成功后才把 PEM 产物写入输出目录；同时提供对已有夹具目录的校验。
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID
from loguru import logger

from src.tls_fixtures.config import Config, config
from . import core
from .errors import ConstructionError, FixtureBuildError, FixtureError, PersistenceError
from .schemas import (
    ArtifactNames,
    FixtureSet,
    FixtureStage,
    Identity,
    IssuedArtifact,
    Role,
    VerificationCheck,
    VerificationReport,
)

# 旧的 openssl 脚本遗留的中间文件
TRANSIENT_PATTERNS = ("*.csr", "*.srl", "*.ext")


@dataclass
class _Issued:
    key_pair: core.KeyPair
    certificate: x509.Certificate
    issuer_common_name: str


class FixtureAssembler:
    """
    编排五次签发：
    INIT -> TRUSTED_CA_READY -> SERVER_ISSUED -> CLIENT_ISSUED
         -> UNTRUSTED_CA_READY -> UNTRUSTED_CLIENT_ISSUED -> DONE
    任一阶段失败即终止，抛出携带该阶段的 FixtureBuildError，且不写任何文件。
    """

    def __init__(
        self,
        output_dir: str | Path | None = None,
        names: ArtifactNames | None = None,
        parallel: bool | None = None,
        settings: Config | None = None,
    ) -> None:
        self.settings = settings or config
        self.output_dir = Path(output_dir) if output_dir is not None else Path(self.settings.output_dir)
        self.names = names or ArtifactNames()
        self.parallel = self.settings.parallel if parallel is None else parallel
        self.stage = FixtureStage.INIT
        self.completed_stages: list[FixtureStage] = []
        self._issued: dict[Identity, _Issued] = {}
        self._lock = threading.Lock()

    def _run_stage(self, stage: FixtureStage, identity: Identity, step: Callable[[], _Issued]) -> _Issued:
        try:
            issued = step()
        except Exception as e:
            logger.error(f"阶段 {stage.value} 失败: {e}")
            raise FixtureBuildError(stage, e) from e
        with self._lock:
            self._issued[identity] = issued
            self.completed_stages.append(stage)
            self.stage = stage
        logger.info(f"阶段完成: {stage.value} (CN={core.get_common_name(issued.certificate.subject)})")
        return issued

    def _root_stage(self, stage: FixtureStage, identity: Identity, common_name: str) -> core.CertificateAuthority:
        holder: list[core.CertificateAuthority] = []

        def step() -> _Issued:
            authority = core.create_root_authority(
                core.generate_key_pair(self.settings.key_size), common_name, self.settings.validity_days
            )
            holder.append(authority)
            return _Issued(authority.key_pair, authority.certificate, common_name)

        self._run_stage(stage, identity, step)
        return holder[0]

    def _leaf_stage(
        self,
        stage: FixtureStage,
        identity: Identity,
        common_name: str,
        issuer: core.CertificateAuthority,
        role: Role,
    ) -> None:
        def step() -> _Issued:
            key_pair = core.generate_key_pair(self.settings.key_size)
            certificate = core.issue_leaf_certificate(
                key_pair,
                common_name,
                issuer,
                role,
                self.settings.validity_days,
                dns_names=self.settings.server_dns_names,
                ip_addresses=self.settings.server_ip_addresses,
            )
            return _Issued(key_pair, certificate, issuer.common_name or "")

        self._run_stage(stage, identity, step)

    def _trusted_chain(self) -> None:
        ca = self._root_stage(FixtureStage.TRUSTED_CA_READY, Identity.CA, self.settings.ca_common_name)
        self._leaf_stage(
            FixtureStage.SERVER_ISSUED, Identity.SERVER, self.settings.server_common_name, ca, Role.SERVER
        )
        self._leaf_stage(
            FixtureStage.CLIENT_ISSUED, Identity.CLIENT, self.settings.client_common_name, ca, Role.CLIENT
        )

    def _untrusted_chain(self) -> None:
        untrusted_ca = self._root_stage(
            FixtureStage.UNTRUSTED_CA_READY, Identity.UNTRUSTED_CA, self.settings.untrusted_ca_common_name
        )
        self._leaf_stage(
            FixtureStage.UNTRUSTED_CLIENT_ISSUED,
            Identity.UNTRUSTED_CLIENT,
            self.settings.untrusted_client_common_name,
            untrusted_ca,
            Role.CLIENT,
        )

    def _check_disjoint(self) -> None:
        """两条链不能共享密钥或证书，不可信链上的证书也不能被可信 CA 验证。"""
        keys = {core.private_key_to_pem(i.key_pair.private_key) for i in self._issued.values()}
        if len(keys) != len(Identity):
            raise ConstructionError("存在被多个身份复用的密钥对")
        trusted_ca = self._issued[Identity.CA].certificate
        untrusted_ca = self._issued[Identity.UNTRUSTED_CA].certificate
        if trusted_ca.subject == untrusted_ca.subject:
            raise ConstructionError("可信 CA 与不可信 CA 的主体名称相同")
        if core.verify_issued_by(self._issued[Identity.UNTRUSTED_CLIENT].certificate, trusted_ca):
            raise ConstructionError("不可信客户端证书可被可信 CA 验证")

    def _persist(self) -> FixtureSet:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            remove_transient_files(self.output_dir)
            staging = Path(tempfile.mkdtemp(prefix=".tls-fixtures-", dir=self.output_dir))
        except OSError as e:
            raise PersistenceError(f"无法准备输出目录 {self.output_dir}: {e}") from e

        moved: list[Path] = []
        try:
            for identity, issued in self._issued.items():
                key_name, cert_name = self.names.for_identity(identity)
                key_path = staging / key_name
                key_path.write_bytes(core.private_key_to_pem(issued.key_pair.private_key))
                os.chmod(key_path, 0o600)
                (staging / cert_name).write_bytes(core.certificate_to_pem(issued.certificate))
            for name in self.names.all_file_names():
                target = self.output_dir / name
                os.replace(staging / name, target)
                moved.append(target)
        except OSError as e:
            for path in moved:
                path.unlink(missing_ok=True)
            raise PersistenceError(f"写入夹具文件失败: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        artifacts = {}
        for identity, issued in self._issued.items():
            key_name, cert_name = self.names.for_identity(identity)
            artifacts[identity] = IssuedArtifact(
                identity=identity,
                subject_common_name=core.get_common_name(issued.certificate.subject) or "",
                issuer_common_name=issued.issuer_common_name,
                serial_number=issued.certificate.serial_number,
                key_path=self.output_dir / key_name,
                cert_path=self.output_dir / cert_name,
            )
        return FixtureSet(
            output_dir=self.output_dir,
            stage=FixtureStage.DONE,
            completed_stages=[*self.completed_stages, FixtureStage.DONE],
            artifacts=artifacts,
        )

    def assemble(self) -> FixtureSet:
        """执行全部阶段并写盘，返回 FixtureSet。每个实例只能运行一次。"""
        if self.stage is not FixtureStage.INIT:
            raise FixtureError(f"FixtureAssembler 已运行过（当前阶段 {self.stage.value}）")
        logger.info(f"开始生成 TLS 测试夹具: {self.output_dir} (parallel={self.parallel})")

        if self.parallel:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="pki-chain") as pool:
                futures = [pool.submit(self._trusted_chain), pool.submit(self._untrusted_chain)]
                for future in futures:
                    future.result()
        else:
            self._trusted_chain()
            self._untrusted_chain()

        try:
            self._check_disjoint()
            fixture_set = self._persist()
        except FixtureError as e:
            logger.error(f"阶段 {FixtureStage.DONE.value} 失败: {e}")
            raise FixtureBuildError(FixtureStage.DONE, e) from e

        self.completed_stages.append(FixtureStage.DONE)
        self.stage = FixtureStage.DONE
        logger.info(f"TLS 测试夹具已生成: {len(self.names.all_file_names())} 个文件 -> {self.output_dir}")
        return fixture_set


def assemble_fixtures(
    output_dir: str | Path | None = None,
    names: ArtifactNames | None = None,
    parallel: bool | None = None,
    settings: Config | None = None,
) -> FixtureSet:
    return FixtureAssembler(output_dir, names, parallel, settings).assemble()


def remove_transient_files(directory: Path) -> list[Path]:
    """删除目录中的 CSR / 序列号 / 扩展定义文件。"""
    removed: list[Path] = []
    for pattern in TRANSIENT_PATTERNS:
        for path in directory.glob(pattern):
            if path.is_file():
                path.unlink()
                removed.append(path)
    if removed:
        logger.debug(f"已删除遗留的中间文件: {[p.name for p in removed]}")
    return removed


def _alt_name_entries(certificate: x509.Certificate) -> set[str]:
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return set()
    entries = {f"DNS:{name}" for name in san.get_values_for_type(x509.DNSName)}
    entries.update(f"IP:{ip}" for ip in san.get_values_for_type(x509.IPAddress))
    return entries


def _has_client_auth(certificate: x509.Certificate) -> bool:
    try:
        eku = certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return ExtendedKeyUsageOID.CLIENT_AUTH in eku


def _is_leaf(certificate: x509.Certificate) -> bool:
    try:
        return not certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def verify_fixture_set(
    output_dir: str | Path | None = None,
    names: ArtifactNames | None = None,
    settings: Config | None = None,
) -> VerificationReport:
    """
    校验已生成的夹具目录：密钥与证书匹配、根证书自签、信任链、跨链拒绝、
    服务端 SAN、客户端 EKU，以及没有遗留中间文件。
    """
    settings = settings or config
    directory = Path(output_dir) if output_dir is not None else Path(settings.output_dir)
    names = names or ArtifactNames()
    report = VerificationReport(output_dir=directory)

    keys = {}
    certs: dict[Identity, x509.Certificate] = {}
    for identity in Identity:
        key_name, cert_name = names.for_identity(identity)
        try:
            keys[identity] = core.load_private_key_pem((directory / key_name).read_bytes())
            certs[identity] = core.load_certificate_pem((directory / cert_name).read_bytes())
        except (OSError, ValueError) as e:
            report.checks.append(VerificationCheck(name=f"load:{identity.value}", passed=False, detail=str(e)))
    if report.checks:
        logger.warning(f"夹具目录不完整: {directory}")
        return report

    def check(name: str, passed: bool, detail: str | None = None) -> None:
        report.checks.append(VerificationCheck(name=name, passed=passed, detail=None if passed else detail))

    for identity in Identity:
        check(
            f"key_matches:{identity.value}",
            core.verify_key_pair(keys[identity], certs[identity].public_key()),
            "私钥与证书公钥不匹配",
        )

    ca, untrusted_ca = certs[Identity.CA], certs[Identity.UNTRUSTED_CA]
    check("ca_self_signed", core.verify_issued_by(ca, ca), "根证书不是自签 CA")
    check("untrusted_ca_self_signed", core.verify_issued_by(untrusted_ca, untrusted_ca), "不可信根证书不是自签 CA")
    check("server_issued_by_ca", core.verify_issued_by(certs[Identity.SERVER], ca))
    check("client_issued_by_ca", core.verify_issued_by(certs[Identity.CLIENT], ca))
    check(
        "untrusted_client_issued_by_untrusted_ca",
        core.verify_issued_by(certs[Identity.UNTRUSTED_CLIENT], untrusted_ca),
    )
    check("server_rejected_by_untrusted_ca", not core.verify_issued_by(certs[Identity.SERVER], untrusted_ca))
    check("client_rejected_by_untrusted_ca", not core.verify_issued_by(certs[Identity.CLIENT], untrusted_ca))
    check("untrusted_client_rejected_by_ca", not core.verify_issued_by(certs[Identity.UNTRUSTED_CLIENT], ca))

    expected_san = {f"DNS:{n}" for n in settings.server_dns_names}
    expected_san.update(f"IP:{ip}" for ip in settings.server_ip_addresses)
    actual_san = _alt_name_entries(certs[Identity.SERVER])
    check("server_alt_names", actual_san == expected_san, f"SAN 为 {sorted(actual_san)}")
    check("client_auth_usage", _has_client_auth(certs[Identity.CLIENT]), "客户端证书缺少 clientAuth")
    check(
        "untrusted_client_auth_usage",
        _has_client_auth(certs[Identity.UNTRUSTED_CLIENT]),
        "不可信客户端证书缺少 clientAuth",
    )
    leaves = (Identity.SERVER, Identity.CLIENT, Identity.UNTRUSTED_CLIENT)
    check("leaves_not_ca", all(_is_leaf(certs[i]) for i in leaves), "叶子证书被标记为 CA")

    leftovers = sorted(p.name for pattern in TRANSIENT_PATTERNS for p in directory.glob(pattern))
    check("no_transient_files", not leftovers, f"遗留文件: {leftovers}")

    for failed in report.failed():
        logger.warning(f"夹具校验未通过: {failed.name} {failed.detail or ''}")
    return report
