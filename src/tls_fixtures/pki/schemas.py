"""
文件功能：
    定义测试用 PKI 夹具相关的公开数据模型（Pydantic）。

公开接口：
    - Role: 叶子证书角色（服务端/客户端）
    - Identity: 一次生成中的五个身份
    - FixtureStage: 编排状态机的各个状态
    - ArtifactNames: 各身份的密钥/证书文件名
    - IssuedArtifact: 已写盘的单个身份产物
    - FixtureSet: 一次完整生成的结果
    - VerificationCheck / VerificationReport: 夹具目录的校验结果
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    SERVER = "server"
    CLIENT = "client"


class Identity(str, Enum):
    CA = "ca"
    SERVER = "server"
    CLIENT = "client"
    UNTRUSTED_CA = "untrusted-ca"
    UNTRUSTED_CLIENT = "untrusted-client"


class FixtureStage(str, Enum):
    INIT = "init"
    TRUSTED_CA_READY = "trusted_ca_ready"
    SERVER_ISSUED = "server_issued"
    CLIENT_ISSUED = "client_issued"
    UNTRUSTED_CA_READY = "untrusted_ca_ready"
    UNTRUSTED_CLIENT_ISSUED = "untrusted_client_issued"
    DONE = "done"


class ArtifactNames(BaseModel):
    """每个身份对应的 (私钥文件名, 证书文件名)，默认与旧的 gen.sh 产物一致。"""

    ca: tuple[str, str] = ("ca.key", "ca.crt")
    server: tuple[str, str] = ("server.key", "server.crt")
    client: tuple[str, str] = ("client.key", "client.crt")
    untrusted_ca: tuple[str, str] = ("untrusted-ca.key", "untrusted-ca.crt")
    untrusted_client: tuple[str, str] = ("untrusted-client.key", "untrusted-client.crt")

    @field_validator("ca", "server", "client", "untrusted_ca", "untrusted_client")
    @classmethod
    def check_plain_file_names(cls, value: tuple[str, str]) -> tuple[str, str]:
        for name in value:
            if not name or Path(name).name != name:
                raise ValueError(f"文件名必须是不含目录的非空名称: {name!r}")
        if value[0] == value[1]:
            raise ValueError("私钥与证书不能使用同一文件名")
        return value

    def for_identity(self, identity: Identity) -> tuple[str, str]:
        return getattr(self, identity.value.replace("-", "_"))

    def all_file_names(self) -> list[str]:
        names: list[str] = []
        for identity in Identity:
            names.extend(self.for_identity(identity))
        return names


class IssuedArtifact(BaseModel):
    """单个身份的产物。"""

    identity: Identity
    subject_common_name: str = Field(description="证书主体 CN")
    issuer_common_name: str = Field(description="签发者 CN")
    serial_number: int = Field(description="证书序列号")
    key_path: Path = Field(description="PEM 私钥路径")
    cert_path: Path = Field(description="PEM 证书路径")


class FixtureSet(BaseModel):
    """一次完整生成的结果。"""

    output_dir: Path
    stage: FixtureStage = FixtureStage.DONE
    completed_stages: list[FixtureStage] = Field(default_factory=list, description="按完成顺序记录的阶段")
    artifacts: dict[Identity, IssuedArtifact] = Field(default_factory=dict)

    def key_path(self, identity: Identity) -> Path:
        return self.artifacts[identity].key_path

    def cert_path(self, identity: Identity) -> Path:
        return self.artifacts[identity].cert_path


class VerificationCheck(BaseModel):
    name: str
    passed: bool
    detail: str | None = None


class VerificationReport(BaseModel):
    """夹具目录校验结果。"""

    output_dir: Path
    checks: list[VerificationCheck] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    def failed(self) -> list[VerificationCheck]:
        return [c for c in self.checks if not c.passed]
