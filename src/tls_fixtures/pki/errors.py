"""
测试用 PKI 生成过程中的异常类型。

公开接口：
    - FixtureError: 所有夹具生成异常的基类
    - KeyGenerationError: 密钥生成失败（熵源/底层库错误）
    - ConstructionError: 证书/CSR 构造失败（空主体、签名不匹配等）
    - PersistenceError: 产物写入失败
    - FixtureBuildError: 编排层异常，携带失败的阶段
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import FixtureStage


class FixtureError(RuntimeError):
    """夹具生成异常基类。任何此类异常都意味着输出目录不可用。"""


class KeyGenerationError(FixtureError):
    """RSA 密钥生成失败。"""


class ConstructionError(FixtureError, ValueError):
    """证书或 CSR 构造失败。"""


class PersistenceError(FixtureError):
    """无法写入产物文件。"""


class FixtureBuildError(FixtureError):
    """某个签发阶段失败，整轮生成终止。"""

    def __init__(self, stage: "FixtureStage", cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"阶段 {stage.value} 失败: {cause}")
