"""
配置加载模块：支持 .env、环境变量、工作目录 tls_fixtures.json（或 TLS_FIXTURES_CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
- load_config: 按当前环境重新构建配置
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_str_list: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource

CONFIG_FILE_ENV = "TLS_FIXTURES_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "tls_fixtures.json"


class Config(BaseSettings):
    output_dir: Path = Path("tests/tls")
    key_size: int = 2048
    validity_days: int = 3650
    parallel: bool = False
    log_level: str = "INFO"

    ca_common_name: str = "Test CA"
    server_common_name: str = "localhost"
    client_common_name: str = "Test Client"
    untrusted_ca_common_name: str = "Untrusted Test CA"
    untrusted_client_common_name: str = "Untrusted Test Client"

    server_dns_names: Annotated[List[str], NoDecode] = ["localhost"]
    server_ip_addresses: Annotated[List[str], NoDecode] = ["127.0.0.1", "::1"]

    model_config = SettingsConfigDict(
        env_prefix="TLS_FIXTURES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("server_dns_names", "server_ip_addresses", mode="before")
    @classmethod
    def parse_str_list(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析列表。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @field_validator("key_size")
    @classmethod
    def check_key_size(cls, value: int) -> int:
        # 默认 TLS 栈拒绝 2048 位以下的 RSA 密钥
        if value < 2048:
            raise ValueError("key_size 不能小于 2048")
        return value

    @field_validator("validity_days")
    @classmethod
    def check_validity_days(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("validity_days 必须为正数")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > tls_fixtures.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 tls_fixtures.json（或 TLS_FIXTURES_CONFIG_FILE 指定路径）加载配置。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get(CONFIG_FILE_ENV)
                path = Path(cfg_path) if cfg_path else Path.cwd() / DEFAULT_CONFIG_FILE
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_config(**overrides: Any) -> Config:
    """按当前环境变量与配置文件重新构建配置，overrides 优先级最高。"""
    return Config(**overrides)


config = Config()
