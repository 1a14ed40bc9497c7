"""
pytest 插件：为测试会话提供一套新生成的 TLS 夹具。

在 conftest.py 中通过 `pytest_plugins = ["src.tls_fixtures.pki.plugin"]` 启用。
"""

from __future__ import annotations

import pytest

from .schemas import FixtureSet
from .services import assemble_fixtures


@pytest.fixture(scope="session")
def tls_fixture_set(tmp_path_factory) -> FixtureSet:
    """整个会话共享的一套 CA / 服务端 / 客户端 / 不可信 CA 夹具。"""
    return assemble_fixtures(tmp_path_factory.mktemp("tls"), parallel=True)
