"""
使用生成的夹具搭建 TLS / mTLS 连接的辅助方法。

公开接口：
    - server_ssl_context: 服务端上下文（可选要求客户端证书）
    - client_ssl_context: 客户端上下文（指定信任锚，可选客户端证书）
    - LoopbackTLSServer: 在 127.0.0.1 上监听的简易 TLS 服务端，用于握手测试
    - tls_request: 连接并读取服务端的应答
"""

from __future__ import annotations

import socket
import ssl
import threading
from pathlib import Path

from loguru import logger

from .schemas import FixtureSet, Identity

GREETING = b"ok"


def server_ssl_context(
    fixtures: FixtureSet,
    require_client_cert: bool = False,
    trust: Identity = Identity.CA,
) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(
        certfile=str(fixtures.cert_path(Identity.SERVER)),
        keyfile=str(fixtures.key_path(Identity.SERVER)),
    )
    if require_client_cert:
        context.verify_mode = ssl.CERT_REQUIRED
        context.load_verify_locations(cafile=str(fixtures.cert_path(trust)))
    return context


def client_ssl_context(
    ca_cert: str | Path,
    cert: str | Path | None = None,
    key: str | Path | None = None,
) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=str(ca_cert))
    if cert is not None:
        context.load_cert_chain(certfile=str(cert), keyfile=str(key) if key is not None else None)
    return context


def _peer_common_name(peer: dict | None) -> str | None:
    for rdn in (peer or {}).get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                return value
    return None


class LoopbackTLSServer:
    """每个连接完成一次握手并回写 GREETING；握手错误记录在 errors 中。"""

    def __init__(self, context: ssl.SSLContext, host: str = "127.0.0.1") -> None:
        self.context = context
        self.host = host
        self.errors: list[Exception] = []
        self.peer_common_names: list[str | None] = []
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def port(self) -> int:
        if self._sock is None:
            raise RuntimeError("服务端尚未启动")
        return self._sock.getsockname()[1]

    def __enter__(self) -> "LoopbackTLSServer":
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        self._sock = socket.create_server((self.host, 0), family=family)
        self._sock.settimeout(0.2)
        self._thread = threading.Thread(target=self._serve, name="loopback-tls", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
        if self._sock is not None:
            self._sock.close()

    def _serve(self) -> None:
        assert self._sock is not None
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(5)
            try:
                with self.context.wrap_socket(conn, server_side=True) as tls:
                    self.peer_common_names.append(_peer_common_name(tls.getpeercert()))
                    tls.sendall(GREETING)
            except (ssl.SSLError, OSError) as e:
                logger.debug(f"TLS 握手失败: {e}")
                self.errors.append(e)
            finally:
                conn.close()


def tls_request(
    port: int,
    context: ssl.SSLContext,
    host: str = "127.0.0.1",
    server_hostname: str = "localhost",
    timeout: float = 5.0,
) -> bytes:
    """建立 TLS 连接并返回服务端的应答；证书校验失败时抛出 ssl.SSLError。"""
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=server_hostname) as tls:
            return tls.recv(len(GREETING))
