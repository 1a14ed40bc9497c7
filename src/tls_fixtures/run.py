#!/usr/bin/env python
"""
命令行入口：
    tls-fixtures generate [--output-dir DIR] [--parallel] [--log-level LEVEL]
    tls-fixtures verify [--output-dir DIR]
"""

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tls-fixtures", description="生成 TLS/mTLS 测试用的 PKI 夹具")
    parser.add_argument("command", nargs="?", choices=["generate", "verify"], default="generate")
    parser.add_argument("-o", "--output-dir", type=Path, default=None, help="输出目录（默认读取配置）")
    parser.add_argument("--parallel", action="store_true", default=None, help="可信链与不可信链并行生成")
    parser.add_argument("--log-level", default=None, help="日志级别（默认读取配置）")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = _build_parser().parse_args(argv)

    # 延迟导入：.env 需要先加载，配置单例才能读取到其中的值
    from src.tls_fixtures.config import load_config
    from src.tls_fixtures.pki.errors import FixtureError
    from src.tls_fixtures.pki.services import assemble_fixtures, verify_fixture_set

    settings = load_config()
    logger.remove()
    logger.add(sys.stderr, level=(args.log_level or settings.log_level).upper())

    output_dir = args.output_dir or settings.output_dir
    if args.command == "verify":
        report = verify_fixture_set(output_dir, settings=settings)
        for c in report.checks:
            logger.info(f"{'PASS' if c.passed else 'FAIL'} {c.name}{' - ' + c.detail if c.detail else ''}")
        return 0 if report.ok else 1

    try:
        fixture_set = assemble_fixtures(output_dir, parallel=args.parallel, settings=settings)
    except FixtureError as e:
        logger.error(f"生成失败，输出目录不可用: {e}")
        return 1
    for artifact in fixture_set.artifacts.values():
        logger.info(
            f"{artifact.identity.value}: {artifact.cert_path.name} "
            f"(CN={artifact.subject_common_name}, issuer={artifact.issuer_common_name}, "
            f"serial={artifact.serial_number:x})"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
