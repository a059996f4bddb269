"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogSection


def new_logger(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """設定済みの structlog ロガーを返す。

    エンジン内部のモジュールは structlog.stdlib.get_logger(__name__) で取得した
    ロガーを使うため、ホスト側で一度呼び出せば評価ログにも反映される。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if format == "json":
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger("k1s0_featureflag")


def configure_logging(section: LogSection) -> structlog.stdlib.BoundLogger:
    """設定ファイルのログ設定からロガーを構成する。"""
    return new_logger(level=section.level, format=section.format)
