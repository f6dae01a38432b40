"""Logging configuration setup."""

import logging
from typing import Optional

from config.settings import config


def setup_logging(level: Optional[str] = None):
    """ログ設定のセットアップ"""
    # 引数がなければ settings.py からログレベルを取得
    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s"
    )
    return logging.getLogger(__name__)
