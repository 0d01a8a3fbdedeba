"""
Society Voting - ロガーユーティリティ

全ロガーで共有するハンドラ 2 本（ファイル voting.log とコンソール）を使う。
    VOTING_LOG_DIR   - ログ出力先ディレクトリ（既定: <project>/logs）
    VOTING_LOG_LEVEL - コンソールの出力レベル（既定: INFO）
ハンドラは最初の get_logger 呼び出しで作成し、ディレクトリもその時に作る。
"""
import os
import logging
from logging.handlers import RotatingFileHandler

_DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")
_LOG_FILE_NAME = "voting.log"
_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# 通信ライブラリの詳細ログはコンソールに流さない
_QUIET_LOGGERS = ("urllib3", "engineio.server", "socketio.server")

_handlers = []


def console_level() -> int:
    """VOTING_LOG_LEVEL を解釈する（不正な値は INFO）"""
    name = os.getenv("VOTING_LOG_LEVEL", "INFO").strip().upper()
    if name not in VALID_LEVELS:
        return logging.INFO
    return getattr(logging, name)


def log_file_path() -> str:
    return os.path.join(os.getenv("VOTING_LOG_DIR", _DEFAULT_LOG_DIR), _LOG_FILE_NAME)


def _shared_handlers() -> list:
    if _handlers:
        return _handlers

    formatter = logging.Formatter(_FORMAT)
    path = log_file_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)

    # ファイルは DEBUG まで（最大5MB、バックアップ3世代）
    file_handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level())
    console_handler.setFormatter(formatter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _handlers.extend([file_handler, console_handler])
    return _handlers


def get_logger(name: str) -> logging.Logger:
    """
    名前付きロガーを取得する。

    Args:
        name: ロガー名（例: "VoteLedger", "SessionManager"）
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    for handler in _shared_handlers():
        logger.addHandler(handler)
    return logger
