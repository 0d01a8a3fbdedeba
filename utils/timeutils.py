"""時刻ユーティリティ（DBにはタイムゾーンなしのUTCで保存する）"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """現在時刻（naive UTC）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str) -> datetime:
    """
    ISO-8601 文字列を naive UTC に変換する。

    "Z" サフィックスとオフセット付きの両方を受け付ける。
    オフセットなしの値は UTC とみなす。

    Raises:
        ValueError: 解釈できない文字列
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """naive UTC を "Z" 付き ISO-8601 で返す"""
    if value is None:
        return None
    return value.isoformat() + "Z"
