"""
通知モジュール - 投票イベントの配信
Socket.IO のプロジェクトルームへの emit と、設定されていれば Webhook への POST を行う。
配信の失敗はログと履歴に残すだけで、投票処理には影響させない。
"""
from collections import deque
from typing import Callable, Optional

import requests

from utils.logger import get_logger
from utils.timeutils import isoformat, utcnow

logger = get_logger("Notifier")


def project_room(project_id: str) -> str:
    return f"project:{project_id}"


class Notifier:
    """投票イベント通知クラス"""

    WEBHOOK_TIMEOUT = 10

    def __init__(
        self,
        emit_callback: Optional[Callable] = None,
        webhook_url: str = "",
        history_size: int = 200,
    ):
        """
        Args:
            emit_callback: (event, data, room) を受け取る Socket.IO 送信用コールバック
            webhook_url: 通知先 Webhook（空なら送信しない）
            history_size: 保持する通知履歴の件数
        """
        self.emit = emit_callback
        self.webhook_url = webhook_url or ""
        self.history: deque = deque(maxlen=history_size)

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url) and not self.webhook_url.startswith("your_")

    def _dispatch(self, project_id: str, event: str, data: dict) -> dict:
        notification = {
            "time": isoformat(utcnow()),
            "event": event,
            "projectId": project_id,
            "emitted": False,
            "sent": False,
        }

        if self.emit:
            try:
                self.emit(event, data, project_room(project_id))
                notification["emitted"] = True
            except Exception as e:
                logger.warning("Socket.IO 送信失敗 %s: %s", event, e)
                notification["error"] = str(e)

        if self.is_configured:
            payload = {"event": event, "projectId": project_id, "data": data}
            try:
                resp = requests.post(
                    self.webhook_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.WEBHOOK_TIMEOUT,
                )
                notification["sent"] = resp.status_code in (200, 201, 202, 204)
                if not notification["sent"]:
                    notification["error"] = f"HTTP {resp.status_code}"
                    logger.warning("Webhook 応答エラー %s: HTTP %d", event, resp.status_code)
            except requests.RequestException as e:
                notification["error"] = str(e)
                logger.warning("Webhook 送信失敗 %s: %s", event, e)

        self.history.append(notification)
        return notification

    def voting_started(self, project_id: str, session: dict) -> dict:
        return self._dispatch(project_id, "voting_started", {"session": session})

    def vote_cast(self, project_id: str, statistics: dict) -> dict:
        """投票後の集計更新（投票者 ID は含めない）"""
        return self._dispatch(project_id, "voting_update", {"statistics": statistics})

    def voting_closed(self, project_id: str, results: dict) -> dict:
        return self._dispatch(project_id, "voting_closed", results)

    def developer_selected(self, project_id: str, winning: dict) -> dict:
        return self._dispatch(project_id, "developer_selected", {"winningProposal": winning})

    def proposal_updated(self, project_id: str, proposal: dict) -> dict:
        return self._dispatch(project_id, "proposal_updated", {"proposal": proposal})

    def get_history(self, limit: int = 50) -> list:
        """通知履歴を取得（新しい順）"""
        return list(reversed(list(self.history)[-limit:]))
