"""
Society Voting - 設定管理
"""
import os
from dotenv import load_dotenv

load_dotenv()

_PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))


class Config:
    """アプリケーション設定"""

    # Flask
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret-key")
    DEBUG = os.getenv("FLASK_DEBUG", "false").lower() == "true"
    TESTING = False

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL", "sqlite:///" + os.path.join(_PROJECT_ROOT, "voting.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Socket.IO
    SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "gevent")
    CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "*")

    # 通知 Webhook（未設定なら Socket.IO のみ）
    NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")

    # Voting
    APPROVAL_BASIS = os.getenv("APPROVAL_BASIS", "members")  # "members" / "votes_cast"
    DEFAULT_MINIMUM_APPROVAL_PERCENTAGE = int(os.getenv("DEFAULT_MINIMUM_APPROVAL_PERCENTAGE", "75"))
    DEFAULT_VOTING_SESSION = os.getenv("DEFAULT_VOTING_SESSION", "proposal_selection")
    MAX_REASON_LENGTH = 500
    HISTORY_PAGE_LIMIT_MAX = 100


class TestConfig(Config):
    """pytest 用設定（インメモリDB・スレッドモード）"""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SOCKETIO_ASYNC_MODE = "threading"
    NOTIFY_WEBHOOK_URL = ""
    APPROVAL_BASIS = "members"
    DEFAULT_MINIMUM_APPROVAL_PERCENTAGE = 75
    DEFAULT_VOTING_SESSION = "proposal_selection"


# ============================================================
# 投票セッション定義
# ============================================================
# subject:
#   "project_approval"    - 議案1件への賛否（提案の次元なし）
#   "developer_selection" - 複数のデベロッパー提案から1件を選定
VOTING_SESSIONS = {
    "initial_approval": {
        "label": "再開発の承認",
        "subject": "project_approval",
        "description": "再開発プロジェクトを進めるかどうかの組合員投票",
    },
    "proposal_selection": {
        "label": "提案の選定",
        "subject": "developer_selection",
        "description": "提出されたデベロッパー提案それぞれへの賛否投票",
    },
    "developer_selection": {
        "label": "デベロッパーの選定",
        "subject": "developer_selection",
        "description": "候補デベロッパーの中から施工者を選ぶ投票",
    },
    "milestone_approval": {
        "label": "マイルストーン承認",
        "subject": "project_approval",
        "description": "工事の節目ごとの進捗承認",
    },
}

SESSION_SUBJECTS = ("project_approval", "developer_selection")
APPROVAL_BASES = ("members", "votes_cast")
