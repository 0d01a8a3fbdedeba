"""投票セッション・投票 データモデル"""
from enum import Enum

from models.base import db, new_id
from utils.timeutils import utcnow, isoformat


# 単一議案セッション（提案の次元なし）の投票で使う proposal_id。
# NULL は一意制約で重複扱いされないため空文字で表す。
NO_PROPOSAL = ""


class VoteValue(Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class SessionStatus(Enum):
    NOT_STARTED = "not_started"
    OPEN = "open"
    CLOSED = "closed"


class VotingSession(db.Model):
    """
    (project_id, session_key) ごとの投票ラウンド。

    同じ session_key を閉じた後に再開すると round が 1 つ進み、
    投票箱は空から始まる。open なラウンドは部分一意インデックスで
    プロジェクト × session_key あたり 1 件に制限される。
    """
    __tablename__ = "voting_sessions"
    __table_args__ = (
        db.UniqueConstraint("project_id", "session_key", "round", name="uq_voting_sessions_round"),
        db.Index(
            "uq_voting_sessions_open",
            "project_id",
            "session_key",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    project_id = db.Column(
        db.String(36), db.ForeignKey("redevelopment_projects.id"), nullable=False, index=True
    )
    session_key = db.Column(db.String(64), nullable=False)
    round = db.Column(db.Integer, nullable=False, default=1)
    subject = db.Column(db.String(32), nullable=False)  # "project_approval" / "developer_selection"
    status = db.Column(db.String(16), nullable=False, default=SessionStatus.OPEN.value)
    deadline = db.Column(db.DateTime, nullable=True)
    minimum_approval_percentage = db.Column(db.Integer, nullable=False)
    approval_basis = db.Column(db.String(16), nullable=False, default="members")
    previous_project_status = db.Column(db.String(32), nullable=True)
    # 開始時点の投票資格者数（"members" 基準の分母）
    eligible_members = db.Column(db.Integer, nullable=True)
    opened_by = db.Column(db.String(64), nullable=True)
    opened_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)
    close_reason = db.Column(db.String(32), nullable=True)  # "manual" / "deadline_passed"
    final_results = db.Column(db.JSON, nullable=True)

    @property
    def selects_proposal(self) -> bool:
        return self.subject == "developer_selection"

    def is_expired(self, now=None) -> bool:
        now = now or utcnow()
        return self.deadline is not None and now >= self.deadline

    def effective_status(self, now=None) -> str:
        """期限切れの open は closed として扱う（読み取り時判定）"""
        now = now or utcnow()
        if self.status == SessionStatus.OPEN.value and self.is_expired(now):
            return SessionStatus.CLOSED.value
        return self.status

    def to_dict(self, now=None) -> dict:
        now = now or utcnow()
        hours_remaining = None
        if self.deadline is not None and self.effective_status(now) == SessionStatus.OPEN.value:
            hours_remaining = max(0, int((self.deadline - now).total_seconds() // 3600))
        return {
            "id": self.id,
            "projectId": self.project_id,
            "sessionKey": self.session_key,
            "round": self.round,
            "subject": self.subject,
            "status": self.effective_status(now),
            "deadline": isoformat(self.deadline),
            "hoursRemaining": hours_remaining,
            "minimumApprovalPercentage": self.minimum_approval_percentage,
            "approvalBasis": self.approval_basis,
            "eligibleMembers": self.eligible_members,
            "openedAt": isoformat(self.opened_at),
            "closedAt": isoformat(self.closed_at),
            "closeReason": self.close_reason,
        }


class Vote(db.Model):
    """
    投票レコード（追記のみ・投票内容は変更不可）。

    (session_id, member_id, proposal_id) の一意制約が
    「1セッション・1提案につき1票」を保証する。
    is_verified / verified_by / verified_at はオーナーによる確認記録で、
    value / reason には触れない。
    """
    __tablename__ = "votes"
    __table_args__ = (
        db.UniqueConstraint("session_id", "member_id", "proposal_id", name="uq_votes_session_member_proposal"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    session_id = db.Column(db.String(36), db.ForeignKey("voting_sessions.id"), nullable=False, index=True)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    session_key = db.Column(db.String(64), nullable=False)
    member_id = db.Column(db.String(64), nullable=False, index=True)
    proposal_id = db.Column(db.String(36), nullable=False, default=NO_PROPOSAL)
    value = db.Column(db.String(8), nullable=False)  # "yes" / "no" / "abstain"
    reason = db.Column(db.String(500), nullable=True)
    voted_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(256), nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_by = db.Column(db.String(64), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)

    session = db.relationship("VotingSession")

    def to_dict(self, include_audit: bool = False) -> dict:
        data = {
            "id": self.id,
            "projectId": self.project_id,
            "votingSession": self.session_key,
            "round": self.session.round if self.session is not None else None,
            "proposal": self.proposal_id or None,
            "vote": self.value,
            "reason": self.reason,
            "votedAt": isoformat(self.voted_at),
        }
        if include_audit:
            data["member"] = self.member_id
            data["ipAddress"] = self.ip_address
            data["userAgent"] = self.user_agent
            data["isVerified"] = bool(self.is_verified)
            data["verifiedBy"] = self.verified_by
            data["verifiedAt"] = isoformat(self.verified_at)
        return data
