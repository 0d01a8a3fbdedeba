"""
投票台帳 - VoteLedger

追記のみの投票記録。「1人1票」は DB の一意制約
(session_id, member_id, proposal_id) で保証し、事前の読み取りチェックは
行わない（同時リクエストが両方ともチェックを通過する競合を避けるため）。
"""
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from core.errors import DuplicateVoteError, NotFoundError, ValidationError, VotingClosedError
from models import NO_PROPOSAL, SessionStatus, Vote, VoteValue, VotingSession, db
from utils.logger import get_logger
from utils.timeutils import utcnow

logger = get_logger("VoteLedger")


def parse_vote_value(raw) -> VoteValue:
    """
    投票値を検証する。"yes" / "no" / "abstain" の文字列のみ受け付け、
    true / false / null の表現は拒否する。
    """
    if not isinstance(raw, str):
        raise ValidationError("Vote must be yes, no, or abstain", field="vote")
    try:
        return VoteValue(raw.strip().lower())
    except ValueError:
        raise ValidationError("Vote must be yes, no, or abstain", field="vote")


class VoteLedger:
    """投票の記録と参照"""

    def __init__(self, max_reason_length: int = 500):
        self.max_reason_length = max_reason_length

    def _clean_reason(self, reason) -> Optional[str]:
        if reason is None:
            return None
        if not isinstance(reason, str):
            raise ValidationError("Reason must be a string", field="reason")
        reason = reason.strip()
        if len(reason) > self.max_reason_length:
            raise ValidationError(
                f"Reason must not exceed {self.max_reason_length} characters", field="reason"
            )
        return reason or None

    def cast_vote(
        self,
        session: VotingSession,
        member_id: str,
        proposal_id: Optional[str],
        value,
        reason=None,
        now=None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Vote:
        """
        投票を記録する（コミットは呼び出し側）。

        Args:
            session: 対象セッション（実効ステータスが open であること）
            member_id: 投票する組合員の user_id（資格確認は呼び出し側）
            proposal_id: 提案 ID。単一議案セッションでは None
            value: "yes" / "no" / "abstain"
            reason: 任意の理由（500文字以内）
            now: 現在時刻（votedAt にも使う）
        Returns:
            記録された Vote

        Raises:
            ValidationError: 投票値・理由が不正
            VotingClosedError: セッションが open でない（期限切れを含む）
            DuplicateVoteError: 同じキーの票が既に存在する
        """
        now = now or utcnow()
        vote_value = parse_vote_value(value)
        clean_reason = self._clean_reason(reason)

        if session.effective_status(now) != SessionStatus.OPEN.value:
            if session.status == SessionStatus.OPEN.value:
                raise VotingClosedError("Voting deadline has passed")
            raise VotingClosedError("Voting is not currently open for this project")

        vote = Vote(
            session=session,
            session_id=session.id,
            project_id=session.project_id,
            session_key=session.session_key,
            member_id=member_id,
            proposal_id=proposal_id or NO_PROPOSAL,
            value=vote_value.value,
            reason=clean_reason,
            voted_at=now,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:256] or None,
        )
        db.session.add(vote)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.info(
                "重複投票を拒否: project=%s session=%s proposal=%s",
                session.project_id, session.session_key, proposal_id,
            )
            raise DuplicateVoteError("You have already voted in this session")

        logger.info(
            "投票記録: project=%s session=%s round=%d proposal=%s",
            session.project_id, session.session_key, session.round, proposal_id,
        )
        logger.debug("投票者: %s -> %s", member_id, vote_value.value)
        return vote

    def get_vote(self, session: VotingSession, member_id: str, proposal_id: Optional[str] = None) -> Vote:
        """
        自分の票を取得する。未投票は NotFoundError（UI では「未投票」として扱う）。
        """
        vote = Vote.query.filter_by(
            session_id=session.id,
            member_id=member_id,
            proposal_id=proposal_id or NO_PROPOSAL,
        ).first()
        if vote is None:
            raise NotFoundError("Vote not found")
        return vote

    def list_votes_for_member(
        self,
        member_id: str,
        project_id: str,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Vote], int]:
        """プロジェクト内の全セッション・全提案にわたる投票履歴（新しい順）"""
        query = Vote.query.filter_by(member_id=member_id, project_id=project_id)
        total = query.count()
        votes = (
            query.order_by(Vote.voted_at.desc(), Vote.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return votes, total

    def verify_vote(self, project_id: str, vote_id: str, verifier_id: str, now=None) -> Vote:
        """
        票を確認済みにする（コミットは呼び出し側、権限確認も呼び出し側）。
        投票値・理由は変更しない。確認済みの票を再度確認すると確認者・日時が更新される。

        Raises:
            NotFoundError: 票が存在しない、または別プロジェクトの票
        """
        vote = db.session.get(Vote, vote_id) if vote_id else None
        if vote is None or vote.project_id != project_id:
            raise NotFoundError("Vote not found")

        vote.is_verified = True
        vote.verified_by = verifier_id
        vote.verified_at = now or utcnow()
        db.session.flush()
        logger.info("投票確認: project=%s vote=%s by=%s", project_id, vote_id, verifier_id)
        return vote

    def list_votes(self, session: VotingSession) -> List[Vote]:
        """セッション内の全票（オーナーの監査用）"""
        return (
            Vote.query.filter_by(session_id=session.id)
            .order_by(Vote.voted_at.desc(), Vote.id)
            .all()
        )
