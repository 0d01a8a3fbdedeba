"""
セッション管理 - SessionManager

投票セッションの状態遷移（not_started → open → closed）を管理する。
期限切れは読み取り時に判定し（バックグラウンドのスケジューラは持たない）、
close は status の compare-and-swap で二重終了を防ぐ。
終了時は同一トランザクション内で集計・勝者決定・結果保存まで行う。
"""
import re
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from config import SESSION_SUBJECTS, APPROVAL_BASES, VOTING_SESSIONS
from core.errors import (
    AlreadyClosedError,
    InvalidStateError,
    ValidationError,
    VotingInProgressError,
)
from core.proposal import ProposalManager
from core.resolution import WinnerResolver
from core.tally import TallyEngine
from models import RedevelopmentProject, SessionStatus, VotingSession, db
from services.membership import count_eligible_members
from utils.logger import get_logger
from utils.timeutils import isoformat, utcnow

logger = get_logger("SessionManager")

_SESSION_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def validate_session_key(session_key) -> str:
    if not isinstance(session_key, str) or not _SESSION_KEY_PATTERN.match(session_key.strip()):
        raise ValidationError("Voting session is required", field="votingSession")
    return session_key.strip()


def validate_minimum_percentage(value) -> int:
    """最低承認率は 50〜100 の整数"""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationError("minimumApprovalPercentage must be an integer", field="minimumApprovalPercentage")
    try:
        number = float(value)
    except ValueError:
        raise ValidationError("minimumApprovalPercentage must be an integer", field="minimumApprovalPercentage")
    if not number.is_integer():
        raise ValidationError("minimumApprovalPercentage must be an integer", field="minimumApprovalPercentage")
    if not 50 <= number <= 100:
        raise ValidationError(
            "minimumApprovalPercentage must be between 50 and 100", field="minimumApprovalPercentage"
        )
    return int(number)


class SessionManager:
    """投票セッションのライフサイクル管理"""

    def __init__(
        self,
        tally_engine: TallyEngine,
        resolver: WinnerResolver,
        clock=utcnow,
        default_minimum_percentage: int = 75,
        default_approval_basis: str = "members",
    ):
        self.tally = tally_engine
        self.resolver = resolver
        self.clock = clock
        self.default_minimum_percentage = default_minimum_percentage
        self.default_approval_basis = default_approval_basis

    # ------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------
    @staticmethod
    def current(project_id: str, session_key: str) -> Optional[VotingSession]:
        """最新ラウンドのセッション（未開始なら None）"""
        return (
            VotingSession.query.filter_by(project_id=project_id, session_key=session_key)
            .order_by(VotingSession.round.desc())
            .first()
        )

    def get_session_status(self, project: RedevelopmentProject, session_key: str) -> dict:
        """
        現在のセッション状態を返す。

        保存上は open でも期限を過ぎていれば "closed" として返す（エラーにはしない）。
        セッションが一度も開始されていなければ "not_started"。
        """
        session_key = validate_session_key(session_key)
        session = self.current(project.id, session_key)
        if session is None:
            profile = VOTING_SESSIONS.get(session_key, {})
            return {
                "id": None,
                "projectId": project.id,
                "sessionKey": session_key,
                "round": 0,
                "subject": profile.get("subject", "project_approval"),
                "status": SessionStatus.NOT_STARTED.value,
                "deadline": None,
                "hoursRemaining": None,
                "minimumApprovalPercentage": self._minimum_for(project),
                "approvalBasis": self._basis_for(project),
                "eligibleMembers": None,
                "openedAt": None,
                "closedAt": None,
                "closeReason": None,
            }
        return session.to_dict(self.clock())

    def _minimum_for(self, project: RedevelopmentProject) -> int:
        return project.minimum_approval_percentage or self.default_minimum_percentage

    def _basis_for(self, project: RedevelopmentProject) -> str:
        return project.approval_basis or self.default_approval_basis

    # ------------------------------------------------------------
    # 開始
    # ------------------------------------------------------------
    def start_voting(
        self,
        project: RedevelopmentProject,
        session_key: str,
        deadline=None,
        minimum_approval_percentage=None,
        opened_by: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> VotingSession:
        """
        投票を開始する（コミットは呼び出し側）。

        前回ラウンドが期限切れのまま open で残っていれば先に確定させる。

        Raises:
            ValidationError: 引数不正（承認率の範囲外、過去の期限など）
            VotingInProgressError: 同じセッションが既に open
            InvalidStateError: 投票対象の提案がない / 既に選定済み
        """
        session_key = validate_session_key(session_key)
        if minimum_approval_percentage is None:
            minimum = self._minimum_for(project)
        else:
            minimum = validate_minimum_percentage(minimum_approval_percentage)

        if subject is None:
            subject = VOTING_SESSIONS.get(session_key, {}).get("subject", "project_approval")
        if subject not in SESSION_SUBJECTS:
            raise ValidationError("Invalid voting subject", field="subject")

        basis = self._basis_for(project)
        if basis not in APPROVAL_BASES:
            raise InvalidStateError(f"Unsupported approval basis: {basis}")

        now = self.clock()
        if deadline is not None and deadline <= now:
            raise ValidationError("Voting deadline must be in the future", field="deadline")

        current = self.current(project.id, session_key)
        if current is not None and current.status == SessionStatus.OPEN.value:
            if not current.is_expired(now):
                raise VotingInProgressError("Voting already in progress")
            logger.info("期限切れセッションを確定してから再開: project=%s session=%s", project.id, session_key)
            self.close_voting(project, current, reason="deadline_passed")

        if subject == "developer_selection":
            if project.selected_proposal_id:
                raise InvalidStateError("A developer has already been selected for this project")
            if not ProposalManager.ballot(project.id):
                raise InvalidStateError("No proposals are available for voting")

        session = VotingSession(
            project_id=project.id,
            session_key=session_key,
            round=(current.round + 1) if current is not None else 1,
            subject=subject,
            status=SessionStatus.OPEN.value,
            deadline=deadline,
            minimum_approval_percentage=minimum,
            approval_basis=basis,
            previous_project_status=project.status if project.status != "voting" else None,
            eligible_members=count_eligible_members(project),
            opened_by=opened_by,
            opened_at=now,
        )
        db.session.add(session)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise VotingInProgressError("Voting already in progress")

        project.status = "voting"
        logger.info(
            "投票開始: project=%s session=%s round=%d deadline=%s min=%d%%",
            project.id, session_key, session.round, isoformat(deadline), minimum,
        )
        return session

    # ------------------------------------------------------------
    # 終了
    # ------------------------------------------------------------
    def close_voting(
        self,
        project: RedevelopmentProject,
        session: VotingSession,
        reason: str = "manual",
    ) -> dict:
        """
        投票を終了し、勝者決定まで行って結果を保存する（コミットは呼び出し側）。

        Returns:
            保存された最終結果 {finalResults, proposalResults, winningProposal, ...}

        Raises:
            AlreadyClosedError: 既に closed（他のリクエストが先に終了した場合を含む）
        """
        now = self.clock()
        closed_at = now
        if reason == "deadline_passed" and session.deadline is not None:
            closed_at = min(now, session.deadline)

        # status の compare-and-swap（open の行だけを更新）
        result = db.session.execute(
            update(VotingSession)
            .where(
                VotingSession.id == session.id,
                VotingSession.status == SessionStatus.OPEN.value,
            )
            .values(status=SessionStatus.CLOSED.value, closed_at=closed_at, close_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyClosedError("Voting has already been closed")
        db.session.refresh(session)

        results = self._resolve(project, session)
        session.final_results = results
        db.session.flush()

        logger.info(
            "投票終了: project=%s session=%s round=%d reason=%s approved=%s",
            project.id, session.session_key, session.round, reason,
            results["finalResults"]["isApproved"],
        )
        return results

    @staticmethod
    def eligible_members(project: RedevelopmentProject, session: VotingSession) -> int:
        """集計の分母。開始時に固定した人数（未記録の古いセッションは現在の人数）"""
        if session.eligible_members is not None:
            return session.eligible_members
        return count_eligible_members(project)

    @staticmethod
    def has_other_open_session(project: RedevelopmentProject, session: VotingSession) -> bool:
        """同じプロジェクトで他に保存上 open のセッションがあるか"""
        return (
            VotingSession.query.filter(
                VotingSession.project_id == project.id,
                VotingSession.status == SessionStatus.OPEN.value,
                VotingSession.id != session.id,
            ).count()
            > 0
        )

    @staticmethod
    def _status_before_voting(project: RedevelopmentProject, session: VotingSession) -> Optional[str]:
        """
        投票開始前のプロジェクト状態。
        他のセッションの投票中に開始したセッションは記録を持たないため、
        同じプロジェクトで最後に記録された状態を使う。
        """
        if session.previous_project_status:
            return session.previous_project_status
        earlier = (
            VotingSession.query.filter(
                VotingSession.project_id == project.id,
                VotingSession.previous_project_status.isnot(None),
                VotingSession.opened_at <= session.opened_at,
            )
            .order_by(VotingSession.opened_at.desc(), VotingSession.round.desc())
            .first()
        )
        return earlier.previous_project_status if earlier is not None else None

    def _resolve(self, project: RedevelopmentProject, session: VotingSession) -> dict:
        total_members = self.eligible_members(project, session)
        minimum = session.minimum_approval_percentage

        if session.selects_proposal:
            proposals = ProposalManager.ballot(project.id)
            tally = self.tally.compute_session(session, total_members, [p.id for p in proposals])
            resolution = self.resolver.resolve(tally, proposals, minimum)
            self.resolver.apply(project, proposals, resolution)

            final_results = {
                "totalMembers": tally.total_members,
                "votersCount": tally.voters_count,
                "participationRate": tally.participation_rate,
                "minimumApprovalPercentage": minimum,
                "approvalBasis": session.approval_basis,
                "isApproved": resolution.is_approved,
            }
            proposal_results = self.resolver.proposal_results(tally, proposals, minimum)
            winning = None
            if resolution.winner is not None:
                winning = {
                    "proposal": resolution.winner.to_dict(),
                    "approvalPercentage": resolution.winner_tally.approval_percentage,
                    "totalVotes": resolution.winner_tally.total_votes,
                }
            rejected = list(resolution.rejected)
        else:
            tally = self.tally.compute(session, total_members)
            resolution = self.resolver.resolve_single(tally, minimum)
            final_results = tally.to_dict()
            final_results.pop("proposal")
            final_results["minimumApprovalPercentage"] = minimum
            final_results["isApproved"] = resolution.is_approved
            proposal_results = []
            winning = None
            rejected = []
            # 開始前の状態に戻すのは、他のセッションが状態を進めておらず
            # 投票中のセッションも残っていない場合だけ
            if project.status == "voting" and not self.has_other_open_session(project, session):
                previous = self._status_before_voting(project, session)
                if previous:
                    project.status = previous

        return {
            "votingSession": session.session_key,
            "round": session.round,
            "closedAt": isoformat(session.closed_at),
            "closeReason": session.close_reason,
            "finalResults": final_results,
            "proposalResults": proposal_results,
            "winningProposal": winning,
            "rejectedProposals": rejected,
        }
