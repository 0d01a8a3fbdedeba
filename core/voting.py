"""
投票ロジック - VotingService

UI から使われる投票 API の窓口。入力をこの層で検証し、ロールを確認してから
SessionManager / VoteLedger / TallyEngine / ProposalManager に委譲する。
更新系の操作は 1 トランザクションで行い、通知はコミット後にだけ送る。
"""
import math
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from config import VOTING_SESSIONS
from core.errors import (
    AlreadyClosedError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    VotingClosedError,
)
from core.ledger import VoteLedger
from core.proposal import ProposalManager
from core.resolution import WinnerResolver
from core.sessions import SessionManager, validate_session_key
from core.tally import ProposalTally, SessionTally, TallyEngine
from models import RedevelopmentProject, SessionStatus, VotingSession, db
from services.membership import Actor, count_eligible_members, resolve_actor
from services.notifier import Notifier
from utils.logger import get_logger
from utils.timeutils import isoformat, parse_timestamp, utcnow

logger = get_logger("VotingService")


def _require_body(data) -> dict:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


class VotingService:
    """投票 API ファサード"""

    # 既定値（Config で上書き）
    DEFAULT_MINIMUM_APPROVAL_PERCENTAGE = 75
    APPROVAL_BASIS = "members"
    DEFAULT_VOTING_SESSION = "proposal_selection"
    MAX_REASON_LENGTH = 500
    HISTORY_PAGE_LIMIT_MAX = 100

    def __init__(self, config=None, notifier: Optional[Notifier] = None, clock=utcnow):
        """
        Args:
            config: Config オブジェクト（設定値上書き用）
            notifier: Notifier インスタンス（省略時は送信先なし）
            clock: 現在時刻を返す関数（テストで差し替える）
        """
        if config:
            self.DEFAULT_MINIMUM_APPROVAL_PERCENTAGE = getattr(
                config, "DEFAULT_MINIMUM_APPROVAL_PERCENTAGE", self.DEFAULT_MINIMUM_APPROVAL_PERCENTAGE
            )
            self.APPROVAL_BASIS = getattr(config, "APPROVAL_BASIS", self.APPROVAL_BASIS)
            self.DEFAULT_VOTING_SESSION = getattr(config, "DEFAULT_VOTING_SESSION", self.DEFAULT_VOTING_SESSION)
            self.MAX_REASON_LENGTH = getattr(config, "MAX_REASON_LENGTH", self.MAX_REASON_LENGTH)
            self.HISTORY_PAGE_LIMIT_MAX = getattr(config, "HISTORY_PAGE_LIMIT_MAX", self.HISTORY_PAGE_LIMIT_MAX)

        self.clock = clock
        self.notifier = notifier or Notifier()
        self.tally = TallyEngine()
        self.resolver = WinnerResolver()
        self.ledger = VoteLedger(max_reason_length=self.MAX_REASON_LENGTH)
        self.proposals = ProposalManager(clock=clock)
        self.sessions = SessionManager(
            self.tally,
            self.resolver,
            clock=clock,
            default_minimum_percentage=self.DEFAULT_MINIMUM_APPROVAL_PERCENTAGE,
            default_approval_basis=self.APPROVAL_BASIS,
        )

    # ------------------------------------------------------------
    # 共通
    # ------------------------------------------------------------
    @contextmanager
    def _transaction(self):
        """
        1 操作 = 1 トランザクション。
        yield した outbox に積んだ通知はコミット成功後に送る。
        """
        outbox = []
        try:
            yield outbox
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        for send, args in outbox:
            send(*args)

    @staticmethod
    def _get_project(project_id: str) -> RedevelopmentProject:
        project = db.session.get(RedevelopmentProject, project_id) if project_id else None
        if project is None:
            raise NotFoundError("Project not found")
        return project

    def _load(self, project_id: str, user_id: Optional[str]):
        project = self._get_project(project_id)
        return project, resolve_actor(project, user_id)

    def _session_key(self, session_key: Optional[str]) -> str:
        return validate_session_key(session_key or self.DEFAULT_VOTING_SESSION)

    def _require_session(self, project: RedevelopmentProject, session_key: str) -> VotingSession:
        session = self.sessions.current(project.id, session_key)
        if session is None:
            raise NotFoundError("Voting session not found")
        return session

    def _statistics(
        self,
        project: RedevelopmentProject,
        session: VotingSession,
        proposal_id: Optional[str] = None,
    ) -> dict:
        """集計と付帯情報（投票者 ID は含めない）"""
        now = self.clock()
        total_members = self.sessions.eligible_members(project, session)
        minimum = session.minimum_approval_percentage

        if session.selects_proposal and not proposal_id:
            if session.status == SessionStatus.OPEN.value:
                ballot = [p.id for p in ProposalManager.ballot(project.id)]
            else:
                ballot = [
                    entry["proposal"]["id"]
                    for entry in (session.final_results or {}).get("proposalResults", [])
                ]
            tally = self.tally.compute_session(session, total_members, ballot)
            stats = tally.summary()
            is_approved = any(t.meets(minimum) for key, t in tally.proposals.items() if key)
        else:
            if session.selects_proposal:
                self.proposals.get_proposal(project, proposal_id)
            elif proposal_id:
                raise ValidationError("This voting session does not take a proposal", field="proposal")
            tally = self.tally.compute(session, total_members, proposal_id)
            stats = tally.to_dict()
            is_approved = tally.meets(minimum)

        view = session.to_dict(now)
        stats.update({
            "votingSession": session.session_key,
            "round": session.round,
            "minimumApprovalRequired": minimum,
            "isApproved": is_approved,
            "votingStatus": view["status"],
            "votingDeadline": view["deadline"],
            "hoursRemaining": view["hoursRemaining"],
        })
        return stats

    def _not_started_statistics(
        self,
        project: RedevelopmentProject,
        session_key: str,
        proposal_id: Optional[str],
    ) -> dict:
        total_members = count_eligible_members(project)
        basis = project.approval_basis or self.APPROVAL_BASIS
        subject = VOTING_SESSIONS.get(session_key, {}).get("subject", "project_approval")
        if subject == "developer_selection" and not proposal_id:
            stats = SessionTally(session_key, total_members, 0).summary()
        else:
            stats = ProposalTally(proposal_id or None, total_members, basis).to_dict()
        stats.update({
            "votingSession": session_key,
            "round": 0,
            "minimumApprovalRequired": project.minimum_approval_percentage or self.DEFAULT_MINIMUM_APPROVAL_PERCENTAGE,
            "isApproved": False,
            "votingStatus": SessionStatus.NOT_STARTED.value,
            "votingDeadline": None,
            "hoursRemaining": None,
        })
        return stats

    def _results_view(self, project: RedevelopmentProject, session: VotingSession) -> dict:
        view = {
            "project": project.to_dict(),
            "session": session.to_dict(self.clock()),
        }
        view.update(session.final_results or {})
        return view

    def _queue_close_notifications(self, outbox: list, project_id: str, results: dict):
        outbox.append((self.notifier.voting_closed, (project_id, results)))
        if results.get("winningProposal"):
            outbox.append((self.notifier.developer_selected, (project_id, results["winningProposal"])))

    # ------------------------------------------------------------
    # 投票
    # ------------------------------------------------------------
    def submit_vote(
        self,
        project_id: str,
        user_id: Optional[str],
        data,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        """
        投票する。

        Args:
            data: {votingSession?, proposal?, vote: "yes"|"no"|"abstain", reason?}
        Returns:
            {"vote": 記録した票, "votingStats": 投票後の集計}

        Raises:
            NotEligibleError: active な組合員でない
            VotingClosedError: セッションが open でない（期限切れを含む）
            DuplicateVoteError: 同じセッション・提案に投票済み
        """
        data = _require_body(data)
        project, actor = self._load(project_id, user_id)
        actor.require_member()

        if data.get("vote") is None:
            raise ValidationError("Vote is required", field="vote")
        session_key = self._session_key(data.get("votingSession"))
        proposal_id = data.get("proposal") or None
        if proposal_id is not None and not isinstance(proposal_id, str):
            raise ValidationError("Invalid proposal", field="proposal")

        with self._transaction() as outbox:
            session = self.sessions.current(project.id, session_key)
            if session is None or session.status != SessionStatus.OPEN.value:
                raise VotingClosedError("Voting is not currently open for this project")

            if session.selects_proposal:
                if proposal_id is None:
                    raise ValidationError("Proposal is required for this voting session", field="proposal")
                proposal = self.proposals.get_proposal(project, proposal_id)
                if not proposal.on_ballot:
                    raise InvalidStateError("This proposal is not open for voting")
            elif proposal_id is not None:
                raise ValidationError("This voting session does not take a proposal", field="proposal")

            vote = self.ledger.cast_vote(
                session,
                actor.user_id,
                proposal_id,
                data.get("vote"),
                reason=data.get("reason"),
                now=self.clock(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
            stats = self._statistics(project, session, proposal_id)
            result = {"vote": vote.to_dict(), "votingStats": stats}
            outbox.append((self.notifier.vote_cast, (project.id, stats)))

        return result

    def get_my_vote(
        self,
        project_id: str,
        user_id: Optional[str],
        session_key: Optional[str] = None,
        proposal_id: Optional[str] = None,
    ) -> dict:
        """自分の票。未投票は NotFoundError（UI では通常状態）"""
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        session = self.sessions.current(project.id, self._session_key(session_key))
        if session is None:
            raise NotFoundError("Vote not found")
        vote = self.ledger.get_vote(session, actor.user_id, proposal_id)
        return {"vote": vote.to_dict()}

    def list_my_votes(self, project_id: str, user_id: Optional[str], page: int = 1, limit: int = 10) -> dict:
        """プロジェクト内の自分の投票履歴（ページング）"""
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        if page is None or page < 1:
            raise ValidationError("page must be a positive integer", field="page")
        if limit is None or not 1 <= limit <= self.HISTORY_PAGE_LIMIT_MAX:
            raise ValidationError(
                f"limit must be between 1 and {self.HISTORY_PAGE_LIMIT_MAX}", field="limit"
            )

        votes, total = self.ledger.list_votes_for_member(actor.user_id, project.id, page, limit)
        return {
            "votes": [v.to_dict() for v in votes],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def list_votes(self, project_id: str, user_id: Optional[str], session_key: Optional[str] = None) -> dict:
        """セッション内の全票（オーナーの監査用、IP・UA 付き）"""
        project, actor = self._load(project_id, user_id)
        actor.require_owner("view individual votes")
        session = self._require_session(project, self._session_key(session_key))
        return {
            "votingSession": session.session_key,
            "round": session.round,
            "votes": [v.to_dict(include_audit=True) for v in self.ledger.list_votes(session)],
        }

    def verify_vote(self, project_id: str, user_id: Optional[str], vote_id: str) -> dict:
        """票を確認済みにする（オーナーのみ）。投票内容は変わらない"""
        project, actor = self._load(project_id, user_id)
        actor.require_owner("verify votes")

        with self._transaction():
            vote = self.ledger.verify_vote(project.id, vote_id, actor.user_id, now=self.clock())
            result = {"vote": vote.to_dict(include_audit=True)}
        return result

    def get_voting_statistics(
        self,
        project_id: str,
        user_id: Optional[str],
        session_key: Optional[str] = None,
        proposal_id: Optional[str] = None,
    ) -> dict:
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        session_key = self._session_key(session_key)
        session = self.sessions.current(project.id, session_key)
        if session is None:
            return {"statistics": self._not_started_statistics(project, session_key, proposal_id)}
        return {"statistics": self._statistics(project, session, proposal_id)}

    # ------------------------------------------------------------
    # セッション
    # ------------------------------------------------------------
    def get_session_status(self, project_id: str, user_id: Optional[str], session_key: Optional[str] = None) -> dict:
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        return {"session": self.sessions.get_session_status(project, self._session_key(session_key))}

    def start_voting(self, project_id: str, user_id: Optional[str], data) -> dict:
        """
        投票を開始する（オーナーのみ）。

        Args:
            data: {votingSession?, deadline?, minimumApprovalPercentage?, subject?}
        """
        data = _require_body(data)
        project, actor = self._load(project_id, user_id)
        actor.require_owner("start voting")

        deadline = data.get("deadline")
        if deadline is not None and not isinstance(deadline, datetime):
            if not isinstance(deadline, str):
                raise ValidationError("Invalid deadline", field="deadline")
            try:
                deadline = parse_timestamp(deadline)
            except ValueError:
                raise ValidationError("Invalid deadline", field="deadline")

        with self._transaction() as outbox:
            session = self.sessions.start_voting(
                project,
                self._session_key(data.get("votingSession")),
                deadline=deadline,
                minimum_approval_percentage=data.get("minimumApprovalPercentage"),
                opened_by=actor.user_id,
                subject=data.get("subject"),
            )
            result = {
                "session": session.to_dict(self.clock()),
                "project": project.to_dict(),
            }
            outbox.append((self.notifier.voting_started, (project.id, result["session"])))

        return result

    def close_voting(self, project_id: str, user_id: Optional[str], session_key: Optional[str] = None) -> dict:
        """
        投票を終了し最終結果を返す（オーナーのみ）。
        期限切れで未確定のセッションは "deadline_passed" として確定する。

        Raises:
            AlreadyClosedError: 既に終了している
        """
        project, actor = self._load(project_id, user_id)
        actor.require_owner("close voting")
        session = self._require_session(project, self._session_key(session_key))
        if session.status != SessionStatus.OPEN.value:
            raise AlreadyClosedError("Voting has already been closed")

        reason = "deadline_passed" if session.is_expired(self.clock()) else "manual"
        with self._transaction() as outbox:
            results = self.sessions.close_voting(project, session, reason=reason)
            self._queue_close_notifications(outbox, project.id, results)

        return self._results_view(project, session)

    def get_final_results(self, project_id: str, user_id: Optional[str], session_key: Optional[str] = None) -> dict:
        """
        最終結果を返す（終了済みセッションのみ）。

        期限切れのまま open で残っているセッションはここで確定させる。
        同時に別のリクエストが確定させていた場合は、その保存済み結果を返す。
        """
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        session = self._require_session(project, self._session_key(session_key))

        if session.status == SessionStatus.OPEN.value:
            if not session.is_expired(self.clock()):
                raise InvalidStateError("Final results are available only after voting closes")
            try:
                with self._transaction() as outbox:
                    results = self.sessions.close_voting(project, session, reason="deadline_passed")
                    self._queue_close_notifications(outbox, project.id, results)
                logger.info(
                    "期限切れセッションを読み取り時に確定: project=%s session=%s",
                    project.id, session.session_key,
                )
            except AlreadyClosedError:
                logger.info("他のリクエストが先に確定済み: project=%s session=%s", project.id, session.session_key)
                db.session.refresh(session)
                db.session.refresh(project)

        return self._results_view(project, session)

    # ------------------------------------------------------------
    # 提案
    # ------------------------------------------------------------
    def submit_proposal(self, project_id: str, user_id: Optional[str], data) -> dict:
        data = _require_body(data)
        project, actor = self._load(project_id, user_id)
        if actor.is_owner or actor.is_member:
            raise AuthorizationError("Society members cannot submit developer proposals")

        with self._transaction() as outbox:
            proposal = self.proposals.create_proposal(project, actor.user_id, data)
            result = {"proposal": proposal.to_dict()}
            outbox.append((self.notifier.proposal_updated, (project.id, result["proposal"])))
        return result

    def list_proposals(self, project_id: str, user_id: Optional[str]) -> dict:
        """提案の比較一覧"""
        project, actor = self._load(project_id, user_id)
        actor.require_stakeholder()
        return {
            "proposals": [p.to_dict() for p in self.proposals.list_for_project(project)],
            "selectedProposal": project.selected_proposal_id,
        }

    def review_proposal(self, project_id: str, user_id: Optional[str], proposal_id: str, data) -> dict:
        data = _require_body(data)
        project, actor = self._load(project_id, user_id)
        actor.require_owner("review proposals")

        with self._transaction() as outbox:
            proposal = self.proposals.review(project, proposal_id, data.get("status"))
            result = {"proposal": proposal.to_dict()}
            outbox.append((self.notifier.proposal_updated, (project.id, result["proposal"])))
        return result

    def withdraw_proposal(self, project_id: str, user_id: Optional[str], proposal_id: str) -> dict:
        project, actor = self._load(project_id, user_id)

        with self._transaction() as outbox:
            proposal = self.proposals.withdraw(project, proposal_id, actor.user_id)
            result = {"proposal": proposal.to_dict()}
            outbox.append((self.notifier.proposal_updated, (project.id, result["proposal"])))
        return result

    # ------------------------------------------------------------
    # リアルタイム購読
    # ------------------------------------------------------------
    def can_follow(self, project_id: str, user_id: Optional[str]) -> bool:
        """プロジェクトルームへの参加可否（関係者のみ）"""
        project = db.session.get(RedevelopmentProject, project_id) if project_id else None
        if project is None or not user_id:
            return False
        actor: Actor = resolve_actor(project, user_id)
        return actor.is_stakeholder
