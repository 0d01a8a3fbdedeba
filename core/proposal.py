"""提案管理 - ProposalManager"""
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from core.errors import InvalidStateError, NotFoundError, ValidationError
from models import DeveloperProposal, RedevelopmentProject, SessionStatus, VotingSession, db
from models.proposal import BALLOT_STATUSES, PROPOSAL_STATUSES
from utils.logger import get_logger
from utils.timeutils import utcnow

logger = get_logger("ProposalManager")

# オーナーによる審査で許される遷移
REVIEW_TRANSITIONS = {
    "submitted": ("under_review", "shortlisted", "rejected"),
    "under_review": ("shortlisted", "rejected"),
    "shortlisted": ("under_review", "rejected"),
}


def _non_negative_number(data: dict, key: str) -> float:
    raw = data.get(key)
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f"{key} is required", field=key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number", field=key)
    if value < 0:
        raise ValidationError(f"{key} must not be negative", field=key)
    return value


class ProposalManager:
    """デベロッパー提案のライフサイクルを管理する"""

    def __init__(self, clock=utcnow):
        self.clock = clock

    @staticmethod
    def ballot(project_id: str) -> List[DeveloperProposal]:
        """投票対象の提案（submitted / under_review / shortlisted）を提出順で返す"""
        return (
            DeveloperProposal.query.filter(
                DeveloperProposal.project_id == project_id,
                DeveloperProposal.status.in_(BALLOT_STATUSES),
            )
            .order_by(DeveloperProposal.submitted_at, DeveloperProposal.id)
            .all()
        )

    @staticmethod
    def selection_voting_open(project_id: str) -> bool:
        """
        デベロッパー選定セッションが open のまま残っているか。
        期限切れで未確定のものも含める（確定時の投票対象を固定するため）。
        """
        return VotingSession.query.filter_by(
            project_id=project_id,
            subject="developer_selection",
            status=SessionStatus.OPEN.value,
        ).first() is not None

    def _ensure_ballot_unlocked(self, project: RedevelopmentProject):
        if self.selection_voting_open(project.id):
            raise InvalidStateError("Proposals cannot change while developer selection voting is open")

    def create_proposal(self, project: RedevelopmentProject, developer_id: str, data: dict) -> DeveloperProposal:
        """
        新しい提案を登録する（1デベロッパーにつき1プロジェクト1件）。

        Args:
            project: 対象プロジェクト
            developer_id: 提出者の user_id
            data: title, description, corpusAmount, rentAmount, fsi, timeline
        Returns:
            作成された DeveloperProposal
        """
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title is required", field="title")
        timeline = data.get("timeline")
        if not isinstance(timeline, str) or not timeline.strip():
            raise ValidationError("timeline is required", field="timeline")
        description = data.get("description") or ""
        if not isinstance(description, str):
            raise ValidationError("description must be a string", field="description")

        corpus_amount = _non_negative_number(data, "corpusAmount")
        rent_amount = _non_negative_number(data, "rentAmount")
        fsi = _non_negative_number(data, "fsi")

        if project.selected_proposal_id:
            raise InvalidStateError("A developer has already been selected for this project")
        self._ensure_ballot_unlocked(project)

        now = self.clock()
        proposal = DeveloperProposal(
            project_id=project.id,
            developer_id=developer_id,
            title=title.strip(),
            description=description.strip(),
            corpus_amount=corpus_amount,
            rent_amount=rent_amount,
            fsi=fsi,
            timeline=timeline.strip(),
            status="submitted",
            submitted_at=now,
            updated_at=now,
        )
        db.session.add(proposal)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise InvalidStateError("You have already submitted a proposal for this project")

        if project.status in ("planning", "tender_open"):
            project.status = "proposals_received"

        logger.info("提案登録: project=%s proposal=%s", project.id, proposal.id)
        return proposal

    def get_proposal(self, project: RedevelopmentProject, proposal_id: Optional[str]) -> DeveloperProposal:
        proposal = db.session.get(DeveloperProposal, proposal_id) if proposal_id else None
        if proposal is None or proposal.project_id != project.id:
            raise NotFoundError("Proposal not found or does not belong to this project")
        return proposal

    def review(self, project: RedevelopmentProject, proposal_id: str, status) -> DeveloperProposal:
        """オーナーによる審査（under_review / shortlisted / rejected への遷移）"""
        if status not in PROPOSAL_STATUSES:
            raise ValidationError("Invalid proposal status", field="status")

        proposal = self.get_proposal(project, proposal_id)
        allowed = REVIEW_TRANSITIONS.get(proposal.status, ())
        if status not in allowed:
            raise InvalidStateError(f"Cannot move a {proposal.status} proposal to {status}")
        self._ensure_ballot_unlocked(project)

        previous = proposal.status
        proposal.status = status
        proposal.updated_at = self.clock()
        logger.info("提案審査: proposal=%s %s -> %s", proposal.id, previous, status)
        return proposal

    def withdraw(self, project: RedevelopmentProject, proposal_id: str, developer_id: str) -> DeveloperProposal:
        """提出者による取り下げ（選定済みは不可）"""
        proposal = self.get_proposal(project, proposal_id)
        if proposal.developer_id != developer_id:
            raise NotFoundError("Proposal not found or does not belong to this project")
        if proposal.status in ("selected", "rejected", "withdrawn"):
            raise InvalidStateError(f"A {proposal.status} proposal cannot be withdrawn")
        self._ensure_ballot_unlocked(project)

        proposal.status = "withdrawn"
        proposal.updated_at = self.clock()
        logger.info("提案取り下げ: proposal=%s", proposal.id)
        return proposal

    @staticmethod
    def list_for_project(project: RedevelopmentProject) -> List[DeveloperProposal]:
        """比較表示用の提案一覧（取り下げ済みを除く）"""
        return (
            DeveloperProposal.query.filter(
                DeveloperProposal.project_id == project.id,
                DeveloperProposal.status != "withdrawn",
            )
            .order_by(DeveloperProposal.submitted_at, DeveloperProposal.id)
            .all()
        )
