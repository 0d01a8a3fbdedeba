"""
集計エンジン - TallyEngine

投票台帳を読み取り時に集計する（組合の規模は数十〜数百人のため
ストリーミング集計は不要）。複数提案のセッションは proposal_id で
GROUP BY した 1 回のクエリで全提案を集計する。

承認率の分母:
    "members"    - セッション開始時の投票資格者数（既定）。承認率は 100% を上限とする
    "votes_cast" - その提案に投じられた票数
比較は Fraction で厳密に行い、表示用の百分率のみ小数2桁に丸める。
"""
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, Iterable, Optional

from sqlalchemy import distinct, func

from models import NO_PROPOSAL, Vote, VoteValue, VotingSession, db


@dataclass
class ProposalTally:
    """(セッション, 提案) 単位の集計結果"""
    proposal_id: Optional[str]
    total_members: int
    approval_basis: str = "members"
    yes_votes: int = 0
    no_votes: int = 0
    abstain_votes: int = 0

    @property
    def total_votes(self) -> int:
        return self.yes_votes + self.no_votes + self.abstain_votes

    @property
    def votes_cast(self) -> int:
        return self.total_votes

    @property
    def approval_ratio(self) -> Fraction:
        denominator = self.total_members if self.approval_basis == "members" else self.total_votes
        if denominator <= 0:
            return Fraction(0)
        return min(Fraction(1), Fraction(self.yes_votes, denominator))

    @property
    def approval_percentage(self) -> float:
        return round(float(self.approval_ratio * 100), 2)

    @property
    def participation_rate(self) -> float:
        if self.total_members <= 0:
            return 0.0
        return round(min(100.0, self.votes_cast * 100 / self.total_members), 2)

    def meets(self, minimum_percentage: int) -> bool:
        return self.approval_ratio * 100 >= minimum_percentage

    def add(self, value: str, count: int):
        if value == VoteValue.YES.value:
            self.yes_votes += count
        elif value == VoteValue.NO.value:
            self.no_votes += count
        elif value == VoteValue.ABSTAIN.value:
            self.abstain_votes += count

    def to_dict(self) -> dict:
        return {
            "proposal": self.proposal_id,
            "totalMembers": self.total_members,
            "votesCast": self.votes_cast,
            "totalVotes": self.total_votes,
            "yesVotes": self.yes_votes,
            "noVotes": self.no_votes,
            "abstainVotes": self.abstain_votes,
            "approvalPercentage": self.approval_percentage,
            "participationRate": self.participation_rate,
            "approvalBasis": self.approval_basis,
        }


@dataclass
class SessionTally:
    """セッション全体の集計結果"""
    session_key: str
    total_members: int
    voters_count: int
    proposals: Dict[str, ProposalTally] = field(default_factory=dict)

    @property
    def participation_rate(self) -> float:
        if self.total_members <= 0:
            return 0.0
        return round(min(100.0, self.voters_count * 100 / self.total_members), 2)

    @property
    def single(self) -> Optional[ProposalTally]:
        """単一議案セッションの集計（提案の次元なし）"""
        return self.proposals.get(NO_PROPOSAL)

    def summary(self) -> dict:
        return {
            "votingSession": self.session_key,
            "totalMembers": self.total_members,
            "votersCount": self.voters_count,
            "participationRate": self.participation_rate,
            "proposals": [t.to_dict() for key, t in self.proposals.items() if key != NO_PROPOSAL],
        }


class TallyEngine:
    """投票台帳からの集計"""

    def compute_session(
        self,
        session: VotingSession,
        total_members: int,
        ballot: Optional[Iterable[str]] = None,
    ) -> SessionTally:
        """
        セッション内の全提案を 1 パスで集計する。

        Args:
            session: 対象セッション
            total_members: 投票資格のある組合員数
            ballot: 票がなくても結果に含める proposal_id の一覧。
                    単一議案セッションでは None（NO_PROPOSAL が常に含まれる）
        """
        tally = SessionTally(
            session_key=session.session_key,
            total_members=total_members,
            voters_count=0,
        )

        keys = list(ballot) if ballot is not None else [NO_PROPOSAL]
        for key in keys:
            tally.proposals[key] = ProposalTally(
                proposal_id=key or None,
                total_members=total_members,
                approval_basis=session.approval_basis,
            )

        rows = (
            db.session.query(Vote.proposal_id, Vote.value, func.count(Vote.id))
            .filter(Vote.session_id == session.id)
            .group_by(Vote.proposal_id, Vote.value)
            .all()
        )
        for proposal_id, value, count in rows:
            if proposal_id not in tally.proposals:
                tally.proposals[proposal_id] = ProposalTally(
                    proposal_id=proposal_id or None,
                    total_members=total_members,
                    approval_basis=session.approval_basis,
                )
            tally.proposals[proposal_id].add(value, count)

        tally.voters_count = (
            db.session.query(func.count(distinct(Vote.member_id)))
            .filter(Vote.session_id == session.id)
            .scalar()
        ) or 0
        return tally

    def compute(
        self,
        session: VotingSession,
        total_members: int,
        proposal_id: Optional[str] = None,
    ) -> ProposalTally:
        """(セッション, 提案) 1 件分の集計"""
        key = proposal_id or NO_PROPOSAL
        result = ProposalTally(
            proposal_id=proposal_id or None,
            total_members=total_members,
            approval_basis=session.approval_basis,
        )
        rows = (
            db.session.query(Vote.value, func.count(Vote.id))
            .filter(Vote.session_id == session.id, Vote.proposal_id == key)
            .group_by(Vote.value)
            .all()
        )
        for value, count in rows:
            result.add(value, count)
        return result
