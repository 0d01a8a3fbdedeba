"""
勝者決定 - WinnerResolver

セッション終了時に、最低承認率を満たす提案のうち承認率が最も高いものを
選定する。同率の場合は提出日時が早い提案、さらに同時刻なら ID 順。
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models import DeveloperProposal, RedevelopmentProject
from core.tally import ProposalTally, SessionTally
from utils.logger import get_logger

logger = get_logger("WinnerResolver")


@dataclass
class Resolution:
    is_approved: bool
    winner: Optional[DeveloperProposal] = None
    winner_tally: Optional[ProposalTally] = None
    qualified: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


class WinnerResolver:
    """承認率しきい値と同率処理に基づく勝者決定"""

    def rank(self, tally: SessionTally, proposals: List[DeveloperProposal]) -> List[DeveloperProposal]:
        """
        提案を順位付けする（承認率の降順 → 提出日時の昇順 → ID の昇順）。
        """
        def sort_key(proposal: DeveloperProposal):
            ratio = tally.proposals[proposal.id].approval_ratio
            return (-ratio, proposal.submitted_at, proposal.id)

        return sorted(
            (p for p in proposals if p.id in tally.proposals),
            key=sort_key,
        )

    def resolve(
        self,
        tally: SessionTally,
        proposals: List[DeveloperProposal],
        minimum_percentage: int,
    ) -> Resolution:
        """
        複数提案セッションの勝者を決める。

        Args:
            tally: セッション集計（proposal_id -> ProposalTally）
            proposals: 投票対象だった提案
            minimum_percentage: 最低承認率（50〜100）
        Returns:
            Resolution。しきい値を満たす提案がなければ winner=None, is_approved=False
        """
        ranked = self.rank(tally, proposals)
        qualified = [p for p in ranked if tally.proposals[p.id].meets(minimum_percentage)]

        if not qualified:
            return Resolution(is_approved=False, qualified=[])

        winner = qualified[0]
        return Resolution(
            is_approved=True,
            winner=winner,
            winner_tally=tally.proposals[winner.id],
            qualified=[p.id for p in qualified],
        )

    def resolve_single(self, tally: ProposalTally, minimum_percentage: int) -> Resolution:
        """単一議案セッション: 承認率がしきい値以上かどうかのみ"""
        return Resolution(is_approved=tally.meets(minimum_percentage), winner_tally=tally)

    def apply(
        self,
        project: RedevelopmentProject,
        proposals: List[DeveloperProposal],
        resolution: Resolution,
    ) -> Resolution:
        """
        決定結果をプロジェクトと提案に反映する（コミットは呼び出し側）。

        勝者: proposal.status = "selected"、プロジェクトに選定提案・デベロッパーを設定
        shortlisted だった非勝者: "rejected"
        """
        winner_id = resolution.winner.id if resolution.winner else None

        for proposal in proposals:
            if proposal.id == winner_id:
                proposal.status = "selected"
            elif proposal.status == "shortlisted":
                proposal.status = "rejected"
                resolution.rejected.append(proposal.id)

        if resolution.winner is not None:
            project.selected_proposal_id = resolution.winner.id
            project.selected_developer_id = resolution.winner.developer_id
            project.status = "developer_selected"
            logger.info(
                "勝者決定: project=%s proposal=%s (%.2f%%)",
                project.id, winner_id, resolution.winner_tally.approval_percentage,
            )
        else:
            project.status = "proposals_received"
            logger.info("しきい値を満たす提案なし: project=%s", project.id)

        return resolution

    @staticmethod
    def proposal_results(
        tally: SessionTally,
        proposals: List[DeveloperProposal],
        minimum_percentage: int,
    ) -> List[Dict]:
        """提案ごとの結果一覧（フロントエンド向け）"""
        results = []
        for proposal in proposals:
            proposal_tally = tally.proposals.get(proposal.id)
            if proposal_tally is None:
                continue
            entry = proposal_tally.to_dict()
            entry["proposal"] = proposal.to_dict()
            entry["meetsThreshold"] = proposal_tally.meets(minimum_percentage)
            results.append(entry)
        return results
