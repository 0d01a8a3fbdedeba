"""
Membership - 利用者のプロジェクト内ロールを解決する
認証そのものは上流ゲートウェイが担い、ここでは user_id から
オーナー / 組合員 / デベロッパーの別をデータに基づいて判定する。
"""
from dataclasses import dataclass
from typing import Optional

from core.errors import AuthenticationRequiredError, AuthorizationError, NotEligibleError
from models import DeveloperProposal, RedevelopmentProject, SocietyMember


@dataclass
class Actor:
    user_id: str
    is_owner: bool = False
    is_member: bool = False
    is_developer: bool = False

    @property
    def is_stakeholder(self) -> bool:
        return self.is_owner or self.is_member or self.is_developer

    def require_owner(self, action: str = "perform this action"):
        if not self.is_owner:
            raise AuthorizationError(f"Only the society owner can {action}")

    def require_member(self):
        if not self.is_member:
            raise NotEligibleError("You must be an active member of this society to vote")

    def require_stakeholder(self):
        if not self.is_stakeholder:
            raise AuthorizationError("Access denied to this project")


def resolve_actor(project: RedevelopmentProject, user_id: Optional[str]) -> Actor:
    """
    プロジェクトに対する利用者のロールを判定する。

    Raises:
        AuthenticationRequiredError: user_id なし
    """
    if not user_id:
        raise AuthenticationRequiredError("Authentication required")

    membership = SocietyMember.query.filter_by(
        society_id=project.society_id,
        user_id=user_id,
        status="active",
    ).first()
    has_proposal = DeveloperProposal.query.filter_by(
        project_id=project.id,
        developer_id=user_id,
    ).first() is not None

    return Actor(
        user_id=user_id,
        is_owner=project.owner_id == user_id,
        is_member=membership is not None,
        is_developer=has_proposal,
    )


def count_eligible_members(project: RedevelopmentProject) -> int:
    """投票資格のある（active な）組合員数"""
    return SocietyMember.query.filter_by(society_id=project.society_id, status="active").count()
