"""再開発プロジェクト データモデル"""
from models.base import db, new_id
from utils.timeutils import utcnow, isoformat


PROJECT_STATUSES = (
    "planning",
    "tender_open",
    "proposals_received",
    "voting",
    "developer_selected",
    "construction",
    "completed",
    "cancelled",
)


class RedevelopmentProject(db.Model):
    __tablename__ = "redevelopment_projects"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    society_id = db.Column(db.String(36), db.ForeignKey("societies.id"), nullable=False, index=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="planning")
    selected_proposal_id = db.Column(db.String(36), nullable=True)
    selected_developer_id = db.Column(db.String(64), nullable=True)
    # 承認率の既定値と分母（"members" = 組合員総数 / "votes_cast" = 投票数）
    minimum_approval_percentage = db.Column(db.Integer, nullable=True)
    approval_basis = db.Column(db.String(16), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    society = db.relationship("Society")
    proposals = db.relationship(
        "DeveloperProposal",
        back_populates="project",
        lazy="dynamic",
        order_by="DeveloperProposal.submitted_at",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "societyId": self.society_id,
            "ownerId": self.owner_id,
            "title": self.title,
            "status": self.status,
            "selectedProposal": self.selected_proposal_id,
            "selectedDeveloper": self.selected_developer_id,
            "minimumApprovalPercentage": self.minimum_approval_percentage,
            "approvalBasis": self.approval_basis,
            "createdAt": isoformat(self.created_at),
        }
