"""デベロッパー提案 データモデル"""
from models.base import db, new_id
from utils.timeutils import utcnow, isoformat


PROPOSAL_STATUSES = (
    "submitted",
    "under_review",
    "shortlisted",
    "selected",
    "rejected",
    "withdrawn",
)

# 投票対象になりうるステータス
BALLOT_STATUSES = ("submitted", "under_review", "shortlisted")


class DeveloperProposal(db.Model):
    __tablename__ = "developer_proposals"
    __table_args__ = (
        db.UniqueConstraint("project_id", "developer_id", name="uq_developer_proposals_project_developer"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    project_id = db.Column(
        db.String(36), db.ForeignKey("redevelopment_projects.id"), nullable=False, index=True
    )
    developer_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    corpus_amount = db.Column(db.Float, nullable=False, default=0.0)
    rent_amount = db.Column(db.Float, nullable=False, default=0.0)
    fsi = db.Column(db.Float, nullable=False, default=0.0)
    timeline = db.Column(db.String(200), nullable=False, default="")
    status = db.Column(db.String(16), nullable=False, default="submitted", index=True)
    submitted_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = db.relationship("RedevelopmentProject", back_populates="proposals")

    @property
    def on_ballot(self) -> bool:
        return self.status in BALLOT_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "developerId": self.developer_id,
            "title": self.title,
            "description": self.description,
            "corpusAmount": self.corpus_amount,
            "rentAmount": self.rent_amount,
            "fsi": self.fsi,
            "timeline": self.timeline,
            "status": self.status,
            "submittedAt": isoformat(self.submitted_at),
            "updatedAt": isoformat(self.updated_at),
        }
