"""組合（ソサエティ）・組合員 データモデル"""
from models.base import db, new_id
from utils.timeutils import utcnow, isoformat


class Society(db.Model):
    __tablename__ = "societies"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    members = db.relationship("SocietyMember", back_populates="society", lazy="dynamic")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": isoformat(self.created_at),
        }


class SocietyMember(db.Model):
    __tablename__ = "society_members"
    __table_args__ = (
        db.UniqueConstraint("society_id", "user_id", name="uq_society_members_society_user"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    society_id = db.Column(db.String(36), db.ForeignKey("societies.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False, default="member")  # "owner" / "member"
    status = db.Column(db.String(16), nullable=False, default="active")  # "active" / "inactive"
    joined_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    society = db.relationship("Society", back_populates="members")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "societyId": self.society_id,
            "userId": self.user_id,
            "role": self.role,
            "status": self.status,
            "joinedAt": isoformat(self.joined_at),
        }
