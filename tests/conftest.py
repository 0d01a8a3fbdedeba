from datetime import datetime, timedelta

import pytest

from app import create_app
from config import TestConfig
from models import DeveloperProposal, RedevelopmentProject, Society, SocietyMember, db
from services.notifier import Notifier


class FakeClock:
    def __init__(self, now: datetime = datetime(2025, 1, 10, 9, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Factory:
    """テスト用データの作成ヘルパー"""

    def society(self, members: int = 10, name: str = "Test CHS") -> Society:
        society = Society(name=name)
        db.session.add(society)
        db.session.flush()
        for i in range(1, members + 1):
            db.session.add(SocietyMember(society_id=society.id, user_id=f"member-{i}"))
        db.session.commit()
        return society

    def member(self, society: Society, user_id: str, status: str = "active", role: str = "member") -> SocietyMember:
        member = SocietyMember(society_id=society.id, user_id=user_id, status=status, role=role)
        db.session.add(member)
        db.session.commit()
        return member

    def project(self, society: Society, owner_id: str = "owner-1", **kwargs) -> RedevelopmentProject:
        kwargs.setdefault("title", "Tower A redevelopment")
        kwargs.setdefault("status", "proposals_received")
        project = RedevelopmentProject(society_id=society.id, owner_id=owner_id, **kwargs)
        db.session.add(project)
        db.session.commit()
        return project

    def proposal(
        self,
        project: RedevelopmentProject,
        developer_id: str,
        submitted_at: datetime = datetime(2025, 1, 1),
        status: str = "submitted",
    ) -> DeveloperProposal:
        proposal = DeveloperProposal(
            project_id=project.id,
            developer_id=developer_id,
            title=f"Proposal by {developer_id}",
            corpus_amount=1000000,
            rent_amount=20000,
            fsi=2.5,
            timeline="36 months",
            status=status,
            submitted_at=submitted_at,
            updated_at=submitted_at,
        )
        db.session.add(proposal)
        db.session.commit()
        return proposal


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    app = create_app(TestConfig, clock=clock)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["voting_service"]


@pytest.fixture
def events(service):
    """service から送られた通知を記録する"""
    recorded = []
    service.notifier = Notifier(emit_callback=lambda event, data, room: recorded.append((event, data, room)))
    return recorded


@pytest.fixture
def factory(app):
    return Factory()


@pytest.fixture
def society(factory):
    return factory.society(members=10)


@pytest.fixture
def project(factory, society):
    return factory.project(society)


@pytest.fixture
def pid(project):
    """HTTP テスト用のプロジェクト ID（ORM インスタンスの寿命に依存しない）"""
    return project.id
