from datetime import timedelta

import pytest

from core.errors import DuplicateVoteError, NotFoundError, ValidationError, VotingClosedError
from core.ledger import VoteLedger, parse_vote_value
from models import Vote, VoteValue, db


@pytest.fixture
def ledger():
    return VoteLedger(max_reason_length=500)


@pytest.fixture
def approval_session(service, project, clock):
    session = service.sessions.start_voting(
        project, "initial_approval", deadline=clock.now + timedelta(days=7), minimum_approval_percentage=75
    )
    db.session.commit()
    return session


@pytest.mark.parametrize("raw", [True, False, None, 1, "maybe", ""])
def test_parse_vote_value_rejects_non_enum_values(raw):
    with pytest.raises(ValidationError) as exc:
        parse_vote_value(raw)
    assert exc.value.field == "vote"


def test_parse_vote_value_normalizes_case():
    assert parse_vote_value(" Yes ") is VoteValue.YES
    assert parse_vote_value("abstain") is VoteValue.ABSTAIN


def test_cast_vote_records_server_timestamp(ledger, approval_session, clock):
    vote = ledger.cast_vote(approval_session, "member-1", None, "yes", reason="Good plan", now=clock.now)
    db.session.commit()

    assert vote.voted_at == clock.now
    assert vote.proposal_id == ""
    assert vote.to_dict()["proposal"] is None
    assert vote.to_dict()["votedAt"].endswith("Z")


def test_second_vote_with_different_value_is_rejected_and_first_is_kept(ledger, approval_session, clock):
    ledger.cast_vote(approval_session, "member-1", None, "yes", reason="first", now=clock.now)
    db.session.commit()

    with pytest.raises(DuplicateVoteError):
        ledger.cast_vote(approval_session, "member-1", None, "no", reason="changed my mind", now=clock.now)

    votes = Vote.query.filter_by(member_id="member-1").all()
    assert len(votes) == 1
    assert votes[0].value == "yes"
    assert votes[0].reason == "first"


def test_reason_longer_than_limit_is_rejected(ledger, approval_session, clock):
    with pytest.raises(ValidationError) as exc:
        ledger.cast_vote(approval_session, "member-1", None, "yes", reason="x" * 501, now=clock.now)
    assert exc.value.field == "reason"

    vote = ledger.cast_vote(approval_session, "member-1", None, "yes", reason="x" * 500, now=clock.now)
    assert len(vote.reason) == 500


def test_vote_after_deadline_is_rejected_without_explicit_close(ledger, approval_session, clock):
    clock.advance(days=8)

    with pytest.raises(VotingClosedError) as exc:
        ledger.cast_vote(approval_session, "member-1", None, "yes", now=clock.now)
    assert exc.value.status_code == 403
    assert Vote.query.count() == 0


def test_get_vote_not_found_for_member_who_has_not_voted(ledger, approval_session):
    with pytest.raises(NotFoundError):
        ledger.get_vote(approval_session, "member-2")


def test_list_votes_for_member_pages_newest_first(ledger, service, factory, society, project, clock):
    for key in ("initial_approval", "milestone_approval"):
        session = service.sessions.start_voting(project, key, deadline=clock.now + timedelta(days=1))
        ledger.cast_vote(session, "member-1", None, "yes", now=clock.now)
        db.session.commit()
        clock.advance(minutes=5)

    votes, total = ledger.list_votes_for_member("member-1", project.id, page=1, limit=1)
    assert total == 2
    assert len(votes) == 1
    assert votes[0].session_key == "milestone_approval"

    votes, _ = ledger.list_votes_for_member("member-1", project.id, page=2, limit=1)
    assert votes[0].session_key == "initial_approval"
