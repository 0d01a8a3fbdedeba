from datetime import timedelta

import pytest

from core.errors import (
    AlreadyClosedError,
    AuthenticationRequiredError,
    AuthorizationError,
    DuplicateVoteError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    ValidationError,
    VotingClosedError,
)
from models import Vote, VotingSession, db


def open_session(service, project, clock, key="proposal_selection", days=7, minimum=75):
    return service.start_voting(project.id, "owner-1", {
        "votingSession": key,
        "deadline": (clock.now + timedelta(days=days)).isoformat() + "Z",
        "minimumApprovalPercentage": minimum,
    })


def test_member_vote_returns_vote_and_updated_statistics(service, factory, project, clock, events):
    p2 = factory.proposal(project, "dev-2")
    open_session(service, project, clock)

    result = service.submit_vote(project.id, "member-1", {
        "votingSession": "proposal_selection",
        "proposal": p2.id,
        "vote": "yes",
        "reason": "Better corpus",
    }, ip_address="10.0.0.1", user_agent="pytest")

    assert result["vote"]["vote"] == "yes"
    assert result["vote"]["proposal"] == p2.id
    stats = result["votingStats"]
    assert stats["yesVotes"] == 1
    assert stats["totalMembers"] == 10
    assert stats["participationRate"] == 10.0
    assert stats["votingStatus"] == "open"
    assert stats["minimumApprovalRequired"] == 75

    event, data, room = events[-1]
    assert event == "voting_update"
    assert room == f"project:{project.id}"
    assert "member-1" not in str(data)


def test_same_vote_retried_is_rejected_and_first_vote_unchanged(service, factory, project, clock, events):
    p2 = factory.proposal(project, "dev-2")
    open_session(service, project, clock)
    body = {"votingSession": "proposal_selection", "proposal": p2.id, "vote": "yes"}
    service.submit_vote(project.id, "member-1", body)
    sent = len(events)

    with pytest.raises(DuplicateVoteError) as exc:
        service.submit_vote(project.id, "member-1", dict(body, vote="no"))

    assert exc.value.status_code == 409
    assert exc.value.message == "You have already voted in this session"
    assert [v.value for v in Vote.query.all()] == ["yes"]
    assert len(events) == sent


def test_member_may_vote_once_per_proposal(service, factory, project, clock):
    p1 = factory.proposal(project, "dev-1")
    p2 = factory.proposal(project, "dev-2")
    open_session(service, project, clock)

    for proposal in (p1, p2):
        service.submit_vote(project.id, "member-1", {"proposal": proposal.id, "vote": "yes"})

    assert Vote.query.filter_by(member_id="member-1").count() == 2


@pytest.mark.parametrize("user_id", ["owner-1", "outsider", "dev-1"])
def test_only_active_members_can_vote(service, factory, project, clock, user_id):
    p1 = factory.proposal(project, "dev-1")
    open_session(service, project, clock)

    with pytest.raises(NotEligibleError):
        service.submit_vote(project.id, user_id, {"proposal": p1.id, "vote": "yes"})


def test_inactive_member_cannot_vote(service, factory, society, project, clock):
    factory.member(society, "former", status="inactive")
    open_session(service, project, clock, key="initial_approval")

    with pytest.raises(NotEligibleError):
        service.submit_vote(project.id, "former", {"votingSession": "initial_approval", "vote": "yes"})


def test_missing_identity_is_rejected(service, project):
    with pytest.raises(AuthenticationRequiredError):
        service.submit_vote(project.id, None, {"vote": "yes"})


def test_unknown_project_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_session_status("missing", "member-1")


def test_selection_vote_requires_a_proposal(service, factory, project, clock):
    factory.proposal(project, "dev-1")
    open_session(service, project, clock)

    with pytest.raises(ValidationError) as exc:
        service.submit_vote(project.id, "member-1", {"vote": "yes"})
    assert exc.value.field == "proposal"


def test_boolean_vote_is_rejected(service, project, clock):
    open_session(service, project, clock, key="initial_approval")

    with pytest.raises(ValidationError):
        service.submit_vote(project.id, "member-1", {"votingSession": "initial_approval", "vote": True})


def test_vote_without_open_session_is_voting_closed(service, project):
    with pytest.raises(VotingClosedError):
        service.submit_vote(project.id, "member-1", {"votingSession": "initial_approval", "vote": "yes"})


def test_get_my_vote_is_not_found_until_voted(service, project, clock):
    open_session(service, project, clock, key="initial_approval")

    with pytest.raises(NotFoundError):
        service.get_my_vote(project.id, "member-1", "initial_approval")

    service.submit_vote(project.id, "member-1", {"votingSession": "initial_approval", "vote": "abstain"})
    assert service.get_my_vote(project.id, "member-1", "initial_approval")["vote"]["vote"] == "abstain"


def test_statistics_before_start_are_zero(service, project):
    stats = service.get_voting_statistics(project.id, "member-1", "initial_approval")["statistics"]

    assert stats["votingStatus"] == "not_started"
    assert stats["totalVotes"] == 0
    assert stats["totalMembers"] == 10
    assert stats["isApproved"] is False


def test_selection_statistics_without_filter_return_session_summary(service, factory, project, clock):
    p1 = factory.proposal(project, "dev-1")
    p2 = factory.proposal(project, "dev-2")
    open_session(service, project, clock)
    service.submit_vote(project.id, "member-1", {"proposal": p1.id, "vote": "yes"})
    service.submit_vote(project.id, "member-1", {"proposal": p2.id, "vote": "no"})
    service.submit_vote(project.id, "member-2", {"proposal": p1.id, "vote": "yes"})

    stats = service.get_voting_statistics(project.id, "dev-1")["statistics"]

    assert stats["votersCount"] == 2
    assert stats["participationRate"] == 20.0
    by_proposal = {entry["proposal"]: entry for entry in stats["proposals"]}
    assert by_proposal[p1.id]["yesVotes"] == 2
    assert by_proposal[p2.id]["noVotes"] == 1

    filtered = service.get_voting_statistics(project.id, "member-3", proposal_id=p1.id)["statistics"]
    assert filtered["yesVotes"] == 2
    assert filtered["approvalPercentage"] == 20.0


def test_statistics_are_refused_to_outsiders(service, project):
    with pytest.raises(AuthorizationError):
        service.get_voting_statistics(project.id, "outsider")


def test_only_owner_starts_and_closes(service, factory, project, clock):
    factory.proposal(project, "dev-1")
    with pytest.raises(AuthorizationError):
        service.start_voting(project.id, "member-1", {"deadline": (clock.now + timedelta(days=1)).isoformat()})

    open_session(service, project, clock)
    with pytest.raises(AuthorizationError):
        service.close_voting(project.id, "member-1")


def test_invalid_deadline_string_is_rejected(service, project):
    with pytest.raises(ValidationError) as exc:
        service.start_voting(project.id, "owner-1", {"votingSession": "initial_approval", "deadline": "next week"})
    assert exc.value.field == "deadline"


def test_close_returns_final_results_and_notifies_after_commit(service, factory, project, clock, events):
    p1 = factory.proposal(project, "dev-1")
    open_session(service, project, clock, minimum=50)
    for i in range(1, 7):
        service.submit_vote(project.id, f"member-{i}", {"proposal": p1.id, "vote": "yes"})

    results = service.close_voting(project.id, "owner-1")

    assert results["winningProposal"]["proposal"]["id"] == p1.id
    assert results["project"]["selectedDeveloper"] == "dev-1"
    assert results["session"]["status"] == "closed"
    assert [e[0] for e in events[-2:]] == ["voting_closed", "developer_selected"]

    with pytest.raises(AlreadyClosedError):
        service.close_voting(project.id, "owner-1")


def test_results_are_unavailable_while_voting_is_open(service, factory, project, clock):
    factory.proposal(project, "dev-1")
    open_session(service, project, clock)

    with pytest.raises(InvalidStateError):
        service.get_final_results(project.id, "member-1")


def test_results_after_deadline_finalize_once(service, factory, project, clock, events):
    p1 = factory.proposal(project, "dev-1")
    open_session(service, project, clock, days=7, minimum=50)
    for i in range(1, 7):
        service.submit_vote(project.id, f"member-{i}", {"proposal": p1.id, "vote": "yes"})
    clock.advance(days=8)

    with pytest.raises(VotingClosedError):
        service.submit_vote(project.id, "member-7", {"proposal": p1.id, "vote": "yes"})
    assert service.get_session_status(project.id, "member-7")["session"]["status"] == "closed"

    first = service.get_final_results(project.id, "member-1")
    clock.advance(hours=1)
    second = service.get_final_results(project.id, "dev-1")

    assert first["closeReason"] == "deadline_passed"
    assert first["finalResults"] == second["finalResults"]
    assert first["winningProposal"] == second["winningProposal"]
    assert first["closedAt"] == second["closedAt"]
    assert [e[0] for e in events].count("voting_closed") == 1

    with pytest.raises(AlreadyClosedError):
        service.close_voting(project.id, "owner-1")


def test_owner_close_after_deadline_records_deadline_reason(service, project, clock):
    open_session(service, project, clock, key="initial_approval", days=1)
    clock.advance(days=3)

    results = service.close_voting(project.id, "owner-1", "initial_approval")

    assert results["closeReason"] == "deadline_passed"
    session = VotingSession.query.one()
    assert session.closed_at == session.deadline


def test_owner_audit_listing_includes_request_metadata(service, project, clock):
    open_session(service, project, clock, key="initial_approval")
    service.submit_vote(
        project.id, "member-1", {"votingSession": "initial_approval", "vote": "yes"},
        ip_address="192.0.2.1", user_agent="Browser",
    )

    audit = service.list_votes(project.id, "owner-1", "initial_approval")
    assert audit["votes"][0]["member"] == "member-1"
    assert audit["votes"][0]["ipAddress"] == "192.0.2.1"

    with pytest.raises(AuthorizationError):
        service.list_votes(project.id, "member-1", "initial_approval")

    own = service.get_my_vote(project.id, "member-1", "initial_approval")["vote"]
    assert "ipAddress" not in own


def test_owner_verifies_vote_without_changing_it(service, factory, society, project, clock):
    open_session(service, project, clock, key="initial_approval")
    cast = service.submit_vote(
        project.id, "member-1", {"votingSession": "initial_approval", "vote": "no", "reason": "Rent too low"},
    )["vote"]
    clock.advance(hours=1)

    verified = service.verify_vote(project.id, "owner-1", cast["id"])["vote"]

    assert verified["isVerified"] is True
    assert verified["verifiedBy"] == "owner-1"
    assert verified["verifiedAt"] == "2025-01-10T10:00:00Z"
    assert verified["vote"] == "no"
    assert verified["reason"] == "Rent too low"
    assert verified["votedAt"] == cast["votedAt"]

    stored = db.session.get(Vote, cast["id"])
    assert stored.is_verified is True
    assert stored.value == "no"

    audit = service.list_votes(project.id, "owner-1", "initial_approval")["votes"][0]
    assert audit["isVerified"] is True
    assert "isVerified" not in service.get_my_vote(project.id, "member-1", "initial_approval")["vote"]


@pytest.mark.parametrize("user_id", ["member-1", "member-2", "dev-1"])
def test_only_owner_verifies_votes(service, factory, project, clock, user_id):
    factory.proposal(project, "dev-1")
    open_session(service, project, clock, key="initial_approval")
    cast = service.submit_vote(project.id, "member-1", {"votingSession": "initial_approval", "vote": "yes"})["vote"]

    with pytest.raises(AuthorizationError):
        service.verify_vote(project.id, user_id, cast["id"])
    assert db.session.get(Vote, cast["id"]).is_verified is False


def test_verifying_unknown_or_foreign_vote_is_not_found(service, factory, society, project, clock):
    other = factory.project(society, title="Tower B redevelopment")
    open_session(service, other, clock, key="initial_approval")
    foreign = service.submit_vote(other.id, "member-1", {"votingSession": "initial_approval", "vote": "yes"})["vote"]

    with pytest.raises(NotFoundError):
        service.verify_vote(project.id, "owner-1", "no-such-vote")
    with pytest.raises(NotFoundError):
        service.verify_vote(project.id, "owner-1", foreign["id"])


def test_history_pagination(service, project, clock):
    for key in ("initial_approval", "milestone_approval"):
        open_session(service, project, clock, key=key)
        service.submit_vote(project.id, "member-1", {"votingSession": key, "vote": "yes"})

    history = service.list_my_votes(project.id, "member-1", page=1, limit=1)
    assert history["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}

    with pytest.raises(ValidationError):
        service.list_my_votes(project.id, "member-1", page=1, limit=101)
    with pytest.raises(ValidationError):
        service.list_my_votes(project.id, "member-1", page=0, limit=10)
