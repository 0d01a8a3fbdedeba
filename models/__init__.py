"""Society Voting - データモデル"""
from models.base import db
from models.society import Society, SocietyMember
from models.project import RedevelopmentProject
from models.proposal import DeveloperProposal
from models.voting import NO_PROPOSAL, SessionStatus, Vote, VoteValue, VotingSession

__all__ = [
    "db",
    "Society",
    "SocietyMember",
    "RedevelopmentProject",
    "DeveloperProposal",
    "NO_PROPOSAL",
    "SessionStatus",
    "Vote",
    "VoteValue",
    "VotingSession",
]
