"""Society Voting - コアロジック"""
from core.ledger import VoteLedger
from core.proposal import ProposalManager
from core.resolution import WinnerResolver
from core.sessions import SessionManager
from core.tally import TallyEngine
from core.voting import VotingService

__all__ = [
    "ProposalManager",
    "SessionManager",
    "TallyEngine",
    "VoteLedger",
    "VotingService",
    "WinnerResolver",
]
