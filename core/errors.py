"""
投票ドメインの例外

各例外は HTTP ステータスとエラーコードを持ち、API 層でそのまま
{"status": "error", "error": ..., "errorCode": ...} に変換される。
"""
from typing import Optional


class VotingError(Exception):
    status_code = 400
    error_code = "VOTING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "error": self.message,
            "errorCode": self.error_code,
        }


class ValidationError(VotingError):
    """入力不正（投票値なし、理由が長すぎる、承認率が範囲外など）"""
    status_code = 400
    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class DuplicateVoteError(VotingError):
    status_code = 409
    error_code = "ALREADY_VOTED"


class InvalidStateError(VotingError):
    status_code = 409
    error_code = "INVALID_STATE"


class VotingInProgressError(InvalidStateError):
    error_code = "VOTING_IN_PROGRESS"


class VotingClosedError(InvalidStateError):
    status_code = 403
    error_code = "VOTING_CLOSED"


class AlreadyClosedError(InvalidStateError):
    error_code = "ALREADY_CLOSED"


class NotFoundError(VotingError):
    status_code = 404
    error_code = "NOT_FOUND"


class AuthorizationError(VotingError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotEligibleError(AuthorizationError):
    error_code = "NOT_ELIGIBLE"


class AuthenticationRequiredError(AuthorizationError):
    status_code = 401
    error_code = "AUTH_REQUIRED"
