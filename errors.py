"""Error kinds raised by the FarmChain core.

Each kind carries the HTTP status the API layer answers with; the core
itself never builds HTTP responses.
"""


class FarmChainError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FarmChainError):
    status_code = 400


class AuthenticationError(FarmChainError):
    status_code = 401


class AuthorizationError(FarmChainError):
    status_code = 403


class NotFoundError(FarmChainError):
    status_code = 404


class ConflictError(FarmChainError):
    status_code = 409


class IllegalTransitionError(AuthorizationError, ValidationError):
    """Action not permitted from the batch's current lifecycle position."""
    status_code = 400

    def __init__(self, message: str, action: str = None, allowed=()):
        super().__init__(message)
        self.action = action
        self.allowed = sorted(allowed)


class InternalError(FarmChainError):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
