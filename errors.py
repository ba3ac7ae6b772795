"""Error kinds raised by the lifecycle engine and the adapters.

Each kind carries the HTTP status it is reported with; ``main`` turns any of
them into a ``{"error": message}`` response. Missing or bad credentials are
answered 401 by the auth dependencies in ``routers.auth``.
"""


class AnnadanError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None, status_code: int = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(AnnadanError):
    status_code = 400
    default_message = "Invalid input"


class Forbidden(AnnadanError):
    status_code = 403
    default_message = "Access denied"


class NotFound(AnnadanError):
    status_code = 404
    default_message = "Not found"


class Conflict(AnnadanError):
    status_code = 409
    default_message = "Conflict"


class InvalidState(AnnadanError):
    status_code = 400
    default_message = "Transition not permitted from the current status"


class InvalidOperation(AnnadanError):
    status_code = 400
    default_message = "Operation not permitted"


class DependencyFailure(AnnadanError):
    status_code = 503
    default_message = "External service unavailable"
