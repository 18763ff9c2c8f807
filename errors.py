"""
Domain errors for the Store Rating App.

Every error carries a stable ``kind`` and the HTTP status it maps to; the
handlers in ``main`` render them as ``{"kind": ..., "message": ...}``.
"""


class RatingAppError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(RatingAppError):
    kind = "invalid_input"
    status_code = 400


class Unauthenticated(RatingAppError):
    kind = "unauthenticated"
    status_code = 401


class Forbidden(RatingAppError):
    kind = "forbidden"
    status_code = 403


class NotFound(RatingAppError):
    kind = "not_found"
    status_code = 404


class Conflict(RatingAppError):
    kind = "conflict"
    status_code = 409


class Unavailable(RatingAppError):
    kind = "unavailable"
    status_code = 503


# Used for HTTPException codes raised by FastAPI itself (e.g. missing bearer token)
KIND_BY_STATUS = {
    cls.status_code: cls.kind
    for cls in (InvalidInput, Unauthenticated, Forbidden, NotFound, Conflict, Unavailable)
}
