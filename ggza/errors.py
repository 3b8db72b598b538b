class GGZAError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(GGZAError):
    status_code = 404


class ForbiddenError(GGZAError):
    status_code = 403


class InvalidInputError(GGZAError):
    status_code = 400


class ConflictError(GGZAError):
    """A request that contradicts current state and has no idempotent answer."""

    status_code = 409


class ContentUnavailableError(GGZAError):
    status_code = 503


class DataIntegrityError(GGZAError):
    status_code = 500
