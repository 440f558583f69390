"""Error taxonomy shared by the library operations and the HTTP layer.

Every error carries the HTTP status and the short machine-readable code the
API sends back as ``{"detail": ..., "code": ...}``.
"""


class LibraryError(Exception):
    status_code = 400
    code = 'error'

    def __init__(self, message, status_code=None, code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self):
        return {'detail': self.message, 'code': self.code}


class PreconditionFailed(LibraryError):
    """The operation is well formed but the current state does not allow it."""
    status_code = 400
    code = 'precondition_failed'


class NotFound(LibraryError):
    status_code = 404
    code = 'not_found'


class Forbidden(LibraryError):
    status_code = 403
    code = 'forbidden'


class ValidationFailed(LibraryError):
    status_code = 422
    code = 'invalid'
