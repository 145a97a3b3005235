"""
Domain errors shared by the services and the HTTP layer.

Each error carries the HTTP status it is rendered with; the handlers in
main.py turn them into the standard {success, message} envelope.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Bad or missing input, or a constraint the schema cannot express."""
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """A unique key (species name/code, lot code, user email) is taken."""
    status_code = 409


class InternalError(AppError):
    status_code = 500


class QREncodingError(InternalError):
    pass
