"""Application errors raised by services and mapped to HTTP responses."""


class AppError(Exception):
    """Base error carrying an HTTP status and a stable error name."""

    status_code = 500

    def __init__(self, message='Something went wrong', status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def code(self):
        return type(self).__name__

    def to_dict(self):
        return {
            'error': self.code,
            'message': self.message,
            'statusCode': self.status_code,
        }


class ValidationError(AppError):
    status_code = 400


class InvalidStateError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401

    def __init__(self, message='Authentication required'):
        super().__init__(message)


class InvalidCredentialsError(AppError):
    status_code = 401

    def __init__(self, message='Invalid email or password'):
        super().__init__(message)


class TokenExpiredError(AppError):
    status_code = 401

    def __init__(self, message='Token has expired'):
        super().__init__(message)


class TokenInvalidError(AppError):
    status_code = 401

    def __init__(self, message='Invalid token'):
        super().__init__(message)


class ForbiddenError(AppError):
    status_code = 403

    def __init__(self, message='Access denied'):
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, resource='Resource', identifier=None):
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class AlreadyExistsError(AppError):
    status_code = 409


class TooManyAttemptsError(AppError):
    status_code = 429

    def __init__(self, wait_minutes):
        super().__init__(f'Too many failed login attempts. Try again in about {wait_minutes} minute(s).')
        self.wait_minutes = wait_minutes


class ServiceUnavailableError(AppError):
    status_code = 503
