from typing import Optional

error_messages = {
    400: 'Invalid request.',
    401: 'Authentication required.',
    403: 'Forbidden.',
    404: 'Not found.',
    405: 'Invalid request method.',
    409: 'Conflict.',
    429: 'Too many requests.',
    500: 'Internal server error.',
    503: 'Service temporarily unavailable.',
}


class HTTPError(Exception):
    def __init__(self, status_code: int, description: Optional[str] = None):
        self.status_code = status_code
        self.description = description
        super().__init__(description or error_messages.get(status_code, 'Unknown error'))


class ApiError(HTTPError):
    """Error with a machine-readable code rendered as a JSON body"""
    status_code = 400

    def __init__(self, code: str, message: Optional[str] = None, status_code: Optional[int] = None, **extra):
        self.code = code
        self.extra = extra
        super().__init__(status_code or type(self).status_code, message or code.replace('_', ' '))

    def to_dict(self) -> dict:
        return {
            'status': 'error',
            'error': self.code,
            'message': self.description,
            **self.extra
        }


class ValidationError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class NotFoundError(ApiError):
    status_code = 404


class StateConflictError(ApiError):
    status_code = 409


class ResourceExhaustedError(ApiError):
    status_code = 400
