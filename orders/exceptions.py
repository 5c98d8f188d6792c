"""
Errors raised by order services. Views translate them into HTTP responses
using `status_code` and `title`.
"""
from rest_framework import status


class NegotiationError(Exception):
    """Base class for business errors surfaced directly to the caller."""
    status_code = status.HTTP_400_BAD_REQUEST
    title = 'Bad Request'


class NotFound(NegotiationError):
    status_code = status.HTTP_404_NOT_FOUND
    title = 'Not Found'


class Forbidden(NegotiationError):
    status_code = status.HTTP_403_FORBIDDEN
    title = 'Forbidden'


class BadRequest(NegotiationError):
    status_code = status.HTTP_400_BAD_REQUEST
    title = 'Bad Request'


class Unauthenticated(NegotiationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    title = 'Unauthenticated'


class OrderValidationError(BadRequest):
    """Raised when an order placement request is invalid."""
    title = 'Validation Error'
