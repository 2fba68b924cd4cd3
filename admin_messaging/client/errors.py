"""Errors raised by the client library.

Stale responses are not errors; the store drops them without raising.
"""
from typing import Optional


class ClientError(Exception):
    pass


class NetworkError(ClientError):
    """The request never got an HTTP response (offline, DNS, timeout)."""


class ApiError(ClientError):

    def __init__(self, status: int, message: str, code: Optional[str] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.retryable = retryable


class AuthError(ApiError):
    pass


class PayloadTooLargeError(ApiError):
    pass
