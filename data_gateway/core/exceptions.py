# data_gateway/core/exceptions.py
from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base class for errors raised by the data gateway."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def error_type(self) -> str:
        return self.__class__.__name__


class ConfigurationError(GatewayError):
    """Ambiguous, missing or invalid handler mapping or handler class. Fatal for the request."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class AuthorizationError(GatewayError):
    """The acting principal may not write the record type or one of its fields. Fatal for the request."""
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, type_name: str, field_name: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(message)
        self.type_name = type_name
        self.field_name = field_name
        self.operation = operation


class HandlerError(GatewayError):
    """A Before or After handler raised or broke its contract. Reported on the affected records."""


class PersistenceError(GatewayError):
    """A whole store call failed (transport or unexpected response), not a single item."""
    status_code = status.HTTP_502_BAD_GATEWAY


class RecordReadOnlyError(GatewayError):
    """Raised when a record is modified while it is read-only (After handlers)."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
