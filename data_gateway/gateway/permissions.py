# data_gateway/gateway/permissions.py
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence

from data_gateway.core.config import settings
from data_gateway.core.exceptions import AuthorizationError

logger = logging.getLogger(settings.APP_NAME)

CREATE = "create"
UPDATE = "update"

# Describe flag for each write operation, at object and field level
_DESCRIBE_FLAGS = {CREATE: "createable", UPDATE: "updateable"}


@dataclass(frozen=True)
class Principal:
    """The acting user whose permissions govern the batch."""
    username: str


class DescribeSource(Protocol):
    async def describe(self, type_name: str) -> Dict[str, Any]: ...


class PermissionChecker(Protocol):
    """Answers whether a principal may perform an operation on a type, or on one of its fields."""

    async def is_allowed(
        self, principal: Principal, type_name: str, field_name: Optional[str], operation: str
    ) -> bool: ...


class DescribePermissionChecker:
    """
    Permission checks backed by sObject describe, which reports object and
    field access for the session user. Fields missing from the describe are
    treated as not writable.
    """

    def __init__(self, describe_source: DescribeSource):
        self.describe_source = describe_source
        self._fields: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def _describe_fields(self, type_name: str) -> Dict[str, Dict[str, Any]]:
        """
        Field describe keyed by API name, plus lookup fields keyed by their
        relationship name: a reference set through an external ID
        ("Account": {"External_Id__c": ...}) writes the underlying AccountId.
        """
        if type_name not in self._fields:
            describe = await self.describe_source.describe(type_name)
            fields = describe.get("fields", [])
            by_name = {field["name"]: field for field in fields}
            for field in fields:
                relationship = field.get("relationshipName")
                if relationship and relationship not in by_name:
                    by_name[relationship] = field
            self._fields[type_name] = by_name
        return self._fields[type_name]

    async def is_allowed(
        self, principal: Principal, type_name: str, field_name: Optional[str], operation: str
    ) -> bool:
        flag = _DESCRIBE_FLAGS.get(operation)
        if flag is None:
            raise ValueError(f"Unsupported operation '{operation}'")
        if field_name is None:
            describe = await self.describe_source.describe(type_name)
            return bool(describe.get(flag, False))
        fields = await self._describe_fields(type_name)
        field = fields.get(field_name)
        return bool(field and field.get(flag, False))


class PermissionGuard:
    """
    Verifies the principal may write a record type and every field present in
    the payload. Called once per distinct type in a batch.
    """

    def __init__(self, checker: PermissionChecker):
        self.checker = checker

    async def authorize(
        self,
        type_name: str,
        field_names: Iterable[str],
        principal: Principal,
        operations: Sequence[str] = (CREATE, UPDATE),
    ) -> None:
        """
        Checks object access for every operation first, then field access.
        Raises AuthorizationError on the first violation.
        """
        for operation in operations:
            if not await self.checker.is_allowed(principal, type_name, None, operation):
                logger.warning(f"Principal {principal.username} may not {operation} {type_name}")
                raise AuthorizationError(
                    f"Insufficient access to {operation} {type_name} records.",
                    type_name=type_name, operation=operation,
                )

        # Absent fields are never checked; partial payloads are legal
        for field_name in dict.fromkeys(field_names):
            for operation in operations:
                if not await self.checker.is_allowed(principal, type_name, field_name, operation):
                    logger.warning(f"Principal {principal.username} may not {operation} {type_name}.{field_name}")
                    raise AuthorizationError(
                        f"Insufficient access to {operation} field {type_name}.{field_name}.",
                        type_name=type_name, field_name=field_name, operation=operation,
                    )
        logger.debug(f"Principal {principal.username} authorized for {type_name} ({', '.join(operations)})")
