# data_gateway/salesforce/operations.py
import logging
from typing import Any, Dict, List

from fastapi import HTTPException
from data_gateway.core.config import settings
from data_gateway.core.exceptions import PersistenceError
from data_gateway.core.schemas import SaveResult
from data_gateway.salesforce.client import SalesforceApiClient

logger = logging.getLogger(settings.APP_NAME)


def _chunks(items: List[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def parse_save_result(raw: Dict[str, Any]) -> SaveResult:
    """Converts one sObject Collections result item into a SaveResult."""
    errors = []
    for err in raw.get("errors") or []:
        message = err.get("message", "Unknown error.")
        fields = err.get("fields") or []
        code = err.get("statusCode")
        prefix = f"{code}: " if code else ""
        suffix = f" (fields: {', '.join(fields)})" if fields else ""
        errors.append(f"{prefix}{message}{suffix}")
    return SaveResult(
        success=bool(raw.get("success")),
        id=raw.get("id"),
        created=raw.get("created"),
        errors=errors,
    )


class SalesforceDescribeSource:
    """
    Describe lookups for the session user, cached for the lifetime of the
    instance. One instance is created per request so permission changes are
    picked up on the next request.
    """

    def __init__(self, client: SalesforceApiClient):
        self.client = client
        self._cache: Dict[str, Dict[str, Any]] = {}

    async def describe(self, type_name: str) -> Dict[str, Any]:
        if type_name not in self._cache:
            logger.info(f"Describing SObject: {type_name}")
            self._cache[type_name] = await self.client.get_sobject_describe(type_name)
        return self._cache[type_name]


class SalesforceRecordStore:
    """
    Partial-success persistence through the sObject Collections API.
    Each call returns one SaveResult per input record, in input order.
    Records are sent in chunks of the collection limit; a chunk that fails as
    a whole yields a failed SaveResult for each of its records.
    """

    def __init__(self, client: SalesforceApiClient, collection_limit: int = settings.SOBJECT_COLLECTION_LIMIT):
        self.client = client
        self.collection_limit = collection_limit

    def _align(self, type_name: str, expected: int, response: Any) -> List[SaveResult]:
        if not isinstance(response, list) or len(response) != expected:
            logger.error(f"Unexpected sObject Collections response for {type_name}: {response!r}")
            raise PersistenceError(
                f"Salesforce returned {len(response) if isinstance(response, list) else 'no'} results for {expected} {type_name} records."
            )
        return [parse_save_result(item) for item in response]

    async def _save_chunk(self, operation: str, type_name: str, chunk: List[Dict[str, Any]], call) -> List[SaveResult]:
        try:
            response = await call()
            return self._align(type_name, len(chunk), response)
        except HTTPException as he:
            message = f"{operation.capitalize()} of {type_name} failed: {he.detail}"
        except PersistenceError as pe:
            message = pe.message
        except ValueError as ve:
            # 2xx with a body that is not JSON
            message = f"{operation.capitalize()} of {type_name} failed: unreadable Salesforce response ({ve})"
        logger.error(message)
        return [SaveResult(success=False, errors=[message]) for _ in chunk]

    async def upsert(self, type_name: str, external_id_field: str, records: List[Dict[str, Any]]) -> List[SaveResult]:
        results: List[SaveResult] = []
        for chunk in _chunks(records, self.collection_limit):
            logger.info(f"Upserting {len(chunk)} {type_name} records via {external_id_field}")
            results.extend(await self._save_chunk(
                "upsert", type_name, chunk,
                lambda: self.client.upsert_sobject_collection(type_name, external_id_field, chunk),
            ))
        return results

    async def insert(self, type_name: str, records: List[Dict[str, Any]]) -> List[SaveResult]:
        results: List[SaveResult] = []
        for chunk in _chunks(records, self.collection_limit):
            logger.info(f"Inserting {len(chunk)} {type_name} records")
            results.extend(await self._save_chunk(
                "insert", type_name, chunk,
                lambda: self.client.create_sobject_collection(type_name, chunk),
            ))
        return results
