# data_gateway/salesforce/client.py
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import Depends, HTTPException, status

from data_gateway.core.config import settings
from data_gateway.salesforce.auth import SalesforceAuth, get_salesforce_auth_instance

logger = logging.getLogger(settings.APP_NAME)

# One extra attempt after a 401 (token refresh) or a transport failure
RETRY_ATTEMPTS = 1
REQUEST_TIMEOUT_SECONDS = 60.0


def _error_detail(response: httpx.Response) -> str:
    """Joins the messages of a Salesforce error body, falling back to the raw text."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        body = [body]
    if isinstance(body, list):
        messages = [err.get("message") or json.dumps(err) for err in body if isinstance(err, dict)]
        if messages:
            return "; ".join(messages)
    return response.text


def _collection_body(object_name: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
    # allOrNone=false: each item succeeds or fails on its own
    return {
        "allOrNone": False,
        "records": [{"attributes": {"type": object_name}, **record} for record in records],
    }


class SalesforceApiClient:
    """
    Async client for the Salesforce REST calls the gateway makes: describe,
    SOQL and sObject Collections writes. The session belongs to the
    integration user held by SalesforceAuth.
    """

    def __init__(self, auth_instance: SalesforceAuth):
        self.auth = auth_instance

    async def _session(self) -> Tuple[str, Dict[str, str]]:
        access_token, instance_url = await self.auth.get_auth_details()
        base_url = f"{instance_url.rstrip('/')}/services/data/{settings.SALESFORCE_API_VERSION}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Sforce-Call-Options": f"client={settings.APP_NAME}/{settings.APP_VERSION}",
        }
        return base_url, headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        """
        Sends one REST call. A 401 forces a token refresh and a network
        failure is retried once; any other error status raises HTTPException
        carrying the Salesforce message.
        """
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
            attempt = 0
            while True:
                base_url, headers = await self._session()
                url = f"{base_url}{endpoint}"
                logger.debug(f"Salesforce {method} {url} params={params} body={json.dumps(json_data)[:500] if json_data else None}")
                try:
                    response = await client.request(method, url, headers=headers, params=params, json=json_data)
                except httpx.RequestError as e:
                    logger.error(f"Salesforce {method} {url} failed: {e.__class__.__name__}: {e}")
                    if attempt < RETRY_ATTEMPTS:
                        attempt += 1
                        await asyncio.sleep(attempt)
                        continue
                    raise HTTPException(
                        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                        detail=f"Salesforce API communication error: {e.__class__.__name__}",
                    ) from e

                logger.debug(f"Salesforce responded {response.status_code}: {response.text[:500]}")
                if response.status_code == status.HTTP_401_UNAUTHORIZED and attempt < RETRY_ATTEMPTS:
                    attempt += 1
                    logger.warning(f"Session rejected on {method} {endpoint}; refreshing token and retrying")
                    await self.auth.handle_401_unauthorized()
                    continue

                if response.is_error:
                    detail = _error_detail(response)
                    logger.error(f"Salesforce {method} {url} returned {response.status_code}: {detail}")
                    raise HTTPException(status_code=response.status_code, detail=f"Salesforce API Error: {detail}")
                return response

    async def get_sobject_describe(self, object_name: str) -> Dict[str, Any]:
        """Object and field metadata, with access flags for the session user."""
        response = await self._request("GET", f"/sobjects/{object_name}/describe")
        return response.json()

    async def execute_soql_query(self, query: str) -> Dict[str, Any]:
        response = await self._request("GET", "/query", params={"q": query})
        return response.json()

    async def get_next_query_results(self, next_records_url: str) -> Dict[str, Any]:
        locator = next_records_url.rstrip("/").rsplit("/", 1)[-1]
        response = await self._request("GET", f"/query/{locator}")
        return response.json()

    async def query_all_records(self, query: str) -> List[Dict[str, Any]]:
        """Runs a SOQL query and follows nextRecordsUrl until done."""
        page = await self.execute_soql_query(query)
        records = list(page.get("records", []))
        while not page.get("done", True) and page.get("nextRecordsUrl"):
            page = await self.get_next_query_results(page["nextRecordsUrl"])
            records.extend(page.get("records", []))
        return records

    async def upsert_sobject_collection(
        self, object_name: str, external_id_field: str, records: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Upserts up to 200 records matched on external_id_field; results follow input order."""
        response = await self._request(
            "PATCH",
            f"/composite/sobjects/{object_name}/{external_id_field}",
            json_data=_collection_body(object_name, records),
        )
        return response.json()

    async def create_sobject_collection(self, object_name: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Inserts up to 200 records of one type; results follow input order."""
        response = await self._request("POST", "/composite/sobjects", json_data=_collection_body(object_name, records))
        return response.json()


async def get_salesforce_api_client(
    auth_instance: SalesforceAuth = Depends(get_salesforce_auth_instance)
) -> SalesforceApiClient:
    """FastAPI dependency building a client over the shared session."""
    return SalesforceApiClient(auth_instance)
