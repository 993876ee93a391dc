# data_gateway/app/routers/gateway.py
from fastapi import APIRouter, HTTPException, Depends, Body, status
from functools import lru_cache
import logging

from data_gateway.core.config import settings
from data_gateway.core.exceptions import GatewayError
from data_gateway.core.schemas import (
    GatewayRequest, GatewayResponse, ErrorResponse, CacheInvalidationResponse, is_valid_api_name
)
from data_gateway.gateway.handlers import HandlerRegistry, build_mapping_source, get_mapping_cache
from data_gateway.gateway.permissions import DescribePermissionChecker, PermissionGuard, Principal
from data_gateway.gateway.processor import BulkProcessor
from data_gateway.gateway.schema import RecordSchemas, RelationshipResolver, load_record_schemas
from data_gateway.salesforce.client import SalesforceApiClient, get_salesforce_api_client
from data_gateway.salesforce.operations import SalesforceDescribeSource, SalesforceRecordStore

logger = logging.getLogger(settings.APP_NAME)
router = APIRouter()


@lru_cache(maxsize=1)
def get_record_schemas() -> RecordSchemas:
    return load_record_schemas(settings.RECORD_SCHEMAS_FILE)


async def get_handler_registry(
    client: SalesforceApiClient = Depends(get_salesforce_api_client)
) -> HandlerRegistry:
    # Each request works on its own snapshot; handlers are instantiated per request
    mappings = await get_mapping_cache().get(build_mapping_source(client))
    return HandlerRegistry(mappings)


async def get_bulk_processor(
    client: SalesforceApiClient = Depends(get_salesforce_api_client),
    registry: HandlerRegistry = Depends(get_handler_registry),
) -> BulkProcessor:
    describe_source = SalesforceDescribeSource(client)
    return BulkProcessor(
        store=SalesforceRecordStore(client),
        guard=PermissionGuard(DescribePermissionChecker(describe_source)),
        registry=registry,
        resolver=RelationshipResolver(
            get_record_schemas(),
            describe_source if settings.RESOLVE_RELATIONSHIPS_FROM_DESCRIBE else None,
        ),
    )


async def get_principal() -> Principal:
    """The gateway writes as its Salesforce integration user."""
    return Principal(username=settings.SALESFORCE_USERNAME)


@router.post(
    "/data-gateway/admin/handler-cache/invalidate",
    response_model=CacheInvalidationResponse,
    summary="Invalidate Cached Handler Mappings",
    description="Drops the cached handler mappings so the next request reloads them from the configuration source."
)
async def handle_invalidate_handler_cache():
    get_mapping_cache().invalidate()
    return CacheInvalidationResponse(success=True, message="Handler mapping cache invalidated.")


@router.post(
    "/data-gateway/{record_type_name}",
    response_model=GatewayResponse,
    summary="Upsert a Batch of Records with Child Collections",
    description=(
        "Upserts parent records of the given type keyed on externalIdField, inserts their child "
        "collections linked to the upserted parents, and runs any configured Before/After handlers. "
        "Returns one result per input record in input order."
    ),
    responses={
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
)
async def handle_data_gateway_request(
    record_type_name: str,
    payload: GatewayRequest = Body(...),
    processor: BulkProcessor = Depends(get_bulk_processor),
    principal: Principal = Depends(get_principal),
):
    if not is_valid_api_name(record_type_name):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid record type name '{record_type_name}'.")
    if len(payload.data) > settings.GATEWAY_MAX_RECORDS:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch contains {len(payload.data)} records; the limit is {settings.GATEWAY_MAX_RECORDS}."
        )

    try:
        results = await processor.process(
            type_name=record_type_name,
            external_id_field=payload.external_id_field,
            payloads=payload.data,
            principal=principal,
        )
        return GatewayResponse(results=results)
    except (HTTPException, GatewayError):
        # GatewayError is rendered by the application's exception handler
        raise
    except Exception as e:
        logger.error(f"Error processing {record_type_name} batch: {str(e)}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"An unexpected error occurred: {str(e)}")
