# data_gateway/tests/conftest.py
import os
from typing import Any, Generator, Sequence

import pytest
from fastapi.testclient import TestClient

# Settings are read at import time, so the environment is prepared before importing the app.
os.environ["SALESFORCE_CLIENT_ID"] = "test_client_id"
os.environ["SALESFORCE_CLIENT_SECRET"] = "test_client_secret"
os.environ["SALESFORCE_USERNAME"] = "integration@example.com"
os.environ["SALESFORCE_PASSWORD"] = "test_password"
os.environ["SALESFORCE_TOKEN_URL"] = "https://login.salesforce.com/services/oauth2/token"
os.environ["API_V1_STR"] = "/api/v1"
os.environ["DEBUG_MODE"] = "False"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FILENAME"] = "" # No file logging during tests
os.environ["BACKEND_CORS_ORIGINS"] = "[]"
os.environ["HANDLER_MAPPINGS_SOURCE"] = "file"
os.environ["HANDLER_MAPPINGS_FILE"] = ""
os.environ["RECORD_SCHEMAS_FILE"] = ""

from data_gateway.app.main import app as fastapi_app
from data_gateway.app.routers.gateway import get_bulk_processor
from data_gateway.core.schemas import HandlerMapping
from data_gateway.gateway.handlers import HandlerRegistry
from data_gateway.gateway.permissions import DescribePermissionChecker, PermissionGuard, Principal
from data_gateway.gateway.processor import BulkProcessor
from data_gateway.gateway.schema import RelationshipResolver
from data_gateway.tests.fakes import FakeDescribeSource, InMemoryRecordStore
from data_gateway.tests.sample_handlers import RecordingAfterHandler
from data_gateway.utils.stats import GatewayStats


@pytest.fixture
def principal() -> Principal:
    return Principal(username="integration@example.com")


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore(required_fields={"Account": {"Name"}, "Contact": {"LastName"}})


@pytest.fixture
def describe_source() -> FakeDescribeSource:
    return FakeDescribeSource()


@pytest.fixture
def make_processor(store: InMemoryRecordStore, describe_source: FakeDescribeSource):
    """Factory building a BulkProcessor over the in-memory collaborators."""
    def factory(mappings: Sequence[HandlerMapping] = (), declared=None) -> BulkProcessor:
        return BulkProcessor(
            store=store,
            guard=PermissionGuard(DescribePermissionChecker(describe_source)),
            registry=HandlerRegistry(mappings),
            resolver=RelationshipResolver(declared, describe_source),
            stats=GatewayStats(),
        )
    return factory


@pytest.fixture(autouse=True)
def reset_recording_handler():
    RecordingAfterHandler.calls = []
    yield
    RecordingAfterHandler.calls = []


@pytest.fixture
def client() -> Generator[TestClient, Any, None]:
    """Test client for the FastAPI application."""
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def override_processor(make_processor):
    """Injects a processor built over the fakes into the gateway endpoint."""
    def install(mappings: Sequence[HandlerMapping] = ()) -> BulkProcessor:
        processor = make_processor(mappings)

        async def mock_get_processor():
            return processor

        fastapi_app.dependency_overrides[get_bulk_processor] = mock_get_processor
        return processor

    yield install
    fastapi_app.dependency_overrides = {}
