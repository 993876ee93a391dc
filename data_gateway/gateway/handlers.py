# data_gateway/gateway/handlers.py
import asyncio
import importlib
import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import ValidationError

from data_gateway.core.config import settings
from data_gateway.core.exceptions import ConfigurationError
from data_gateway.core.records import Record
from data_gateway.core.schemas import HandlerMapping, HandlerPhase

logger = logging.getLogger(settings.APP_NAME)

# Method each phase's handler must expose
PHASE_METHODS = {
    HandlerPhase.BEFORE: "before_upsert",
    HandlerPhase.AFTER: "after_upsert",
}


class BeforeUpsertHandler(ABC):
    """
    Runs before parents are upserted. Receives every record of one type in the
    batch and must return the same records in the same order. Fields may be
    changed in place; record.add_error() fails a single record.
    """

    @abstractmethod
    def before_upsert(self, records: List[Record]) -> List[Record]:
        ...


class AfterUpsertHandler(ABC):
    """Runs after parents and children are persisted. Records are read-only and carry their ids."""

    @abstractmethod
    def after_upsert(self, records: List[Record]) -> None:
        ...


# --- Startup registration ---

_registered_factories: Dict[str, Callable[[], Any]] = {}


def register_handler(alias: str):
    """
    Class decorator registering a handler under a short alias that mappings
    may use in place of a dotted import path.
    """
    def decorator(cls):
        existing = _registered_factories.get(alias)
        if existing is not None and existing is not cls:
            raise ConfigurationError(f"Handler alias '{alias}' is already registered to {existing!r}.")
        _registered_factories[alias] = cls
        return cls
    return decorator


def load_handler_class(class_name: str) -> Callable[[], Any]:
    """Finds a registered alias or imports a 'package.module.ClassName' path."""
    if class_name in _registered_factories:
        return _registered_factories[class_name]

    module_name, _, attr = class_name.rpartition(".")
    if not module_name:
        raise ConfigurationError(
            f"Handler class '{class_name}' is neither a registered alias nor a dotted import path."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module '{module_name}' for handler '{class_name}': {e}") from e
    handler_cls = getattr(module, attr, None)
    if handler_cls is None or not inspect.isclass(handler_cls):
        raise ConfigurationError(f"Handler class '{class_name}' was not found.")
    return handler_cls


def instantiate_handler(mapping: HandlerMapping) -> Any:
    """Creates the handler named by a mapping and checks it exposes its phase's method."""
    factory = load_handler_class(mapping.handler_class_name)
    try:
        handler = factory()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to instantiate handler '{mapping.handler_class_name}' for {mapping.sobject_api_name}: {e}"
        ) from e

    method_name = PHASE_METHODS[mapping.handler_type]
    if not callable(getattr(handler, method_name, None)):
        raise ConfigurationError(
            f"Handler '{mapping.handler_class_name}' is mapped as {mapping.handler_type.value} "
            f"for {mapping.sobject_api_name} but does not implement {method_name}(records)."
        )
    return handler


async def invoke_handler(handler: Any, phase: HandlerPhase, records: List[Record]) -> Any:
    """Calls the phase method; coroutine handlers are awaited."""
    result = getattr(handler, PHASE_METHODS[phase])(records)
    if inspect.isawaitable(result):
        result = await result
    return result


# --- Registry ---

class HandlerRegistry:
    """
    Resolves zero or one handler for a (record type, phase) pair from a
    read-only snapshot of handler mappings. Type names match exactly.
    """

    def __init__(self, mappings: Sequence[HandlerMapping] = ()):
        self._mappings: Tuple[HandlerMapping, ...] = tuple(mappings)

    @property
    def mappings(self) -> Tuple[HandlerMapping, ...]:
        return self._mappings

    def matching(self, type_name: str, phase: HandlerPhase) -> List[HandlerMapping]:
        return [
            m for m in self._mappings
            if m.sobject_api_name == type_name and m.handler_type == phase
        ]

    def resolve(self, type_name: str, phase: HandlerPhase) -> Optional[Any]:
        """
        Returns a fresh handler instance, or None when nothing is mapped.
        Raises ConfigurationError on conflicting mappings or an unusable class.
        """
        matches = self.matching(type_name, phase)
        if not matches:
            return None
        if len(matches) > 1:
            names = ", ".join(m.handler_class_name for m in matches)
            raise ConfigurationError(
                f"{len(matches)} {phase.value} handlers are mapped for {type_name} ({names}); at most one is allowed."
            )
        handler = instantiate_handler(matches[0])
        logger.info(f"Resolved {phase.value} handler {matches[0].handler_class_name} for {type_name}")
        return handler


def validate_mappings(mappings: Sequence[HandlerMapping]) -> List[str]:
    """
    Checks every mapping eagerly: conflicting (type, phase) pairs, classes
    that cannot be loaded or instantiated, and missing phase methods.
    Returns a list of problems; empty when the table is valid.
    """
    problems: List[str] = []
    seen: Dict[Tuple[str, HandlerPhase], str] = {}
    for mapping in mappings:
        key = (mapping.sobject_api_name, mapping.handler_type)
        if key in seen:
            problems.append(
                f"Conflicting {mapping.handler_type.value} handlers for {mapping.sobject_api_name}: "
                f"{seen[key]} and {mapping.handler_class_name}"
            )
            continue
        seen[key] = mapping.handler_class_name
        try:
            instantiate_handler(mapping)
        except ConfigurationError as e:
            problems.append(e.message)
    return problems


# --- Mapping sources ---

class HandlerMappingSource(Protocol):
    async def load(self) -> List[HandlerMapping]: ...


def parse_mappings(raw: Any, origin: str) -> List[HandlerMapping]:
    if not isinstance(raw, list):
        raise ConfigurationError(f"Handler mappings from {origin} must be a list.")
    try:
        return [HandlerMapping.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid handler mapping in {origin}: {e}") from e


class JsonFileMappingSource:
    """Reads a JSON array of {sobjectApiName, handlerClassName, handlerType} objects."""

    def __init__(self, path: Optional[str]):
        self.path = path

    async def load(self) -> List[HandlerMapping]:
        if not self.path:
            return []
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read handler mappings from {self.path}: {e}") from e
        return parse_mappings(raw, self.path)


class SalesforceMetadataMappingSource:
    """Reads mappings from a custom metadata type in the connected org."""

    def __init__(self, client: Any, object_name: str = settings.HANDLER_MAPPING_OBJECT):
        self.client = client
        self.object_name = object_name

    async def load(self) -> List[HandlerMapping]:
        query = (
            "SELECT SObject_API_Name__c, Handler_Class_Name__c, Handler_Type__c "
            f"FROM {self.object_name}"
        )
        records = await self.client.query_all_records(query)
        raw = [
            {
                "sobjectApiName": record.get("SObject_API_Name__c"),
                "handlerClassName": record.get("Handler_Class_Name__c"),
                "handlerType": record.get("Handler_Type__c"),
            }
            for record in records
        ]
        return parse_mappings(raw, self.object_name)


class HandlerMappingCache:
    """
    Process-wide cache of handler mappings. Requests receive an immutable
    snapshot; a refresh only happens between requests, when the TTL has
    elapsed or after invalidate().
    """

    def __init__(self, ttl_seconds: int = settings.HANDLER_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[Tuple[HandlerMapping, ...]] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if self._snapshot is None:
            return False
        if self.ttl_seconds <= 0:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    async def get(self, source: HandlerMappingSource) -> Tuple[HandlerMapping, ...]:
        snapshot = self._snapshot
        if self._is_fresh():
            return snapshot
        async with self._lock:
            if self._is_fresh():
                return self._snapshot
            snapshot = tuple(await source.load())
            self._snapshot = snapshot
            self._loaded_at = self._clock()
            logger.info(f"Loaded {len(snapshot)} handler mappings")
        return snapshot

    def invalidate(self) -> None:
        self._snapshot = None
        logger.info("Handler mapping cache invalidated")


_mapping_cache: Optional[HandlerMappingCache] = None


def get_mapping_cache() -> HandlerMappingCache:
    global _mapping_cache
    if _mapping_cache is None:
        _mapping_cache = HandlerMappingCache()
    return _mapping_cache


def build_mapping_source(client: Any = None) -> HandlerMappingSource:
    if settings.HANDLER_MAPPINGS_SOURCE == "salesforce":
        if client is None:
            raise ConfigurationError("A Salesforce client is required to load handler mappings from metadata.")
        return SalesforceMetadataMappingSource(client)
    return JsonFileMappingSource(settings.HANDLER_MAPPINGS_FILE)
