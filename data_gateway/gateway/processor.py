# data_gateway/gateway/processor.py
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

from data_gateway.core.config import settings
from data_gateway.core.exceptions import AuthorizationError, ConfigurationError, HandlerError, PersistenceError
from data_gateway.core.records import Record, is_child_collection
from data_gateway.core.results import RecordState, ResultAggregator
from data_gateway.core.schemas import HandlerPhase, ProcessingResult, RelationshipSchema, SaveResult
from data_gateway.gateway.handlers import HandlerRegistry, invoke_handler
from data_gateway.gateway.permissions import CREATE, UPDATE, PermissionGuard, Principal
from data_gateway.gateway.schema import RelationshipResolver
from data_gateway.utils.stats import GatewayStats, gateway_stats

logger = logging.getLogger(settings.APP_NAME)


class RecordStore(Protocol):
    """
    Partial-success persistence. Both calls return one SaveResult per input
    record, aligned with input order; one item failing never affects another.
    """

    async def upsert(self, type_name: str, external_id_field: str, records: List[Dict[str, Any]]) -> List[SaveResult]: ...

    async def insert(self, type_name: str, records: List[Dict[str, Any]]) -> List[SaveResult]: ...


class BulkProcessor:
    """
    Runs one batch through: handler resolution, permission check, Before
    handler, parent upsert, child insert, After handler and result
    aggregation. Persistence calls are grouped by record type, never issued
    per record.
    """

    def __init__(
        self,
        store: RecordStore,
        guard: PermissionGuard,
        registry: HandlerRegistry,
        resolver: RelationshipResolver,
        stats: Optional[GatewayStats] = None,
    ):
        self.store = store
        self.guard = guard
        self.registry = registry
        self.resolver = resolver
        self.stats = stats or gateway_stats

    async def process(
        self,
        type_name: str,
        external_id_field: str,
        payloads: List[Dict[str, Any]],
        principal: Principal,
    ) -> List[ProcessingResult]:
        """
        Processes a batch of parent payloads of one record type.
        Raises ConfigurationError or AuthorizationError before anything is
        persisted; every other failure is reported on the affected record.
        """
        logger.info(f"Processing {len(payloads)} {type_name} records keyed on {external_id_field}")
        try:
            aggregator = await self._run(type_name, external_id_field, payloads, principal)
        except (ConfigurationError, AuthorizationError) as e:
            self.stats.record_rejection(len(payloads))
            logger.error(f"Batch of {len(payloads)} {type_name} records rejected: {e.message}")
            raise

        summary = aggregator.summary()
        self.stats.record_batch(summary["total"], summary["succeeded"])
        logger.info(
            f"Finished {type_name} batch: {summary['succeeded']} succeeded, {summary['failed']} failed of {summary['total']}"
        )
        return aggregator.results()

    async def _run(
        self,
        type_name: str,
        external_id_field: str,
        payloads: List[Dict[str, Any]],
        principal: Principal,
    ) -> ResultAggregator:
        aggregator = ResultAggregator(len(payloads))
        if not payloads:
            return aggregator

        # Configuration problems abort the batch before any record is touched
        before_handler = self.registry.resolve(type_name, HandlerPhase.BEFORE)
        after_handler = self.registry.resolve(type_name, HandlerPhase.AFTER)

        relationship_names = list(dict.fromkeys(
            key for payload in payloads for key, value in payload.items() if is_child_collection(value)
        ))
        relationships = await self.resolver.resolve(type_name, relationship_names)
        child_types = {name: rel.child_type for name, rel in relationships.items()}
        records = [Record.from_payload(type_name, payload, child_types) for payload in payloads]

        await self._authorize(type_name, records, relationships, principal)

        for index, record in enumerate(records):
            unknown = [name for name in record.list_child_collections() if name not in relationships]
            if unknown:
                aggregator.fail(index, f"Unknown child relationship(s) on {type_name}: {', '.join(unknown)}.")
            else:
                aggregator.advance(index, RecordState.VALIDATED)

        await self._apply_before(before_handler, records, aggregator)
        await self._upsert_parents(type_name, external_id_field, records, aggregator)
        await self._insert_children(relationships, records, aggregator)
        await self._apply_after(after_handler, records, aggregator)

        aggregator.advance_all(aggregator.active_indexes(RecordState.AFTER_APPLIED), RecordState.DONE)
        return aggregator

    async def _authorize(
        self,
        type_name: str,
        records: List[Record],
        relationships: Dict[str, RelationshipSchema],
        principal: Principal,
    ) -> None:
        """
        One check per distinct type. Parents are upserted (create and update);
        children are inserted (create). A type that is both parent and child
        is checked once for the union of its fields and operations.
        """
        fields: Dict[str, List[str]] = {type_name: [name for record in records for name in record.field_names]}
        operations: Dict[str, set] = {type_name: {CREATE, UPDATE}}
        for name, rel in relationships.items():
            type_fields = fields.setdefault(rel.child_type, [])
            for record in records:
                for child in record.get_children(name):
                    type_fields.extend(child.field_names)
            type_fields.append(rel.parent_field)
            operations.setdefault(rel.child_type, set()).add(CREATE)

        for checked_type, type_fields in fields.items():
            ops = tuple(op for op in (CREATE, UPDATE) if op in operations[checked_type])
            await self.guard.authorize(checked_type, list(dict.fromkeys(type_fields)), principal, ops)

    async def _apply_before(self, handler: Any, records: List[Record], aggregator: ResultAggregator) -> None:
        indexes = aggregator.active_indexes(RecordState.VALIDATED)
        if handler is not None and indexes:
            batch = [records[index] for index in indexes]
            try:
                returned = await invoke_handler(handler, HandlerPhase.BEFORE, batch)
                _check_before_contract(batch, returned)
            except Exception as e:
                # Only the records passed to the handler fail
                logger.error(f"Before handler {handler.__class__.__name__} failed: {e}", exc_info=True)
                aggregator.fail_all(indexes, f"Before handler failed: {e}")

        for index in aggregator.active_indexes(RecordState.VALIDATED):
            record = records[index]
            if record.has_errors:
                aggregator.fail(index, "; ".join(record.errors))
            else:
                aggregator.advance(index, RecordState.BEFORE_APPLIED)

    async def _upsert_parents(
        self, type_name: str, external_id_field: str, records: List[Record], aggregator: ResultAggregator
    ) -> None:
        indexes = []
        for index in aggregator.active_indexes(RecordState.BEFORE_APPLIED):
            value = records[index].get_field(external_id_field)
            if value is None or value == "":
                aggregator.fail(index, f"Missing value for external ID field {external_id_field}.")
            else:
                indexes.append(index)
        if not indexes:
            return

        results = await self._save(
            self.store.upsert(type_name, external_id_field, [records[index].fields for index in indexes]),
            expected=len(indexes),
        )
        for index, result in zip(indexes, results):
            if result.success:
                records[index].id = result.id
                aggregator.set_record_id(index, result.id)
                aggregator.advance(index, RecordState.UPSERTED)
            else:
                aggregator.fail(index, result.error_message)

    async def _insert_children(
        self, relationships: Dict[str, RelationshipSchema], records: List[Record], aggregator: ResultAggregator
    ) -> None:
        parents = aggregator.active_indexes(RecordState.UPSERTED)
        failures: Dict[int, List[str]] = defaultdict(list)

        for name, rel in relationships.items():
            owners = []
            children: List[Record] = []
            for index in parents:
                for position, child in enumerate(records[index].get_children(name)):
                    child.set_field(rel.parent_field, records[index].id)
                    owners.append((index, position))
                    children.append(child)
            if not children:
                continue

            results = await self._save(
                self.store.insert(rel.child_type, [child.fields for child in children]),
                expected=len(children),
            )
            for (index, position), child, result in zip(owners, children, results):
                if result.success:
                    child.id = result.id
                else:
                    failures[index].append(f"{name}[{position}]: {result.error_message}")

        for index in parents:
            if failures.get(index):
                aggregator.fail(index, "Child insert failed: " + "; ".join(failures[index]))
            else:
                aggregator.advance(index, RecordState.CHILDREN_INSERTED)

    async def _apply_after(self, handler: Any, records: List[Record], aggregator: ResultAggregator) -> None:
        indexes = aggregator.active_indexes(RecordState.CHILDREN_INSERTED)
        if handler is not None and indexes:
            batch = [records[index] for index in indexes]
            for record in batch:
                record.freeze()
            try:
                await invoke_handler(handler, HandlerPhase.AFTER, batch)
            except Exception as e:
                # Already committed; no rollback
                logger.error(f"After handler {handler.__class__.__name__} failed: {e}", exc_info=True)
                aggregator.fail_all(indexes, f"After handler failed: {e}")

        aggregator.advance_all(aggregator.active_indexes(RecordState.CHILDREN_INSERTED), RecordState.AFTER_APPLIED)

    async def _save(self, call, expected: int) -> List[SaveResult]:
        """Awaits a store call; a call that fails as a whole fails each of its items."""
        try:
            results = await call
        except PersistenceError as e:
            logger.error(f"Store call failed: {e.message}")
            return [SaveResult(success=False, errors=[e.message]) for _ in range(expected)]
        if len(results) != expected:
            message = f"Store returned {len(results)} results for {expected} records."
            logger.error(message)
            return [SaveResult(success=False, errors=[message]) for _ in range(expected)]
        return results


def _check_before_contract(batch: List[Record], returned: Any) -> None:
    """Before handlers may change fields but must return the same records in the same order."""
    if returned is None:
        return
    returned = list(returned)
    if len(returned) != len(batch) or any(a is not b for a, b in zip(batch, returned)):
        raise HandlerError(
            f"Before handler returned {len(returned)} records for {len(batch)}; it must return the same records in the same order."
        )
