# data_gateway/tests/test_bulk_processor.py
import pytest

from data_gateway.core.exceptions import AuthorizationError, ConfigurationError
from data_gateway.core.schemas import RelationshipSchema, ResultStatus
from data_gateway.gateway.handlers import HandlerRegistry
from data_gateway.gateway.permissions import DescribePermissionChecker, PermissionGuard
from data_gateway.gateway.processor import BulkProcessor
from data_gateway.gateway.schema import RelationshipResolver
from data_gateway.tests.fakes import FakeDescribeSource, InMemoryRecordStore, default_describes, handler_mapping, make_describe
from data_gateway.tests.sample_handlers import RecordingAfterHandler
from data_gateway.utils.stats import GatewayStats

pytestmark = pytest.mark.asyncio

EXT_ID = "External_Id__c"


def accounts(count: int, **extra):
    return [{"Name": f"Account {i}", EXT_ID: f"ACC-{i}", **extra} for i in range(count)]


def statuses(results):
    return [result.status for result in results]


# --- Basic batches ---

async def test_batch_without_handlers_succeeds(make_processor, store, principal):
    processor = make_processor()

    results = await processor.process("Account", EXT_ID, accounts(3), principal)

    assert [r.index for r in results] == [0, 1, 2]
    assert statuses(results) == [ResultStatus.SUCCESS] * 3
    assert all(r.id for r in results)
    assert len({r.id for r in results}) == 3
    assert all(r.message is None for r in results)
    assert store.calls == [("upsert", "Account", 3)]


async def test_empty_batch_returns_no_results(make_processor, store, principal):
    results = await make_processor().process("Account", EXT_ID, [], principal)

    assert results == []
    assert store.calls == []


async def test_every_index_reported_once_with_mixed_failures(make_processor, principal):
    payloads = [
        {"Name": "Good", EXT_ID: "A-1"},
        {EXT_ID: "A-2"},  # required Name missing at the store
        {"Name": "No external id"},
        {"Name": "Bad child", EXT_ID: "A-4", "Partners": [{"LastName": "x"}]},
        {"Name": "Also good", EXT_ID: "A-5"},
    ]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert len(results) == len(payloads)
    assert sorted(r.index for r in results) == list(range(len(payloads)))
    assert statuses(results) == [
        ResultStatus.SUCCESS, ResultStatus.ERROR, ResultStatus.ERROR, ResultStatus.ERROR, ResultStatus.SUCCESS
    ]


async def test_store_validation_failure_does_not_affect_siblings(make_processor, store, principal):
    payloads = accounts(3)
    del payloads[1]["Name"]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.SUCCESS, ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert "REQUIRED_FIELD_MISSING" in results[1].message
    assert results[1].id is None
    assert len(store.rows("Account")) == 2


async def test_missing_external_id_value_fails_before_persistence(make_processor, store, principal):
    payloads = [{"Name": "One", EXT_ID: ""}, {"Name": "Two", EXT_ID: "A-2"}]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert results[0].message == f"Missing value for external ID field {EXT_ID}."
    assert store.calls == [("upsert", "Account", 1)]


async def test_whole_upsert_call_failure_marks_each_record(describe_source, principal):
    store = InMemoryRecordStore(failing_types=["Account"])
    processor = BulkProcessor(
        store=store,
        guard=PermissionGuard(DescribePermissionChecker(describe_source)),
        registry=HandlerRegistry(),
        resolver=RelationshipResolver(None, describe_source),
        stats=GatewayStats(),
    )

    results = await processor.process("Account", EXT_ID, accounts(2), principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.ERROR]
    assert all("connection reset" in r.message for r in results)


# --- Handlers ---

async def test_no_handler_processes_like_noop_handlers(describe_source, principal):
    def build(store, mappings):
        return BulkProcessor(
            store=store,
            guard=PermissionGuard(DescribePermissionChecker(describe_source)),
            registry=HandlerRegistry(mappings),
            resolver=RelationshipResolver(None, describe_source),
            stats=GatewayStats(),
        )

    payloads = accounts(3)
    payloads[2]["Name"] = None
    plain_store, noop_store = InMemoryRecordStore({"Account": {"Name"}}), InMemoryRecordStore({"Account": {"Name"}})

    plain = await build(plain_store, []).process("Account", EXT_ID, payloads, principal)
    noop = await build(noop_store, [
        handler_mapping("Account", "NoOpBeforeHandler", "Before"),
        handler_mapping("Account", "NoOpAfterHandler", "After"),
    ]).process("Account", EXT_ID, payloads, principal)

    assert [(r.index, r.status, r.message) for r in plain] == [(r.index, r.status, r.message) for r in noop]
    assert plain_store.rows("Account") == noop_store.rows("Account")


async def test_before_handler_mutation_is_persisted(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "DefaultStatusHandler")])
    payloads = [
        {"Name": "Defaulted", EXT_ID: "A-1", "Status__c": None},
        {"Name": "Kept", EXT_ID: "A-2", "Status__c": "Active"},
    ]

    results = await processor.process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.SUCCESS, ResultStatus.SUCCESS]
    rows = {row[EXT_ID]: row for row in store.rows("Account")}
    assert rows["A-1"]["Status__c"] == "New"
    assert rows["A-2"]["Status__c"] == "Active"


async def test_async_before_handler_is_awaited(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "AsyncDefaultIndustryHandler")])

    await processor.process("Account", EXT_ID, accounts(1), principal)

    assert store.rows("Account")[0]["Industry"] == "Other"


async def test_before_handler_returning_none_mutates_in_place(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "InPlaceBeforeHandler")])

    results = await processor.process("Account", EXT_ID, [{"Name": "  Padded  ", EXT_ID: "A-1"}], principal)

    assert results[0].status == ResultStatus.SUCCESS
    assert store.rows("Account")[0]["Name"] == "Padded"


async def test_before_handler_error_excludes_records_from_persistence(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "FailingBeforeHandler")])

    results = await processor.process("Account", EXT_ID, accounts(2), principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.ERROR]
    assert results[0].message == "Before handler failed: lookup service unavailable"
    assert store.calls == []


async def test_before_handler_can_fail_single_record(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "RejectFlaggedHandler")])
    payloads = accounts(3)
    payloads[1]["Name"] = "reject"

    results = await processor.process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.SUCCESS, ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert results[1].message == "Name 'reject' is not allowed."
    assert store.calls == [("upsert", "Account", 2)]


@pytest.mark.parametrize("handler", ["ReorderingBeforeHandler", "DroppingBeforeHandler"])
async def test_before_handler_must_keep_records_and_order(make_processor, store, principal, handler):
    processor = make_processor([handler_mapping("Account", handler)])

    results = await processor.process("Account", EXT_ID, accounts(2), principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.ERROR]
    assert "same records in the same order" in results[0].message
    assert store.calls == []


async def test_after_handler_receives_completed_records_only(make_processor, principal):
    processor = make_processor([handler_mapping("Account", "RecordingAfterHandler", "After")])
    payloads = accounts(3)
    payloads[1]["Name"] = None

    results = await processor.process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.SUCCESS, ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert RecordingAfterHandler.calls == [[results[0].id, results[2].id]]


async def test_after_handler_error_downgrades_committed_records(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "FailingAfterHandler", "After")])

    results = await processor.process("Account", EXT_ID, accounts(2), principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.ERROR]
    assert results[0].message == "After handler failed: workflow trigger failed"
    # The data stays committed and the ids are still reported
    assert all(r.id for r in results)
    assert len(store.rows("Account")) == 2


async def test_after_handler_cannot_modify_records(make_processor, store, principal):
    processor = make_processor([handler_mapping("Account", "MutatingAfterHandler", "After")])

    results = await processor.process("Account", EXT_ID, accounts(1), principal)

    assert results[0].status == ResultStatus.ERROR
    assert "read-only" in results[0].message
    assert "Status__c" not in store.rows("Account")[0]


# --- Configuration errors ---

async def test_conflicting_handler_mappings_fail_fast(make_processor, store, describe_source, principal):
    processor = make_processor([
        handler_mapping("Account", "DefaultStatusHandler"),
        handler_mapping("Account", "NoOpBeforeHandler"),
    ])

    with pytest.raises(ConfigurationError) as exc_info:
        await processor.process("Account", EXT_ID, accounts(2), principal)

    assert "at most one is allowed" in exc_info.value.message
    assert store.calls == []
    assert describe_source.calls == []
    assert processor.stats.batches_rejected == 1


@pytest.mark.parametrize("handler, phase", [
    ("ExplodingInitHandler", "Before"),
    ("NotAHandler", "Before"),
    ("NoOpBeforeHandler", "After"),
    ("DoesNotExist", "After"),
])
async def test_unusable_handler_class_is_configuration_error(make_processor, store, principal, handler, phase):
    processor = make_processor([handler_mapping("Account", handler, phase)])

    with pytest.raises(ConfigurationError):
        await processor.process("Account", EXT_ID, accounts(1), principal)

    assert store.calls == []


async def test_mappings_for_other_types_are_ignored(make_processor, principal):
    processor = make_processor([
        handler_mapping("account", "FailingBeforeHandler"),
        handler_mapping("Contact", "FailingBeforeHandler"),
    ])

    results = await processor.process("Account", EXT_ID, accounts(1), principal)

    assert results[0].status == ResultStatus.SUCCESS


# --- Permissions ---

async def test_field_without_write_access_rejects_whole_batch(store, principal):
    describes = default_describes()
    describes["Account"] = make_describe(
        "Account", ["Name", EXT_ID, "Industry"], read_only_fields=["Industry"]
    )
    describe_source = FakeDescribeSource(describes)
    processor = BulkProcessor(
        store=store,
        guard=PermissionGuard(DescribePermissionChecker(describe_source)),
        registry=HandlerRegistry(),
        resolver=RelationshipResolver(None, describe_source),
        stats=GatewayStats(),
    )
    payloads = accounts(2)
    payloads[1]["Industry"] = "Energy"

    with pytest.raises(AuthorizationError) as exc_info:
        await processor.process("Account", EXT_ID, payloads, principal)

    assert exc_info.value.type_name == "Account"
    assert exc_info.value.field_name == "Industry"
    assert store.calls == []


async def test_child_type_without_create_access_rejects_whole_batch(store, principal):
    describes = default_describes()
    describes["Contact"] = make_describe("Contact", ["LastName", "AccountId"], createable=False)
    describe_source = FakeDescribeSource(describes)
    processor = BulkProcessor(
        store=store,
        guard=PermissionGuard(DescribePermissionChecker(describe_source)),
        registry=HandlerRegistry(),
        resolver=RelationshipResolver(None, describe_source),
        stats=GatewayStats(),
    )
    payloads = [{"Name": "Parent", EXT_ID: "A-1", "Contacts": [{"LastName": "Doe"}]}]

    with pytest.raises(AuthorizationError) as exc_info:
        await processor.process("Account", EXT_ID, payloads, principal)

    assert exc_info.value.type_name == "Contact"
    assert exc_info.value.field_name is None
    assert store.calls == []


class CountingChecker:
    def __init__(self):
        self.calls = []

    async def is_allowed(self, principal, type_name, field_name, operation):
        self.calls.append((type_name, field_name, operation))
        return True


async def test_permissions_checked_once_per_type_not_per_record(store, describe_source, principal):
    checker = CountingChecker()
    processor = BulkProcessor(
        store=store,
        guard=PermissionGuard(checker),
        registry=HandlerRegistry(),
        resolver=RelationshipResolver(None, describe_source),
        stats=GatewayStats(),
    )
    payloads = [
        {"Name": f"A{i}", EXT_ID: f"A-{i}", "Contacts": [{"LastName": f"C{i}"}, {"LastName": f"D{i}"}]}
        for i in range(25)
    ]

    await processor.process("Account", EXT_ID, payloads, principal)

    assert checker.calls.count(("Account", None, "create")) == 1
    assert checker.calls.count(("Account", "Name", "update")) == 1
    assert checker.calls.count(("Contact", "LastName", "create")) == 1
    assert ("Contact", "AccountId", "create") in checker.calls
    assert ("Contact", None, "update") not in checker.calls


# --- Children ---

async def test_children_are_linked_and_inserted_in_one_call_per_type(make_processor, store, principal):
    payloads = [
        {"Name": "A", EXT_ID: "A-1", "Contacts": [{"LastName": "One"}, {"LastName": "Two"}]},
        {"Name": "B", EXT_ID: "A-2", "Contacts": [{"LastName": "Three"}], "Opportunities": [{"Name": "Deal"}]},
    ]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.SUCCESS, ResultStatus.SUCCESS]
    assert store.calls == [("upsert", "Account", 2), ("insert", "Contact", 3), ("insert", "Opportunity", 1)]
    contacts = {row["LastName"]: row for row in store.rows("Contact")}
    assert contacts["One"]["AccountId"] == results[0].id
    assert contacts["Two"]["AccountId"] == results[0].id
    assert contacts["Three"]["AccountId"] == results[1].id
    assert store.rows("Opportunity")[0]["AccountId"] == results[1].id


async def test_child_failure_marks_parent_error_but_keeps_parent(make_processor, store, principal):
    payloads = [
        {"Name": "A", EXT_ID: "A-1", "Contacts": [{"LastName": "Ok"}, {"Email": "no-name@example.com"}]},
        {"Name": "B", EXT_ID: "A-2", "Contacts": [{"LastName": "Fine"}]},
    ]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert results[0].id is not None
    assert results[0].message.startswith("Child insert failed: Contacts[1]: REQUIRED_FIELD_MISSING")
    assert len(store.rows("Account")) == 2
    assert len(store.rows("Contact")) == 2


async def test_children_of_failed_parents_are_not_inserted(make_processor, store, principal):
    payloads = [
        {EXT_ID: "A-1", "Contacts": [{"LastName": "Orphan"}]},
        {"Name": "B", EXT_ID: "A-2", "Contacts": [{"LastName": "Kept"}]},
    ]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert [row["LastName"] for row in store.rows("Contact")] == ["Kept"]


async def test_unknown_relationship_fails_only_that_record(make_processor, store, principal):
    payloads = [
        {"Name": "A", EXT_ID: "A-1", "Partners": [{"LastName": "x"}]},
        {"Name": "B", EXT_ID: "A-2"},
    ]

    results = await make_processor().process("Account", EXT_ID, payloads, principal)

    assert statuses(results) == [ResultStatus.ERROR, ResultStatus.SUCCESS]
    assert results[0].message == "Unknown child relationship(s) on Account: Partners."
    assert store.calls == [("upsert", "Account", 1)]


async def test_declared_relationship_is_used(make_processor, store, principal):
    declared = {"Account": {"Team": RelationshipSchema(relationship_name="Team", child_type="Contact", parent_field="AccountId")}}
    processor = make_processor(declared=declared)
    payloads = [{"Name": "A", EXT_ID: "A-1", "Team": [{"LastName": "Lead"}]}]

    results = await processor.process("Account", EXT_ID, payloads, principal)

    assert results[0].status == ResultStatus.SUCCESS
    assert store.rows("Contact")[0]["AccountId"] == results[0].id


async def test_empty_child_collection_is_ignored(make_processor, store, principal):
    results = await make_processor().process(
        "Account", EXT_ID, [{"Name": "A", EXT_ID: "A-1", "Contacts": []}], principal
    )

    assert results[0].status == ResultStatus.SUCCESS
    assert store.calls == [("upsert", "Account", 1)]


async def test_resubmission_upserts_parents_but_duplicates_children(make_processor, store, principal):
    processor = make_processor()
    payloads = [
        {"Name": "A", EXT_ID: "A-1", "Contacts": [{"LastName": "One"}]},
        {"Name": "B", EXT_ID: "A-2", "Contacts": [{"LastName": "Two"}]},
    ]

    first = await processor.process("Account", EXT_ID, payloads, principal)
    second = await processor.process("Account", EXT_ID, payloads, principal)

    assert [r.id for r in first] == [r.id for r in second]
    assert len(store.rows("Account")) == 2
    # Children are insert-only, so the second submission adds new rows
    assert len(store.rows("Contact")) == 4


async def test_stats_are_recorded(make_processor, principal):
    processor = make_processor()
    payloads = accounts(3)
    payloads[0]["Name"] = None

    await processor.process("Account", EXT_ID, payloads, principal)

    assert processor.stats.batches_processed == 1
    assert processor.stats.records_received == 3
    assert processor.stats.records_succeeded == 2
    assert processor.stats.records_failed == 1


async def test_reference_set_through_external_id_is_authorized(make_processor, store, principal):
    payloads = [{"LastName": "Smith", "Email": "smith@example.com", "Account": {EXT_ID: "ACC-1"}}]

    results = await make_processor().process("Contact", "Email", payloads, principal)

    assert results[0].status == ResultStatus.SUCCESS
    assert store.rows("Contact")[0]["Account"] == {EXT_ID: "ACC-1"}


class SpyGuard(PermissionGuard):
    def __init__(self, checker):
        super().__init__(checker)
        self.authorized = []

    async def authorize(self, type_name, field_names, principal, operations=("create", "update")):
        field_names = list(field_names)
        self.authorized.append((type_name, tuple(operations), field_names))
        await super().authorize(type_name, field_names, principal, operations)


async def test_self_relationship_type_is_authorized_once(store, describe_source, principal):
    guard = SpyGuard(CountingChecker())
    declared = {"Account": {"ChildAccounts": RelationshipSchema(
        relationship_name="ChildAccounts", child_type="Account", parent_field="ParentId"
    )}}
    processor = BulkProcessor(
        store=store,
        guard=guard,
        registry=HandlerRegistry(),
        resolver=RelationshipResolver(declared, describe_source),
        stats=GatewayStats(),
    )
    payloads = [{"Name": "Parent", EXT_ID: "A-1", "ChildAccounts": [{"Name": "Child", "Industry": "Retail"}]}]

    results = await processor.process("Account", EXT_ID, payloads, principal)

    assert results[0].status == ResultStatus.SUCCESS
    assert [(type_name, ops) for type_name, ops, _ in guard.authorized] == [("Account", ("create", "update"))]
    assert guard.authorized[0][2] == ["Name", EXT_ID, "Industry", "ParentId"]
    assert store.rows("Account")[1]["ParentId"] == results[0].id
