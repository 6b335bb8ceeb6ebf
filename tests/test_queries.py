from datetime import datetime, timedelta, timezone

import pytest

from conftest import RecordingNotifier, make_capability

from loanflow.schemas.identity import Role
from loanflow.schemas.query import QueryStatus
from loanflow.services.errors import NotFound, PermissionDenied, ValidationFailed
from loanflow.services.queries import QueryThreadEngine
from loanflow.services.record_store import TABLE_FILE_AUDIT_LOG, RecordStoreError

FILE_ID = "SF0001"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def engine(store, notifier, clock) -> QueryThreadEngine:
    return QueryThreadEngine(store, notifier, clock=clock)


async def _raise(engine, role=Role.KAM, target=Role.CLIENT, message="Please share bank statements"):
    return await engine.create_query(
        file_id=FILE_ID,
        capability=make_capability(role),
        message=message,
        target_role=target,
    )


@pytest.mark.asyncio
async def test_create_query_writes_tagged_row_and_notifies(engine, store, notifier):
    root = await _raise(engine)

    row = store.tables[TABLE_FILE_AUDIT_LOG][root.id]
    assert row["Details/Message"] == "[[status:open]] Please share bank statements"
    assert row["Resolved"] == "False"
    assert row["Target User/Role"] == "client"
    assert root.is_root
    assert root.author_id == "kam@lender.test"
    assert notifier.sent[0][0] == "client"


@pytest.mark.asyncio
async def test_reply_threads_under_root(engine, clock):
    root = await _raise(engine)
    clock.now += timedelta(minutes=1)
    reply = await engine.reply_to_query(
        root_id=root.id, file_id=FILE_ID, capability=make_capability(Role.CLIENT), message="Uploaded"
    )
    clock.now += timedelta(minutes=1)
    await engine.reply_to_query(
        root_id=reply.id, file_id=FILE_ID, capability=make_capability(Role.KAM), message="Thanks"
    )

    thread = await engine.get_thread(root.id)
    assert thread.root.id == root.id
    assert [node.message for node in thread.replies] == ["Uploaded", "Thanks"]
    assert all(node.parent_id == root.id for node in thread.replies)


@pytest.mark.asyncio
async def test_reply_to_missing_parent(engine):
    with pytest.raises(NotFound) as exc_info:
        await engine.reply_to_query(
            root_id="QUERY-missing", file_id=FILE_ID, capability=make_capability(Role.CLIENT), message="hi"
        )
    assert exc_info.value.message == "Parent query not found"


@pytest.mark.asyncio
async def test_author_resolves_with_two_writes(engine, store):
    root = await _raise(engine)
    writes_before = len(store.writes_to(TABLE_FILE_AUDIT_LOG))

    resolved = await engine.resolve_query(root.id, FILE_ID, make_capability(Role.KAM), "All documents in")

    assert resolved.status == QueryStatus.RESOLVED
    writes = store.writes_to(TABLE_FILE_AUDIT_LOG)[writes_before:]
    assert len(writes) == 2
    assert writes[0]["id"] == root.id
    assert writes[0]["Details/Message"].startswith("[[status:resolved]]")
    assert writes[0]["Resolved"] == "True"
    assert writes[1]["Action/Event Type"] == "resolve_query"
    assert writes[1]["Details/Message"] == f"Query {root.id} resolved: All documents in"


@pytest.mark.asyncio
async def test_non_author_cannot_resolve_even_with_same_role(engine):
    root = await _raise(engine)
    other_kam = make_capability(Role.KAM, email="rohan@lender.test", kam_id="rec-kam-2")
    with pytest.raises(PermissionDenied):
        await engine.resolve_query(root.id, FILE_ID, other_kam)
    with pytest.raises(PermissionDenied):
        await engine.resolve_query(root.id, FILE_ID, make_capability(Role.CREDIT_TEAM))


@pytest.mark.asyncio
async def test_author_comparison_is_case_sensitive(engine):
    root = await _raise(engine)
    with pytest.raises(PermissionDenied):
        await engine.resolve_query(root.id, FILE_ID, make_capability(Role.KAM, email="KAM@lender.test"))


@pytest.mark.asyncio
async def test_resolving_twice_is_a_no_op(engine, store):
    root = await _raise(engine)
    await engine.resolve_query(root.id, FILE_ID, make_capability(Role.KAM))
    writes_before = len(store.upserts)
    again = await engine.resolve_query(root.id, FILE_ID, make_capability(Role.KAM))
    assert again.status == QueryStatus.RESOLVED
    assert len(store.upserts) == writes_before


@pytest.mark.asyncio
async def test_resolve_through_reply_id_targets_root(engine):
    root = await _raise(engine)
    reply = await engine.reply_to_query(
        root_id=root.id, file_id=FILE_ID, capability=make_capability(Role.CLIENT), message="Done"
    )
    resolved = await engine.resolve_query(reply.id, FILE_ID, make_capability(Role.KAM))
    assert resolved.id == root.id


@pytest.mark.asyncio
async def test_resolve_rejects_other_file(engine):
    root = await _raise(engine)
    with pytest.raises(NotFound):
        await engine.resolve_query(root.id, "SF9999", make_capability(Role.KAM))


@pytest.mark.asyncio
async def test_resolve_write_failure_propagates(engine, store):
    root = await _raise(engine)
    store.fail_tables.add(TABLE_FILE_AUDIT_LOG)
    with pytest.raises(RecordStoreError):
        await engine.resolve_query(root.id, FILE_ID, make_capability(Role.KAM))


@pytest.mark.asyncio
async def test_reopen_is_author_only(engine):
    root = await _raise(engine)
    kam = make_capability(Role.KAM)
    with pytest.raises(ValidationFailed):
        await engine.reopen_query(root.id, FILE_ID, kam)
    await engine.resolve_query(root.id, FILE_ID, kam)
    with pytest.raises(PermissionDenied):
        await engine.reopen_query(root.id, FILE_ID, make_capability(Role.CLIENT))
    reopened = await engine.reopen_query(root.id, FILE_ID, kam, "Statement is blurred")
    assert reopened.status == QueryStatus.OPEN


@pytest.mark.asyncio
async def test_list_threads_respects_visibility(engine):
    await _raise(engine, role=Role.KAM, target=Role.CLIENT, message="for client")
    await _raise(engine, role=Role.CREDIT_TEAM, target=Role.KAM, message="for kam")

    client_threads = await engine.list_threads(FILE_ID, make_capability(Role.CLIENT))
    kam_threads = await engine.list_threads(FILE_ID, make_capability(Role.KAM))

    assert [thread.root.message for thread in client_threads] == ["for client"]
    assert len(kam_threads) == 2


@pytest.mark.asyncio
async def test_edit_within_window_only(engine, clock):
    root = await _raise(engine)
    kam = make_capability(Role.KAM)

    edited = await engine.update_query(root.id, kam, "Please share 6 months of statements")
    assert edited.message == "Please share 6 months of statements"

    with pytest.raises(PermissionDenied):
        await engine.update_query(root.id, make_capability(Role.CLIENT), "nope")

    clock.now += timedelta(minutes=16)
    with pytest.raises(ValidationFailed):
        await engine.update_query(root.id, kam, "too late")


@pytest.mark.asyncio
async def test_notifier_failure_does_not_block_query(store):
    engine = QueryThreadEngine(store, RecordingNotifier(fail=True))
    root = await _raise(engine)
    assert root.id in store.tables[TABLE_FILE_AUDIT_LOG]


def _seed_untagged_query(store, **fields):
    row = {
        "id": "QUERY-LEGACY",
        "File": FILE_ID,
        "Actor": "",
        "Action/Event Type": "query_raised",
        "Details/Message": "Please share PAN",
        "Target User/Role": "client",
        "Timestamp": "2026-02-20T09:00:00+00:00",
        **fields,
    }
    store.tables.setdefault(TABLE_FILE_AUDIT_LOG, {})[row["id"]] = row
    return row


@pytest.mark.asyncio
async def test_untagged_query_row_is_listed_and_resolvable(engine, store):
    _seed_untagged_query(store)
    kam = make_capability(Role.KAM)

    threads = await engine.list_threads(FILE_ID, kam)
    assert [thread.root.id for thread in threads] == ["QUERY-LEGACY"]
    assert threads[0].root.status == QueryStatus.OPEN
    assert threads[0].root.message == "Please share PAN"

    resolved = await engine.resolve_query("QUERY-LEGACY", FILE_ID, kam)
    assert resolved.status == QueryStatus.RESOLVED
    assert store.tables[TABLE_FILE_AUDIT_LOG]["QUERY-LEGACY"]["Details/Message"] == (
        "[[status:resolved]] Please share PAN"
    )

    # the resolution event row is not a thread of its own
    threads = await engine.list_threads(FILE_ID, kam)
    assert [thread.root.id for thread in threads] == ["QUERY-LEGACY"]
    assert threads[0].replies == []


@pytest.mark.asyncio
async def test_rows_without_query_markers_are_not_queries(engine, store):
    _seed_untagged_query(store, **{"Action/Event Type": "status_change", "Details/Message": "Status moved"})

    assert await engine.list_threads(FILE_ID, make_capability(Role.KAM)) == []
    with pytest.raises(NotFound):
        await engine.resolve_query("QUERY-LEGACY", FILE_ID, make_capability(Role.KAM))


@pytest.mark.asyncio
async def test_authorless_query_can_be_resolved_and_reopened_by_any_role(engine, store):
    _seed_untagged_query(store)

    resolved = await engine.resolve_query("QUERY-LEGACY", FILE_ID, make_capability(Role.KAM))
    assert resolved.status == QueryStatus.RESOLVED
    assert resolved.author_id == ""

    reopened = await engine.reopen_query("QUERY-LEGACY", FILE_ID, make_capability(Role.CREDIT_TEAM), "Still missing")
    assert reopened.status == QueryStatus.OPEN
    assert store.tables[TABLE_FILE_AUDIT_LOG]["QUERY-LEGACY"]["Resolved"] == "False"


@pytest.mark.asyncio
async def test_authored_query_stays_author_only(engine):
    root = await _raise(engine, role=Role.KAM)

    with pytest.raises(PermissionDenied):
        await engine.resolve_query(root.id, FILE_ID, make_capability(Role.CREDIT_TEAM))


@pytest.mark.asyncio
async def test_edit_rejects_query_from_another_file(engine):
    root = await _raise(engine)

    with pytest.raises(NotFound):
        await engine.update_query(root.id, make_capability(Role.KAM), "moved", file_id="SF0002")
