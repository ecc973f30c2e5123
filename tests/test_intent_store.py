"""
Intent store tests: lifecycle mutations, queries, blob envelope, capacity
eviction, optimistic concurrency and alert hooks.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from treasury_service.intent_store import (
    MAX_WRITE_ATTEMPTS,
    TRANSFER_INTENTS_KEY,
    IntentStore,
    IntentStoreConflict,
)
from treasury_service.kv_store import MemoryKeyValueStore
from treasury_service.schemas import (
    ExecutionBackendName,
    ExecutionRecord,
    IntentStatus,
)

from fakes import RecordingAlerts, make_intent

pytestmark = pytest.mark.asyncio


def iso_ago(**delta) -> str:
    return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat(timespec="milliseconds")


def execution(message="done") -> ExecutionRecord:
    return ExecutionRecord(backend=ExecutionBackendName.VULTISIG, message=message, executed_by="tester")


class ConflictingKV(MemoryKeyValueStore):
    """compare_and_set loses the race `failures` times before succeeding."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def compare_and_set(self, key, expected, value):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            return False
        return await super().compare_and_set(key, expected, value)


class InterleavingKV(MemoryKeyValueStore):
    """Runs `hook` right before the next compare_and_set, like a writer in another process."""

    def __init__(self):
        super().__init__()
        self.hook = None

    async def compare_and_set(self, key, expected, value):
        hook, self.hook = self.hook, None
        if hook is not None:
            await hook()
        return await super().compare_and_set(key, expected, value)


class ExplodingAlerts:
    def enqueue(self, event, intent, previous_status=None):
        raise RuntimeError("telegram is down")


# ============================================================================
# APPEND / QUERY
# ============================================================================

class TestAppendAndQuery:

    async def test_append_then_get_by_id(self, kv):
        store = IntentStore(kv)
        intent = make_intent()
        await store.append(intent)

        stored = await store.get_by_id(intent.id)
        assert stored.model_dump() == intent.model_dump()
        assert stored.policy.reasons == ("recipient_not_allowlisted",)

    async def test_get_unknown_id_returns_none(self, kv):
        store = IntentStore(kv)
        await store.append(make_intent())
        assert await store.get_by_id("missing") is None

    async def test_blob_envelope_is_versioned_and_newest_first(self, kv):
        store = IntentStore(kv)
        first, second = make_intent(), make_intent()
        await store.append(first)
        await store.append(second)

        blob = json.loads(await kv.get(TRANSFER_INTENTS_KEY))
        assert blob["version"] == 2
        assert [i["id"] for i in blob["intents"]] == [second.id, first.id]

    async def test_append_with_existing_id_replaces(self, kv):
        store = IntentStore(kv)
        intent = make_intent(amount_cents=100)
        await store.append(intent)
        await store.append(intent.model_copy(update={"amount_cents": 200}))

        intents = await store.list()
        assert len(intents) == 1
        assert intents[0].amount_cents == 200

    async def test_list_sorted_by_created_at_desc(self, kv):
        store = IntentStore(kv)
        old = make_intent(created_at=iso_ago(hours=3))
        new = make_intent(created_at=iso_ago(minutes=1))
        mid = make_intent(created_at=iso_ago(hours=1))
        for intent in (old, new, mid):
            await store.append(intent)

        assert [i.id for i in await store.list()] == [new.id, mid.id, old.id]

    async def test_list_filters_by_status_and_limits(self, kv):
        store = IntentStore(kv)
        await store.append(make_intent(status=IntentStatus.APPROVED))
        for _ in range(3):
            await store.append(make_intent(status=IntentStatus.PENDING_APPROVAL))

        pending = await store.list(status=IntentStatus.PENDING_APPROVAL)
        assert len(pending) == 3
        assert all(i.status == IntentStatus.PENDING_APPROVAL for i in pending)
        assert len(await store.list(limit=2)) == 2
        # limit is floored at one
        assert len(await store.list(limit=0)) == 1


# ============================================================================
# MUTATIONS
# ============================================================================

class TestMutations:

    async def test_update_unknown_id_returns_none(self, kv):
        store = IntentStore(kv)
        assert await store.update("missing", lambda i: i) is None
        assert await store.approve("missing", "op") is None
        assert await store.reject("missing", "op", "no") is None
        assert await store.set_execution("missing", IntentStatus.EXECUTED, execution()) is None

    async def test_update_does_not_touch_stored_copy_until_commit(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent())

        def mutator(current):
            current.reason = "changed"
            return current

        updated = await store.update(intent.id, mutator)
        assert updated.reason == "changed"
        assert intent.reason == "top up"
        assert (await store.get_by_id(intent.id)).reason == "changed"

    async def test_approve_pending(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent())

        approved = await store.approve(intent.id, "creator-cli", note="looks fine")
        assert approved.status == IntentStatus.APPROVED
        assert len(approved.approvals) == 1
        assert approved.approvals[0].approved_by == "creator-cli"
        assert approved.approvals[0].note == "looks fine"

    async def test_approve_executed_keeps_status(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent(status=IntentStatus.EXECUTED))

        again = await store.approve(intent.id, "creator-cli")
        assert again.status == IntentStatus.EXECUTED
        assert len(again.approvals) == 1

    async def test_approve_submitted_keeps_status(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent(status=IntentStatus.SUBMITTED))
        assert (await store.approve(intent.id, "creator-cli")).status == IntentStatus.SUBMITTED

    async def test_reject(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent())

        rejected = await store.reject(intent.id, "creator-cli", "unknown recipient")
        assert rejected.status == IntentStatus.REJECTED
        assert rejected.rejection.reason == "unknown recipient"

    async def test_set_execution(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent(status=IntentStatus.APPROVED))

        done = await store.set_execution(intent.id, IntentStatus.EXECUTED, execution("signed"))
        assert done.status == IntentStatus.EXECUTED
        assert done.execution.message == "signed"
        assert done.execution.backend == ExecutionBackendName.VULTISIG

    async def test_set_execution_rejects_non_execution_status(self, kv):
        store = IntentStore(kv)
        intent = await store.append(make_intent(status=IntentStatus.APPROVED))
        with pytest.raises(ValueError):
            await store.set_execution(intent.id, IntentStatus.APPROVED, execution())


# ============================================================================
# SPEND WINDOW
# ============================================================================

class TestSpendWindow:

    async def test_sum_counts_recent_submitted_and_executed(self, kv):
        store = IntentStore(kv)
        await store.append(make_intent(status=IntentStatus.EXECUTED, amount_cents=100))
        await store.append(make_intent(status=IntentStatus.SUBMITTED, amount_cents=50))
        await store.append(make_intent(status=IntentStatus.APPROVED, amount_cents=1_000))
        await store.append(make_intent(status=IntentStatus.FAILED, amount_cents=700))
        await store.append(make_intent(status=IntentStatus.PENDING_APPROVAL, amount_cents=900))
        await store.append(make_intent(status=IntentStatus.EXECUTED, amount_cents=70, created_at=iso_ago(hours=25)))

        assert await store.sum_spend_last_24h() == 150

    async def test_window_is_measured_from_created_at(self, kv):
        store = IntentStore(kv)
        await store.append(make_intent(status=IntentStatus.EXECUTED, amount_cents=40, created_at=iso_ago(hours=23)))

        assert await store.sum_spend_last_24h() == 40
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert await store.sum_spend_last_24h(now=later) == 0


# ============================================================================
# PERSISTENCE FORMAT
# ============================================================================

class TestPersistedBlob:

    async def test_corrupt_blob_reads_as_empty(self, caplog):
        kv = MemoryKeyValueStore({TRANSFER_INTENTS_KEY: "{not json"})
        store = IntentStore(kv)
        with caplog.at_level(logging.WARNING):
            assert await store.list() == []
        assert "not valid JSON" in caplog.text

        # the next write replaces the corrupt blob
        intent = await store.append(make_intent())
        assert [i.id for i in await store.list()] == [intent.id]

    async def test_unexpected_shape_reads_as_empty(self):
        kv = MemoryKeyValueStore({TRANSFER_INTENTS_KEY: json.dumps({"rows": []})})
        assert await IntentStore(kv).list() == []

    async def test_invalid_entries_are_skipped(self, caplog):
        good = make_intent()
        kv = MemoryKeyValueStore(
            {TRANSFER_INTENTS_KEY: json.dumps({"version": 3, "intents": [good.to_payload(), {"id": "broken"}]})}
        )
        store = IntentStore(kv)

        with caplog.at_level(logging.WARNING):
            assert [i.id for i in await store.list()] == [good.id]
        assert "broken" in caplog.text

        added = await store.append(make_intent())
        blob = json.loads(await kv.get(TRANSFER_INTENTS_KEY))
        assert blob["version"] == 4
        assert [i["id"] for i in blob["intents"]] == [added.id, good.id]

    async def test_snake_case_entries_still_read(self):
        intent = make_intent(amount_cents=321)
        kv = MemoryKeyValueStore({TRANSFER_INTENTS_KEY: json.dumps([intent.model_dump(mode="json")])})
        stored = await IntentStore(kv).get_by_id(intent.id)
        assert stored.amount_cents == 321
        assert stored.to_address == intent.to_address

    async def test_legacy_bare_list_is_upgraded_on_write(self):
        intent = make_intent()
        kv = MemoryKeyValueStore({TRANSFER_INTENTS_KEY: json.dumps([intent.to_payload()])})
        store = IntentStore(kv)

        assert (await store.get_by_id(intent.id)).id == intent.id
        await store.approve(intent.id, "creator-cli")

        blob = json.loads(await kv.get(TRANSFER_INTENTS_KEY))
        assert blob["version"] == 1
        assert blob["intents"][0]["status"] == "approved"

    async def test_payload_omits_unset_fields(self, kv):
        store = IntentStore(kv)
        await store.append(make_intent(reason=None))
        stored = json.loads(await kv.get(TRANSFER_INTENTS_KEY))["intents"][0]
        assert "reason" not in stored
        assert "execution" not in stored
        assert stored["approvals"] == []


class TestCapacity:

    async def test_oldest_appended_are_evicted(self, kv, caplog):
        store = IntentStore(kv, max_intents=3)
        intents = [make_intent() for _ in range(5)]
        with caplog.at_level(logging.WARNING):
            for intent in intents:
                await store.append(intent)

        remaining = {i.id for i in await store.list(limit=10)}
        assert remaining == {i.id for i in intents[2:]}
        assert "over capacity" in caplog.text

    async def test_eviction_ignores_status(self, kv):
        store = IntentStore(kv, max_intents=1)
        pending = await store.append(make_intent(status=IntentStatus.PENDING_APPROVAL))
        await store.append(make_intent(status=IntentStatus.EXECUTED))
        assert await store.get_by_id(pending.id) is None


# ============================================================================
# CONCURRENCY
# ============================================================================

class TestOptimisticConcurrency:

    async def test_lost_races_are_retried(self):
        kv = ConflictingKV(failures=2)
        store = IntentStore(kv)
        intent = await store.append(make_intent())

        assert kv.attempts == 3
        assert (await store.get_by_id(intent.id)).id == intent.id

    async def test_gives_up_after_max_attempts(self):
        kv = ConflictingKV(failures=MAX_WRITE_ATTEMPTS)
        store = IntentStore(kv)
        with pytest.raises(IntentStoreConflict):
            await store.append(make_intent())
        assert kv.attempts == MAX_WRITE_ATTEMPTS

    async def test_concurrent_writer_is_not_clobbered(self):
        kv = InterleavingKV()
        ours, theirs = IntentStore(kv), IntentStore(kv)
        mine, other = make_intent(), make_intent()

        kv.hook = lambda: theirs.append(other)
        await ours.append(mine)

        ids = {i.id for i in await ours.list(limit=10)}
        assert ids == {mine.id, other.id}

    async def test_concurrent_update_keeps_both_changes(self):
        kv = InterleavingKV()
        ours, theirs = IntentStore(kv), IntentStore(kv)
        first = await ours.append(make_intent())
        second = await ours.append(make_intent())

        kv.hook = lambda: theirs.reject(second.id, "op", "no")
        await ours.approve(first.id, "op")

        assert (await ours.get_by_id(first.id)).status == IntentStatus.APPROVED
        assert (await ours.get_by_id(second.id)).status == IntentStatus.REJECTED


# ============================================================================
# ALERT HOOKS
# ============================================================================

class TestAlertHooks:

    async def test_append_and_status_change_enqueue_alerts(self, kv):
        alerts = RecordingAlerts()
        store = IntentStore(kv, alerts=alerts)
        intent = await store.append(make_intent())
        await store.approve(intent.id, "creator-cli")

        assert alerts.events == [
            ("request_created", intent.id, None),
            ("status_changed", intent.id, IntentStatus.PENDING_APPROVAL),
        ]

    async def test_no_alert_when_status_unchanged(self, kv):
        alerts = RecordingAlerts()
        store = IntentStore(kv, alerts=alerts)
        intent = await store.append(make_intent(status=IntentStatus.APPROVED))
        await store.approve(intent.id, "second-operator")

        assert [e[0] for e in alerts.events] == ["request_created"]

    async def test_alert_failure_does_not_fail_mutation(self, kv, caplog):
        store = IntentStore(kv, alerts=ExplodingAlerts())
        with caplog.at_level(logging.ERROR):
            intent = await store.append(make_intent())
            approved = await store.approve(intent.id, "creator-cli")

        assert approved.status == IntentStatus.APPROVED
        assert "failed to queue" in caplog.text
