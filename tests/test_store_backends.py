"""
Tests for both store backends.

Covers:
  - InMemoryStore
  - SqlStore (via SQLite for test portability)
  - Store factory
  - Session URL translation
  - Cross-DB model portability
"""
from datetime import timedelta

import pytest

from core.errors import ReconciliationMiss
from database.session import close_db, init_db, to_async_url
from database.store import SqlStore
from database.store_memory import InMemoryStore
from models.schemas import (
    MessageContext, MessageDirection, MessageRecord, MessageStatus, RevokedToken, ScheduleState,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    await init_db(f"sqlite:///{tmp_path / 'lessonrelay_test.db'}")
    try:
        yield SqlStore()
    finally:
        await close_db()


def _record(pid, clock, recipient="15550001", **kw):
    return MessageRecord(
        provider_message_id=pid,
        direction=kw.pop("direction", MessageDirection.OUTGOING),
        recipient=recipient,
        created_at=clock(),
        updated_at=clock(),
        **kw,
    )


def _context(pid, clock, recipient="15550001", course_id="C1", age_hours=0, ttl_hours=184):
    created = clock() - timedelta(hours=age_hours)
    return MessageContext(
        provider_message_id=pid,
        recipient=recipient,
        course_id=course_id,
        quiz_id="Q1",
        quiz_options=["A list", "A tuple"],
        correct_option="A tuple",
        created_at=created,
        expires_at=created + timedelta(hours=ttl_hours),
    )


# ──────────────────────────────────────────────────────────────
#  Message log
# ──────────────────────────────────────────────────────────────

class TestMessageLog:
    @pytest.mark.asyncio
    async def test_add_is_idempotent_on_provider_id(self, backend, clock):
        assert await backend.add_message(_record("wamid.1", clock, body="hi")) is True
        assert await backend.add_message(_record("wamid.1", clock, body="again")) is False
        assert (await backend.get_message("wamid.1")).body == "hi"

    @pytest.mark.asyncio
    async def test_status_moves_forward_only(self, backend, clock):
        await backend.add_message(_record("wamid.2", clock))
        assert await backend.update_status_forward("wamid.2", MessageStatus.DELIVERED, clock())
        assert await backend.update_status_forward("wamid.2", MessageStatus.READ, clock())
        assert not await backend.update_status_forward("wamid.2", MessageStatus.DELIVERED, clock())
        assert not await backend.update_status_forward("wamid.2", MessageStatus.FAILED, clock())
        assert (await backend.get_message("wamid.2")).status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_status_for_unknown_message(self, backend, clock):
        with pytest.raises(ReconciliationMiss):
            await backend.update_status_forward("wamid.nope", MessageStatus.READ, clock())

    @pytest.mark.asyncio
    async def test_recent_messages_oldest_first(self, backend, clock):
        for n in range(5):
            await backend.add_message(_record(f"wamid.h{n}", clock, body=f"m{n}"))
            clock.advance(10)
        await backend.add_message(_record("wamid.other", clock, recipient="15559999"))

        history = await backend.recent_messages("15550001", limit=3)
        assert [m.body for m in history] == ["m2", "m3", "m4"]


# ──────────────────────────────────────────────────────────────
#  Message contexts
# ──────────────────────────────────────────────────────────────

class TestContexts:
    @pytest.mark.asyncio
    async def test_save_and_get(self, backend, clock):
        await backend.save_context(_context("wamid.q1", clock))
        ctx = await backend.get_context("wamid.q1")
        assert ctx.quiz_options == ["A list", "A tuple"]
        assert ctx.expires_at == clock() + timedelta(hours=184)

    @pytest.mark.asyncio
    async def test_latest_live_context(self, backend, clock):
        await backend.save_context(_context("wamid.old", clock, age_hours=5))
        await backend.save_context(_context("wamid.new", clock, age_hours=1))
        await backend.save_context(_context("wamid.dead", clock, age_hours=0, ttl_hours=0))
        latest = await backend.latest_context("15550001", clock())
        assert latest.provider_message_id == "wamid.new"
        assert await backend.latest_context("15559999", clock()) is None

    @pytest.mark.asyncio
    async def test_latest_prefers_quiz_on_same_instant(self, backend, clock):
        template = _context("wamid.template", clock).model_copy(
            update={"quiz_id": None, "quiz_options": [], "correct_option": None},
        )
        await backend.save_context(_context("wamid.quiz", clock))
        await backend.save_context(template)
        latest = await backend.latest_context("15550001", clock())
        assert latest.provider_message_id == "wamid.quiz"

    @pytest.mark.asyncio
    async def test_delete_expired_or_aged(self, backend, clock):
        await backend.save_context(_context("keep", clock))
        await backend.save_context(_context("expired", clock, age_hours=3, ttl_hours=1))
        await backend.save_context(_context("aged", clock, age_hours=200, ttl_hours=500))
        await backend.save_context(_context("running", clock, course_id="C2", age_hours=200, ttl_hours=1))

        deleted = await backend.delete_contexts(
            clock(), created_before=clock() - timedelta(hours=184), keep_course_ids={"C2"},
        )
        assert deleted == 2
        assert await backend.get_context("keep") is not None
        assert await backend.get_context("running") is not None


# ──────────────────────────────────────────────────────────────
#  Schedules and cursors
# ──────────────────────────────────────────────────────────────

class TestSchedules:
    @pytest.mark.asyncio
    async def test_roundtrip_and_filter(self, backend, schedule):
        await backend.save_schedule(schedule)
        loaded = await backend.get_schedule("S1")
        assert loaded.course.name == "Python Basics"
        assert loaded.lessons[0].quiz.correct_option == "A tuple"
        assert loaded.start_date == schedule.start_date

        await backend.update_schedule_state("S1", ScheduleState.RUNNING)
        assert [s.id for s in await backend.list_schedules([ScheduleState.RUNNING])] == ["S1"]
        assert await backend.list_schedules([ScheduleState.SUSPENDED]) == []


class TestCursor:
    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, backend):
        first = await backend.create_cursor("S1")
        await backend.create_cursor("S1")
        cursor = await backend.get_cursor("S1")
        assert cursor.version == first.version == 0
        assert cursor.current_lesson_index == 0

    @pytest.mark.asyncio
    async def test_claim_requires_expected_version(self, backend, clock):
        await backend.create_cursor("S1")
        lease = clock() + timedelta(minutes=5)
        assert await backend.claim_cursor("S1", 7, "a", lease, clock()) is None
        claimed = await backend.claim_cursor("S1", 0, "a", lease, clock())
        assert claimed.lease_owner == "a"
        assert claimed.version == 1

    @pytest.mark.asyncio
    async def test_live_lease_blocks_other_claims(self, backend, clock):
        await backend.create_cursor("S1")
        await backend.claim_cursor("S1", 0, "a", clock() + timedelta(minutes=5), clock())
        assert await backend.claim_cursor("S1", 1, "b", clock() + timedelta(minutes=5), clock()) is None

        later = clock() + timedelta(minutes=6)
        stolen = await backend.claim_cursor("S1", 1, "b", later + timedelta(minutes=5), later)
        assert stolen.lease_owner == "b"

    @pytest.mark.asyncio
    async def test_advance_only_by_lease_owner(self, backend, clock):
        await backend.create_cursor("S1")
        await backend.claim_cursor("S1", 0, "a", clock() + timedelta(minutes=5), clock())
        assert await backend.advance_cursor("S1", "b", 1) is None

        advanced = await backend.advance_cursor("S1", "a", 1)
        assert advanced.current_lesson_index == 1
        assert advanced.lease_owner is None
        assert advanced.version == 2

    @pytest.mark.asyncio
    async def test_slot_advances_once(self, backend, clock):
        await backend.create_cursor("S1")
        lease = clock() + timedelta(minutes=5)
        await backend.claim_cursor("S1", 0, "a", lease, clock(), slot="2025-03-03T09:00")
        advanced = await backend.advance_cursor("S1", "a", 1, slot="2025-03-03T09:00")
        assert advanced.last_slot == "2025-03-03T09:00"

        assert await backend.claim_cursor(
            "S1", advanced.version, "b", lease, clock(), slot="2025-03-03T09:00",
        ) is None
        next_day = await backend.claim_cursor(
            "S1", advanced.version, "b", lease, clock(), slot="2025-03-04T09:00",
        )
        assert next_day.lease_owner == "b"
        assert next_day.last_slot == "2025-03-03T09:00"

    @pytest.mark.asyncio
    async def test_release_keeps_index(self, backend, clock):
        await backend.create_cursor("S1")
        await backend.claim_cursor("S1", 0, "a", clock() + timedelta(minutes=5), clock())
        assert await backend.release_cursor("S1", "a") is True
        assert await backend.release_cursor("S1", "a") is False
        cursor = await backend.get_cursor("S1")
        assert cursor.current_lesson_index == 0
        assert cursor.lease_owner is None

    @pytest.mark.asyncio
    async def test_mark_reminded_compare_and_swap(self, backend):
        await backend.create_cursor("S1")
        assert await backend.mark_reminded("S1", -1, 0) is True
        assert await backend.mark_reminded("S1", -1, 0) is False
        assert (await backend.get_cursor("S1")).last_reminded_index == 0


# ──────────────────────────────────────────────────────────────
#  Revoked tokens
# ──────────────────────────────────────────────────────────────

class TestTokens:
    @pytest.mark.asyncio
    async def test_revocation_until_expiry(self, backend, clock):
        await backend.revoke_token(RevokedToken(token_id="t1", expires_at=clock() + timedelta(hours=1)))
        assert await backend.is_token_revoked("t1", clock())
        assert not await backend.is_token_revoked("t2", clock())

        later = clock() + timedelta(hours=2)
        assert not await backend.is_token_revoked("t1", later)
        assert await backend.delete_expired_tokens(later) == 1


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "memory"}), InMemoryStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        assert isinstance(create_store({}), InMemoryStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        assert get_store() is s1


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("sqlite:///./test.db", "sqlite+aiosqlite:///./test.db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ])
    def test_translation(self, url, expected):
        assert to_async_url(url) == expected


# ──────────────────────────────────────────────────────────────
#  Cross-DB Models Portability
# ──────────────────────────────────────────────────────────────

class TestModelsPortability:
    def test_no_jsonb_anywhere(self):
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                assert type(col.type).__name__ != "JSONB", f"{table.name}.{col.name} uses JSONB"

    def test_all_tables_defined(self):
        from database.models import Base
        assert set(Base.metadata.tables.keys()) == {
            "messages", "message_contexts", "course_schedules", "lesson_cursors", "revoked_tokens",
        }
