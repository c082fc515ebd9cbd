"""
SQL escrow store tests
Runs the SQLAlchemy adapter against a throwaway SQLite file through aiosqlite
"""

from datetime import timedelta, timezone
from decimal import Decimal

import pytest

from conftest import T0, make_escrow, make_payment
from database import build_async_engine, build_session_factory, create_tables, to_async_url
from models import EscrowStatus, PaymentStatus
from services.escrow_store import SqlAlchemyEscrowStore, StoreError


@pytest.fixture
async def store(tmp_path):
    """Overrides the in-memory store so the service fixture runs on SQL too"""
    engine = build_async_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    await create_tables(engine)
    yield SqlAlchemyEscrowStore(build_session_factory(engine))
    await engine.dispose()


class TestAsyncUrl:
    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db/escrow", "postgresql+asyncpg://u:p@db/escrow"),
        ("postgresql://u:p@db/escrow?sslmode=require", "postgresql+asyncpg://u:p@db/escrow?ssl=require"),
        ("sqlite:///escrow.db", "sqlite+aiosqlite:///escrow.db"),
    ])
    def test_driver_mapping(self, url, expected):
        assert to_async_url(url) == expected

    def test_missing_url(self, monkeypatch):
        monkeypatch.setattr("database.Config.DATABASE_URL", None)
        with pytest.raises(ValueError, match="DATABASE_URL"):
            build_async_engine()


class TestRecords:
    async def test_payment_round_trip(self, store):
        payment = make_payment()
        payment.metadata = {"order": "A-17"}
        await store.put_payment(payment)

        loaded = await store.get_payment(payment.id)

        assert loaded.amount == Decimal("25.00")
        assert loaded.net_amount == Decimal("24.00")
        assert loaded.status == PaymentStatus.CONFIRMED
        assert loaded.created_at == T0
        assert loaded.created_at.tzinfo is not None
        assert loaded.metadata == {"order": "A-17"}

    async def test_escrow_round_trip_keeps_utc(self, store):
        await store.put_escrow(make_escrow("esc_a", rating_received=True, actual_rating=4.5))

        loaded = await store.get_escrow("esc_a")

        assert loaded.held_at == T0
        assert loaded.release_eligible_at == T0 + timedelta(hours=24)
        assert loaded.held_at.utcoffset() == timezone.utc.utcoffset(None)
        assert loaded.status == EscrowStatus.HELD
        assert loaded.actual_rating == 4.5
        assert await store.get_escrow_by_payment("pay_esc_a") == loaded

    async def test_missing_records(self, store):
        assert await store.get_payment("pay_missing") is None
        assert await store.get_escrow("esc_missing") is None
        assert await store.get_escrow_by_payment("pay_missing") is None

    async def test_put_overwrites(self, store):
        escrow = make_escrow("esc_a")
        await store.put_escrow(escrow)
        escrow.dispute_reason = "late delivery"
        await store.put_escrow(escrow)

        assert (await store.get_escrow("esc_a")).dispute_reason == "late delivery"


class TestTransition:
    async def test_compare_and_swap(self, store):
        await store.put_escrow(make_escrow("esc_a"))
        released_at = T0 + timedelta(hours=25)

        first = await store.transition_escrow_status(
            "esc_a", {EscrowStatus.HELD}, EscrowStatus.RELEASED,
            released_at=released_at, release_reason="automatic_release_no_rating",
        )
        second = await store.transition_escrow_status(
            "esc_a", {EscrowStatus.HELD}, EscrowStatus.RELEASED, release_reason="duplicate",
        )

        assert first is True
        assert second is False
        escrow = await store.get_escrow("esc_a")
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.released_at == released_at
        assert escrow.release_reason == "automatic_release_no_rating"

    async def test_only_if_unset_guards_the_swap(self, store):
        await store.put_escrow(make_escrow("esc_a", status=EscrowStatus.DISPUTED, disputed_at=T0))
        stamp = T0 + timedelta(hours=80)

        first = await store.transition_escrow_status(
            "esc_a", {EscrowStatus.DISPUTED}, EscrowStatus.DISPUTED,
            only_if_unset=("escalated_at",), escalated_at=stamp,
        )
        second = await store.transition_escrow_status(
            "esc_a", {EscrowStatus.DISPUTED}, EscrowStatus.DISPUTED,
            only_if_unset=("escalated_at",), escalated_at=stamp + timedelta(hours=1),
        )

        assert (first, second) == (True, False)
        assert (await store.get_escrow("esc_a")).escalated_at == stamp

    async def test_missing_escrow(self, store):
        assert await store.transition_escrow_status("nope", {EscrowStatus.HELD}, EscrowStatus.RELEASED) is False

    async def test_unknown_field(self, store):
        await store.put_escrow(make_escrow("esc_a"))
        with pytest.raises(StoreError):
            await store.transition_escrow_status("esc_a", {EscrowStatus.HELD}, EscrowStatus.RELEASED, amount=1)


class TestQueries:
    async def test_eligible_for_release(self, store):
        await store.put_escrow(make_escrow("esc_late", held_at=T0 + timedelta(hours=2)))
        await store.put_escrow(make_escrow("esc_early", held_at=T0))
        await store.put_escrow(make_escrow("esc_future", held_at=T0 + timedelta(days=3)))
        await store.put_escrow(make_escrow("esc_disputed", status=EscrowStatus.DISPUTED, disputed_at=T0))
        await store.put_escrow(make_escrow("esc_approved", held_at=T0 + timedelta(hours=1), status=EscrowStatus.APPROVED,
                                           rating_received=True, actual_rating=5.0))

        found = await store.query_escrows_eligible_for_release(T0 + timedelta(hours=30))

        assert [e.id for e in found] == ["esc_early", "esc_approved", "esc_late"]

    async def test_awaiting_rating_window(self, store):
        await store.put_escrow(make_escrow("esc_old", held_at=T0 - timedelta(days=10)))
        await store.put_escrow(make_escrow("esc_in", held_at=T0))
        await store.put_escrow(make_escrow("esc_rated", held_at=T0, rating_received=True, actual_rating=4.0))
        await store.put_escrow(make_escrow("esc_young", held_at=T0 + timedelta(days=3)))

        found = await store.query_escrows_awaiting_rating(T0 - timedelta(days=7), T0 + timedelta(days=1))

        assert [e.id for e in found] == ["esc_in"]

    async def test_disputes_for_escalation(self, store):
        await store.put_escrow(make_escrow("esc_old", status=EscrowStatus.DISPUTED, disputed_at=T0))
        await store.put_escrow(make_escrow("esc_new", status=EscrowStatus.DISPUTED,
                                           disputed_at=T0 + timedelta(hours=60)))
        await store.put_escrow(make_escrow("esc_done", status=EscrowStatus.DISPUTED, disputed_at=T0,
                                           escalated_at=T0 + timedelta(hours=80)))

        found = await store.query_disputes_for_escalation(T0 + timedelta(hours=24))

        assert [e.id for e in found] == ["esc_old"]


class TestServiceOverSql:
    async def test_payment_to_release(self, service, store, gateway, clock):
        payment, _ = await service.create_payment("payer_1", "payee_1", Decimal("25.00"))
        _, escrow = await service.confirm_payment(payment.id)
        clock.advance(timedelta(hours=49))

        summary = await service.process_automatic_releases()

        assert summary.processed == 1
        assert gateway.released == [escrow.id]
        released = await store.get_escrow(escrow.id)
        assert released.status == EscrowStatus.RELEASED
        assert released.release_reason == "automatic_release_no_rating"
