"""
Tests for gateway status translation and the mapping table helpers.
"""

import pytest

from flightpay.models.acquirer_status_mapping import AcquirerStatusMapping
from flightpay.models.payment import PaymentStatus
from flightpay.payments.status_mapping import (
    STATIC_STATUS_MAPS,
    StatusMapper,
    list_mappings,
    seed_default_mappings,
    set_mapping_active,
    upsert_mapping,
)


class TestStatusMapper:
    """Database rows win over static maps; everything else is UNMAPPED."""

    @pytest.mark.asyncio
    async def test_static_map_used_without_rows(self, session_factory):
        mapper = StatusMapper()
        async with session_factory() as session:
            assert await mapper.resolve(session, "RAZORPAY", "captured") is PaymentStatus.SUCCESS
            assert await mapper.resolve(session, "stripe", "Canceled") is PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_active_row_overrides_static_map(self, session_factory):
        mapper = StatusMapper()
        async with session_factory() as session:
            async with session.begin():
                await upsert_mapping(
                    session,
                    acquirer_code="RAZORPAY",
                    acquirer_status="authorized",
                    canonical_status=PaymentStatus.SUCCESS,
                )
            assert await mapper.resolve(session, "RAZORPAY", "authorized") is PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_inactive_row_falls_back_to_static_map(self, session_factory):
        mapper = StatusMapper()
        async with session_factory() as session:
            async with session.begin():
                await upsert_mapping(
                    session,
                    acquirer_code="RAZORPAY",
                    acquirer_status="authorized",
                    canonical_status=PaymentStatus.SUCCESS,
                    is_active=False,
                )
            assert await mapper.resolve(session, "RAZORPAY", "authorized") is PaymentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unknown_status_is_unmapped(self, session_factory):
        mapper = StatusMapper()
        async with session_factory() as session:
            assert await mapper.resolve(session, "RAZORPAY", "teleported") is PaymentStatus.UNMAPPED
            assert await mapper.resolve(session, "NOPE", "captured") is PaymentStatus.UNMAPPED
            assert await mapper.resolve(session, "RAZORPAY", None) is PaymentStatus.UNMAPPED

    @pytest.mark.asyncio
    async def test_corrupt_row_is_unmapped(self, session_factory):
        mapper = StatusMapper()
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    AcquirerStatusMapping(
                        acquirer_code="STRIPE",
                        acquirer_status="succeeded",
                        canonical_status="DONE",
                        is_active=True,
                    )
                )
            assert await mapper.resolve(session, "STRIPE", "succeeded") is PaymentStatus.UNMAPPED

    def test_static_status_lookup(self):
        mapper = StatusMapper()
        assert mapper.static_status("stripe", "PAID") is PaymentStatus.SUCCESS
        assert mapper.static_status("stripe", "mystery") is None


class TestMappingAdministration:
    @pytest.mark.asyncio
    async def test_upsert_refuses_unmapped(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await upsert_mapping(
                    session,
                    acquirer_code="STRIPE",
                    acquirer_status="open",
                    canonical_status=PaymentStatus.UNMAPPED,
                )

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_row(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                await upsert_mapping(
                    session, acquirer_code="stripe", acquirer_status="OPEN", canonical_status=PaymentStatus.PENDING
                )
                await upsert_mapping(
                    session,
                    acquirer_code="STRIPE",
                    acquirer_status="open",
                    canonical_status=PaymentStatus.PROCESSING,
                    description="treat open sessions as in flight",
                )
            rows = await list_mappings(session, "STRIPE")

        assert len(rows) == 1
        assert rows[0].acquirer_status == "open"
        assert rows[0].canonical_status == "PROCESSING"
        assert rows[0].description == "treat open sessions as in flight"

    @pytest.mark.asyncio
    async def test_toggle_missing_row_returns_none(self, session_factory):
        async with session_factory() as session:
            assert await set_mapping_active(session, "STRIPE", "open", is_active=False) is None

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, session_factory):
        expected = sum(len(statuses) for statuses in STATIC_STATUS_MAPS.values())
        async with session_factory() as session:
            preview = await seed_default_mappings(session, dry_run=True)
            assert len(preview) == expected
            assert await list_mappings(session, "RAZORPAY") == []

        async with session_factory() as session:
            async with session.begin():
                inserted = await seed_default_mappings(session)
        async with session_factory() as session:
            async with session.begin():
                again = await seed_default_mappings(session)
            stripe_rows = await list_mappings(session, "STRIPE")

        assert len(inserted) == expected
        assert again == []
        assert len(stripe_rows) == len(STATIC_STATUS_MAPS["STRIPE"])
