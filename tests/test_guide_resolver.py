"""
Tests for guide availability across both booking sources.
"""
from datetime import timedelta

import pytest

from errors import FatalStoreError, SourceUnavailable, ValidationError
from schemas import ShiftStatus
from services.guide_resolver import GuideConflictResolver
from fakes import FUTURE, cache_row, guide, local_booking


SLOT = ("NIGHT_TOUR", FUTURE, "19:00")


class TestConflicts:

    @pytest.mark.asyncio
    async def test_external_assignment_blocks_guide(self, local_store, cache_store):
        """Guide X on Bokun booking BK100 at 19:00 is not offered for a local 19:00 booking."""
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_guide(guide("y", "Yoko"), SLOT)
        cache_store.add(cache_row("BK100", guide_id="x"))

        resolver = GuideConflictResolver(local_store, cache_store)
        available = await resolver.available_guides(*SLOT)

        assert [g.id for g in available] == ["y"]
        assert await resolver.conflict_set(FUTURE, "19:00") == {"x"}

    @pytest.mark.asyncio
    async def test_local_pending_assignment_blocks_guide(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_booking(local_booking(1, status="PENDING", guide_id="x"))

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert available == []

    @pytest.mark.asyncio
    async def test_cancelled_booking_does_not_block(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_booking(local_booking(1, status="CANCELLED", guide_id="x"))

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert [g.id for g in available] == ["x"]

    @pytest.mark.asyncio
    async def test_other_slot_does_not_block(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        cache_store.add(cache_row("BK1", booking_time="10:00", guide_id="x"))
        cache_store.add(cache_row("BK2", booking_date=FUTURE + timedelta(days=1), guide_id="x"))

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert [g.id for g in available] == ["x"]

    @pytest.mark.asyncio
    async def test_cache_failure_fails_closed(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        cache_store.fail = True

        with pytest.raises(SourceUnavailable):
            await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

    @pytest.mark.asyncio
    async def test_local_failure_propagates(self, local_store, cache_store):
        local_store.fail = True

        with pytest.raises(FatalStoreError):
            await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)


class TestCandidates:

    @pytest.mark.asyncio
    async def test_ordered_by_first_name_ignoring_case(self, local_store, cache_store):
        local_store.add_guide(guide("c", "Chie"), SLOT)
        local_store.add_guide(guide("b", "bob"), SLOT)
        local_store.add_guide(guide("a", "Aki"), SLOT)

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert [g.first_name for g in available] == ["Aki", "bob", "Chie"]

    @pytest.mark.asyncio
    async def test_unqualified_guide_excluded(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena", tour_types=["FOOD_TOUR"]), SLOT)

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert available == []

    @pytest.mark.asyncio
    async def test_assigned_shift_not_offered(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT, status=ShiftStatus.ASSIGNED)

        available = await GuideConflictResolver(local_store, cache_store).available_guides(*SLOT)

        assert available == []

    @pytest.mark.asyncio
    async def test_time_slot_normalized(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), ("NIGHT_TOUR", FUTURE, "09:00"))

        available = await GuideConflictResolver(local_store, cache_store).available_guides("NIGHT_TOUR", FUTURE, "9:00")

        assert [g.id for g in available] == ["x"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [
        ("", FUTURE, "19:00"),
        ("NIGHT_TOUR", "2026-05-10", "19:00"),
        ("NIGHT_TOUR", FUTURE, "evening"),
    ])
    async def test_bad_arguments_rejected(self, local_store, cache_store, args):
        with pytest.raises(ValidationError):
            await GuideConflictResolver(local_store, cache_store).available_guides(*args)

    @pytest.mark.asyncio
    async def test_suggestions_skip_assigned_bookings(self, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        pending = local_booking(1)
        done = local_booking(2, guide_id="z")

        suggestions = await GuideConflictResolver(local_store, cache_store).suggest_assignments([pending, done])

        assert len(suggestions) == 1
        assert suggestions[0].booking.id == 1
        assert [g.id for g in suggestions[0].candidates] == ["x"]
