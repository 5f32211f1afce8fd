"""
Tests for booking transforms and time-slot normalization.
"""
from datetime import date, time

import pytest
from pydantic import ValidationError as PydanticValidationError

from schemas import Booking, BookingSource, BookingStatus, Customer, ProductMapping, normalize_time_slot
from services.transformers import (
    UNKNOWN_TOUR_TYPE,
    cache_row_from_bokun,
    employee_from_row,
    from_bokun_raw,
    from_cache_row,
    tour_type_index,
)
from fakes import FUTURE, bokun_raw, cache_row, local_booking


TOUR_TYPES = {"932404": "NIGHT_TOUR"}


class TestNormalizeTimeSlot:

    @pytest.mark.parametrize("value,expected", [
        ("19:00", "19:00"),
        ("9:30", "09:30"),
        ("19:00:00", "19:00"),
        (time(7, 5), "07:05"),
    ])
    def test_accepted_forms(self, value, expected):
        assert normalize_time_slot(value) == expected

    @pytest.mark.parametrize("value", ["", "7pm", "24:00", "12:60", None, 1900])
    def test_rejected_forms(self, value):
        with pytest.raises(ValueError):
            normalize_time_slot(value)


class TestLocalRows:

    def test_local_dedup_key_is_prefixed(self):
        booking = local_booking(42)

        assert booking.source == BookingSource.LOCAL
        assert booking.external_id is None
        assert booking.dedup_key == "local:42"

    def test_lowercase_status_is_normalized(self):
        booking = local_booking(1, status="pending")
        assert booking.status == BookingStatus.PENDING

    def test_seconds_are_dropped_from_time(self):
        booking = local_booking(1, booking_time="19:00:00")
        assert booking.booking_time == "19:00"

    def test_total_filled_from_parts(self):
        booking = local_booking(1)
        assert booking.participants.total == 2

    def test_guide_uuid_becomes_string(self):
        booking = local_booking(1, guide_id="g-1")
        assert booking.assigned_guide_id == "g-1"


class TestCacheRows:

    def test_cache_row_is_external(self):
        booking = from_cache_row(cache_row("BK100"))

        assert booking.source == BookingSource.EXTERNAL
        assert booking.id == "BK100"
        assert booking.external_id == "BK100"
        assert booking.dedup_key == "BK100"

    def test_external_without_id_rejected(self):
        with pytest.raises(PydanticValidationError):
            Booking(
                id="x",
                source=BookingSource.EXTERNAL,
                tour_type="NIGHT_TOUR",
                booking_date=FUTURE,
                booking_time="19:00",
                status=BookingStatus.CONFIRMED,
                customer=Customer(name="a", email="b"),
            )

    def test_local_with_external_id_rejected(self):
        with pytest.raises(PydanticValidationError):
            Booking(
                id=1,
                external_id="BK1",
                source=BookingSource.LOCAL,
                tour_type="NIGHT_TOUR",
                booking_date=FUTURE,
                booking_time="19:00",
                status=BookingStatus.CONFIRMED,
                customer=Customer(name="a", email="b"),
            )


class TestBokunPayloads:

    def test_confirmed_booking_flattened(self):
        row = cache_row_from_bokun(bokun_raw(555), "932404", TOUR_TYPES)

        assert row["bokun_booking_id"] == "555"
        assert row["booking_date"] == FUTURE
        assert row["booking_time"] == "19:00"
        assert row["tour_type"] == "NIGHT_TOUR"
        assert row["customer_name"] == "Ken Mori"
        assert row["confirmation_code"] == "BOKUN-555"
        assert (row["adults"], row["children"], row["infants"], row["total_participants"]) == (2, 1, 0, 3)

    @pytest.mark.parametrize("bokun_status,expected", [
        ("CONFIRMED", BookingStatus.CONFIRMED),
        ("CANCELLED", BookingStatus.CANCELLED),
        ("RESERVED", BookingStatus.PENDING),
        ("ABORTED", BookingStatus.REJECTED),
        (None, BookingStatus.CONFIRMED),
    ])
    def test_status_mapped(self, bokun_status, expected):
        row = cache_row_from_bokun(bokun_raw(1, status=bokun_status), "932404", TOUR_TYPES)
        assert row["status"] == expected.value

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            cache_row_from_bokun(bokun_raw(1, status="TELEPORTED"), "932404", TOUR_TYPES)

    @pytest.mark.parametrize("field,value", [
        ("customer", "Ken Mori"),
        ("fields", "19:00"),
        ("product", 932404),
    ])
    def test_non_object_sections_raise(self, field, value):
        raw = bokun_raw(1)
        raw[field] = value
        with pytest.raises(ValueError):
            cache_row_from_bokun(raw, "932404", TOUR_TYPES)

    def test_non_object_payload_raises(self):
        with pytest.raises(ValueError):
            cache_row_from_bokun("555", "932404", TOUR_TYPES)

    def test_missing_id_raises(self):
        raw = bokun_raw(1)
        del raw["id"]
        with pytest.raises(ValueError):
            cache_row_from_bokun(raw, "932404", TOUR_TYPES)

    def test_missing_date_raises(self):
        raw = bokun_raw(1)
        raw["startDate"] = None
        with pytest.raises(ValueError):
            cache_row_from_bokun(raw, "932404", TOUR_TYPES)

    def test_iso_start_date(self):
        raw = bokun_raw(1)
        raw["startDate"] = "2026-05-12T00:00:00Z"
        assert cache_row_from_bokun(raw, "932404", TOUR_TYPES)["booking_date"] == date(2026, 5, 12)

    def test_defaults_when_fields_missing(self):
        raw = {"id": 9, "startDate": "2026-05-12", "product": {"id": 1}}
        row = cache_row_from_bokun(raw, "1", {})

        assert row["booking_time"] == "18:00"
        assert row["customer_name"] == "External Booking"
        assert row["customer_email"] == "external@bokun.com"
        assert row["total_participants"] == 1
        assert row["tour_type"] == UNKNOWN_TOUR_TYPE

    def test_live_transform_matches_cache_transform(self):
        raw = bokun_raw(777)
        live = from_bokun_raw(raw, "932404", TOUR_TYPES)
        cached = from_cache_row(cache_row_from_bokun(raw, "932404", TOUR_TYPES))

        assert live.model_dump() == cached.model_dump()


class TestLookups:

    def test_tour_type_index_skips_inactive(self):
        index = tour_type_index([
            ProductMapping(external_product_id="1", local_tour_type="A"),
            ProductMapping(external_product_id="2", local_tour_type="B", is_active=False),
        ])
        assert index == {"1": "A"}

    def test_employee_from_row(self):
        employee = employee_from_row({
            "id": "e1",
            "first_name": "Aki",
            "last_name": "Ito",
            "email": "aki@example.com",
            "tour_types": ["NIGHT_TOUR"],
        })
        assert employee.tour_types == ["NIGHT_TOUR"]
        assert employee.status.value == "active"
