"""
Tests for the entity model: count arithmetic, wire field names and the
validation rules every Category / Counter has to satisfy.
"""

import math
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from tallysync.models import (
    Category,
    Counter,
    clamp_delta,
    display_value,
    new_id,
    normalize_count,
)


# ── clamp_delta ─────────────────────────────────────────────────────


class TestClampDelta:
    DELTAS = [-10, -3.7, -1, -0.1, 0, 0.05, 0.1, 0.25, 1, 2.55, 7.3]
    STARTS = [0.0, 0.3, 1.0, 5.0, 12.7]

    def test_never_negative_when_disallowed(self):
        for start in self.STARTS:
            for delta in self.DELTAS:
                for decimals in (True, False):
                    assert clamp_delta(start, delta, False, decimals) >= 0

    def test_decimal_results_have_one_decimal_place(self):
        for start in self.STARTS:
            for delta in self.DELTAS:
                value = clamp_delta(start, delta, True, True)
                assert value == round(value, 1)

    def test_integral_results_are_whole_units(self):
        for start in (0.0, 1.0, 5.0, -4.0):
            for delta in self.DELTAS:
                value = clamp_delta(start, delta, True, False)
                assert value == math.trunc(value)

    def test_negative_result_clamped_to_zero(self):
        assert clamp_delta(5, -10, False, False) == 0

    def test_negative_allowed(self):
        assert clamp_delta(5, -10, True, False) == -5

    def test_repeated_tenths_stay_exact(self):
        count = 0.0
        for _ in range(3):
            count = clamp_delta(count, 0.1, False, True)
        assert count == 0.3

    def test_rounds_half_away_from_zero(self):
        assert clamp_delta(0.0, 0.25, True, True) == 0.3
        assert clamp_delta(-1.0, -0.25, True, True) == -1.3

    def test_integral_truncates(self):
        assert clamp_delta(2.0, 0.9, False, False) == 2.0

    def test_no_negative_zero(self):
        value = clamp_delta(0.0, -0.04, True, True)
        assert value == 0.0
        assert math.copysign(1.0, value) == 1.0

    def test_beyond_limit_keeps_current(self):
        assert clamp_delta(10, 5, False, False, max_abs=12) == 10
        assert clamp_delta(10, 2, False, False, max_abs=12) == 12

    def test_normalize_count(self):
        assert normalize_count(-3, False, False) == 0
        assert normalize_count(2.66, True, True) == 2.7


def test_display_value():
    assert display_value(Counter(name="laps", count=3.0), False) == "3"
    assert display_value(Counter(name="km", count=0.3), True) == "0.3"


# ── Counter / Category ──────────────────────────────────────────────


def _category(**overrides):
    data = {
        "id": "c1",
        "name": "Exercise",
        "color_tag": "bg-blue-600",
        "icon_tag": "figure.run",
        "counters": [Counter(id="k1", name="Pushups", count=5)],
    }
    data.update(overrides)
    return Category(**data)


class TestCategory:
    def test_wire_uses_app_field_names(self):
        wire = _category().to_wire()
        assert set(wire) == {
            "id",
            "name",
            "colorName",
            "iconName",
            "counters",
            "allowNegative",
            "allowDecimals",
            "createdAt",
            "updatedAt",
        }
        assert wire["colorName"] == "bg-blue-600"
        assert wire["counters"] == [{"id": "k1", "name": "Pushups", "count": 5.0}]

    def test_timestamps_are_iso_utc_seconds(self):
        wire = _category().to_wire()
        assert wire["createdAt"].endswith("Z")
        parsed = datetime.strptime(wire["createdAt"], "%Y-%m-%dT%H:%M:%SZ")
        assert parsed.year >= 2024

    def test_parses_wire_payload(self):
        category = Category.model_validate(
            {
                "id": "E621E1F8-C36C-495A-93FC-0C247A3E6E5F",
                "name": "Water",
                "colorName": "bg-cyan-500",
                "iconName": "drop.fill",
                "counters": [{"id": "k9", "name": "Glasses", "count": 2}],
                "allowNegative": True,
                "allowDecimals": True,
                "createdAt": "2026-01-01T10:00:00Z",
                "updatedAt": "2026-01-02T10:00:00Z",
            }
        )
        assert category.color_tag == "bg-cyan-500"
        assert category.allow_decimals is True
        assert category.updated_at == datetime(2026, 1, 2, 10, 0, tzinfo=timezone.utc)
        assert category.to_wire()["updatedAt"] == "2026-01-02T10:00:00Z"

    def test_legacy_payload_defaults(self):
        """Old payloads without flags and with blank timestamps still load."""
        category = Category.model_validate(
            {
                "id": "c1",
                "name": "Old",
                "colorName": "bg-red-500",
                "iconName": "star",
                "counters": [],
                "createdAt": "",
            }
        )
        assert category.allow_negative is False
        assert category.allow_decimals is False
        assert category.created_at.tzinfo is not None

    def test_duplicate_counter_ids_rejected(self):
        with pytest.raises(ValidationError):
            _category(
                counters=[Counter(id="k1", name="a"), Counter(id="k1", name="b")]
            )

    def test_non_finite_count_rejected(self):
        with pytest.raises(ValidationError):
            Counter(name="broken", count=float("nan"))
        with pytest.raises(ValidationError):
            Counter(name="broken", count=float("inf"))

    def test_find_counter(self):
        category = _category()
        assert category.find_counter("k1").name == "Pushups"
        assert category.find_counter("missing") is None

    def test_new_ids_are_upper_case_uuids(self):
        ident = new_id()
        assert ident == ident.upper()
        assert len(ident) == 36
        assert Category(name="x", color_tag="c", icon_tag="i").id != ident
