"""
Estimation Engine Tests.

Pure credit arithmetic: no database involved.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from backend.app.core.config import Settings
from backend.app.core.exceptions import InvalidRateInputError
from backend.app.core.timeutils import add_months
from backend.app.domain.credits.estimation import EstimationEngine
from backend.app.domain.credits.rate_table import RateTable
from backend.app.models.credit_enums import Season

NOW = datetime(2026, 1, 10, 12, 0, 0)


@pytest.fixture
def rate_table():
    return RateTable.from_settings(Settings())


def test_red_diamond_suite_earns_3000(rate_table):
    """RED (1000) x 1.5 x 2.0 = 3000.00, expiring six months later."""
    estimate = EstimationEngine.estimate(rate_table, Season.RED, 1.5, 2.0, NOW)

    assert estimate.credits == Decimal("3000.00")
    assert estimate.expiration_date == datetime(2026, 7, 10, 12, 0, 0)
    assert estimate.breakdown["base_value"] == "1000"
    assert estimate.breakdown["location_tier"] == "DIAMOND"
    assert estimate.breakdown["room_type_tier"] == "SUITE"


def test_tier_names_and_values_are_interchangeable(rate_table):
    by_name = EstimationEngine.estimate(rate_table, "red", "DIAMOND", "suite", NOW)
    by_value = EstimationEngine.estimate(rate_table, Season.RED, Decimal("1.50"), "2.0", NOW)

    assert by_name.credits == by_value.credits == Decimal("3000.00")


def test_estimate_is_deterministic(rate_table):
    first = EstimationEngine.estimate(rate_table, Season.WHITE, 1.3, 1.2, NOW)
    second = EstimationEngine.estimate(rate_table, Season.WHITE, 1.3, 1.2, NOW)

    assert first == second
    # 600 x 1.3 x 1.2
    assert first.credits == Decimal("936.00")


def test_rounding_is_half_up():
    table = RateTable.build(
        season_values={"RED": "100.005", "WHITE": "2.345", "BLUE": "1"},
        location_multipliers={"STANDARD": "1"},
        room_type_multipliers={"STANDARD": "1"},
    )

    assert EstimationEngine.estimate(table, "RED", 1, 1, NOW).credits == Decimal("100.01")
    # Banker's rounding would give 2.34
    assert EstimationEngine.estimate(table, "WHITE", 1, 1, NOW).credits == Decimal("2.35")


@pytest.mark.parametrize("season,location,room", [
    ("GREEN", 1.5, 2.0),
    ("RED", 0, 2.0),
    ("RED", -1.5, 2.0),
    ("RED", 1.4, 2.0),
    ("RED", "PLATINUM", 2.0),
    ("RED", 1.5, "not-a-number"),
    ("RED", 1.5, True),
])
def test_invalid_inputs_are_rejected(rate_table, season, location, room):
    with pytest.raises(InvalidRateInputError):
        EstimationEngine.estimate(rate_table, season, location, room, NOW)


def test_booking_cost_is_nightly_price_times_nights(rate_table):
    cost = EstimationEngine.booking_cost(rate_table, Season.WHITE, "GOLD", "DELUXE", 3)

    # 600 x 1.3 x 1.5
    assert cost.credits_per_night == Decimal("1170.00")
    assert cost.total_credits == Decimal("3510.00")
    assert cost.nights == 3


def test_booking_cost_requires_positive_nights(rate_table):
    with pytest.raises(InvalidRateInputError):
        EstimationEngine.booking_cost(rate_table, Season.BLUE, 1.0, 1.0, 0)


def test_rate_table_rejects_incomplete_seasons():
    with pytest.raises(InvalidRateInputError):
        RateTable.build(
            season_values={"RED": "1000"},
            location_multipliers={"STANDARD": "1"},
            room_type_multipliers={"STANDARD": "1"},
        )


def test_rate_table_expiration_window_is_configurable():
    table = RateTable.build(
        season_values={"RED": "1000", "WHITE": "600", "BLUE": "300"},
        location_multipliers={"STANDARD": "1"},
        room_type_multipliers={"STANDARD": "1"},
        expiration_months=12,
    )

    estimate = EstimationEngine.estimate(table, "BLUE", "STANDARD", "STANDARD", NOW)
    assert estimate.expiration_date == datetime(2027, 1, 10, 12, 0, 0)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 8, 31), 6) == datetime(2027, 2, 28)
    assert add_months(datetime(2027, 8, 31), 6) == datetime(2028, 2, 29)
    assert add_months(datetime(2026, 11, 15), 2) == datetime(2027, 1, 15)


def test_configured_nightly_cost_overrides_formula():
    table = RateTable.build(
        season_values={"RED": 1000, "WHITE": 600, "BLUE": 300},
        location_multipliers={"STANDARD": 1},
        room_type_multipliers={"STANDARD": 1, "SUITE": 2},
        nightly_costs={"red:suite": "275.5"},
    )

    configured = EstimationEngine.booking_cost(table, Season.RED, 1, "SUITE", 2)
    assert configured.credits_per_night == Decimal("275.50")
    assert configured.total_credits == Decimal("551.00")
    assert configured.breakdown["nightly_cost_configured"] == "true"

    formula = EstimationEngine.booking_cost(table, Season.RED, 1, "STANDARD", 2)
    assert formula.credits_per_night == Decimal("1000.00")
    assert formula.breakdown["nightly_cost_configured"] == "false"


@pytest.mark.parametrize("nightly_costs", [
    {"GREEN:SUITE": 100},
    {"RED:PENTHOUSE": 100},
    {"RED": 100},
    {"RED:SUITE": 0},
])
def test_invalid_nightly_costs_are_rejected(nightly_costs):
    with pytest.raises(InvalidRateInputError):
        RateTable.build(
            season_values={"RED": 1000, "WHITE": 600, "BLUE": 300},
            location_multipliers={"STANDARD": 1},
            room_type_multipliers={"STANDARD": 1, "SUITE": 2},
            nightly_costs=nightly_costs,
        )
