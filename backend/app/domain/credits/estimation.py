"""
Estimation Engine (Domain Logic).

Pure credit arithmetic: no I/O, no clock of its own.

    credits = base_value(season) x location_multiplier x room_type_multiplier

rounded half-up to 2 decimals.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Tuple, Union

from backend.app.core.exceptions import InvalidRateInputError
from backend.app.core.timeutils import add_months
from backend.app.domain.credits.amounts import quantize, to_decimal
from backend.app.domain.credits.rate_table import RateTable
from backend.app.models.credit_enums import Season

Multiplier = Union[Decimal, float, int, str]


@dataclass(frozen=True)
class CreditEstimate:
    credits: Decimal
    breakdown: Dict[str, str]
    expiration_date: datetime


@dataclass(frozen=True)
class BookingCost:
    credits_per_night: Decimal
    nights: int
    total_credits: Decimal
    breakdown: Dict[str, str]


class EstimationEngine:

    @staticmethod
    def resolve_season(rate_table: RateTable, season: Union[Season, str]) -> Tuple[str, Decimal]:
        name = season.value if isinstance(season, Season) else str(season).strip().upper()
        if name not in rate_table.season_values:
            raise InvalidRateInputError(f"Unknown season category: {season}", field="season", value=season)
        return name, rate_table.season_values[name]

    @staticmethod
    def resolve_multiplier(value: Multiplier, tiers: Mapping[str, Decimal], field: str) -> Tuple[str, Decimal]:
        """
        Accept a tier name ("GOLD") or a tier value (1.3, "1.3", Decimal("1.30")).

        Returns:
            (tier_name, multiplier)

        Raises:
            InvalidRateInputError: If the value is not positive or matches no configured tier.
        """
        if isinstance(value, str) and value.strip().upper() in tiers:
            name = value.strip().upper()
            return name, tiers[name]

        try:
            multiplier = to_decimal(value)
        except ValueError:
            raise InvalidRateInputError(f"Unknown {field} tier: {value}", field=field, value=value) from None

        if multiplier <= 0:
            raise InvalidRateInputError(f"{field} must be greater than zero", field=field, value=value)

        for name, tier_value in tiers.items():
            if tier_value == multiplier:
                return name, tier_value

        raise InvalidRateInputError(
            f"{field} {multiplier} is not a configured tier value", field=field, value=value
        )

    @staticmethod
    def _price(
        rate_table: RateTable,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
    ) -> Tuple[Decimal, Dict[str, str]]:
        season_name, base = EstimationEngine.resolve_season(rate_table, season)
        location_tier, location = EstimationEngine.resolve_multiplier(
            location_multiplier, rate_table.location_multipliers, "location_multiplier"
        )
        room_tier, room = EstimationEngine.resolve_multiplier(
            room_type_multiplier, rate_table.room_type_multipliers, "room_type_multiplier"
        )

        credits = quantize(base * location * room)
        breakdown = {
            "rate_table": rate_table.name,
            "season": season_name,
            "base_value": str(base),
            "location_tier": location_tier,
            "location_multiplier": str(location),
            "room_type_tier": room_tier,
            "room_type_multiplier": str(room),
            "credits": str(credits),
        }
        return credits, breakdown

    @staticmethod
    def estimate(
        rate_table: RateTable,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
        now: datetime,
    ) -> CreditEstimate:
        """
        Credits a week would earn if deposited at 'now'.

        Deterministic: the same inputs always give the same output.
        """
        credits, breakdown = EstimationEngine._price(
            rate_table, season, location_multiplier, room_type_multiplier
        )
        breakdown["expiration_months"] = str(rate_table.expiration_months)
        return CreditEstimate(
            credits=credits,
            breakdown=breakdown,
            expiration_date=add_months(now, rate_table.expiration_months),
        )

    @staticmethod
    def booking_cost(
        rate_table: RateTable,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
        nights: Any,
    ) -> BookingCost:
        """
        Cost of a stay, per night.

        A nightly cost configured for the season and room tier wins over the formula.
        """
        if isinstance(nights, bool) or not isinstance(nights, int) or nights < 1:
            raise InvalidRateInputError("nights must be a positive integer", field="nights", value=nights)

        per_night, breakdown = EstimationEngine._price(
            rate_table, season, location_multiplier, room_type_multiplier
        )
        configured = rate_table.nightly_costs.get(f"{breakdown['season']}:{breakdown['room_type_tier']}")
        if configured is not None:
            per_night = quantize(configured)
            breakdown["credits"] = str(per_night)
        breakdown["nightly_cost_configured"] = str(configured is not None).lower()
        total = quantize(per_night * nights)
        breakdown["nights"] = str(nights)
        return BookingCost(
            credits_per_night=per_night,
            nights=nights,
            total_credits=total,
            breakdown=breakdown,
        )
