"""
Rate Table and Resolver.

A rate table maps season categories to base credit values and names the
location and room-type multiplier tiers that estimates may use.
Follows priority:
1. Most recent active persisted rate table covering "now"
2. Configured defaults
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings
from backend.app.core.exceptions import InvalidRateInputError
from backend.app.domain.credits.amounts import to_decimal
from backend.app.models.credit_enums import Season
from backend.app.models.credit_rate_table import CreditRateTable


def _decimal_map(values: Mapping[str, Any], field_name: str) -> Dict[str, Decimal]:
    if not values:
        raise InvalidRateInputError(f"{field_name} must not be empty", field=field_name)

    result = {}
    for name, raw in values.items():
        try:
            value = to_decimal(raw)
        except ValueError:
            raise InvalidRateInputError(
                f"{field_name}.{name} is not a number", field=field_name, value=raw
            ) from None
        if value <= 0:
            raise InvalidRateInputError(
                f"{field_name}.{name} must be greater than zero", field=field_name, value=raw
            )
        result[str(name).upper()] = value
    return result


@dataclass(frozen=True)
class RateTable:
    season_values: Dict[str, Decimal]
    location_multipliers: Dict[str, Decimal]
    room_type_multipliers: Dict[str, Decimal]
    expiration_months: int = 6
    name: str = "default"
    nightly_costs: Dict[str, Decimal] = field(default_factory=dict)
    source_id: Optional[int] = field(default=None, compare=False)

    @classmethod
    def build(
        cls,
        season_values: Mapping[str, Any],
        location_multipliers: Mapping[str, Any],
        room_type_multipliers: Mapping[str, Any],
        expiration_months: int = 6,
        name: str = "default",
        nightly_costs: Optional[Mapping[str, Any]] = None,
        source_id: Optional[int] = None,
    ) -> "RateTable":
        """
        Validate raw maps and build a rate table.

        Nightly costs are keyed "SEASON:ROOM_TIER" and override the formula
        when pricing a stay in that season and room tier.

        Raises:
            InvalidRateInputError: For unknown seasons, missing seasons,
                non-positive values, bad nightly cost keys or a non-positive
                expiration window.
        """
        seasons = _decimal_map(season_values, "season_values")
        unknown = set(seasons) - {s.value for s in Season}
        if unknown:
            raise InvalidRateInputError(
                f"Unknown season categories: {', '.join(sorted(unknown))}", field="season_values"
            )
        missing = {s.value for s in Season} - set(seasons)
        if missing:
            raise InvalidRateInputError(
                f"Missing season categories: {', '.join(sorted(missing))}", field="season_values"
            )
        if expiration_months is None or int(expiration_months) < 1:
            raise InvalidRateInputError(
                "expiration_months must be at least 1", field="expiration_months", value=expiration_months
            )

        rooms = _decimal_map(room_type_multipliers, "room_type_multipliers")
        nightly = _decimal_map(nightly_costs, "nightly_costs") if nightly_costs else {}
        for key in nightly:
            season, _, room = key.partition(":")
            if season not in seasons or room not in rooms:
                raise InvalidRateInputError(
                    f"nightly_costs key {key} must be SEASON:ROOM_TIER", field="nightly_costs", value=key
                )

        return cls(
            season_values=seasons,
            location_multipliers=_decimal_map(location_multipliers, "location_multipliers"),
            room_type_multipliers=rooms,
            expiration_months=int(expiration_months),
            name=name,
            nightly_costs=nightly,
            source_id=source_id,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateTable":
        return cls.build(
            season_values=settings.season_base_values,
            location_multipliers=settings.location_multipliers,
            room_type_multipliers=settings.room_type_multipliers,
            expiration_months=settings.credit_expiration_months,
            name=settings.rate_table_name,
        )

    @classmethod
    def from_model(cls, row: CreditRateTable) -> "RateTable":
        return cls.build(
            season_values=row.season_values,
            location_multipliers=row.location_multipliers,
            room_type_multipliers=row.room_type_multipliers,
            expiration_months=row.expiration_months,
            name=row.name,
            nightly_costs=row.nightly_costs,
            source_id=row.id,
        )

    def as_json(self) -> Dict[str, Dict[str, str]]:
        """Maps with decimal strings, as stored in CreditRateTable JSON columns."""
        return {
            "season_values": {k: str(v) for k, v in self.season_values.items()},
            "location_multipliers": {k: str(v) for k, v in self.location_multipliers.items()},
            "room_type_multipliers": {k: str(v) for k, v in self.room_type_multipliers.items()},
            "nightly_costs": {k: str(v) for k, v in self.nightly_costs.items()},
        }


class RateTableResolver:

    def __init__(self, settings: Settings):
        self.default = RateTable.from_settings(settings)

    async def resolve(self, db: AsyncSession, now: datetime) -> RateTable:
        """
        Find the rate table in force at 'now'.

        Falls back to the configured defaults when no persisted table applies.
        """
        query = select(CreditRateTable).where(
            CreditRateTable.is_active == True,
            CreditRateTable.effective_from <= now,
            (CreditRateTable.effective_until.is_(None) | (CreditRateTable.effective_until > now))
        ).order_by(CreditRateTable.effective_from.desc(), CreditRateTable.id.desc()).limit(1)

        result = await db.execute(query)
        row = result.scalar_one_or_none()

        if row is None:
            return self.default
        return RateTable.from_model(row)
