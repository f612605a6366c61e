"""Booking rules attached to a membership plan.

Plans store their rules as JSON. ``parse_booking_rules`` turns that JSON into
one of four explicit rule types; nothing downstream inspects the raw dict.

Accepted shapes::

    {"type": "unlimited"}
    {"type": "metered", "period": "week", "count": 2}
    {"type": "credits", "initial_amount": 10}
    {"type": "restricted_access"}

Older plan rows use ``limited`` / ``open_gym_only`` and keep period and count
under a nested ``limit`` object; those are normalized on the way in.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Rules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class UnlimitedRules(_Rules):
    type: Literal["unlimited"] = "unlimited"


class MeteredRules(_Rules):
    type: Literal["metered"] = "metered"
    period: Literal["week", "month"]
    count: int = Field(ge=0)


class CreditRules(_Rules):
    type: Literal["credits"] = "credits"
    initial_amount: int = Field(ge=0)


class RestrictedAccessRules(_Rules):
    """Open-gym only: gated course sessions are never bookable."""

    type: Literal["restricted_access"] = "restricted_access"


BookingRules = Annotated[
    Union[UnlimitedRules, MeteredRules, CreditRules, RestrictedAccessRules],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[BookingRules] = TypeAdapter(BookingRules)

_LEGACY_TYPES = {
    "limited": "metered",
    "open_gym_only": "restricted_access",
}


def _normalize(raw: dict[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    data["type"] = _LEGACY_TYPES.get(data.get("type"), data.get("type"))
    limit = data.get("limit") or {}
    if data["type"] == "metered":
        data.setdefault("period", limit.get("period", "month"))
        data.setdefault("count", limit.get("count", 0))
    elif data["type"] == "credits":
        data.setdefault("initial_amount", limit.get("count", 0))
    return data


def parse_booking_rules(raw: dict[str, Any] | BookingRules | None) -> BookingRules:
    """Decode stored plan rules. Raises ``pydantic.ValidationError`` on unknown shapes."""
    if isinstance(raw, _Rules):
        return raw
    if not raw:
        raise ValueError("Plan has no booking rules")
    return _adapter.validate_python(_normalize(raw))


def dump_booking_rules(rules: BookingRules) -> dict[str, Any]:
    return rules.model_dump()
