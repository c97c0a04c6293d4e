"""
Provenance Codec - which pool each deducted credit came from.

Deduction transactions store their provenance in the metadata column. Two
shapes exist in the ledger:

    V1 (legacy, no "version" key)
        {"subscription_id": "...", "daily_used": 3, "monthly_used": 0, "purchased_used": 7}

    V2
        {"version": 2, "purchased": 7,
         "subscriptions": [{"subscription_id": "...", "daily": 3, "monthly": 0}]}

Anything else parses to UnrecognizedProvenance and is never guessed at.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

PROVENANCE_VERSION = 2


@dataclass(frozen=True)
class SubscriptionAllocation:
    """Credits taken from (or restored to) one subscription."""

    subscription_id: UUID
    daily: int
    monthly: int

    def __post_init__(self) -> None:
        if self.daily < 0 or self.monthly < 0:
            raise ValueError(
                f"Allocation cannot be negative: daily={self.daily}, monthly={self.monthly}"
            )

    @property
    def total(self) -> int:
        return self.daily + self.monthly


@dataclass(frozen=True)
class ProvenanceV2:
    """Current provenance shape: any number of subscriptions plus purchased."""

    purchased: int
    subscriptions: tuple[SubscriptionAllocation, ...] = ()

    def __post_init__(self) -> None:
        if self.purchased < 0:
            raise ValueError(f"Purchased allocation cannot be negative: {self.purchased}")

    @property
    def total(self) -> int:
        return self.purchased + sum(alloc.total for alloc in self.subscriptions)

    def normalized(self) -> "ProvenanceV2":
        return self

    def to_metadata(self) -> dict[str, Any]:
        """Serialize for the JSONB metadata column."""
        return {
            "version": PROVENANCE_VERSION,
            "purchased": self.purchased,
            "subscriptions": [
                {
                    "subscription_id": str(alloc.subscription_id),
                    "daily": alloc.daily,
                    "monthly": alloc.monthly,
                }
                for alloc in self.subscriptions
            ],
        }


@dataclass(frozen=True)
class ProvenanceV1:
    """Legacy single-subscription provenance."""

    subscription_id: UUID | None
    daily_used: int
    monthly_used: int
    purchased_used: int

    def __post_init__(self) -> None:
        if min(self.daily_used, self.monthly_used, self.purchased_used) < 0:
            raise ValueError("Legacy provenance cannot contain negative amounts")

    @property
    def total(self) -> int:
        return self.daily_used + self.monthly_used + self.purchased_used

    def normalized(self) -> ProvenanceV2:
        """
        Convert to the V2 shape.

        Subscription usage recorded without a subscription id has no pool to
        go back to, so it is folded into purchased.
        """
        if self.subscription_id is None:
            return ProvenanceV2(purchased=self.total)
        subscriptions: tuple[SubscriptionAllocation, ...] = ()
        if self.daily_used or self.monthly_used:
            subscriptions = (
                SubscriptionAllocation(
                    subscription_id=self.subscription_id,
                    daily=self.daily_used,
                    monthly=self.monthly_used,
                ),
            )
        return ProvenanceV2(purchased=self.purchased_used, subscriptions=subscriptions)


@dataclass(frozen=True)
class UnrecognizedProvenance:
    """Metadata that matches no known provenance shape."""

    raw: Any


Provenance = ProvenanceV1 | ProvenanceV2 | UnrecognizedProvenance


def _non_negative_int(value: Any, field: str) -> int:
    # bool is an int subclass; a ledger amount is never a bool
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"{field} cannot be negative: {value}")
    return value


def _parse_v2(metadata: Mapping[str, Any]) -> ProvenanceV2:
    raw_subscriptions = metadata.get("subscriptions", [])
    if not isinstance(raw_subscriptions, list):
        raise ValueError("subscriptions must be a list")

    allocations = []
    for entry in raw_subscriptions:
        if not isinstance(entry, Mapping):
            raise ValueError("subscription allocation must be an object")
        allocations.append(
            SubscriptionAllocation(
                subscription_id=UUID(str(entry["subscription_id"])),
                daily=_non_negative_int(entry.get("daily", 0), "daily"),
                monthly=_non_negative_int(entry.get("monthly", 0), "monthly"),
            )
        )

    return ProvenanceV2(
        purchased=_non_negative_int(metadata["purchased"], "purchased"),
        subscriptions=tuple(allocations),
    )


def _parse_v1(metadata: Mapping[str, Any]) -> ProvenanceV1:
    raw_id = metadata.get("subscription_id")
    return ProvenanceV1(
        subscription_id=UUID(str(raw_id)) if raw_id else None,
        daily_used=_non_negative_int(metadata["daily_used"], "daily_used"),
        monthly_used=_non_negative_int(metadata["monthly_used"], "monthly_used"),
        purchased_used=_non_negative_int(metadata["purchased_used"], "purchased_used"),
    )


def parse_provenance(metadata: Any) -> Provenance:
    """Decode deduction metadata into a provenance variant."""
    if not isinstance(metadata, Mapping):
        return UnrecognizedProvenance(raw=metadata)

    try:
        if "version" in metadata:
            if metadata["version"] == PROVENANCE_VERSION:
                return _parse_v2(metadata)
            return UnrecognizedProvenance(raw=metadata)
        if {"daily_used", "monthly_used", "purchased_used"} <= metadata.keys():
            return _parse_v1(metadata)
    except (KeyError, TypeError, ValueError):
        return UnrecognizedProvenance(raw=metadata)

    return UnrecognizedProvenance(raw=metadata)
