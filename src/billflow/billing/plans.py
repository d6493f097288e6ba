"""Read-only plan catalog: plan id x billing interval -> Stripe price."""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from billflow.billing.errors import UnknownPlanError
from billflow.config.settings import AppConfig

logger = logging.getLogger(__name__)

INTERVALS = ("month", "year")

_INTERVAL_ALIASES = {
    "month": "month",
    "monthly": "month",
    "year": "year",
    "yearly": "year",
    "annual": "year",
}

# Substrings that mark a price reference copied from a template but never filled in
_PLACEHOLDER_MARKERS = ("your_", "placeholder", "changeme", "replace_me")


@dataclass(frozen=True)
class PlanPrice:
    """A configured price for one plan and interval."""

    plan_id: str
    interval: str
    price_id: str
    amount: int | None = None  # minor currency units


def normalize_interval(interval: str) -> str | None:
    """Map an interval or one of its aliases to 'month' / 'year'."""
    return _INTERVAL_ALIASES.get(interval.strip().lower())


def is_placeholder(price_id: str | None) -> bool:
    """True when a price reference is blank or still a template value."""
    if price_id is None or not price_id.strip():
        return True
    lowered = price_id.lower()
    return any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


class PlanCatalog:
    """Immutable plan configuration injected into the provisioner.

    Placeholder entries are kept but resolve exactly like missing ones, so a
    half-configured deployment fails with UnknownPlanError instead of sending
    a template id to Stripe.
    """

    def __init__(
        self,
        prices: Mapping[str, Mapping[str, str]],
        amounts: Mapping[str, Mapping[str, int]] | None = None,
    ):
        amounts = amounts or {}
        entries: dict[tuple[str, str], PlanPrice] = {}
        for plan_id, by_interval in prices.items():
            for raw_interval, price_id in by_interval.items():
                interval = normalize_interval(raw_interval)
                if interval is None:
                    logger.warning(
                        f"Ignoring price for plan {plan_id}: unknown interval '{raw_interval}'"
                    )
                    continue
                amount = (amounts.get(plan_id) or {}).get(raw_interval)
                entries[(plan_id, interval)] = PlanPrice(
                    plan_id=plan_id,
                    interval=interval,
                    price_id=price_id,
                    amount=amount,
                )
        self._entries = MappingProxyType(entries)

    @classmethod
    def from_config(cls, config: AppConfig) -> "PlanCatalog":
        catalog = cls(config.plan_prices, config.plan_amounts)
        unconfigured = [
            f"{p.plan_id}/{p.interval}" for p in catalog._entries.values() if is_placeholder(p.price_id)
        ]
        if unconfigured:
            logger.warning(f"Plan prices still unconfigured: {', '.join(sorted(unconfigured))}")
        return catalog

    def resolve(self, plan_id: str, interval: str) -> PlanPrice:
        """Look up the configured price for a plan and interval.

        Raises:
            UnknownPlanError: If the combination is missing or still a placeholder
        """
        normalized = normalize_interval(interval)
        entry = self._entries.get((plan_id, normalized)) if normalized else None
        if entry is None or is_placeholder(entry.price_id):
            raise UnknownPlanError(f"Invalid plan or interval: {plan_id}/{interval}")
        return entry

    def configured(self) -> list[PlanPrice]:
        """All entries with a real price reference."""
        return [p for p in self._entries.values() if not is_placeholder(p.price_id)]
