"""
Costbook Costing Engine — Configuration
=========================================
Doctrine: the engine never decides WHICH method a product uses.

The method mapping (product → category → organization default) is
owned outside the engine and injected as a MethodResolver. It is
read once per operation and never cached: the mapping may change
between calls and the engine must always see the latest one.

Engine-level knobs (negative stock, precision, checkpoints) live in
CostingSettings, read from Django settings (COSTBOOK_COSTING).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Dict, FrozenSet, Mapping, Optional, Protocol, Union

from engines.costing.errors import ConfigurationConflictError
from engines.costing.numeric import (
    DEFAULT_AVERAGE_COST_EXTRA_PLACES,
    DEFAULT_CURRENCY_PLACES,
)


# ══════════════════════════════════════════════════════════════
# COSTING METHOD
# ══════════════════════════════════════════════════════════════

class CostingMethod(Enum):
    FIFO = "FIFO"                           # oldest lot consumed first
    WEIGHTED_AVERAGE = "WEIGHTED_AVERAGE"   # single running average per pair

    @classmethod
    def parse(cls, value: Union["CostingMethod", str, None]) -> "CostingMethod":
        """Accept enum members and the spellings external config uses."""
        if isinstance(value, CostingMethod):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationConflictError(
                f"Costing method must be a non-empty string, got {value!r}."
            )
        normalised = value.strip().upper().replace("-", "_").replace(" ", "_")
        method = _METHOD_ALIASES.get(normalised)
        if method is None:
            raise ConfigurationConflictError(
                f"Unrecognised costing method: {value!r}.",
                details={"method": value},
            )
        return method


_METHOD_ALIASES: Dict[str, CostingMethod] = {
    "FIFO": CostingMethod.FIFO,
    "WEIGHTED_AVERAGE": CostingMethod.WEIGHTED_AVERAGE,
    "WAC": CostingMethod.WEIGHTED_AVERAGE,
    "AVERAGE": CostingMethod.WEIGHTED_AVERAGE,
    "AVCO": CostingMethod.WEIGHTED_AVERAGE,
}


# ══════════════════════════════════════════════════════════════
# METHOD RESOLVER PROTOCOL
# ══════════════════════════════════════════════════════════════

class MethodResolver(Protocol):
    """
    External costing configuration lookup (read-only to the engine).

    Returns the active method for a product, or None when neither the
    product, its category nor its organization has one.
    """

    def resolve_method(self, product_id: str) -> Optional[Union[CostingMethod, str]]:
        ...  # pragma: no cover


def resolve_or_raise(resolver: MethodResolver, product_id: str) -> CostingMethod:
    raw = resolver.resolve_method(product_id)
    if raw is None:
        raise ConfigurationConflictError(
            f"No costing method configured for product {product_id} "
            f"and no applicable default.",
            details={"product_id": product_id},
        )
    return CostingMethod.parse(raw)


# ══════════════════════════════════════════════════════════════
# IN-MEMORY CONFIGURATION (for testing / bootstrap)
# ══════════════════════════════════════════════════════════════

class CostingConfiguration:
    """
    Product override, else category, else organization default.

    Thread-safe: the administrative side may update the mapping while
    operations are resolving against it.
    """

    def __init__(
        self,
        organization_default: Optional[Union[CostingMethod, str]] = None,
    ) -> None:
        self._lock = Lock()
        self._organization_default = organization_default
        self._product_methods: Dict[str, Union[CostingMethod, str]] = {}
        self._category_methods: Dict[str, Union[CostingMethod, str]] = {}
        self._product_categories: Dict[str, str] = {}

    def set_organization_default(self, method: Optional[Union[CostingMethod, str]]) -> None:
        with self._lock:
            self._organization_default = method

    def set_category_method(self, category_id: str, method: Union[CostingMethod, str]) -> None:
        with self._lock:
            self._category_methods[category_id] = method

    def set_product_method(self, product_id: str, method: Union[CostingMethod, str]) -> None:
        with self._lock:
            self._product_methods[product_id] = method

    def clear_product_method(self, product_id: str) -> None:
        with self._lock:
            self._product_methods.pop(product_id, None)

    def assign_category(self, product_id: str, category_id: str) -> None:
        with self._lock:
            self._product_categories[product_id] = category_id

    def resolve_method(self, product_id: str) -> Optional[Union[CostingMethod, str]]:
        with self._lock:
            if product_id in self._product_methods:
                return self._product_methods[product_id]
            category_id = self._product_categories.get(product_id)
            if category_id is not None and category_id in self._category_methods:
                return self._category_methods[category_id]
            return self._organization_default


# ══════════════════════════════════════════════════════════════
# ENGINE SETTINGS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CostingSettings:
    """
    Engine-level settings.

    allow_negative_stock:      global default for issues beyond on-hand.
    negative_stock_products:   products allowed negative stock regardless.
    currency_places:           money precision (totals, COGS).
    average_cost_extra_places: places beyond currency for unit costs.
    checkpoint_interval:       in-order transactions between replay checkpoints.
    cascade_transfers:         re-cost transfer destinations after a
                               source recalculation changes their cost.
    """

    allow_negative_stock: bool = False
    negative_stock_products: FrozenSet[str] = field(default_factory=frozenset)
    currency_places: int = DEFAULT_CURRENCY_PLACES
    average_cost_extra_places: int = DEFAULT_AVERAGE_COST_EXTRA_PLACES
    checkpoint_interval: int = 50
    cascade_transfers: bool = True

    def __post_init__(self) -> None:
        if self.currency_places < 0:
            raise ValueError("currency_places cannot be negative.")
        if self.average_cost_extra_places < 0:
            raise ValueError("average_cost_extra_places cannot be negative.")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be at least 1.")

    @property
    def cost_places(self) -> int:
        return self.currency_places + self.average_cost_extra_places

    def negative_stock_allowed(self, product_id: str) -> bool:
        return self.allow_negative_stock or product_id in self.negative_stock_products

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CostingSettings":
        known = {
            "allow_negative_stock",
            "negative_stock_products",
            "currency_places",
            "average_cost_extra_places",
            "checkpoint_interval",
            "cascade_transfers",
        }
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown costing settings: {sorted(unknown)}.")
        kwargs = dict(data)
        if "negative_stock_products" in kwargs:
            kwargs["negative_stock_products"] = frozenset(kwargs["negative_stock_products"])
        return cls(**kwargs)

    @classmethod
    def from_django_settings(cls) -> "CostingSettings":
        """Read COSTBOOK_COSTING from the active Django settings module."""
        from django.conf import settings

        return cls.from_mapping(getattr(settings, "COSTBOOK_COSTING", {}))
