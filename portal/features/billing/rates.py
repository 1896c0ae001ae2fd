"""
Billing rate table.

Single source of every multiplier used to price usage: quotes, invoice
previews, the daily cost estimate and the Stripe usage reporter all import
from here. Do not copy these numbers anywhere else.
"""
from typing import Any, Dict, Mapping, Optional, Union

# Credits per unit of compute
CPU_CREDITS_PER_HOUR = 1.0
GPU_CREDITS_PER_HOUR = 10.0
RAM_CREDITS_PER_GB_HOUR = 0.1

# Dollars per credit
CREDIT_UNIT_PRICE = 0.35

# Dollars per unit for non-compute resources
ONLINE_STORAGE_GB_MONTH = 0.50
OFFLINE_STORAGE_GB_MONTH = 0.03
NETWORK_EGRESS_GB = 0.10

# Stripe sums one report per day over the period to approximate GB-months
STORAGE_PRORATION_DAYS = 30

UsageLike = Union[Mapping[str, Any], Any]


def _field(usage: UsageLike, name: str) -> float:
    if isinstance(usage, Mapping):
        value = usage.get(name)
    else:
        value = getattr(usage, name, None)
    return float(value) if value is not None else 0.0


def credits_used(usage: UsageLike) -> float:
    """Credits for a usage record with optional cpu_hours, gpu_hours and ram_gb_hours."""
    return (
        _field(usage, "cpu_hours") * CPU_CREDITS_PER_HOUR
        + _field(usage, "gpu_hours") * GPU_CREDITS_PER_HOUR
        + _field(usage, "ram_gb_hours") * RAM_CREDITS_PER_GB_HOUR
    )


def dollar_amount(credits: float, unit_price: float = CREDIT_UNIT_PRICE) -> float:
    """Dollars for a number of credits. Rounding belongs to display and invoicing."""
    return credits * unit_price


def prorate_storage(gb_snapshot: Optional[float]) -> float:
    """Daily share of a point-in-time storage snapshot."""
    if not gb_snapshot:
        return 0.0
    return float(gb_snapshot) / STORAGE_PRORATION_DAYS


def estimate_daily_cost(usage: UsageLike) -> float:
    """Dollar cost of one usage_daily row: compute credits plus prorated storage and egress."""
    compute = dollar_amount(credits_used(usage))
    storage = (
        prorate_storage(_field(usage, "online_storage_gb")) * ONLINE_STORAGE_GB_MONTH
        + prorate_storage(_field(usage, "offline_storage_gb")) * OFFLINE_STORAGE_GB_MONTH
    )
    egress = _field(usage, "network_egress_gb") * NETWORK_EGRESS_GB
    return compute + storage + egress


def rate_card() -> Dict[str, Dict[str, float]]:
    """Public pricing, derived from the multipliers above."""
    return {
        "credits": {
            "cpu_hour": CPU_CREDITS_PER_HOUR,
            "gpu_hour": GPU_CREDITS_PER_HOUR,
            "ram_gb_hour": RAM_CREDITS_PER_GB_HOUR,
            "unit_price": CREDIT_UNIT_PRICE,
        },
        "dollars": {
            "cpu_hour": dollar_amount(CPU_CREDITS_PER_HOUR),
            "gpu_hour": dollar_amount(GPU_CREDITS_PER_HOUR),
            "ram_gb_hour": dollar_amount(RAM_CREDITS_PER_GB_HOUR),
            "online_storage_gb_month": ONLINE_STORAGE_GB_MONTH,
            "offline_storage_gb_month": OFFLINE_STORAGE_GB_MONTH,
            "network_egress_gb": NETWORK_EGRESS_GB,
        },
    }
