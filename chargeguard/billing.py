from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def _dec(value) -> Decimal:
    return Decimal(str(value))


def energy_delivered_kwh(initial_wh: float, final_wh: float) -> float:
    """Energy between two cumulative Wh counters, in kWh, never negative."""
    return max(0.0, (final_wh - initial_wh) / 1000)


def round2(value) -> float:
    return float(_dec(value).quantize(CENT, rounding=ROUND_HALF_UP))


def final_amount(energy_kwh: float, price_per_kwh: float, tax: float) -> float:
    """``energy * price * tax`` rounded half-up to cents; ``tax`` is a multiplier."""
    return round2(_dec(energy_kwh) * _dec(price_per_kwh) * _dec(tax))
