import threading
import time
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Union

AMOUNT_QUANT = Decimal("0.0001")
DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000

Number = Union[Decimal, int, str]

_clock_lock = threading.Lock()
_last_epoch_ms = 0


def now_epoch_ms() -> int:
    """Epoch milliseconds, strictly increasing within the process."""
    global _last_epoch_ms
    with _clock_lock:
        now = int(time.time() * 1000)
        if now <= _last_epoch_ms:
            now = _last_epoch_ms + 1
        _last_epoch_ms = now
        return now


def to_amount(value: Number) -> Decimal:
    if isinstance(value, float):
        raise TypeError("monetary amounts must not be floats")
    return Decimal(str(value)).quantize(AMOUNT_QUANT, rounding=ROUND_HALF_UP)


def ceil_whole(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_CEILING)


def effective_rate(rate) -> Decimal:
    # a rate that is missing or not positive means 1 currency unit per point
    if rate is None:
        return Decimal("1")
    rate = Decimal(str(rate))
    return rate if rate > 0 else Decimal("1")


def cash_to_points(cash: Decimal, rate) -> Decimal:
    return to_amount(Decimal(cash) / effective_rate(rate))


def points_to_cash(points: Decimal, rate) -> Decimal:
    return to_amount(Decimal(points) * effective_rate(rate))
