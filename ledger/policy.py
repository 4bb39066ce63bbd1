from typing import Optional

from .models import StoreSettings
from .utils import HOUR_MS, now_epoch_ms


class CancelHoursPolicy:
    """Refunds are owed only when a reservation is cancelled at least
    ``cancel_hours`` before it starts; the store setting wins over the default.
    """

    def __init__(self, default_cancel_hours: int = 24):
        self.default_cancel_hours = default_cancel_hours

    def cancel_hours(self, store: StoreSettings) -> int:
        if store.cancel_hours is None:
            return self.default_cancel_hours
        return store.cancel_hours

    def hours_until(self, reservation_time: int, now: int) -> float:
        return (reservation_time - now) / HOUR_MS

    def is_within_no_refund_window(
        self, reservation_time: int, store: StoreSettings, now: Optional[int] = None
    ) -> bool:
        if now is None:
            now = now_epoch_ms()
        return self.hours_until(reservation_time, now) < self.cancel_hours(store)
