# File: src/fleetpark/domain/pricing.py
"""
Pricing Calculator

Cost of a reservation window at a lot's hourly rate. Arithmetic is done
in Decimal from the window's exact microsecond length so fractional hours
are kept and no binary float rounding reaches the final amount.

The strategy interface lets a deployment swap in another tariff without
touching the lifecycle service; HourlyPricingStrategy is the default.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
import logging

from .exceptions import InvalidWindowError
from .models import ParkingLot, quantize_money


_MICROSECONDS_PER_HOUR = Decimal(3600 * 10 ** 6)


def _microseconds(delta: timedelta) -> int:
    return (delta.days * 86400 + delta.seconds) * 10 ** 6 + delta.microseconds


def duration_hours(start_time: datetime, end_time: datetime) -> Decimal:
    """Exact window length in hours, fractional part kept"""
    if end_time <= start_time:
        raise InvalidWindowError(
            "End time must be after start time",
            {"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )
    return Decimal(_microseconds(end_time - start_time)) / _MICROSECONDS_PER_HOUR


def compute_cost(start_time: datetime, end_time: datetime, price_per_hour: Decimal) -> Decimal:
    """
    hours(start, end) * price_per_hour, rounded half-up to 2 decimals

    >>> compute_cost(datetime(2030, 1, 15, 10), datetime(2030, 1, 15, 12), Decimal("15.00"))
    Decimal('30.00')
    """
    rate = Decimal(str(price_per_hour))
    return quantize_money(duration_hours(start_time, end_time) * rate)


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class PricingStrategy(ABC):
    """Abstract base class for reservation pricing"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate(self, parking_lot: ParkingLot, start_time: datetime, end_time: datetime) -> Decimal:
        """Return the total cost of the window at this lot"""
        pass

    def get_strategy_name(self) -> str:
        return self.__class__.__name__


class HourlyPricingStrategy(PricingStrategy):
    """Linear hourly tariff using the lot's price_per_hour"""

    def calculate(self, parking_lot: ParkingLot, start_time: datetime, end_time: datetime) -> Decimal:
        cost = compute_cost(start_time, end_time, parking_lot.price_per_hour)
        self.logger.debug(
            f"Priced {duration_hours(start_time, end_time)}h at lot {parking_lot.id} "
            f"({parking_lot.price_per_hour}/h): {cost}"
        )
        return cost
