from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from ..errors import ValidationFailed
from ..models import Slots, VehicleCandidate
from ..services.config_provider import BookingPricing


def _cents(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BookingQuote:
    vehicle_id: str
    title: str
    location: str
    start_date: date
    end_date: date
    days: int
    daily_rate: float
    subtotal: float
    service_fee: float
    estimated_tax: float
    estimated_total: float
    deposit_amount: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


def build_quote(slots: Slots, vehicle: VehicleCandidate, pricing: BookingPricing) -> BookingQuote:
    """Price a rental: fee on the subtotal, tax on subtotal plus fee, all to the cent."""
    if not slots.start_date or not slots.end_date:
        raise ValidationFailed("quote needs start_date and end_date")
    days = slots.rental_days()
    rate = Decimal(str(vehicle.daily_rate))
    subtotal = _cents(rate * days)
    service_fee = _cents(subtotal * Decimal(str(pricing.service_fee_percent)))
    tax = _cents((subtotal + service_fee) * Decimal(str(pricing.tax_rate)))
    total = _cents(subtotal + service_fee + tax)
    return BookingQuote(
        vehicle_id=vehicle.vehicle_id,
        title=vehicle.title,
        location=slots.location or vehicle.location,
        start_date=slots.start_date,
        end_date=slots.end_date,
        days=days,
        daily_rate=vehicle.daily_rate,
        subtotal=float(subtotal),
        service_fee=float(service_fee),
        estimated_tax=float(tax),
        estimated_total=float(total),
        deposit_amount=vehicle.deposit_amount,
    )
