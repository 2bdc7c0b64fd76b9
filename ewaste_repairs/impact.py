from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from ewaste_repairs.domain import NotificationDraft, NotificationType
from ewaste_repairs.errors import ValidationError

POINTS_PER_KG = 10
MAX_CARBON_KG = Decimal(2**63 - 1) / POINTS_PER_KG


def parse_carbon(value: object) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("carbonSaved must be a number.")
    try:
        carbon = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("carbonSaved must be a number.") from None
    if not carbon.is_finite() or carbon < 0:
        raise ValidationError("carbonSaved must be a non-negative number.")
    if carbon > MAX_CARBON_KG:
        raise ValidationError("carbonSaved is too large.")
    return carbon


def carbon_points(carbon_saved: Decimal) -> int:
    """Points earned for ``carbon_saved`` kilograms: floor(kg * 10)."""
    return int((carbon_saved * POINTS_PER_KG).to_integral_value(rounding=ROUND_FLOOR))


def achievement_notification(user_id: int, carbon_saved: Decimal, points: int) -> NotificationDraft:
    return NotificationDraft(
        user_id=user_id,
        title="Environmental impact recorded",
        message=(
            f"You saved {carbon_saved.normalize():f} kg of CO2 and earned {points} points."
        ),
        type=NotificationType.ACHIEVEMENT,
    )
