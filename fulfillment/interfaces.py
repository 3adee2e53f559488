"""Narrow interfaces to the collaborators the lifecycle consumes."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol, Union

from .errors import ValidationError
from .states import Role


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity. Supplied by the auth layer, not verified here."""
    role: Role
    user_id: Optional[str] = None

    @classmethod
    def of(cls, role: Union[Role, str], user_id: Optional[str] = None) -> "Actor":
        try:
            return cls(role=Role(role), user_id=user_id)
        except ValueError:
            raise ValidationError(f"Unknown actor role: {role!r}", guard="unknown_role")


@dataclass(frozen=True)
class CartLine:
    """Immutable cart snapshot line taken at checkout."""
    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class DeliveryFeeLookup(Protocol):
    def fee_for(self, city_id: str) -> Decimal:
        ...


class StaticDeliveryFees:
    """City -> fee table, usually loaded from the DELIVERY_FEES setting.

    Cities missing from the table get `default`; with no default they are
    rejected as unknown.
    """

    def __init__(self, fees: Mapping[str, Union[str, int, float, Decimal]],
                 default: Optional[Union[str, int, float, Decimal]] = None):
        self._fees: Dict[str, Decimal] = {
            city: Decimal(str(fee)) for city, fee in fees.items()
        }
        self._default = Decimal(str(default)) if default is not None else None

    def fee_for(self, city_id: str) -> Decimal:
        try:
            return self._fees[city_id]
        except KeyError:
            if self._default is not None:
                return self._default
            raise ValidationError(
                f"No delivery fee configured for city {city_id!r}",
                guard="unknown_city", city_id=city_id,
            )
