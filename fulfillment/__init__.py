from .authorizer import Action, RoleAuthorizer, PERMISSIONS
from .deadlines import DeadlineTracker, TimeRemaining
from .delivery import DeliveryHandoff
from .errors import (
    FulfillmentError, InvalidTransition, ConcurrentModification, ValidationError, NotFound,
)
from .interfaces import Actor, CartLine, DeliveryFeeLookup, StaticDeliveryFees
from .ledger import PaymentLedger
from .read_model import order_view
from .state_machine import OrderStateMachine
from .states import (
    OrderStatus, PriceApprovalStatus, DepositStatus, PaymentReviewStatus, PaymentKind,
    Role, NotificationType, ALLOWED_TRANSITIONS, PRODUCTION_STATES, PRE_PRODUCTION_STATES,
)

__all__ = [
    "Action", "RoleAuthorizer", "PERMISSIONS",
    "DeadlineTracker", "TimeRemaining",
    "DeliveryHandoff",
    "FulfillmentError", "InvalidTransition", "ConcurrentModification", "ValidationError", "NotFound",
    "Actor", "CartLine", "DeliveryFeeLookup", "StaticDeliveryFees",
    "PaymentLedger",
    "order_view",
    "OrderStateMachine",
    "OrderStatus", "PriceApprovalStatus", "DepositStatus", "PaymentReviewStatus", "PaymentKind",
    "Role", "NotificationType", "ALLOWED_TRANSITIONS", "PRODUCTION_STATES", "PRE_PRODUCTION_STATES",
]
