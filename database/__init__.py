from .connection import get_db, init_db, drop_db, close_db, engine
from .models import Order, OrderItem, Payment, TimelineEvent, NotificationEvent, Review, Base

__all__ = [
    "get_db", "init_db", "drop_db", "close_db", "engine",
    "Order", "OrderItem", "Payment", "TimelineEvent", "NotificationEvent", "Review", "Base",
]
