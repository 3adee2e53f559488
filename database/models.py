from sqlalchemy import (
    Column, String, Integer, Numeric, Boolean, DateTime, JSON, Text, ForeignKey, event,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    version = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    courier_id = Column(String, nullable=True, index=True)

    city_id = Column(String, nullable=False)
    delivery_address = Column(Text, nullable=False)
    seller_address = Column(Text, nullable=True)
    is_service_order = Column(Boolean, nullable=False, default=False)

    # Money
    total_price = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    requires_deposit = Column(Boolean, nullable=False, default=False)
    deposit_amount = Column(Numeric(10, 2), nullable=False, default=0)
    deposit_status = Column(String, nullable=False, default="not_paid")
    payment_status = Column(String, nullable=False, default="pending")
    remaining_payment_proof = Column(String, nullable=True)

    # Buyer price proposal on service orders
    original_price = Column(Numeric(10, 2), nullable=True)
    proposed_price = Column(Numeric(10, 2), nullable=True)
    price_approval_status = Column(String, nullable=True)
    price_approved_at = Column(DateTime(timezone=True), nullable=True)
    price_approval_notes = Column(Text, nullable=True)

    # Lifecycle timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    admin_approved_at = Column(DateTime(timezone=True), nullable=True)
    seller_approved_at = Column(DateTime(timezone=True), nullable=True)
    work_started_at = Column(DateTime(timezone=True), nullable=True)
    work_completed_at = Column(DateTime(timezone=True), nullable=True)
    delivery_scheduled_at = Column(DateTime(timezone=True), nullable=True)
    completion_deadline = Column(DateTime(timezone=True), nullable=True, index=True)
    is_late = Column(Boolean, nullable=False, default=False)
    delivery_picked_up_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.position",
        cascade="all, delete-orphan", lazy="selectin",
    )
    payments = relationship(
        "Payment", back_populates="order", order_by="Payment.id",
        cascade="all, delete-orphan", lazy="selectin",
    )
    timeline = relationship(
        "TimelineEvent", back_populates="order", order_by="TimelineEvent.id",
        cascade="all, delete-orphan", lazy="selectin",
    )
    notifications = relationship(
        "NotificationEvent", back_populates="order", order_by="NotificationEvent.id",
        cascade="all, delete-orphan", lazy="selectin",
    )
    review = relationship(
        "Review", back_populates="order", uselist=False,
        cascade="all, delete-orphan", lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r} version={self.version}>"

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    proof_reference = Column(String, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String, nullable=True)

    order = relationship("Order", back_populates="payments")

class TimelineEvent(Base):
    __tablename__ = "timeline_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    label = Column(String, nullable=False)
    status = Column(String, nullable=False)
    actor_role = Column(String, nullable=True)
    actor_id = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    order = relationship("Order", back_populates="timeline")

class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    payload_json = Column(JSON, nullable=True)
    ts = Column(DateTime(timezone=True), nullable=False)
    dispatched_at = Column(DateTime(timezone=True), nullable=True, index=True)

    order = relationship("Order", back_populates="notifications")

class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, unique=True)
    customer_id = Column(String, nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    order = relationship("Order", back_populates="review")

@event.listens_for(TimelineEvent, "before_update")
def _timeline_is_write_once(mapper, connection, target):
    raise RuntimeError(f"Timeline event {target.id} is write-once")
