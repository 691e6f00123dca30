from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)


Base = declarative_base()

# Key statuses
K_AVAILABLE = "available"
K_HELD = "held"
K_SOLD = "sold"

# Order statuses
O_PENDING = "pending"
O_COMPLETED = "completed"


# ----------------------------
# ORM models
# ----------------------------
class Brand(Base):
    __tablename__ = "brands"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    # [{"name": "1 Month", "price": 299.0}, ...]
    plans = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)


class Key(Base):
    __tablename__ = "keys"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # denormalized match key (brand_id, plan), not a FK to a plan row
    brand_id = Column(Integer, nullable=False)
    plan = Column(String, nullable=False)
    key_value = Column(String, nullable=False, unique=True)

    # available | held | sold
    status = Column(String, nullable=False, default=K_AVAILABLE)
    order_id = Column(String, nullable=True)
    held_until = Column(Float, nullable=True)
    sold_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("keys_brand_plan_status_idx", "brand_id", "plan", "status"),
        Index("keys_order_id_idx", "order_id"),
    )


class Order(Base):
    __tablename__ = "orders"
    order_id = Column(String, primary_key=True)
    brand_id = Column(Integer, nullable=False)
    plan_name = Column(String, nullable=False)
    amount = Column(Float, nullable=False)  # major units (INR)

    # pending | completed
    status = Column(String, nullable=False, default=O_PENDING)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)

    # gateway_order_id: set when the payment intent is opened, the only
    # gateway order whose payment may settle this order
    gateway_order_id = Column(String, nullable=True)
    # one payment settles at most one order
    payment_id = Column(String, nullable=True, unique=True)
    # signature | webhook
    verification_method = Column(String, nullable=True)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    event_id = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
