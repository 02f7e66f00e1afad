import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import relationship

from app.database.base import Base


class OrderStatus(str, enum.Enum):
    PREPARING = "Preparing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    external_id = Column(String(50), unique=True, nullable=True, index=True)
    order_number = Column(String(20), unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(
        Enum(
            OrderStatus,
            name="order_status",
            values_callable=lambda e: [member.value for member in e],
            validate_strings=True,
        ),
        nullable=False,
        default=OrderStatus.PREPARING,
    )
    description = Column(Text, nullable=True)

    created_by = Column(String(100), nullable=True)
    last_modified_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_modified_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True, index=True)

    client = relationship("Client", back_populates="orders")
