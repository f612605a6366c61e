import uuid
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from app.db.deps import Base


class ShopProduct(Base):
    __tablename__ = "shop_products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_shop_products_stock_non_negative"),
    )

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    price_minor = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="eur")
    stock_quantity = Column(Integer, nullable=False, default=0)
    stripe_price_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
