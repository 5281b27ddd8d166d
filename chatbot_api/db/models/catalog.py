from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Numeric, Date, DateTime, ForeignKey, UniqueConstraint, Uuid, func,
)
from chatbot_api.db.base import Base, StringList
from chatbot_api.utils.ids import new_id

class Product(Base):
    __tablename__ = "chatbot_products"
    __table_args__ = (
        # el SKU es la clave de dedupe al importar el catálogo
        UniqueConstraint("chatbot_id", "sku", name="uq_product_sku"),
    )

    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    chatbot_id = Column(Uuid(as_uuid=False), ForeignKey("avatars.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=False)

    sku = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String)

    price = Column(Numeric(10, 2, asdecimal=False))
    currency = Column(String, default="MYR")

    images = Column(StringList, default=list)
    primary_image_url = Column(String)

    in_stock = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class Promotion(Base):
    __tablename__ = "chatbot_promotions"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    chatbot_id = Column(Uuid(as_uuid=False), ForeignKey("avatars.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text)
    promo_code = Column(String)

    discount_type = Column(String, nullable=False, default="percentage")   # 'percentage' | 'fixed'
    discount_value = Column(Numeric(10, 2, asdecimal=False))
    max_discount = Column(Numeric(10, 2, asdecimal=False))                 # tope para 'percentage'

    banner_image_url = Column(String)
    terms_and_conditions = Column(Text)

    start_date = Column(Date)
    end_date = Column(Date)
    is_active = Column(Boolean, nullable=False, default=True)

    max_uses = Column(Integer)
    current_uses = Column(Integer, nullable=False, default=0)

    applies_to = Column(String, nullable=False, default="all")            # 'all' | 'category' | 'products'
    applies_to_categories = Column(StringList)
    applies_to_product_ids = Column(StringList)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
