from typing import List, Optional

from pydantic import BaseModel, Field

class ProductImportRow(BaseModel):
    sku: Optional[str] = None
    product_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    images: Optional[List[str]] = None
    primary_image_url: Optional[str] = None
    in_stock: Optional[bool] = None
    stock_quantity: Optional[int] = None

class ProductImportIn(BaseModel):
    products: List[ProductImportRow] = Field(min_length=1, max_length=5000)

class ProductImportOut(BaseModel):
    created: int
    updated: int
    skipped: int
