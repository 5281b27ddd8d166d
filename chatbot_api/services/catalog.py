from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.db.models.catalog import Product, Promotion
from chatbot_api.services.images import ImageCollector, image_marker
from chatbot_api.services.promotions import (
    best_promotion, discounted_price, format_discount, promotion_applies_to,
)
from chatbot_api.utils.ids import is_uuid

UNCATEGORIZED = "Uncategorized"


def product_image_url(product: Product) -> Optional[str]:
    return product.primary_image_url or (product.images[0] if product.images else None)


def process_products_with_promotions(
    products: Iterable[Product],
    promotions: List[Promotion],
    *,
    price_visible: bool,
    images: Optional[ImageCollector] = None,
) -> List[Dict[str, Any]]:
    """Da forma a los productos para el modelo.

    Con precios visibles: original_price, current_price y la mejor promo aplicable.
    Con precios ocultos: price_hidden=True y ningún campo numérico de precio.
    Si hay imagen: image_tag ([IMAGE:url:name]) e image_ref registrado en `images`.
    """
    out: List[Dict[str, Any]] = []
    for p in products:
        applicable = [promo for promo in promotions if promotion_applies_to(promo, p)]
        price = float(p.price) if p.price is not None else None
        promo = best_promotion(price, applicable)

        item: Dict[str, Any] = {
            "id": str(p.id),
            "name": p.product_name,
            "sku": p.sku,
            "category": p.category or UNCATEGORIZED,
            "description": p.description,
            "in_stock": bool(p.in_stock),
            "stock_quantity": p.stock_quantity,
        }

        if price_visible:
            item["currency"] = p.currency or "MYR"
            item["original_price"] = price
            item["current_price"] = discounted_price(price, promo) if promo else price
            item["has_discount"] = promo is not None
            item["discount_display"] = format_discount(promo) if promo else None
            item["applied_promotion"] = {
                "id": str(promo.id),
                "title": promo.title,
                "promo_code": promo.promo_code,
                "discount_type": promo.discount_type,
                "discount_value": promo.discount_value,
            } if promo else None
        else:
            item["price_hidden"] = True
            item["applied_promotion"] = {
                "title": promo.title,
                "promo_code": promo.promo_code,
            } if promo else None

        url = product_image_url(p)
        item["has_image"] = bool(url)
        if url:
            item["image_url"] = url
            item["image_tag"] = image_marker(url, p.product_name)
            if images is not None:
                item["image_ref"] = images.add(url, p.product_name, "product")
        out.append(item)
    return out


def group_by_category(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        grouped.setdefault(item["category"], []).append(item)
    return grouped


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# =========================
# Consultas (siempre filtradas por chatbot_id)
# =========================
async def fetch_catalog(session: AsyncSession, chatbot_id: str, *, include_out_of_stock: bool = False) -> List[Product]:
    q = (
        select(Product)
        .where(Product.chatbot_id == chatbot_id, Product.is_active.is_(True))
        .order_by(Product.category, Product.product_name)
    )
    if not include_out_of_stock:
        q = q.where(Product.in_stock.is_(True))
    return list((await session.execute(q)).scalars().all())


async def search_products(session: AsyncSession, chatbot_id: str, query: str, *, limit: int = 10) -> List[Product]:
    pattern = _like_pattern((query or "").strip())
    q = (
        select(Product)
        .where(
            Product.chatbot_id == chatbot_id,
            Product.is_active.is_(True),
            or_(
                Product.product_name.ilike(pattern, escape="\\"),
                Product.category.ilike(pattern, escape="\\"),
                Product.sku.ilike(pattern, escape="\\"),
                Product.description.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(Product.created_at.desc(), Product.product_name)
        .limit(limit)
    )
    return list((await session.execute(q)).scalars().all())


async def get_product(session: AsyncSession, chatbot_id: str, product_id: str) -> Optional[Product]:
    if not is_uuid(product_id):
        return None
    q = select(Product).where(Product.id == str(product_id), Product.chatbot_id == chatbot_id)
    return (await session.execute(q)).scalars().first()


async def list_categories(session: AsyncSession, chatbot_id: str) -> List[str]:
    q = (
        select(Product.category)
        .where(Product.chatbot_id == chatbot_id, Product.is_active.is_(True), Product.category.is_not(None))
        .distinct()
        .order_by(Product.category)
    )
    return [c for c in (await session.execute(q)).scalars().all() if c]


async def products_by_category(session: AsyncSession, chatbot_id: str, category: str, *, limit: int = 20) -> List[Product]:
    # categoría exacta; pensado para usarse después de list_product_categories
    q = (
        select(Product)
        .where(Product.chatbot_id == chatbot_id, Product.is_active.is_(True), Product.category == category)
        .order_by(Product.created_at.desc(), Product.product_name)
        .limit(limit)
    )
    return list((await session.execute(q)).scalars().all())


# =========================
# Importación de catálogo (dedupe por SKU)
# =========================
PRODUCT_FIELDS = (
    "product_name", "description", "category", "price", "currency",
    "images", "primary_image_url", "in_stock", "stock_quantity",
)


async def import_products(session: AsyncSession, chatbot_id: str, user_id: str, rows: List[Dict[str, Any]]) -> Dict[str, int]:
    """Upsert de productos por (chatbot_id, sku).

    Filas sin SKU o sin nombre se saltean; si un SKU se repite en el lote, gana la última fila.
    """
    latest: Dict[str, Dict[str, Any]] = {}
    skipped = 0
    for row in rows:
        sku = str(row.get("sku") or "").strip()
        if not sku or not str(row.get("product_name") or "").strip():
            skipped += 1
            continue
        latest[sku] = row

    existing = {}
    if latest:
        q = select(Product).where(Product.chatbot_id == chatbot_id, Product.sku.in_(list(latest)))
        existing = {p.sku: p for p in (await session.execute(q)).scalars().all()}

    created = updated = 0
    for sku, row in latest.items():
        values = {f: row[f] for f in PRODUCT_FIELDS if f in row and row[f] is not None}
        product = existing.get(sku)
        if product:
            for field, value in values.items():
                setattr(product, field, value)
            updated += 1
        else:
            session.add(Product(chatbot_id=chatbot_id, user_id=user_id, sku=sku, **values))
            created += 1

    await session.commit()
    return {"created": created, "updated": updated, "skipped": skipped}
