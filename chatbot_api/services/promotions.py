from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.db.models.catalog import Promotion
from chatbot_api.services.images import ImageCollector

PERCENTAGE = "percentage"


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def validity_problem(promo: Promotion, today: date) -> Optional[str]:
    """None si la promo está vigente; si no, 'not_started' | 'expired' | 'usage_limit'.

    Las fechas son inclusivas: una promo con end_date = hoy sigue vigente todo el día.
    """
    start, end = _as_date(promo.start_date), _as_date(promo.end_date)
    if start and today < start:
        return "not_started"
    if end and today > end:
        return "expired"
    if promo.max_uses and (promo.current_uses or 0) >= promo.max_uses:
        return "usage_limit"
    return None


def promotion_applies_to(promo: Promotion, product) -> bool:
    applies_to = promo.applies_to or "all"
    if applies_to == "all":
        return True
    if applies_to == "category":
        return bool(promo.applies_to_categories) and product.category in promo.applies_to_categories
    if applies_to == "products":
        return bool(promo.applies_to_product_ids) and str(product.id) in [str(p) for p in promo.applies_to_product_ids]
    return False


def discount_amount(price: float, promo: Promotion) -> float:
    """Reducción absoluta que la promo aplica sobre `price` (nunca mayor al precio)."""
    if not price or not promo.discount_value:
        return 0.0
    value = float(promo.discount_value)
    if promo.discount_type == PERCENTAGE:
        amount = price * value / 100
        if promo.max_discount and amount > float(promo.max_discount):
            amount = float(promo.max_discount)
    else:
        # 'fixed' (y el legacy 'fixed_amount')
        amount = value
    return min(amount, price)


def discounted_price(price: float, promo: Promotion) -> float:
    return round(max(0.0, price - discount_amount(price, promo)), 2)


def best_promotion(price: Optional[float], promotions: List[Promotion]) -> Optional[Promotion]:
    """La de mayor reducción absoluta; en empate gana la primera encontrada."""
    if not price:
        return None
    best, best_amount = None, 0.0
    for promo in promotions:
        amount = discount_amount(price, promo)
        if amount > best_amount:
            best, best_amount = promo, amount
    return best


def format_discount(promo: Promotion, currency: str = "RM", price_visible: bool = True) -> Optional[str]:
    if promo.discount_value is None:
        return None
    value = float(promo.discount_value)
    shown = f"{value:g}"
    if promo.discount_type == PERCENTAGE:
        return f"{shown}% OFF"
    # un monto fijo es un precio: no sale si los precios están ocultos
    if not price_visible:
        return None
    return f"{currency}{shown} OFF"


def format_promotion(promo: Promotion, *, price_visible: bool, images: Optional[ImageCollector] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(promo.id),
        "title": promo.title,
        "description": promo.description,
        "promo_code": promo.promo_code,
        "discount": format_discount(promo, price_visible=price_visible),
        "discount_type": promo.discount_type,
        "valid_from": _iso(promo.start_date),
        "valid_until": _iso(promo.end_date),
        "terms": promo.terms_and_conditions,
        "applies_to": promo.applies_to or "all",
    }
    if price_visible or promo.discount_type == PERCENTAGE:
        data["discount_value"] = promo.discount_value
    if promo.banner_image_url:
        data["banner_image"] = promo.banner_image_url
        data["image_tag"] = f"[IMAGE:{promo.banner_image_url}:{promo.title}]"
        if images is not None:
            data["image_ref"] = images.add(promo.banner_image_url, promo.title, "promotion")
    return data


def _iso(value) -> Optional[str]:
    d = _as_date(value)
    return d.isoformat() if d else None


async def list_valid_promotions(
    session: AsyncSession,
    chatbot_id: str,
    *,
    today: Optional[date] = None,
    limit: Optional[int] = None,
) -> List[Promotion]:
    """Promos activas, dentro de su ventana de fechas y con usos disponibles."""
    today = today or today_utc()
    q = (
        select(Promotion)
        .where(Promotion.chatbot_id == chatbot_id, Promotion.is_active.is_(True))
        .order_by(Promotion.created_at.desc(), Promotion.title)
    )
    rows = (await session.execute(q)).scalars().all()
    valid = [p for p in rows if validity_problem(p, today) is None]
    return valid[:limit] if limit else valid


async def validate_promo_code(
    session: AsyncSession,
    chatbot_id: str,
    promo_code: str,
    *,
    price_visible: bool = True,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    today = today or today_utc()
    code = (promo_code or "").strip()
    promo = None
    if code:
        promo = (await session.execute(
            select(Promotion)
            .where(
                Promotion.chatbot_id == chatbot_id,
                Promotion.is_active.is_(True),
                func.lower(Promotion.promo_code) == code.lower(),
            )
            .limit(1)
        )).scalars().first()

    if not promo:
        return {
            "success": False,
            "valid": False,
            "message": f'Promo code "{code}" is not valid or does not exist',
        }

    problem = validity_problem(promo, today)
    if problem == "not_started":
        return {
            "success": True,
            "valid": False,
            "message": f'Promo code "{code}" is not active yet. It starts on {_iso(promo.start_date)}',
            "promotion": {"title": promo.title, "start_date": _iso(promo.start_date)},
        }
    if problem == "expired":
        return {
            "success": True,
            "valid": False,
            "message": f'Promo code "{code}" has expired on {_iso(promo.end_date)}',
            "promotion": {"title": promo.title, "end_date": _iso(promo.end_date)},
        }
    if problem == "usage_limit":
        return {
            "success": True,
            "valid": False,
            "message": f'Promo code "{code}" has reached its maximum usage limit',
            "promotion": {"title": promo.title},
        }

    details = format_promotion(promo, price_visible=price_visible)
    return {
        "success": True,
        "valid": True,
        "message": f'Promo code "{code}" is valid!',
        "promotion": {
            "title": details["title"],
            "description": details["description"],
            "discount": details["discount"],
            "discount_type": details["discount_type"],
            "discount_value": details.get("discount_value"),
            "valid_until": details["valid_until"],
            "terms": details["terms"],
        },
    }
