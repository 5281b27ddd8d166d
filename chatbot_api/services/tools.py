import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.logging_utils import get_logger
from chatbot_api.db.models.avatar import Avatar
from chatbot_api.services import catalog, promotions
from chatbot_api.services.images import ImageCollector

logger = get_logger("chatbot_api.tools")

# =========================
# Definiciones para function calling de OpenAI
# =========================
TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "browse_full_catalog",
            "description": (
                "Get the COMPLETE product catalog grouped by category, with current prices, "
                "applied promotions and images. Preferred tool for any broad product question "
                "or recommendation: browse first, then recommend."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "include_out_of_stock": {
                        "type": "boolean",
                        "description": "Also include products that are out of stock (default: false)",
                        "default": False,
                    }
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_products",
            "description": (
                "Search products by name, category, SKU, or description (substring match). "
                "Use for exact lookups such as a known product name or SKU."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Product name, category, SKU, or keyword"},
                    "limit": {"type": "number", "description": "Maximum number of products to return (default: 10)", "default": 10},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_product_by_id",
            "description": "Get detailed information about a specific product by its ID, including image.",
            "parameters": {
                "type": "object",
                "properties": {"product_id": {"type": "string", "description": "The unique ID of the product"}},
                "required": ["product_id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_product_categories",
            "description": "Get a list of all available product categories.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_products_by_category",
            "description": "Get products in one exact category. Call list_product_categories first to get valid names.",
            "parameters": {
                "type": "object",
                "properties": {
                    "category": {"type": "string", "description": "Exact category name"},
                    "limit": {"type": "number", "description": "Maximum number of products to return (default: 20)", "default": 20},
                },
                "required": ["category"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_active_promotions",
            "description": (
                "Get all currently active promotions, sales, discounts and special offers. ALWAYS use this "
                "when customers ask about promotions, discounts, sales, deals, offers, 优惠, 折扣, or 促销."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "limit": {"type": "number", "description": "Maximum number of promotions to return (default: 10)", "default": 10}
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "validate_promo_code",
            "description": "Check if a promo code is valid and get its discount details.",
            "parameters": {
                "type": "object",
                "properties": {"promo_code": {"type": "string", "description": "The promo code to validate"}},
                "required": ["promo_code"],
            },
        },
    },
]

TOOL_NAMES = [t["function"]["name"] for t in TOOL_DEFINITIONS]


class ToolError(Exception):
    pass


def _int_arg(args: Dict[str, Any], name: str, default: int, maximum: int = 100) -> int:
    try:
        value = int(args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(1, min(maximum, value))


class ToolExecutor:
    """Ejecuta los tools pedidos por el modelo contra la DB, acotado a un chatbot.

    Cada ejecución es una lectura independiente. Los errores no cortan el turno:
    se devuelven al modelo como {"success": false, "error": ...}.
    """

    def __init__(self, session: AsyncSession, avatar: Avatar, images: Optional[ImageCollector] = None):
        self.session = session
        self.avatar = avatar
        self.chatbot_id = str(avatar.id)
        self.price_visible = avatar.price_visible is not False
        self.images = images if images is not None else ImageCollector()
        self.calls_log: List[Dict[str, Any]] = []
        self.last_debug: Dict[str, Any] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "browse_full_catalog": self.browse_full_catalog,
            "search_products": self.search_products,
            "get_product_by_id": self.get_product_by_id,
            "list_product_categories": self.list_product_categories,
            "get_products_by_category": self.get_products_by_category,
            "get_active_promotions": self.get_active_promotions,
            "validate_promo_code": self.validate_promo_code,
        }

    async def execute(self, name: str, raw_arguments: Any) -> Dict[str, Any]:
        started = time.perf_counter()
        args: Dict[str, Any] = {}
        try:
            args = self._parse_arguments(raw_arguments)
            handler = self._handlers.get(name)
            if handler is None:
                raise ToolError(f"Unknown function: {name}")
            result = await handler(args)
        except Exception as e:
            # lecturas solamente: el rollback deja la sesión usable para el próximo tool
            await self.session.rollback()
            logger.warning("Tool call failed", extra={"tool": name, "error": str(e)})
            result = {"success": False, "error": str(e)}

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        success = bool(result.get("success", False))
        self.calls_log.append({"name": name, "arguments": args, "success": success, "duration_ms": duration_ms})
        logger.info("Tool call executed", extra={"tool": name, "success": success, "duration_ms": duration_ms})
        return result

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ToolError(f"Invalid tool arguments: {e}")
        if not isinstance(parsed, dict):
            raise ToolError("Tool arguments must be a JSON object")
        return parsed

    async def shape_products(self, products) -> List[Dict[str, Any]]:
        valid_promos = await promotions.list_valid_promotions(self.session, self.chatbot_id)
        return catalog.process_products_with_promotions(
            products, valid_promos, price_visible=self.price_visible, images=self.images,
        )

    # =========================
    # Tools
    # =========================
    async def browse_full_catalog(self, args: Dict[str, Any]) -> Dict[str, Any]:
        include_oos = bool(args.get("include_out_of_stock", False))
        products = await catalog.fetch_catalog(self.session, self.chatbot_id, include_out_of_stock=include_oos)
        items = await self.shape_products(products)
        grouped = catalog.group_by_category(items)
        self.last_debug = {"tool": "browse_full_catalog", "include_out_of_stock": include_oos, "total_products": len(items)}
        return {
            "success": True,
            "total_products": len(items),
            "categories": list(grouped),
            "products_by_category": grouped,
            "note": (
                "This is the COMPLETE catalog. Match the customer's request against product names, "
                "categories and descriptions. To attach a product image write its image_ref as [IMAGE_REF:<image_ref>]."
            ),
        }

    async def search_products(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            raise ToolError("query is required")
        limit = _int_arg(args, "limit", 10)
        products = await catalog.search_products(self.session, self.chatbot_id, query, limit=limit)
        items = await self.shape_products(products)
        self.last_debug = {"tool": "search_products", "query": query, "matched": len(items)}
        return {"success": True, "products": items, "count": len(items)}

    async def get_product_by_id(self, args: Dict[str, Any]) -> Dict[str, Any]:
        product_id = str(args.get("product_id") or "").strip()
        product = await catalog.get_product(self.session, self.chatbot_id, product_id)
        self.last_debug = {"tool": "get_product_by_id", "product_id": product_id, "found": product is not None}
        if product is None:
            return {"success": False, "product": None, "message": f"Product {product_id} not found"}
        return {"success": True, "product": (await self.shape_products([product]))[0]}

    async def list_product_categories(self, args: Dict[str, Any]) -> Dict[str, Any]:
        categories = await catalog.list_categories(self.session, self.chatbot_id)
        self.last_debug = {"tool": "list_product_categories", "count": len(categories)}
        return {"success": True, "categories": categories, "count": len(categories)}

    async def get_products_by_category(self, args: Dict[str, Any]) -> Dict[str, Any]:
        category = str(args.get("category") or "").strip()
        if not category:
            raise ToolError("category is required")
        limit = _int_arg(args, "limit", 20)
        products = await catalog.products_by_category(self.session, self.chatbot_id, category, limit=limit)
        items = await self.shape_products(products)
        self.last_debug = {"tool": "get_products_by_category", "category": category, "matched": len(items)}
        return {"success": True, "category": category, "products": items, "count": len(items)}

    async def get_active_promotions(self, args: Dict[str, Any]) -> Dict[str, Any]:
        limit = _int_arg(args, "limit", 10)
        valid = await promotions.list_valid_promotions(self.session, self.chatbot_id, limit=limit)
        formatted = [
            promotions.format_promotion(p, price_visible=self.price_visible, images=self.images) for p in valid
        ]
        self.last_debug = {"tool": "get_active_promotions", "count": len(formatted)}
        return {
            "success": True,
            "promotions": formatted,
            "count": len(formatted),
            "message": (
                f"Found {len(formatted)} active promotion(s). If a promotion has an image_ref, "
                "attach it with [IMAGE_REF:<image_ref>]."
                if formatted else "No active promotions at the moment"
            ),
        }

    async def validate_promo_code(self, args: Dict[str, Any]) -> Dict[str, Any]:
        code = str(args.get("promo_code") or "").strip()
        if not code:
            raise ToolError("promo_code is required")
        result = await promotions.validate_promo_code(
            self.session, self.chatbot_id, code, price_visible=self.price_visible,
        )
        self.last_debug = {"tool": "validate_promo_code", "promo_code": code, "valid": result["valid"]}
        return result
