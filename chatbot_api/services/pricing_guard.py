from typing import Optional

from chatbot_api.db.models.avatar import Avatar

# Substrings en minúsculas (inglés / malayo / chino + símbolos de moneda).
# Match por substring: "rm" también matchea dentro de palabras como "form" o "warm".
PRICE_KEYWORDS = (
    # English
    "price", "prices", "pricing", "how much", "cost", "quote", "quotation",
    "rm", "$", "usd", "myr",
    # Malay
    "harga", "berapa", "kos", "sebut harga",
    # Chinese
    "价格", "价钱", "多少钱", "费用", "报价", "¥", "元",
)

ESCALATION_PARTS = (
    "Thanks for your interest! 😊",
    "Pricing depends on your specific requirements, so our team will get back to you with the details shortly.",
    "In the meantime, feel free to ask me anything else about our products or services.",
)


def is_price_query(message: Optional[str]) -> bool:
    text = (message or "").lower()
    if not text:
        return False
    return any(keyword in text for keyword in PRICE_KEYWORDS)


def should_short_circuit(avatar: Avatar, message: Optional[str]) -> bool:
    """True si el avatar oculta precios y el mensaje pide un precio."""
    return avatar.price_visible is False and is_price_query(message)


def build_price_escalation_reply(avatar: Avatar, default_delimiter: str = "||") -> str:
    # las partes se separan con el delimitador que la capa de WhatsApp usa para partir mensajes
    delimiter = (avatar.whatsapp_message_delimiter or "").strip() or default_delimiter
    return delimiter.join(ESCALATION_PARTS)
