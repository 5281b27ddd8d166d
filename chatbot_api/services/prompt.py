from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from chatbot_api.db.models.avatar import Avatar

RAG_START = "=== RELEVANT KNOWLEDGE BASE CONTENT ==="
RAG_END = "=== END RELEVANT CONTENT ==="
MEMORY_START = "=== YOUR MEMORIES ==="
MEMORY_END = "=== END MEMORIES ==="


@dataclass(frozen=True)
class PromptProfile:
    """Texto de sistema + listas de una versión de prompt (guardada o armada desde el avatar)."""
    system_prompt: Optional[str] = None
    personality_traits: Sequence[str] = ()
    behavior_rules: Sequence[str] = ()
    compliance_rules: Sequence[str] = ()
    response_guidelines: Sequence[str] = ()
    version_id: Optional[str] = None
    version_number: Optional[int] = None
    is_fallback: bool = False


@dataclass(frozen=True)
class MemoryEntry:
    title: str
    memory_date: Optional[str] = None
    summary: Optional[str] = None


@dataclass(frozen=True)
class KnowledgeChunk:
    text: str
    similarity: Optional[float] = None
    file_id: Optional[str] = None


PRICE_POLICY_BLOCK = """**PRICE POLICY (STRICT):**
Prices are NOT shared with customers for this business.
1. NEVER mention any price, amount, currency value, discount amount or quotation, even if a tool result or the knowledge base contains one.
2. If the customer asks about price, tell them our team will contact them with the pricing details.
3. You may describe products, features, availability and percentage promotions, but never a numeric price."""

TOOL_DIRECTIVES = """**CRITICAL - TOOL USAGE RULES:**
1. When the customer asks about products or wants a recommendation, ALWAYS call browse_full_catalog first, then recommend only products returned by the tool.
2. Use search_products only for exact lookups (a known product name or SKU).
3. When the customer asks about promotions, discounts, sales, deals, offers, promo codes, 优惠, 折扣, 促销, ALWAYS call get_active_promotions first.
4. When the customer mentions a specific promo code, ALWAYS call validate_promo_code to verify it.
5. DO NOT guess or make up products or promotions. Only share what the tools return.

**IMPORTANT - FORMATTING IMAGES:**
Tool results include an image_ref (for example img_1) for every product image or promotion banner.
To attach an image write [IMAGE_REF:<image_ref>] on its own line, e.g. [IMAGE_REF:img_1].
Only use image_ref values returned by the tools; never write image URLs yourself."""

PRICE_SILENCE_DIRECTIVE = (
    "6. Tool results for this business are marked price_hidden. Never state or estimate a price."
)


def _numbered(items: Sequence[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def _clean(items: Optional[Sequence[str]]) -> List[str]:
    return [str(i).strip() for i in (items or []) if i and str(i).strip()]


def fallback_profile(avatar: Avatar) -> PromptProfile:
    """Perfil ad hoc desde la fila del avatar, para chatbots sin versión guardada."""
    return PromptProfile(
        system_prompt=None,
        personality_traits=tuple(_clean(avatar.personality_traits)),
        behavior_rules=(),
        compliance_rules=tuple(_clean(avatar.compliance_rules)),
        response_guidelines=tuple(_clean(avatar.response_guidelines)),
        is_fallback=True,
    )


def _business_block(avatar: Avatar) -> str:
    parts: List[str] = []
    if avatar.business_context:
        parts.append(f"**BUSINESS CONTEXT:**\n{avatar.business_context.strip()}")
    elif avatar.backstory:
        parts.append(f"Your backstory: {avatar.backstory.strip()}")
    company_lines = []
    if avatar.company_name:
        company_lines.append(f"Company: {avatar.company_name}")
    if avatar.industry:
        company_lines.append(f"Industry: {avatar.industry}")
    if company_lines:
        parts.append("\n".join(company_lines))
    return "\n\n".join(parts)


def _language_line(avatar: Avatar) -> Optional[str]:
    languages = _clean(avatar.supported_languages)
    if not languages and not avatar.default_language:
        return None
    line = ""
    if languages:
        line = f"Supported languages: {', '.join(languages)}."
    if avatar.default_language:
        line = (line + " " if line else "") + f"Default language: {avatar.default_language}. Reply in the customer's language."
    return line


def build_system_prompt(
    avatar: Avatar,
    profile: PromptProfile,
    rag_chunks: Sequence[KnowledgeChunk] = (),
    memories: Sequence[MemoryEntry] = (),
) -> str:
    """Arma el prompt de sistema en orden fijo.

    identidad -> texto de la versión (o bloque de negocio) -> rasgos -> reglas de comportamiento
    -> compliance (numeradas) -> guidelines (numeradas) -> idiomas -> RAG -> memorias
    -> política de precios (solo si están ocultos) -> directivas de tools.

    Función pura: mismos inputs, mismo string byte a byte.
    """
    identity = f"You are {avatar.name}, an AI chatbot"
    identity += f" for {avatar.company_name}." if avatar.company_name else "."
    sections: List[str] = [identity]

    if profile.system_prompt and profile.system_prompt.strip():
        sections.append(profile.system_prompt.strip())
    else:
        block = _business_block(avatar)
        if block:
            sections.append(block)

    traits = _clean(profile.personality_traits)
    if traits:
        sections.append(f"Your personality traits: {', '.join(traits)}")

    behavior = _clean(profile.behavior_rules)
    if behavior:
        sections.append(f"Behavior guidelines: {' '.join(behavior)}")

    compliance = _clean(profile.compliance_rules)
    if compliance:
        sections.append(f"Compliance rules (MUST FOLLOW):\n{_numbered(compliance)}")

    guidelines = _clean(profile.response_guidelines)
    if guidelines:
        sections.append(f"Response guidelines:\n{_numbered(guidelines)}")

    language = _language_line(avatar)
    if language:
        sections.append(language)

    if rag_chunks:
        body = "\n".join(
            f"\n--- Section {i} ---\n{chunk.text.strip()}" for i, chunk in enumerate(rag_chunks, start=1)
        )
        sections.append(f"{RAG_START}\n{body}\n\n{RAG_END}")

    if memories:
        body = "\n".join(
            f"- {m.title} ({m.memory_date or 'undated'}): {m.summary or ''}".rstrip() for m in memories
        )
        sections.append(f"{MEMORY_START}\n{body}\n{MEMORY_END}")

    price_hidden = avatar.price_visible is False
    if price_hidden:
        sections.append(PRICE_POLICY_BLOCK)

    directives = TOOL_DIRECTIVES
    if price_hidden:
        # la regla 6 va dentro de la lista de reglas de tools
        head, _, tail = directives.partition("\n\n**IMPORTANT - FORMATTING IMAGES:**")
        directives = f"{head}\n{PRICE_SILENCE_DIRECTIVE}\n\n**IMPORTANT - FORMATTING IMAGES:**{tail}"
    sections.append(directives)

    return "\n\n".join(sections)
