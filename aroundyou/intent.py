"""
Search intent extraction.

``OpenAIIntentExtractor`` asks a small model for a JSON intent in a single
call. ``KeywordIntentExtractor`` is a deterministic offline alternative used
when no model is configured and in tests. Both return a ``SearchIntent`` with
one ``ExtractedItem`` per product named in the request.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import openai
from pydantic import ValidationError

from aroundyou import config
from aroundyou.llm import translate_openai_error
from aroundyou.models import ExtractedItem, SearchIntent

logger = logging.getLogger(__name__)


INTENT_SYSTEM_PROMPT = """You help shoppers on a Pakistani grocery and FMCG delivery marketplace.
Read the shopper's request and describe what they want as JSON.

Rules:
1. Several products in one request ("X and Y", "X, Y") are SEPARATE items.
2. Always capture quantities: "2 always" is Always pads with quantity 2, "2 bread, 3 milk" is bread x2 and milk x3. Use 1 when no number is given. Never use 0 or negative quantities.
3. Normalize brand spellings: "lays" -> "Lay's", "coca cola" -> "Coca-Cola", "pamper" -> "Pampers".
4. Map generic words to shop categories: "chips" -> "Munchies", "cold drink" -> "Cold Drinks & Juices", "diapers" -> "Baby Care".
5. Stay specific. Do not add variants that would match unrelated products.

Respond with a single JSON object with these keys:
- primaryQuery: the cleaned-up main search string
- expandedQueries: 3-6 search variants (brand spellings, synonyms, product lines)
- categories: shop category names likely to hold the items
- brands: brand names mentioned or implied
- itemTypes: generic item types
- extractedItems: one entry per product, each {"name", "brand", "category", "searchTerms", "quantity"}
- reasoning: one or two sentences on how you read the request

Example request: "order 2 oreo mini, 3 rio biscuit"
Example response:
{
  "primaryQuery": "oreo mini, rio biscuit",
  "expandedQueries": ["Oreo Mini", "Oreo", "Rio biscuit", "Rio", "biscuits", "cookies"],
  "categories": ["Bakery & Biscuits"],
  "brands": ["Oreo", "Rio"],
  "itemTypes": ["biscuits"],
  "extractedItems": [
    {"name": "Oreo Mini", "brand": "Oreo", "category": "Bakery & Biscuits", "searchTerms": ["Oreo Mini", "oreo mini", "Oreo"], "quantity": 2},
    {"name": "Rio biscuit", "brand": "Rio", "category": "Bakery & Biscuits", "searchTerms": ["Rio biscuit", "Rio", "biscuits"], "quantity": 3}
  ],
  "reasoning": "Two separate biscuit products with quantities 2 and 3."
}"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"(\{.*\})", re.DOTALL)


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(entry).strip() for entry in value if entry is not None and str(entry).strip()]


def _optional_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def intent_from_payload(data: Dict[str, Any], query: str) -> SearchIntent:
    """
    Build a ``SearchIntent`` from the camelCase JSON a model returns.

    Raises:
        ValidationError: If the payload cannot describe an intent
    """
    items = []
    for entry in data.get("extractedItems") or []:
        if not isinstance(entry, dict) or not _optional_string(entry.get("name")):
            continue
        items.append(ExtractedItem(
            name=str(entry["name"]).strip(),
            brand=_optional_string(entry.get("brand")),
            category=_optional_string(entry.get("category")),
            quantity=entry.get("quantity", 1),
            search_terms=_strings(entry.get("searchTerms")),
        ))

    return SearchIntent(
        primary_query=_optional_string(data.get("primaryQuery")) or query,
        expanded_queries=_strings(data.get("expandedQueries")),
        categories=_strings(data.get("categories")),
        brands=_strings(data.get("brands")),
        item_types=_strings(data.get("itemTypes")),
        extracted_items=items,
        reasoning=_optional_string(data.get("reasoning")) or "",
    )


def parse_intent_response(text: str, query: str) -> SearchIntent:
    """
    Parse a model reply into an intent.

    Accepts JSON inside a code fence or surrounded by prose. Anything that
    does not parse yields a fallback intent searching the raw query.
    """
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    raw = match.group(1) if match else text

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Intent response was not valid JSON, using the raw query")
        return SearchIntent.fallback(query, "Fallback: parse error, using direct query match")

    if not isinstance(data, dict):
        return SearchIntent.fallback(query, "Fallback: parse error, using direct query match")

    try:
        return intent_from_payload(data, query)
    except ValidationError as e:
        logger.warning("Intent response failed validation: %s", e)
        return SearchIntent.fallback(query, "Fallback: invalid intent, using direct query match")


class OpenAIIntentExtractor:
    """
    Intent extraction with one JSON-mode chat completion per query.

    Provider failures raise ``NetworkError`` / ``CallTimeoutError`` so the
    search marks its first step as failed.
    """

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        if client is None:
            if not config.OPENAI_API_KEY:
                raise ValueError("OPENAI_API_KEY not found. Please set it in your .env file.")
            client = openai.AsyncOpenAI(api_key=config.OPENAI_API_KEY, base_url=config.OPENAI_BASE_URL)
        self.client = client
        self.model = model or config.INTENT_MODEL
        self.temperature = config.INTENT_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.INTENT_MAX_TOKENS

    async def extract(self, query: str) -> SearchIntent:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": INTENT_SYSTEM_PROMPT},
                    {"role": "user", "content": query},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        text = response.choices[0].message.content or ""
        intent = parse_intent_response(text, query)
        logger.debug("Intent for %r: %d items", query, len(intent.extracted_items))
        return intent


# =============================================================================
# Offline extractor
# =============================================================================

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "dozen": 12,
}

# Spoken-form spelling -> brand as sold
BRAND_ALIASES = {
    "lays": "Lay's",
    "lay's": "Lay's",
    "coca cola": "Coca-Cola",
    "cocacola": "Coca-Cola",
    "coke": "Coca-Cola",
    "pepsi": "Pepsi",
    "sprite": "Sprite",
    "pamper": "Pampers",
    "pampers": "Pampers",
    "always": "Always",
    "oreo": "Oreo",
    "rio": "Rio",
    "olpers": "Olper's",
    "nestle": "Nestle",
    "kurkure": "Kurkure",
    "sunsilk": "Sunsilk",
    "dawn": "Dawn",
}

BRAND_CATEGORIES = {
    "Lay's": "Munchies",
    "Kurkure": "Munchies",
    "Coca-Cola": "Cold Drinks & Juices",
    "Pepsi": "Cold Drinks & Juices",
    "Sprite": "Cold Drinks & Juices",
    "Pampers": "Baby Care",
    "Always": "Personal Care",
    "Sunsilk": "Personal Care",
    "Oreo": "Bakery & Biscuits",
    "Rio": "Bakery & Biscuits",
    "Dawn": "Bakery & Biscuits",
    "Olper's": "Dairy & Breakfast",
    "Nestle": "Dairy & Breakfast",
}

# Generic word -> (category, extra search terms)
CATEGORY_SYNONYMS: Dict[str, Tuple[str, List[str]]] = {
    "chips": ("Munchies", ["crisps", "potato chips"]),
    "snacks": ("Munchies", ["chips", "crisps"]),
    "cold drink": ("Cold Drinks & Juices", ["soft drink", "cola"]),
    "soft drink": ("Cold Drinks & Juices", ["cold drink", "cola"]),
    "juice": ("Cold Drinks & Juices", ["fruit juice"]),
    "biscuit": ("Bakery & Biscuits", ["biscuits", "cookies"]),
    "cookie": ("Bakery & Biscuits", ["cookies", "biscuits"]),
    "bread": ("Bakery & Biscuits", ["loaf", "bakery"]),
    "milk": ("Dairy & Breakfast", ["dairy", "fresh milk"]),
    "eggs": ("Dairy & Breakfast", ["egg"]),
    "diaper": ("Baby Care", ["diapers", "baby diapers"]),
    "shampoo": ("Personal Care", ["hair care"]),
    "pads": ("Personal Care", ["sanitary pads"]),
    "soap": ("Personal Care", ["bath soap"]),
}

_LEADING_PHRASES = (
    "please", "can you", "could you", "i want to", "i want", "i need", "i'd like",
    "get me", "give me", "order", "buy", "add", "find", "search for", "show me", "some",
)
_SPLIT = re.compile(r"\s*(?:,|;|\n|&|\+|\band\b)\s*", re.IGNORECASE)
_NUMBER = r"(\d+|" + "|".join(word for word in NUMBER_WORDS if word not in ("a", "an")) + r")"
_UNIT = r"(?:pcs|pc|packs?|packets?|pieces?|bottles?|boxes?|cans?|cartons?)"
# "2 oreo", "2x oreo", "a dozen eggs", "2 packs of lays"
_LEADING_NUMBER = re.compile(rf"^(?:an?\s+)?{_NUMBER}(?:\s*(?:x|{_UNIT}))?\s+(?:of\s+)?(.+)$", re.IGNORECASE)
# "a lays", "a pack of lays"
_LEADING_ARTICLE = re.compile(rf"^an?\s+(?:{_UNIT}\s+)?(?:of\s+)?(.+)$", re.IGNORECASE)
# "oreo x2", "oreo mini 2 packs"
_TRAILING_NUMBER = re.compile(rf"^(.+?)\s+(?:x\s*)?{_NUMBER}(?:\s*{_UNIT})?$", re.IGNORECASE)


def _strip_leading_phrases(text: str) -> str:
    changed = True
    while changed and text:
        changed = False
        for phrase in _LEADING_PHRASES:
            if text == phrase:
                return ""
            if text.startswith(phrase + " "):
                text = text[len(phrase):].strip()
                changed = True
    if text.endswith(" please"):
        text = text[:-len(" please")].strip()
    return text


def _number(token: str) -> int:
    return int(token) if token.isdigit() else NUMBER_WORDS[token.lower()]


def _take_quantity(text: str) -> Tuple[int, str]:
    match = _LEADING_NUMBER.match(text)
    if match:
        quantity, rest = _number(match.group(1)), match.group(2).strip()
        if rest.startswith("dozen "):
            quantity, rest = quantity * 12, rest[len("dozen "):].strip()
        return quantity, rest

    match = _LEADING_ARTICLE.match(text)
    if match:
        text = match.group(1).strip()

    match = _TRAILING_NUMBER.match(text)
    if match:
        return _number(match.group(2)), match.group(1).strip()

    return 1, text


def _contains(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}s?\b", text) is not None


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        key = value.lower()
        if value and key not in seen:
            seen.add(key)
            result.append(value)
    return result


class KeywordIntentExtractor:
    """
    Rule-based intent extraction.

    Splits multi-item requests, reads digit and number-word quantities, and
    expands brand spellings and category words from fixed tables.
    """

    def __init__(
        self,
        brand_aliases: Optional[Dict[str, str]] = None,
        category_synonyms: Optional[Dict[str, Tuple[str, List[str]]]] = None
    ):
        self.brand_aliases = brand_aliases or BRAND_ALIASES
        self.category_synonyms = category_synonyms or CATEGORY_SYNONYMS

    def _parse_segment(self, segment: str) -> Optional[Tuple[ExtractedItem, List[str]]]:
        text = _strip_leading_phrases(segment.strip().lower().strip(".!?"))
        if not text:
            return None
        quantity, text = _take_quantity(text)
        text = _strip_leading_phrases(text)
        if not text:
            return None

        brand = None
        alias_used = None
        for alias in sorted(self.brand_aliases, key=len, reverse=True):
            if re.search(rf"\b{re.escape(alias)}\b", text):
                brand = self.brand_aliases[alias]
                alias_used = alias
                break

        category = None
        item_types = []
        synonyms: List[str] = []
        for word, (word_category, extra_terms) in self.category_synonyms.items():
            if _contains(text, word):
                category = category or word_category
                item_types.append(word)
                synonyms.extend(extra_terms)
        if category is None and brand is not None:
            category = BRAND_CATEGORIES.get(brand)

        terms = [text]
        if brand and alias_used:
            terms.append(re.sub(rf"\b{re.escape(alias_used)}\b", brand, text, count=1))
            terms.append(brand)
        terms.extend(synonyms)

        item = ExtractedItem(
            name=terms[1] if brand and alias_used else text,
            brand=brand,
            category=category,
            quantity=quantity,
            search_terms=_dedupe(terms),
        )
        return item, item_types

    async def extract(self, query: str) -> SearchIntent:
        items: List[ExtractedItem] = []
        item_types: List[str] = []
        for segment in _SPLIT.split(query):
            parsed = self._parse_segment(segment)
            if parsed is not None:
                items.append(parsed[0])
                item_types.extend(parsed[1])

        if not items:
            return SearchIntent.fallback(query, "Fallback: no items recognized, using direct query match")

        expanded = _dedupe([term for item in items for term in item.search_terms])
        summary = ", ".join(f"{item.name} ({item.quantity})" for item in items)
        return SearchIntent(
            primary_query=", ".join(item.name for item in items),
            expanded_queries=expanded,
            categories=_dedupe([item.category for item in items if item.category]),
            brands=_dedupe([item.brand for item in items if item.brand]),
            item_types=_dedupe(item_types),
            extracted_items=items,
            reasoning=f"Found {len(items)} item(s): {summary}.",
        )
