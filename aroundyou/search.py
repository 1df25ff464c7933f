"""
Intelligent search pipeline.

Turns a free-form shopping request into ranked, shop-attributed results in
five ordered steps:

1. understand_intent - one intent-extraction call (primary query, expanded
   queries, extracted items with quantities)
2. find_shops - shops serviceable at the user's location
3. semantic_search - per-shop similarity search, run concurrently
4. expanding_search - add items from matching categories, then merge and
   de-duplicate hits
5. ranking - boost preferred items, price delivery by distance, score shops
   with a pluggable relevance strategy and sort

Every step is reported through the progress broadcaster under the turn id of
the tool call that started the search.
"""

import asyncio
import logging
import math
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from aroundyou import config
from aroundyou.collaborators import IntentExtractor, ItemSimilaritySearch, PreferenceSource, ShopDirectory
from aroundyou.delivery import delivery_fee_for
from aroundyou.errors import CommerceError, UpstreamSearchFailure, with_timeout
from aroundyou.models import (
    Coordinates, PreferenceValue, ScoredItem, SearchIntent, SearchOutcome, SearchResponse, Shop,
    ShopSearchResult, StepId, UserPreference
)
from aroundyou.progress import ProgressBroadcaster, SearchProgressTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Items surfaced per shop, whatever itemsPerShop was requested
MAX_SURFACED_ITEMS = 5
# Unified hits shown in the expanding_search step
UNIFIED_PREVIEW_SIZE = 20
# Candidates requested from the similarity search per shop
MIN_CANDIDATES_PER_SHOP = 20
SHOP_SEARCH_MIN_SIMILARITY = 0.6
# Similarity given to items found by category or by name instead of embeddings
CATEGORY_MATCH_SIMILARITY = 0.7
TEXT_MATCH_SIMILARITY = 0.85
# Added to a preferred item's similarity, scaled by the preference's confidence
PREFERENCE_BOOST = 0.1
# Delivery fee (PKR) at which the delivery component of the score reaches zero
MAX_DELIVERY_FEE = 200.0
# How often an in-flight collaborator call checks whether its turn is still current
SUPERSEDE_POLL_SECONDS = 0.05

NO_SHOPS_REASONING = "No shops found in your delivery area."


# =============================================================================
# Relevance
# =============================================================================

def _round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def normalize_relevance(score: float) -> float:
    """
    Convert a relevance score to a one-decimal percentage.

    Scores in [0, 1] are fractions; anything above 1 is already a percentage.
    ``0.87`` and ``87`` both give ``87.0``.
    """
    if score > 1:
        return _round_half_up(score * 10) / 10
    return _round_half_up(score * 100 * 10) / 10


def format_relevance(score: float) -> str:
    return f"{normalize_relevance(score):.1f}%"


class RelevanceStrategy(Protocol):
    def score(self, shop: Shop, items: Sequence[ScoredItem], total_found: int) -> float:
        """
        Args:
            shop: The shop being ranked
            items: The shop's hits after the itemsPerShop cap, best first
            total_found: Number of hits before the cap
        """
        ...


class WeightedRelevanceStrategy:
    """
    Blend of match count, mean similarity and delivery cost.

    ``0.3 * min(1, total/10) + 0.4 * mean_similarity + 0.3 * delivery_score``
    where ``delivery_score`` falls linearly from 1 to 0 as the fee approaches
    200 PKR and is 0.5 when the fee is zero or unknown. Shops without hits get
    ``0.1 * delivery_score``.
    """

    def __init__(self, count_weight: float = 0.3, similarity_weight: float = 0.4, delivery_weight: float = 0.3):
        self.count_weight = count_weight
        self.similarity_weight = similarity_weight
        self.delivery_weight = delivery_weight

    @staticmethod
    def delivery_score(shop: Shop) -> float:
        fee = shop.delivery_fee or 0.0
        if fee > 0:
            return max(0.0, 1 - fee / MAX_DELIVERY_FEE)
        return 0.5

    def score(self, shop: Shop, items: Sequence[ScoredItem], total_found: int) -> float:
        delivery = self.delivery_score(shop)
        if total_found == 0 or not items:
            return 0.1 * delivery

        count_score = min(1.0, total_found / 10)
        mean_similarity = sum(hit.similarity for hit in items) / len(items)
        return (
            self.count_weight * count_score
            + self.similarity_weight * mean_similarity
            + self.delivery_weight * delivery
        )


class MeanSimilarityStrategy:
    """Rank purely on how well the shop's hits match."""

    def score(self, shop: Shop, items: Sequence[ScoredItem], total_found: int) -> float:
        if not items:
            return 0.0
        return sum(hit.similarity for hit in items) / len(items)


# =============================================================================
# Pipeline
# =============================================================================

class _Superseded(Exception):
    """A newer turn replaced the one this search belongs to."""


def _price_label(price_cents: int) -> str:
    return f"PKR {price_cents / 100:.2f}"


def _merge_hits(hits: List[ScoredItem], min_similarity: float) -> List[ScoredItem]:
    """De-duplicate by item id keeping the best similarity, best first."""
    best: Dict[str, ScoredItem] = {}
    for hit in hits:
        if hit.similarity < min_similarity:
            continue
        existing = best.get(hit.item.id)
        if existing is None or hit.similarity > existing.similarity:
            best[hit.item.id] = hit
    return sorted(best.values(), key=lambda hit: hit.similarity, reverse=True)


def _category_matches(intent: SearchIntent, hits: List[ScoredItem]) -> List[str]:
    matches = []
    item_categories = [hit.item.category.lower() for hit in hits if hit.item.category]
    for category in intent.categories:
        wanted = category.lower()
        if any(wanted in found or found in wanted for found in item_categories):
            matches.append(category)
    return matches


def _category_names(intent: SearchIntent) -> List[str]:
    names: List[str] = []
    for name in intent.categories + intent.item_types:
        name = name.strip()
        if name and name.lower() not in (existing.lower() for existing in names):
            names.append(name)
    return names


def apply_preferences(
    merged: Dict[str, List[ScoredItem]],
    preferences: Sequence[UserPreference]
) -> int:
    """
    Boost items the shopper prefers and re-sort each shop's hits.

    The first preference matching an item decides; only ``prefers`` boosts,
    by ``0.1 * confidence`` capped at 1. Returns the number of boosted items.
    """
    boosted = 0
    for shop_id, hits in merged.items():
        updated = []
        for hit in hits:
            preference = next((p for p in preferences if p.matches(hit.item)), None)
            if preference is not None and preference.preference_value == PreferenceValue.PREFERS:
                similarity = min(1.0, hit.similarity + PREFERENCE_BOOST * preference.confidence)
                hit = hit.model_copy(update={"similarity": similarity})
                boosted += 1
            updated.append(hit)
        merged[shop_id] = sorted(updated, key=lambda hit: hit.similarity, reverse=True)
    return boosted


class IntelligentSearchPipeline:
    """
    Runs intelligent searches against the collaborators.

    Args:
        intent_extractor: Intent-extraction collaborator
        shop_directory: Shop discovery, category and name lookups
        item_search: Per-shop item similarity search
        relevance_strategy: Shop scoring; ``WeightedRelevanceStrategy`` if omitted
        broadcaster: Where progress is published; a private one if omitted
        timeout: Bound on every collaborator call, in seconds
        min_similarity: Hits below this similarity are discarded
        preference_source: Remembered shopper preferences; no boosting if omitted
    """

    def __init__(
        self,
        intent_extractor: IntentExtractor,
        shop_directory: ShopDirectory,
        item_search: ItemSimilaritySearch,
        relevance_strategy: Optional[RelevanceStrategy] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        timeout: Optional[float] = None,
        min_similarity: Optional[float] = None,
        preference_source: Optional[PreferenceSource] = None
    ):
        self.intent_extractor = intent_extractor
        self.shop_directory = shop_directory
        self.item_search = item_search
        self.relevance_strategy = relevance_strategy or WeightedRelevanceStrategy()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.timeout = config.COLLABORATOR_TIMEOUT_SECONDS if timeout is None else timeout
        self.min_similarity = config.MIN_SIMILARITY if min_similarity is None else min_similarity
        self.preference_source = preference_source

    async def run(
        self,
        query: str,
        coordinates: Coordinates,
        max_shops: int = 10,
        items_per_shop: int = 10,
        turn_id: Optional[str] = None,
        is_current: Optional[Callable[[], bool]] = None
    ) -> SearchOutcome:
        """
        Run all five steps for ``query``.

        Never raises for collaborator failures: the failing step is marked
        ``error``, later steps stay ``pending``, and the outcome carries the
        error. The final progress is recorded under ``turn_id``.
        """
        turn_id = turn_id or f"search_{uuid.uuid4().hex[:12]}"
        is_current = is_current or (lambda: True)
        tracker = self.broadcaster.tracker(turn_id)
        logger.info("Search %s started for %r", turn_id, query)

        try:
            response = await self._execute(tracker, query, coordinates, max_shops, items_per_shop, is_current)
            logger.info(
                "Search %s finished: %d shops, %d items",
                turn_id, len(response.results), response.total_found
            )
            return SearchOutcome(response=response, progress=tracker.snapshot())

        except _Superseded:
            self._fail_active(tracker, "superseded")
            logger.info("Search %s superseded by a newer turn", turn_id)
            return SearchOutcome(
                error="Search was superseded by a newer request",
                error_kind="cancelled",
                progress=tracker.snapshot()
            )

        except asyncio.CancelledError:
            self._fail_active(tracker, "cancelled")
            raise

        except CommerceError as e:
            step = self._fail_active(tracker, str(e))
            logger.warning("Search %s failed at %s: %s", turn_id, step, e)
            return SearchOutcome(error=str(e), error_kind=e.kind, progress=tracker.snapshot())

        except Exception as e:
            step = tracker.active_step
            failure = UpstreamSearchFailure(step.value if step else "unknown", str(e) or type(e).__name__)
            self._fail_active(tracker, str(failure))
            logger.exception("Search %s failed at %s", turn_id, step)
            return SearchOutcome(error=str(failure), error_kind=failure.kind, progress=tracker.snapshot())

        finally:
            self.broadcaster.finalize(turn_id)

    async def _while_current(self, awaitable: Awaitable[T], is_current: Callable[[], bool]) -> T:
        """
        Await ``awaitable`` but give up as soon as the turn is superseded.

        The awaited work is cancelled, and waited for, before ``_Superseded``
        is raised.
        """
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=SUPERSEDE_POLL_SECONDS)
                if done:
                    return task.result()
                if not is_current():
                    raise _Superseded()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _execute(
        self,
        tracker: SearchProgressTracker,
        query: str,
        coordinates: Coordinates,
        max_shops: int,
        items_per_shop: int,
        is_current: Callable[[], bool]
    ) -> SearchResponse:
        def ensure_current() -> None:
            if not is_current():
                raise _Superseded()

        # Step 1: understand intent
        tracker.start(StepId.UNDERSTAND_INTENT)
        intent = await self._while_current(
            with_timeout(self.intent_extractor.extract(query), self.timeout, "Intent extraction"),
            is_current
        )
        ensure_current()
        variants = intent.query_variants()
        extracted = [item.model_dump(mode="json") for item in intent.extracted_items]
        tracker.set_intent(intent.primary_query, intent.expanded_queries)
        tracker.complete(StepId.UNDERSTAND_INTENT, {
            "reasoning": intent.reasoning,
            "primaryQuery": intent.primary_query,
            "expandedQueries": intent.expanded_queries,
            "extractedItems": extracted,
        })

        # Step 2: find shops
        tracker.start(StepId.FIND_SHOPS)
        shops = await self._while_current(
            with_timeout(self.shop_directory.find_shops(coordinates, max_shops), self.timeout, "Shop discovery"),
            is_current
        )
        ensure_current()
        shops = list(shops)[:max_shops]
        tracker.complete(StepId.FIND_SHOPS, {
            "shopCount": len(shops),
            "shops": [{"id": shop.id, "name": shop.name} for shop in shops],
        })

        if not shops:
            for step_id in (StepId.SEMANTIC_SEARCH, StepId.EXPANDING_SEARCH, StepId.RANKING):
                tracker.start(step_id)
                tracker.complete(step_id, {"skipped": True, "reason": "no shops in delivery area"})
            return SearchResponse(results=[], intent=intent, reasoning=NO_SHOPS_REASONING, total_found=0)

        # Step 3: semantic search, one task per shop
        if intent.extracted_items:
            names = ", ".join(f'"{item.name}"' for item in intent.extracted_items)
            tracker.set_label(StepId.SEMANTIC_SEARCH, f"Searching for {names}...")
        tracker.start(StepId.SEMANTIC_SEARCH, {
            "primaryQuery": intent.primary_query,
            "expandedQueries": intent.expanded_queries,
            "extractedItems": extracted,
        })
        candidate_limit = max(items_per_shop, MIN_CANDIDATES_PER_SHOP)
        raw_hits = await self._while_current(
            self._search_shops(shops, variants, candidate_limit, max_shops),
            is_current
        )
        ensure_current()
        tracker.complete(StepId.SEMANTIC_SEARCH, {
            "shopsSearched": len(shops),
            "queryVariants": variants,
            "hitCount": sum(len(hits) for hits in raw_hits.values()),
        })

        # Step 4: expand by category, merge and de-duplicate
        tracker.start(StepId.EXPANDING_SEARCH)
        categories = _category_names(intent)
        category_hits: Dict[str, List[ScoredItem]] = {}
        if categories:
            category_hits = await self._while_current(self._category_hits(shops, categories), is_current)
            ensure_current()
        merged = {}
        for shop in shops:
            similar = [hit for hit in raw_hits.get(shop.id, []) if hit.similarity >= self.min_similarity]
            merged[shop.id] = _merge_hits(similar + category_hits.get(shop.id, []), 0.0)
        total_found = sum(len(hits) for hits in merged.values())
        shop_names = {shop.id: shop.name for shop in shops}
        unified = sorted(
            (hit for hits in merged.values() for hit in hits),
            key=lambda hit: hit.similarity,
            reverse=True
        )[:UNIFIED_PREVIEW_SIZE]
        tracker.complete(StepId.EXPANDING_SEARCH, {
            "totalFound": total_found,
            "categories": categories,
            "categoryMatches": sum(len(hits) for hits in category_hits.values()),
            "results": [
                {
                    "name": hit.item.name,
                    "price": _price_label(hit.item.price_cents),
                    "shop": shop_names.get(hit.item.shop_id, "Unknown Shop"),
                    "similarity": round(hit.similarity * 100),
                }
                for hit in unified
            ],
        })

        # Step 5: rank
        tracker.start(StepId.RANKING)
        preferences = await self._preferences(intent.primary_query or query, is_current)
        ensure_current()
        boosted = apply_preferences(merged, preferences) if preferences else 0
        priced = [
            shop.model_copy(update={"delivery_fee": delivery_fee_for(shop, coordinates)})
            for shop in shops
        ]
        results = self._rank(priced, merged, intent, items_per_shop)
        tracker.complete(StepId.RANKING, {
            "totalResults": len(results),
            "topShop": results[0].shop.name if results else None,
            "boostedItems": boosted,
            "shops": [
                {
                    "id": result.shop.id,
                    "name": result.shop.name,
                    "deliveryFee": result.shop.delivery_fee,
                    "relevance": normalize_relevance(result.relevance_score),
                    "relevanceScore": result.relevance_score,
                    "matchingItems": result.total_items,
                    "topItems": [
                        {
                            "name": hit.item.name,
                            "price_cents": hit.item.price_cents,
                            "similarity": hit.similarity,
                        }
                        for hit in result.items[:3]
                    ],
                }
                for result in results
            ],
        })

        return SearchResponse(
            results=results,
            intent=intent,
            reasoning=intent.reasoning,
            total_found=total_found
        )

    async def _search_shops(
        self,
        shops: List[Shop],
        variants: List[str],
        limit: int,
        max_concurrency: int
    ) -> Dict[str, List[ScoredItem]]:
        """Search every shop concurrently; the first failure cancels the rest."""
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def search_one(shop: Shop) -> List[ScoredItem]:
            async with semaphore:
                return await with_timeout(
                    self.item_search.search_items(shop.id, variants, limit),
                    self.timeout,
                    f"Item search in {shop.name}"
                )

        tasks = {shop.id: asyncio.create_task(search_one(shop)) for shop in shops}
        try:
            done, _ = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        first_error: Optional[BaseException] = None
        for task in tasks.values():
            if task in done and task.exception() is not None and first_error is None:
                first_error = task.exception()
        if first_error is not None:
            raise first_error

        return {shop_id: list(task.result()) for shop_id, task in tasks.items()}

    async def _category_hits(self, shops: List[Shop], categories: List[str]) -> Dict[str, List[ScoredItem]]:
        """Active items from matching categories in every shop; a failed lookup only logs."""

        async def lookup(shop: Shop) -> List[ScoredItem]:
            try:
                items = await with_timeout(
                    self.shop_directory.items_in_categories(shop.id, categories),
                    self.timeout,
                    f"Category lookup in {shop.name}"
                )
            except Exception as e:
                logger.warning("Category lookup in %s failed: %s", shop.id, e)
                return []
            return [
                ScoredItem(item=item, similarity=CATEGORY_MATCH_SIMILARITY)
                for item in items if item.is_active
            ]

        found = await asyncio.gather(*(lookup(shop) for shop in shops))
        return {shop.id: hits for shop, hits in zip(shops, found)}

    async def _preferences(self, query: str, is_current: Callable[[], bool]) -> List[UserPreference]:
        if self.preference_source is None:
            return []
        try:
            preferences = await self._while_current(
                with_timeout(self.preference_source.preferences_for(query), self.timeout, "Preference lookup"),
                is_current
            )
        except _Superseded:
            raise
        except Exception as e:
            logger.warning("Preference lookup failed, ranking without preferences: %s", e)
            return []
        return list(preferences)

    def _rank(
        self,
        shops: List[Shop],
        merged: Dict[str, List[ScoredItem]],
        intent: SearchIntent,
        items_per_shop: int
    ) -> List[ShopSearchResult]:
        results = []
        for shop in shops:
            hits = merged.get(shop.id, [])
            capped = hits[:items_per_shop]
            score = self.relevance_strategy.score(shop, capped, len(hits))
            results.append(ShopSearchResult(
                shop=shop,
                items=capped[:MAX_SURFACED_ITEMS],
                total_items=len(hits),
                relevance_score=max(0.0, score),
                category_matches=_category_matches(intent, hits),
            ))

        results.sort(key=lambda result: result.relevance_score, reverse=True)

        # Shops without hits only appear when nothing matched anywhere
        with_items = [result for result in results if result.total_items > 0]
        return with_items or results

    @staticmethod
    def _fail_active(tracker: SearchProgressTracker, message: str) -> Optional[StepId]:
        step = tracker.active_step
        if step is not None:
            tracker.fail(step, message)
        return step

    async def search_shop(self, shop_id: str, query: str, limit: int = 5) -> List[ScoredItem]:
        """
        Similarity search inside one shop (backs ``searchItemsInShop``).

        Falls back to a name/description match when the similarity search
        fails or finds nothing above 0.6; those hits carry similarity 0.85.

        Raises:
            CallTimeoutError: If the name match exceeds the timeout
        """
        try:
            hits = await with_timeout(
                self.item_search.search_items(shop_id, [query], limit),
                self.timeout,
                "Item search"
            )
        except Exception as e:
            logger.warning("Similarity search in %s failed, matching by name: %s", shop_id, e)
            hits = []

        matched = _merge_hits(list(hits), SHOP_SEARCH_MIN_SIMILARITY)[:limit]
        if matched:
            return matched

        items = await with_timeout(
            self.shop_directory.search_items_by_text(shop_id, query, limit),
            self.timeout,
            "Text search"
        )
        return [ScoredItem(item=item, similarity=TEXT_MATCH_SIMILARITY) for item in items][:limit]


# =============================================================================
# Model-facing formatting
# =============================================================================

def _suggested_quantity(item_name: str, quantities: Dict[str, int]) -> int:
    name = item_name.lower()
    first_word = name.split(" ")[0] if name else ""
    for key, quantity in quantities.items():
        if key in name or (first_word and first_word in key):
            return quantity
    return 1


def format_results_for_model(response: SearchResponse) -> str:
    """
    Render search results as the text the tool-calling model reads.

    Includes item ids (needed for cart calls), prices, match percentages and
    the quantities the user asked for.
    """
    if not response.results:
        return "No shops or items found matching your query."

    quantities: Dict[str, int] = {}
    for extracted in response.intent.extracted_items:
        key = (extracted.brand or extracted.name).lower()
        quantities[key] = extracted.quantity

    blocks = []
    for index, result in enumerate(response.results, start=1):
        fee = result.shop.delivery_fee or 0.0
        lines = [
            f"{index}. {result.shop.name} [Shop ID: {result.shop.id}] - Delivery: PKR {fee:.2f}"
            f" - Relevance: {format_relevance(result.relevance_score)}"
        ]
        if result.category_matches:
            lines[0] += f" - Categories: {', '.join(result.category_matches)}"

        if result.items:
            lines.append(f"   Found {result.total_items} matching items:")
            for hit in result.items:
                quantity = _suggested_quantity(hit.item.name, quantities)
                hint = f" (suggested quantity: {quantity})" if quantity > 1 else ""
                lines.append(
                    f"   - {hit.item.name} ({_price_label(hit.item.price_cents)}, "
                    f"{round(hit.similarity * 100)}% match) [ID: {hit.item.id}]{hint}"
                )
            if result.total_items > len(result.items):
                lines.append(f"   ... and {result.total_items - len(result.items)} more items")
        else:
            lines.append("   No matching items found")
        blocks.append("\n".join(lines))

    text = "Search Results:\n" + "\n\n".join(blocks)

    requested = [item for item in response.intent.extracted_items if item.quantity > 1]
    if requested:
        listed = ", ".join(f"{item.name} ({item.quantity})" for item in requested)
        text += (
            f"\n\nIMPORTANT: User requested specific quantities: {listed}. "
            "When adding items to cart, use these quantities."
        )
    return text
