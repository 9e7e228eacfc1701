"""
Keyword Normalizer

Turns DataForSEO ranked-keyword and keyword-idea items into one keyword
shape. Provider items put the same value in different places depending on
the endpoint and API version, so every field is read through an ordered
list of paths: the first path that yields a non-null value wins, otherwise
the field default applies.

A single malformed item is skipped with a warning and never aborts the batch.
"""

import logging
import math
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from keyword_intel.database.models import (
    COMPETITION_LEVEL_LENGTH,
    DOMAIN_LENGTH,
    INTENT_LENGTH,
    KEYWORD_LENGTH,
    URL_LENGTH,
    KeywordType,
)
from keyword_intel.exceptions import MalformedProviderItem

logger = logging.getLogger(__name__)

Path = Tuple[str, ...]


# =============================================================================
# FIELD PATHS (tried in order)
# =============================================================================

KEYWORD_PATHS: Sequence[Path] = (
    ("keyword_data", "keyword"),
    ("keyword",),
)


def metric_paths(name: str) -> Sequence[Path]:
    return (
        ("keyword_data", "keyword_info", name),
        ("keyword_data", name),
        ("keyword_info", name),
        (name,),
    )


DIFFICULTY_PATHS: Sequence[Path] = (
    ("keyword_data", "keyword_properties", "keyword_difficulty"),
    ("ranked_serp_element", "keyword_difficulty"),
    ("keyword_properties", "keyword_difficulty"),
    ("keyword_data", "keyword_difficulty"),
    ("keyword_difficulty",),
)

INTENT_PATHS: Sequence[Path] = (
    ("keyword_data", "search_intent_info", "main_intent"),
    ("search_intent_info", "main_intent"),
)

ETV_PATHS: Sequence[Path] = (
    ("ranked_serp_element", "serp_item", "etv"),
    ("ranked_serp_element", "etv"),
)

POSITION_PATHS: Sequence[Path] = (
    ("ranked_serp_element", "serp_item", "rank_absolute"),
    ("ranked_serp_element", "serp_item", "rank_group"),
)

SERP_ITEM: Path = ("ranked_serp_element", "serp_item")
RANK_CHANGES: Path = SERP_ITEM + ("rank_changes",)

URL_PATHS: Sequence[Path] = (SERP_ITEM + ("url",),)
DOMAIN_PATHS: Sequence[Path] = (SERP_ITEM + ("domain",),)
TITLE_PATHS: Sequence[Path] = (SERP_ITEM + ("title",),)
DESCRIPTION_PATHS: Sequence[Path] = (SERP_ITEM + ("description",),)
PAID_COST_PATHS: Sequence[Path] = (SERP_ITEM + ("estimated_paid_traffic_cost",),)
PREVIOUS_POSITION_PATHS: Sequence[Path] = (RANK_CHANGES + ("previous_rank_absolute",),)


# =============================================================================
# EXTRACTION HELPERS
# =============================================================================

def dig(item: Any, path: Path) -> Any:
    """Follow a path of dict keys, None as soon as a step is missing."""
    current = item
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def first_present(item: Dict[str, Any], paths: Sequence[Path]) -> Any:
    for path in paths:
        value = dig(item, path)
        if value is not None:
            return value
    return None


def to_number(value: Any, cast: Callable[[float], Any] = float, default: Any = 0) -> Any:
    """Coerce provider numbers (which may arrive as strings) to int/float."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return cast(number)


def to_optional_text(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Stripped text, None when empty or longer than the column holds."""
    if value is None:
        return None
    text = str(value).strip()
    if max_length is not None and len(text) > max_length:
        return None
    return text or None


def to_flag(value: Any) -> bool:
    return value is True


def to_monthly_searches(value: Any) -> List[Dict[str, int]]:
    """Monthly volume history, entries without a year and month dropped."""
    if not isinstance(value, list):
        return []
    history = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        year = to_number(entry.get("year"), int, default=None)
        month = to_number(entry.get("month"), int, default=None)
        if year is None or month is None:
            continue
        history.append({
            "year": year,
            "month": month,
            "search_volume": to_number(entry.get("search_volume"), int),
        })
    return history


# =============================================================================
# NORMALIZED SHAPE
# =============================================================================

@dataclass
class NormalizedKeyword:
    """One keyword with provider-independent fields."""
    keyword: str
    keyword_type: KeywordType
    search_volume: int = 0
    cpc: float = 0.0
    competition: float = 0.0
    difficulty: float = 0.0
    competition_level: str = "UNKNOWN"
    etv: float = 0.0
    estimated_paid_cost: float = 0.0
    intent: Optional[str] = None
    monthly_searches: List[Dict[str, int]] = field(default_factory=list)

    # SERP data, ranked keywords only
    current_position: Optional[int] = None
    previous_position: Optional[int] = None
    is_up: bool = False
    is_down: bool = False
    is_new: bool = False
    url: Optional[str] = None
    domain: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Column values for KeywordRecord."""
        return asdict(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyword": self.keyword,
            "type": self.keyword_type.value,
            "searchVolume": self.search_volume,
            "cpc": self.cpc,
            "competition": self.competition,
            "competitionLevel": self.competition_level,
            "difficulty": self.difficulty,
            "etv": self.etv,
            "estimatedPaidCost": self.estimated_paid_cost,
            "intent": self.intent,
            "monthlySearches": self.monthly_searches,
            "currentPosition": self.current_position,
            "previousPosition": self.previous_position,
            "isUp": self.is_up,
            "isDown": self.is_down,
            "isNew": self.is_new,
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "description": self.description,
        }


def extract_keyword(item: Any) -> str:
    if not isinstance(item, dict):
        raise MalformedProviderItem(f"Expected an object, got {type(item).__name__}")
    keyword = first_present(item, KEYWORD_PATHS)
    if not isinstance(keyword, str) or not keyword.strip():
        raise MalformedProviderItem("Item has no keyword")
    keyword = keyword.strip()
    if len(keyword) > KEYWORD_LENGTH:
        raise MalformedProviderItem(f"Keyword longer than {KEYWORD_LENGTH} characters")
    return keyword


def normalize_item(item: Any, keyword_type: KeywordType) -> NormalizedKeyword:
    """
    Normalize a single provider item.

    Raises:
        MalformedProviderItem: When the item has no usable keyword string
    """
    keyword = extract_keyword(item)
    competition_level = first_present(item, metric_paths("competition_level"))

    record = NormalizedKeyword(
        keyword=keyword,
        keyword_type=keyword_type,
        search_volume=to_number(first_present(item, metric_paths("search_volume")), int),
        cpc=to_number(first_present(item, metric_paths("cpc"))),
        competition=to_number(first_present(item, metric_paths("competition"))),
        difficulty=to_number(first_present(item, DIFFICULTY_PATHS)),
        competition_level=to_optional_text(competition_level, COMPETITION_LEVEL_LENGTH) or "UNKNOWN",
        intent=to_optional_text(first_present(item, INTENT_PATHS), INTENT_LENGTH),
        monthly_searches=to_monthly_searches(first_present(item, metric_paths("monthly_searches"))),
    )

    if keyword_type == KeywordType.RANKED:
        record.etv = to_number(first_present(item, ETV_PATHS))
        record.estimated_paid_cost = to_number(first_present(item, PAID_COST_PATHS))
        record.current_position = to_number(first_present(item, POSITION_PATHS), int, default=None)
        record.previous_position = to_number(first_present(item, PREVIOUS_POSITION_PATHS), int, default=None)
        record.is_up = to_flag(dig(item, RANK_CHANGES + ("is_up",)))
        record.is_down = to_flag(dig(item, RANK_CHANGES + ("is_down",)))
        record.is_new = to_flag(dig(item, RANK_CHANGES + ("is_new",)))
        record.url = to_optional_text(first_present(item, URL_PATHS), URL_LENGTH)
        record.domain = to_optional_text(first_present(item, DOMAIN_PATHS), DOMAIN_LENGTH)
        record.title = to_optional_text(first_present(item, TITLE_PATHS))
        record.description = to_optional_text(first_present(item, DESCRIPTION_PATHS))

    return record


def iter_items(batches: Optional[Iterable[Any]]) -> Iterable[Any]:
    """Flatten result batches into their items, tolerating missing pieces."""
    for batch in batches or []:
        if not isinstance(batch, dict):
            continue
        items = batch.get("items")
        if isinstance(items, list):
            yield from items


def _normalize_batches(batches: Optional[Iterable[Any]], keyword_type: KeywordType) -> List[NormalizedKeyword]:
    records = []
    for index, item in enumerate(iter_items(batches)):
        try:
            records.append(normalize_item(item, keyword_type))
        except MalformedProviderItem as e:
            logger.warning(f"Skipping {keyword_type.value} item #{index}: {e}")
    return records


def normalize(
    ranked_batches: Optional[Iterable[Any]],
    suggestion_batches: Optional[Iterable[Any]],
) -> List[NormalizedKeyword]:
    """
    Merge ranked and suggestion batches into one keyword list.

    Ranked keywords come first, then suggestions, each in provider order.
    A keyword present in both batches yields two records, one per type.
    """
    ranked = _normalize_batches(ranked_batches, KeywordType.RANKED)
    suggestions = _normalize_batches(suggestion_batches, KeywordType.SUGGESTION)
    logger.info(f"Normalized {len(ranked)} ranked and {len(suggestions)} suggestion keywords")
    return ranked + suggestions


def extract_seed_keywords(ranked_batches: Optional[Iterable[Any]], cap: int = 200) -> List[str]:
    """
    Seed keywords for the suggestions request.

    Keyword strings of all ranked items in provider order, duplicates
    dropped, truncated to ``cap - 1`` entries.
    """
    limit = max(cap - 1, 0)
    seeds: List[str] = []
    seen = set()

    for item in iter_items(ranked_batches):
        if len(seeds) >= limit:
            break
        try:
            keyword = extract_keyword(item)
        except MalformedProviderItem:
            continue
        if keyword in seen:
            continue
        seen.add(keyword)
        seeds.append(keyword)

    return seeds
