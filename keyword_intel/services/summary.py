"""
Status payloads for polling clients.

Shapes analysis records and their keywords into the JSON the status,
detailed and history endpoints return, including the results summary of
completed analyses and the competitor breakdown of the detailed view.
"""

import math
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from keyword_intel.collector.normalizer import SERP_ITEM, dig, extract_keyword, iter_items, to_number, to_optional_text
from keyword_intel.database.models import AnalysisRecord, AnalysisStatus, KeywordRecord, KeywordType, Website
from keyword_intel.exceptions import MalformedProviderItem


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_summary(keywords: Sequence[KeywordRecord]) -> Dict[str, Any]:
    """
    Aggregates over all keywords of an analysis.

    avgPosition only counts ranked keywords with a known position.
    """
    total = len(keywords)
    if total == 0:
        return {
            "avgSearchVolume": 0,
            "avgCpc": 0,
            "avgPosition": 0,
            "totalEtv": 0,
            "totalPaidValue": 0,
            "intentDistribution": {},
        }

    positions = [k.current_position for k in keywords if k.current_position]
    avg_position = int(round_half_up(sum(positions) / len(positions))) if positions else 0

    return {
        "avgSearchVolume": int(round_half_up(sum(k.search_volume for k in keywords) / total)),
        "avgCpc": round_half_up(sum(k.cpc for k in keywords) / total, 2),
        "avgPosition": avg_position,
        "totalEtv": round_half_up(sum(k.etv for k in keywords), 2),
        "totalPaidValue": round_half_up(sum(k.estimated_paid_cost or 0 for k in keywords), 2),
        "intentDistribution": dict(Counter(k.intent or "unknown" for k in keywords)),
    }


def build_results(record: AnalysisRecord, keywords: List[KeywordRecord]) -> Dict[str, Any]:
    ranked = sum(1 for k in keywords if k.keyword_type == KeywordType.RANKED)
    return {
        "id": record.id,
        "totalKeywords": len(keywords),
        "rankedKeywords": ranked,
        "opportunities": len(keywords) - ranked,
        "cost": record.estimated_cost or 0,
        "keywords": [k.to_dict() for k in keywords],
        "summary": build_summary(keywords),
    }


def status_payload(record: AnalysisRecord, keywords: Optional[List[KeywordRecord]] = None) -> Dict[str, Any]:
    """Status response. ``results`` is only present for completed analyses."""
    payload: Dict[str, Any] = {
        "id": record.id,
        "status": record.status.value,
        "progress": record.progress,
        "error": record.error_message,
        "createdAt": _iso(record.created_at),
        "startedAt": _iso(record.started_at),
        "completedAt": _iso(record.completed_at),
    }
    if record.status == AnalysisStatus.COMPLETED:
        payload["results"] = build_results(record, keywords or [])
    return payload


def history_entry(record: AnalysisRecord) -> Dict[str, Any]:
    params = record.input_parameters or {}
    return {
        "id": record.id,
        "websiteId": record.subject_id,
        "status": record.status.value,
        "progress": record.progress,
        "country": params.get("country"),
        "language": params.get("language"),
        "keywordCount": record.keyword_count,
        "cost": record.estimated_cost,
        "error": record.error_message,
        "createdAt": _iso(record.created_at),
        "completedAt": _iso(record.completed_at),
    }


# =============================================================================
# DETAILED VIEW
# =============================================================================

TOP_COMPETITORS = 5


def _bare_domain(domain: Optional[str]) -> Optional[str]:
    if not domain:
        return None
    domain = domain.strip().lower()
    return domain[4:] if domain.startswith("www.") else domain


def aggregate_competitors(
    ranked_payload: Any,
    own_domain: Optional[str],
    limit: int = TOP_COMPETITORS,
) -> List[Dict[str, Any]]:
    """
    Other domains ranking in the stored ranked-keyword payload.

    Domains are grouped with and without ``www.``; the owner's own domain
    is left out. Sorted by appearances, first seen wins ties. avgPosition
    only counts appearances with a known position.
    """
    own = _bare_domain(own_domain)
    competitors: Dict[str, Dict[str, Any]] = {}
    positions: Dict[str, List[int]] = {}

    for item in iter_items(ranked_payload):
        serp_item = dig(item, SERP_ITEM)
        if not isinstance(serp_item, dict):
            continue
        domain = to_optional_text(serp_item.get("domain"))
        key = _bare_domain(domain)
        if key is None or key == own:
            continue
        try:
            keyword = extract_keyword(item)
        except MalformedProviderItem:
            continue

        position = to_number(serp_item.get("rank_absolute"), int, default=None)
        etv = to_number(serp_item.get("etv"))
        competitor = competitors.setdefault(key, {
            "domain": domain,
            "websiteName": to_optional_text(serp_item.get("website_name")) or domain,
            "appearances": 0,
            "totalEtv": 0.0,
            "keywords": [],
        })
        competitor["appearances"] += 1
        competitor["totalEtv"] += etv
        competitor["keywords"].append({"keyword": keyword, "position": position, "etv": etv})
        if position:
            positions.setdefault(key, []).append(position)

    ranked = sorted(competitors.items(), key=lambda entry: -entry[1]["appearances"])[:limit]
    result = []
    for key, competitor in ranked:
        known = positions.get(key, [])
        result.append({
            **competitor,
            "avgPosition": int(round_half_up(sum(known) / len(known))) if known else 0,
            "totalEtv": round_half_up(competitor["totalEtv"], 2),
        })
    return result


def detailed_payload(
    record: AnalysisRecord,
    website: Website,
    keywords: List[KeywordRecord],
    own_domain: Optional[str],
) -> Dict[str, Any]:
    """Full keyword detail of an analysis, with the competitors found in its SERP data."""
    ranked = [k for k in keywords if k.keyword_type == KeywordType.RANKED]
    suggestions = [k for k in keywords if k.keyword_type == KeywordType.SUGGESTION]
    return {
        "id": record.id,
        "status": record.status.value,
        "website": {"id": website.id, "name": website.name, "url": website.url},
        "rankedKeywords": [k.to_dict() for k in ranked],
        "suggestions": [k.to_dict() for k in suggestions],
        "competitors": aggregate_competitors(record.ranked_keywords_response, own_domain),
        "totalKeywords": len(ranked),
        "totalSuggestions": len(suggestions),
        "summary": build_summary(ranked),
    }
