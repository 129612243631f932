"""
In-memory joins across independently fetched collections.

The same entity is referenced by its application ``id`` in some documents and
by its Mongo ``_id`` (or a role field such as ``userId``) in others, so every
lookup tests all of them. The first matching record wins.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "_id", "userId", "coachId")
MAX_FAN_OUT_WORKERS = 8


def match_ids(doc: Dict[str, Any], fields: Iterable[str] = ID_FIELDS) -> set:
    return {str(doc[f]) for f in fields if doc.get(f) not in (None, "")}


def find_by_id(records: List[Dict[str, Any]], ref: Any, fields: Iterable[str] = ID_FIELDS) -> Optional[Dict[str, Any]]:
    if ref in (None, ""):
        return None
    ref = str(ref)
    for rec in records:
        if ref in match_ids(rec, fields):
            return rec
    return None


def index_by_id(records: List[Dict[str, Any]], fields: Iterable[str] = ID_FIELDS) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}
    for rec in records:
        for key in match_ids(rec, fields):
            index.setdefault(key, rec)
    return index


def join_many(refs: Optional[List[Any]], records: List[Dict[str, Any]], default: Callable[[str], Dict[str, Any]]) -> List[Dict[str, Any]]:
    index = index_by_id(records)
    return [index.get(str(ref)) or default(str(ref)) for ref in (refs or [])]


def merge_details(primary: List[Dict[str, Any]], details: List[Dict[str, Any]], key: str = "userId") -> List[Dict[str, Any]]:
    """Left join: overlay each primary record with the detail doc whose ``key`` equals its id."""
    merged = []
    for rec in primary:
        detail = next((d for d in details if d.get(key) is not None and str(d.get(key)) in match_ids(rec, ("id", "_id"))), None)
        if detail:
            combined = {**rec, **{k: v for k, v in detail.items() if k not in ("_id", "id")}}
        else:
            combined = dict(rec)
        merged.append(combined)
    return merged


def player_stub(player_id: str) -> Dict[str, Any]:
    return {
        "id": player_id,
        "name": "",
        "position": "",
        "age": "",
        "attributes": {},
        "averagePerformance": "",
        "stamina": "",
        "lastUpdated": "",
    }


def coach_stub(coach_id: str) -> Dict[str, Any]:
    return {"id": coach_id, "name": "", "email": "", "specialization": "", "experience": "", "rating": ""}


def coach_view(coach: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": coach.get("id") or coach.get("_id") or coach.get("coachId") or "",
        "name": coach.get("name") or coach.get("fullName") or coach.get("coachName") or "",
        "email": coach.get("email") or "",
        "specialization": coach.get("specialization") or "",
        "experience": coach.get("experience") or "",
        "rating": coach.get("rating") or "",
    }


def player_view(player_id: str, player: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": player_id,
        "name": player.get("name") or "",
        "position": player.get("position") or "",
        "age": player.get("age") or "",
        "attributes": player.get("attributes") or {},
        "averagePerformance": player.get("averagePerformance") or "",
        "stamina": player.get("stamina") or "",
        "lastUpdated": player.get("lastUpdated") or "",
    }


def batch_coach_ids(batch: Dict[str, Any]) -> List[str]:
    """``coachIds`` plus the legacy single ``coachId``, deduplicated in order."""
    refs = list(batch.get("coachIds") or [])
    legacy = batch.get("coachId")
    refs.extend(legacy if isinstance(legacy, list) else [legacy])
    ids: List[str] = []
    for ref in refs:
        if ref not in (None, "") and str(ref) not in ids:
            ids.append(str(ref))
    return ids


def resolve_batch(batch: Dict[str, Any], players: List[Dict[str, Any]], coaches: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``batch`` with ``coaches`` and ``playersData`` filled in."""
    resolved = dict(batch)
    coach_ids = batch_coach_ids(batch)
    coach_names = batch.get("coachNames") or []
    coach_index = index_by_id(coaches)

    resolved_coaches = []
    for pos, coach_id in enumerate(coach_ids):
        found = coach_index.get(coach_id)
        if found:
            view = coach_view(found)
            view["id"] = coach_id
        else:
            view = coach_stub(coach_id)
        if not view["name"] and pos < len(coach_names):
            view["name"] = coach_names[pos] or ""
        resolved_coaches.append(view)
    resolved["coaches"] = resolved_coaches

    player_index = index_by_id(players)
    resolved["playersData"] = [
        player_view(str(pid), player_index.get(str(pid)) or {}) for pid in (batch.get("players") or [])
    ]
    return resolved


def fan_out(items: List[Any], fn: Callable[[Any], List[Any]], max_workers: int = MAX_FAN_OUT_WORKERS) -> List[List[Any]]:
    """
    Run ``fn`` for every item with bounded concurrency.

    Results keep the input order. An item whose call raises degrades to an
    empty list; the others are unaffected.
    """
    if not items:
        return []

    def safe(item):
        try:
            return fn(item)
        except Exception as e:
            logger.warning("Fan-out item %r failed, using empty result: %s", item, e)
            return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        return list(pool.map(safe, items))
