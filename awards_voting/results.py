"""
Vote results aggregation and the client-local results mirror.

Counts always come from the service; this module only groups them, derives
percentages and remembers the last known tallies per category so a page can
show them before a fresh fetch completes.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Category, Nominee, StatisticEntry, VotingSlot
from .storage import KeyValueStore, get_storage_key

logger = logging.getLogger(__name__)


def percentage(count: int, total: int) -> int:
    """
    Share of ``total`` as a whole percent, rounded half up.

    Integer arithmetic keeps 12.5 -> 13 exact. A zero total gives 0.
    """
    if total <= 0:
        return 0
    return (200 * count + total) // (2 * total)


@dataclass
class NomineeResult:
    """One nominee's line in a results table."""
    nominee: Nominee
    count: int = 0
    percentage: int = 0
    slot_id: Optional[int] = None

    def to_dict(self, locale: str = "ru") -> dict:
        return {
            "nominee_id": self.nominee.id,
            "name": self.nominee.name,
            "photo_url": self.nominee.photo_url,
            "slot_id": self.slot_id,
            "count": self.count,
            "label": format_vote_count(self.count, locale),
            "percentage": self.percentage,
        }


@dataclass
class CategoryResults:
    """Aggregated results for one category."""
    category: Category
    total: int = 0
    rows: List[NomineeResult] = field(default_factory=list)

    @property
    def has_votes(self) -> bool:
        return bool(self.rows)

    def to_dict(self, locale: str = "ru") -> dict:
        return {
            "category_id": self.category.id,
            "name": self.category.name,
            "description": self.category.description,
            "total": self.total,
            "total_label": format_vote_count(self.total, locale),
            "has_votes": self.has_votes,
            "nominees": [row.to_dict(locale) for row in self.rows],
        }


def tally_category(entries: Iterable[StatisticEntry], category_id: int) -> Dict[int, int]:
    """
    Sum statistic rows of one category per nominee.

    A nominee can show up under several historical slot records; their
    counts are added together. Keys keep first-arrival order.
    """
    counts: Dict[int, int] = {}
    for entry in entries:
        if not entry.is_countable or entry.category.id != category_id:
            continue
        counts[entry.nominee.id] = counts.get(entry.nominee.id, 0) + entry.count
    return counts


def category_totals(entries: Iterable[StatisticEntry]) -> Dict[int, int]:
    """Total votes per category id."""
    totals: Dict[int, int] = {}
    for entry in entries:
        if not entry.is_countable:
            continue
        totals[entry.category.id] = totals.get(entry.category.id, 0) + entry.count
    return totals


def nomination_results(slots: List[VotingSlot], counts: Dict[int, int]) -> Tuple[int, List[NomineeResult]]:
    """
    Results for a single nomination page.

    Args:
        slots: Voting slots of the category, in display order
        counts: nominee_id -> count (server tally or mirrored)

    Returns:
        (total, rows): total over the slots' nominees, one row per nominee
    """
    seen = set()
    rows: List[NomineeResult] = []
    for slot in slots:
        if slot.nominee.id in seen:
            continue
        seen.add(slot.nominee.id)
        rows.append(NomineeResult(
            nominee=slot.nominee,
            count=max(0, counts.get(slot.nominee.id, 0)),
            slot_id=slot.id,
        ))

    total = sum(row.count for row in rows)
    for row in rows:
        row.percentage = percentage(row.count, total)
    return total, rows


def aggregate_statistics(
    categories: List[Category],
    entries: List[StatisticEntry]
) -> List[CategoryResults]:
    """
    Cross-category statistics.

    Rows are grouped by (category, nominee) with summed counts, then ordered
    by descending count. The sort is stable, so ties keep arrival order.
    Rows without a nominee or category are skipped.
    """
    entries = [entry for entry in entries if entry.is_countable]
    results = []
    for category in categories:
        nominees: Dict[int, Nominee] = {}
        for entry in entries:
            if entry.category.id == category.id and entry.nominee.id not in nominees:
                nominees[entry.nominee.id] = entry.nominee

        counts = tally_category(entries, category.id)
        total = sum(counts.values())
        rows = [
            NomineeResult(nominee=nominees[nominee_id], count=count, percentage=percentage(count, total))
            for nominee_id, count in counts.items()
        ]
        rows.sort(key=lambda row: row.count, reverse=True)
        results.append(CategoryResults(category=category, total=total, rows=rows))

    logger.debug(f"Aggregated statistics: {len(entries)} rows into {len(results)} categories")
    return results


# Plural forms per locale: (one, few, many)
VOTE_WORDS = {
    "ru": ("голос", "голоса", "голосов"),
    "en": ("vote", "votes", "votes"),
}


def plural_form(count: int, locale: str = "ru") -> int:
    """Index into the (one, few, many) forms for ``count``."""
    n = abs(count)
    if locale == "ru":
        if n % 10 == 1 and n % 100 != 11:
            return 0
        if 2 <= n % 10 <= 4 and not 12 <= n % 100 <= 14:
            return 1
        return 2
    return 0 if n == 1 else 2


def format_vote_count(count: int, locale: str = "ru") -> str:
    """'5 голосов', '2 голоса', '1 vote'..."""
    if locale not in VOTE_WORDS:
        locale = "en"
    return f"{count} {VOTE_WORDS[locale][plural_form(count, locale)]}"


class ResultsMirror:
    """
    Last known tallies per category, kept in local storage.

    Display aid only: it is never treated as authoritative and is replaced
    wholesale whenever the service reports fresh counts.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, category_id: int) -> Dict[int, int]:
        raw = self.store.get_json(get_storage_key('results', category_id), {})
        if not isinstance(raw, dict):
            return {}
        counts = {}
        for nominee_id, count in raw.items():
            try:
                counts[int(nominee_id)] = int(count)
            except (TypeError, ValueError):
                logger.warning(f"Skipping bad mirrored count {nominee_id}={count!r} in category {category_id}")
        return counts

    def set(self, category_id: int, counts: Dict[int, int]) -> None:
        self.store.set_json(
            get_storage_key('results', category_id),
            {str(nominee_id): count for nominee_id, count in counts.items()}
        )

    def record_vote(self, category_id: int, nominee_id: int, previous_nominee_id: Optional[int] = None) -> Dict[int, int]:
        """Optimistically move one vote to ``nominee_id``."""
        counts = self.get(category_id)
        if previous_nominee_id is not None:
            counts[previous_nominee_id] = max(0, counts.get(previous_nominee_id, 0) - 1)
        counts[nominee_id] = counts.get(nominee_id, 0) + 1
        self.set(category_id, counts)
        return counts

    def record_revoke(self, category_id: int, nominee_id: int) -> Dict[int, int]:
        """Optimistically withdraw one vote from ``nominee_id``."""
        counts = self.get(category_id)
        if nominee_id in counts:
            counts[nominee_id] = max(0, counts[nominee_id] - 1)
            self.set(category_id, counts)
        return counts

    def get_voted(self, category_id: int) -> Optional[int]:
        value = self.store.get(get_storage_key('voted', category_id))
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring bad voted marker {value!r} in category {category_id}")
            return None

    def set_voted(self, category_id: int, nominee_id: int) -> None:
        self.store.set(get_storage_key('voted', category_id), str(nominee_id))

    def clear_voted(self, category_id: int) -> None:
        self.store.delete(get_storage_key('voted', category_id))

    def refresh(self, entries: List[StatisticEntry], category_ids: Iterable[int]) -> None:
        """Replace the mirrored counts of every listed category with fresh server counts."""
        for category_id in category_ids:
            self.set(category_id, tally_category(entries, category_id))

    def totals(self, category_ids: Iterable[int]) -> Dict[int, int]:
        """Mirrored total per category, for the category list."""
        return {category_id: sum(self.get(category_id).values()) for category_id in category_ids}
