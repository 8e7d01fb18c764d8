# app/core/generation/knowledge.py
"""
KNOWLEDGE MODULE - Pick the slice of reference text a prompt may contain

Purpose:
    1. Derive relevance tags from an Intent (product, kind, product:kind, focus tags)
    2. Read matching active entries from the primary store (database)
    3. Fall back to the static corpus file when the primary store errors or is empty
    4. Order by priority and fill a token budget with whole entries only

Data Flow:
    Intent → relevance_tags_for() → KnowledgeSelector.select()
                                        ├→ primary.find_by_tags()   (DatabaseKnowledgeStore / SnapshotKnowledgeStore)
                                        └→ fallback.find_by_tags()  (FileKnowledgeStore)
                                   → select_entries() → KnowledgeSelection

Why this matters:
    - The model only knows what we hand it; an entry cut in half is worse than none
    - Same snapshot + same tags + same budget must give the same selection
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models
from app.core.errors import KnowledgeLoadError
from app.core.schemas import Intent, KnowledgeEntry, KnowledgePriority, KnowledgeSelection

logger = logging.getLogger(__name__)


# ============================================================================
# STEP 1: TAGS AND PURE SELECTION
# ============================================================================


def relevance_tags_for(intent: Intent, focus_tags: Iterable[str] = ()) -> FrozenSet[str]:
    """
    Example:
        customer_list intent → {"xframe5-ui", "list", "xframe5-ui:list"}
    """
    product = intent.product.value
    kind = intent.kind.value
    tags = {product, kind, f"{product}:{kind}"}
    tags.update(tag.strip().lower() for tag in focus_tags if tag and tag.strip())
    return frozenset(tags)


def estimate_tokens(text: str) -> int:
    """Rough token count (about four characters per token)."""
    return max(1, len(text) // 4)


def select_entries(
    entries: Sequence[KnowledgeEntry],
    tags: Iterable[str],
    budget: int,
    source: str = "primary",
) -> KnowledgeSelection:
    """
    Filter, order and budget knowledge entries.

    Rules:
        - keep entries whose relevance tags intersect the requested tags
        - sort by priority (essential first), then name, then id
        - add entries while the running total stays within budget
        - stop at the first entry that does not fit (entries are never truncated)

    Args:
        entries: Candidate entries (active only)
        tags: Requested relevance tags
        budget: Maximum summed token estimate
        source: Recorded on the selection ("primary" / "fallback")

    Returns:
        KnowledgeSelection with the chosen entries and their token total
    """
    wanted = frozenset(tags)
    matching = [entry for entry in entries if entry.relevance_tags & wanted]
    matching.sort(key=lambda entry: (entry.priority.rank, entry.name, entry.id))

    selected: List[KnowledgeEntry] = []
    total = 0
    for entry in matching:
        if total + entry.token_estimate > budget:
            break
        selected.append(entry)
        total += entry.token_estimate

    if len(selected) < len(matching):
        logger.info(
            f"Knowledge budget {budget} reached: kept {len(selected)} of {len(matching)} entries"
        )

    return KnowledgeSelection(entries=tuple(selected), total_tokens=total, source=source)


def _parse_priority(value: Any) -> KnowledgePriority:
    try:
        return KnowledgePriority(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown knowledge priority '{value}', treating as medium")
        return KnowledgePriority.MEDIUM


def entry_from_mapping(data: Dict[str, Any]) -> KnowledgeEntry:
    content = str(data["content"])
    token_estimate = data.get("token_estimate")
    return KnowledgeEntry(
        id=int(data["id"]),
        name=str(data["name"]),
        category=str(data.get("category", "general")),
        component=data.get("component"),
        relevance_tags=frozenset(str(tag).lower() for tag in data.get("relevance_tags") or []),
        priority=_parse_priority(data.get("priority", "medium")),
        token_estimate=int(token_estimate) if token_estimate else estimate_tokens(content),
        content=content,
    )


# ============================================================================
# STEP 2: STORES
# ============================================================================


class SnapshotKnowledgeStore:
    """
    In-memory corpus held as one immutable tuple.

    replace() swaps the reference in a single assignment, so a reader that
    already grabbed the old tuple finishes with it and never sees a mix.
    """

    def __init__(self, entries: Iterable[KnowledgeEntry] = ()):
        self._snapshot: Tuple[KnowledgeEntry, ...] = tuple(entries)

    @property
    def snapshot(self) -> Tuple[KnowledgeEntry, ...]:
        return self._snapshot

    def replace(self, entries: Iterable[KnowledgeEntry]) -> None:
        self._snapshot = tuple(entries)

    async def load_all(self) -> List[KnowledgeEntry]:
        return list(self._snapshot)

    async def find_by_tags(self, tags: FrozenSet[str]) -> List[KnowledgeEntry]:
        snapshot = self._snapshot
        return [entry for entry in snapshot if entry.relevance_tags & tags]

    async def refresh_from(self, source) -> int:
        """Load a full corpus from another store and swap it in. Returns the entry count."""
        entries = await source.load_all()
        self.replace(entries)
        logger.info(f"Knowledge snapshot refreshed with {len(entries)} entries")
        return len(entries)


class DatabaseKnowledgeStore:
    """Active rows of the knowledge_bases table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_all(self) -> List[KnowledgeEntry]:
        async with self.session_factory() as session:
            stmt = (
                select(models.KnowledgeBase)
                .where(models.KnowledgeBase.is_active.is_(True))
                .order_by(models.KnowledgeBase.id)
            )
            rows = (await session.execute(stmt)).scalars().all()

        return [
            entry_from_mapping(
                {
                    "id": row.id,
                    "name": row.name,
                    "category": row.category,
                    "component": row.component,
                    "relevance_tags": row.relevance_tags,
                    "priority": row.priority,
                    "token_estimate": row.token_estimate,
                    "content": row.content,
                }
            )
            for row in rows
        ]

    async def find_by_tags(self, tags: FrozenSet[str]) -> List[KnowledgeEntry]:
        # Tags live in a JSON column; intersect in Python to stay dialect-neutral
        return [entry for entry in await self.load_all() if entry.relevance_tags & tags]


class FileKnowledgeStore:
    """
    Static fallback corpus: a JSON file shaped like {"entries": [{...}, ...]}.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> List[KnowledgeEntry]:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        raw_entries = data["entries"] if isinstance(data, dict) else data
        return [entry_from_mapping(item) for item in raw_entries]

    def exists(self) -> bool:
        return self.path.is_file()

    async def load_all(self) -> List[KnowledgeEntry]:
        return await asyncio.to_thread(self._read)

    async def find_by_tags(self, tags: FrozenSet[str]) -> List[KnowledgeEntry]:
        return [entry for entry in await self.load_all() if entry.relevance_tags & tags]


# ============================================================================
# STEP 3: SELECTOR WITH FALLBACK
# ============================================================================


class KnowledgeSelector:
    """
    Primary store first, static corpus second.

    Example:
        selector = KnowledgeSelector(DatabaseKnowledgeStore(AsyncSessionLocal),
                                     FileKnowledgeStore(path), budget=4000)
        selection = await selector.select(relevance_tags_for(intent))
    """

    def __init__(self, primary, fallback=None, budget: int = 4000):
        self.primary = primary
        self.fallback = fallback
        self.budget = budget

    async def select(self, tags: FrozenSet[str]) -> KnowledgeSelection:
        try:
            entries = await self.primary.find_by_tags(tags)
        except Exception as e:
            logger.warning(f"Primary knowledge store failed, using fallback: {e}")
            entries = []

        # An empty selection counts as a miss, whether nothing matched or nothing fit the budget
        selection = select_entries(entries, tags, self.budget, source="primary")
        if selection.entries:
            return selection

        if self.fallback is None:
            raise KnowledgeLoadError(f"No knowledge within budget {self.budget} for tags {sorted(tags)}")

        logger.warning(f"No usable primary knowledge for tags {sorted(tags)}, reading fallback corpus")
        try:
            entries = await self.fallback.find_by_tags(tags)
        except Exception as e:
            raise KnowledgeLoadError(f"Fallback knowledge corpus unavailable: {e}") from e

        selection = select_entries(entries, tags, self.budget, source="fallback")
        if not selection.entries:
            raise KnowledgeLoadError(f"No knowledge within budget {self.budget} for tags {sorted(tags)}")

        return selection
