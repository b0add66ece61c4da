"""
Aggregator module for the mention leaderboard.

Turns raw mentions and author records into a ranked count-per-author table
and renders the text views that chat and HTTP callers depend on.

Everything here is pure: no I/O, no clock reads (callers pass `now`), and
identical inputs always produce identical output.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from adapter.models import Author, Mention

logger = logging.getLogger(__name__)


# Number of entries in the public leaderboard
LEADERBOARD_SIZE = 10

# Chat transport hard limit and the chunk size used to stay under it
MESSAGE_LIMIT = 4096
CHUNK_SIZE = 4000

SEPARATOR = "═" * 45


class AggregateEntry(BaseModel):
    """Mention count for one author. Derived from mentions, never edited by hand."""
    handle: str = Field(description="Author handle (without @)")
    display_name: str = Field(default="", description="Profile display name")
    verified: bool = Field(default=False)
    count: int = Field(ge=1, description="Number of mentions by this author")


class PerformanceTier(str, Enum):
    """Rank bucket used in personal stats."""
    CHAMPION = "champion"
    TOP_3 = "top_3"
    TOP_10 = "top_10"
    TOP_HALF = "top_half"
    RISING = "rising"


TIER_LABELS = {
    PerformanceTier.CHAMPION: "🏆 Champion",
    PerformanceTier.TOP_3: "🥈 Top 3",
    PerformanceTier.TOP_10: "⭐ Top 10",
    PerformanceTier.TOP_HALF: "📈 Top Half",
    PerformanceTier.RISING: "🌱 Rising",
}

ENCOURAGEMENTS = {
    PerformanceTier.CHAMPION: "👑 You're the #1 mentioner. Keep the crown!",
    PerformanceTier.TOP_3: "🔥 You're on the podium. First place is within reach!",
    PerformanceTier.TOP_10: "💪 You're in the top 10. Keep the mentions coming!",
    PerformanceTier.TOP_HALF: "🚀 You're ahead of most mentioners. Push for the top 10!",
    PerformanceTier.RISING: "🌱 Every mention counts. Keep climbing the leaderboard!",
}


class PersonalStats(BaseModel):
    """Result of a per-user lookup. found=False is a normal negative result."""
    found: bool
    handle: str = Field(description="Requested handle, normalized (without @)")
    display_name: Optional[str] = None
    verified: bool = False
    rank: Optional[int] = Field(default=None, description="1-based position in the aggregate")
    count: int = 0
    percentage: float = Field(default=0.0, description="Share of all mentions, one decimal")
    tier: Optional[PerformanceTier] = None
    total_users: int = 0
    total_mentions: int = 0
    message: str = ""


AuthorSource = Union[Mapping[str, Author], Iterable[Author]]


def normalize_handle(handle: str) -> str:
    """Strip whitespace and a leading '@', lowercase for comparisons."""
    return handle.strip().lstrip("@").lower()


def index_authors(authors: AuthorSource) -> Dict[str, Author]:
    """Build an id -> Author map. The first record seen for an id wins."""
    if isinstance(authors, Mapping):
        return dict(authors)

    indexed: Dict[str, Author] = {}
    for author in authors:
        if author.id not in indexed:
            indexed[author.id] = author
    return indexed


def discover_authors(mentions: Iterable[Mention], authors: AuthorSource) -> Dict[str, Author]:
    """
    Order author records by discovery.

    Authors come in the order their first mention appears in `mentions`;
    authors no mention references follow in their original order. The first
    record seen for an id wins.
    """
    authors_by_id = index_authors(authors)

    ordered: Dict[str, Author] = {}
    for mention in mentions:
        author = authors_by_id.get(mention.author_id)
        if author is not None and author.id not in ordered:
            ordered[author.id] = author

    for author_id, author in authors_by_id.items():
        if author_id not in ordered:
            ordered[author_id] = author
    return ordered


def aggregate_mentions(mentions: Iterable[Mention], authors: AuthorSource) -> List[AggregateEntry]:
    """
    Count mentions per author handle and rank them.

    Mentions whose author cannot be resolved are skipped. Mentions are scanned
    oldest first, so on a tie the author who mentioned earliest ranks first;
    the order of `authors` never affects the result. An author who catches up
    with a newer mention therefore stays behind the one already at that count.

    Args:
        mentions: Mentions in snapshot order (newest first)
        authors: Author records by id, or a sequence of records

    Returns:
        Entries sorted by count, descending
    """
    authors_by_id = index_authors(authors)

    # handle -> author record of that handle's oldest mention, in first-seen order
    first_seen: Dict[str, Author] = {}
    counts: Dict[str, int] = {}
    skipped = 0

    for mention in reversed(list(mentions)):
        author = authors_by_id.get(mention.author_id)
        if author is None:
            skipped += 1
            continue
        key = normalize_handle(author.handle)
        if key not in first_seen:
            first_seen[key] = author
        counts[key] = counts.get(key, 0) + 1

    if skipped:
        logger.debug(f"Skipped {skipped} mentions with unresolved authors")

    entries = [
        AggregateEntry(
            handle=author.handle,
            display_name=author.display_name,
            verified=author.verified,
            count=counts[key]
        )
        for key, author in first_seen.items()
    ]

    # sorted() is stable, so ties keep first-mention order
    return sorted(entries, key=lambda e: e.count, reverse=True)


def performance_tier(rank: int, total_users: int) -> PerformanceTier:
    """Classify a 1-based rank."""
    if rank == 1:
        return PerformanceTier.CHAMPION
    if rank <= 3:
        return PerformanceTier.TOP_3
    if rank <= 10:
        return PerformanceTier.TOP_10
    if rank <= math.ceil(total_users / 2):
        return PerformanceTier.TOP_HALF
    return PerformanceTier.RISING


def compute_personal_stats(
    aggregate: List[AggregateEntry],
    total_mentions: int,
    mentioner: str
) -> PersonalStats:
    """
    Look up one author in a ranked aggregate.

    Matching is case-insensitive and ignores a leading '@'.
    """
    wanted = normalize_handle(mentioner)

    for position, entry in enumerate(aggregate, start=1):
        if normalize_handle(entry.handle) != wanted:
            continue

        percentage = round(entry.count / total_mentions * 100, 1) if total_mentions else 0.0
        return PersonalStats(
            found=True,
            handle=entry.handle,
            display_name=entry.display_name,
            verified=entry.verified,
            rank=position,
            count=entry.count,
            percentage=percentage,
            tier=performance_tier(position, len(aggregate)),
            total_users=len(aggregate),
            total_mentions=total_mentions
        )

    return PersonalStats(
        found=False,
        handle=wanted,
        total_users=len(aggregate),
        total_mentions=total_mentions,
        message=f"❌ @{wanted} has not mentioned us yet. Mention us to join the leaderboard!"
    )


def _verified_badge(verified: bool) -> str:
    return " ✓" if verified else ""


def _format_entry(rank: int, entry: AggregateEntry) -> str:
    return f"#{rank:02d} | {entry.count:>3} mentions | @{entry.handle}{_verified_badge(entry.verified)}"


def minutes_ago(last_updated: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole minutes elapsed since last_updated, or None if never updated."""
    if last_updated is None:
        return None
    now = now or datetime.now(timezone.utc)
    return max(0, int((now - last_updated).total_seconds() // 60))


def format_leaderboard(
    aggregate: List[AggregateEntry],
    total_mentions: int,
    last_updated: Optional[datetime],
    now: Optional[datetime] = None,
    limit: int = LEADERBOARD_SIZE
) -> str:
    """Render the top entries as the chat leaderboard message."""
    lines = [
        "🏆 TOP 10 MOST ACTIVE MENTIONERS 🏆",
        SEPARATOR,
    ]
    if aggregate:
        lines.extend(_format_entry(rank, entry) for rank, entry in enumerate(aggregate[:limit], start=1))
    else:
        lines.append("No mentions found yet.")

    age = minutes_ago(last_updated, now)
    lines.extend([
        "",
        f"📊 Total unique users: {len(aggregate)}",
        f"📈 Total mentions analyzed: {total_mentions}",
        f"🕐 Last updated: {age} minutes ago" if age is not None else "🕐 Last updated: never",
    ])
    return "\n".join(lines)


def format_full_leaderboard(aggregate: List[AggregateEntry]) -> str:
    """Every entry with its display name. Used for operator logs."""
    lines = ["🏆 MENTIONS LEADERBOARD 🏆", "═" * 50]
    for rank, entry in enumerate(aggregate, start=1):
        lines.append(f"{_format_entry(rank, entry)} ({entry.display_name})")
    return "\n".join(lines)


def format_personal_stats(stats: PersonalStats) -> str:
    """Render a personal stats lookup as a chat message."""
    if not stats.found:
        return stats.message

    return "\n".join([
        f"👤 USER STATS FOR @{stats.handle}{_verified_badge(stats.verified)}",
        SEPARATOR,
        f"🏅 Rank: #{stats.rank} of {stats.total_users}",
        f"💬 Mentions: {stats.count}",
        f"📊 Share of all mentions: {stats.percentage:.1f}%",
        f"🎯 Performance: {TIER_LABELS[stats.tier]}",
        "",
        f"📛 Display name: {stats.display_name or stats.handle}",
        f"✅ Verified: {'Yes' if stats.verified else 'No'}",
        "",
        ENCOURAGEMENTS[stats.tier],
    ])


def chunk_message(text: str, limit: int = CHUNK_SIZE) -> List[str]:
    """
    Split a message for a transport with a 4096 character cap.

    Messages within MESSAGE_LIMIT are returned whole. Longer ones are split on
    line boundaries into chunks of at most `limit` characters; a single line
    longer than `limit` is hard-split.
    """
    if len(text) <= MESSAGE_LIMIT:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]

        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate

    if current:
        chunks.append(current)
    return chunks


__all__ = [
    "AggregateEntry",
    "PersonalStats",
    "PerformanceTier",
    "LEADERBOARD_SIZE",
    "MESSAGE_LIMIT",
    "CHUNK_SIZE",
    "normalize_handle",
    "index_authors",
    "discover_authors",
    "aggregate_mentions",
    "performance_tier",
    "compute_personal_stats",
    "minutes_ago",
    "format_leaderboard",
    "format_full_leaderboard",
    "format_personal_stats",
    "chunk_message",
]
