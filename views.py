"""
Filtered and sorted views over a snapshot of suggestions.

All functions are pure: they never mutate their inputs and return the same
output for the same arguments.
"""

from typing import Any, Iterable, List

from schemas import (
    AdminSortState,
    ProjectionCriteria,
    Suggestion,
    SuggestionSummaryRow,
)

ALL = "All"
DESC_BY_DEFAULT = ("upvotes", "created_at")


def matches(s: Suggestion, criteria: ProjectionCriteria) -> bool:
    if not s.is_public:
        return False
    term = criteria.search.lower()
    if term and term not in s.title.lower() and term not in s.description.lower():
        return False
    if criteria.tag != ALL and criteria.tag not in s.tags:
        return False
    if criteria.category != ALL and criteria.category != s.category:
        return False
    return True


def _newest_first(items: List[Suggestion]) -> List[Suggestion]:
    # Tie-break shared by every order: created_at descending, then id.
    items = sorted(items, key=lambda s: s.id or "")
    return sorted(items, key=lambda s: s.created_at, reverse=True)


def project(suggestions: Iterable[Suggestion], criteria: ProjectionCriteria) -> List[Suggestion]:
    """Public listing: visible suggestions matching the criteria, in sort order."""
    items = _newest_first([s for s in suggestions if matches(s, criteria)])
    order = criteria.sort_order
    if order == "votes":
        items.sort(key=lambda s: s.score, reverse=True)
    elif order == "oldest":
        items.sort(key=lambda s: (s.created_at, s.id or ""))
    elif order == "solved":
        items.sort(key=lambda s: not s.is_terminal)
    elif order == "unsolved":
        items.sort(key=lambda s: s.is_terminal)
    return items


def all_tags(suggestions: Iterable[Suggestion]) -> List[str]:
    tags: List[str] = []
    for s in suggestions:
        for tag in s.tags:
            if tag not in tags:
                tags.append(tag)
    return [ALL] + tags


def toggle_sort(state: AdminSortState, column: str) -> AdminSortState:
    """Clicking the active column flips direction; a new column starts at its default."""
    if state.column == column:
        return AdminSortState(column=column, direction="asc" if state.direction == "desc" else "desc")
    return AdminSortState(column=column, direction="desc" if column in DESC_BY_DEFAULT else "asc")


def _column_key(column: str):
    if column == "upvotes":
        return lambda s: s.upvotes

    def key(s: Suggestion) -> Any:
        # Non-numeric columns, booleans included, compare as case-folded text
        return str(getattr(s, column)).casefold()
    return key


def admin_grid(suggestions: Iterable[Suggestion], term: str, state: AdminSortState) -> List[Suggestion]:
    """Moderator grid: every suggestion whose title or category contains term."""
    term = (term or "").lower().strip()
    items = list(suggestions)
    if term:
        items = [s for s in items if term in s.title.lower() or term in s.category.lower()]
    return sorted(items, key=_column_key(state.column), reverse=state.direction == "desc")


def user_suggestions(suggestions: Iterable[Suggestion], public_id: str) -> List[SuggestionSummaryRow]:
    return [
        SuggestionSummaryRow(
            post_id=s.id or "",
            title=s.title,
            summary=s.summary,
            created_at=s.created_at,
            upvotes=s.upvotes,
            comment_count=s.comment_count,
        )
        for s in _newest_first([s for s in suggestions if s.user_id == public_id])
    ]
