"""
Suggestion lifecycle rules.

Every function here is the single place where the derived fields of a
suggestion (solved, resolved_at, comment_count) and the vote counters are
changed. Callers pass the acting Viewer explicitly; checks run before any
mutation so a failed call leaves its arguments untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from errors import CommentIndexError, LoginRequired, NotFound, StoreError, Unauthorized, ValidationError
from schemas import (
    BulkSaveFailure,
    BulkSaveResult,
    Comment,
    Suggestion,
    UserProfile,
    Viewer,
    VoteLedger,
    is_terminal,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], str]

_LEDGER_FIELD = {"up": "upvoted", "down": "downvoted"}
_COUNTER_FIELD = {"up": "upvotes", "down": "downvotes"}


def require_writer(viewer: Viewer) -> None:
    if not viewer.logged_in:
        raise LoginRequired("You must be logged in to do that")
    if viewer.is_banned:
        raise Unauthorized("Your account has been banned")


def require_moderator(viewer: Viewer) -> None:
    if not viewer.logged_in:
        raise LoginRequired("Moderator login required")
    if not viewer.is_moderator:
        raise Unauthorized("Moderator access required")


# -------- Votes ---------

@dataclass
class VoteOutcome:
    """What a vote changed, expressed as counter deltas and ledger moves."""
    counters: Dict[str, int] = field(default_factory=dict)
    ledger_add: Dict[str, str] = field(default_factory=dict)
    ledger_remove: Dict[str, str] = field(default_factory=dict)


@dataclass
class LedgerWrite:
    """Conditional update of a voter's ledger, written only while `guard` matches."""
    guard: Dict[str, Any]
    add: Dict[str, str] = field(default_factory=dict)
    remove: Dict[str, str] = field(default_factory=dict)


def plan_vote(ledger: VoteLedger, direction: str, suggestion_id: str) -> LedgerWrite:
    """Ledger move for a vote, guarded on the membership the toggle decision saw.

    A request that read a stale ledger finds the guard no longer matches and
    writes nothing, so the counters are moved at most once per ledger change.
    """
    if direction not in _LEDGER_FIELD:
        raise ValidationError(f"Unknown vote direction: {direction!r}")
    same = _LEDGER_FIELD[direction]
    other = _LEDGER_FIELD["down" if direction == "up" else "up"]
    if suggestion_id in getattr(ledger, same):
        return LedgerWrite(guard={same: suggestion_id}, remove={same: suggestion_id})
    return LedgerWrite(guard={same: {"$ne": suggestion_id}},
                       add={same: suggestion_id}, remove={other: suggestion_id})


def _bump(suggestion: Suggestion, counter: str, delta: int, outcome: VoteOutcome) -> None:
    current = getattr(suggestion, counter)
    if delta < 0 and current <= 0:
        return
    setattr(suggestion, counter, current + delta)
    outcome.counters[counter] = outcome.counters.get(counter, 0) + delta


def apply_vote(suggestion: Suggestion, ledger: VoteLedger, direction: str, viewer: Viewer) -> VoteOutcome:
    """Toggle the viewer's vote in `direction` on `suggestion`.

    Voting the same way twice removes the vote. Voting the other way moves it,
    so a viewer holds at most one vote per suggestion.
    """
    require_writer(viewer)
    if direction not in _LEDGER_FIELD:
        raise ValidationError(f"Unknown vote direction: {direction!r}")
    sid = suggestion.id
    if not sid:
        raise ValidationError("Cannot vote on an unsaved suggestion")

    opposite = "down" if direction == "up" else "up"
    same_set: List[str] = getattr(ledger, _LEDGER_FIELD[direction])
    other_set: List[str] = getattr(ledger, _LEDGER_FIELD[opposite])
    outcome = VoteOutcome()

    if sid in same_set:
        same_set.remove(sid)
        _bump(suggestion, _COUNTER_FIELD[direction], -1, outcome)
        outcome.ledger_remove[_LEDGER_FIELD[direction]] = sid
        return outcome

    same_set.append(sid)
    _bump(suggestion, _COUNTER_FIELD[direction], 1, outcome)
    outcome.ledger_add[_LEDGER_FIELD[direction]] = sid
    if sid in other_set:
        other_set.remove(sid)
        _bump(suggestion, _COUNTER_FIELD[opposite], -1, outcome)
        outcome.ledger_remove[_LEDGER_FIELD[opposite]] = sid
    return outcome


# -------- Comments ---------

def recount_comments(suggestion: Suggestion) -> Suggestion:
    suggestion.comment_count = len(suggestion.comments)
    return suggestion


def add_comment(suggestion: Suggestion, viewer: Viewer, text: str, now: Clock = utc_now_iso) -> Comment:
    require_writer(viewer)
    body = (text or "").strip()
    if not body:
        raise ValidationError("Comment cannot be empty")
    comment = Comment(user_id=viewer.public_id, text=body, timestamp=now())
    suggestion.comments.append(comment)
    recount_comments(suggestion)
    return comment


def delete_comment(suggestion: Suggestion, index: int, viewer: Viewer, now: Clock = utc_now_iso) -> Comment:
    require_moderator(viewer)
    if not 0 <= index < len(suggestion.comments):
        raise CommentIndexError(f"No comment at index {index}")
    removed = suggestion.comments.pop(index)
    recount_comments(suggestion)
    suggestion.updated_at = now()
    return removed


# -------- Status ---------

def apply_status_change(suggestion: Suggestion, new_status: str, now: Clock = utc_now_iso) -> Suggestion:
    """Set status and re-derive solved/resolved_at.

    Entering a terminal status stamps resolved_at unless it is already set;
    moving between terminal statuses keeps the original stamp; leaving
    terminal clears it.
    """
    terminal = is_terminal(new_status)
    stamp = now()
    suggestion.status = new_status
    suggestion.solved = terminal
    if terminal and suggestion.resolved_at is None:
        suggestion.resolved_at = stamp
    elif not terminal:
        suggestion.resolved_at = None
    suggestion.updated_at = stamp
    return suggestion


def rederive(suggestion: Suggestion, now: Clock = utc_now_iso) -> Suggestion:
    apply_status_change(suggestion, suggestion.status, now)
    return recount_comments(suggestion)


def bulk_save(suggestions: Iterable[Suggestion], persist: Callable[[Suggestion], None],
              now: Clock = utc_now_iso) -> BulkSaveResult:
    """Re-derive every record and persist each one independently.

    A failed persist is recorded and the remaining records are still saved;
    nothing already saved is rolled back.
    """
    result = BulkSaveResult()
    for suggestion in suggestions:
        rederive(suggestion, now)
        try:
            persist(suggestion)
        except (StoreError, NotFound) as e:
            logger.warning("Bulk save failed for %s: %s", suggestion.id, e)
            result.failures.append(BulkSaveFailure(id=str(suggestion.id), error=str(e)))
        else:
            result.saved.append(str(suggestion.id))
    return result


# -------- Deletion and bans ---------

def can_delete(suggestion: Suggestion, viewer: Viewer) -> bool:
    if viewer.logged_in and viewer.is_moderator:
        return True
    return viewer.can_write and suggestion.user_id == viewer.public_id


def require_can_delete(suggestion: Suggestion, viewer: Viewer) -> None:
    if not can_delete(suggestion, viewer):
        raise Unauthorized("Only the author or a moderator can delete this suggestion")


def toggle_ban_status(profile: UserProfile, viewer: Viewer) -> UserProfile:
    """Flip the ban flag. Existing suggestions and comments are left as they are."""
    require_moderator(viewer)
    profile.is_banned = not profile.is_banned
    return profile


def check_submission(viewer: Viewer, title: str, description: str, category: str,
                     categories: Optional[List[str]] = None) -> None:
    require_writer(viewer)
    if not (title or "").strip() or not (description or "").strip():
        raise ValidationError("Title and description are required")
    if categories is not None and category not in categories:
        raise ValidationError(f"Unknown category: {category!r}")
