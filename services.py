"""
Suggestion operations against the record store.

Each method loads the records it needs, applies the lifecycle rules and
writes the result back. Votes and comment appends use atomic field-level
updates; vote ledgers are written conditionally on the state that was read.
Moderation edits write the changed fields with $set.
"""

import logging
from typing import Callable, List, Optional

from config import Settings
from database import SUGGESTIONS, USERS, RecordStore, Subscription, collection_path, document_path
from errors import LoginRequired, NotFound, StoreError, Unauthorized, ValidationError
from identity import IdentityProvider
import lifecycle
from schemas import (
    CATEGORIES,
    AdminSortState,
    BulkSaveFailure,
    BulkSaveResult,
    BulkSaveRow,
    Comment,
    ProjectionCriteria,
    Suggestion,
    SuggestionCreate,
    SuggestionEdit,
    SuggestionSummaryRow,
    UserProfile,
    Viewer,
    utc_now_iso,
)
from summarizer import GeminiSummarizer, summarize_or_truncate
import views

logger = logging.getLogger(__name__)

# Fields written back by moderation edits and bulk save. comment_count is
# only written together with a guard on the comments it was counted from.
MODERATED_FIELDS = (
    "title", "category", "priority", "status", "is_public",
    "solved", "resolved_at", "updated_at",
)


class SuggestionService:
    def __init__(self, store: RecordStore, identity: IdentityProvider, settings: Settings,
                 summarizer: Optional[GeminiSummarizer] = None,
                 clock: Callable[[], str] = utc_now_iso):
        self.store = store
        self.identity = identity
        self.settings = settings
        self.summarizer = summarizer
        self.clock = clock
        self.suggestions_path = collection_path(settings.app_id, SUGGESTIONS)

    def path(self, suggestion_id: str) -> str:
        return document_path(self.settings.app_id, SUGGESTIONS, suggestion_id)

    # -------- Reads ---------

    def get(self, suggestion_id: str) -> Suggestion:
        return Suggestion(**self.store.get(self.path(suggestion_id)))

    def all(self) -> List[Suggestion]:
        docs = self.store.list(self.suggestions_path, order_by="created_at", descending=True)
        return [Suggestion(**doc) for doc in docs]

    def list_public(self, criteria: ProjectionCriteria) -> List[Suggestion]:
        return views.project(self.all(), criteria)

    def tags(self) -> List[str]:
        return views.all_tags(s for s in self.all() if s.is_public)

    def list_for_admin(self, viewer: Viewer, term: str = "",
                       sort: Optional[AdminSortState] = None) -> List[Suggestion]:
        lifecycle.require_moderator(viewer)
        return views.admin_grid(self.all(), term, sort or AdminSortState())

    def list_mine(self, viewer: Viewer) -> List[SuggestionSummaryRow]:
        if not viewer.logged_in or not viewer.public_id:
            raise LoginRequired("You must be logged in to do that")
        return views.user_suggestions(self.all(), viewer.public_id)

    def watch(self, callback: Callable[[List[Suggestion]], None]) -> Subscription:
        """Push the full suggestion list to callback now and after every change."""
        return self.store.subscribe(
            self.suggestions_path,
            lambda docs: callback([Suggestion(**doc) for doc in docs]),
            order_by="created_at",
            descending=True,
        )

    # -------- Submission ---------

    def submit(self, viewer: Viewer, payload: SuggestionCreate) -> Suggestion:
        lifecycle.check_submission(viewer, payload.title, payload.description, payload.category, CATEGORIES)
        now = self.clock()
        suggestion = Suggestion(
            title=payload.title.strip(),
            description=payload.description,
            summary=summarize_or_truncate(payload.description, self.summarizer),
            tags=payload.tags,
            category=payload.category,
            attachments=payload.attachments,
            is_public=payload.is_public,
            created_at=now,
            updated_at=now,
            user_id=viewer.public_id,
        )
        suggestion.id = self.store.create(self.suggestions_path, suggestion.model_dump(exclude={"id"}))
        logger.info("Suggestion %s submitted by %s", suggestion.id, viewer.public_id)
        return suggestion

    # -------- Votes and comments ---------

    def vote(self, viewer: Viewer, suggestion_id: str, direction: str) -> Suggestion:
        lifecycle.require_writer(viewer)
        suggestion = self.get(suggestion_id)
        try:
            profile = self.identity.get_profile(viewer.owner_id)
        except NotFound as e:
            raise Unauthorized("Only student accounts can vote") from e
        plan = lifecycle.plan_vote(profile.ledger(), direction, suggestion_id)
        before = self.store.apply(self.identity.profile_path(profile.owner_id), where=plan.guard,
                                  return_before=True, add_to_set=plan.add, pull=plan.remove)
        if before is None:
            logger.info("Vote on %s by %s already applied", suggestion_id, viewer.public_id)
            return self.get(suggestion_id)

        # Counters follow the ledger as it stood when the write landed
        outcome = lifecycle.apply_vote(suggestion, UserProfile(**before).ledger(), direction, viewer)
        if outcome.counters:
            doc = self.store.apply(self.path(suggestion_id), inc=outcome.counters)
            return Suggestion(**doc)
        return suggestion

    def comment(self, viewer: Viewer, suggestion_id: str, text: str) -> Suggestion:
        lifecycle.require_writer(viewer)
        suggestion = self.get(suggestion_id)
        comment = lifecycle.add_comment(suggestion, viewer, text, self.clock)
        doc = self.store.apply(self.path(suggestion_id),
                               push={"comments": comment.model_dump()},
                               inc={"comment_count": 1})
        stored = Suggestion(**doc)
        if stored.comment_count != len(stored.comments):
            # Repair records written before the count was maintained atomically
            lifecycle.recount_comments(stored)
            self.store.update(self.path(suggestion_id), {"comment_count": stored.comment_count})
        return stored

    def delete_comment(self, viewer: Viewer, suggestion_id: str, index: int) -> Comment:
        lifecycle.require_moderator(viewer)
        suggestion = self.get(suggestion_id)
        removed = lifecycle.delete_comment(suggestion, index, viewer, self.clock)
        self.store.update(self.path(suggestion_id), {
            "comments": [c.model_dump() for c in suggestion.comments],
            "comment_count": suggestion.comment_count,
            "updated_at": suggestion.updated_at,
        })
        logger.info("Comment %d deleted from suggestion %s", index, suggestion_id)
        return removed

    # -------- Moderation ---------

    def _apply_edit(self, suggestion: Suggestion, edit: SuggestionEdit) -> Suggestion:
        if edit.category is not None and edit.category not in CATEGORIES:
            raise ValidationError(f"Unknown category: {edit.category!r}")
        if edit.title is not None:
            if not edit.title.strip():
                raise ValidationError("Title cannot be empty")
            suggestion.title = edit.title.strip()
        if edit.category is not None:
            suggestion.category = edit.category
        if edit.priority is not None:
            suggestion.priority = edit.priority
        if edit.is_public is not None:
            suggestion.is_public = edit.is_public
        if edit.status is not None:
            lifecycle.apply_status_change(suggestion, edit.status, self.clock)
        suggestion.updated_at = self.clock()
        return suggestion

    def _persist_moderated(self, suggestion: Suggestion) -> None:
        self.store.update(self.path(suggestion.id), suggestion.model_dump(include=set(MODERATED_FIELDS)))

    def _persist_rederived(self, suggestion: Suggestion) -> None:
        path = self.path(suggestion.id)
        data = suggestion.model_dump(include=set(MODERATED_FIELDS))
        loaded = {"comments": [c.model_dump() for c in suggestion.comments]}
        if self.store.update(path, {**data, "comment_count": suggestion.comment_count}, where=loaded) is None:
            # Comments changed since the row was loaded; their writes kept the count
            self.store.update(path, data)

    def edit(self, viewer: Viewer, suggestion_id: str, edit: SuggestionEdit) -> Suggestion:
        lifecycle.require_moderator(viewer)
        suggestion = self._apply_edit(self.get(suggestion_id), edit)
        self._persist_moderated(suggestion)
        logger.info("Suggestion %s updated: status=%s", suggestion_id, suggestion.status)
        return suggestion

    def change_status(self, viewer: Viewer, suggestion_id: str, new_status: str) -> Suggestion:
        return self.edit(viewer, suggestion_id, SuggestionEdit(status=new_status))

    def bulk_save(self, viewer: Viewer, rows: List[BulkSaveRow]) -> BulkSaveResult:
        """Save every edited grid row; failures are reported per row."""
        lifecycle.require_moderator(viewer)
        prepared: List[Suggestion] = []
        early_failures: List[BulkSaveFailure] = []
        for row in rows:
            try:
                prepared.append(self._apply_edit(self.get(row.id), row))
            except (NotFound, ValidationError, StoreError) as e:
                logger.warning("Bulk save skipped %s: %s", row.id, e)
                early_failures.append(BulkSaveFailure(id=row.id, error=str(e)))

        result = lifecycle.bulk_save(prepared, self._persist_rederived, self.clock)
        result.failures = early_failures + result.failures
        logger.info("Bulk save: %d saved, %d failed", len(result.saved), len(result.failures))
        return result

    def delete(self, viewer: Viewer, suggestion_id: str) -> None:
        suggestion = self.get(suggestion_id)
        lifecycle.require_can_delete(suggestion, viewer)
        self.store.delete(self.path(suggestion_id))
        logger.info("Suggestion %s deleted by %s", suggestion_id, viewer.public_id)

    def toggle_ban(self, viewer: Viewer, owner_id: str) -> UserProfile:
        profile = lifecycle.toggle_ban_status(self.identity.get_profile(owner_id), viewer)
        self.store.update(document_path(self.settings.app_id, USERS, owner_id),
                          {"is_banned": profile.is_banned})
        logger.info("User %s is_banned=%s", profile.prn, profile.is_banned)
        return profile

    def list_users(self, viewer: Viewer) -> List[UserProfile]:
        lifecycle.require_moderator(viewer)
        return self.identity.list_profiles()
