import pytest

from errors import CommentIndexError, NotFound, StoreError, Unauthorized, ValidationError
from schemas import BulkSaveRow, ProjectionCriteria, SuggestionCreate, SuggestionEdit, Viewer


def submit(service, viewer, **overrides):
    data = {"title": "Longer library hours", "description": "Open until midnight during exams.",
            "category": "Academics & Curriculum", "tags": ["library", " exams ", "library"]}
    data.update(overrides)
    return service.submit(viewer, SuggestionCreate(**data))


class TestSubmit:

    def test_submit_sets_defaults(self, service, student):
        s = submit(service, student)

        stored = service.get(s.id)
        assert stored.user_id == student.public_id
        assert stored.tags == ["library", "exams"]
        assert stored.status == "Pending"
        assert stored.priority == "Undefined"
        assert stored.summary == "Open until midnight during exams."
        assert (stored.upvotes, stored.downvotes, stored.comment_count) == (0, 0, 0)
        assert stored.solved is False and stored.resolved_at is None
        assert stored.created_at == stored.updated_at

    def test_banned_user_cannot_submit(self, service, student):
        banned = student.model_copy(update={"is_banned": True})
        with pytest.raises(Unauthorized):
            submit(service, banned)
        assert service.all() == []

    @pytest.mark.parametrize("overrides", [{"title": "  "}, {"description": ""}, {"category": "Parking"}])
    def test_invalid_submission(self, service, student, overrides):
        with pytest.raises(ValidationError):
            submit(service, student, **overrides)
        assert service.all() == []


class TestVotes:

    def test_vote_updates_counters_and_ledger(self, service, identity, student):
        s = submit(service, student)

        after = service.vote(student, s.id, "up")
        assert after.upvotes == 1
        assert identity.get_profile(student.owner_id).upvoted == [s.id]

        after = service.vote(student, s.id, "down")
        assert (after.upvotes, after.downvotes) == (0, 1)
        profile = identity.get_profile(student.owner_id)
        assert profile.upvoted == [] and profile.downvoted == [s.id]

        after = service.vote(student, s.id, "down")
        assert (after.upvotes, after.downvotes) == (0, 0)
        assert identity.get_profile(student.owner_id).downvoted == []

    def test_two_voters_both_count(self, service, student, other_student):
        s = submit(service, student)
        service.vote(student, s.id, "up")
        assert service.vote(other_student, s.id, "up").upvotes == 2

    def test_stale_ledger_does_not_double_count(self, service, identity, student, monkeypatch):
        s = submit(service, student)
        real_get_profile = identity.get_profile
        stale = real_get_profile(student.owner_id)
        # Both requests read the ledger before either one wrote it
        monkeypatch.setattr(identity, "get_profile", lambda owner_id: stale.model_copy(deep=True))

        service.vote(student, s.id, "up")
        after = service.vote(student, s.id, "up")

        assert after.upvotes == 1
        assert real_get_profile(student.owner_id).upvoted == [s.id]

    def test_stale_ledger_still_moves_opposite_vote(self, service, identity, student, monkeypatch):
        s = submit(service, student)
        real_get_profile = identity.get_profile
        stale = real_get_profile(student.owner_id)
        service.vote(student, s.id, "down")
        monkeypatch.setattr(identity, "get_profile", lambda owner_id: stale.model_copy(deep=True))

        after = service.vote(student, s.id, "up")

        assert (after.upvotes, after.downvotes) == (1, 0)
        profile = real_get_profile(student.owner_id)
        assert profile.upvoted == [s.id] and profile.downvoted == []

    def test_vote_on_missing_suggestion(self, service, student):
        with pytest.raises(NotFound):
            service.vote(student, "000000000000000000000000", "up")

    def test_anonymous_vote_rejected(self, service, student):
        s = submit(service, student)
        with pytest.raises(Unauthorized):
            service.vote(Viewer.anonymous(), s.id, "up")
        assert service.get(s.id).upvotes == 0


class TestComments:

    def test_comment_appends_and_counts(self, service, student, other_student):
        s = submit(service, student)
        service.comment(student, s.id, "first")
        after = service.comment(other_student, s.id, "  second ")

        assert [c.text for c in after.comments] == ["first", "second"]
        assert after.comments[1].user_id == other_student.public_id
        assert after.comment_count == 2
        assert service.get(s.id).comment_count == 2

    def test_comment_repairs_stale_count(self, service, student, store):
        s = submit(service, student)
        store.update(service.path(s.id), {"comment_count": 7})

        after = service.comment(student, s.id, "hello")

        assert after.comment_count == 1
        assert service.get(s.id).comment_count == 1

    def test_banned_comment_leaves_list_unchanged(self, service, student, moderator):
        s = submit(service, student)
        service.comment(student, s.id, "before ban")
        service.toggle_ban(moderator, student.owner_id)
        banned = student.model_copy(update={"is_banned": True})

        with pytest.raises(Unauthorized):
            service.comment(banned, s.id, "after ban")

        stored = service.get(s.id)
        assert [c.text for c in stored.comments] == ["before ban"]
        assert stored.comment_count == 1

    def test_moderator_deletes_comment(self, service, student, moderator):
        s = submit(service, student)
        for text in ("a", "b", "c"):
            service.comment(student, s.id, text)

        removed = service.delete_comment(moderator, s.id, 0)

        stored = service.get(s.id)
        assert removed.text == "a"
        assert [c.text for c in stored.comments] == ["b", "c"]
        assert stored.comment_count == 2

    def test_delete_comment_bad_index(self, service, student, moderator):
        s = submit(service, student)
        service.comment(student, s.id, "a")
        with pytest.raises(CommentIndexError):
            service.delete_comment(moderator, s.id, 5)
        assert service.get(s.id).comment_count == 1

    def test_students_cannot_delete_comments(self, service, student):
        s = submit(service, student)
        service.comment(student, s.id, "a")
        with pytest.raises(Unauthorized):
            service.delete_comment(student, s.id, 0)


class TestModeration:

    def test_edit_status_stamps_and_clears_resolution(self, service, student, moderator):
        s = submit(service, student)

        solved = service.change_status(moderator, s.id, "Solved")
        assert solved.solved and solved.resolved_at is not None
        stamp = solved.resolved_at

        closed = service.change_status(moderator, s.id, "Closed")
        assert closed.resolved_at == stamp

        reopened = service.change_status(moderator, s.id, "Pending")
        stored = service.get(s.id)
        assert reopened.resolved_at is None
        assert stored.solved is False and stored.resolved_at is None

    def test_edit_other_fields(self, service, student, moderator):
        s = submit(service, student)
        service.edit(moderator, s.id, SuggestionEdit(priority="High", is_public=False, category="Other"))

        stored = service.get(s.id)
        assert (stored.priority, stored.is_public, stored.category) == ("High", False, "Other")
        assert service.list_public(ProjectionCriteria()) == []

    def test_comment_during_edit_keeps_count(self, service, student, moderator, monkeypatch):
        s = submit(service, student)
        real_get = service.get

        def get_then_comment(suggestion_id):
            loaded = real_get(suggestion_id)
            monkeypatch.setattr(service, "get", real_get)
            service.comment(student, suggestion_id, "meanwhile")
            return loaded

        monkeypatch.setattr(service, "get", get_then_comment)
        service.edit(moderator, s.id, SuggestionEdit(priority="High"))

        stored = real_get(s.id)
        assert stored.priority == "High"
        assert stored.comment_count == len(stored.comments) == 1

    def test_comment_during_bulk_save_keeps_count(self, service, student, moderator, monkeypatch):
        s = submit(service, student)
        real_get = service.get

        def get_then_comment(suggestion_id):
            loaded = real_get(suggestion_id)
            monkeypatch.setattr(service, "get", real_get)
            service.comment(student, suggestion_id, "meanwhile")
            return loaded

        monkeypatch.setattr(service, "get", get_then_comment)
        result = service.bulk_save(moderator, [BulkSaveRow(id=s.id, status="Solved")])

        stored = real_get(s.id)
        assert result.saved == [s.id]
        assert stored.solved is True
        assert stored.comment_count == len(stored.comments) == 1

    def test_bulk_save_repairs_stale_count(self, service, student, moderator, store):
        s = submit(service, student)
        service.comment(student, s.id, "only one")
        store.update(service.path(s.id), {"comment_count": 7})

        service.bulk_save(moderator, [BulkSaveRow(id=s.id)])

        assert service.get(s.id).comment_count == 1

    def test_students_cannot_edit(self, service, student):
        s = submit(service, student)
        with pytest.raises(Unauthorized):
            service.change_status(student, s.id, "Solved")

    def test_bulk_save_reports_failures_and_keeps_successes(self, service, student, moderator, store, monkeypatch):
        a = submit(service, student, title="A")
        b = submit(service, student, title="B")
        c = submit(service, student, title="C")

        real_update = store.update

        def flaky_update(path, data, where=None):
            if path.endswith(b.id):
                raise StoreError("permission denied")
            return real_update(path, data, where=where)

        monkeypatch.setattr(store, "update", flaky_update)

        result = service.bulk_save(moderator, [
            BulkSaveRow(id=a.id, status="Solved"),
            BulkSaveRow(id=b.id, status="Closed"),
            BulkSaveRow(id="000000000000000000000000", status="Solved"),
            BulkSaveRow(id=c.id, category="Bogus"),
        ])

        assert result.saved == [a.id]
        assert sorted(f.id for f in result.failures) == sorted([b.id, "000000000000000000000000", c.id])
        assert service.get(a.id).solved is True
        assert service.get(b.id).status == "Pending"

    def test_delete_by_owner_and_moderator(self, service, student, other_student, moderator):
        mine = submit(service, student)
        theirs = submit(service, other_student)

        with pytest.raises(Unauthorized):
            service.delete(student, theirs.id)

        service.delete(student, mine.id)
        service.delete(moderator, theirs.id)
        assert service.all() == []
        with pytest.raises(NotFound):
            service.delete(moderator, mine.id)

    def test_ban_keeps_existing_content(self, service, identity, student, moderator):
        s = submit(service, student)
        service.comment(student, s.id, "still here")

        profile = service.toggle_ban(moderator, student.owner_id)

        assert profile.is_banned is True
        assert identity.get_profile(student.owner_id).is_banned is True
        assert service.get(s.id).comment_count == 1
        assert [x.id for x in service.list_public(ProjectionCriteria())] == [s.id]

        assert service.toggle_ban(moderator, student.owner_id).is_banned is False


def test_watch_pushes_suggestions(service, student):
    seen = []
    sub = service.watch(lambda items: seen.append([s.title for s in items]))
    submit(service, student, title="First")
    sub.unsubscribe()
    submit(service, student, title="Second")
    assert seen == [[], ["First"]]


def test_list_mine(service, student, other_student):
    submit(service, student, title="Mine")
    submit(service, other_student, title="Theirs")
    assert [r.title for r in service.list_mine(student)] == ["Mine"]
