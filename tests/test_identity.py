import datetime

import jwt
import pytest

from errors import AlreadyExists, InvalidCredential, ValidationError
from identity import PUBLIC_ID_LENGTH, derive_password, generate_public_id


class TestDerivePassword:

    def test_prn_is_normalised_and_joined(self):
        assert derive_password("  prn123 ", "4567") == "PRN1234567"

    @pytest.mark.parametrize("prn, admission", [("", "1234"), ("PRN1", ""), ("PRN1", "123"), ("PRN1", "123456"), ("PRN1", "12a4")])
    def test_rejects_bad_input(self, prn, admission):
        with pytest.raises(ValidationError):
            derive_password(prn, admission)


def test_public_id_shape():
    pid = generate_public_id()
    assert len(pid) == PUBLIC_ID_LENGTH
    assert pid.isalnum()


class TestRegistration:

    def test_register_creates_profile(self, identity, settings):
        reg = identity.register("prn9", "1234")

        profile = identity.get_profile(reg.owner_id)
        assert reg.password == "PRN91234"
        assert profile.prn == "PRN9"
        assert profile.public_id == reg.public_id
        assert profile.internal_email == "PRN9" + settings.auth_domain
        assert profile.is_banned is False
        assert profile.password_hash != reg.password

    def test_duplicate_prn_rejected(self, identity):
        identity.register("PRN9", "1234")
        with pytest.raises(AlreadyExists):
            identity.register("prn9", "9999")

    def test_duplicate_prn_rejected_when_check_misses(self, identity, monkeypatch):
        identity.register("PRN9", "1234")
        # Another registration that passed the lookup before this one was written
        monkeypatch.setattr(identity, "find_by_prn", lambda prn: None)
        with pytest.raises(AlreadyExists):
            identity.register("prn9", "9999")
        assert [p.prn for p in identity.list_profiles()] == ["PRN9"]


class TestLogin:

    def test_login_and_resolve(self, identity):
        reg = identity.register("PRN9", "1234")

        session = identity.authenticate("prn9", reg.password)
        viewer = identity.resolve(session.token)

        assert viewer.logged_in
        assert viewer.owner_id == reg.owner_id
        assert viewer.public_id == reg.public_id
        assert not viewer.is_moderator
        assert viewer.can_write

    @pytest.mark.parametrize("prn, password", [("PRN9", "wrong"), ("NOBODY", "PRN91234")])
    def test_bad_credentials(self, identity, prn, password):
        identity.register("PRN9", "1234")
        with pytest.raises(InvalidCredential):
            identity.authenticate(prn, password)

    def test_no_token_is_anonymous(self, identity):
        viewer = identity.resolve(None)
        assert not viewer.logged_in
        assert not viewer.can_write

    def test_tampered_token_rejected(self, identity):
        reg = identity.register("PRN9", "1234")
        token = identity.authenticate("PRN9", reg.password).token
        with pytest.raises(InvalidCredential):
            identity.resolve(token + "x")

    def test_expired_token_rejected(self, identity, settings):
        reg = identity.register("PRN9", "1234")
        expired = jwt.encode(
            {"sub": reg.owner_id, "pid": reg.public_id, "role": "student",
             "exp": datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)},
            settings.session_secret, algorithm="HS256",
        )
        with pytest.raises(InvalidCredential):
            identity.resolve(expired)

    def test_ban_applies_to_live_sessions(self, identity, store):
        reg = identity.register("PRN9", "1234")
        token = identity.authenticate("PRN9", reg.password).token
        store.update(identity.profile_path(reg.owner_id), {"is_banned": True})

        viewer = identity.resolve(token)
        assert viewer.is_banned
        assert not viewer.can_write


class TestAdminLogin:

    def test_admin_session_is_moderator(self, identity):
        viewer = identity.resolve(identity.admin_login("admin", "admin").token)
        assert viewer.is_moderator
        assert viewer.logged_in

    def test_wrong_admin_password(self, identity):
        with pytest.raises(InvalidCredential):
            identity.admin_login("admin", "nope")
