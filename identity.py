"""
Student identity: PRN registration, login, sessions and admin login.

A student's login identity is their PRN; the password is derived from the
PRN and their admission number at registration. Each profile gets a random
public id, which is the only identifier shown on suggestions and comments.
"""

import datetime
import logging
import re
import secrets
import string
import uuid
from typing import Optional

import jwt
from pydantic import BaseModel
from werkzeug.security import check_password_hash, generate_password_hash

from config import Settings
from database import USERS, RecordStore, collection_path, document_path
from errors import AlreadyExists, InvalidCredential, NotFound, ValidationError
from schemas import UserProfile, Viewer

logger = logging.getLogger(__name__)

PUBLIC_ID_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
PUBLIC_ID_LENGTH = 16
ADMISSION_NUMBER_PATTERN = re.compile(r"^\d{4,5}$")
MODERATOR_ROLE = "moderator"
STUDENT_ROLE = "student"


class Registration(BaseModel):
    owner_id: str
    public_id: str
    prn: str
    password: str


class Session(BaseModel):
    token: str
    owner_id: str
    public_id: str
    role: str
    expires_at: str


def normalize_prn(prn: str) -> str:
    return (prn or "").strip().upper()


def derive_password(prn: str, admission_number: str) -> str:
    """PRN followed by the admission number (4-5 digits)."""
    prn_value = normalize_prn(prn)
    admission_value = (admission_number or "").strip()
    if not prn_value or not admission_value:
        raise ValidationError("Please fill in both PRN and Admission Number.")
    if not ADMISSION_NUMBER_PATTERN.match(admission_value):
        raise ValidationError("Admission Number must be 4-5 digits.")
    return prn_value + admission_value


def generate_public_id(length: int = PUBLIC_ID_LENGTH) -> str:
    return "".join(secrets.choice(PUBLIC_ID_ALPHABET) for _ in range(length))


class IdentityProvider:
    def __init__(self, store: RecordStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.users_path = collection_path(settings.app_id, USERS)
        # One profile per PRN, enforced by the store
        self.store.ensure_unique(self.users_path, "prn")

    def profile_path(self, owner_id: str) -> str:
        return document_path(self.settings.app_id, USERS, owner_id)

    # -------- Profiles ---------

    def get_profile(self, owner_id: str) -> UserProfile:
        return UserProfile(**self.store.get(self.profile_path(owner_id)))

    def find_by_prn(self, prn: str) -> Optional[UserProfile]:
        docs = self.store.find(self.users_path, {"prn": normalize_prn(prn)})
        return UserProfile(**docs[0]) if docs else None

    def list_profiles(self):
        return [UserProfile(**doc) for doc in self.store.list(self.users_path, order_by="created_at")]

    # -------- Registration / login ---------

    def register(self, prn: str, admission_number: str) -> Registration:
        password = derive_password(prn, admission_number)
        prn_value = normalize_prn(prn)
        if self.find_by_prn(prn_value):
            raise AlreadyExists(f"An account for {prn_value} already exists")

        profile = UserProfile(
            owner_id=uuid.uuid4().hex,
            public_id=generate_public_id(),
            prn=prn_value,
            internal_email=f"{prn_value}{self.settings.auth_domain}",
            password_hash=generate_password_hash(password),
        )
        try:
            self.store.put(self.profile_path(profile.owner_id), profile.model_dump())
        except AlreadyExists as e:
            raise AlreadyExists(f"An account for {prn_value} already exists") from e
        logger.info("Registered profile %s", profile.owner_id)
        return Registration(owner_id=profile.owner_id, public_id=profile.public_id,
                            prn=prn_value, password=password)

    def authenticate(self, prn: str, password: str) -> Session:
        profile = self.find_by_prn(prn)
        if profile is None or not check_password_hash(profile.password_hash, (password or "").strip()):
            raise InvalidCredential("Invalid Student ID or Password. Please try again.")
        return self._issue(profile.owner_id, profile.public_id, STUDENT_ROLE)

    def admin_login(self, username: str, password: str) -> Session:
        if not (secrets.compare_digest(username or "", self.settings.admin_username)
                and secrets.compare_digest(password or "", self.settings.admin_password)):
            raise InvalidCredential("Invalid username or password.")
        logger.info("Moderator logged in")
        return self._issue("admin", "admin", MODERATOR_ROLE)

    # -------- Sessions ---------

    def _issue(self, owner_id: str, public_id: str, role: str) -> Session:
        expires = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
            minutes=self.settings.session_ttl_minutes
        )
        payload = {"sub": owner_id, "pid": public_id, "role": role, "exp": expires}
        token = jwt.encode(payload, self.settings.session_secret, algorithm="HS256")
        return Session(token=token, owner_id=owner_id, public_id=public_id, role=role,
                       expires_at=expires.isoformat())

    def resolve(self, token: Optional[str]) -> Viewer:
        """Turn a session token into the Viewer passed to every operation."""
        if not token:
            return Viewer.anonymous()
        try:
            payload = jwt.decode(token, self.settings.session_secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError as e:
            raise InvalidCredential("Session expired. Please login again.") from e
        except jwt.InvalidTokenError as e:
            raise InvalidCredential("Invalid session token.") from e

        if payload.get("role") == MODERATOR_ROLE:
            return Viewer(logged_in=True, owner_id=payload["sub"], public_id=payload.get("pid"),
                          is_moderator=True)
        try:
            profile = self.get_profile(payload["sub"])
        except NotFound as e:
            logger.error("Session for %s has no profile", payload.get("sub"))
            raise InvalidCredential("Profile not found. Please login again.") from e
        # Ban status is read fresh so a ban applies to live sessions
        return Viewer(logged_in=True, owner_id=profile.owner_id, public_id=profile.public_id,
                      is_banned=profile.is_banned)
