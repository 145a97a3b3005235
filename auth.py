"""
Accounts, password hashing and bearer-token authentication.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import bcrypt
import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import Settings
from database import UserRepository, parse_object_id, to_str_id, utcnow
from errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import Actor, LoginIn, PasswordChange, ProfileUpdate, User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

bearer = HTTPBearer(scheme_name="AccessToken", bearerFormat="JWT", auto_error=False)


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("ascii")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def user_view(user: Dict[str, Any]) -> Dict[str, Any]:
    view = to_str_id(user)
    view.pop("password_hash", None)
    return view


class UserService:
    def __init__(self, repo: UserRepository, settings: Settings):
        self.repo = repo
        self.settings = settings

    # -- tokens --
    def issue_token(self, user: Dict[str, Any]) -> str:
        now = utcnow()
        payload = {
            "sub": str(user["_id"]),
            "role": user["role"],
            "type": "access",
            "iat": now,
            "exp": now + timedelta(hours=self.settings.jwt_expires_hours),
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=ALGORITHM)

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired.")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token.")
        if payload.get("type") != "access" or not payload.get("sub"):
            raise AuthenticationError("Invalid token.")
        return payload

    def authenticate(self, token: str) -> Actor:
        payload = self.decode_token(token)
        try:
            user = self.get(payload["sub"])
        except NotFoundError:
            user = None
        if user is None or not user.get("is_active", True):
            raise AuthenticationError("Invalid token. User not found or inactive.")
        return Actor(id=str(user["_id"]), role=user["role"], name=user["name"])

    # -- accounts --
    def get(self, user_id) -> Dict[str, Any]:
        user = self.repo.get_by_id(parse_object_id(user_id, "User"))
        if user is None:
            raise NotFoundError("User not found")
        return user

    def register(self, data: User) -> Tuple[Dict[str, Any], str]:
        if self.repo.get_document({"email": data.email}):
            raise ConflictError("Email is already registered")
        doc = data.model_dump(exclude={"password"})
        doc["password_hash"] = hash_password(data.password, self.settings.bcrypt_rounds)
        doc["is_active"] = True
        doc["last_login"] = None
        user = self.repo.create_document(doc)
        logger.info("Registered user %s with role %s", user["email"], user["role"])
        return user, self.issue_token(user)

    def login(self, credentials: LoginIn) -> Tuple[Dict[str, Any], str]:
        user = self.repo.get_document({"email": credentials.email})
        if user is None or not user.get("is_active", True) \
                or not check_password(credentials.password, user["password_hash"]):
            raise AuthenticationError("Invalid credentials")
        user = self.repo.update_document({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
        return user, self.issue_token(user)

    def update_profile(self, actor: Actor, changes: ProfileUpdate) -> Dict[str, Any]:
        fields = {k: v for k, v in changes.model_dump(exclude_unset=True).items() if v is not None}
        user = self.get(actor.id)
        if "email" in fields and fields["email"] != user["email"]:
            if self.repo.get_document({"email": fields["email"]}):
                raise ConflictError("Email is already registered")
        if not fields:
            return user
        return self.repo.update_document({"_id": user["_id"]}, {"$set": fields})

    def change_password(self, actor: Actor, change: PasswordChange):
        user = self.get(actor.id)
        if not check_password(change.current_password, user["password_hash"]):
            raise ValidationError("Current password is incorrect")
        self.repo.update_document(
            {"_id": user["_id"]},
            {"$set": {"password_hash": hash_password(change.new_password, self.settings.bcrypt_rounds)}},
        )
        logger.info("Password changed for user %s", user["email"])


# ---------------- FastAPI dependencies ----------------
def get_user_service(request: Request) -> UserService:
    return request.app.state.users


def current_actor(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer),
                  users: UserService = Depends(get_user_service)) -> Actor:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access denied. No token provided.")
    return users.authenticate(credentials.credentials.strip())


def require_roles(*roles: str):
    def dependency(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role not in roles:
            raise AuthorizationError(
                f"Access denied. Role '{actor.role}' is not authorized to access this resource.")
        return actor
    return dependency
