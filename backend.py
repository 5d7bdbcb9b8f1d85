"""
Backend-as-a-service layer over MongoDB.

A BackendClient is what a single client session talks to: `auth` keeps that
client's signed-in session, `table(name)` is a small query gateway that
enforces the row access policy for the signed-in user, and `channel(name, cb)`
subscribes to change events on a table. Writes made through any client are
published on the shared RealtimeHub.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple

from bson import ObjectId
from fastapi.concurrency import run_in_threadpool
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import AuthApiError, BackendError, ConflictError, PermissionDeniedError
from realtime import ChangeEvent, RealtimeHub, Subscription

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

AuthEvent = Literal['SIGNED_IN', 'SIGNED_OUT']


# ---------- Auth ----------

class AuthUser(BaseModel):
    id: str
    email: str
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class AuthSession(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: AuthUser


class AuthResponse(BaseModel):
    user: AuthUser
    session: Optional[AuthSession] = None


AuthCallback = Callable[[AuthEvent, Optional[AuthSession]], None]


class AuthSubscription:
    def __init__(self, listeners: List[AuthCallback], callback: AuthCallback):
        self._listeners = listeners
        self.callback = callback

    def unsubscribe(self) -> None:
        if self.callback in self._listeners:
            self._listeners.remove(self.callback)


class AuthClient:
    def __init__(self, db: Database, auto_sign_in: Optional[bool] = None):
        self._db = db
        self._session: Optional[AuthSession] = None
        self._listeners: List[AuthCallback] = []
        self.auto_sign_in = config.AUTH_AUTO_SIGN_IN if auto_sign_in is None else auto_sign_in

    @property
    def current_user_id(self) -> Optional[str]:
        return self._session.user.id if self._session else None

    def on_auth_state_change(self, callback: AuthCallback) -> AuthSubscription:
        self._listeners.append(callback)
        return AuthSubscription(self._listeners, callback)

    def _emit(self, event: AuthEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, self._session)
            except Exception:
                logger.exception("Auth listener failed on %s", event)

    def _issue(self, user: AuthUser) -> AuthSession:
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXPIRE_MINUTES)
        token = jwt.encode(
            {"sub": user.id, "email": user.email, "exp": expires_at, "jti": str(ObjectId())},
            config.JWT_SECRET,
            algorithm=config.JWT_ALGORITHM,
        )
        return AuthSession(access_token=token, expires_at=expires_at, user=user)

    @staticmethod
    def _user_from_doc(doc: dict) -> AuthUser:
        return AuthUser(id=str(doc["_id"]), email=doc["email"], user_metadata=doc.get("user_metadata", {}))

    def _create_account(self, email: str, password: str, metadata: Dict[str, Any]) -> str:
        if self._db["users"].find_one({"email": email}):
            raise AuthApiError("User already registered")
        user_id = str(ObjectId())
        self._db["users"].insert_one({
            "_id": user_id,
            "email": email,
            "password_hash": pwd_context.hash(password),
            "user_metadata": metadata,
            "created_at": datetime.now(timezone.utc),
        })
        # New accounts always get a profile row built from the signup metadata
        self._db["profiles"].insert_one({
            "_id": user_id,
            "full_name": metadata.get("full_name", ""),
            "student_id": metadata.get("student_id", ""),
            "phone_number": metadata.get("phone_number"),
            "hostel_details": metadata.get("hostel_details"),
            "avatar_url": metadata.get("avatar_url"),
        })
        return user_id

    def _check_password(self, email: str, password: str) -> Optional[dict]:
        doc = self._db["users"].find_one({"email": email})
        if not doc or not pwd_context.verify(password, doc.get("password_hash", "")):
            return None
        return doc

    async def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> AuthResponse:
        email = email.strip().lower()
        metadata = dict(data or {})
        try:
            user_id = await run_in_threadpool(self._create_account, email, password, metadata)
        except DuplicateKeyError:
            raise AuthApiError("User already registered")
        except PyMongoError as e:
            raise BackendError(str(e))

        user = AuthUser(id=user_id, email=email, user_metadata=metadata)
        if not self.auto_sign_in:
            return AuthResponse(user=user)
        self._session = self._issue(user)
        self._emit('SIGNED_IN')
        return AuthResponse(user=user, session=self._session)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        try:
            doc = await run_in_threadpool(self._check_password, email.strip().lower(), password)
        except PyMongoError as e:
            raise BackendError(str(e))
        if doc is None:
            raise AuthApiError("Invalid login credentials")
        self._session = self._issue(self._user_from_doc(doc))
        self._emit('SIGNED_IN')
        return self._session

    async def set_session(self, access_token: str) -> AuthSession:
        try:
            payload = jwt.decode(access_token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        except JWTError:
            raise AuthApiError("Invalid or expired token")
        try:
            doc = await run_in_threadpool(self._db["users"].find_one, {"_id": payload.get("sub")})
        except PyMongoError as e:
            raise BackendError(str(e))
        if not doc:
            raise AuthApiError("User not found")
        self._session = AuthSession(
            access_token=access_token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            user=self._user_from_doc(doc),
        )
        self._emit('SIGNED_IN')
        return self._session

    async def sign_out(self) -> None:
        self._session = None
        self._emit('SIGNED_OUT')

    async def get_session(self) -> Optional[AuthSession]:
        if self._session and self._session.expires_at <= datetime.now(timezone.utc):
            self._session = None
            self._emit('SIGNED_OUT')
        return self._session

    async def get_user(self) -> Optional[AuthUser]:
        session = await self.get_session()
        return session.user if session else None


# ---------- Access policy ----------

class AccessPolicy:
    """Anyone reads, any signed-in user writes."""

    def read_filter(self, user_id: Optional[str]) -> dict:
        return {}

    def can_insert(self, user_id: Optional[str], row: dict) -> bool:
        return user_id is not None

    def can_modify(self, user_id: Optional[str], row: dict) -> bool:
        return user_id is not None


class OwnerPolicy(AccessPolicy):
    def __init__(self, owner_column: str, private: bool = False):
        self.owner_column = owner_column
        self.private = private

    def read_filter(self, user_id):
        if not self.private:
            return {}
        return {_column(self.owner_column): user_id if user_id else {"$in": []}}

    def can_insert(self, user_id, row):
        return user_id is not None and row.get(self.owner_column) == user_id

    def can_modify(self, user_id, row):
        return self.can_insert(user_id, row)


class MessagePolicy(AccessPolicy):
    def read_filter(self, user_id):
        if not user_id:
            return {"_id": {"$in": []}}
        return {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}

    def can_insert(self, user_id, row):
        return user_id is not None and row.get("sender_id") == user_id

    def can_modify(self, user_id, row):
        # Only the receiver flips the read flag
        return user_id is not None and row.get("receiver_id") == user_id


POLICIES: Dict[str, AccessPolicy] = {
    "profiles": OwnerPolicy("id"),
    "products": OwnerPolicy("seller_id"),
    "wishlists": OwnerPolicy("user_id", private=True),
    "messages": MessagePolicy(),
}


# ---------- Tables ----------

def _column(name: str) -> str:
    return "_id" if name == "id" else name


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(doc: dict) -> dict:
    row = {k: _aware(v) for k, v in doc.items() if k != "_id"}
    row["id"] = str(doc["_id"])
    return row


class Table:
    def __init__(self, client: "BackendClient", name: str):
        self._client = client
        self.name = name
        self._collection = client.db[name]
        self._policy = POLICIES.get(name, AccessPolicy())

    def _query(self, eq: Optional[dict] = None, in_: Optional[Tuple[str, Iterable]] = None) -> dict:
        query = {_column(k): v for k, v in (eq or {}).items()}
        if in_ is not None:
            column, values = in_
            query[_column(column)] = {"$in": list(values)}
        policy = self._policy.read_filter(self._client.user_id)
        if policy:
            query = {"$and": [query, policy]} if query else policy
        return query

    def _denied(self, action: str) -> PermissionDeniedError:
        return PermissionDeniedError(f"{action} on table \"{self.name}\" violates row-level security policy")

    async def select(self, columns: Optional[List[str]] = None, eq: Optional[dict] = None,
                     in_: Optional[Tuple[str, Iterable]] = None, order_by: Optional[str] = None,
                     descending: bool = False, range_: Optional[Tuple[int, int]] = None) -> List[dict]:
        query = self._query(eq, in_)
        projection = {_column(c): 1 for c in columns} if columns else None

        def run() -> List[dict]:
            cursor = self._collection.find(query, projection)
            if order_by:
                cursor = cursor.sort(_column(order_by), DESCENDING if descending else ASCENDING)
            if range_ is not None:
                start, end = range_
                cursor = cursor.skip(start).limit(end - start + 1)
            return [_to_row(d) for d in cursor]

        try:
            return await run_in_threadpool(run)
        except PyMongoError as e:
            raise BackendError(str(e))

    async def single(self, eq: dict, columns: Optional[List[str]] = None) -> dict:
        rows = await self.select(columns=columns, eq=eq)
        if len(rows) != 1:
            raise BackendError(f"Expected a single row from \"{self.name}\", got {len(rows)}")
        return rows[0]

    async def insert(self, row: dict) -> dict:
        row = dict(row)
        if not self._policy.can_insert(self._client.user_id, row):
            raise self._denied("insert")
        doc = {k: v for k, v in row.items() if k != "id"}
        doc["_id"] = row.get("id") or str(ObjectId())
        doc.setdefault("created_at", datetime.now(timezone.utc))
        try:
            await run_in_threadpool(self._collection.insert_one, doc)
        except DuplicateKeyError:
            raise ConflictError(f"duplicate key value violates unique constraint on \"{self.name}\"")
        except PyMongoError as e:
            raise BackendError(str(e))
        inserted = _to_row(doc)
        self._client.hub.publish(self.name, 'INSERT', inserted)
        return inserted

    async def _matching(self, eq: dict, action: str) -> List[dict]:
        query = self._query(eq)
        try:
            matched = await run_in_threadpool(lambda: [_to_row(d) for d in self._collection.find(query)])
        except PyMongoError as e:
            raise BackendError(str(e))
        if any(not self._policy.can_modify(self._client.user_id, row) for row in matched):
            raise self._denied(action)
        return matched

    async def update(self, values: dict, eq: dict) -> List[dict]:
        changes = {_column(k): v for k, v in values.items() if k != "id"}
        changes["updated_at"] = datetime.now(timezone.utc)
        ids = [row["id"] for row in await self._matching(eq, "update")]

        def run() -> List[dict]:
            if not ids:
                return []
            self._collection.update_many({"_id": {"$in": ids}}, {"$set": changes})
            return [_to_row(d) for d in self._collection.find({"_id": {"$in": ids}})]

        try:
            updated = await run_in_threadpool(run)
        except PyMongoError as e:
            raise BackendError(str(e))
        for row in updated:
            self._client.hub.publish(self.name, 'UPDATE', row)
        return updated

    async def delete(self, eq: dict) -> int:
        matched = await self._matching(eq, "delete")
        if matched:
            try:
                await run_in_threadpool(self._collection.delete_many, {"_id": {"$in": [row["id"] for row in matched]}})
            except PyMongoError as e:
                raise BackendError(str(e))
        for row in matched:
            self._client.hub.publish(self.name, 'DELETE', row)
        return len(matched)


class BackendClient:
    def __init__(self, db: Database, hub: RealtimeHub, auto_sign_in: Optional[bool] = None):
        self.db = db
        self.hub = hub
        self.auth = AuthClient(db, auto_sign_in)

    @property
    def user_id(self) -> Optional[str]:
        return self.auth.current_user_id

    def table(self, name: str) -> Table:
        return Table(self, name)

    def channel(self, table: str, callback: Callable[[ChangeEvent], None]) -> Subscription:
        return self.hub.subscribe(table, callback)
