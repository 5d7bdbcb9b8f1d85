"""
Session store: who is signed in, and their profile.

Login and registration are gated on the campus email domain before the
backend is ever contacted. The store follows the backend's auth state
change notifications; the profile read that follows a sign-in is deferred
onto the task set instead of running inside the notification callback.
"""

import logging
from typing import Callable, List, Optional

from pydantic import ValidationError

import config
from backend import AuthSession, BackendClient
from errors import MarketError
from notifications import Notifier
from realtime import TaskSet
from schemas import Profile, ProfileUpdate, RegisterData, UserInfo
from storage import SESSION_KEY, LocalStorage

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[AuthSession]], None]


class SessionStore:
    def __init__(self, client: BackendClient, notifier: Notifier, tasks: TaskSet,
                 storage: Optional[LocalStorage] = None, domain: Optional[str] = None):
        self._client = client
        self._notifier = notifier
        self._tasks = tasks
        self._storage = storage if storage is not None else LocalStorage()
        self.domain = domain or config.CAMPUS_EMAIL_DOMAIN
        self.session: Optional[AuthSession] = None
        self.user: Optional[UserInfo] = None
        self.profile: Optional[Profile] = None
        self._listeners: List[SessionListener] = []
        self._subscription = client.auth.on_auth_state_change(self._on_auth_change)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def access_token(self) -> Optional[str]:
        return self.session.access_token if self.session else None

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        self._subscription.unsubscribe()
        self._listeners.clear()

    def _on_auth_change(self, event: str, session: Optional[AuthSession]) -> None:
        logger.debug("Auth state changed: %s", event)
        self.session = session
        if session:
            user = UserInfo(id=session.user.id, email=session.user.email)
            if self.profile and self.profile.id == user.id:
                user = user.with_profile(self.profile)
            self.user = user
            self._storage.set_json(SESSION_KEY, {
                "access_token": session.access_token,
                "user": user.model_dump(by_alias=True),
            })
            self._tasks.spawn(self.fetch_profile(session.user.id))
        else:
            self.user = None
            self.profile = None
            self._storage.remove_item(SESSION_KEY)
        for listener in list(self._listeners):
            listener(session)

    def _check_domain(self, email: str) -> bool:
        if not email.strip().lower().endswith(self.domain):
            self._notifier.error(f"Please use your campus email address ({self.domain})")
            return False
        return True

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        try:
            row = await self._client.table("profiles").single(eq={"id": user_id})
        except MarketError as e:
            logger.error("Error fetching profile %s: %s", user_id, e.message)
            return None
        try:
            profile = Profile(**row)
        except ValidationError as e:
            logger.error("Unreadable profile %s: %s", user_id, e)
            return None
        # Signed out or switched user while the read was in flight
        if self.user_id != user_id:
            return profile
        self.profile = profile
        self.user = self.user.with_profile(profile)
        return profile

    async def login(self, email: str, password: str) -> bool:
        if not self._check_domain(email):
            return False
        try:
            await self._client.auth.sign_in_with_password(email, password)
        except MarketError as e:
            self._notifier.error(e.message)
            return False
        except Exception:
            logger.exception("Login error")
            self._notifier.error("An error occurred during login")
            return False
        self._notifier.success("Welcome back!")
        return True

    async def register(self, data: RegisterData) -> bool:
        if not self._check_domain(data.email):
            return False
        try:
            response = await self._client.auth.sign_up(data.email, data.password, data.metadata())
        except MarketError as e:
            self._notifier.error(e.message)
            return False
        except Exception:
            logger.exception("Registration error")
            self._notifier.error("An error occurred during registration")
            return False
        if response.session is None:
            self._notifier.success("Registration successful! You can now log in.")
        else:
            self._notifier.success("Registration successful!")
        return True

    async def logout(self) -> None:
        try:
            await self._client.auth.sign_out()
            self._notifier.success("Successfully logged out")
        except Exception:
            logger.exception("Error logging out")
            self._notifier.error("Error logging out")
        finally:
            if self.session is not None or self.user is not None:
                self._on_auth_change('SIGNED_OUT', None)

    async def update_profile(self, updates: ProfileUpdate) -> bool:
        if not self.user:
            self._notifier.error("You must be logged in to update your profile")
            return False
        changes = updates.changes()
        if not changes:
            return True
        try:
            await self._client.table("profiles").update(changes, eq={"id": self.user.id})
        except MarketError as e:
            logger.error("Error updating profile: %s", e.message)
            self._notifier.error("Error updating profile")
            return False
        base = self.profile or Profile(id=self.user.id)
        self.profile = base.model_copy(update=changes)
        self.user = self.user.with_profile(self.profile)
        self._notifier.success("Profile updated successfully")
        return True

    async def restore(self) -> bool:
        """Sign back in from the cached access token, if there is a usable one.

        Only useful when the store is embedded in a single long-lived client that
        passes a LocalStorage path. Server contexts are built per token with an
        in-memory cache and are already signed in, so this returns True at once.
        """
        if self.session is not None:
            return True
        cached = self._storage.get_json(SESSION_KEY)
        token = cached.get("access_token") if isinstance(cached, dict) else None
        if not token:
            return False
        try:
            await self._client.auth.set_session(token)
        except MarketError as e:
            logger.info("Discarding cached session: %s", e.message)
            self._storage.remove_item(SESSION_KEY)
            return False
        return True
