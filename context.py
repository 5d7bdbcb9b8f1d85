"""
Per-client wiring of the stores.

A MarketApp is everything one client needs: its own backend client (and so
its own signed-in session), notifications, and the session, catalog,
wishlist and message stores. The ContextRegistry owns the shared realtime
hub, a guest context for anonymous browsing, and one context per issued
access token.
"""

import logging
from typing import Dict, Optional

from pymongo.database import Database

from backend import BackendClient
from catalog import CatalogStore
from messages import MessageStore
from notifications import Notifier
from realtime import RealtimeHub, TaskSet
from session_store import SessionStore
from storage import LocalStorage
from wishlist import WishlistStore

logger = logging.getLogger(__name__)


class MarketApp:
    def __init__(self, db: Database, hub: RealtimeHub, storage: Optional[LocalStorage] = None,
                 auto_sign_in: Optional[bool] = None, page_delay: Optional[float] = None,
                 retries: Optional[int] = None, retry_delay: Optional[float] = None):
        self.tasks = TaskSet()
        self.notifier = Notifier()
        self.client = BackendClient(db, hub, auto_sign_in=auto_sign_in)
        self.session = SessionStore(self.client, self.notifier, self.tasks, storage=storage)
        self.catalog = CatalogStore(self.client, self.session, self.notifier, self.tasks,
                                    page_delay=page_delay, retries=retries, retry_delay=retry_delay)
        self.wishlist = WishlistStore(self.client, self.session, self.notifier, self.tasks,
                                      retries=retries, retry_delay=retry_delay)
        self.messages = MessageStore(self.client, self.session, self.notifier, self.tasks)

    async def start(self) -> None:
        await self.session.restore()
        self.catalog.start()
        await self.catalog.fetch_products()

    async def settle(self) -> None:
        """Wait for deferred work (profile reads, realtime resyncs) to finish."""
        await self.tasks.join()

    def close(self) -> None:
        self.catalog.stop()
        self.wishlist.stop()
        self.messages.stop()
        self.session.close()
        self.tasks.cancel()


class ContextRegistry:
    def __init__(self, db: Optional[Database], **options):
        self.db = db
        self.hub = RealtimeHub()
        self.options = options
        self.guest: Optional[MarketApp] = None
        self._contexts: Dict[str, MarketApp] = {}

    def create(self) -> MarketApp:
        return MarketApp(self.db, self.hub, **self.options)

    async def start(self) -> None:
        self.guest = self.create()
        await self.guest.start()

    def register(self, context: MarketApp) -> str:
        token = context.session.access_token
        if not token:
            raise ValueError("Cannot register a context without a session")
        self._contexts[token] = context
        logger.info("Registered client context for user %s", context.session.user_id)
        return token

    async def resolve(self, token: str) -> Optional[MarketApp]:
        """Context for a live access token; expired ones are closed and forgotten."""
        await self.prune()
        return self._contexts.get(token)

    async def prune(self) -> int:
        expired = [token for token, context in list(self._contexts.items())
                   if await context.client.auth.get_session() is None]
        for token in expired:
            self.discard(token)
        return len(expired)

    def discard(self, token: str) -> None:
        context = self._contexts.pop(token, None)
        if context is not None:
            logger.info("Closing client context for user %s", context.session.user_id)
            context.close()

    def close(self) -> None:
        for token in list(self._contexts):
            self.discard(token)
        if self.guest is not None:
            self.guest.close()
            self.guest = None

    def __len__(self) -> int:
        return len(self._contexts)
