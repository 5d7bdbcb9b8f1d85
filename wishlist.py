"""
Wishlist store: product ids the signed-in user has saved.

Reads and writes go through the retry helper. The store only listens to the
wishlists channel while somebody is signed in, and clears itself on sign-out.
"""

import logging
from typing import List, Optional

import config
from backend import AuthSession, BackendClient
from catalog import load_products, with_retry
from errors import ConflictError, MarketError
from notifications import Notifier
from realtime import ChangeEvent, Subscription, TaskSet
from schemas import Product
from session_store import SessionStore

logger = logging.getLogger(__name__)


class WishlistStore:
    def __init__(self, client: BackendClient, session: SessionStore, notifier: Notifier, tasks: TaskSet,
                 retries: Optional[int] = None, retry_delay: Optional[float] = None,
                 batch_size: int = config.WISHLIST_BATCH_SIZE):
        self._client = client
        self._session = session
        self._notifier = notifier
        self._tasks = tasks
        self.retries = retries
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.wishlist: List[str] = []
        self._subscription: Optional[Subscription] = None
        session.add_listener(self._on_session_change)

    def _on_session_change(self, session: Optional[AuthSession]) -> None:
        if session:
            if self._subscription is None:
                self._subscription = self._client.channel("wishlists", self._on_change)
            self._tasks.spawn(self.fetch_wishlist())
        else:
            self.stop()
            self.wishlist = []

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("wishlists %s, refetching", event.type)
        self._tasks.spawn(self.fetch_wishlist())

    def is_wishlisted(self, product_id: str) -> bool:
        return product_id in self.wishlist

    async def _product_ids(self, user_id: str) -> List[str]:
        rows = await with_retry(
            lambda: self._client.table("wishlists").select(columns=["product_id"], eq={"user_id": user_id}),
            self.retries,
            self.retry_delay,
        )
        return list(dict.fromkeys(row["product_id"] for row in rows))

    async def fetch_wishlist(self) -> List[str]:
        user_id = self._session.user_id
        if not user_id:
            return self.wishlist
        try:
            ids = await self._product_ids(user_id)
        except MarketError as e:
            logger.error("Error fetching wishlist: %s", e.message)
            return self.wishlist
        if self._session.user_id == user_id:
            self.wishlist = ids
        return self.wishlist

    async def fetch_wishlisted_products(self) -> List[Product]:
        user_id = self._session.user_id
        if not user_id:
            return []
        try:
            ids = await self._product_ids(user_id)
            rows: List[dict] = []
            for i in range(0, len(ids), self.batch_size):
                batch = ids[i:i + self.batch_size]
                rows.extend(await self._client.table("products").select(in_=("id", batch)))
        except MarketError as e:
            logger.error("Error fetching wishlisted products: %s", e.message)
            return []
        return await load_products(self._client, rows)

    async def add_to_wishlist(self, product_id: str) -> bool:
        user_id = self._session.user_id
        if not user_id:
            self._notifier.error("Please log in to add items to your wishlist")
            return False
        if product_id in self.wishlist:
            return True
        try:
            await with_retry(
                lambda: self._client.table("wishlists").insert({"user_id": user_id, "product_id": product_id}),
                self.retries,
                self.retry_delay,
            )
        except ConflictError:
            logger.debug("Product %s already on the wishlist of %s", product_id, user_id)
        except MarketError as e:
            logger.error("Error adding to wishlist: %s", e.message)
            self._notifier.error("Failed to add to wishlist")
            return False
        if product_id not in self.wishlist:
            self.wishlist.append(product_id)
        self._notifier.success("Added to wishlist!")
        return True

    async def remove_from_wishlist(self, product_id: str) -> bool:
        user_id = self._session.user_id
        if not user_id:
            self._notifier.error("Please log in to manage your wishlist")
            return False
        try:
            await with_retry(
                lambda: self._client.table("wishlists").delete(eq={"user_id": user_id, "product_id": product_id}),
                self.retries,
                self.retry_delay,
            )
        except MarketError as e:
            logger.error("Error removing from wishlist: %s", e.message)
            self._notifier.error("Failed to remove from wishlist")
            return False
        self.wishlist = [pid for pid in self.wishlist if pid != product_id]
        self._notifier.success("Removed from wishlist")
        return True
