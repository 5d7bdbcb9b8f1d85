"""
Catalog store: the list of active listings and listing mutations.

Listings are read newest first in small pages with a short pause between
pages, and every page goes through the retry helper; a page is only dropped
once its retries are used up. Seller names, avatars and phone numbers are
joined in from profiles after the fact, a handful of sellers per query.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from pydantic import ValidationError

import config
from backend import BackendClient
from errors import MarketError, NotAuthenticatedError
from notifications import Notifier
from realtime import ChangeEvent, Subscription, TaskSet
from schemas import UNKNOWN_SELLER, Product, ProductCreate, ProductUpdate, utcnow
from session_store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SELLER_COLUMNS = ["id", "full_name", "avatar_url", "phone_number"]


async def with_retry(operation: Callable[[], Awaitable[T]], retries: Optional[int] = None,
                     delay: Optional[float] = None) -> T:
    retries = config.RETRY_ATTEMPTS if retries is None else retries
    delay = config.RETRY_DELAY if delay is None else delay
    for attempt in range(1, retries + 1):
        try:
            return await operation()
        except MarketError as e:
            if not e.retryable or attempt >= retries:
                raise
            logger.warning("Attempt %d/%d failed: %s, retrying in %.1fs", attempt, retries, e.message, delay)
            await asyncio.sleep(delay)
    raise ValueError("retries must be at least 1")


def to_columns(fields: dict) -> dict:
    columns = dict(fields)
    if "name" in columns:
        columns["title"] = columns.pop("name")
    return columns


def to_product(row: dict, seller: Optional[dict] = None) -> Product:
    seller = seller or {}
    return Product(
        id=row["id"],
        name=row.get("title", ""),
        description=row.get("description") or "",
        price=row.get("price", 0),
        negotiable=bool(row.get("negotiable")),
        condition=row["condition"],
        category=row.get("category", ""),
        location=row.get("location") or "",
        images=row.get("images") or [],
        seller_id=row["seller_id"],
        seller_name=seller.get("full_name") or UNKNOWN_SELLER,
        seller_image=seller.get("avatar_url"),
        seller_phone=seller.get("phone_number"),
        created_at=row["created_at"],
        status=row.get("status", "Active"),
    )


async def fetch_seller_profiles(client: BackendClient, seller_ids: Iterable[str],
                                batch_size: int = config.PROFILE_BATCH_SIZE) -> Dict[str, dict]:
    ids = list(dict.fromkeys(seller_ids))
    profiles: Dict[str, dict] = {}
    for i in range(0, len(ids), batch_size):
        batch = ids[i:i + batch_size]
        try:
            rows = await client.table("profiles").select(columns=SELLER_COLUMNS, in_=("id", batch))
        except MarketError as e:
            logger.error("Error fetching seller profiles: %s", e.message)
            continue
        for row in rows:
            profiles[row["id"]] = row
    return profiles


async def load_products(client: BackendClient, rows: List[dict]) -> List[Product]:
    """Join seller profile data into product rows."""
    sellers = await fetch_seller_profiles(client, [r["seller_id"] for r in rows if r.get("seller_id")])
    products = []
    for row in rows:
        try:
            products.append(to_product(row, sellers.get(row.get("seller_id"))))
        except (KeyError, ValidationError) as e:
            logger.warning("Skipping malformed product %s: %s", row.get("id"), e)
    return products


class CatalogStore:
    def __init__(self, client: BackendClient, session: SessionStore, notifier: Notifier, tasks: TaskSet,
                 page_size: Optional[int] = None, max_pages: Optional[int] = None,
                 page_delay: Optional[float] = None, retries: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        self._client = client
        self._session = session
        self._notifier = notifier
        self._tasks = tasks
        self.page_size = page_size or config.PRODUCTS_PAGE_SIZE
        self.max_pages = max_pages or config.PRODUCTS_MAX_PAGES
        self.page_delay = config.PRODUCTS_PAGE_DELAY if page_delay is None else page_delay
        self.retries = retries
        self.retry_delay = retry_delay
        self.products: List[Product] = []
        self.loading = False
        self._generation = 0
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._client.channel("products", self._on_change)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("products %s, refetching", event.type)
        self._tasks.spawn(self.fetch_products())

    async def _fetch_page(self, page: int) -> List[dict]:
        start = page * self.page_size
        return await with_retry(
            lambda: self._client.table("products").select(
                eq={"status": "Active"},
                order_by="created_at",
                descending=True,
                range_=(start, start + self.page_size - 1),
            ),
            self.retries,
            self.retry_delay,
        )

    async def fetch_products(self) -> List[Product]:
        self._generation += 1
        generation = self._generation
        self.loading = True
        products: Optional[List[Product]] = None
        try:
            rows: List[dict] = []
            for page in range(self.max_pages):
                if page:
                    await asyncio.sleep(self.page_delay)
                try:
                    batch = await self._fetch_page(page)
                except MarketError as e:
                    logger.warning("Dropping products page %d after retries: %s", page, e.message)
                    continue
                rows.extend(batch)
                if len(batch) < self.page_size:
                    break
            products = await load_products(self._client, rows)
        except Exception:
            logger.exception("Error fetching products")

        if generation != self._generation:
            logger.debug("Discarding stale products fetch %d, latest is %d", generation, self._generation)
            return self.products
        self.loading = False
        if products is not None:
            self.products = products
        return self.products

    async def create_product(self, data: ProductCreate) -> str:
        seller_id = self._session.user_id
        if not seller_id:
            self._notifier.error("You must be logged in to create a listing")
            raise NotAuthenticatedError()
        row = to_columns(data.model_dump())
        row.update(seller_id=seller_id, status="Active", created_at=utcnow())
        try:
            inserted = await self._client.table("products").insert(row)
        except MarketError as e:
            logger.error("Error creating product: %s", e.message)
            self._notifier.error(f"Failed to create listing: {e.message}")
            raise
        self._notifier.success("Product listed successfully!")
        return inserted["id"]

    async def update_product(self, product_id: str, updates: ProductUpdate) -> bool:
        changes = to_columns(updates.changes())
        if not changes:
            return True
        try:
            updated = await self._client.table("products").update(changes, eq={"id": product_id})
        except MarketError as e:
            logger.error("Error updating product %s: %s", product_id, e.message)
            self._notifier.error(f"Failed to update product: {e.message}")
            return False
        if not updated:
            self._notifier.error("Product not found")
            return False
        self._notifier.success("Product updated successfully!")
        await self.fetch_products()
        return True

    async def delete_product(self, product_id: str) -> bool:
        try:
            deleted = await self._client.table("products").delete(eq={"id": product_id})
        except MarketError as e:
            logger.error("Error deleting product %s: %s", product_id, e.message)
            self._notifier.error(f"Failed to delete product: {e.message}")
            return False
        if not deleted:
            self._notifier.error("Product not found")
            return False
        self.products = [p for p in self.products if p.id != product_id]
        self._notifier.success("Product removed successfully!")
        return True

    def get_user_products(self, user_id: str) -> List[Product]:
        return [p for p in self.products if p.seller_id == user_id]

    def get_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.products if p.id == product_id), None)
