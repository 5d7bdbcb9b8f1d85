import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import config
from contact import whatsapp_url
from context import ContextRegistry, MarketApp
from database import db, ensure_indexes
from errors import ContactUnavailableError, MarketError, PermissionDeniedError
from filters import apply_filters, categories, conditions, recent_products, related_products
from schemas import (
    CATEGORIES, CONDITIONS, Condition, ProductCreate, ProductFilter, ProductUpdate, ProfileUpdate,
    RegisterData, SortOption,
)

logger = logging.getLogger(__name__)

registry = ContextRegistry(db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if registry.db is not None:
        ensure_indexes(registry.db)
        await registry.start()
    else:
        logger.warning("Database not configured, data routes will return 500")
    yield
    registry.close()


app = FastAPI(title="Campus Market API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies
def require_db():
    if registry.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")


async def get_context(authorization: Optional[str] = Header(None)) -> MarketApp:
    require_db()
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    token = authorization.split(" ", 1)[1]
    context = await registry.resolve(token)
    if context is None or not context.session.is_authenticated:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return context


async def get_browse_context(authorization: Optional[str] = Header(None)) -> MarketApp:
    if authorization:
        return await get_context(authorization)
    require_db()
    if registry.guest is None:
        raise HTTPException(status_code=503, detail="Catalog not loaded yet")
    return registry.guest


def failure(context: MarketApp, status_code: int, fallback: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail=context.notifier.last_error() or fallback)


async def open_session(context: MarketApp) -> dict:
    await context.settle()
    await context.start()
    token = registry.register(context)
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": context.session.user.model_dump(by_alias=True),
    }


# Auth Endpoints
class LoginBody(BaseModel):
    email: str
    password: str


@app.post("/api/auth/register")
async def register(body: RegisterData):
    require_db()
    context = registry.create()
    if not await context.session.register(body):
        context.close()
        raise failure(context, 400, "Registration failed")
    if not context.session.is_authenticated:
        context.close()
        return {"registered": True, "email": body.email}
    return await open_session(context)


@app.post("/api/auth/login")
async def login(body: LoginBody):
    require_db()
    context = registry.create()
    if not await context.session.login(body.email, body.password):
        context.close()
        raise failure(context, 401, "Invalid credentials")
    return await open_session(context)


@app.post("/api/auth/logout")
async def logout(context: MarketApp = Depends(get_context)):
    token = context.session.access_token
    await context.session.logout()
    registry.discard(token)
    return {"status": "logged_out"}


@app.get("/api/auth/me")
async def me(context: MarketApp = Depends(get_context)):
    await context.settle()
    profile = context.session.profile
    return {
        "user": context.session.user.model_dump(by_alias=True),
        "profile": profile.model_dump() if profile else None,
    }


@app.patch("/api/profile")
async def update_profile(body: ProfileUpdate, context: MarketApp = Depends(get_context)):
    await context.settle()
    if not await context.session.update_profile(body):
        raise failure(context, 400, "Error updating profile")
    return {"user": context.session.user.model_dump(by_alias=True)}


# Listings Endpoints
@app.get("/api/categories")
def list_categories():
    return {"categories": CATEGORIES, "conditions": CONDITIONS}


@app.get("/api/products")
async def list_products(
    search: str = "",
    category: str = "",
    condition: Optional[Condition] = None,
    min_price: int = Query(0, ge=0),
    max_price: int = Query(50000, ge=0),
    negotiable_only: bool = False,
    sort: SortOption = 'newest',
    refresh: bool = False,
    context: MarketApp = Depends(get_browse_context),
):
    if refresh:
        await context.catalog.fetch_products()
    else:
        await context.settle()
    products = context.catalog.products
    criteria = ProductFilter(
        search=search,
        category=category,
        condition=condition or "",
        min_price=min_price,
        max_price=max_price,
        negotiable_only=negotiable_only,
        sort=sort,
    )
    return {
        "items": apply_filters(products, criteria),
        "categories": categories(products),
        "conditions": conditions(products),
        "loading": context.catalog.loading,
    }


@app.get("/api/products/recent")
async def list_recent_products(days: int = Query(7, ge=1, le=90), context: MarketApp = Depends(get_browse_context)):
    await context.settle()
    return {"items": recent_products(context.catalog.products, days)}


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, context: MarketApp = Depends(get_browse_context)):
    await context.settle()
    product = context.catalog.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {
        "product": product,
        "related": related_products(context.catalog.products, product),
        "is_owner": product.seller_id == context.session.user_id,
        "is_wishlisted": context.wishlist.is_wishlisted(product_id),
    }


@app.get("/api/products/{product_id}/contact")
async def contact_seller(product_id: str, context: MarketApp = Depends(get_browse_context)):
    await context.settle()
    product = context.catalog.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        return {"url": whatsapp_url(product.seller_phone, product.name)}
    except ContactUnavailableError as e:
        raise HTTPException(status_code=404, detail=e.message)


@app.post("/api/products")
async def create_product(body: ProductCreate, context: MarketApp = Depends(get_context)):
    try:
        product_id = await context.catalog.create_product(body)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except MarketError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"id": product_id}


@app.patch("/api/products/{product_id}")
async def update_product(product_id: str, body: ProductUpdate, context: MarketApp = Depends(get_context)):
    if not await context.catalog.update_product(product_id, body):
        raise failure(context, 400, "Failed to update product")
    return {"product": context.catalog.get_product(product_id)}


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: str, context: MarketApp = Depends(get_context)):
    if not await context.catalog.delete_product(product_id):
        raise failure(context, 400, "Failed to delete product")
    return {"status": "deleted"}


@app.get("/api/users/{user_id}/products")
async def user_products(user_id: str, context: MarketApp = Depends(get_browse_context)):
    await context.settle()
    return {"items": context.catalog.get_user_products(user_id)}


# Wishlist
@app.get("/api/wishlist")
async def get_wishlist(context: MarketApp = Depends(get_context)):
    await context.settle()
    return {"items": context.wishlist.wishlist}


@app.get("/api/wishlist/products")
async def get_wishlisted_products(context: MarketApp = Depends(get_context)):
    return {"items": await context.wishlist.fetch_wishlisted_products()}


@app.post("/api/wishlist/{product_id}")
async def add_to_wishlist(product_id: str, context: MarketApp = Depends(get_context)):
    await context.settle()
    if not await context.wishlist.add_to_wishlist(product_id):
        raise failure(context, 400, "Failed to add to wishlist")
    return {"items": context.wishlist.wishlist}


@app.delete("/api/wishlist/{product_id}")
async def remove_from_wishlist(product_id: str, context: MarketApp = Depends(get_context)):
    await context.settle()
    if not await context.wishlist.remove_from_wishlist(product_id):
        raise failure(context, 400, "Failed to remove from wishlist")
    return {"items": context.wishlist.wishlist}


# Messaging
class SendMessageBody(BaseModel):
    receiver_id: str
    content: str = Field(..., max_length=5000)
    product_id: Optional[str] = None


@app.get("/api/conversations")
async def get_conversations(context: MarketApp = Depends(get_context)):
    await context.settle()
    return {"items": context.messages.conversations, "unread": context.messages.unread_total()}


@app.get("/api/messages/{other_user_id}")
async def get_thread(other_user_id: str, context: MarketApp = Depends(get_context)):
    await context.settle()
    return {"items": context.messages.get_thread(other_user_id)}


@app.post("/api/messages")
async def send_message(body: SendMessageBody, context: MarketApp = Depends(get_context)):
    await context.settle()
    message = await context.messages.send_message(body.receiver_id, body.content, body.product_id)
    if message is None:
        raise failure(context, 400, "Failed to send message")
    return {"message": message}


@app.post("/api/messages/{other_user_id}/read")
async def mark_as_read(other_user_id: str, context: MarketApp = Depends(get_context)):
    await context.settle()
    await context.messages.mark_as_read(other_user_id)
    return {"status": "ok"}


@app.get("/api/notifications")
def get_notifications(context: MarketApp = Depends(get_context)):
    return {"items": context.notifier.drain()}


@app.get("/")
def read_root():
    return {"message": "Campus Market backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if registry.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = registry.db.name if hasattr(registry.db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = registry.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
