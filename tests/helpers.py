from datetime import datetime, timedelta, timezone

from bson import ObjectId

import config
from schemas import ProductCreate, RegisterData


def campus_email(name):
    return f"{name}{config.CAMPUS_EMAIL_DOMAIN}"


def register_data(name, **extra):
    fields = dict(
        full_name=name.title(),
        email=campus_email(name),
        password="secret123",
        student_id=f"R{abs(hash(name)) % 100000:05d}",
    )
    fields.update(extra)
    return RegisterData(**fields)


async def sign_up(app, name, **extra):
    assert await app.session.register(register_data(name, **extra))
    await app.settle()
    return app.session.user_id


async def log_in(app, name):
    assert await app.session.login(campus_email(name), "secret123")
    await app.settle()
    return app.session.user_id


def listing(**overrides):
    fields = dict(
        name="Data Structures Textbook",
        description="Cormen, barely used",
        price=450,
        negotiable=True,
        condition="Like New",
        category="Books",
        location="Boys Hostel Block A",
        images=["https://images.example.com/book.jpg"],
    )
    fields.update(overrides)
    return ProductCreate(**fields)


def product_row(seller_id, title="Item", status="Active", minutes_ago=0, **extra):
    row = {
        "_id": str(ObjectId()),
        "title": title,
        "description": "desc",
        "price": 100,
        "negotiable": False,
        "condition": "Good",
        "category": "Books",
        "location": "Block A",
        "images": ["https://images.example.com/1.jpg"],
        "seller_id": seller_id,
        "status": status,
        "created_at": datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    }
    row.update(extra)
    return row
