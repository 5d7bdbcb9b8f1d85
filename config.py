"""
Runtime settings for Campus Market.

Everything is read from the environment (a local .env file is loaded first),
so the same code runs against a local MongoDB or a hosted one.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
PORT = int(os.getenv("PORT", 8000))

# Only addresses ending with this suffix may register or log in
CAMPUS_EMAIL_DOMAIN = os.getenv("CAMPUS_EMAIL_DOMAIN", "@rguktrkv.ac.in")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24 * 7))

# When false, sign-up creates the account and profile but no session
AUTH_AUTO_SIGN_IN = _flag("AUTH_AUTO_SIGN_IN", True)

PRODUCTS_PAGE_SIZE = int(os.getenv("PRODUCTS_PAGE_SIZE", 10))
PRODUCTS_MAX_PAGES = int(os.getenv("PRODUCTS_MAX_PAGES", 3))
PRODUCTS_PAGE_DELAY = float(os.getenv("PRODUCTS_PAGE_DELAY", 0.1))
PROFILE_BATCH_SIZE = 5
WISHLIST_BATCH_SIZE = 10

RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", 3))
RETRY_DELAY = float(os.getenv("RETRY_DELAY", 1.0))
