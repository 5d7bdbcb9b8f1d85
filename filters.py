"""Browse-page search, filtering and sorting over an already fetched product list."""

from datetime import timedelta
from typing import List, Optional

from schemas import Product, ProductFilter, utcnow

SORT_KEYS = {
    'newest': (lambda p: p.created_at, True),
    'oldest': (lambda p: p.created_at, False),
    'price-low': (lambda p: p.price, False),
    'price-high': (lambda p: p.price, True),
}


def matches_search(product: Product, query: str) -> bool:
    query = query.strip().lower()
    if not query:
        return True
    return (
        query in product.name.lower()
        or query in product.description.lower()
        or query in product.category.lower()
    )


def apply_filters(products: List[Product], criteria: Optional[ProductFilter] = None) -> List[Product]:
    criteria = criteria or ProductFilter()
    filtered = [
        p for p in products
        if p.status == 'Active'
        and matches_search(p, criteria.search)
        and (not criteria.category or p.category == criteria.category)
        and (not criteria.condition or p.condition == criteria.condition)
        and criteria.min_price <= p.price <= criteria.max_price
        and (not criteria.negotiable_only or p.negotiable)
    ]
    key, reverse = SORT_KEYS[criteria.sort]
    return sorted(filtered, key=key, reverse=reverse)


def categories(products: List[Product]) -> List[str]:
    return list(dict.fromkeys(p.category for p in products))


def conditions(products: List[Product]) -> List[str]:
    return list(dict.fromkeys(p.condition for p in products))


def related_products(products: List[Product], product: Product, limit: int = 4) -> List[Product]:
    related = [
        p for p in products
        if p.id != product.id and p.category == product.category and p.status == 'Active'
    ]
    return related[:limit]


def recent_products(products: List[Product], days: int = 7) -> List[Product]:
    cutoff = utcnow() - timedelta(days=days)
    return [p for p in products if p.status == 'Active' and p.created_at >= cutoff]
