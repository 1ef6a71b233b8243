"""Identifiers and public view tokens for orders

A view token grants unauthenticated read access to one order's public summary
until it expires two calendar years after issuance.
"""
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import quote

VIEW_TOKEN_VALIDITY_YEARS = 2


def generate_id() -> str:
    """Random 32-character hex identifier for orders and tickets"""
    return secrets.token_hex(16)


def generate_view_token() -> str:
    """URL-safe random token (32 bytes of entropy)"""
    return secrets.token_urlsafe(32)


def calculate_token_expiration(issued_at: Optional[datetime] = None) -> datetime:
    """Expiry for a view token: same month/day/time, two years later.

    Feb 29 has no counterpart in the target year and rolls over to Mar 1.
    """
    issued_at = issued_at or datetime.now(timezone.utc)
    year = issued_at.year + VIEW_TOKEN_VALIDITY_YEARS
    try:
        return issued_at.replace(year=year)
    except ValueError:
        return issued_at.replace(year=year, month=3, day=1)


def issue_view_token(issued_at: Optional[datetime] = None) -> Tuple[str, datetime]:
    """Return a new (token, expires_at) pair"""
    issued_at = issued_at or datetime.now(timezone.utc)
    return generate_view_token(), calculate_token_expiration(issued_at)


def build_order_view_url(base_url: str, order_id: str, view_token: str) -> str:
    """Public order view link; every ticket's QR code encodes this URL"""
    return f"{base_url.rstrip('/')}/orders/{quote(order_id, safe='')}?token={quote(view_token, safe='')}"
