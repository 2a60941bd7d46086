"""
cache.py — Redis caching layer for MatchLens.

Namespace conventions:
  paypal:access_token        → PayPal OAuth bearer token     TTL expires_in - 60s

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x, do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param, no module-level global state
  - Never logs token values
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from matchlens.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL constants (seconds)
# ---------------------------------------------------------------------------
TOKEN_EXPIRY_MARGIN: int = 60   # Refresh a minute before PayPal expires the token
MIN_TOKEN_TTL: int = 30

# ---------------------------------------------------------------------------
# Key constants
# ---------------------------------------------------------------------------
PAYPAL_TOKEN_KEY = "paypal:access_token"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup, stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        socket_timeout=2.0,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# PayPal token helpers
# ---------------------------------------------------------------------------

def token_ttl(expires_in: int) -> int:
    """TTL to store a token for, leaving a safety margin before PayPal's expiry."""
    return max(int(expires_in) - TOKEN_EXPIRY_MARGIN, MIN_TOKEN_TTL)


async def get_paypal_token(client: aioredis.Redis) -> Optional[str]:
    """Return the cached PayPal bearer token, or None on a miss."""
    return await client.get(PAYPAL_TOKEN_KEY)


async def set_paypal_token(client: aioredis.Redis, token: str, expires_in: int) -> None:
    ttl = token_ttl(expires_in)
    await client.setex(PAYPAL_TOKEN_KEY, ttl, token)
    logger.info("PayPal access token cached ttl=%ds", ttl)


async def clear_paypal_token(client: aioredis.Redis) -> None:
    """Drop the cached token; called when PayPal answers 401 with it."""
    await client.delete(PAYPAL_TOKEN_KEY)
    logger.info("PayPal access token evicted")
