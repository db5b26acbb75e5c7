import json

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.settings import RECEIPT_CACHE_TTL, REDIS_URL

_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _receipt_key(id_or_number: str) -> str:
    return f"receipt:{id_or_number}"


# Receipts never change once written, so entries are only ever expired by TTL.


async def get_receipt_cache(id_or_number: str) -> dict | None:
    try:
        data = await get_redis().get(_receipt_key(id_or_number))
        return json.loads(data) if data else None
    except (RedisError, OSError, ValueError) as exc:
        logger.warning("Redis get failed, skipping receipt cache: {}", exc)
        return None


async def set_receipt_cache(id_or_number: str, receipt: dict) -> None:
    try:
        await get_redis().setex(
            _receipt_key(id_or_number), RECEIPT_CACHE_TTL, json.dumps(receipt)
        )
    except (RedisError, OSError) as exc:
        logger.warning("Redis set failed, skipping receipt cache: {}", exc)
