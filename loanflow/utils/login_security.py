from fastapi import HTTPException, status
from redis.exceptions import RedisError

from loanflow.core.settings import settings
from loanflow.utils.redis_client import get_redis_client


def _ttl(seconds: int) -> int:
    return max(1, seconds)


def _normalize(identifier: str) -> str:
    return identifier.strip().lower()


async def check_lockout(identifier: str) -> None:
    redis = get_redis_client()
    try:
        locked_until = await redis.get(f"lock:{_normalize(identifier)}")
    except RedisError:
        return
    if locked_until:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts; try later",
        )


async def register_login_attempt(identifier: str, success: bool) -> None:
    redis = get_redis_client()
    key = _normalize(identifier)
    fail_key = f"fail:{key}"
    lock_key = f"lock:{key}"
    window = _ttl(settings.login_lockout_minutes * 60)
    try:
        if success:
            await redis.delete(fail_key, lock_key)
            return
        attempts = await redis.incr(fail_key)
        await redis.expire(fail_key, window)
        if attempts < settings.login_attempt_limit:
            return
        await redis.setex(lock_key, window, 1)
        await redis.delete(fail_key)
    except RedisError:
        return
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Account temporarily locked due to failed attempts",
    )
