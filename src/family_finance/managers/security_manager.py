"""
Security manager for IP rate limiting, abuse prevention and cron authentication.

Rate limits are fixed windows stored in Redis so every API worker shares one counter per
client. Repeated violations blacklist the client for ``BLACKLIST_DURATION`` seconds.
"""

from dataclasses import dataclass
import hmac
from typing import Optional

from fastapi import Request

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.redis_manager import redis_manager
from family_finance.utils.error_handling import Forbidden, RateLimitExceeded, Unauthenticated

logger = get_logger(prefix="[SecurityManager]")


@dataclass(frozen=True)
class RateLimitPreset:
    requests: int
    period_seconds: int


RATE_LIMIT_PRESETS = {
    "auth": RateLimitPreset(requests=5, period_seconds=15 * 60),
    "webhook": RateLimitPreset(requests=100, period_seconds=60),
    "api": RateLimitPreset(requests=60, period_seconds=60),
    "public": RateLimitPreset(requests=30, period_seconds=60),
}

# Atomic fixed-window counter with abuse tracking
RATE_LIMIT_LUA = """
local rate_key = KEYS[1]
local abuse_key = KEYS[2]
local blacklist_key = KEYS[3]
local requests_allowed = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local blacklist_threshold = tonumber(ARGV[3])
local blacklist_duration = tonumber(ARGV[4])
local count = redis.call('INCR', rate_key)
if count == 1 then
    redis.call('EXPIRE', rate_key, period)
end
if count > requests_allowed then
    local abuse_count = redis.call('INCR', abuse_key)
    if abuse_count == 1 then
        redis.call('EXPIRE', abuse_key, blacklist_duration)
    end
    if abuse_count >= blacklist_threshold then
        redis.call('SET', blacklist_key, 1, 'EX', blacklist_duration)
        return {count, abuse_count, 'BLACKLISTED'}
    end
    return {count, abuse_count, 'RATE_LIMITED'}
end
return {count, 0, 'OK'}
"""


class SecurityManager:
    """Manages rate limiting and blacklisting for API endpoints using Redis."""

    def __init__(self, redis_manager=None) -> None:
        self.redis_manager = redis_manager or globals()["redis_manager"]
        self.blacklist_threshold: int = settings.BLACKLIST_THRESHOLD
        self.blacklist_duration: int = settings.BLACKLIST_DURATION
        self.env_prefix: str = settings.ENV_PREFIX
        self.logger = logger

    def get_client_ip(self, request: Request) -> str:
        """Client address: first x-forwarded-for hop, then x-real-ip, then the socket peer."""
        x_forwarded_for = request.headers.get("x-forwarded-for")
        if x_forwarded_for:
            return x_forwarded_for.split(",")[0].strip()
        x_real_ip = request.headers.get("x-real-ip")
        if x_real_ip:
            return x_real_ip.strip()
        return request.client.host if request.client else "unknown"

    async def is_blacklisted(self, ip: str) -> bool:
        redis_conn = await self.redis_manager.get_redis()
        return bool(await redis_conn.exists(f"{self.env_prefix}:blacklist:{ip}"))

    async def check_rate_limit(
        self,
        request: Request,
        action: str = "default",
        rate_limit_requests: Optional[int] = None,
        rate_limit_period: Optional[int] = None,
    ) -> None:
        """
        Check rate limit for a given action and client IP.

        Args:
            request: The FastAPI request object.
            action: The action/route name for rate limiting.
            rate_limit_requests: Requests allowed per window, defaults to settings.
            rate_limit_period: Window length in seconds, defaults to settings.

        Raises:
            Forbidden: If the client is blacklisted.
            RateLimitExceeded: If the window's budget is spent.
        """
        ip = self.get_client_ip(request)
        if await self.is_blacklisted(ip):
            self.logger.warning("Blocked request from blacklisted IP: %s", ip)
            raise Forbidden("Your IP has been temporarily blacklisted due to excessive abuse.", "IP_BLACKLISTED")

        requests_allowed = rate_limit_requests if rate_limit_requests is not None else settings.RATE_LIMIT_REQUESTS
        period = rate_limit_period if rate_limit_period is not None else settings.RATE_LIMIT_PERIOD_SECONDS

        redis_conn = await self.redis_manager.get_redis()
        count, abuse_count, status_flag = await redis_conn.eval(
            RATE_LIMIT_LUA,
            3,
            f"{self.env_prefix}:ratelimit:{action}:{ip}",
            f"{self.env_prefix}:abuse:{ip}",
            f"{self.env_prefix}:blacklist:{ip}",
            requests_allowed,
            period,
            self.blacklist_threshold,
            self.blacklist_duration,
        )

        if status_flag == "BLACKLISTED":
            self.logger.error("IP %s has been blacklisted after %d abuses.", ip, abuse_count)
            raise Forbidden("Your IP has been temporarily blacklisted due to excessive abuse.", "IP_BLACKLISTED")
        if status_flag == "RATE_LIMITED":
            self.logger.warning("Rate limit exceeded for IP %s (action: %s). Abuse count: %d", ip, action, abuse_count)
            raise RateLimitExceeded(
                "Too many requests. Please try again later.", action=action, limit=requests_allowed, window=period
            )
        self.logger.debug("Rate limit ok for %s on %s (%d/%d)", ip, action, count, requests_allowed)

    async def check_preset(self, request: Request, preset_name: str) -> None:
        preset = RATE_LIMIT_PRESETS[preset_name]
        await self.check_rate_limit(request, preset_name, preset.requests, preset.period_seconds)

    def verify_cron_secret(self, x_cron_secret: Optional[str], authorization: Optional[str]) -> None:
        """
        Accept ``x-cron-secret: <secret>`` or ``Authorization: Bearer <secret>``.

        Raises:
            Unauthenticated: If neither header carries the configured secret.
        """
        expected = settings.CRON_SECRET.get_secret_value()
        candidates = []
        if x_cron_secret:
            candidates.append(x_cron_secret)
        if authorization and authorization.startswith("Bearer "):
            candidates.append(authorization[len("Bearer "):])
        for candidate in candidates:
            if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
                return
        self.logger.warning("Rejected cron request with missing or invalid secret")
        raise Unauthenticated("Unauthorized", "INVALID_CRON_SECRET")


security_manager = SecurityManager()


def rate_limit(preset_name: str):
    """FastAPI dependency applying a named ``RATE_LIMIT_PRESETS`` entry."""
    if preset_name not in RATE_LIMIT_PRESETS:
        raise KeyError(f"Unknown rate limit preset: {preset_name}")

    async def _rate_limit_dependency(request: Request) -> None:
        await security_manager.check_preset(request, preset_name)

    return _rate_limit_dependency
