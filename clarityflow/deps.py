from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, Request, Response, status

from clarityflow.context import AppContext

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "cf_"
API_KEY_MIN_LENGTH = 32


def get_ctx(request: Request) -> AppContext:
  return request.app.state.ctx


async def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
  uid = (x_user_id or "").strip()
  if not uid:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
  return uid


def is_valid_api_key(key: str) -> bool:
  return key.startswith(API_KEY_PREFIX) and len(key) >= API_KEY_MIN_LENGTH


def rate_limit_credential(request: Request) -> str:
  key = (request.headers.get("x-api-key") or "").strip()
  if key:
    if not is_valid_api_key(key):
      raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    return f"key:{key}"
  ip = request.client.host if request.client else "unknown"
  return f"ip:{ip}"


def _redact(credential: str) -> str:
  kind, _, value = credential.partition(":")
  if kind == "key":
    return f"key:{value[:8]}…"
  return credential


async def enforce_rate_limit(request: Request, response: Response, ctx: AppContext = Depends(get_ctx)) -> None:
  credential = rate_limit_credential(request)
  limit = int(ctx.settings.rate_limit_per_hour)
  info = ctx.rate_limiter.check(credential, limit)
  headers = {
    "X-RateLimit-Limit": str(info.limit),
    "X-RateLimit-Remaining": str(info.remaining),
    "X-RateLimit-Reset": info.reset_time.isoformat() if info.reset_time else "",
  }
  if info.blocked:
    retry_after = info.retry_after(ctx.clock())
    logger.warning("Rate limit exceeded for %s", _redact(credential))
    raise HTTPException(
      status_code=status.HTTP_429_TOO_MANY_REQUESTS,
      detail={"code": "rate_limited", "message": "Too many requests", "retryAfterSeconds": retry_after},
      headers={**headers, "Retry-After": str(retry_after)},
    )
  response.headers.update(headers)
