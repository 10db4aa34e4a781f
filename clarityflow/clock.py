from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Clock = Callable[[], datetime]


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def resolve_tz(name: str | None, fallback: str = "UTC") -> ZoneInfo:
  for candidate in (name, fallback, "UTC"):
    if not candidate:
      continue
    try:
      return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
      continue
  return ZoneInfo("UTC")


def as_utc(dt: datetime) -> datetime:
  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


def local_date(dt: datetime, tz: ZoneInfo) -> date:
  return as_utc(dt).astimezone(tz).date()


def hhmm_to_minutes(hhmm: str | None) -> int | None:
  s = (hhmm or "").strip()
  if not s or len(s) != 5 or s[2] != ":":
    return None
  hh, mm = s[:2], s[3:]
  if not (hh.isdigit() and mm.isdigit()):
    return None
  hhi, mmi = int(hh), int(mm)
  if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
    return None
  return hhi * 60 + mmi


def normalize_hhmm(value: str) -> str:
  s = (value or "").strip()
  if len(s) == 4 and s[1] == ":":
    s = f"0{s}"
  minutes = hhmm_to_minutes(s)
  if minutes is None:
    raise ValueError("Time must be HH:MM")
  return f"{minutes // 60:02d}:{minutes % 60:02d}"
