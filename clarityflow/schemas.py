from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import field_validator

from clarityflow.clock import normalize_hhmm, resolve_tz

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

Quadrant = Literal["urgent-important", "not-urgent-important", "urgent-not-important", "not-urgent-not-important"]
Priority = Literal["high", "medium", "low"]
NotificationCategory = Literal["task_reminder", "deadline_alert", "weekly_update", "achievement", "system"]
NotificationLevel = Literal["info", "warn", "error", "ok"]
AchievementType = Literal["completion-count", "streak", "goal", "category-milestone"]


def _parse_dt_utc(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
  elif isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if _DATE_ONLY_RE.fullmatch(s):
      dt = datetime.fromisoformat(s)
    else:
      dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
  else:
    return value

  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


# ---- tasks ----


class TaskOut(BaseModel):
  id: str
  userId: str
  title: str
  description: str = ""
  quadrant: Quadrant
  priority: Priority = "medium"
  dueDate: datetime | None = None
  completed: bool = False
  completedAt: datetime | None = None
  createdAt: datetime
  updatedAt: datetime

  @field_validator("dueDate", "completedAt", "createdAt", "updatedAt", mode="before")
  @classmethod
  def _utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class TaskCreateIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1, max_length=500)
  description: str = ""
  quadrant: Quadrant = "not-urgent-important"
  priority: Priority = "medium"
  dueDate: datetime | None = None

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class TaskUpdateIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str | None = Field(default=None, min_length=1, max_length=500)
  description: str | None = None
  quadrant: Quadrant | None = None
  priority: Priority | None = None
  dueDate: datetime | None = None
  completed: bool | None = None

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


# ---- notification settings ----


class QuietHours(BaseModel):
  enabled: bool = False
  start: str = "22:00"
  end: str = "07:00"

  @field_validator("start", "end")
  @classmethod
  def _hhmm(cls, v: str) -> str:
    return normalize_hhmm(v)


class Frequency(BaseModel):
  taskReminders: Literal["immediate", "hourly", "daily"] = "hourly"
  deadlineAlerts: Literal["1day", "3days", "1week"] = "1day"
  weeklyUpdates: Literal["monday", "friday", "sunday"] = "monday"


class Sound(BaseModel):
  enabled: bool = True
  type: Literal["default", "gentle", "urgent"] = "default"


class NotificationSettings(BaseModel):
  taskReminders: bool = True
  deadlineAlerts: bool = True
  weeklyUpdates: bool = False
  achievements: bool = True
  emailNotifications: bool = False
  pushNotifications: bool = True
  vibration: bool = True
  quietHours: QuietHours = Field(default_factory=QuietHours)
  frequency: Frequency = Field(default_factory=Frequency)
  sound: Sound = Field(default_factory=Sound)
  timezone: str | None = None


class QuietHoursPatch(BaseModel):
  model_config = ConfigDict(extra="forbid")

  enabled: bool | None = None
  start: str | None = Field(default=None, max_length=5)
  end: str | None = Field(default=None, max_length=5)

  @field_validator("start", "end")
  @classmethod
  def _hhmm(cls, v: str | None) -> str | None:
    return None if v is None else normalize_hhmm(v)


class FrequencyPatch(BaseModel):
  model_config = ConfigDict(extra="forbid")

  taskReminders: Literal["immediate", "hourly", "daily"] | None = None
  deadlineAlerts: Literal["1day", "3days", "1week"] | None = None
  weeklyUpdates: Literal["monday", "friday", "sunday"] | None = None


class SoundPatch(BaseModel):
  model_config = ConfigDict(extra="forbid")

  enabled: bool | None = None
  type: Literal["default", "gentle", "urgent"] | None = None


class NotificationSettingsPatch(BaseModel):
  model_config = ConfigDict(extra="forbid")

  taskReminders: bool | None = None
  deadlineAlerts: bool | None = None
  weeklyUpdates: bool | None = None
  achievements: bool | None = None
  emailNotifications: bool | None = None
  pushNotifications: bool | None = None
  vibration: bool | None = None
  quietHours: QuietHoursPatch | None = None
  frequency: FrequencyPatch | None = None
  sound: SoundPatch | None = None
  timezone: str | None = None

  @field_validator("timezone")
  @classmethod
  def _known_tz(cls, v: str | None) -> str | None:
    if v is None:
      return None
    name = v.strip()
    if resolve_tz(name, fallback="").key != name:
      raise ValueError(f"Unknown timezone: {v}")
    return name


# ---- notifications ----


class NotificationTemplate(BaseModel):
  id: str
  category: NotificationCategory
  title: str
  body: str
  level: NotificationLevel = "info"
  payload: dict[str, Any] = Field(default_factory=dict)


class NotificationRecord(BaseModel):
  id: str
  category: NotificationCategory
  level: NotificationLevel = "info"
  title: str
  body: str
  createdAt: datetime
  read: bool = False
  payload: dict[str, Any] = Field(default_factory=dict)


class NotificationStats(BaseModel):
  totalSent: int = 0
  totalScheduled: int = 0
  lastSentAt: datetime | None = None
  countsByCategory: dict[str, int] = Field(
    default_factory=lambda: {"task_reminder": 0, "deadline_alert": 0, "weekly_update": 0, "achievement": 0}
  )


class MarkReadIn(BaseModel):
  ids: list[str] = Field(min_length=1)


class NotificationSendOut(BaseModel):
  ok: bool
  id: str | None = None


# ---- achievements ----


class AchievementStats(BaseModel):
  totalCompleted: int = 0
  currentStreak: int = 0
  longestStreak: int = 0
  lastCompletionDate: datetime | None = None
  weeklyGoal: int = 7
  weeklyCompleted: int = 0
  monthlyGoal: int = 30
  monthlyCompleted: int = 0
  quadrantCompleted: dict[str, int] = Field(default_factory=dict)


class Achievement(BaseModel):
  id: str
  type: AchievementType
  title: str
  description: str
  icon: str = ""
  unlockedAt: datetime
  dedupeKey: str
  payload: dict[str, Any] = Field(default_factory=dict)


class TaskCompleteOut(BaseModel):
  task: TaskOut
  achievements: list[Achievement] = Field(default_factory=list)


class GoalsIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  weeklyGoal: int | None = Field(default=None, ge=1, le=1000)
  monthlyGoal: int | None = Field(default=None, ge=1, le=5000)


# ---- deadline monitor ----


class DeadlineMonitorSettings(BaseModel):
  enabled: bool = True
  checkIntervalMinutes: int = Field(default=60, ge=1)
  lastCheckAt: datetime | None = None
  monitoringActive: bool = False


class DeadlineMonitorSettingsIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  enabled: bool | None = None
  checkIntervalMinutes: int | None = Field(default=None, ge=1, le=24 * 60)


class DeadlineMonitorStatusOut(BaseModel):
  isActive: bool
  lastCheckAt: datetime | None = None
  nextCheckAt: datetime | None = None
  settings: DeadlineMonitorSettings


class ScanReportOut(BaseModel):
  usersScanned: int = 0
  usersFailed: int = 0
  tasksChecked: int = 0
  upcomingAlerts: int = 0
  overdueAlerts: int = 0
  delivered: int = 0
  startedAt: datetime
  finishedAt: datetime | None = None


# ---- rate limiting ----


class RateLimitOut(BaseModel):
  credential: str
  limit: int
  remaining: int
  resetTime: datetime | None = None
  blocked: bool = False
