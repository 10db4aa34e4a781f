from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

from clarityflow.config import Settings
from clarityflow.context import AppContext, build_context
from clarityflow.db import create_tables
from clarityflow.notifications.channels import DeliveryError, DeliveryMessage
from clarityflow.schemas import TaskOut
from clarityflow.storage import MemoryKeyValueStore


class FakeClock:
  def __init__(self, now: datetime) -> None:
    self.now = now

  def __call__(self) -> datetime:
    return self.now

  def advance(self, **kwargs: float) -> datetime:
    self.now = self.now + timedelta(**kwargs)
    return self.now

  def set(self, now: datetime) -> datetime:
    self.now = now
    return now


class RecordingChannel:
  def __init__(self, name: str = "recording", *, available: bool = True) -> None:
    self.name = name
    self.available = available
    self.sent: list[DeliveryMessage] = []
    self.retract_calls: list[str] = []

  def can_deliver(self) -> bool:
    return self.available

  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]:
    self.sent.append(msg)
    return {"provider": self.name, "status": "sent"}

  async def retract(self, tag: str) -> bool:
    self.retract_calls.append(tag)
    return False


class FailingChannel(RecordingChannel):
  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]:
    raise DeliveryError("provider rejected message")


def make_task(task_id: str = "t1", *, user_id: str = "u1", quadrant: str = "not-urgent-important", due: datetime | None = None, completed: bool = False) -> TaskOut:
  now = datetime(2026, 1, 1, tzinfo=timezone.utc)
  return TaskOut(
    id=task_id,
    userId=user_id,
    title=f"Task {task_id}",
    quadrant=quadrant,
    dueDate=due,
    completed=completed,
    createdAt=now,
    updatedAt=now,
  )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  # A Wednesday, noon UTC.
  return FakeClock(datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def kv() -> MemoryKeyValueStore:
  return MemoryKeyValueStore()


@pytest.fixture
def push_channel() -> RecordingChannel:
  return RecordingChannel("push")


@pytest.fixture
def email_channel() -> RecordingChannel:
  return RecordingChannel("email", available=False)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
  return Settings(
    database_url=f"sqlite+aiosqlite:///{tmp_path / 'clarityflow_test.db'}",
    redis_url=None,
    kv_namespace="cf-test",
    log_dir=str(tmp_path / "logs"),
    background_jobs_enabled=False,
    rate_limit_per_hour=1000,
  )


@pytest.fixture
async def ctx(test_settings: Settings, clock: FakeClock, kv: MemoryKeyValueStore, push_channel: RecordingChannel, email_channel: RecordingChannel) -> AppContext:
  c = build_context(test_settings, clock=clock, kv=kv, push_channel=push_channel, email_channel=email_channel)
  await create_tables(c.engine)
  yield c
  await c.deadlines.stop()
  await c.rate_limiter.stop_sweeper()
  await c.dispatcher.aclose()
  await c.engine.dispose()


@pytest.fixture
async def client(ctx: AppContext) -> AsyncClient:
  from clarityflow.main import create_app

  transport = ASGITransport(app=create_app(ctx))
  async with AsyncClient(transport=transport, base_url="http://localhost", headers={"X-User-Id": "u1"}) as c:
    yield c
