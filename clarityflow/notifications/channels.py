from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Protocol

import httpx

from clarityflow.config import Settings

logger = logging.getLogger(__name__)

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"


class DeliveryError(RuntimeError):
  pass


@dataclass(frozen=True)
class DeliveryMessage:
  title: str
  body: str
  tag: str
  priority: int = 0


class DeliveryChannel(Protocol):
  name: str

  def can_deliver(self) -> bool: ...
  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]: ...
  async def retract(self, tag: str) -> bool: ...


class LocalChannel:
  """In-app only: the feed record written by the dispatcher is the delivery."""

  name = "local"

  def can_deliver(self) -> bool:
    return True

  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]:
    return {"provider": self.name, "status": "sent", "detail": {"title": msg.title, "tag": msg.tag}}

  async def retract(self, tag: str) -> bool:
    return False


class PushoverChannel:
  name = "pushover"

  def __init__(self, *, app_token: str | None, user_key: str | None, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._token = (app_token or "").strip()
    self._user = (user_key or "").strip()
    self._transport = transport

  def can_deliver(self) -> bool:
    return bool(self._token and self._user)

  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]:
    if not self.can_deliver():
      raise DeliveryError("Pushover channel missing token/userKey")
    payload = {
      "token": self._token,
      "user": self._user,
      "title": msg.title,
      "message": msg.body,
      "priority": int(msg.priority or 0),
    }
    try:
      async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
        r = await client.post(PUSHOVER_URL, data=payload)
        r.raise_for_status()
        data = r.json()
    except (httpx.HTTPError, ValueError) as e:
      raise DeliveryError(f"Pushover delivery failed: {e}") from e
    return {"provider": self.name, "status": "sent", "detail": data}

  async def retract(self, tag: str) -> bool:
    # Pushover has no recall API.
    return False


class SmtpChannel:
  name = "smtp"

  def __init__(
    self,
    *,
    host: str | None,
    port: int = 587,
    username: str | None = None,
    password: str | None = None,
    from_addr: str | None = None,
    to_addr: str | None = None,
    starttls: bool = True,
  ) -> None:
    self.host = (host or "").strip()
    self.port = int(port or 587)
    self.username = (username or "").strip()
    self.password = (password or "").strip()
    self.from_addr = (from_addr or "").strip()
    self.to_addr = (to_addr or "").strip()
    self.starttls = bool(starttls)

  def can_deliver(self) -> bool:
    return bool(self.host and self.from_addr and self.to_addr)

  async def deliver(self, msg: DeliveryMessage) -> dict[str, Any]:
    if not self.can_deliver():
      raise DeliveryError("SMTP channel missing host/from/to")

    def _send_sync() -> None:
      m = EmailMessage()
      m["Subject"] = msg.title
      m["From"] = self.from_addr
      m["To"] = self.to_addr
      m.set_content(msg.body)
      with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        if self.username and self.password:
          s.login(self.username, self.password)
        s.send_message(m)

    try:
      await asyncio.to_thread(_send_sync)
    except (smtplib.SMTPException, OSError) as e:
      raise DeliveryError(f"SMTP delivery failed: {e}") from e
    return {"provider": self.name, "status": "sent", "detail": {"to": self.to_addr, "host": self.host, "port": self.port}}

  async def retract(self, tag: str) -> bool:
    return False


def push_channel_for(cfg: Settings) -> DeliveryChannel:
  provider = (cfg.push_provider or "local").strip().lower()
  if provider == "pushover":
    return PushoverChannel(app_token=cfg.pushover_app_token, user_key=cfg.pushover_user_key)
  if provider != "local":
    logger.warning("Unknown push provider %r; using local channel", provider)
  return LocalChannel()


def email_channel_for(cfg: Settings) -> DeliveryChannel:
  return SmtpChannel(
    host=cfg.smtp_host,
    port=cfg.smtp_port,
    username=cfg.smtp_username,
    password=cfg.smtp_password,
    from_addr=cfg.smtp_from,
    to_addr=cfg.smtp_to,
    starttls=cfg.smtp_starttls,
  )
