from __future__ import annotations

import logging
import sys
from pathlib import Path


class _ConsoleNoiseFilter(logging.Filter):
  """
  Keep the console readable:
  - clarityflow logs pass through
  - uvicorn access/error logs pass through at WARNING+
  - any other third-party logger only at ERROR+
  """

  def filter(self, record: logging.LogRecord) -> bool:
    name = record.name
    if name.startswith("clarityflow"):
      return True
    if name.startswith("uvicorn"):
      return record.levelno >= logging.WARNING
    if name == "py.warnings":
      return record.levelno >= logging.ERROR
    return record.levelno >= logging.ERROR


def setup_logging(
  *,
  log_dir: str | Path = ".local/clarityflow",
  console_level: int | str = logging.INFO,
  file_level: int | str = logging.DEBUG,
) -> None:
  """
  Configure the root logger with a filtered console handler and a file handler.

  Call once at process start, before the first log line.
  """
  log_dir = Path(log_dir)
  log_dir.mkdir(parents=True, exist_ok=True)
  log_file = log_dir / "clarityflow.log"

  root = logging.getLogger()
  root.setLevel(logging.DEBUG)
  for h in list(root.handlers):
    root.removeHandler(h)

  fmt = logging.Formatter(
    fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
  )

  ch = logging.StreamHandler(sys.stderr)
  ch.setLevel(console_level)
  ch.setFormatter(fmt)
  ch.addFilter(_ConsoleNoiseFilter())
  root.addHandler(ch)

  fh = logging.FileHandler(str(log_file), encoding="utf-8")
  fh.setLevel(file_level)
  fh.setFormatter(fmt)
  root.addHandler(fh)

  logging.captureWarnings(True)
