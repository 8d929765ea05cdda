"""Relaying JSON-formatted log lines into a Python logger."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_EPSILON = timedelta(seconds=1)
_log = logging.getLogger(__name__)

_TIME_RE = re.compile(
    r"^(\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d)(\.\d+)?(Z|[+-]\d\d:\d\d)$"
)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}


def _parse_time(s: str) -> Optional[datetime]:
    m = _TIME_RE.match(s)
    if not m:
        raise ValueError(f"invalid time {s!r}")
    base, frac, tz = m.groups()
    digits = frac[1:7].ljust(6, "0") if frac else ""
    if tz == "Z":
        tz = "+00:00"
    t = datetime.fromisoformat(base + (("." + digits) if digits else "") + tz)
    return None if t == _ZERO_TIME else t


def _aware(t: datetime) -> datetime:
    return t if t.tzinfo is not None else t.astimezone()


def _decode(line: str) -> tuple[str, str, Optional[datetime]]:
    obj = json.loads(line)
    if not isinstance(obj, dict):
        raise ValueError("not an object")
    level = obj.get("level") or ""
    msg = obj.get("msg") or ""
    raw_time = obj.get("time")
    if not isinstance(level, str) or not isinstance(msg, str):
        raise ValueError("invalid field type")
    if raw_time is None:
        t = None
    elif isinstance(raw_time, str):
        t = _parse_time(raw_time)
    else:
        raise ValueError("invalid time type")
    return level, msg, t


def propagate_json(
    logger: logging.Logger,
    json_line: Union[str, bytes],
    header: str,
    begin: Optional[datetime],
) -> None:
    """Re-log a JSON log line through ``logger``.

    Panic and fatal levels become errors. Lines older than ``begin`` (with one
    second of tolerance) are dropped. Unparsable lines are logged verbatim at
    info level.
    """
    text = json_line.decode("utf-8", "replace") if isinstance(json_line, bytes) else json_line
    if not text.strip():
        return
    try:
        level, msg, t = _decode(text)
    except ValueError:
        _log.info("%s%s", header, text)
        return
    if t is not None and begin is not None and _aware(begin) > _aware(t) + _EPSILON:
        return
    lv = _LEVELS.get(level.lower())
    if lv is None:
        _log.info("%s%s", header, text)
        return
    if lv == logging.CRITICAL:
        logger.error("%s%s", header, msg, extra={"original_level": level.lower()})
    else:
        logger.log(lv, "%s%s", header, msg)