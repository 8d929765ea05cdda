"""Host agent status events and a watcher for the agent's output files."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Callable, Iterator, Optional

from .logprop import propagate_json

__all__ = ["Status", "Event", "parse_event", "watch"]

_log = logging.getLogger(__name__)

_ZERO_TIME_TEXT = "0001-01-01T00:00:00Z"
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"^(\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d)(\.\d+)?(Z|[+-]\d\d:\d\d)$"
)
_POLL_INTERVAL = 0.1


@dataclass
class Status:
    """State of the host agent as reported in an event."""

    running: bool = False
    # When degraded is true, running must be true as well.
    degraded: bool = False
    # When exiting is true, running must be false.
    exiting: bool = False
    errors: list[str] = field(default_factory=list)
    ssh_local_port: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.running:
            out["running"] = True
        if self.degraded:
            out["degraded"] = True
        if self.exiting:
            out["exiting"] = True
        if self.errors:
            out["errors"] = list(self.errors)
        if self.ssh_local_port:
            out["sshLocalPort"] = self.ssh_local_port
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Status":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("status: expected an object")
        errors = data.get("errors") or []
        if not isinstance(errors, list) or not all(isinstance(e, str) for e in errors):
            raise ValueError("status.errors: expected a list of strings")
        port = data.get("sshLocalPort") or 0
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError("status.sshLocalPort: expected an integer")
        flags = {}
        for key in ("running", "degraded", "exiting"):
            value = data.get(key)
            if value is None:
                value = False
            if not isinstance(value, bool):
                raise ValueError(f"status.{key}: expected a boolean")
            flags[key] = value
        return cls(errors=list(errors), ssh_local_port=port, **flags)


def _format_time(t: Optional[datetime]) -> str:
    if t is None:
        return _ZERO_TIME_TEXT
    if t.tzinfo is None:
        t = t.astimezone()
    text = t.strftime("%Y-%m-%dT%H:%M:%S")
    if t.microsecond:
        text += "." + f"{t.microsecond:06d}".rstrip("0")
    offset = t.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(s: Any) -> Optional[datetime]:
    if s is None:
        return None
    if not isinstance(s, str):
        raise ValueError("time: expected a string")
    m = _TIME_RE.match(s)
    if m is None:
        raise ValueError(f"invalid time {s!r}")
    base, frac, tz = m.groups()
    digits = frac[1:7].ljust(6, "0") if frac else ""
    if tz == "Z":
        tz = "+00:00"
    t = datetime.fromisoformat(base + ("." + digits if digits else "") + tz)
    return None if t == _ZERO_TIME else t


@dataclass
class Event:
    """A timestamped status report emitted as one JSON line."""

    time: Optional[datetime] = None
    status: Status = field(default_factory=Status)

    def to_json(self) -> str:
        """Return the compact JSON form (without a trailing newline)."""
        return json.dumps(
            {"time": _format_time(self.time), "status": self.status.to_dict()},
            separators=(",", ":"),
        )


def parse_event(line: str) -> Event:
    """Parse one JSON line into an :class:`Event`; raise ``ValueError`` if malformed."""
    obj = json.loads(line)
    if not isinstance(obj, dict):
        raise ValueError("event: expected an object")
    return Event(time=_parse_time(obj.get("time")), status=Status.from_dict(obj.get("status")))


class _LineTail:
    """Yields complete lines appended to a file since the previous call."""

    def __init__(self, fh: BinaryIO):
        self._fh = fh
        self._pending = b""

    def lines(self) -> Iterator[str]:
        data = self._fh.read()
        if not data:
            return
        self._pending += data
        *complete, self._pending = self._pending.split(b"\n")
        for raw in complete:
            yield raw.decode("utf-8", "replace").rstrip("\r")


def watch(
    ha_stdout_path: str,
    ha_stderr_path: str,
    begin: Optional[datetime],
    on_event: Callable[[Event], bool],
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Follow the agent's stdout (events) and stderr (JSON logs).

    ``on_event`` is called for every event; returning true ends the watch.
    Log lines from stderr are relayed to this module's logger. The watch also
    ends once ``stop_event`` is set. Both files must exist.
    """
    with open(ha_stdout_path, "rb") as out_fh, open(ha_stderr_path, "rb") as err_fh:
        out_tail = _LineTail(out_fh)
        err_tail = _LineTail(err_fh)
        while stop_event is None or not stop_event.is_set():
            progressed = False
            for line in err_tail.lines():
                progressed = True
                propagate_json(_log, line, "[hostagent] ", begin)
            for line in out_tail.lines():
                progressed = True
                if not line:
                    continue
                ev = parse_event(line)
                _log.debug("received an event: %s", ev)
                if on_event(ev):
                    return
            if not progressed:
                if stop_event is not None:
                    stop_event.wait(_POLL_INTERVAL)
                else:
                    time.sleep(_POLL_INTERVAL)