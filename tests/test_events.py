import logging
import threading
from datetime import datetime, timezone

import pytest

from limahost.events import Event, Status, parse_event, watch


def test_to_json_pins_go_format():
    ev = Event(
        time=datetime(2022, 1, 2, 3, 4, 5, 500000, tzinfo=timezone.utc),
        status=Status(running=True, ssh_local_port=60022),
    )
    assert ev.to_json() == (
        '{"time":"2022-01-02T03:04:05.5Z","status":{"running":true,"sshLocalPort":60022}}'
    )


def test_zero_time_and_empty_status():
    assert Event().to_json() == '{"time":"0001-01-01T00:00:00Z","status":{}}'


def test_round_trip():
    ev = Event(
        time=datetime(2021, 6, 7, 8, 9, 10, tzinfo=timezone.utc),
        status=Status(running=True, degraded=True, errors=["a", "b"], ssh_local_port=2222),
    )
    assert parse_event(ev.to_json()) == ev


def test_round_trip_zero_time_is_none():
    ev = Event(status=Status(exiting=True))
    assert parse_event(ev.to_json()) == ev


def test_parse_event_rejects_non_object():
    with pytest.raises(ValueError):
        parse_event("[1, 2]")


def test_parse_event_rejects_bad_time():
    with pytest.raises(ValueError):
        parse_event('{"time": "yesterday"}')


def _write(path, lines):
    path.write_text("".join(line + "\n" for line in lines))


def test_watch_delivers_events_until_stop(tmp_path):
    out = tmp_path / "ha.stdout.log"
    err = tmp_path / "ha.stderr.log"
    first = Event(status=Status(ssh_local_port=4321))
    last = Event(status=Status(exiting=True))
    _write(out, [first.to_json(), "", last.to_json(), Event(status=Status(running=True)).to_json()])
    _write(err, [])
    seen = []

    def on_event(ev):
        seen.append(ev)
        return ev.status.exiting

    watch(str(out), str(err), None, on_event)
    assert seen == [first, last]


def test_watch_relays_stderr(tmp_path, caplog):
    out = tmp_path / "out"
    err = tmp_path / "err"
    _write(out, [Event(status=Status(exiting=True)).to_json()])
    _write(err, ['{"level":"info","msg":"hello"}'])
    with caplog.at_level(logging.INFO):
        watch(str(out), str(err), None, lambda ev: True)
    assert "[hostagent] hello" in caplog.messages


def test_watch_invalid_event_raises(tmp_path):
    out = tmp_path / "out"
    err = tmp_path / "err"
    _write(out, ["not json"])
    _write(err, [])
    with pytest.raises(ValueError):
        watch(str(out), str(err), None, lambda ev: True)


def test_watch_missing_file(tmp_path):
    err = tmp_path / "err"
    _write(err, [])
    with pytest.raises(FileNotFoundError):
        watch(str(tmp_path / "missing"), str(err), None, lambda ev: True)


def test_watch_returns_when_stopped(tmp_path):
    out = tmp_path / "out"
    err = tmp_path / "err"
    _write(out, [Event(status=Status(running=True)).to_json()])
    _write(err, [])
    stop = threading.Event()
    stop.set()
    seen = []
    watch(str(out), str(err), None, lambda ev: seen.append(ev) or False, stop)
    assert seen == []