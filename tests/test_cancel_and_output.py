import json
import logging
import signal
from datetime import datetime

import pytest

import certsearch.cancel as cancel
from certsearch.output import MatchRecord, RowDecodeError, emit_match
from certsearch.settings.logging import JsonFormatter


def test_cancel_token_wait() -> None:
    token = cancel.CancelToken()
    assert token.wait(0) is False
    assert token.wait(0.01) is False

    token.cancel()
    assert token.cancelled is True
    # Отмена видна сразу, в том числе при нулевой паузе.
    assert token.wait(0) is True
    assert token.wait(60) is True


def test_install_signal_handlers_cancels_token(monkeypatch) -> None:
    installed = {}
    monkeypatch.setattr(cancel.signal, "signal", lambda signum, handler: installed.setdefault(signum, handler))
    token = cancel.CancelToken()

    names = cancel.install_signal_handlers(token)

    assert "SIGINT" in names and "SIGTERM" in names
    installed[signal.SIGTERM](signal.SIGTERM, None)
    assert token.cancelled is True


def test_match_record_from_row() -> None:
    not_after = datetime(2031, 5, 1, 12, 0)
    record = MatchRecord.from_row((42, "mail.example.com", not_after))
    assert record == MatchRecord(record_id=42, identity_value="mail.example.com", expiry=not_after)


@pytest.mark.parametrize(
    "row",
    [
        (1, "a"),
        None,
        ("1", "a", datetime(2030, 1, 1)),
        (True, "a", datetime(2030, 1, 1)),
        (1, b"a", datetime(2030, 1, 1)),
        (1, "a", "2030-01-01"),
    ],
)
def test_match_record_rejects_bad_rows(row) -> None:
    with pytest.raises(RowDecodeError):
        MatchRecord.from_row(row)


def test_emit_match_json_record(caplog) -> None:
    caplog.set_level(logging.INFO, logger="certsearch.output")
    emit_match(MatchRecord(7, "www.example.com", datetime(2030, 1, 1)))

    record = caplog.records[-1]
    payload = json.loads(JsonFormatter().format(record))
    assert payload["certificate_id"] == 7
    assert payload["identity"] == "www.example.com"
    assert payload["not_after"] == "2030-01-01T00:00:00"
    assert payload["level"] == "info"
    assert payload["msg"].startswith("Record found")
