from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

logger = logging.getLogger(__name__)


class RowDecodeError(Exception):
    """Строка результата не соответствует ожидаемому кортежу (id, identity, not_after)."""


@dataclass(frozen=True)
class MatchRecord:
    """Найденное совпадение: одна строка результата батча."""

    record_id: int
    identity_value: str
    expiry: datetime

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "MatchRecord":
        try:
            record_id, identity_value, expiry = row
        except (TypeError, ValueError) as exc:
            raise RowDecodeError(f"unexpected row shape: {row!r}") from exc

        # bool: подкласс int, но ID сертификата им быть не может.
        if not isinstance(record_id, int) or isinstance(record_id, bool):
            raise RowDecodeError(f"record id is not an integer: {record_id!r}")
        if not isinstance(identity_value, str):
            raise RowDecodeError(f"identity value is not a string: {identity_value!r}")
        if not isinstance(expiry, datetime):
            raise RowDecodeError(f"expiry is not a timestamp: {expiry!r}")
        return cls(record_id=record_id, identity_value=identity_value, expiry=expiry)


def emit_match(record: MatchRecord) -> None:
    logger.info(
        "Record found: certificate_id=%s identity=%s not_after=%s",
        record.record_id,
        record.identity_value,
        record.expiry.isoformat(),
        extra={
            "certificate_id": record.record_id,
            "identity": record.identity_value,
            "not_after": record.expiry.isoformat(),
        },
    )


def emit_batch_start(first: int, last: int) -> None:
    logger.debug("Batch start: first=%s last=%s", first, last, extra={"first": first, "last": last})


def emit_batch_end(first: int, last: int, count: int) -> None:
    logger.debug(
        "Batch end: first=%s last=%s count=%s",
        first,
        last,
        count,
        extra={"first": first, "last": last, "count": count},
    )
