from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .backend import BackendError, CertificateSource
from .cancel import Waiter
from .output import MatchRecord, RowDecodeError, emit_batch_end, emit_batch_start, emit_match
from .query_builder import LIVE_EDGE, MAX_BATCH_SIZE, MAX_RECORD_ID, ConfigError

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 15.0


# -----------------------------
# Models
# -----------------------------

class ScanState(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanLimits:
    """Границы сканирования. end_id включительно; start_id == -1 означает «с живого края»."""

    start_id: int = LIVE_EDGE
    end_id: int = MAX_RECORD_ID
    batch_size: int = MAX_BATCH_SIZE
    poll_interval_s: float = POLL_INTERVAL_S


@dataclass(frozen=True)
class ScanRange:
    start: int
    end: int

    @property
    def width(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class ScanCursor:
    """
    Состояние цикла между итерациями.

    Каждая итерация получает курсор и возвращает новый, поэтому state machine
    можно прогонять по шагам в тестах без живой БД.
    """

    next_id: int
    known_max_id: int = -1
    delay_s: float = 0.0
    awaiting_live_edge: bool = False

    @classmethod
    def start(cls, limits: ScanLimits) -> "ScanCursor":
        return cls(next_id=limits.start_id, awaiting_live_edge=limits.start_id == LIVE_EDGE)

    @property
    def last_processed_id(self) -> int:
        return self.next_id - 1


@dataclass(frozen=True)
class IterationResult:
    cursor: ScanCursor
    state: ScanState
    batch: Optional[ScanRange] = None
    matched: int = 0


@dataclass(frozen=True)
class ScanReport:
    state: ScanState
    last_processed_id: int
    batches: int
    matches: int


def build_scan_limits(
    start_id: int = LIVE_EDGE,
    end_id: int = MAX_RECORD_ID,
    batch_size: int = MAX_BATCH_SIZE,
    poll_interval_s: float = POLL_INTERVAL_S,
) -> ScanLimits:
    """Валидирует границы сканирования; ошибки: ConfigError до старта цикла."""

    if start_id < LIVE_EDGE:
        raise ConfigError(f"start ID must be -1 (live edge) or >= 0, got {start_id}")
    if end_id < 0:
        raise ConfigError(f"end ID must be >= 0, got {end_id}")
    if start_id != LIVE_EDGE and start_id > end_id:
        raise ConfigError(f"start ID {start_id} is greater than end ID {end_id}")
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ConfigError(f"batch size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
    if poll_interval_s < 0:
        raise ConfigError(f"poll interval must be >= 0, got {poll_interval_s}")
    return ScanLimits(start_id=start_id, end_id=end_id, batch_size=batch_size, poll_interval_s=poll_interval_s)


# -----------------------------
# Range planning
# -----------------------------

def plan_batch(cursor: ScanCursor, limits: ScanLimits) -> tuple[Optional[ScanRange], float]:
    """
    Выбирает следующий диапазон и задержку перед следующей итерацией.

    Полный батч -> задержка 0 (данных ещё много), частичный -> интервал опроса
    (догнали живой край), данных нет -> (None, интервал опроса).
    """

    available = cursor.known_max_id - cursor.next_id + 1
    if available <= 0:
        return None, limits.poll_interval_s
    if available >= limits.batch_size:
        return ScanRange(cursor.next_id, cursor.next_id + limits.batch_size - 1), 0.0
    return ScanRange(cursor.next_id, cursor.next_id + available - 1), limits.poll_interval_s


def _discover_bound(cursor: ScanCursor, source: CertificateSource, limits: ScanLimits) -> ScanCursor:
    latest_id = source.query_max_id()
    logger.debug("[scan] Obtained latest ID: latest_id=%s", latest_id, extra={"latest_id": latest_id})

    next_id = cursor.next_id
    if cursor.awaiting_live_edge:
        next_id = latest_id + 1
        logger.info("[scan] Starting from live edge: next_id=%s", next_id)

    return replace(
        cursor,
        next_id=next_id,
        known_max_id=min(latest_id, limits.end_id),
        awaiting_live_edge=False,
    )


# -----------------------------
# Iteration
# -----------------------------

def scan_iteration(
    cursor: ScanCursor,
    source: CertificateSource,
    statement: str,
    pattern: str,
    limits: ScanLimits,
    emit: Callable[[MatchRecord], None] = emit_match,
) -> IterationResult:
    """
    Одна итерация цикла без ожидания: поиск границы, выбор диапазона, запрос батча.

    Ошибки БД не двигают курсор (повтор после интервала опроса), ошибка
    разбора строки завершает сканирование в состоянии FAILED.
    """

    cursor = replace(cursor, delay_s=limits.poll_interval_s)

    if cursor.awaiting_live_edge or cursor.next_id >= cursor.known_max_id:
        try:
            cursor = _discover_bound(cursor, source, limits)
        except BackendError as exc:
            logger.error("[scan] Could not obtain latest ID: %s", exc, extra={"err": str(exc)})
            return IterationResult(cursor=cursor, state=ScanState.RUNNING)

    batch, delay_s = plan_batch(cursor, limits)
    cursor = replace(cursor, delay_s=delay_s)
    if batch is None:
        logger.debug("[scan] No more certificates available yet: next_id=%s", cursor.next_id)
        return IterationResult(cursor=cursor, state=ScanState.RUNNING)

    emit_batch_start(batch.start, batch.end)
    try:
        rows = source.query_rows(statement, batch.start, batch.end, pattern)
    except BackendError as exc:
        logger.error("[scan] Could not obtain batch of results: %s", exc, extra={"err": str(exc)})
        return IterationResult(cursor=replace(cursor, delay_s=limits.poll_interval_s), state=ScanState.RUNNING)
    except RowDecodeError as exc:
        logger.error("[scan] Could not scan result: %s", exc, extra={"err": str(exc)})
        return IterationResult(cursor=cursor, state=ScanState.FAILED, batch=batch)

    matched = 0
    for row in rows:
        try:
            record = MatchRecord.from_row(row)
        except RowDecodeError as exc:
            logger.error("[scan] Could not scan result: %s", exc, extra={"err": str(exc)})
            return IterationResult(cursor=cursor, state=ScanState.FAILED, batch=batch, matched=matched)
        emit(record)
        matched += 1

    emit_batch_end(batch.start, batch.end, matched)
    # Ширина батча: шаг по пространству ID, а не число найденных строк.
    cursor = replace(cursor, next_id=batch.end + 1)
    return IterationResult(cursor=cursor, state=ScanState.RUNNING, batch=batch, matched=matched)


def run_scan(
    source: CertificateSource,
    statement: str,
    pattern: str,
    limits: ScanLimits,
    waiter: Waiter,
    emit: Callable[[MatchRecord], None] = emit_match,
) -> ScanReport:
    """
    Главный цикл: ожидание -> итерация, пока next_id <= end_id.

    Строго последовательный: один запрос в полёте, диапазоны не пропускаются
    и не переставляются. Отмена проверяется только в точке ожидания.
    """

    cursor = ScanCursor.start(limits)
    batches = 0
    matches = 0
    logger.info(
        "[scan] Scan started: start_id=%s end_id=%s batch_size=%s",
        limits.start_id,
        limits.end_id,
        limits.batch_size,
    )

    while cursor.awaiting_live_edge or cursor.next_id <= limits.end_id:
        if cursor.delay_s > 0:
            logger.debug("[scan] Sleeping: sleep_for=%ss", cursor.delay_s, extra={"sleep_for": cursor.delay_s})
        if waiter.wait(cursor.delay_s):
            logger.info(
                "[scan] Interrupted: last=%s",
                cursor.last_processed_id,
                extra={"last": cursor.last_processed_id},
            )
            return ScanReport(ScanState.STOPPED, cursor.last_processed_id, batches, matches)

        result = scan_iteration(cursor, source, statement, pattern, limits, emit)
        cursor = result.cursor
        matches += result.matched
        if result.state is ScanState.FAILED:
            logger.error("[scan] Scan failed: last=%s", cursor.last_processed_id, extra={"last": cursor.last_processed_id})
            return ScanReport(ScanState.FAILED, cursor.last_processed_id, batches, matches)
        if result.batch is not None:
            batches += 1

    logger.info("[scan] Scan completed: last=%s", cursor.last_processed_id, extra={"last": cursor.last_processed_id})
    return ScanReport(ScanState.COMPLETED, cursor.last_processed_id, batches, matches)
