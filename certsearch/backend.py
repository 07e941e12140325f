from __future__ import annotations

import logging
import re
from typing import Any, Protocol, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from .output import RowDecodeError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "postgresql+psycopg2://guest@crt.sh:5432/certwatch?application_name=certsearch"

MAX_ID_QUERY = "SELECT max(ID) FROM certificate"

# Позиционные параметры запроса -> именованные bind-параметры SQLAlchemy.
_POSITIONAL_BINDS = {"1": "first_id", "2": "last_id", "3": "pattern"}
_POSITIONAL_RE = re.compile(r"\$([1-3])\b")


class BackendError(Exception):
    """Ошибка обращения к БД. Для цикла сканирования считается временной."""


class CertificateSource(Protocol):
    """Минимальный интерфейс БД, который нужен циклу сканирования."""

    def query_max_id(self) -> int:
        ...

    def query_rows(self, statement: str, first_id: int, last_id: int, pattern: str) -> Sequence[Sequence[Any]]:
        ...


def bind_positional(statement: str) -> str:
    """Заменяет $1/$2/$3 на :first_id/:last_id/:pattern для sqlalchemy.text()."""

    return _POSITIONAL_RE.sub(lambda m: f":{_POSITIONAL_BINDS[m.group(1)]}", statement)


def masked_url(database_url: str) -> str:
    """URL для логов и сообщений об ошибках: пароль заменён на ***."""

    try:
        return make_url(database_url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<invalid url>"


class CertificateBackend:
    """
    Read-only сессия к crt.sh (или совместимой БД) поверх SQLAlchemy.

    Соединение открывается один раз и живёт до close(). AUTOCOMMIT нужен, чтобы
    каждый запрос был отдельной транзакцией и ошибка одного не ломала следующие.
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, *, connect_timeout_s: int = 10) -> None:
        connect_args = {}
        if database_url.startswith("postgresql"):
            connect_args["connect_timeout"] = connect_timeout_s
        url = masked_url(database_url)
        engine: Engine | None = None
        # Неверный URL (ArgumentError) и отсутствующий драйвер (NoSuchModuleError) тоже SQLAlchemyError.
        try:
            engine = create_engine(
                database_url,
                future=True,
                isolation_level="AUTOCOMMIT",
                connect_args=connect_args,
            )
            self._conn: Connection = engine.connect()
        except SQLAlchemyError as exc:
            if engine is not None:
                engine.dispose()
            logger.error("[backend] connect failed: url=%s error=%s", url, exc)
            raise BackendError(f"could not connect to {url}: {exc}") from exc
        self._engine: Engine = engine
        logger.info("[backend] connected: url=%s", url)
        self._prepared: dict[str, Any] = {}

    def close(self) -> None:
        self._conn.close()
        self._engine.dispose()
        logger.info("[backend] connection closed")

    def __enter__(self) -> "CertificateBackend":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _rollback_quietly(self) -> None:
        # После ошибки соединение нужно вернуть в рабочее состояние перед следующим запросом.
        try:
            self._conn.rollback()
        except SQLAlchemyError as exc:
            logger.debug("[backend] rollback after error failed: %s", exc)

    def query_max_id(self) -> int:
        """Текущий max(ID) таблицы certificate; пустая таблица -> -1."""

        try:
            value = self._conn.execute(text(MAX_ID_QUERY)).scalar()
        except SQLAlchemyError as exc:
            self._rollback_quietly()
            raise BackendError(f"could not obtain latest ID: {exc}") from exc
        return -1 if value is None else int(value)

    def query_rows(self, statement: str, first_id: int, last_id: int, pattern: str) -> Sequence[Sequence[Any]]:
        """Выполняет запрос батча с параметрами ($1, $2, $3) = (first_id, last_id, pattern)."""

        clause = self._prepared.get(statement)
        if clause is None:
            clause = text(bind_positional(statement))
            self._prepared[statement] = clause
        try:
            result = self._conn.execute(
                clause,
                {"first_id": first_id, "last_id": last_id, "pattern": pattern},
            )
        except SQLAlchemyError as exc:
            self._rollback_quietly()
            raise BackendError(f"could not obtain batch of results: {exc}") from exc

        # Запрос выполнен; ошибка при чтении строк (драйвер не смог преобразовать значение) не временная.
        try:
            return [tuple(row) for row in result]
        except SQLAlchemyError as exc:
            self._rollback_quietly()
            raise RowDecodeError(f"could not read batch rows: {exc}") from exc
