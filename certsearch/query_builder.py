from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)


MAX_BATCH_SIZE = 100_000
MAX_RECORD_ID = 2**63 - 1
LIVE_EDGE = -1

SUBJECT_NONE = "NONE"
SUBJECT_ANY = "ANY"

_OID_RE = re.compile(r"^[0-9.]*[0-9]$")


class ConfigError(ValueError):
    """Ошибка конфигурации поиска: обнаруживается до старта цикла сканирования."""


class SanSelector(str, enum.Enum):
    """Фильтр по типу SAN (GeneralName) в x509_altnames_raw."""

    NONE = "NONE"
    ANY = "ANY"
    RFC822NAME = "RFC822NAME"
    DNSNAME = "DNSNAME"
    IPADDRESS = "IPADDRESS"


# TYPE_NUM из GeneralName (RFC 5280); NONE и ANY по типу не фильтруют.
SAN_TYPE_NUMS = {
    SanSelector.RFC822NAME: 1,
    SanSelector.DNSNAME: 2,
    SanSelector.IPADDRESS: 7,
}


@dataclass(frozen=True)
class SearchConfig:
    """
    Параметры поиска, из которых строится SQL.

    pattern: шаблон ILIKE (% и _), передаётся только как параметр $3.
    subject_selector: NONE, ANY или OID атрибута Subject (например, 2.5.4.3).
    """

    pattern: str = "%"
    subject_selector: str = SUBJECT_NONE
    san_selector: SanSelector = SanSelector.DNSNAME
    unexpired_only: bool = False
    deduplicate: bool = False
    unique_results_only: bool = False
    ordered_output: bool = False

    def __post_init__(self) -> None:
        # Конфиг можно собрать и напрямую, минуя build_search_config: в SQL попадает только проверенное.
        if not self.pattern:
            raise ConfigError("search pattern must not be empty")
        if self.subject_selector not in (SUBJECT_NONE, SUBJECT_ANY) and not _is_oid(self.subject_selector):
            raise ConfigError(f"invalid subject type {self.subject_selector!r}")
        if not isinstance(self.san_selector, SanSelector):
            raise ConfigError(f"invalid SAN type {self.san_selector!r}")
        if self.subject_selector == SUBJECT_NONE and self.san_selector is SanSelector.NONE:
            raise ConfigError("subject type and SAN type cannot both be NONE")


def _is_oid(value) -> bool:
    return isinstance(value, str) and _OID_RE.fullmatch(value) is not None


# -----------------------------
# Parsing / validation
# -----------------------------

def parse_subject_selector(raw: str | None) -> str:
    """Нормализует --subject-type: NONE, ANY или валидированный dotted OID."""

    value = (raw or SUBJECT_NONE).strip()
    if value.upper() in (SUBJECT_NONE, SUBJECT_ANY):
        return value.upper()
    if not _is_oid(value):
        logger.error("Invalid subject type: %r", raw)
        raise ConfigError(f"invalid subject type {raw!r}: expected NONE, ANY or a dotted OID")
    return value


def parse_san_selector(raw: str | None) -> SanSelector:
    """Нормализует --san-type без учёта регистра (dNSName == DNSNAME)."""

    value = (raw or "NONE").strip().upper()
    try:
        return SanSelector[value]
    except KeyError:
        logger.error("Invalid SAN type: %r", raw)
        allowed = ", ".join(SanSelector.__members__)
        raise ConfigError(f"invalid SAN type {raw!r}: expected one of {allowed}") from None


def build_search_config(
    pattern: str,
    subject_type: str | None = SUBJECT_NONE,
    san_type: str | None = "dNSName",
    *,
    unexpired_only: bool = False,
    deduplicate: bool = False,
    uniq: bool = False,
    sort: bool = False,
) -> SearchConfig:
    """Собирает и валидирует SearchConfig из сырых значений CLI."""

    if not pattern:
        logger.error("Search pattern is empty")
        raise ConfigError("search pattern must not be empty")

    subject_selector = parse_subject_selector(subject_type)
    san_selector = parse_san_selector(san_type)
    if subject_selector == SUBJECT_NONE and san_selector is SanSelector.NONE:
        logger.error("Both subject and SAN selectors are NONE")
        raise ConfigError("subject type and SAN type cannot both be NONE")

    config = SearchConfig(
        pattern=pattern,
        subject_selector=subject_selector,
        san_selector=san_selector,
        unexpired_only=unexpired_only,
        deduplicate=deduplicate,
        unique_results_only=uniq,
        ordered_output=sort,
    )
    logger.debug(
        "Search config: subject=%s san=%s unexpired_only=%s deduplicate=%s uniq=%s sort=%s",
        config.subject_selector,
        config.san_selector.name,
        config.unexpired_only,
        config.deduplicate,
        config.unique_results_only,
        config.ordered_output,
    )
    return config


# -----------------------------
# SQL composition
# -----------------------------

_PROJECTION = "c.ID, identities.VALUE, x509_notAfter(c.CERTIFICATE)"

_DEDUPLICATE_CLAUSE = """
        AND NOT EXISTS (
            SELECT 1
                FROM certificate c2
                WHERE x509_serialNumber(c2.CERTIFICATE) = x509_serialNumber(c.CERTIFICATE)
                    AND c2.ISSUER_CA_ID = c.ISSUER_CA_ID
                    AND c2.ID < c.ID
                    AND x509_tbscert_strip_ct_ext(c2.CERTIFICATE) = x509_tbscert_strip_ct_ext(c.CERTIFICATE)
                LIMIT 1
        )"""


def _subject_branch(selector: str) -> str:
    branch = """
        SELECT encode(sub.RAW_VALUE, 'escape'::text) AS VALUE
            FROM x509_nameAttributes_raw(c.CERTIFICATE) sub"""
    if selector != SUBJECT_ANY:
        # OID уже прошёл проверку _OID_RE: только цифры и точки.
        branch += f"""
            WHERE sub.ATTRIBUTE_OID = '{selector}'"""
    return branch


def _san_branch(selector: SanSelector) -> str:
    branch = """
        SELECT encode(san.RAW_VALUE, 'escape'::text) AS VALUE
            FROM x509_altnames_raw(c.CERTIFICATE) san"""
    type_num = SAN_TYPE_NUMS.get(selector)
    if type_num is not None:
        branch += f"""
            WHERE san.TYPE_NUM = {int(type_num)}"""
    return branch


def build_statement(config: SearchConfig) -> str:
    """
    Строит единственный параметризованный запрос для всех итераций сканирования.

    Параметры: $1: первый ID диапазона, $2: последний ID, $3: шаблон поиска.
    Из конфигурации в текст попадают только значения из фиксированного словаря
    (enum, проверенный OID, целые числа), шаблон всегда идёт через $3.
    """

    branches = []
    if config.subject_selector != SUBJECT_NONE:
        branches.append(_subject_branch(config.subject_selector))
    if config.san_selector is not SanSelector.NONE:
        branches.append(_san_branch(config.san_selector))
    lateral = "\n        UNION".join(branches)
    statement = f"""SELECT {_PROJECTION}
    FROM certificate c, LATERAL ({lateral}
    ) identities
    WHERE c.ID BETWEEN $1 AND $2
        AND identities.VALUE ILIKE $3"""

    if config.unexpired_only:
        statement += """
        AND x509_notAfter(c.CERTIFICATE) > now() AT TIME ZONE 'UTC'"""
    if config.deduplicate:
        statement += _DEDUPLICATE_CLAUSE
    if config.unique_results_only:
        statement += f"""
    GROUP BY {_PROJECTION}"""
    if config.ordered_output:
        statement += f"""
    ORDER BY {_PROJECTION}"""

    return statement


def render_statement(config: SearchConfig) -> str:
    """Текст запроса для --show-sql: с завершающей точкой с запятой, без обращения к БД."""

    return build_statement(config) + ";"
