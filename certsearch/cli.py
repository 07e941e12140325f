from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .backend import BackendError, CertificateBackend
from .cancel import CancelToken, install_signal_handlers
from .query_builder import (
    LIVE_EDGE,
    MAX_BATCH_SIZE,
    MAX_RECORD_ID,
    ConfigError,
    build_search_config,
    build_statement,
    render_statement,
)
from .scan_loop import ScanState, build_scan_limits, run_scan
from .settings import configure_logging, load_settings
from .settings.loader import LOG_FORMATS, LOG_LEVELS

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certsearch",
        description="Поиск сертификатов crt.sh по Subject/SAN последовательными диапазонами ID.",
    )
    parser.add_argument("-q", "--query", default="%", help="Шаблон поиска (%% = любая строка, _: один символ).")
    parser.add_argument("--start-id", type=int, default=LIVE_EDGE, help="ID, с которого начать (-1 = с max(ID)+1).")
    parser.add_argument("--end-id", type=int, default=MAX_RECORD_ID, help="Последний ID для сканирования (включительно).")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Сколько ID обрабатывать за один запрос (максимум {MAX_BATCH_SIZE}).",
    )
    parser.add_argument("--subject-type", default="NONE", help="NONE, ANY или OID атрибута Subject (например, 2.5.4.3).")
    parser.add_argument("--san-type", default="dNSName", help="NONE, ANY, rfc822Name, dNSName или iPAddress.")
    parser.add_argument("--unexpired-only", action="store_true", help="Пропускать истёкшие сертификаты.")
    parser.add_argument(
        "--deduplicate",
        action="store_true",
        help="Только первая запись для пары (пре)сертификат/сертификат (примерно в 4 раза медленнее).",
    )
    parser.add_argument("--uniq", action="store_true", help="Убрать дубликаты (GROUP BY по результату).")
    parser.add_argument("--sort", action="store_true", help="Сортировать результаты внутри батча.")
    parser.add_argument("--show-sql", action="store_true", help="Показать SQL-запрос и выйти.")
    parser.add_argument("--config", default=None, help="Путь к YAML-конфигу (иначе APP_CONFIG_PATH).")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=None, help="Уровень логов (иначе LOG_LEVEL).")
    parser.add_argument("--log-format", choices=LOG_FORMATS, default=None, help="Формат логов (иначе LOG_FORMAT).")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"certsearch: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(
        args.log_level or settings.runtime.log_level,
        args.log_format or settings.runtime.log_format,
    )

    try:
        search = build_search_config(
            args.query,
            args.subject_type,
            args.san_type,
            unexpired_only=args.unexpired_only,
            deduplicate=args.deduplicate,
            uniq=args.uniq,
            sort=args.sort,
        )
        limits = build_scan_limits(
            start_id=args.start_id,
            end_id=args.end_id,
            batch_size=args.batch_size if args.batch_size is not None else settings.app.batch_size,
            poll_interval_s=settings.app.poll_interval_s,
        )
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        print(f"certsearch: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    if args.show_sql:
        print(render_statement(search))
        return EXIT_OK

    statement = build_statement(search)
    token = CancelToken()
    install_signal_handlers(token)

    try:
        backend = CertificateBackend(settings.runtime.database_url, connect_timeout_s=settings.app.connect_timeout_s)
    except BackendError as exc:
        logger.error("Could not connect to database: %s", exc)
        return EXIT_FAILED

    with backend:
        report = run_scan(backend, statement, search.pattern, limits, token)

    logger.info(
        "Scan finished: state=%s last=%s batches=%s matches=%s",
        report.state.value,
        report.last_processed_id,
        report.batches,
        report.matches,
    )
    return EXIT_FAILED if report.state is ScanState.FAILED else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
