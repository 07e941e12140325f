from datetime import datetime

import pytest

import certsearch.cli as cli


class FakeBackend:
    """Подмена CertificateBackend: фиксированный max(ID) и строки батча."""

    instances: list["FakeBackend"] = []
    rows: list = []

    def __init__(self, database_url, *, connect_timeout_s=10) -> None:
        self.database_url = database_url
        self.queries = []
        self.closed = False
        FakeBackend.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True

    def query_max_id(self) -> int:
        return 1_000

    def query_rows(self, statement, first_id, last_id, pattern):
        self.queries.append((first_id, last_id, pattern))
        return list(FakeBackend.rows)


@pytest.fixture(autouse=True)
def _isolate(monkeypatch):
    # Не трогаем глобальное логирование и обработчики сигналов процесса pytest.
    for name in ("DATABASE_URL", "LOG_LEVEL", "LOG_FORMAT", "APP_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(cli, "install_signal_handlers", lambda token: [])
    monkeypatch.setattr(cli, "CertificateBackend", FakeBackend)
    FakeBackend.instances = []
    FakeBackend.rows = []


def test_show_sql_prints_statement_without_connecting(capsys) -> None:
    code = cli.main(["--show-sql", "--subject-type", "2.5.4.3", "--san-type", "NONE", "-q", "%.example.com"])

    out = capsys.readouterr().out
    assert code == cli.EXIT_OK
    assert out.strip().endswith(";")
    assert "ATTRIBUTE_OID = '2.5.4.3'" in out
    assert "example.com" not in out
    assert FakeBackend.instances == []


def test_invalid_configuration_exits_with_config_code(capsys) -> None:
    code = cli.main(["--subject-type", "NONE", "--san-type", "NONE"])
    assert code == cli.EXIT_CONFIG
    assert "cannot both be NONE" in capsys.readouterr().err


def test_batch_size_over_cap_is_rejected() -> None:
    assert cli.main(["--batch-size", "100001"]) == cli.EXIT_CONFIG
    assert FakeBackend.instances == []


def test_bounded_scan_runs_and_closes_backend() -> None:
    FakeBackend.rows = [(100, "www.example.com", datetime(2030, 1, 1))]

    code = cli.main(["--start-id", "100", "--end-id", "100", "-q", "%.example.com"])

    assert code == cli.EXIT_OK
    backend = FakeBackend.instances[0]
    assert backend.queries == [(100, 100, "%.example.com")]
    assert backend.closed is True


def test_decode_failure_exits_non_zero() -> None:
    FakeBackend.rows = [("not-an-id",)]
    assert cli.main(["--start-id", "0", "--end-id", "10"]) == cli.EXIT_FAILED


def test_connection_failure_exits_non_zero(monkeypatch) -> None:
    def _refuse(*args, **kwargs):
        raise cli.BackendError("connection refused")

    monkeypatch.setattr(cli, "CertificateBackend", _refuse)
    assert cli.main(["--start-id", "0", "--end-id", "10"]) == cli.EXIT_FAILED


def test_missing_config_file_exits_with_config_code(tmp_path) -> None:
    assert cli.main(["--config", str(tmp_path / "missing.yaml")]) == cli.EXIT_CONFIG


def test_malformed_config_file_exits_with_config_code(tmp_path, capsys) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("scan: [unclosed\n", encoding="utf-8")

    code = cli.main(["--config", str(path), "--show-sql"])

    assert code == cli.EXIT_CONFIG
    assert "configuration error" in capsys.readouterr().err


def test_malformed_database_url_exits_non_zero(monkeypatch) -> None:
    pytest.importorskip("sqlalchemy")
    from certsearch.backend import CertificateBackend

    monkeypatch.setattr(cli, "CertificateBackend", CertificateBackend)
    monkeypatch.setenv("DATABASE_URL", "not a url")

    assert cli.main(["--start-id", "0", "--end-id", "10"]) == cli.EXIT_FAILED
