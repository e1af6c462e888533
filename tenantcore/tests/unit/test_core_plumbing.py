from __future__ import annotations

import json
import logging
import sys

import pytest
import structlog

from scripts import generate_permission_codes
from tenantcore.authz.catalog import load_catalog, render_permission_codes_module
from tenantcore.core.config import Settings
from tenantcore.core.logging import build_formatter, configure_logging
from tenantcore.persistence.db import engine_kwargs, pool_stats


def test_sqlite_engines_skip_pool_sizing() -> None:
    settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///:memory:")

    assert engine_kwargs(settings) == {"pool_pre_ping": True}


def test_postgres_engines_get_bounded_pools() -> None:
    settings = Settings(
        _env_file=None,
        database_url="postgresql+asyncpg://localhost/app",
        db_pool_size=0,
        db_max_overflow=-3,
    )

    kwargs = engine_kwargs(settings)

    assert kwargs["pool_size"] == 1
    assert kwargs["max_overflow"] == 0
    assert kwargs["pool_timeout"] >= 1


@pytest.mark.asyncio
async def test_pool_stats_reports_counters(engine) -> None:
    stats = pool_stats(engine)

    assert set(stats) == {"size", "checked_out", "checked_in", "overflow"}


def test_json_output_renders_stdlib_records_as_one_object() -> None:
    record = logging.LogRecord("tenantcore.test", logging.INFO, __file__, 1, "event=%s", ("created",), None)

    line = build_formatter(json_output=True).format(record)
    payload = json.loads(line)

    assert "\n" not in line
    assert payload["event"] == "event=created"
    assert payload["level"] == "info"
    assert payload["logger"] == "tenantcore.test"
    assert "timestamp" in payload


def test_plain_output_keeps_key_value_message() -> None:
    record = logging.LogRecord("tenantcore.test", logging.WARNING, __file__, 1, "tenant_id=%s", ("t-1",), None)

    line = build_formatter(json_output=False).format(record)

    assert "tenant_id=t-1" in line
    assert "warning" in line


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging("debug", json_output=True)
        configure_logging("warning", json_output=False)
        handlers = [h for h in root.handlers if h.get_name() == "tenantcore"]
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert root.level == logging.WARNING
    finally:
        for handler in [h for h in root.handlers if h.get_name() == "tenantcore"]:
            root.removeHandler(handler)
        root.setLevel(previous_level)


def test_permission_codes_check_detects_stale_module(tmp_path, monkeypatch, capsys) -> None:
    output = tmp_path / "permission_codes.py"
    output.write_text("# stale\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["generate_permission_codes", "--output", str(output), "--check"])

    assert generate_permission_codes.main() == 1
    assert "permission_codes_stale" in capsys.readouterr().out

    monkeypatch.setattr(sys, "argv", ["generate_permission_codes", "--output", str(output)])
    assert generate_permission_codes.main() == 0
    assert output.read_text(encoding="utf-8") == render_permission_codes_module(load_catalog())

    monkeypatch.setattr(sys, "argv", ["generate_permission_codes", "--output", str(output), "--check"])
    assert generate_permission_codes.main() == 0


@pytest.mark.parametrize("level", ["INFO", "info"])
def test_configure_logging_accepts_any_case(level) -> None:
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging(level)
        assert root.level == logging.INFO
    finally:
        for handler in [h for h in root.handlers if h.get_name() == "tenantcore"]:
            root.removeHandler(handler)
        root.setLevel(previous_level)
