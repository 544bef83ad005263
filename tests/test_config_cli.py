import asyncio
import json
import logging

import polars as pl
import pytest

from catalogcrawl import cli
from catalogcrawl.config import Config, load_config
from catalogcrawl.errors import ConfigError
from catalogcrawl.storage import Store
from tests.pages import seed_target


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def write_config(tmp_path, **values):
    path = tmp_path / "crawl.json"
    path.write_text(json.dumps(values))
    return str(path)


# =============================================================================
# CONFIG
# =============================================================================

def test_defaults():
    cfg = Config()
    assert cfg.retry_count == 3
    assert cfg.detail_concurrency == 20
    assert cfg.throttle_cooldown == cfg.chunk_delay * 2
    assert cfg.item_url("https://example.test/en/serie-1/x/", 7) == \
        "https://example.test/en/serie-1/x/chapter-7?default=true"
    assert cfg.list_page_url(3).endswith("page=3")


def test_file_then_overrides(tmp_path):
    path = write_config(tmp_path, retry_count=5, chunk_delay="0.5", data_dir="from-file")
    cfg = load_config(path, data_dir="from-flag", log_level=None)
    assert cfg.retry_count == 5
    assert cfg.chunk_delay == 0.5
    assert cfg.data_dir == "from-flag"
    assert cfg.log_level == "INFO"


def test_unknown_key_rejected(tmp_path):
    with pytest.raises(ConfigError, match="bogus"):
        load_config(write_config(tmp_path, bogus=1))


def test_unreadable_file(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(str(bad))


def test_invalid_thresholds(tmp_path):
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path, low_water=90))
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path, min_concurrency=0))


def test_environment_credentials(monkeypatch):
    monkeypatch.setenv("CATALOGCRAWL_TELEGRAM_TOKEN", "abc:123")
    monkeypatch.setenv("CATALOGCRAWL_TELEGRAM_CHAT_ID", "42")
    cfg = load_config()
    assert cfg.telegram_token == "abc:123"
    assert cfg.telegram_chat_id == "42"


# =============================================================================
# CLI
# =============================================================================

def test_bad_config_exits_with_usage_error(tmp_path, capsys):
    code = cli.main(["--config", write_config(tmp_path, nope=True), "report"])
    assert code == cli.EXIT_USAGE
    assert "nope" in capsys.readouterr().err


def test_report_without_history(tmp_path, capsys):
    code = cli.main(["--data-dir", str(tmp_path / "data"), "report"])
    assert code == cli.EXIT_OK
    assert "No statistics available" in capsys.readouterr().out


def test_export_csv(tmp_path):
    data_dir = tmp_path / "data"
    store = Store(data_dir)
    store.ensure()
    seed_target(store, "serie-1", "https://example.test/en/serie-1/a", total=3, scraped=3, files=[1, 2, 3])
    seed_target(store, "serie-2", "https://example.test/en/serie-2/b", total=4, scraped=1, files=[1])

    out = tmp_path / "out" / "progress.csv"
    code = cli.main(["--data-dir", str(data_dir), "export", "--output", str(out)])

    assert code == cli.EXIT_OK
    df = pl.read_csv(out)
    assert df["slug"].to_list() == ["serie-1", "serie-2"]
    assert df["complete"].to_list() == [True, False]
    assert df["files"].to_list() == [3, 1]


def test_export_parquet_by_flag(tmp_path):
    data_dir = tmp_path / "data"
    Store(data_dir).ensure()
    out = tmp_path / "progress.bin"
    assert cli.main(["--data-dir", str(data_dir), "export", "--output", str(out), "--format", "parquet"]) == 0
    df = pl.read_parquet(out)
    assert df.height == 0
    assert "scraped" in df.columns


def test_subcommand_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_verify_arguments():
    args = cli.build_parser().parse_args(["--no-progress", "verify", "serie-9", "--repair"])
    assert (args.command, args.slug, args.repair, args.no_progress) == ("verify", "serie-9", True, True)


def test_cancel_after_grace_exits_cleanly(tmp_path, monkeypatch):
    async def cancelled(args, cfg):
        raise asyncio.CancelledError()

    monkeypatch.setattr(cli, "run_command", cancelled)
    assert cli.main(["--data-dir", str(tmp_path / "data"), "once"]) == cli.EXIT_OK
