import copy

import pytest

from nebularnews.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_feeds_file,
    load_runtime_config,
    set_runtime_config,
    update_runtime_config,
)


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["retention"]["days"] = 30
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["retention"]["days"] == 30
    assert load_runtime_config(conn).retention.days == 30


def test_set_runtime_config_rejects_invalid(conn):
    invalid = {"ingest": {"initial_lookback_days": 45}}
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, invalid)
    assert "Invalid config.runtime" in str(excinfo.value)


def test_wrong_types_and_modes_are_reported(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["jobs"]["auto_queue_today"] = "yes"
    custom["pull"]["max_cycles"] = True
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, custom)
    message = str(excinfo.value)
    assert "config.runtime.jobs.auto_queue_today must be a boolean" in message
    assert "config.runtime.pull.max_cycles must be an integer" in message

    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["retention"]["mode"] = "shred"
    with pytest.raises(ConfigError):
        set_runtime_config(conn, custom)


def test_values_are_clamped_when_built(conn):
    config = update_runtime_config(
        conn, "pull", max_cycles=50, slice_budget_ms=100, default_cycles=0
    )
    assert config.pull.max_cycles == 10
    assert config.pull.slice_budget_ms == 2000
    assert config.pull.default_cycles == 1
    assert get_runtime_config(conn)["pull"]["max_cycles"] == 50


def test_update_unknown_section(conn):
    with pytest.raises(ConfigError):
        update_runtime_config(conn, "nope", value=1)


def test_load_feeds_file_accepts_both_shapes(tmp_path):
    listing = tmp_path / "feeds.yml"
    listing.write_text(
        "feeds:\n"
        "  - https://a.example.com/rss\n"
        "  - url: https://b.example.com/atom\n"
        "    title: B News\n"
        "    disabled: true\n",
        encoding="utf-8",
    )
    bare = tmp_path / "bare.yml"
    bare.write_text("- https://c.example.com/feed\n", encoding="utf-8")

    assert load_feeds_file(str(listing)) == [
        {"url": "https://a.example.com/rss", "title": None, "disabled": False},
        {"url": "https://b.example.com/atom", "title": "B News", "disabled": True},
    ]
    assert load_feeds_file(str(bare))[0]["url"] == "https://c.example.com/feed"


def test_load_feeds_file_errors(tmp_path):
    missing_url = tmp_path / "bad.yml"
    missing_url.write_text("feeds:\n  - title: no url\n", encoding="utf-8")
    broken = tmp_path / "broken.yml"
    broken.write_text("feeds: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_feeds_file(str(missing_url))
    with pytest.raises(ConfigError):
        load_feeds_file(str(broken))
    with pytest.raises(ConfigError):
        load_feeds_file(str(tmp_path / "absent.yml"))
