from nebularnews.cli import main
from nebularnews.manual_pull import get_pull_status
from nebularnews.storage import init_db, list_feeds


def _db(tmp_path):
    return str(tmp_path / "cli.sqlite3")


def test_feeds_import_and_list(tmp_path):
    listing = tmp_path / "feeds.yml"
    listing.write_text(
        "feeds:\n"
        "  - https://a.example.com/rss\n"
        "  - url: https://b.example.com/atom\n"
        "    disabled: true\n",
        encoding="utf-8",
    )

    assert main(["--db", _db(tmp_path), "feeds", "list"]) == 1
    assert main(["--db", _db(tmp_path), "feeds", "import", str(listing)]) == 0
    assert main(["--db", _db(tmp_path), "feeds", "list"]) == 0

    conn = init_db(_db(tmp_path))
    feeds = {feed.url: feed for feed in list_feeds(conn)}
    assert sorted(feeds) == ["https://a.example.com/rss", "https://b.example.com/atom"]
    assert feeds["https://b.example.com/atom"].disabled
    conn.close()


def test_feeds_add_rejects_relative_url(tmp_path):
    assert main(["--db", _db(tmp_path), "feeds", "add", "/feed.xml"]) == 1


def test_pull_queue_only_is_single_flight(tmp_path):
    assert main(["--db", _db(tmp_path), "pull", "start", "--queue-only"]) == 0
    assert main(["--db", _db(tmp_path), "pull", "start", "--queue-only"]) == 1
    assert main(["--db", _db(tmp_path), "pull", "status"]) == 0

    conn = init_db(_db(tmp_path))
    status = get_pull_status(conn)
    assert status["status"] == "queued"
    assert status["trigger"] == "cli"
    conn.close()


def test_job_commands_report_missing_jobs(tmp_path):
    assert main(["--db", _db(tmp_path), "jobs", "cancel", "job_missing"]) == 1
    assert main(["--db", _db(tmp_path), "jobs", "counts"]) == 0
    assert main(["--db", _db(tmp_path), "jobs", "clear-finished"]) == 0


def test_maintenance_commands(tmp_path):
    assert main(["--db", _db(tmp_path), "db", "migrate"]) == 0
    assert main(["--db", _db(tmp_path), "orphans", "--dry-run"]) == 0
    assert main(["--db", _db(tmp_path), "retention"]) == 0
