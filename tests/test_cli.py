import json
import pytest
from media_cleanup.core import MediaCleanupApp
from media_cleanup.main import main, format_size, parse_id_list

@pytest.fixture
def cli(tmp_path, upload_dir):
    """Runs the CLI against a throwaway database and upload directory."""
    db_path = tmp_path / "cleanup.db"

    def run(*args):
        return main(["--db", str(db_path), "--upload-dir", str(upload_dir), *args])

    run.db_path = db_path
    return run

@pytest.fixture
def populated(upload_dir):
    (upload_dir / "2025/01").mkdir(parents=True)
    (upload_dir / "2025/01/a.jpg").write_bytes(b"same")
    (upload_dir / "2025/01/b.jpg").write_bytes(b"same")
    (upload_dir / "2025/01/c.pdf").write_bytes(b"unique")
    # Generated size variant, not an attachment of its own
    (upload_dir / "2025/01/a-150x150.jpg").write_bytes(b"thumb")
    return upload_dir

def test_import_then_scan(cli, populated, capsys):
    assert cli("import") == 0
    assert "Imported 3 new attachment(s)." in capsys.readouterr().out

    # Importing again finds nothing new
    assert cli("import") == 0
    assert "Imported 0 new attachment(s)." in capsys.readouterr().out

    assert cli("scan", "--types", "unused,duplicate", "--batch-size", "2") == 0
    capsys.readouterr()

    assert cli("stats", "--format", "json") == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats == {
        "total_media": 3,
        "unused_count": 3,
        "duplicate_count": 2,
        "oversized_count": 0,
        "duplicate_groups": 1,
        "flagged_count": 0,
    }

def test_scan_rejects_unknown_type(cli, populated):
    cli("import")
    assert cli("scan", "--types", "unused,bogus") == 1

def test_async_scan_and_worker(cli, populated, capsys):
    cli("import")
    assert cli("scan", "--async", "--types", "unused") == 0
    assert "Scan queued" in capsys.readouterr().out

    # A second start is refused while the first is queued
    assert cli("scan", "--async") == 1

    assert cli("worker", "--once", "--poll", "0") == 0
    cli("status")
    out = capsys.readouterr().out
    assert "complete" in out

def test_list_and_csv(cli, populated, capsys, tmp_path):
    cli("import")
    cli("scan")
    capsys.readouterr()

    assert cli("list", "--type", "unused", "--format", "json") == 0
    page = json.loads(capsys.readouterr().out)
    assert page["total"] == 3
    assert {i["filename"] for i in page["items"]} == {"a.jpg", "b.jpg", "c.pdf"}

    csv_path = tmp_path / "out.csv"
    assert cli("list", "--type", "duplicate", "--csv", str(csv_path)) == 0
    assert csv_path.read_text(encoding="utf-8").count("\n") == 3

def test_trash_by_type_and_restore(cli, populated, capsys):
    cli("import")
    cli("scan", "--types", "unused")
    capsys.readouterr()

    assert cli("trash", "--type", "unused", "--yes") == 0
    assert "trash: 3 succeeded, 0 failed" in capsys.readouterr().out

    cli("list", "--type", "trash", "--format", "json")
    assert json.loads(capsys.readouterr().out)["total"] == 3

    assert cli("restore", "1", "2") == 0
    assert "restore: 2 succeeded" in capsys.readouterr().out

def test_bulk_action_needs_target(cli, populated):
    cli("import")
    assert cli("delete", "--yes") == 1

def test_bulk_action_prompt_declined(cli, populated, monkeypatch, capsys):
    cli("import")
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert cli("delete", "--ids", "1") == 1
    assert "Aborted." in capsys.readouterr().out
    assert (populated / "2025/01/a.jpg").exists()

def test_delete_removes_variants(cli, populated):
    cli("import")
    assert cli("delete", "--ids", "1", "--yes") == 0
    assert not (populated / "2025/01/a.jpg").exists()
    assert not (populated / "2025/01/a-150x150.jpg").exists()
    assert (populated / "2025/01/b.jpg").exists()

def test_set_primary_from_scan_results(cli, populated, capsys):
    cli("import")
    cli("scan", "--types", "duplicate")
    capsys.readouterr()

    assert cli("set-primary", "2") == 0
    assert "Attachment 2 is now primary" in capsys.readouterr().out

    with MediaCleanupApp(cli.db_path, populated) as app:
        findings = app.orchestrator.get_results("duplicate")["duplicate"]
        assert findings[2].is_primary and not findings[1].is_primary

def test_show_unknown_attachment_fails(cli, populated):
    assert cli("show", "99") == 1

def test_settings_set(cli, capsys):
    assert cli("settings", "--set", "scan_batch_size=50", "--set", "archive_folder_name=Old") == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["scan_batch_size"] == 50
    assert shown["archive_folder_name"] == "Old"

    assert cli("settings", "--set", "scan_batch_size=0") == 1
    assert cli("settings", "--set", "missing-equals") == 1

def test_helpers():
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
    assert parse_id_list("1, 2,,-3") == [1, 2, 3]

def test_status_reads_committed_state(cli, populated, upload_dir):
    cli("import")
    cli("scan", "--async")

    with MediaCleanupApp(cli.db_path, upload_dir) as app:
        # Uncommitted writes on the main connection stay invisible to status()
        app.conn.execute("UPDATE scan_progress SET processed = 999")
        assert app.status()['processed'] == 0
        app.conn.rollback()

def test_bulk_delete_by_duplicate_type_keeps_primary(cli, populated, capsys):
    cli("import")
    cli("scan", "--types", "duplicate")
    capsys.readouterr()

    with MediaCleanupApp(cli.db_path, populated) as app:
        findings = app.orchestrator.get_results("duplicate")["duplicate"]
        primary = next(i for i, f in findings.items() if f.is_primary)

    assert cli("delete", "--type", "duplicate", "--yes") == 0
    assert "delete: 1 succeeded, 0 failed" in capsys.readouterr().out

    with MediaCleanupApp(cli.db_path, populated) as app:
        assert app.db.count_attachments() == 2
        survivor = app.db.get_attachment(primary)
    assert (populated / survivor.file_path).exists()
