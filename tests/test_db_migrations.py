import sqlite3


def test_apply_migrations_creates_expected_tables(tmp_path):
    from db_migrations import apply_migrations, get_migration_status

    db = tmp_path / "fresh.db"
    conn = sqlite3.connect(str(db))
    try:
        applied = apply_migrations(conn)
        assert applied >= 1
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        for table in (
            "audiobooks",
            "requests",
            "download_history",
            "download_candidates",
            "configuration",
            "jobs",
            "activity_log",
            "schema_migrations",
        ):
            assert table in tables
        status = get_migration_status(conn)
        assert len(status) >= 6
    finally:
        conn.close()


def test_apply_migrations_is_idempotent(tmp_path):
    from db_migrations import apply_migrations

    conn = sqlite3.connect(str(tmp_path / "twice.db"))
    try:
        assert apply_migrations(conn) >= 1
        assert apply_migrations(conn) == 0
    finally:
        conn.close()


def test_apply_migrations_upgrades_legacy_requests_table(tmp_path):
    from db_migrations import apply_migrations

    db = tmp_path / "legacy.db"
    conn = sqlite3.connect(str(db))
    try:
        conn.execute(
            "CREATE TABLE requests (id TEXT PRIMARY KEY, audiobook_id TEXT, status TEXT NOT NULL)"
        )
        conn.commit()
        apply_migrations(conn)
        cols = [r[1] for r in conn.execute("PRAGMA table_info(requests)").fetchall()]
        assert "type" in cols
        assert "parent_request_id" in cols
    finally:
        conn.close()
