"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1


def init_schema(conn: sqlite3.Connection):
    """
    Applies the core schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Content Store
        # Attachments are the media files; content items are the pages that use them
        conn.execute("""
        CREATE TABLE IF NOT EXISTS attachments (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            title           TEXT NOT NULL DEFAULT '',
            file_path       TEXT NOT NULL,        -- Relative to the upload directory
            mime_type       TEXT NOT NULL DEFAULT '',
            status          TEXT NOT NULL DEFAULT 'active',
            created_at      TEXT NOT NULL,
            width           INTEGER,
            height          INTEGER,
            folder          TEXT
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS content_items (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            content_type        TEXT NOT NULL DEFAULT 'post',
            status              TEXT NOT NULL DEFAULT 'publish',
            title               TEXT NOT NULL DEFAULT '',
            body                TEXT NOT NULL DEFAULT '',
            featured_image_id   INTEGER
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS content_meta (
            content_id      INTEGER NOT NULL,
            meta_key        TEXT NOT NULL,
            meta_value      TEXT,
            PRIMARY KEY (content_id, meta_key),
            FOREIGN KEY(content_id) REFERENCES content_items(id) ON DELETE CASCADE
        );
        """)

        # Site-wide values (site icon, logo, widgets, settings), JSON encoded
        conn.execute("""
        CREATE TABLE IF NOT EXISTS options (
            name            TEXT PRIMARY KEY,
            value           TEXT
        );
        """)

        # 3. Attachment Annotations (typed side-tables)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS attachment_hashes (
            attachment_id   INTEGER PRIMARY KEY,
            digest          TEXT NOT NULL,
            algorithm       TEXT NOT NULL,
            computed_at     TEXT NOT NULL,
            FOREIGN KEY(attachment_id) REFERENCES attachments(id) ON DELETE CASCADE
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS attachment_flags (
            attachment_id   INTEGER PRIMARY KEY,
            flagged_at      TEXT NOT NULL,
            FOREIGN KEY(attachment_id) REFERENCES attachments(id) ON DELETE CASCADE
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS duplicate_primary (
            attachment_id   INTEGER PRIMARY KEY,
            marked_at       TEXT NOT NULL,
            FOREIGN KEY(attachment_id) REFERENCES attachments(id) ON DELETE CASCADE
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS attachment_trash (
            attachment_id   INTEGER PRIMARY KEY,
            previous_status TEXT NOT NULL,
            trashed_at      TEXT NOT NULL,
            FOREIGN KEY(attachment_id) REFERENCES attachments(id) ON DELETE CASCADE
        );
        """)

        # 4. Reference Index
        # No foreign key: references survive until the next rebuild
        conn.execute("""
        CREATE TABLE IF NOT EXISTS media_references (
            attachment_id   INTEGER NOT NULL,
            source_type     TEXT NOT NULL,
            source_id       INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (attachment_id, source_type, source_id)
        );
        """)

        # 5. Scan State
        conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_progress (
            id              INTEGER PRIMARY KEY CHECK (id = 1),
            status          TEXT NOT NULL,
            phase           TEXT NOT NULL DEFAULT '',
            total           INTEGER NOT NULL DEFAULT 0,
            processed       INTEGER NOT NULL DEFAULT 0,
            started_at      TEXT,
            completed_at    TEXT,
            types           TEXT NOT NULL DEFAULT '[]',
            cursor_offset   INTEGER NOT NULL DEFAULT 0,
            batch_size      INTEGER NOT NULL DEFAULT 100
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_results (
            issue_type      TEXT NOT NULL,
            attachment_id   INTEGER NOT NULL,
            payload         TEXT NOT NULL,
            PRIMARY KEY (issue_type, attachment_id)
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_tasks (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            handler         TEXT NOT NULL,
            args            TEXT NOT NULL DEFAULT '{}',
            run_at          REAL NOT NULL,
            attempts        INTEGER NOT NULL DEFAULT 0,
            status          TEXT NOT NULL DEFAULT 'pending',
            last_error      TEXT
        );
        """)

        # 6. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_attachments_status ON attachments(status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_attachments_file_path ON attachments(file_path);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_content_status ON content_items(status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_hashes_digest ON attachment_hashes(digest, algorithm);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_references_source ON media_references(source_type, source_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due ON scan_tasks(status, run_at);")

    logging.debug("Database schema initialized.")
