import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
          key TEXT PRIMARY KEY,
          value TEXT,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    # AUTOINCREMENT keeps local ids from being reused after deletion.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS snippets (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          title TEXT NOT NULL,
          content TEXT NOT NULL,
          language TEXT NOT NULL,
          description TEXT,
          tags TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS clipboard_history (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          content TEXT NOT NULL,
          source TEXT NOT NULL,
          category TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS files (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          filename TEXT NOT NULL,
          file_type TEXT NOT NULL,
          mime_type TEXT,
          size INTEGER DEFAULT 0,
          sha256 TEXT,
          storage_path TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_links (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          entity_kind TEXT NOT NULL,
          local_id INTEGER NOT NULL,
          remote_local_id INTEGER NOT NULL,
          remote_id TEXT,
          linked_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          UNIQUE(entity_kind, local_id),
          UNIQUE(entity_kind, remote_local_id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS tombstones (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          entity_kind TEXT NOT NULL,
          local_id INTEGER NOT NULL,
          remote_local_id INTEGER NOT NULL,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          UNIQUE(entity_kind, remote_local_id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_type TEXT,
          user_identity TEXT,
          status TEXT,
          started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          finished_at DATETIME,
          summary_json TEXT
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_title ON snippets(title)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_language ON snippets(language)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_clipboard_created ON clipboard_history(created_at DESC)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_links_kind ON sync_links(entity_kind)")

    conn.commit()
    conn.close()
