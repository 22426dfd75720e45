# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import re, sqlite3, threading
from typing import List, Optional

# channel and role mappings share one row shape
MAPPING_TABLES = {
    "channel": "channel_mappings",
    "role": "role_mappings",
}

_MAPPING_SQL = """
CREATE TABLE {table} (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    original_guild_id   INTEGER NOT NULL,
    original_id         INTEGER,
    original_name       TEXT    NOT NULL,
    cloned_id           INTEGER,
    cloned_guild_id     INTEGER,
    category_name       TEXT,
    entity_type         INTEGER NOT NULL DEFAULT 0,
    active              INTEGER NOT NULL DEFAULT 1,
    manually_deleted    INTEGER NOT NULL DEFAULT 0,
    deleted_at          INTEGER,
    deleted_reason      TEXT,
    last_updated        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

_MAPPING_COLUMNS = {
    "id",
    "original_guild_id",
    "original_id",
    "original_name",
    "cloned_id",
    "cloned_guild_id",
    "category_name",
    "entity_type",
    "active",
    "manually_deleted",
    "deleted_at",
    "deleted_reason",
    "last_updated",
}


class DBManager:
    def __init__(self, db_path: str):
        self.path = db_path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA foreign_keys = ON;")
        self.conn.execute("PRAGMA journal_mode = DELETE;")
        self.conn.execute("PRAGMA synchronous = FULL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """
        Creates the tables used by the mirror engine and migrates older mapping
        tables in place.
        """
        c = self.conn.cursor()

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS app_config(
        key           TEXT PRIMARY KEY,
        value         TEXT NOT NULL DEFAULT '',
        last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS guild_pairs (
            original_guild_id  INTEGER NOT NULL,
            cloned_guild_id    INTEGER NOT NULL,
            enabled            INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (original_guild_id, cloned_guild_id)
        );
        """
        )

        for kind, table in MAPPING_TABLES.items():
            self._ensure_table(
                name=table,
                create_sql_template=_MAPPING_SQL,
                required_columns=_MAPPING_COLUMNS,
                copy_map={
                    "original_guild_id": "COALESCE(original_guild_id, 0)",
                    "original_id": f"original_{kind}_id",
                    "original_name": f"COALESCE(original_{kind}_name, '')",
                    "cloned_id": f"cloned_{kind}_id",
                    "entity_type": "0",
                },
                post_sql=[
                    f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_orig "
                    f"ON {table}(original_guild_id, original_id);",
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_name "
                    f"ON {table}(original_guild_id, original_name);",
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_cloned "
                    f"ON {table}(cloned_id);",
                ],
            )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS access_failures (
            original_guild_id    INTEGER NOT NULL,
            original_channel_id  INTEGER NOT NULL,
            channel_name         TEXT,
            failed_attempts      INTEGER NOT NULL DEFAULT 0,
            last_failed_at       REAL,
            blacklisted_until    REAL,
            PRIMARY KEY (original_guild_id, original_channel_id)
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS category_suppressions (
            original_guild_id  INTEGER NOT NULL,
            name               TEXT    NOT NULL,
            deleted_at         INTEGER NOT NULL DEFAULT (strftime('%s','now')),
            PRIMARY KEY (original_guild_id, name)
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS messages (
            original_guild_id    INTEGER NOT NULL,
            original_channel_id  INTEGER NOT NULL,
            original_message_id  INTEGER PRIMARY KEY,
            cloned_guild_id      INTEGER,
            cloned_channel_id    INTEGER,
            cloned_message_id    INTEGER,
            created_at           INTEGER NOT NULL DEFAULT (strftime('%s','now'))
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_clone_msg ON messages(cloned_message_id);"
        )
        self.conn.commit()

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (name,),
        ).fetchone()
        return row is not None

    def _table_columns(self, name: str) -> set[str]:
        return {
            r[1] for r in self.conn.execute(f"PRAGMA table_info({name})").fetchall()
        }

    def _ensure_table(
        self,
        *,
        name: str,
        create_sql_template: str,
        required_columns: set[str],
        copy_map: dict[str, str],
        post_sql: list[str] | None = None,
    ):
        """
        Create or rebuild table `name` to match the target schema.

        - If table missing -> CREATE and run post_sql.
        - If table exists and has all required columns -> run post_sql and return.
        - Else rebuild inside a transaction, copying whatever legacy columns exist.
          Bare identifiers in `copy_map` that the old table lacks become NULL.
        """
        post_sql = post_sql or []

        if not self._table_exists(name):
            self.conn.execute(create_sql_template.format(table=name))
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        existing_cols = self._table_columns(name)
        if required_columns.issubset(existing_cols):
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        temp = f"_{name}_new"
        prev_fk = self.conn.execute("PRAGMA foreign_keys").fetchone()[0]
        self.conn.execute("PRAGMA foreign_keys = OFF;")
        if self.conn.in_transaction:
            self.conn.commit()
        try:
            self.conn.execute("BEGIN;")
            self.conn.execute(create_sql_template.format(table=temp))

            new_cols = list(copy_map.keys())
            select_exprs = []
            for new_col in new_cols:
                expr = copy_map[new_col].strip()
                if expr.isidentifier() and expr not in existing_cols:
                    expr = "NULL"
                else:
                    # COALESCE(col, x) over a missing column falls back to x
                    for col in _identifiers(expr) - existing_cols:
                        expr = expr.replace(f"{col},", "NULL,")
                select_exprs.append(expr)

            self.conn.execute(
                f"INSERT INTO {temp} ({', '.join(new_cols)}) "
                f"SELECT {', '.join(select_exprs)} FROM {name}"
            )
            self.conn.execute(f"DROP TABLE {name};")
            self.conn.execute(f"ALTER TABLE {temp} RENAME TO {name};")
            for stmt in post_sql:
                self.conn.execute(stmt)
            self.conn.execute("COMMIT;")
        except Exception:
            self.conn.execute("ROLLBACK;")
            raise
        finally:
            self.conn.execute(f"PRAGMA foreign_keys = {1 if prev_fk else 0};")

    # ------------------------------------------------------------------ config
    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
                "last_updated=CURRENT_TIMESTAMP",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key=?", (key,)
        ).fetchone()
        return row["value"] if row else default

    # ------------------------------------------------------------- guild pairs
    def upsert_guild_pair(
        self, original_guild_id: int, cloned_guild_id: int, enabled: bool = True
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO guild_pairs (original_guild_id, cloned_guild_id, enabled)
                VALUES (?, ?, ?)
                ON CONFLICT(original_guild_id, cloned_guild_id) DO UPDATE SET
                    enabled = excluded.enabled
                """,
                (int(original_guild_id), int(cloned_guild_id), 1 if enabled else 0),
            )

    def get_guild_pairs(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM guild_pairs WHERE enabled = 1 "
            "ORDER BY original_guild_id, cloned_guild_id"
        ).fetchall()

    # ---------------------------------------------------------------- mappings
    def upsert_mapping(
        self,
        kind: str,
        original_guild_id: int,
        original_id: int,
        original_name: str,
        cloned_id: int | None,
        *,
        cloned_guild_id: int | None = None,
        category_name: str | None = None,
        entity_type: int = 0,
    ) -> None:
        """
        Insert or update the mapping for (original_guild_id, original_id).
        The identity columns never change on conflict; display columns do.
        """
        table = MAPPING_TABLES[kind]
        with self.lock, self.conn:
            self.conn.execute(
                f"""
                INSERT INTO {table} (
                    original_guild_id, original_id, original_name,
                    cloned_id, cloned_guild_id, category_name, entity_type
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(original_guild_id, original_id) DO UPDATE SET
                    original_name   = excluded.original_name,
                    cloned_id       = COALESCE(excluded.cloned_id, {table}.cloned_id),
                    cloned_guild_id = COALESCE(excluded.cloned_guild_id, {table}.cloned_guild_id),
                    category_name   = excluded.category_name,
                    entity_type     = excluded.entity_type,
                    active          = 1,
                    last_updated    = CURRENT_TIMESTAMP
                """,
                (
                    int(original_guild_id),
                    int(original_id),
                    original_name,
                    int(cloned_id) if cloned_id else None,
                    int(cloned_guild_id) if cloned_guild_id else None,
                    category_name,
                    int(entity_type),
                ),
            )

    def get_mapping(
        self, kind: str, original_guild_id: int, original_id: int
    ) -> Optional[sqlite3.Row]:
        table = MAPPING_TABLES[kind]
        return self.conn.execute(
            f"SELECT * FROM {table} WHERE original_guild_id = ? AND original_id = ?",
            (int(original_guild_id), int(original_id)),
        ).fetchone()

    def get_legacy_mapping_by_name(
        self, kind: str, original_guild_id: int, original_name: str
    ) -> Optional[sqlite3.Row]:
        """Row recorded before ids were stored: matched by guild and name only."""
        table = MAPPING_TABLES[kind]
        return self.conn.execute(
            f"""
            SELECT * FROM {table}
            WHERE original_guild_id = ? AND original_name = ? AND original_id IS NULL
            ORDER BY id DESC LIMIT 1
            """,
            (int(original_guild_id), original_name),
        ).fetchone()

    def heal_legacy_mapping(self, kind: str, row_id: int, original_id: int) -> None:
        table = MAPPING_TABLES[kind]
        with self.lock, self.conn:
            self.conn.execute(
                f"UPDATE {table} SET original_id = ?, last_updated = CURRENT_TIMESTAMP "
                f"WHERE id = ? AND original_id IS NULL",
                (int(original_id), int(row_id)),
            )

    def get_mapping_by_cloned_id(self, kind: str, cloned_id: int):
        table = MAPPING_TABLES[kind]
        return self.conn.execute(
            f"SELECT * FROM {table} WHERE cloned_id = ?", (int(cloned_id),)
        ).fetchone()

    def get_all_mappings(
        self, kind: str, original_guild_id: int | None = None
    ) -> List[sqlite3.Row]:
        table = MAPPING_TABLES[kind]
        if original_guild_id is None:
            return self.conn.execute(f"SELECT * FROM {table}").fetchall()
        return self.conn.execute(
            f"SELECT * FROM {table} WHERE original_guild_id = ?",
            (int(original_guild_id),),
        ).fetchall()

    def delete_mapping(self, kind: str, original_guild_id: int, original_id: int):
        table = MAPPING_TABLES[kind]
        with self.lock, self.conn:
            self.conn.execute(
                f"DELETE FROM {table} WHERE original_guild_id = ? AND original_id = ?",
                (int(original_guild_id), int(original_id)),
            )

    def set_manually_deleted(
        self,
        kind: str,
        original_guild_id: int,
        original_id: int,
        deleted: bool,
        reason: str | None = None,
    ) -> bool:
        table = MAPPING_TABLES[kind]
        with self.lock, self.conn:
            cur = self.conn.execute(
                f"""
                UPDATE {table} SET
                    manually_deleted = ?,
                    active           = ?,
                    deleted_at       = CASE WHEN ? THEN strftime('%s','now') ELSE NULL END,
                    deleted_reason   = ?,
                    last_updated     = CURRENT_TIMESTAMP
                WHERE original_guild_id = ? AND original_id = ?
                """,
                (
                    1 if deleted else 0,
                    0 if deleted else 1,
                    1 if deleted else 0,
                    reason if deleted else None,
                    int(original_guild_id),
                    int(original_id),
                ),
            )
            return cur.rowcount > 0

    def get_manually_deleted(
        self, kind: str, original_guild_id: int
    ) -> List[sqlite3.Row]:
        table = MAPPING_TABLES[kind]
        return self.conn.execute(
            f"SELECT * FROM {table} WHERE original_guild_id = ? AND manually_deleted = 1",
            (int(original_guild_id),),
        ).fetchall()

    # ----------------------------------------------------- category suppression
    def add_category_suppression(self, original_guild_id: int, name: str) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO category_suppressions(original_guild_id, name) "
                "VALUES (?, ?)",
                (int(original_guild_id), name),
            )
            return cur.rowcount > 0

    def remove_category_suppression(self, original_guild_id: int, name: str) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM category_suppressions WHERE original_guild_id = ? AND name = ?",
                (int(original_guild_id), name),
            )
            return cur.rowcount > 0

    def get_category_suppressions(self, original_guild_id: int) -> set[str]:
        return {
            r["name"]
            for r in self.conn.execute(
                "SELECT name FROM category_suppressions WHERE original_guild_id = ?",
                (int(original_guild_id),),
            )
        }

    # --------------------------------------------------------- access failures
    def get_access_failure(self, original_guild_id: int, original_channel_id: int):
        return self.conn.execute(
            "SELECT * FROM access_failures "
            "WHERE original_guild_id = ? AND original_channel_id = ?",
            (int(original_guild_id), int(original_channel_id)),
        ).fetchone()

    def upsert_access_failure(
        self,
        original_guild_id: int,
        original_channel_id: int,
        channel_name: str | None,
        failed_attempts: int,
        last_failed_at: float | None,
        blacklisted_until: float | None,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO access_failures (
                    original_guild_id, original_channel_id, channel_name,
                    failed_attempts, last_failed_at, blacklisted_until
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(original_guild_id, original_channel_id) DO UPDATE SET
                    channel_name      = COALESCE(excluded.channel_name, channel_name),
                    failed_attempts   = excluded.failed_attempts,
                    last_failed_at    = excluded.last_failed_at,
                    blacklisted_until = excluded.blacklisted_until
                """,
                (
                    int(original_guild_id),
                    int(original_channel_id),
                    channel_name,
                    int(failed_attempts),
                    last_failed_at,
                    blacklisted_until,
                ),
            )

    def delete_access_failure(
        self, original_guild_id: int, original_channel_id: int
    ) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM access_failures "
                "WHERE original_guild_id = ? AND original_channel_id = ?",
                (int(original_guild_id), int(original_channel_id)),
            )
            return cur.rowcount > 0

    def get_all_access_failures(self) -> List[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM access_failures").fetchall()

    # --------------------------------------------------------- message history
    def upsert_message_mapping(
        self,
        original_guild_id: int,
        original_channel_id: int,
        original_message_id: int,
        cloned_guild_id: int | None,
        cloned_channel_id: int | None,
        cloned_message_id: int | None,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO messages (
                    original_guild_id, original_channel_id, original_message_id,
                    cloned_guild_id, cloned_channel_id, cloned_message_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, strftime('%s','now'))
                ON CONFLICT(original_message_id) DO UPDATE SET
                    cloned_guild_id   = excluded.cloned_guild_id,
                    cloned_channel_id = excluded.cloned_channel_id,
                    cloned_message_id = excluded.cloned_message_id
                """,
                (
                    int(original_guild_id),
                    int(original_channel_id),
                    int(original_message_id),
                    int(cloned_guild_id) if cloned_guild_id is not None else None,
                    int(cloned_channel_id) if cloned_channel_id is not None else None,
                    int(cloned_message_id) if cloned_message_id is not None else None,
                ),
            )

    def get_mapping_by_original(self, original_message_id: int):
        return self.conn.execute(
            "SELECT * FROM messages WHERE original_message_id = ?",
            (int(original_message_id),),
        ).fetchone()

    def get_last_message_id(self, original_channel_id: int) -> Optional[int]:
        row = self.conn.execute(
            "SELECT MAX(original_message_id) AS last FROM messages "
            "WHERE original_channel_id = ? AND cloned_message_id IS NOT NULL",
            (int(original_channel_id),),
        ).fetchone()
        return int(row["last"]) if row and row["last"] is not None else None

    def close(self) -> None:
        with self.lock:
            self.conn.close()


def _identifiers(expr: str) -> set[str]:
    return {
        tok
        for tok in re.findall(r"[A-Za-z_][A-Za-z0-9_]*", expr)
        if tok.upper() not in ("COALESCE", "NULL")
    }
