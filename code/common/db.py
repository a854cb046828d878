# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import json
import sqlite3, threading, time
from typing import Iterable, List, Optional

from common.constants import (
    ACTIVE_STATUSES,
    JOB_PROCESSING,
    JOB_QUEUED,
    STAGE_SEND_REQUEST,
)


def _dumps(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _loads(raw: Optional[str]):
    if raw is None or raw == "":
        return None
    return json.loads(raw)


class DBManager:
    def __init__(self, db_path: str):
        self.path = db_path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA foreign_keys = ON;")
        self.conn.execute("PRAGMA journal_mode = WAL;")
        self.conn.execute("PRAGMA synchronous = NORMAL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """
        Creates every table used by the orchestrator and the bots. Each process only
        touches its own subset, but sharing one schema keeps a single DB file usable
        for local all-in-one deployments.
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
        CREATE TABLE IF NOT EXISTS users (
          friend_code   TEXT PRIMARY KEY,
          import_token  TEXT,
          idle_update   INTEGER NOT NULL DEFAULT 0,
          profile       TEXT,
          created_at    REAL NOT NULL,
          updated_at    REAL NOT NULL
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS jobs (
          id                     TEXT PRIMARY KEY,
          friend_code            TEXT    NOT NULL,
          skip_update_score      INTEGER NOT NULL DEFAULT 0,
          status                 TEXT    NOT NULL CHECK(status IN
                                   ('queued','processing','completed','failed','canceled')),
          stage                  TEXT    NOT NULL CHECK(stage IN
                                   ('send_request','wait_acceptance','update_score')),
          bot_friend_code        TEXT,
          friend_request_sent_at REAL,
          score_progress         TEXT,
          result                 TEXT,
          error                  TEXT,
          executing              INTEGER NOT NULL DEFAULT 0,
          created_at             REAL    NOT NULL,
          updated_at             REAL    NOT NULL,
          enqueued_at            REAL    NOT NULL
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS ix_jobs_status_enqueued ON jobs(status, enqueued_at);"
        )
        c.execute("CREATE INDEX IF NOT EXISTS ix_jobs_bot ON jobs(bot_friend_code);")

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS bot_statuses (
          friend_code       TEXT PRIMARY KEY,
          available         INTEGER NOT NULL,
          last_reported_at  REAL    NOT NULL,
          friend_count      INTEGER
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS crawl_cache (
          job_id      TEXT    NOT NULL,
          difficulty  INTEGER NOT NULL,
          category    INTEGER NOT NULL,
          raw_page    TEXT    NOT NULL,
          created_at  REAL    NOT NULL,
          PRIMARY KEY (job_id, difficulty, category)
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS ix_crawl_cache_created ON crawl_cache(created_at);"
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS sessions (
          identity_key  TEXT PRIMARY KEY,
          cookies       TEXT NOT NULL,
          expires_at    REAL NOT NULL,
          last_updated  REAL NOT NULL
        );
        """
        )

        self.conn.commit()

    # ------------------------------------------------------------------ config

    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key, value) VALUES(?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "last_updated = CURRENT_TIMESTAMP",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else default

    # ------------------------------------------------------------------- users

    def get_or_create_user(self, friend_code: str, now: float | None = None) -> sqlite3.Row:
        now = time.time() if now is None else now
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO users (friend_code, created_at, updated_at) "
                "VALUES (?, ?, ?)",
                (friend_code, now, now),
            )
            return self.conn.execute(
                "SELECT * FROM users WHERE friend_code = ?", (friend_code,)
            ).fetchone()

    def get_user(self, friend_code: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM users WHERE friend_code = ?", (friend_code,)
        ).fetchone()

    def get_user_profile(self, friend_code: str) -> dict | None:
        row = self.get_user(friend_code)
        return _loads(row["profile"]) if row else None

    def update_user(
        self,
        friend_code: str,
        *,
        import_token: str | None = None,
        idle_update: bool | None = None,
        profile: dict | None = None,
        now: float | None = None,
    ) -> bool:
        sets, params = [], []
        if import_token is not None:
            sets.append("import_token = ?")
            params.append(import_token)
        if idle_update is not None:
            sets.append("idle_update = ?")
            params.append(int(bool(idle_update)))
        if profile is not None:
            sets.append("profile = ?")
            params.append(_dumps(profile))
        if not sets:
            return False
        sets.append("updated_at = ?")
        params.append(time.time() if now is None else now)
        params.append(friend_code)
        with self.lock, self.conn:
            cur = self.conn.execute(
                f"UPDATE users SET {', '.join(sets)} WHERE friend_code = ?", params
            )
            return cur.rowcount == 1

    def get_idle_update_users(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM users WHERE idle_update = 1 ORDER BY created_at"
        ).fetchall()

    # -------------------------------------------------------------------- jobs

    def insert_job(
        self, job_id: str, friend_code: str, skip_update_score: bool, now: float
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO jobs (id, friend_code, skip_update_score, status, stage,
                                  executing, created_at, updated_at, enqueued_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    job_id,
                    friend_code,
                    int(bool(skip_update_score)),
                    JOB_QUEUED,
                    STAGE_SEND_REQUEST,
                    now,
                    now,
                    now,
                ),
            )

    def get_job(self, job_id: str) -> sqlite3.Row | None:
        return self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()

    def find_claimable_job(self, bot_friend_code: str) -> sqlite3.Row | None:
        """
        Oldest job this bot may claim: anything queued, or one of its own
        processing jobs that was released between polling rounds.
        """
        return self.conn.execute(
            """
            SELECT * FROM jobs
            WHERE status = ?
               OR (status = ? AND executing = 0 AND bot_friend_code = ?)
            ORDER BY enqueued_at ASC
            LIMIT 1
            """,
            (JOB_QUEUED, JOB_PROCESSING, bot_friend_code),
        ).fetchone()

    def claim_job(self, job_id: str, bot_friend_code: str, now: float) -> bool:
        """Compare-and-set claim. Exactly one concurrent caller sees True."""
        with self.lock, self.conn:
            cur = self.conn.execute(
                """
                UPDATE jobs
                   SET status = ?, executing = 1, bot_friend_code = ?, updated_at = ?
                 WHERE id = ?
                   AND (status = ?
                        OR (status = ? AND executing = 0 AND bot_friend_code = ?))
                """,
                (
                    JOB_PROCESSING,
                    bot_friend_code,
                    now,
                    job_id,
                    JOB_QUEUED,
                    JOB_PROCESSING,
                    bot_friend_code,
                ),
            )
            return cur.rowcount == 1

    def update_owned_job(
        self,
        job_id: str,
        bot_friend_code: str,
        fields: dict,
        now: float,
        *,
        stage_from: Iterable[str] | None = None,
    ) -> bool:
        """
        Conditional update of a processing job held by ``bot_friend_code``.
        ``stage_from`` restricts the update to jobs currently in one of those stages.
        """
        allowed = {
            "stage",
            "friend_request_sent_at",
            "score_progress",
            "executing",
            "enqueued_at",
        }
        sets, params = [], []
        for k, v in fields.items():
            if k not in allowed:
                raise ValueError(f"column {k!r} is not updatable")
            sets.append(f"{k} = ?")
            params.append(_dumps(v) if k == "score_progress" else v)
        sets.append("updated_at = ?")
        params.append(now)

        where = "id = ? AND status = ? AND bot_friend_code = ?"
        params.extend([job_id, JOB_PROCESSING, bot_friend_code])
        if stage_from is not None:
            stages = list(stage_from)
            where += f" AND stage IN ({','.join('?' * len(stages))})"
            params.extend(stages)

        with self.lock, self.conn:
            cur = self.conn.execute(
                f"UPDATE jobs SET {', '.join(sets)} WHERE {where}", params
            )
            return cur.rowcount == 1

    def finish_job(
        self,
        job_id: str,
        status: str,
        now: float,
        *,
        result=None,
        error: str | None = None,
        bot_friend_code: str | None = None,
    ) -> bool:
        """Moves an active job to a terminal status. Only the first call wins."""
        params = [status, _dumps(result), error, now, job_id, *ACTIVE_STATUSES]
        where = "id = ? AND status IN (?, ?)"
        if bot_friend_code is not None:
            where += " AND bot_friend_code = ?"
            params.append(bot_friend_code)
        with self.lock, self.conn:
            cur = self.conn.execute(
                f"""
                UPDATE jobs
                   SET status = ?, result = ?, error = ?, executing = 0, updated_at = ?
                 WHERE {where}
                """,
                params,
            )
            return cur.rowcount == 1

    def fail_jobs_for_bots(self, bot_friend_codes: list[str], error: str, now: float) -> int:
        if not bot_friend_codes:
            return 0
        marks = ",".join("?" * len(bot_friend_codes))
        with self.lock, self.conn:
            cur = self.conn.execute(
                f"""
                UPDATE jobs
                   SET status = 'failed', executing = 0, error = ?, updated_at = ?
                 WHERE bot_friend_code IN ({marks})
                   AND status IN (?, ?)
                """,
                (error, now, *bot_friend_codes, *ACTIVE_STATUSES),
            )
            return cur.rowcount

    def release_executing_jobs(self, bot_friend_code: str, now: float) -> int:
        with self.lock, self.conn:
            cur = self.conn.execute(
                """
                UPDATE jobs SET executing = 0, enqueued_at = ?, updated_at = ?
                 WHERE bot_friend_code = ? AND status = ? AND executing = 1
                """,
                (now, now, bot_friend_code, JOB_PROCESSING),
            )
            return cur.rowcount

    # ------------------------------------------------------------ bot statuses

    def upsert_bot_statuses(self, bots: list[dict], now: float) -> None:
        with self.lock, self.conn:
            self.conn.executemany(
                """
                INSERT INTO bot_statuses (friend_code, available, last_reported_at, friend_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(friend_code) DO UPDATE SET
                    available        = excluded.available,
                    last_reported_at = excluded.last_reported_at,
                    friend_count     = excluded.friend_count
                """,
                [
                    (
                        b["friend_code"],
                        int(bool(b["available"])),
                        now,
                        b.get("friend_count"),
                    )
                    for b in bots
                ],
            )

    def get_all_bot_statuses(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM bot_statuses ORDER BY friend_code"
        ).fetchall()

    def get_bot_status(self, friend_code: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM bot_statuses WHERE friend_code = ?", (friend_code,)
        ).fetchone()

    def get_unavailable_bots(self, reported_before: float) -> list[str]:
        rows = self.conn.execute(
            "SELECT friend_code FROM bot_statuses "
            "WHERE available = 0 OR last_reported_at < ?",
            (reported_before,),
        ).fetchall()
        return [r["friend_code"] for r in rows]

    # ------------------------------------------------------------- crawl cache

    def get_cache_entry(self, job_id: str, difficulty: int, category: int) -> str | None:
        row = self.conn.execute(
            "SELECT raw_page FROM crawl_cache WHERE job_id = ? AND difficulty = ? AND category = ?",
            (job_id, difficulty, category),
        ).fetchone()
        return row["raw_page"] if row else None

    def put_cache_entry(
        self, job_id: str, difficulty: int, category: int, raw_page: str, now: float
    ) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO crawl_cache (job_id, difficulty, category, raw_page, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (job_id, difficulty, category, raw_page, now),
            )
            return cur.rowcount == 1

    def delete_cache_for_job(self, job_id: str) -> int:
        with self.lock, self.conn:
            return self.conn.execute(
                "DELETE FROM crawl_cache WHERE job_id = ?", (job_id,)
            ).rowcount

    def delete_cache_older_than(self, cutoff: float) -> int:
        with self.lock, self.conn:
            return self.conn.execute(
                "DELETE FROM crawl_cache WHERE created_at < ?", (cutoff,)
            ).rowcount

    # ---------------------------------------------------------------- sessions

    def save_session(self, identity_key: str, cookies: dict, expires_at: float) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO sessions (identity_key, cookies, expires_at, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(identity_key) DO UPDATE SET
                    cookies      = excluded.cookies,
                    expires_at   = excluded.expires_at,
                    last_updated = excluded.last_updated
                """,
                (identity_key, _dumps(cookies), expires_at, time.time()),
            )

    def load_session(self, identity_key: str) -> tuple[dict, float] | None:
        row = self.conn.execute(
            "SELECT cookies, expires_at FROM sessions WHERE identity_key = ?",
            (identity_key,),
        ).fetchone()
        if not row:
            return None
        return _loads(row["cookies"]) or {}, row["expires_at"]

    def get_session_keys(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT identity_key FROM sessions ORDER BY last_updated DESC"
        ).fetchall()
        return [r["identity_key"] for r in rows]

    def close(self) -> None:
        with self.lock:
            self.conn.close()
