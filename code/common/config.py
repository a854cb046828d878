# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

from common.constants import PROXY_ALLOWED_HOSTS, TRACKER_BASE_URL
from common.db import DBManager

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v2.1.0"


def parse_admission_rules(raw: str) -> list[tuple[int, float]]:
    """
    "40:16,20:8" -> [(40, 16.0), (20, 8.0)], sorted by threshold, highest first.
    Malformed pairs are skipped.
    """
    rules: list[tuple[int, float]] = []
    for tok in (raw or "").split(","):
        tok = tok.strip()
        if not tok or ":" not in tok:
            continue
        depth, window = tok.split(":", 1)
        try:
            rules.append((int(depth), float(window)))
        except ValueError:
            logger.warning("Ignoring malformed admission rule %r", tok)
    rules.sort(key=lambda r: r[0], reverse=True)
    return rules


class Config:
    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        db: Optional[DBManager] = None,
    ):
        self.DB_PATH = os.getenv("DB_PATH", "/data/data.db")
        self.db = db or DBManager(self.DB_PATH)

        # --- prefer DB value if set, else environment ---
        def _get_from_db(key: str):
            try:
                return self.db.get_config(key) or None
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                return float(env_default)

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Orchestrator HTTP API ---
        self.API_HOST = _str("API_HOST", "0.0.0.0") or "0.0.0.0"
        self.API_PORT = _int("API_PORT", "8080")
        self.BOT_TOKEN = _str("BOT_TOKEN", "") or ""

        # --- Bot wiring ---
        self.JOB_SERVICE_URL = (
            _str("JOB_SERVICE_URL", f"http://127.0.0.1:{self.API_PORT}") or ""
        ).rstrip("/")
        self.BOT_FRIEND_CODE = _str("BOT_FRIEND_CODE", "") or ""
        self.BOT_API_PORT = _int("BOT_API_PORT", "3999")

        # --- Session exchange proxy ---
        self.PROXY_HOST = _str("PROXY_HOST", "0.0.0.0") or "0.0.0.0"
        self.PROXY_PORT = _int("PROXY_PORT", "2222")
        self.PROXY_ALLOW_ALL = _bool("PROXY_ALLOW_ALL", "false")
        self.REDIRECT_URL = _str("REDIRECT_URL", "http://127.0.0.1:3999/") or ""
        extra_hosts = _str("PROXY_EXTRA_HOSTS", "") or ""
        self.PROXY_EXTRA_HOSTS = [h.strip() for h in extra_hosts.split(",") if h.strip()]

        # --- Transport ---
        self.FETCH_TIMEOUT_SECONDS = _float("FETCH_TIMEOUT_SECONDS", "300")
        self.FETCH_RETRY_COUNT = max(1, _int("FETCH_RETRY_COUNT", "3"))
        self.EXPIRY_PROBE_WINDOW_SECONDS = _float("EXPIRY_PROBE_WINDOW_SECONDS", "10")

        # --- Dispatch / admission control ---
        self.DISPATCH_INTERVAL_SECONDS = _float("DISPATCH_INTERVAL_SECONDS", "2")
        self.ADMISSION_RULES = parse_admission_rules(
            _str("ADMISSION_RULES", "40:16,20:8") or ""
        )
        self.TASK_STALE_SECONDS = _float("TASK_STALE_SECONDS", "60")
        self.HEARTBEAT_INTERVAL_SECONDS = _float("HEARTBEAT_INTERVAL_SECONDS", "60")
        self.ACCEPTANCE_TIMEOUT_SECONDS = _float("ACCEPTANCE_TIMEOUT_SECONDS", "300")
        self.ACCEPTANCE_POLL_SECONDS = _float("ACCEPTANCE_POLL_SECONDS", "5")

        # --- Fleet / cache sweeps ---
        self.BOT_REPORT_TIMEOUT_SECONDS = _float("BOT_REPORT_TIMEOUT_SECONDS", "300")
        self.FLEET_SWEEP_INTERVAL_SECONDS = _float("FLEET_SWEEP_INTERVAL_SECONDS", "300")
        self.CACHE_TTL_SECONDS = _float("CACHE_TTL_SECONDS", str(12 * 3600))
        self.CACHE_SWEEP_INTERVAL_SECONDS = _float("CACHE_SWEEP_INTERVAL_SECONDS", "3600")

        # --- Score tracker mirroring (empty URL disables it) ---
        self.TRACKER_URL = _str("TRACKER_URL", TRACKER_BASE_URL) or ""
        self.TRACKER_TIMEOUT_SECONDS = _float("TRACKER_TIMEOUT_SECONDS", "30")

        # --- Idle-hour update scheduler (hour is UTC+8) ---
        self.IDLE_UPDATE_HOUR = _int("IDLE_UPDATE_HOUR", "0")
        self.IDLE_UPDATE_CONCURRENCY = max(1, _int("IDLE_UPDATE_CONCURRENCY", "5"))

        # --- Logging / misc ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    def allowed_proxy_hosts(self) -> list[str]:
        hosts = list(PROXY_ALLOWED_HOSTS) + list(self.PROXY_EXTRA_HOSTS)
        for url in (self.REDIRECT_URL, self.JOB_SERVICE_URL):
            host = url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0]
            if host and host not in hosts:
                hosts.append(host)
        return hosts
