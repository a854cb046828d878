# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import contextvars
import json
import logging
import os
import re
import sys
from datetime import datetime, timezone

from common.constants import REDACT_KEYS

# Filled per HTTP request by RequestContextMiddleware.
req_id_var = contextvars.ContextVar("req_id", default="-")
route_var = contextvars.ContextVar("route", default="-")
client_var = contextvars.ContextVar("client", default="-")

EXTRA_KEYS = ("job_id", "bot", "stage", "cell", "peer", "took_ms")

MASK = "***REDACTED***"

# token=... in orchestrator URLs, _t=... in platform cookie dumps
_INLINE_SECRET_RE = re.compile(r"\b(token|_t)=([^&\s'\"]+)")

LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _scrub_text(s: str) -> str:
    for key in REDACT_KEYS:
        secret = os.getenv(key)
        if secret and secret in s:
            s = s.replace(secret, MASK)
    return _INLINE_SECRET_RE.sub(lambda m: f"{m.group(1)}={MASK}", s)


def _scrub(value):
    if isinstance(value, str):
        return _scrub_text(value)
    if isinstance(value, dict):
        return {k: (MASK if str(k) in REDACT_KEYS and v else v) for k, v in value.items()}
    return value


class RedactFilter(logging.Filter):
    """Stamps the request context on the record and masks secrets in msg/args."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.req_id = req_id_var.get()
        record.scope = route_var.get()
        record.client = client_var.get()

        if isinstance(record.msg, str):
            record.msg = _scrub_text(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: _scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_scrub(a) for a in record.args)
        return True


def _extras(record: logging.LogRecord) -> dict:
    out = {}
    for k in EXTRA_KEYS:
        v = getattr(record, k, None)
        if v not in (None, "", []):
            out[k] = v
    return out


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = super().format(record)
        extras = " ".join(f"{k}={v}" for k, v in _extras(record).items())
        return (
            f"{_now_iso()} {LEVEL_MARK.get(record.levelno, '•')} {record.levelname:<8} "
            f"[{getattr(record, 'scope', '-')}] (rid={getattr(record, 'req_id', '-')}) "
            f"{record.name}: {msg}" + (f" | {extras}" if extras else "")
        )


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": super().format(record),
            "scope": getattr(record, "scope", "-"),
            "req_id": getattr(record, "req_id", "-"),
            "client": getattr(record, "client", "-"),
        }
        doc.update(_extras(record))
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Adds fixed fields (job id, bot...) to every record without clobbering per-call extras."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="maisync", **ctx):
    return ContextAdapter(logging.getLogger(name), dict(ctx))


def configure_app_logging(level: str | None = None):
    """
    Installs one handler on the root logger for both processes:
    - LOG_FORMAT: HUMAN (default) or JSON
    - level from the argument, else LOG_LEVEL
    - reuses uvicorn.error handlers when uvicorn already set them up
    """
    fmt = os.getenv("LOG_FORMAT", "HUMAN").strip().upper()
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    formatter = JSONFormatter("%(message)s") if fmt == "JSON" else HumanFormatter("%(message)s")

    root = logging.getLogger()
    handlers = logging.getLogger("uvicorn.error").handlers[:] or [
        logging.StreamHandler(stream=sys.stdout)
    ]
    for h in handlers:
        h.setFormatter(formatter)
        h.addFilter(RedactFilter())
    root.handlers = handlers
    root.setLevel(getattr(logging, lvl, logging.INFO))

    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return get_logger("maisync")
