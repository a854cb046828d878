# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Normalized score records: achievement parsing, chart constants, DX rating and
the best-of merge used both by the bots (per job) and the orchestrator (per
user profile).
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Union

# (minimum achievement, rating factor, rank)
RANK_TABLE = [
    (100.5, 22.4, "sssp"),
    (100.0, 21.6, "sss"),
    (99.5, 21.1, "ssp"),
    (99.0, 20.8, "ss"),
    (98.0, 20.3, "sp"),
    (97.0, 20.0, "s"),
    (94.0, 16.8, "aaa"),
    (90.0, 15.2, "aa"),
    (80.0, 13.6, "a"),
    (75.0, 12.0, "bbb"),
    (70.0, 11.2, "bb"),
    (60.0, 9.6, "b"),
    (50.0, 8.0, "c"),
    (40.0, 6.4, "d"),
    (30.0, 4.8, "d"),
    (20.0, 3.2, "d"),
    (10.0, 1.6, "d"),
]

MAX_ACHIEVEMENT = 101.0
RATING_ACHIEVEMENT_CAP = 100.5

# "+" levels span .6 - .9; without a chart-constant table .7 is the usual guess
PLUS_LEVEL_OFFSET = 0.7

FC_FLAGS = {"fc", "fcp", "ap", "app"}
FS_FLAGS = {"fs", "fsp", "fsd", "fsdp"}
# Older pages name full sync DX "fdx"
FS_ALIASES = {"fdx": "fsd", "fdxp": "fsdp"}

_LEVEL_RE = re.compile(r"^\s*(\d+)(\+?)\s*$")
_ACHIEVEMENT_RE = re.compile(r"(\d+(?:\.\d+)?)")


@dataclass
class ScoreRow:
    title: str
    type: str
    difficulty: int
    level: str
    achievement: Optional[float] = None
    dx_score: Optional[int] = None
    fc: Optional[str] = None
    fs: Optional[str] = None
    ds: Optional[float] = None
    rating: int = 0
    rate: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_achievement(value: Union[str, float, int, None]) -> Optional[float]:
    """
    "100.5000%" -> 100.5, 99 -> 99.0. Placeholders such as "―" or empty strings
    (chart never played) and out-of-range values give None.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        m = _ACHIEVEMENT_RE.search(str(value).replace(",", ""))
        if not m:
            return None
        num = float(m.group(1))
    if math.isnan(num) or num < 0 or num > MAX_ACHIEVEMENT:
        return None
    return round(num, 4)


def level_constant(level: Optional[str]) -> Optional[float]:
    """Approximate chart constant from the displayed level: "13" -> 13.0, "13+" -> 13.7."""
    if not level:
        return None
    m = _LEVEL_RE.match(level)
    if not m:
        return None
    base = float(m.group(1))
    return base + PLUS_LEVEL_OFFSET if m.group(2) else base


def rank_for(achievement: Optional[float]) -> tuple[float, Optional[str]]:
    if achievement is None:
        return 0.0, None
    for threshold, factor, rank in RANK_TABLE:
        if achievement >= threshold:
            return factor, rank
    return 0.0, "d"


def compute_rating(ds: Optional[float], achievement: Optional[float]) -> int:
    if ds is None or achievement is None:
        return 0
    factor, _ = rank_for(achievement)
    raw = ds * factor * min(achievement, RATING_ACHIEVEMENT_CAP) / 100
    return int(math.floor(round(raw, 6)))


def normalize_flag(name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Icon name -> (fc, fs); at most one side is set."""
    if not name:
        return None, None
    name = FS_ALIASES.get(name, name)
    if name in FC_FLAGS:
        return name, None
    if name in FS_FLAGS:
        return None, name
    return None, None


def finalize(row: ScoreRow) -> ScoreRow:
    """Fills the derived fields (ds, rating, rate) from level and achievement."""
    row.ds = level_constant(row.level)
    row.rating = compute_rating(row.ds, row.achievement)
    _, row.rate = rank_for(row.achievement)
    return row


def _key(row: dict) -> tuple:
    return row.get("title"), row.get("type"), row.get("difficulty")


def merge_scores(rows: Iterable[Union[ScoreRow, dict]]) -> list[dict]:
    """
    Collapses rows to one per (title, type, difficulty), keeping the best
    achievement. Unplayed charts are dropped. Output order is stable.
    """
    best: dict[tuple, dict] = {}
    for row in rows:
        d = row.to_dict() if isinstance(row, ScoreRow) else dict(row)
        if d.get("achievement") is None:
            continue
        k = _key(d)
        cur = best.get(k)
        if cur is None or d["achievement"] >= cur["achievement"]:
            best[k] = d
    return sorted(
        best.values(),
        key=lambda r: (r.get("difficulty") or 0, r.get("type") or "", r.get("title") or ""),
    )
