# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

from common.constants import CATEGORY_TYPES
from common.scores import ScoreRow, finalize, normalize_achievement, normalize_flag

logger = logging.getLogger(__name__)

_ICON_RE = re.compile(r"music_icon_(\w+)\.png")
_DX_SCORE_RE = re.compile(r"^[\d,]+$")


def _chart_type(block, category: int) -> str:
    for img in block.select("img[src]"):
        src = img["src"]
        if "music_dx" in src:
            return "DX"
        if "music_standard" in src:
            return "SD"
    return CATEGORY_TYPES.get(category, "DX")


def _friend_icons(block, last_cell) -> list[str]:
    imgs = block.select("img[src]")
    if last_cell is not None:
        after = {id(t) for t in last_cell.find_all_next("img")}
        own = [img for img in imgs if id(img) in after]
        if own:
            imgs = own
    names = []
    for img in imgs:
        m = _ICON_RE.search(img["src"])
        if m and m.group(1) != "back":
            names.append(m.group(1))
    return names


def _parse_score_text(text: str) -> tuple[Optional[float], Optional[int]]:
    text = text.strip()
    if "%" in text:
        return normalize_achievement(text), None
    if _DX_SCORE_RE.match(text):
        return None, int(text.replace(",", ""))
    return None, None


def parse_friend_vs(html: str, difficulty: int, category: int) -> list[ScoreRow]:
    """
    Reads one Friend VS page. Each chart sits in a ``*_score_back`` block with the
    bot's score on the left and the compared player's on the right; only the right
    hand column is kept. Unplayed charts come back with ``achievement=None``.
    """
    soup = BeautifulSoup(html, "html.parser")
    rows: list[ScoreRow] = []

    for block in soup.select('div[class*="_score_back"]'):
        name = block.select_one(".music_name_block")
        if name is None:
            continue
        lv = block.select_one(".music_lv_block")

        cells = block.select("td.t_r")
        last_cell = cells[-1] if cells else None
        achievement, dx_score = (None, None)
        if last_cell is not None:
            achievement, dx_score = _parse_score_text(last_cell.get_text())

        fc = fs = None
        for icon in _friend_icons(block, last_cell):
            f1, f2 = normalize_flag(icon)
            fc = fc or f1
            fs = fs or f2

        row = ScoreRow(
            title=name.get_text(strip=True),
            type=_chart_type(block, category),
            difficulty=difficulty,
            level=lv.get_text(strip=True) if lv else "",
            achievement=achievement,
            dx_score=dx_score,
            fc=fc,
            fs=fs,
        )
        rows.append(finalize(row))

    logger.debug(
        "[🧾] Parsed %d charts (diff=%s category=%s)", len(rows), difficulty, category
    )
    return rows
