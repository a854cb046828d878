# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across MaiSync services."""

# --- Job lifecycle ---
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELED = "canceled"

ACTIVE_STATUSES = (JOB_QUEUED, JOB_PROCESSING)

STAGE_SEND_REQUEST = "send_request"
STAGE_WAIT_ACCEPTANCE = "wait_acceptance"
STAGE_UPDATE_SCORE = "update_score"

STAGE_ORDER = [STAGE_SEND_REQUEST, STAGE_WAIT_ACCEPTANCE, STAGE_UPDATE_SCORE]

TASK_TYPE = "maimai-dx"

# --- Crawl grid ---
# Difficulty index as used by the comparison page: basic .. re:master
DIFFICULTIES = [0, 1, 2, 3, 4]

# Chart category, passed to the comparison page as ``scoreType``
CATEGORY_STANDARD = 1
CATEGORY_DX = 2
CATEGORIES = [CATEGORY_STANDARD, CATEGORY_DX]
CATEGORY_TYPES = {CATEGORY_STANDARD: "SD", CATEGORY_DX: "DX"}

# --- Platform ---
PLATFORM_HOST = "maimai.wahlap.com"
PLATFORM_BASE = f"https://{PLATFORM_HOST}/maimai-mobile"
HOME_URL = f"{PLATFORM_BASE}/home/"

AUTH_HOST = "tgk-wcaime.wahlap.com"
AUTH_AUTHORIZE_URL = f"https://{AUTH_HOST}/wc_auth/oauth/authorize/maimai-dx"
AUTH_CALLBACK_PREFIX = f"http://{AUTH_HOST}/wc_auth/oauth/callback"

SESSION_EXPIRED_LOCATIONS = frozenset(
    {
        f"{PLATFORM_BASE}/error/",
        f"{PLATFORM_BASE}/logout/",
    }
)
LOGIN_FAILED_MARKER = "登录失败"

# --- Score tracker (diving-fish prober API) ---
TRACKER_BASE_URL = "https://www.diving-fish.com/api/maimaidxprober"

CLIENT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 6.1; WOW64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/81.0.4044.138 Safari/537.36 NetType/WIFI "
    "MicroMessenger/7.0.20.1781(0x6700143B) WindowsWechat(0x6307001e)"
)
CLIENT_HEADERS = {
    "Host": PLATFORM_HOST,
    "User-Agent": CLIENT_USER_AGENT,
}
AUTH_HEADERS = {
    "Host": AUTH_HOST,
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "User-Agent": CLIENT_USER_AGENT,
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,"
        "image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.9"
    ),
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-User": "?1",
    "Sec-Fetch-Dest": "document",
    "Accept-Language": "zh-CN,zh;q=0.9,en-US;q=0.8,en;q=0.7",
}

# --- Proxy ---
PROXY_ALLOWED_HOSTS = [
    "127.0.0.1",
    "localhost",
    AUTH_HOST,
    "open.weixin.qq.com",
    "weixin110.qq.com",
    "res.wx.qq.com",
    "libs.baidu.com",
]
# Never tunnelled, the session for these is only ever built by the proxy itself
PROXY_BLOCKED_TUNNEL_PREFIXES = (
    "https://maimai.wahlap.com/",
    "https://chunithm.wahlap.com/",
)

REDACT_KEYS = {"BOT_TOKEN", "importToken", "password"}
