# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Error types shared by the orchestrator and the bots."""

from __future__ import annotations


class MaiSyncError(Exception):
    """Base class for every error raised by MaiSync itself."""


class TransientTransportError(MaiSyncError):
    """Network level failure that survived every retry."""


class FetchTimeoutError(TransientTransportError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Request timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class SessionExpiredError(MaiSyncError):
    """The platform redirected to a logout/error page: the cookies are dead."""

    def __init__(self, message: str = "Session expired, re-authentication required"):
        super().__init__(message)


class FriendAcceptanceTimeoutError(MaiSyncError):
    def __init__(self, friend_code: str, waited_seconds: float):
        super().__init__(
            f"Friend request to {friend_code} was not accepted within "
            f"{int(waited_seconds)} seconds, please trigger the sync again"
        )
        self.friend_code = friend_code
        self.waited_seconds = waited_seconds


class UpstreamExchangeError(MaiSyncError):
    """OAuth callback replay failed; the proxy swallows this into a bare redirect."""


class BotUnavailableError(MaiSyncError):
    """Recorded on jobs by the fleet sweep, never raised by a bot against itself."""

    message = "Bot session expired or bot unavailable"

    def __init__(self, bot_friend_code: str | None = None):
        super().__init__(self.message)
        self.bot_friend_code = bot_friend_code


class JobServiceError(MaiSyncError):
    """Non-2xx answer from the orchestrator."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"job service answered {status}: {detail}".strip())
        self.status = status
        self.detail = detail


class TrackerUploadError(MaiSyncError):
    """Non-2xx answer from the external score tracker."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"tracker answered {status}: {detail}".strip())
        self.status = status
        self.detail = detail
