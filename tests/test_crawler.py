from __future__ import annotations

import pytest

from bot.crawler import (
    FAVORITE_ON_URL,
    FRIEND_LIST_URL,
    OWN_FRIEND_CODE_URL,
    SEND_REQUEST_URL,
    SENT_REQUESTS_REFRESH_URL,
    SENT_REQUESTS_URL,
    CrawlClient,
    exchange_auth,
    get_auth_url,
)
from bot.session_store import Session
from common.constants import AUTH_AUTHORIZE_URL, HOME_URL
from common.errors import FetchTimeoutError, SessionExpiredError, UpstreamExchangeError
from common.transport import FetchResult, new_http
from conftest import BOT, TARGET

FRIENDS_PAGE = """
<form><input type="hidden" name="idx" value="111"></form>
<form><input type="hidden" name="idx" value="222"></form>
<form><input type="hidden" name="idx" value="111"></form>
"""
OWN_CODE_PAGE = '<div class="see_through_block m_t_5 m_b_5 p_5 t_c f_15">\n  100000000000001\n</div>'


class ScriptedTransport:
    def __init__(self, pages=None, errors=None):
        self.pages = pages or {}
        self.errors = errors or {}
        self.calls = []

    async def call(self, http, method, url, **kw):
        self.calls.append((method, url, kw))
        if url in self.errors:
            raise self.errors[url]
        return FetchResult(200, self.pages.get(url + "#final", url), self.pages.get(url, ""))


@pytest.mark.asyncio
async def test_friend_lists_are_deduplicated():
    transport = ScriptedTransport({FRIEND_LIST_URL: FRIENDS_PAGE, SENT_REQUESTS_URL: ""})
    async with CrawlClient(transport, Session(BOT, {"_t": "tok"})) as client:
        assert await client.list_friends() == ["111", "222"]
        assert await client.list_sent_requests() == []

    for _, _, kw in transport.calls:
        assert kw["expiry_sensitive"] is True


@pytest.mark.asyncio
async def test_send_request_posts_token_then_refreshes():
    transport = ScriptedTransport()
    async with CrawlClient(transport, Session(BOT, {"_t": "tok"})) as client:
        await client.send_friend_request(TARGET)
        await client.favorite_friend(TARGET)

    (m1, u1, kw1), (m2, u2, _), (m3, u3, kw3) = transport.calls
    assert (m1, u1) == ("POST", SEND_REQUEST_URL)
    assert kw1["data"] == f"idx={TARGET}&invite=&token=tok"
    assert kw1["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert (m2, u2) == ("GET", SENT_REQUESTS_REFRESH_URL)
    assert (m3, u3) == ("POST", FAVORITE_ON_URL)
    assert kw3["data"] == f"idx={TARGET}&token=tok"


@pytest.mark.asyncio
async def test_comparison_page_uses_long_timeout():
    transport = ScriptedTransport()
    async with CrawlClient(transport, Session(BOT)) as client:
        await client.fetch_comparison_page(TARGET, 2, 3)

    _, url, kw = transport.calls[0]
    assert "scoreType=2" in url
    assert "diff=3" in url
    assert f"idx={TARGET}" in url
    assert kw["timeout"] == 300


@pytest.mark.asyncio
async def test_expiry_reaches_the_caller():
    transport = ScriptedTransport(errors={FRIEND_LIST_URL: SessionExpiredError()})
    async with CrawlClient(transport, Session(BOT)) as client:
        with pytest.raises(SessionExpiredError):
            await client.list_friends()


@pytest.mark.asyncio
async def test_get_auth_url_downgrades_redirect_uri():
    final = "https://open.weixin.qq.com/connect/oauth2/authorize?redirect_uri=https%3A%2F%2Ftgk"
    transport = ScriptedTransport({AUTH_AUTHORIZE_URL + "#final": final})
    url = await get_auth_url(transport)
    assert url == "https://open.weixin.qq.com/connect/oauth2/authorize?redirect_uri=http%3A%2F%2Ftgk"


@pytest.mark.asyncio
async def test_exchange_replays_callback_over_https():
    callback = "http://tgk-wcaime.wahlap.com/wc_auth/oauth/callback/maimai-dx?r=abc&t=1"
    transport = ScriptedTransport({OWN_FRIEND_CODE_URL: OWN_CODE_PAGE})

    friend_code, session = await exchange_auth(
        transport, callback, http_factory=lambda: new_http({"_t": "fresh", "userId": "9"})
    )

    assert friend_code == "100000000000001"
    assert session.identity_key == friend_code
    assert session.cookies == {"_t": "fresh", "userId": "9"}
    urls = [u for _, u, _ in transport.calls]
    assert urls == [callback.replace("http://", "https://"), HOME_URL, OWN_FRIEND_CODE_URL]


@pytest.mark.asyncio
async def test_exchange_failures_are_wrapped():
    callback = "http://tgk-wcaime.wahlap.com/wc_auth/oauth/callback/maimai-dx?r=abc"
    transport = ScriptedTransport(errors={HOME_URL: FetchTimeoutError(300)})
    with pytest.raises(UpstreamExchangeError):
        await exchange_auth(transport, callback)

    with pytest.raises(UpstreamExchangeError):
        await exchange_auth(ScriptedTransport(), callback)
