import asyncio
import tempfile
import unittest
from pathlib import Path

from provisioning.base.errors import AuthenticationError, SessionExpiredError
from provisioning.base.http_client import PortalResponse
from provisioning.base.session_manager import (
    SessionManager,
    SessionState,
    looks_like_login_page,
    read_netscape_cookies,
)
from provisioning.models.config import PortalSettings

BASE = "https://portal.test"
LOGIN_PAGE = """
<form action="/accounts/login/" method="post">
  <input type="hidden" name="csrfmiddlewaretoken" value="login-token">
  <input name="login"><input type="password" name="password">
</form>
"""
REJECTED_LOGIN = LOGIN_PAGE.replace(
    "<input name=\"login\">",
    "<ul class=\"errorlist\"><li>Usuario o clave incorrectos</li></ul><input name=\"login\">",
)


class FakePortalClient:
    """Stands in for PortalHTTPClient; scripted per call, no network."""
    def __init__(self, login_ok=True):
        self.base_url = BASE
        self.login_ok = login_ok
        self.login_posts = []
        self.requests = []
        self.responses = []
        self.loaded_cookies = None
        self._cookies = {}

    async def open(self):
        pass

    async def close(self):
        pass

    def url(self, path):
        return path if path.startswith("http") else BASE + path

    def cookies(self):
        return dict(self._cookies)

    def clear_cookies(self):
        self._cookies = {}

    async def load_cookies(self, cookies):
        self.loaded_cookies = dict(cookies)
        self._cookies.update(cookies)

    async def get(self, path, **kwargs):
        return PortalResponse(status=200, url=self.url(path), headers={}, text=LOGIN_PAGE)

    async def post(self, path, data=None, **kwargs):
        self.login_posts.append(data)
        await asyncio.sleep(0.01)
        if not self.login_ok:
            return PortalResponse(status=200, url=self.url(path), headers={}, text=REJECTED_LOGIN)
        self._cookies = {"csrftoken": "session-token", "sessionid": "abc"}
        return PortalResponse(status=302, url=self.url(path), headers={"location": "/panel/"}, text="")

    async def request(self, method, path, **kwargs):
        self.requests.append((method, path))
        return self.responses.pop(0)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_manager(client=None, clock=None, **settings):
    options = {"base_url": BASE, "username": "ops", "password": "secret"}
    options.update(settings)
    return SessionManager(PortalSettings(**options), client=client or FakePortalClient(), clock=clock or Clock())


class TestLooksLikeLoginPage(unittest.TestCase):
    def test_redirect_to_login(self):
        self.assertTrue(looks_like_login_page(None, 302, "/accounts/login/?next=/panel/"))
        self.assertFalse(looks_like_login_page(None, 302, "/panel/"))

    def test_body_markers(self):
        self.assertTrue(looks_like_login_page(LOGIN_PAGE, 200))
        self.assertFalse(looks_like_login_page("<a href='/accounts/login/'>Salir</a>", 200))
        self.assertFalse(looks_like_login_page("", 200))


class TestCookieFile(unittest.TestCase):
    def test_netscape_format(self):
        content = (
            "# Netscape HTTP Cookie File\n"
            "portal.test\tFALSE\t/\tTRUE\t0\tcsrftoken\tcookie-token\n"
            "#HttpOnly_portal.test\tFALSE\t/\tTRUE\t0\tsessionid\tsess\n"
            "malformed line\n"
        )
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "cookies.txt"
            path.write_text(content, encoding="utf-8")
            self.assertEqual(read_netscape_cookies(path), {"csrftoken": "cookie-token", "sessionid": "sess"})
            self.assertEqual(read_netscape_cookies(Path(tmp) / "missing.txt"), {})


class TestSessionManager(unittest.IsolatedAsyncioTestCase):
    async def test_login(self):
        manager = make_manager()
        session = await manager.ensure_session()
        self.assertEqual(manager.state, SessionState.AUTHENTICATED)
        self.assertEqual(session.csrf_token, "session-token")
        sent = manager.client.login_posts[0]
        self.assertEqual(sent["csrfmiddlewaretoken"], "login-token")
        self.assertEqual(sent["next"], "/panel/")

    async def test_concurrent_callers_share_one_login(self):
        manager = make_manager()
        sessions = await asyncio.gather(*(manager.ensure_session() for _ in range(5)))
        self.assertEqual(manager.login_count, 1)
        self.assertEqual(len(manager.client.login_posts), 1)
        self.assertTrue(all(s is sessions[0] for s in sessions))

    async def test_fresh_session_reused_until_stale(self):
        clock = Clock()
        manager = make_manager(clock=clock, session_max_age_minutes=25)
        first = await manager.ensure_session()
        clock.now += 60
        self.assertIs(await manager.ensure_session(), first)
        clock.now += 25 * 60
        self.assertIsNot(await manager.ensure_session(), first)
        self.assertEqual(manager.login_count, 2)

    async def test_stale_hint_skips_redundant_login(self):
        manager = make_manager()
        old = await manager.ensure_session()
        new = await manager.ensure_session(force=True)
        self.assertIs(await manager.ensure_session(force=True, stale=old), new)
        self.assertEqual(manager.login_count, 2)

    async def test_bad_credentials_not_retried(self):
        manager = make_manager(client=FakePortalClient(login_ok=False))
        with self.assertRaises(AuthenticationError) as ctx:
            await manager.ensure_session()
        self.assertEqual(ctx.exception.reason, "bad_credentials")
        self.assertIn("incorrectos", ctx.exception.detail)
        self.assertEqual(len(manager.client.login_posts), 1)
        self.assertEqual(manager.state, SessionState.UNAUTHENTICATED)

    async def test_missing_credentials(self):
        manager = make_manager(username=None)
        with self.assertRaises(AuthenticationError) as ctx:
            await manager.ensure_session()
        self.assertEqual(ctx.exception.reason, "missing_credentials")

    async def test_login_page_response_means_expired(self):
        manager = make_manager()
        await manager.ensure_session()
        manager.client.responses.append(
            PortalResponse(status=302, url=BASE + "/tickets/", headers={"location": "/accounts/login/"}, text="")
        )
        with self.assertRaises(SessionExpiredError):
            await manager.get("/tickets/")
        self.assertEqual(manager.state, SessionState.EXPIRED)

        await manager.ensure_session()
        self.assertEqual(manager.login_count, 2)

    async def test_seed_from_cookie_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "cookies.txt"
            path.write_text("portal.test\tFALSE\t/\tTRUE\t0\tcsrftoken\tseeded\n"
                            "portal.test\tFALSE\t/\tTRUE\t0\tsessionid\tabc\n", encoding="utf-8")
            manager = make_manager(cookie_file=str(path))
            await manager.open()
        session = await manager.ensure_session()
        self.assertTrue(session.seeded)
        self.assertEqual(manager.login_count, 0)
        self.assertEqual(manager.client.loaded_cookies["sessionid"], "abc")

    async def test_csrf_headers(self):
        manager = make_manager()
        await manager.ensure_session()
        headers = manager.csrf_headers(referer="/tickets/agregar/3/")
        self.assertEqual(headers["X-CSRFToken"], "session-token")
        self.assertEqual(headers["Referer"], BASE + "/tickets/agregar/3/")

    async def test_invalidate(self):
        manager = make_manager()
        await manager.ensure_session()
        manager.invalidate("operator request")
        self.assertIsNone(manager.session)
        self.assertEqual(manager.state, SessionState.INVALIDATED)
        await manager.ensure_session()
        self.assertEqual(manager.login_count, 2)


if __name__ == '__main__':
    unittest.main()
