import asyncio
import time
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Union
from pydantic import BaseModel, Field

from provisioning.base.errors import AuthenticationError, SessionExpiredError
from provisioning.base.http_client import PortalHTTPClient, PortalResponse
from provisioning.base.resilient import ResilientExecutor, RetryPolicy
from provisioning.models.config import PortalSettings, RetrySettings
from provisioning.processors.form_snapshot import CSRF_FIELD, extract_csrf_token, extract_form_errors

logger = logging.getLogger("portal.session")

CSRF_COOKIE = "csrftoken"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


class PortalSession(BaseModel):
    csrf_token: str
    cookies: Dict[str, str] = Field(default_factory=dict)
    created_at: float = 0.0
    seeded: bool = False

    def is_fresh(self, max_age: float, now: float) -> bool:
        return (now - self.created_at) < max_age


def looks_like_login_page(body: Optional[str], status: Optional[int] = None,
                          location: Optional[str] = None,
                          login_path: str = "/accounts/login/") -> bool:
    """
    True when a response means "you are not logged in": a redirect or final
    URL on the login path, or a body that carries the login URL together
    with a login/password field.
    """
    marker = login_path.rstrip("/").lower()
    if location and marker in location.lower():
        if status is None or 200 <= status < 400:
            return True
    if not isinstance(body, str) or not body:
        return False
    lower = body.lower()
    return marker in lower and ('name="password"' in lower or 'name="login"' in lower)


def read_netscape_cookies(path: Union[str, Path]) -> Dict[str, str]:
    """name -> value from a Netscape cookies.txt (tab separated, 7 columns)."""
    cookie_path = Path(path)
    if not cookie_path.exists():
        logger.debug(f"Cookie file {cookie_path} not found")
        return {}
    cookies = {}
    with open(cookie_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if line.startswith("#HttpOnly_"):
                line = line[len("#HttpOnly_"):]
            elif not line or line.startswith("#"):
                continue
            parts = line.split("\t")
            if len(parts) >= 7:
                cookies[parts[5]] = parts[6].strip()
    return cookies


class SessionManager:
    """
    Owns the authenticated portal client.

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED -> EXPIRED | INVALIDATED
    -> AUTHENTICATING ...

    At most one login runs at a time: concurrent callers await the same task
    (shielded, so a caller giving up does not abort the login for the
    others) and the cached session is only replaced once a login succeeds.
    """

    def __init__(self, settings: PortalSettings,
                 client: Optional[PortalHTTPClient] = None,
                 retry: Optional[RetrySettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        retry = retry or RetrySettings()
        self.settings = settings
        self.client = client or PortalHTTPClient(
            settings.base_url,
            timeout=settings.request_timeout,
            executor=ResilientExecutor(RetryPolicy.from_settings(retry)),
        )
        self.login_policy = RetryPolicy.for_login(retry)
        self.max_age = settings.session_max_age_minutes * 60
        self.state = SessionState.UNAUTHENTICATED
        self.login_count = 0
        self._clock = clock
        self._session: Optional[PortalSession] = None
        self._login_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[PortalSession]:
        return self._session

    async def open(self):
        await self.client.open()
        if self.settings.cookie_file and self._session is None:
            await self.seed_from_cookie_file(self.settings.cookie_file)

    async def close(self):
        if self._login_task is not None and not self._login_task.done():
            self._login_task.cancel()
        self._login_task = None
        self._session = None
        self.state = SessionState.UNAUTHENTICATED
        await self.client.close()

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def seed_from_cookie_file(self, path: Union[str, Path]) -> bool:
        """
        Use an exported browser session. It is trusted until a response
        proves it stale, then normal login takes over.
        """
        try:
            cookies = read_netscape_cookies(path)
        except OSError as e:
            logger.error(f"Could not read cookie file {path}: {e}")
            return False
        if not cookies:
            return False
        await self.client.load_cookies(cookies)
        self._session = PortalSession(
            csrf_token=cookies.get(CSRF_COOKIE, ""),
            cookies=cookies,
            created_at=self._clock(),
            seeded=True,
        )
        self.state = SessionState.AUTHENTICATED
        logger.info(f"Session seeded from {path} ({len(cookies)} cookies)")
        return True

    def invalidate(self, reason: str = "invalidated"):
        logger.info(f"Session invalidated: {reason}")
        self._session = None
        self.state = SessionState.INVALIDATED
        self.client.clear_cookies()

    def _mark_expired(self, session: Optional[PortalSession]):
        if session is not None and session is self._session:
            self.state = SessionState.EXPIRED

    async def ensure_session(self, force: bool = False,
                             stale: Optional[PortalSession] = None) -> PortalSession:
        """
        Return a usable session, logging in when there is none, it is older
        than the freshness window, or `force` is set. Passing the session a
        caller saw expire as `stale` skips the login if someone else already
        replaced it.
        """
        current = self._session
        if (stale is not None and current is not None and current is not stale
                and self.state == SessionState.AUTHENTICATED):
            return current
        if (not force and current is not None and self.state == SessionState.AUTHENTICATED
                and current.is_fresh(self.max_age, self._clock())):
            return current

        if self._login_task is None or self._login_task.done():
            self._login_task = asyncio.ensure_future(self._login())
            self._login_task.add_done_callback(self._login_finished)
        else:
            logger.debug("Login already in flight, waiting for it")
        return await asyncio.shield(self._login_task)

    @staticmethod
    def _login_finished(task: asyncio.Task):
        # retrieve the exception so abandoned logins do not warn at GC time
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Login task ended with {task.exception()!r}")

    def _login_succeeded(self, response: PortalResponse) -> bool:
        login_path = self.settings.login_path
        if response.is_redirect:
            return not looks_like_login_page(None, response.status, response.header("location"), login_path)
        if response.ok:
            return not looks_like_login_page(response.text, response.status, None, login_path)
        return False

    async def _login(self) -> PortalSession:
        if not self.settings.has_credentials:
            self.state = SessionState.UNAUTHENTICATED
            raise AuthenticationError("Portal credentials are not configured (GEONET_USER / GEONET_PASS)",
                                      reason="missing_credentials")

        self.state = SessionState.AUTHENTICATING
        self.login_count += 1
        login_path = self.settings.login_path
        logger.info(f"Logging in to {self.settings.base_url} as {self.settings.username}")
        try:
            await self.client.open()
            self.client.clear_cookies()
            page = await self.client.get(login_path, label="GET login", policy=self.login_policy)
            csrf = extract_csrf_token(page.text) or self.client.cookies().get(CSRF_COOKIE, "")
            if not csrf:
                raise AuthenticationError("Login page did not provide an anti-forgery token",
                                          reason="csrf_missing", detail=page.excerpt())

            response = await self.client.post(
                login_path,
                data={
                    CSRF_FIELD: csrf,
                    "login": self.settings.username,
                    "password": self.settings.password,
                    "next": self.settings.post_login_path,
                },
                headers={"Referer": self.client.url(login_path)},
                allow_redirects=False,
                label="POST login",
                policy=self.login_policy,
            )
            if not self._login_succeeded(response):
                errors = extract_form_errors(response.text)
                raise AuthenticationError("Portal rejected the login", reason="bad_credentials",
                                          detail="; ".join(errors) or response.excerpt(300))
        except BaseException:
            if self.state == SessionState.AUTHENTICATING:
                self.state = SessionState.UNAUTHENTICATED
            raise

        cookies = self.client.cookies()
        session = PortalSession(
            csrf_token=cookies.get(CSRF_COOKIE, csrf),
            cookies=cookies,
            created_at=self._clock(),
        )
        self._session = session
        self.state = SessionState.AUTHENTICATED
        logger.info("Portal login succeeded")
        return session

    async def request(self, method: str, path: str, **kwargs) -> PortalResponse:
        """
        Authenticated request. Raises SessionExpiredError when the portal
        answers with its login page; callers decide whether to re-run.
        """
        session = await self.ensure_session()
        response = await self.client.request(method, path, **kwargs)
        location = response.header("location") or response.url
        if looks_like_login_page(response.text, response.status, location, self.settings.login_path):
            self._mark_expired(session)
            logger.warning(f"{method} {path} answered with the login page; session expired")
            raise SessionExpiredError(f"Portal session expired during {method} {path}",
                                      detail=response.excerpt(200))
        return response

    async def get(self, path: str, **kwargs) -> PortalResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, data=None, **kwargs) -> PortalResponse:
        return await self.request("POST", path, data=data, **kwargs)

    def csrf_headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {}
        token = self.client.cookies().get(CSRF_COOKIE) or (self._session.csrf_token if self._session else "")
        if token:
            headers["X-CSRFToken"] = token
        if referer:
            headers["Referer"] = self.client.url(referer)
        return headers
