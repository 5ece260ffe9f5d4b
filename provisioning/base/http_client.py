import random
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import aiohttp
from pydantic import BaseModel, Field
from yarl import URL

from provisioning.base.resilient import ResilientExecutor, RetryPolicy

# Default User-Agent list
DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

FormData = Union[Mapping[str, Any], List[Tuple[str, Any]]]
# field name -> (filename, content, content type)
Files = Mapping[str, Tuple[str, bytes, str]]


class PortalResponse(BaseModel):
    """Fully read response; headers keyed in lowercase."""
    status: int
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    text: str = ""

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @property
    def location(self) -> str:
        """Redirect target when not followed, else the final URL."""
        return self.header("location") or self.url

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    def excerpt(self, limit: int = 500) -> str:
        return (self.text or "")[:limit]


class PortalHTTPClient:
    """
    Cookie-keeping async client for one portal host.
    Every call goes through the ResilientExecutor; request bodies are rebuilt
    per attempt so multipart payloads can be re-sent.
    """
    def __init__(self,
                 base_url: str,
                 timeout: float = 45.0,
                 user_agents: List[str] = None,
                 executor: Optional[ResilientExecutor] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agents = user_agents or DEFAULT_USER_AGENTS
        self.executor = executor or ResilientExecutor()
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger("infrastructure.http_client")

    def _get_random_header(self) -> Dict[str, str]:
        return {
            "User-Agent": random.choice(self.user_agents),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
            "Accept-Language": "es-CL,es;q=0.9,en-US;q=0.8,en;q=0.7",
        }

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    async def open(self):
        if not self.is_open:
            self._session = aiohttp.ClientSession(
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                timeout=aiohttp.ClientTimeout(total=self.timeout, connect=10),
            )

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # cookies
    def cookies(self) -> Dict[str, str]:
        if not self.is_open:
            return {}
        return {morsel.key: morsel.value for morsel in self._session.cookie_jar}

    def clear_cookies(self):
        if self.is_open:
            self._session.cookie_jar.clear()

    async def load_cookies(self, cookies: Mapping[str, str]):
        await self.open()
        self._session.cookie_jar.update_cookies(dict(cookies), response_url=URL(self.base_url))

    # requests
    @staticmethod
    def _build_body(data: Optional[FormData], files: Optional[Files]):
        if not files:
            return data
        form = aiohttp.FormData()
        items = data.items() if isinstance(data, Mapping) else (data or [])
        for name, value in items:
            form.add_field(name, "" if value is None else str(value))
        for name, (filename, content, content_type) in files.items():
            form.add_field(name, content, filename=filename, content_type=content_type)
        return form

    async def request(self, method: str, path: str,
                      data: Optional[FormData] = None,
                      files: Optional[Files] = None,
                      headers: Optional[Dict[str, str]] = None,
                      allow_redirects: bool = True,
                      label: Optional[str] = None,
                      policy: Optional[RetryPolicy] = None) -> PortalResponse:
        await self.open()
        target = self.url(path)
        merged_headers = self._get_random_header()
        merged_headers.update(headers or {})

        async def _attempt() -> PortalResponse:
            self.logger.debug(f"{method} {target}")
            async with self._session.request(
                method, target,
                data=self._build_body(data, files),
                headers=merged_headers,
                allow_redirects=allow_redirects,
            ) as resp:
                text = await resp.text(errors="replace")
                return PortalResponse(
                    status=resp.status,
                    url=str(resp.url),
                    headers={k.lower(): v for k, v in resp.headers.items()},
                    text=text,
                )

        return await self.executor.run(_attempt, label or f"{method} {path}", policy)

    async def get(self, path: str, **kwargs) -> PortalResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, data: Optional[FormData] = None, **kwargs) -> PortalResponse:
        return await self.request("POST", path, data=data, **kwargs)
