"""
Client for the OLT manager's REST API (`X-Token` auth, bodies wrapped as
`{"status": true, "response": ...}`).

Some endpoints only answer a logged-in browser session, or reject GET
with "Unknown method" and want POST instead; `fetch_available_ports`
covers both.
"""
import re
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote
import requests

from provisioning.base.cache import TtlCache
from provisioning.base.errors import AuthenticationError, NotFoundError, PreconditionError, TransportError
from provisioning.base.resilient import TRANSPORT_EXCEPTIONS, ResilientExecutor, as_transport_error
from provisioning.models.config import OltSettings
from provisioning.models.olt import OdbPorts, OdbSummary

logger = logging.getLogger("smartolt.client")

LOGIN_PATH = "/auth/login"
ODBS_PATH = "/api/system/get_odbs"
ODB_PORTS_PATH = "/api/onu/fetch_available_ports_for_odb/{external_id}"

ODBS_CACHE_KEY = "odbs"
SESSION_CACHE_KEY = "web_session"

# keys tried, in order, when a port is given as an object
PORT_KEYS = ("port", "id", "value", "label", "name", "number")
# offered when the OLT cannot be read
FALLBACK_PORTS = [str(n) for n in range(1, 17)]

METHOD_REJECTED = re.compile(r"method", re.IGNORECASE)

# shared by every client in the process
_shared_cache = TtlCache()


def _body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def unwrap(data: Any) -> Any:
    """The payload inside `{"response": ...}`, or the body itself."""
    if isinstance(data, dict) and data.get("response"):
        return data["response"]
    return data


def _port_label(item: Any) -> Optional[str]:
    if item is None:
        return None
    if isinstance(item, dict):
        for key in PORT_KEYS:
            if item.get(key) is not None:
                return str(item[key])
        return None
    return str(item)


def _pick_ports(items: Iterable[Any]) -> List[str]:
    ports: List[str] = []
    for item in items:
        label = _port_label(item)
        if label is None or not label.strip():
            continue
        label = label.strip()
        if label not in ports:
            ports.append(label)
    return ports


def normalize_ports(raw: Any) -> List[str]:
    """
    Available port labels from any of the shapes the OLT answers with:
    a list of numbers or objects, `{"ports" | "response" | "available_ports": [...]}`,
    or a mapping whose values (else keys) are the ports. Blank and
    duplicate labels are dropped.
    """
    if isinstance(raw, list):
        return _pick_ports(raw)
    if isinstance(raw, dict):
        for key in ("ports", "response", "available_ports"):
            if isinstance(raw.get(key), list):
                return _pick_ports(raw[key])
        return _pick_ports(raw.values()) or _pick_ports(raw.keys())
    return []


def _method_rejected(response: requests.Response) -> bool:
    if response.status_code == 405:
        return True
    body = _body(response)
    if isinstance(body, dict):
        message = body.get("error") or body.get("response")
        return isinstance(message, str) and bool(METHOD_REJECTED.search(message))
    return False


class SmartoltClient:
    def __init__(self, settings: OltSettings,
                 session: Optional[requests.Session] = None,
                 executor: Optional[ResilientExecutor] = None,
                 cache: Optional[TtlCache] = None):
        if not settings.api_url:
            raise PreconditionError("OLT API url is not configured (SMARTOLT_BASE_URL)", reason="olt_not_configured")
        if not settings.api_key:
            raise AuthenticationError("OLT API key is not configured (SMARTOLT_API_KEY)", reason="missing_api_key")
        self.settings = settings
        self.base_url = settings.api_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"X-Token": settings.api_key})
        self.executor = executor or ResilientExecutor()
        self.cache = cache if cache is not None else _shared_cache

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _cache_key(self, name: str) -> str:
        return f"{self.base_url}:{name}"

    def _send(self, method: str, path: str, label: str, timeout: Optional[float] = None,
              **kwargs) -> requests.Response:
        url = self.url(path)
        timeout = timeout or self.settings.request_timeout
        try:
            return self.executor.run_sync(
                lambda: self.session.request(method, url, timeout=timeout, **kwargs), label
            )
        except TRANSPORT_EXCEPTIONS as e:
            raise as_transport_error(e, label) from e

    @staticmethod
    def _json(response: requests.Response, label: str) -> Any:
        if response.status_code >= 300:
            raise TransportError(f"{label} answered {response.status_code}", status=response.status_code,
                                 response=response, detail=response.text[:300])
        return _body(response)

    # web session

    def _web_login(self) -> Optional[str]:
        """Cookie header of a fresh web login, or None when the OLT set no cookies."""
        response = self._send(
            "POST", LOGIN_PATH, "POST OLT login",
            data={"identity": self.settings.identity, "password": self.settings.password},
            allow_redirects=True,
        )
        if response.status_code >= 400:
            raise TransportError(f"OLT login answered {response.status_code}", status=response.status_code,
                                 response=response, detail=response.text[:300])
        cookies: Dict[str, str] = {}
        for step in [*response.history, response]:
            cookies.update(step.cookies.get_dict())
        if not cookies:
            logger.warning("OLT login returned no session cookie")
            return None
        logger.info(f"OLT web login succeeded ({len(cookies)} cookies)")
        return "; ".join(f"{name}={value}" for name, value in cookies.items())

    def session_cookie(self, force: bool = False) -> Optional[str]:
        """Cached web-session cookie header; None without web credentials."""
        if not self.settings.has_web_login:
            return None
        key = self._cache_key(SESSION_CACHE_KEY)
        if force:
            self.cache.invalidate(key)
        return self.cache.get_or_load(key, self.settings.session_ttl_seconds, self._web_login)

    # endpoints

    def _get_with_post_fallback(self, path: str, label: str) -> Any:
        response = self._send("GET", path, f"GET {label}")
        if response.status_code >= 300 and _method_rejected(response):
            logger.info(f"{label}: GET rejected ({response.status_code}), retrying as POST")
            response = self._send("POST", path, f"POST {label}")
        return self._json(response, label)

    def _ports_with_cookie(self, path: str, force: bool = False) -> Any:
        cookie = self.session_cookie(force=force)
        if not cookie:
            return None
        response = self._send("GET", path, "GET ODB ports (web session)", headers={
            "Cookie": cookie,
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
        })
        return unwrap(self._json(response, "ODB ports (web session)"))

    def list_odbs(self) -> List[OdbSummary]:
        """Every ODB the OLT knows, reused for `cache_ttl_seconds`."""
        def load() -> List[OdbSummary]:
            response = self._send("GET", ODBS_PATH, "GET ODBs", timeout=self.settings.list_timeout,
                                  headers={"Accept": "application/json"})
            data = self._json(response, "ODB listing")
            items = data.get("response") if isinstance(data, dict) else data
            if not isinstance(items, list):
                logger.warning(f"Unexpected ODB listing body: {str(data)[:200]}")
                items = []
            logger.info(f"Loaded {len(items)} ODBs")
            return [OdbSummary.model_validate(item) for item in items if isinstance(item, dict)]

        return self.cache.get_or_load(self._cache_key(ODBS_CACHE_KEY), self.settings.cache_ttl_seconds, load)

    def fetch_available_ports(self, external_id) -> Any:
        """
        Raw available-ports payload for one ODB.

        Web session first (the endpoint mirrors a browser call), then the
        API key with the GET->POST fallback. On 403 the web session is
        renewed once; any other failure gets one plain GET.
        """
        external_id = str(external_id or "").strip()
        if not external_id:
            raise PreconditionError("ODB external id is required", reason="external_id_missing")
        path = ODB_PORTS_PATH.format(external_id=quote(external_id, safe=""))

        try:
            from_cookie = self._ports_with_cookie(path)
            if from_cookie:
                return from_cookie
            return unwrap(self._get_with_post_fallback(path, "ODB ports"))
        except TransportError as e:
            if e.status == 403:
                logger.warning(f"ODB {external_id}: forbidden, renewing the web session")
                try:
                    refreshed = self._ports_with_cookie(path, force=True)
                    if refreshed:
                        return refreshed
                except TransportError as retry_error:
                    logger.warning(f"ODB {external_id}: renewed session failed too: {retry_error.message}")
            logger.warning(f"ODB {external_id}: {e.message}; trying a plain GET")
            return unwrap(self._json(self._send("GET", path, "GET ODB ports"), "ODB ports"))

    def available_ports(self, external_id) -> OdbPorts:
        """
        Normalized free ports of one ODB.

        403 raises AuthenticationError and an empty list NotFoundError. Any
        other failure returns the default 1-16 range flagged as `fallback`
        so an installer can still pick a port.
        """
        external_id = str(external_id or "").strip()
        try:
            raw = self.fetch_available_ports(external_id)
        except TransportError as e:
            if e.status == 403:
                raise AuthenticationError("OLT refused access to the ODB ports", reason="olt_forbidden",
                                          detail=e.detail) from e
            logger.error(f"ODB {external_id}: ports unavailable ({e.message}), offering the default range")
            return OdbPorts(external_id=external_id, ports=list(FALLBACK_PORTS), fallback=True, error=e.message)

        ports = normalize_ports(raw)
        if not ports:
            raise NotFoundError(f"No available ports for ODB {external_id}", reason="no_available_ports")
        return OdbPorts(external_id=external_id, ports=ports)
