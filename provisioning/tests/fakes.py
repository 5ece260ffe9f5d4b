"""Test doubles for the portal session layer. No network."""
from types import SimpleNamespace

from provisioning.base.http_client import PortalResponse
from provisioning.base.session_manager import PortalSession
from provisioning.models.config import PortalSettings

BASE = "https://portal.test"


def page(html, url="", status=200, headers=None):
    return PortalResponse(status=status, url=url, headers=headers or {}, text=html)


def redirect(location):
    return PortalResponse(status=302, url="", headers={"location": location}, text="")


class FakeSessions:
    """
    SessionManager stand-in: scripted pages per path (a list is served in
    order, its last item repeating; exceptions are raised) and recorded posts.
    Unknown paths answer 404.
    """
    def __init__(self, pages=None, posts=None):
        self.settings = PortalSettings(base_url=BASE, username="ops", password="secret")
        self.client = SimpleNamespace(base_url=BASE)
        self.session = PortalSession(csrf_token="cookie-token")
        self.pages = {k: list(v) if isinstance(v, list) else [v] for k, v in (pages or {}).items()}
        self.post_responses = list(posts or [])
        self.gets = []
        self.posts = []
        self.ensure_calls = []

    async def ensure_session(self, force=False, stale=None):
        self.ensure_calls.append(force)
        if force:
            self.session = PortalSession(csrf_token="fresh-token")
        return self.session

    async def get(self, path, **kwargs):
        self.gets.append(path)
        queue = self.pages.get(path)
        if not queue:
            return page("", path, status=404)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def post(self, path, data=None, **kwargs):
        self.posts.append({"path": path, "data": data, **kwargs})
        return self.post_responses.pop(0)

    def csrf_headers(self, referer=None):
        return {"X-CSRFToken": self.session.csrf_token, "Referer": referer or ""}
