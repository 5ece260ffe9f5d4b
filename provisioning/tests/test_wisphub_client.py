import json
import unittest
from unittest.mock import MagicMock

import requests

from provisioning.base.errors import AuthenticationError, PreconditionError, TransportError
from provisioning.base.resilient import ResilientExecutor, RetryPolicy
from provisioning.models.commands import TicketUpdate
from provisioning.models.config import TicketingSettings
from provisioning.portals.wisphub.client import WisphubClient

API = "https://api.test"


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""
        self.headers = {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeApi:
    """Routes (method, url) to scripted responses and records every call."""
    def __init__(self, routes):
        self.routes = {k: list(v) if isinstance(v, list) else [v] for k, v in routes.items()}
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        queue = self.routes[(method, url)]
        return queue.pop(0) if len(queue) > 1 else queue[0]


def make_client(routes):
    api = FakeApi(routes)
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    session.request.side_effect = api
    executor = ResilientExecutor(RetryPolicy(attempts=2), sync_sleep=lambda seconds: None)
    client = WisphubClient(TicketingSettings(api_url=API, api_key="k-123"), session=session, executor=executor)
    return client, api


def staff_page(items, next_url=None):
    return FakeResponse(200, {"count": len(items), "next": next_url, "results": items})


class TestClientSetup(unittest.TestCase):
    def test_missing_key(self):
        with self.assertRaises(AuthenticationError):
            WisphubClient(TicketingSettings(api_key=None))

    def test_auth_header(self):
        client, _ = make_client({})
        self.assertEqual(client.session.headers["Authorization"], "Api-Key k-123")


class TestStaffAndSearch(unittest.TestCase):
    def test_resolve_staff_exact_short_circuit(self):
        client, api = make_client({
            ("GET", API + "/api/staff/"): staff_page(
                [{"id": 4, "nombre": "Carlos Mendoza Soto"}, {"id": 7, "nombre": "Carlos Mendoza"}],
                next_url=API + "/api/staff/?limit=50&offset=50",
            ),
        })
        member = client.resolve_staff_by_name("carlos mendoza")
        self.assertEqual(member.id, "7")
        self.assertEqual(len(api.calls), 1)
        self.assertEqual(api.calls[0][2]["params"], {"limit": 50, "offset": 0})

    def test_resolve_staff_threshold(self):
        client, _ = make_client({
            ("GET", API + "/api/staff/"): staff_page([{"id": 4, "nombre": "Carlos Mendoza Soto"},
                                                      {"id": 9, "nombre": "Luisa Vera"}]),
        })
        self.assertEqual(client.resolve_staff_by_name("Carlos Mendoza").id, "4")
        self.assertIsNone(client.resolve_staff_by_name("Rodrigo Soto Pérez"))

    def test_resolve_staff_listing_unavailable(self):
        client, _ = make_client({("GET", API + "/api/staff/"): FakeResponse(403, {"detail": "forbidden"})})
        self.assertIsNone(client.resolve_staff_by_name("Carlos"))

    def test_find_ticket_across_pages(self):
        page_two = API + "/api/tickets/?offset=2"
        client, _ = make_client({
            ("GET", API + "/api/tickets/"): staff_page(
                [{"id_ticket": 10, "servicio": {"nombre": "Pedro Torres"}}, {"id_ticket": 11, "servicio": None}],
                next_url=page_two,
            ),
            ("GET", page_two): staff_page([{"id": 12, "servicio": {"nombre": "Ana Torres Rojas"}}]),
        })
        result = client.find_ticket_by_client_name("Ana Torres")
        self.assertEqual(result.id_ticket, "12")
        self.assertEqual((result.scanned, result.pages), (3, 2))
        self.assertEqual(result.matches[0].servicio_nombre, "Ana Torres Rojas")

    def test_find_ticket_error_status(self):
        client, _ = make_client({("GET", API + "/api/tickets/"): FakeResponse(500, {"detail": "boom"})})
        with self.assertRaises(TransportError):
            client.find_ticket_by_client_name("Ana Torres")
        with self.assertRaises(PreconditionError):
            client.find_ticket_by_client_name("  ")


class TestEditTicket(unittest.TestCase):
    url = API + "/api/tickets/55/"

    def test_patch_with_resolved_technician(self):
        client, api = make_client({
            ("GET", API + "/api/staff/"): staff_page([{"id": 7, "nombre": "Carlos Mendoza"}]),
            ("PATCH", self.url): FakeResponse(200, {"id_ticket": 55, "asunto": "Corte de fibra"}),
        })
        update = TicketUpdate.model_validate({"asunto": " Corte de fibra ", "estado": 2, "tecnicoName": "Carlos Mendoza",
                                              "archivoTicket": b"pdf"})
        result = client.edit_ticket(55, update)

        self.assertEqual(result.method, "PATCH")
        self.assertEqual(result.sent_fields, ["asunto", "estado", "tecnico", "archivo_ticket"])
        method, url, kwargs = api.calls[-1]
        parts = dict(kwargs["files"])
        self.assertEqual(parts["asunto"], (None, "Corte de fibra"))
        self.assertEqual(parts["tecnico"], (None, "7"))
        self.assertEqual(parts["archivo_ticket"][0], "archivo_ticket.bin")

    def test_put_fallback_when_patch_rejected(self):
        client, api = make_client({
            ("PATCH", self.url): FakeResponse(405, {"detail": "Method not allowed"}),
            ("GET", self.url): FakeResponse(200, {"id_ticket": 55, "asunto": "Viejo", "prioridad": 1,
                                                  "servicio": {"id": 301, "nombre": "Ana Torres"},
                                                  "fecha_creacion": "2026-10-01"}),
            ("PUT", self.url): FakeResponse(200, {"id_ticket": 55, "asunto": "Nuevo"}),
        })
        result = client.edit_ticket("55", TicketUpdate(subject="Nuevo"))

        self.assertEqual(result.method, "PUT")
        method, url, kwargs = api.calls[-1]
        parts = dict(kwargs["files"])
        self.assertEqual(parts["asunto"], (None, "Nuevo"))
        self.assertEqual(parts["prioridad"], (None, "1"))
        self.assertEqual(parts["servicio"], (None, "301"))
        self.assertNotIn("fecha_creacion", parts)

    def test_put_fallback_when_patch_ignored(self):
        client, _ = make_client({
            ("PATCH", self.url): FakeResponse(200, {"id_ticket": 55, "asunto": "Viejo"}),
            ("GET", self.url): FakeResponse(200, {"asunto": "Viejo"}),
            ("PUT", self.url): FakeResponse(200, {"asunto": "Nuevo"}),
        })
        result = client.edit_ticket("55", TicketUpdate(subject="Nuevo"))
        self.assertEqual(result.method, "PUT")
        self.assertEqual(result.ignored_fields, ["asunto"])

    def test_empty_update(self):
        client, _ = make_client({})
        with self.assertRaises(PreconditionError):
            client.edit_ticket("55", TicketUpdate())


if __name__ == '__main__':
    unittest.main()
