"""
Client for the ticketing system's REST API (Django REST framework style:
paginated `{"count", "next", "results"}` bodies, `Api-Key` auth).
"""
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple
import requests

from provisioning.base.errors import AuthenticationError, PreconditionError, TransportError
from provisioning.base.resilient import TRANSPORT_EXCEPTIONS, ResilientExecutor, as_transport_error
from provisioning.enrichment.similarity import RECORD_MATCH_THRESHOLD, score
from provisioning.models.commands import TicketUpdate
from provisioning.models.config import TicketingSettings
from provisioning.models.ticketing import StaffMember, TicketEditResult, TicketMatch, TicketSearchResult
from provisioning.processors.normalize import normalize

logger = logging.getLogger("wisphub.client")

STAFF_PATH = "/api/staff/"
TICKETS_PATH = "/api/tickets/"
ATTACHMENT_FIELD = "archivo_ticket"
ATTACHMENT_NAME = "archivo_ticket.bin"
# statuses that mean "this verb is not accepted here", retried as PUT
PATCH_REJECTED = (400, 405)
# free-text fields the API echoes back verbatim; others come back as labels
ECHOED_FIELDS = ("asunto", "descripcion")


def _ticket_id(item: Dict[str, Any]) -> Optional[str]:
    for key in ("id_ticket", "idTicket", "id"):
        if item.get(key) is not None:
            return str(item[key])
    return None


def _body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class WisphubClient:
    def __init__(self, settings: TicketingSettings,
                 session: Optional[requests.Session] = None,
                 executor: Optional[ResilientExecutor] = None):
        if not settings.api_key:
            raise AuthenticationError("Ticketing API key is not configured (WISPHUB_API_KEY)",
                                      reason="missing_api_key")
        self.base_url = settings.api_url.rstrip("/")
        self.timeout = settings.request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Api-Key {settings.api_key}"})
        self.executor = executor or ResilientExecutor()

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, url: str, label: str, **kwargs) -> requests.Response:
        try:
            return self.executor.run_sync(
                lambda: self.session.request(method, url, timeout=self.timeout, **kwargs), label
            )
        except TRANSPORT_EXCEPTIONS as e:
            raise as_transport_error(e, label) from e

    def _get_json(self, url: str, label: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._send("GET", url, label, params=params)
        if response.status_code >= 300:
            raise TransportError(f"{label} answered {response.status_code}", status=response.status_code,
                                 response=response, detail=response.text[:300])
        return _body(response)

    def iter_pages(self, url: str, max_pages: int = 10,
                   params: Optional[Dict[str, Any]] = None) -> Iterator[List[Dict[str, Any]]]:
        """Yield each page's `results`, following `next` up to `max_pages`."""
        next_url: Optional[str] = self.url(url)
        pages = 0
        while next_url and pages < max_pages:
            pages += 1
            data = self._get_json(next_url, f"GET {next_url}", params=params if pages == 1 else None)
            if not isinstance(data, dict):
                return
            results = data.get("results")
            yield results if isinstance(results, list) else []
            next_url = data.get("next") or None

    def list_staff(self, limit: int = 50, offset: int = 0) -> Any:
        return self._get_json(self.url(STAFF_PATH), "GET staff", params={"limit": limit, "offset": offset})

    def resolve_staff_by_name(self, name: str, max_pages: int = 20, limit: int = 50) -> Optional[StaffMember]:
        """
        Staff member whose name best matches `name` (exact normalized match
        wins immediately, else best score >= 0.6). None when the listing is
        unavailable or nothing is close enough.
        """
        target = normalize(name)
        if not target:
            return None

        best: Optional[Tuple[float, StaffMember]] = None
        try:
            for results in self.iter_pages(STAFF_PATH, max_pages, params={"limit": limit, "offset": 0}):
                for item in results:
                    staff_id = str(item.get("id") or "").strip()
                    nombre = str(item.get("nombre") or "").strip()
                    if not staff_id or not nombre:
                        continue
                    member = StaffMember(id=staff_id, nombre=nombre, email=item.get("email"))
                    normalized = normalize(nombre)
                    if normalized == target:
                        return member
                    current = score(target, normalized)
                    if best is None or current > best[0]:
                        best = (current, member)
        except TransportError as e:
            logger.warning(f"Staff listing unavailable while resolving '{name}': {e.message}")
            return None

        if best is not None and best[0] >= RECORD_MATCH_THRESHOLD:
            logger.info(f"Staff '{name}' resolved to {best[1].nombre} ({best[0]:.2f})")
            return best[1]
        return None

    def find_ticket_by_client_name(self, client_name: str, max_pages: int = 10) -> TicketSearchResult:
        """Tickets whose service name contains the client name, or the reverse."""
        target = normalize(client_name)
        if not target:
            raise PreconditionError("client name is required", reason="client_name_missing")

        result = TicketSearchResult()
        for results in self.iter_pages(TICKETS_PATH, max_pages):
            result.pages += 1
            result.scanned += len(results)
            for item in results:
                servicio = item.get("servicio") or {}
                servicio_nombre = str(servicio.get("nombre") or "") if isinstance(servicio, dict) else ""
                if not servicio_nombre:
                    continue
                normalized = normalize(servicio_nombre)
                if target in normalized or normalized in target:
                    ticket_id = _ticket_id(item)
                    if ticket_id is not None:
                        result.matches.append(TicketMatch(id_ticket=ticket_id, servicio_nombre=servicio_nombre))

        if result.matches:
            result.id_ticket = result.matches[0].id_ticket
        logger.info(f"Ticket search '{client_name}': {len(result.matches)} match(es) "
                    f"in {result.scanned} ticket(s) / {result.pages} page(s)")
        return result

    def _update_fields(self, update: TicketUpdate) -> List[Tuple[str, str]]:
        fields = [(k, v) for k, v in update.remote_fields() if k != "tecnico"]
        technician_id = update.technician_id
        if not technician_id and update.technician_name:
            member = self.resolve_staff_by_name(update.technician_name)
            if member is None:
                logger.warning(f"Technician '{update.technician_name}' not found in staff, field not sent")
            technician_id = member.id if member else None
        if technician_id:
            fields.append(("tecnico", technician_id))
        return fields

    def _multipart(self, fields: List[Tuple[str, str]], attachment: Optional[bytes]) -> list:
        # (None, value) parts force multipart/form-data even without a file
        parts = [(name, (None, value)) for name, value in fields]
        if attachment:
            parts.append((ATTACHMENT_FIELD, (ATTACHMENT_NAME, attachment, "application/octet-stream")))
        return parts

    @staticmethod
    def _ignored_fields(data: Any, fields: List[Tuple[str, str]]) -> List[str]:
        if not isinstance(data, dict):
            return []
        return [name for name, value in fields
                if name in ECHOED_FIELDS and name in data and str(data[name] or "").strip() != value]

    def _full_ticket_fields(self, url: str, fields: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
        """Current writable ticket fields with the updates applied on top."""
        current = self._get_json(url, f"GET {url}")
        writable = {name for name, _ in TicketUpdate.REMOTE_FIELDS}
        merged: Dict[str, str] = {}
        if isinstance(current, dict):
            for key, value in current.items():
                if key not in writable or value is None:
                    continue
                if isinstance(value, dict):
                    value = value.get("id")
                if value is None or isinstance(value, (list, dict)):
                    continue
                merged[key] = str(value)
        merged.update(dict(fields))
        return list(merged.items())

    def edit_ticket(self, ticket_id, update: TicketUpdate) -> TicketEditResult:
        """
        PATCH the non-empty fields as multipart. When the API refuses the
        PATCH (400/405) or echoes back a ticket that ignored what was sent,
        retry once as a PUT of the full ticket with the updates merged in.
        """
        ticket_id = str(ticket_id or "").strip()
        if not ticket_id:
            raise PreconditionError("ticket id is required", reason="ticket_id_missing")
        url = self.url(f"{TICKETS_PATH}{ticket_id}/")

        fields = self._update_fields(update)
        sent = [name for name, _ in fields] + ([ATTACHMENT_FIELD] if update.attachment else [])
        if not sent:
            raise PreconditionError("No ticket fields to update", reason="empty_update")

        response = self._send("PATCH", url, f"PATCH ticket {ticket_id}",
                              files=self._multipart(fields, update.attachment))
        data = _body(response)
        ignored = self._ignored_fields(data, fields) if response.ok else []
        if response.status_code not in PATCH_REJECTED and not ignored:
            logger.info(f"Ticket {ticket_id} patched ({response.status_code}): {sent}")
            return TicketEditResult(status=response.status_code, data=data, sent_fields=sent, method="PATCH", url=url)

        logger.warning(f"PATCH ticket {ticket_id} not applied (status={response.status_code}, "
                       f"ignored={ignored}); retrying as PUT")
        full_fields = self._full_ticket_fields(url, fields)
        response = self._send("PUT", url, f"PUT ticket {ticket_id}",
                              files=self._multipart(full_fields, update.attachment))
        logger.info(f"Ticket {ticket_id} replaced ({response.status_code}): {sent}")
        return TicketEditResult(status=response.status_code, data=_body(response), sent_fields=sent,
                                method="PUT", url=url, ignored_fields=ignored)
