"""
Portal workflows: pre-installation activation, tickets and installation
records. Every write follows the same shape: GET the form, snapshot it,
resolve named references, merge the caller's intent, POST, classify.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

from provisioning.base.errors import (
    NotFoundError,
    PreconditionError,
    ProvisioningError,
    RemoteValidationError,
    SessionExpiredError,
    TransportError,
)
from provisioning.base.http_client import PortalResponse
from provisioning.base.resilient import TRANSPORT_EXCEPTIONS, as_transport_error
from provisioning.base.session_manager import SessionManager, looks_like_login_page
from provisioning.enrichment.option_resolver import (
    CorrectionTables,
    find_best_option,
    first_non_placeholder,
    resolve_option,
)
from provisioning.enrichment.similarity import RECORD_MATCH_THRESHOLD, best_match
from provisioning.models.activation import ActivationContext, ActivationResult, ActivationStage
from provisioning.models.commands import ActivationRequest, TicketRequest
from provisioning.models.portal import OptionResolution, PortalResult
from provisioning.models.records import InstallationRequest
from provisioning.processors.form_snapshot import (
    CSRF_FIELD,
    activation_id_from_url,
    extract_csrf_token,
    extract_form_errors,
    extract_select_options,
    extract_snapshot,
    find_activation_link,
    find_first_ipv4,
    required_empty_fields,
    select_field_names,
    select_options_by_name,
    submit_button_field,
)
from provisioning.processors.merger import map_updates, merge_update
from provisioning.processors.normalize import format_portal_datetime, normalize_identifier
from provisioning.store.base import RecordStore

logger = logging.getLogger("geonet.workflows")

T = TypeVar("T")

PREINSTALL_LIST_PATH = "/preinstalaciones/"
TICKET_CREATE_PATH = "/tickets/agregar/{category}/"
TICKET_DELETE_PATH = "/tickets/eliminar/{ticket_id}/"
INSTALLATION_EDIT_PATH = "/Instalaciones/editar/{external_id}/{installation_id}/"
INSTALLATION_DELETE_PATH = "/Instalaciones/eliminar/{external_id}/"

TICKET_FILE_FIELD = "archivo_ticket"
TICKET_FILE_NAME = "archivo_ticket.bin"


def classify_submission(response: PortalResponse, login_path: str = "/accounts/login/") -> PortalResult:
    """
    Success: a redirect away from the login page, or a 2xx page without
    inline form errors. A 2xx page carrying the framework's error list is a
    RemoteValidationError; 4xx/5xx is a TransportError.
    """
    if response.is_redirect:
        location = response.header("location")
        if looks_like_login_page(None, response.status, location, login_path):
            raise SessionExpiredError("Submission redirected to the login page", detail=location)
        return PortalResult(status=response.status, location=location, outcome="redirect")

    if response.ok:
        errors = extract_form_errors(response.text)
        if errors:
            missing = required_empty_fields(response.text)
            raise RemoteValidationError(
                f"Portal rejected the form ({len(errors)} error(s))",
                errors=errors, missing_fields=missing, detail=response.excerpt(300),
            )
        return PortalResult(status=response.status, location=response.url, outcome="success")

    raise TransportError(f"Portal answered {response.status}", status=response.status,
                         response=response, detail=response.excerpt(300))


class GeonetWorkflows:
    """
    Orchestrates the portal protocols. Stateless apart from the injected
    SessionManager; each call builds its snapshots and contexts from scratch.
    """

    def __init__(self, sessions: SessionManager, store: RecordStore,
                 corrections: Optional[CorrectionTables] = None,
                 form_selector: str = "form"):
        self.sessions = sessions
        self.store = store
        self.corrections = corrections or CorrectionTables.empty()
        self.form_selector = form_selector

    @property
    def login_path(self) -> str:
        return self.sessions.settings.login_path

    async def _with_session_retry(self, label: str, step: Callable[[], Awaitable[T]]) -> T:
        """Run a step; on session expiry force one re-login and run it once more."""
        session = await self.sessions.ensure_session()
        try:
            return await step()
        except SessionExpiredError:
            logger.warning(f"{label}: session expired, logging in again and retrying once")
            await self.sessions.ensure_session(force=True, stale=session)
            return await step()

    async def _load_page(self, path: str, what: str) -> PortalResponse:
        response = await self.sessions.get(path, label=f"GET {what}")
        if response.status == 404:
            raise NotFoundError(f"{what} not found on the portal", reason="portal_page_not_found", detail=path)
        if response.status >= 400:
            raise TransportError(f"GET {what} answered {response.status}", status=response.status,
                                 response=response, detail=response.excerpt(300))
        return response

    def _with_csrf(self, payload: Dict[str, str], page: PortalResponse) -> Dict[str, str]:
        token = extract_csrf_token(page.text)
        if not token and self.sessions.session is not None:
            token = self.sessions.session.csrf_token
        payload[CSRF_FIELD] = token
        return payload

    # ------------------------------------------------------------------ activation

    def _find_record(self, request: ActivationRequest) -> InstallationRequest:
        if request.installation_request_id is not None:
            record = self.store.get_request(request.installation_request_id)
            if record is None:
                raise NotFoundError(f"Installation request {request.installation_request_id} does not exist",
                                    reason="record_not_found")
            return record

        if not request.client_name:
            raise PreconditionError("Either a client name or an installation request id is required",
                                    reason="client_missing")

        record, score = best_match(request.client_name, self.store.list_requests(),
                                   key=lambda r: r.full_name, threshold=RECORD_MATCH_THRESHOLD)
        if record is None:
            raise NotFoundError(f"No installation request matches '{request.client_name}' (best {score:.2f})",
                                reason="record_not_found")
        logger.info(f"Matched '{request.client_name}' to installation request {record.id} ({score:.2f})")
        return record

    async def _find_activation_link(self, client_name: str) -> str:
        listing = await self._load_page(PREINSTALL_LIST_PATH, "pre-installation listing")
        link = find_activation_link(listing.text, client_name, self.sessions.client.base_url)
        if not link:
            raise NotFoundError(f"No pending activation row for '{client_name}'", reason="preinstall_row_not_found")
        return link

    def _resolve_identifiers(self, page: PortalResponse, context: ActivationContext,
                             request: ActivationRequest, plan_name: str):
        tech_options = extract_select_options(page.text, "tecnico")
        plan_options = extract_select_options(page.text, "plan")

        context.technician = find_best_option(tech_options, request.technician_name)
        context.plan = find_best_option(plan_options, plan_name)

        router_options = extract_select_options(page.text, "router_cliente")
        if request.router_name and router_options:
            context.router = find_best_option(router_options, request.router_name)
            if not context.router.resolved:
                fallback = first_non_placeholder(router_options)
                if fallback is not None:
                    context.router = OptionResolution(value=fallback.value, text=fallback.text, via="default")

        context.zone = resolve_option(extract_select_options(page.text, "zona_cliente"),
                                      request.zone_name, self.corrections, kind="zones")
        context.access_point = resolve_option(extract_select_options(page.text, "ap_cliente"),
                                              request.ap_name, self.corrections, kind="access_points")

        missing = context.missing_required()
        if missing:
            raise PreconditionError(f"Could not resolve required activation values: {', '.join(missing)}",
                                    reason=f"{missing[0]}_unresolved")

    @staticmethod
    def external_id_for(record: InstallationRequest, activation_id: Optional[str]) -> str:
        first_token = (record.first_name or "").split()
        slug = first_token[0].lower() if first_token else ""
        return f"{activation_id or record.id}_{slug}"

    def _activation_fields(self, record: InstallationRequest, context: ActivationContext,
                           agreed_date: datetime, comments: Optional[str]) -> Dict[str, str]:
        external_id = self.external_id_for(record, context.activation_id)
        ci = normalize_identifier(record.ci)
        full_name = record.full_name
        fields = {
            "usr-first_name": record.first_name,
            "usr-last_name": record.last_name,
            "usr-email": record.email,
            "usr-password": "{dni_cliente}",
            "perfil-cedula": ci,
            "perfil-direccion": record.address,
            "perfil-external_id": external_id,
            "perfil-localidad": record.neighborhood,
            "perfil-ciudad": record.city,
            "perfil-telefono": record.phone_list,
            "perfil-nombre_facturacion": full_name,
            "perfil-tipo_persona": "2",
            "perfil-tipo_identificacion": "0",
            "perfil-rfc": ci,
            "perfil-cp": record.postal_code,
            "perfil-direccion_facturacion": record.address,
            "perfil-email_facturacion": record.email,
            "perfil-representante_legal": full_name,
            "perfil-cedula_facturacion": ci,
            "perfil-retenciones": "0.00",
            "perfil-retencion_iva": "19.0",
            "cliente-coordenadas": record.coordinates,
            "cliente-fecha_registro": format_portal_datetime(record.created_at),
            "cliente-fecha_instalacion": format_portal_datetime(agreed_date),
            "cliente-costo_instalacion": "0",
            "cliente-comentarios": comments if comments is not None else record.comments,
            "cliente-cliente_rb": external_id,
            "cliente-ip": context.available_ip or "",
            "cliente-plan_internet": context.plan.value,
            "cliente-tecnico": context.technician.value,
            "cliente-estado_instalacion": "1",
            "cliente-external_id": external_id,
        }
        # optional selects only override the form when something was resolved
        for field, resolution in (("cliente-router_cliente", context.router),
                                  ("cliente-zona_cliente", context.zone),
                                  ("cliente-ap_cliente", context.access_point)):
            if resolution.resolved:
                fields[field] = resolution.value
        return fields

    async def activate_preinstallation(self, request: ActivationRequest) -> ActivationResult:
        """
        FindRecord -> FindPreinstallRow -> LoadActivationForm ->
        ResolveIdentifiers -> SubmitActivation -> Done | Failed.
        """
        stages: List[ActivationStage] = []
        current = {"stage": ActivationStage.FIND_RECORD}

        def enter(stage: ActivationStage):
            current["stage"] = stage
            if stage not in stages:
                stages.append(stage)
            logger.debug(f"activation stage: {stage.value}")

        try:
            enter(ActivationStage.FIND_RECORD)
            record = self._find_record(request)
            plan_name = request.plan_name or record.plan
            if not plan_name:
                raise PreconditionError("No plan given and the installation request has none", reason="plan_missing")
            client_name = request.client_name or record.full_name

            enter(ActivationStage.FIND_PREINSTALL_ROW)
            link = await self._with_session_retry(
                "find pre-installation row", lambda: self._find_activation_link(client_name)
            )

            async def load_resolve_submit():
                enter(ActivationStage.LOAD_ACTIVATION_FORM)
                page = await self._load_page(link, "activation form")
                context = ActivationContext(
                    activation_link=link,
                    activation_id=activation_id_from_url(link),
                    available_ip=find_first_ipv4(page.text),
                )
                snapshot = extract_snapshot(page.text, self.form_selector)

                enter(ActivationStage.RESOLVE_IDENTIFIERS)
                self._resolve_identifiers(page, context, request, plan_name)

                enter(ActivationStage.SUBMIT_ACTIVATION)
                agreed_date = record.agreed_installation_date or request.agreed_installation_date
                if agreed_date is None:
                    raise PreconditionError("The installation request has no agreed installation date",
                                            reason="agreed_date_missing")
                fields = self._activation_fields(record, context, agreed_date, request.comments)
                payload = merge_update(snapshot, fields, known_fields=[*snapshot, *fields])
                self._with_csrf(payload, page)

                response = await self.sessions.post(
                    link, data=payload, allow_redirects=False, label="POST activation",
                    headers=self.sessions.csrf_headers(referer=link),
                )
                return context, fields, classify_submission(response, self.login_path)

            context, fields, outcome = await self._with_session_retry("activation", load_resolve_submit)
        except ProvisioningError as e:
            e.stage = current["stage"].value
            stages.append(ActivationStage.FAILED)
            logger.error(f"Activation failed at {e.stage}: {e.message}")
            raise
        except TRANSPORT_EXCEPTIONS as e:
            error = as_transport_error(e, "activation")
            error.stage = current["stage"].value
            stages.append(ActivationStage.FAILED)
            logger.error(f"Activation failed at {error.stage}: {e!r}")
            raise error from e

        warnings = self._persist_agreed_date(record, request)
        stages.append(ActivationStage.DONE)
        logger.info(f"Activation submitted for request {record.id} ({outcome.status} -> {outcome.location})")
        return ActivationResult(
            installation_request_id=record.id,
            activation_link=link,
            external_id=fields["cliente-external_id"],
            technician_id=context.technician.value,
            plan_id=context.plan.value,
            zone_id=context.zone.value,
            router_id=context.router.value,
            ap_id=context.access_point.value,
            available_ip=context.available_ip,
            status=outcome.status,
            location=outcome.location,
            stages=stages,
            warnings=warnings,
        )

    def _persist_agreed_date(self, record: InstallationRequest, request: ActivationRequest) -> List[str]:
        """
        Store a caller-supplied agreed date once the portal accepted it.
        The portal step cannot be undone, so a failed write is reported,
        not raised.
        """
        if record.agreed_installation_date is not None or request.agreed_installation_date is None:
            return []
        try:
            self.store.update_request(record.id, {"agreed_installation_date": request.agreed_installation_date})
        except Exception as e:
            message = (f"Inconsistency: portal activation for request {record.id} succeeded "
                       f"but the agreed installation date could not be stored: {e}")
            logger.error(message)
            return [message]
        return []

    # ------------------------------------------------------------------ tickets

    @staticmethod
    def _read_attachment(command: TicketRequest) -> Optional[bytes]:
        if command.attachment:
            return command.attachment
        if command.attachment_path:
            path = Path(command.attachment_path)
            if not path.is_file():
                raise PreconditionError(f"Attachment {path} does not exist", reason="attachment_missing")
            return path.read_bytes()
        return None

    @staticmethod
    def _discard_staged_file(path: str):
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged attachment {path}: {e}")

    async def _submit_ticket(self, path: str, command: TicketRequest, attachment: Optional[bytes]) -> PortalResult:
        page = await self._load_page(path, "ticket form")
        snapshot = extract_snapshot(page.text, self.form_selector)

        updates: Dict[str, Any] = command.form_updates()
        technician_id = command.technician_id
        if not technician_id and command.technician_name:
            resolution = find_best_option(extract_select_options(page.text, "tecnico"), command.technician_name)
            if resolution.resolved:
                technician_id = resolution.value
            else:
                logger.warning(f"Technician '{command.technician_name}' not offered by the ticket form")
        if technician_id:
            updates["tecnico"] = technician_id

        mapped = map_updates(updates, list(snapshot))
        payload = self._with_csrf(merge_update(snapshot, mapped, list(snapshot)), page)
        files = None
        if attachment:
            files = {TICKET_FILE_FIELD: (TICKET_FILE_NAME, attachment, "application/octet-stream")}

        response = await self.sessions.post(
            path, data=payload, files=files, allow_redirects=False, label="POST ticket",
            headers=self.sessions.csrf_headers(referer=path),
        )
        result = classify_submission(response, self.login_path)
        result.sent_fields = list(mapped)
        return result

    async def create_ticket(self, command: TicketRequest) -> PortalResult:
        path = TICKET_CREATE_PATH.format(category=quote(command.category_id, safe=""))
        try:
            attachment = self._read_attachment(command)
            result = await self._with_session_retry(
                "create ticket", lambda: self._submit_ticket(path, command, attachment)
            )
        finally:
            if command.attachment_path:
                self._discard_staged_file(command.attachment_path)
        logger.info(f"Ticket created in category {command.category_id} ({result.status})")
        return result

    async def _confirm_delete(self, path: str, what: str) -> PortalResult:
        page = await self._load_page(path, what)
        payload = self._with_csrf(extract_snapshot(page.text, self.form_selector), page)
        button = submit_button_field(page.text, self.form_selector)
        if button is not None:
            payload[button[0]] = button[1]
        response = await self.sessions.post(
            path, data=payload, allow_redirects=False, label=f"POST {what}",
            headers=self.sessions.csrf_headers(referer=path),
        )
        return classify_submission(response, self.login_path)

    async def delete_ticket(self, ticket_id) -> PortalResult:
        ticket_id = str(ticket_id or "").strip()
        if not ticket_id:
            raise PreconditionError("ticket id is required", reason="ticket_id_missing")
        path = TICKET_DELETE_PATH.format(ticket_id=quote(ticket_id, safe=""))
        result = await self._with_session_retry("delete ticket", lambda: self._confirm_delete(path, "ticket deletion"))
        logger.info(f"Ticket {ticket_id} deleted ({result.status})")
        return result

    # ------------------------------------------------------------------ installations

    def _resolve_select_labels(self, page: PortalResponse, mapped: Dict[str, Any]) -> Dict[str, Any]:
        """Turn human labels sent for <select> fields into option values."""
        selects = set(select_field_names(page.text, self.form_selector))
        resolved = dict(mapped)
        for field, value in mapped.items():
            if field not in selects or value is None:
                continue
            options = select_options_by_name(page.text, field)
            if any(o.value == str(value) for o in options):
                continue
            resolution = find_best_option(options, str(value))
            if resolution.resolved:
                logger.info(f"{field}: '{value}' -> option {resolution.value} ({resolution.via})")
                resolved[field] = resolution.value
            else:
                logger.warning(f"{field}: no option matches '{value}', sending it as is")
        return resolved

    async def _submit_installation_edit(self, path: str, updates: Dict[str, Any]) -> PortalResult:
        page = await self._load_page(path, "installation form")
        snapshot = extract_snapshot(page.text, self.form_selector)
        if not snapshot:
            raise TransportError("Installation page has no editable form", status=page.status,
                                 response=page, detail=page.excerpt(300))
        known = list(snapshot)
        mapped = self._resolve_select_labels(page, map_updates(updates, known))
        payload = self._with_csrf(merge_update(snapshot, mapped, known), page)

        response = await self.sessions.post(
            path, data=payload, allow_redirects=False, label="POST installation edit",
            headers=self.sessions.csrf_headers(referer=path),
        )
        result = classify_submission(response, self.login_path)
        result.sent_fields = list(mapped)
        return result

    async def edit_installation(self, external_id: str, installation_id, updates: Dict[str, Any]) -> PortalResult:
        external_id = str(external_id or "").strip()
        installation_id = str(installation_id or "").strip()
        if not external_id or not installation_id:
            raise PreconditionError("external id and installation id are required", reason="installation_ref_missing")
        path = INSTALLATION_EDIT_PATH.format(
            external_id=quote(external_id, safe=""), installation_id=quote(installation_id, safe="")
        )
        result = await self._with_session_retry(
            "edit installation", lambda: self._submit_installation_edit(path, updates or {})
        )
        logger.info(f"Installation {external_id}/{installation_id} updated: {result.sent_fields}")
        return result

    async def delete_installation(self, external_id: str) -> PortalResult:
        external_id = str(external_id or "").strip()
        if not external_id:
            raise PreconditionError("external id is required", reason="installation_ref_missing")
        path = INSTALLATION_DELETE_PATH.format(external_id=quote(external_id, safe=""))
        result = await self._with_session_retry(
            "delete installation", lambda: self._confirm_delete(path, "installation deletion")
        )
        logger.info(f"Installation {external_id} deleted ({result.status})")
        return result
