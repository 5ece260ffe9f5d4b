"""
Command line entry point.

    python -m provisioning.cli activate --client-name "Ana Torres" --technician Carlos
    python -m provisioning.cli delete-ticket 4411
    python -m provisioning.cli search-remote-ticket "Ana Torres"

Results are printed as JSON on stdout; failures as the error's dict with
exit code 1.
"""
import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from provisioning.base.errors import PreconditionError, ProvisioningError, TransportError
from provisioning.base.resilient import TRANSPORT_EXCEPTIONS, as_transport_error
from provisioning.base.session_manager import SessionManager
from provisioning.enrichment.option_resolver import load_corrections
from provisioning.models.commands import ActivationRequest, TicketRequest, TicketUpdate
from provisioning.models.config import Settings, load_settings
from provisioning.portals.geonet.sync import import_sectorials, sync_technicians
from provisioning.portals.geonet.workflows import GeonetWorkflows
from provisioning.portals.smartolt.client import SmartoltClient
from provisioning.portals.wisphub.client import WisphubClient
from provisioning.store.json_store import JsonRecordStore

logger = logging.getLogger("cli")

PortalCall = Callable[[SessionManager, GeonetWorkflows], Awaitable[Any]]


def parse_assignments(items: Optional[List[str]]) -> Dict[str, str]:
    """['estado=2', 'asunto=Corte'] -> {'estado': '2', 'asunto': 'Corte'}"""
    updates = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise PreconditionError(f"Expected key=value, got '{item}'", reason="bad_assignment")
        updates[key.strip()] = value
    return updates


def _read_file(path: Optional[str]) -> Optional[bytes]:
    if not path:
        return None
    file_path = Path(path)
    if not file_path.is_file():
        raise PreconditionError(f"Attachment {file_path} does not exist", reason="attachment_missing")
    return file_path.read_bytes()


def to_jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


async def run_portal(settings: Settings, call: PortalCall) -> Any:
    store = JsonRecordStore(settings.store_dir)
    corrections = load_corrections(settings.corrections_path)
    async with SessionManager(settings.portal, retry=settings.retry) as sessions:
        workflows = GeonetWorkflows(sessions, store, corrections)
        try:
            return await asyncio.wait_for(call(sessions, workflows), settings.workflow_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Workflow did not finish within {settings.workflow_timeout:.0f}s",
                                 reason="workflow_timeout")


def _activate(args) -> PortalCall:
    request = ActivationRequest(
        client_name=args.client_name,
        installation_request_id=args.request_id,
        technician_name=args.technician,
        plan_name=args.plan,
        zone_name=args.zone,
        router_name=args.router,
        ap_name=args.ap,
        comments=args.comments,
        agreed_installation_date=args.agreed_date,
    )
    return lambda sessions, workflows: workflows.activate_preinstallation(request)


def _create_ticket(args) -> PortalCall:
    command = TicketRequest(
        category_id=args.category,
        technician_id=args.technician_id,
        technician_name=args.technician,
        subject=args.subject,
        department=args.department,
        description=args.description,
        status=args.status,
        priority=args.priority,
        start_time=args.start,
        end_time=args.end,
        attachment=_read_file(args.attachment),
    )
    return lambda sessions, workflows: workflows.create_ticket(command)


def _delete_ticket(args) -> PortalCall:
    return lambda sessions, workflows: workflows.delete_ticket(args.ticket_id)


def _edit_installation(args) -> PortalCall:
    updates = parse_assignments(args.set)
    return lambda sessions, workflows: workflows.edit_installation(args.external_id, args.installation_id, updates)


def _delete_installation(args) -> PortalCall:
    return lambda sessions, workflows: workflows.delete_installation(args.external_id)


def _sync_technicians(args) -> PortalCall:
    return lambda sessions, workflows: sync_technicians(sessions, workflows.store, cookie_file=args.cookie_file)


def _import_sectorials(args) -> PortalCall:
    return lambda sessions, workflows: import_sectorials(sessions, workflows.store, args.url)


def _edit_remote_ticket(args, client: WisphubClient):
    update = TicketUpdate.model_validate({**parse_assignments(args.set), "archivo_ticket": _read_file(args.attachment)})
    return client.edit_ticket(args.ticket_id, update)


def _search_remote_ticket(args, client: WisphubClient):
    return client.find_ticket_by_client_name(args.client_name, max_pages=args.max_pages)


def _list_staff(args, client: WisphubClient):
    return client.list_staff(limit=args.limit, offset=args.offset)


def _list_odb_ports(args, client: SmartoltClient):
    return client.available_ports(args.external_id)


def _list_odbs(args, client: SmartoltClient):
    return [odb.model_dump(mode="json") for odb in client.list_odbs()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="provisioning", description="ISP back-office portal automation")
    parser.add_argument("--config", help="YAML settings file (default: $PROVISIONING_CONFIG or ./config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("activate", help="Activate a pending pre-installation")
    p.add_argument("--client-name")
    p.add_argument("--request-id", type=int)
    p.add_argument("--technician", required=True)
    p.add_argument("--plan")
    p.add_argument("--zone")
    p.add_argument("--router")
    p.add_argument("--ap")
    p.add_argument("--comments")
    p.add_argument("--agreed-date", help="ISO date/time, used when the request has none")
    p.set_defaults(portal=_activate)

    p = sub.add_parser("create-ticket", help="Open a ticket on the portal")
    p.add_argument("--category", required=True)
    p.add_argument("--technician-id")
    p.add_argument("--technician", help="Technician name, resolved against the form")
    p.add_argument("--subject")
    p.add_argument("--department")
    p.add_argument("--description")
    p.add_argument("--status", type=int)
    p.add_argument("--priority", type=int)
    p.add_argument("--start")
    p.add_argument("--end")
    p.add_argument("--attachment", help="File to attach")
    p.set_defaults(portal=_create_ticket)

    p = sub.add_parser("delete-ticket", help="Delete a portal ticket")
    p.add_argument("ticket_id")
    p.set_defaults(portal=_delete_ticket)

    p = sub.add_parser("edit-installation", help="Partially update an installation record")
    p.add_argument("external_id")
    p.add_argument("installation_id")
    p.add_argument("--set", action="append", metavar="FIELD=VALUE", help="Repeatable")
    p.set_defaults(portal=_edit_installation)

    p = sub.add_parser("delete-installation", help="Delete an installation record")
    p.add_argument("external_id")
    p.set_defaults(portal=_delete_installation)

    p = sub.add_parser("sync-technicians", help="Import new technicians from the portal staff list")
    p.add_argument("--cookie-file")
    p.set_defaults(portal=_sync_technicians)

    p = sub.add_parser("import-sectorials", help="Mirror the portal's sectorial node table")
    p.add_argument("url")
    p.set_defaults(portal=_import_sectorials)

    p = sub.add_parser("edit-remote-ticket", help="Update a ticket through the ticketing API")
    p.add_argument("ticket_id")
    p.add_argument("--set", action="append", metavar="FIELD=VALUE",
                   help="Repeatable; e.g. estado=2, tecnicoName='Carlos Mendoza'")
    p.add_argument("--attachment")
    p.set_defaults(api=_edit_remote_ticket)

    p = sub.add_parser("search-remote-ticket", help="Find tickets by client name")
    p.add_argument("client_name")
    p.add_argument("--max-pages", type=int, default=10)
    p.set_defaults(api=_search_remote_ticket)

    p = sub.add_parser("list-staff", help="One page of the ticketing staff list")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)
    p.set_defaults(api=_list_staff)

    p = sub.add_parser("list-odb-ports", help="Free ports of an optical distribution box")
    p.add_argument("external_id")
    p.set_defaults(olt=_list_odb_ports)

    p = sub.add_parser("list-odbs", help="Optical distribution boxes known to the OLT")
    p.set_defaults(olt=_list_odbs)

    return parser


def run(args, settings: Settings) -> Any:
    if getattr(args, "portal", None) is not None:
        return asyncio.run(run_portal(settings, args.portal(args)))
    if getattr(args, "olt", None) is not None:
        return args.olt(args, SmartoltClient(settings.olt))
    return args.api(args, WisphubClient(settings.ticketing))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        settings = load_settings(args.config)
        result = run(args, settings)
    except ProvisioningError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps(e.to_dict(), ensure_ascii=False, indent=2))
        return 1
    except ValidationError as e:
        error = PreconditionError(f"Invalid input: {e.error_count()} error(s)", reason="invalid_input", detail=str(e))
        print(json.dumps(error.to_dict(), ensure_ascii=False, indent=2))
        return 1
    except TRANSPORT_EXCEPTIONS as e:
        print(json.dumps(as_transport_error(e, args.command).to_dict(), ensure_ascii=False, indent=2))
        return 1

    print(json.dumps(to_jsonable(result), ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
