"""
Pulls reference data from the portal into the local store:
staff members that can be assigned as technicians, and the sectorial
(distribution node) inventory.
"""
import re
import logging
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from provisioning.base.errors import TransportError
from provisioning.base.session_manager import SessionManager
from provisioning.models.records import SectorialNode, Technician
from provisioning.processors.form_snapshot import parse_html_table, table_rows
from provisioning.processors.normalize import extract_email
from provisioning.store.base import RecordStore

logger = logging.getLogger("geonet.sync")

STAFF_PATH = "/staff/"
STAFF_TABLE = "table#data-table-generic"
TECHNICIAN_LEVELS = ("Administrador", "Tecnico")
DEFAULT_LAST_NAME = "Staff"

# column header fragment -> SectorialNode attribute
SECTORIAL_COLUMNS = {
    "Nombre": "nombre",
    "Tipo": "tipo",
    "Ip": "ip",
    "Usuario": "usuario",
    "Password": "password",
    "Zona": "zona",
    "Coordenadas": "coordenadas",
    "SSID": "ssid",
    "Frecuencia": "frecuencias",
    "Nodo/Torre": "nodo_torre",
    "Comentarios": "comentarios",
    "Acción": "accion",
}


class SyncReport(BaseModel):
    added: int = 0
    details: List[str] = Field(default_factory=list)
    updated: int = 0
    removed: int = 0


async def _fetch(sessions: SessionManager, path: str, what: str) -> str:
    response = await sessions.get(path, label=f"GET {what}")
    if not response.ok:
        raise TransportError(f"GET {what} answered {response.status}", status=response.status,
                             response=response, detail=response.excerpt(300))
    return response.text


def split_staff_name(name: str):
    parts = (name or "").split()
    if not parts:
        return "", DEFAULT_LAST_NAME
    return parts[0], " ".join(parts[1:]) or DEFAULT_LAST_NAME


async def sync_technicians(sessions: SessionManager, store: RecordStore,
                           cookie_file: Optional[str] = None) -> SyncReport:
    """
    Scrape the staff table (name, email, level) and register every
    Administrador/Tecnico with an e-mail the store does not know yet.
    """
    if cookie_file:
        await sessions.seed_from_cookie_file(cookie_file)
    await sessions.ensure_session()

    html = await _fetch(sessions, STAFF_PATH, "staff listing")
    report = SyncReport()
    for cells in table_rows(html, STAFF_TABLE):
        if len(cells) < 3:
            continue
        name, email, level = cells[0], extract_email(cells[1]), cells[2].strip()
        if level not in TECHNICIAN_LEVELS or not email:
            continue
        if store.find_technician_by_email(email) is not None:
            continue

        first_name, last_name = split_staff_name(name)
        saved = store.add_technician(Technician(first_name=first_name, last_name=last_name, email=email))
        report.added += 1
        report.details.append(f"{saved.full_name} <{email}> ({level})")
        logger.info(f"New technician from staff listing: {saved.full_name} <{email}>")

    logger.info(f"Technician sync finished: {report.added} added")
    return report


def _cell(row: Dict[str, str], fragment: str) -> Optional[str]:
    # exact header first ("Ip" would otherwise hit "Tipo"), then containment
    # since headers may carry icons and sort hints
    wanted = fragment.lower()
    for header, value in row.items():
        if header.strip().lower() == wanted:
            return value.strip() or None
    for header, value in row.items():
        if wanted in header.lower():
            return value.strip() or None
    return None


def sectorial_from_row(row: Dict[str, str]) -> Optional[SectorialNode]:
    values = {attr: _cell(row, fragment) for fragment, attr in SECTORIAL_COLUMNS.items()}
    if not values["nombre"]:
        return None
    digits = re.sub(r"\D", "", _cell(row, "Total de Clientes") or "")
    values["total_clientes"] = int(digits) if digits else 0
    values["falla_general"] = "Si" if _cell(row, "Falla General") == "Si" else "No"
    return SectorialNode(**values)


async def import_sectorials(sessions: SessionManager, store: RecordStore, url: str) -> SyncReport:
    """
    Mirror the portal's sectorial table: upsert by name, then drop nodes the
    portal no longer lists. An empty table leaves the store untouched.
    """
    await sessions.ensure_session()
    html = await _fetch(sessions, url, "sectorial listing")

    report = SyncReport()
    seen = []
    for row in parse_html_table(html):
        node = sectorial_from_row(row)
        if node is None:
            continue
        store.upsert_sectorial(node)
        seen.append(node.nombre)
        report.updated += 1

    if not seen:
        logger.warning(f"No sectorial rows found at {url}; store left unchanged")
        return report

    report.removed = store.delete_sectorials_except(seen)
    report.details.append(f"{report.updated} upserted, {report.removed} removed")
    logger.info(f"Sectorial import finished: {report.details[-1]}")
    return report
