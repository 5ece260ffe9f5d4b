"""
Inbound commands.

Callers historically sent the same logical field under several names
(`tecnicoName`, `technicianName`, `tecnico_name`...). Each field lists the
names it accepts, in priority order, and is resolved once here so the
workflows only ever see the canonical attribute.
"""
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


DEFAULT_SUBJECT = "Reinstalación de servicio"
DEFAULT_DEPARTMENT = "Otro"
DEFAULT_DESCRIPTION = "Ticket automático"


def aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ActivationRequest(Command):
    client_name: Optional[str] = Field(None, validation_alias=aliases("client_name", "clientName", "nombreCliente"))
    installation_request_id: Optional[int] = Field(
        None, validation_alias=aliases("installation_request_id", "installationRequestId", "requestId")
    )
    technician_name: str = Field(..., validation_alias=aliases("technician_name", "technicianName", "tecnicoName", "tecnico"))
    plan_name: Optional[str] = Field(None, validation_alias=aliases("plan_name", "planName", "plan"))
    zone_name: Optional[str] = Field(None, validation_alias=aliases("zone_name", "zonaName", "zoneName", "zona"))
    router_name: Optional[str] = Field(None, validation_alias=aliases("router_name", "routerName", "router"))
    ap_name: Optional[str] = Field(None, validation_alias=aliases("ap_name", "apName", "ap"))
    comments: Optional[str] = Field(None, validation_alias=aliases("comments", "comentarios"))
    agreed_installation_date: Optional[datetime] = Field(
        None, validation_alias=aliases("agreed_installation_date", "agreedInstallationDate", "fechaInstalacion")
    )


class TicketRequest(Command):
    """Portal ticket creation."""
    category_id: str = Field(..., validation_alias=aliases("category_id", "ticketCategoryId", "categoryId", "categoria"))
    technician_id: Optional[str] = Field(None, validation_alias=aliases("technician_id", "tecnicoId", "tecnico_id", "tecnico"))
    technician_name: Optional[str] = Field(None, validation_alias=aliases("technician_name", "tecnicoName", "technicianName"))
    default_subject: Optional[str] = Field(None, validation_alias=aliases("default_subject", "asuntosDefault", "asuntos_default"))
    subject: Optional[str] = Field(None, validation_alias=aliases("subject", "asunto"))
    department: Optional[str] = Field(None, validation_alias=aliases("department", "departamento"))
    description: Optional[str] = Field(None, validation_alias=aliases("description", "descripcion"))
    status: Optional[int] = Field(None, validation_alias=aliases("status", "estado"))
    priority: Optional[int] = Field(None, validation_alias=aliases("priority", "prioridad"))
    start_time: Optional[str] = Field(None, validation_alias=aliases("start_time", "fechaInicio", "fecha_inicio"))
    end_time: Optional[str] = Field(None, validation_alias=aliases("end_time", "fechaFinal", "fecha_final"))
    attachment: Optional[bytes] = Field(None, validation_alias=aliases("attachment", "archivoTicket"))
    attachment_path: Optional[str] = Field(None, validation_alias=aliases("attachment_path", "archivoTicketPath"))

    @field_validator("category_id", "technician_id", mode="before")
    @classmethod
    def _as_text(cls, value):
        return None if value is None else str(value).strip()

    def form_updates(self) -> Dict[str, Any]:
        """Ticket form fields this command sets. Unset optional ones stay untouched."""
        updates = {
            "asunto": self.subject or DEFAULT_SUBJECT,
            "departamento": self.department or DEFAULT_DEPARTMENT,
            "descripcion": self.description or DEFAULT_DESCRIPTION,
            "estado": str(self.status or 1),
            "prioridad": str(self.priority or 1),
        }
        if self.default_subject:
            updates["asuntos_default"] = self.default_subject
        if self.start_time:
            updates["fecha_inicio"] = self.start_time
        if self.end_time:
            updates["fecha_final"] = self.end_time
        return updates


class TicketUpdate(Command):
    """Partial update of a ticket through the REST ticketing API."""
    default_subject: Optional[str] = Field(None, validation_alias=aliases("asuntos_default", "asuntosDefault"))
    subject: Optional[str] = Field(None, validation_alias=aliases("asunto", "subject"))
    description: Optional[str] = Field(None, validation_alias=aliases("descripcion", "description"))
    status: Optional[str] = Field(None, validation_alias=aliases("estado", "status"))
    priority: Optional[str] = Field(None, validation_alias=aliases("prioridad", "priority"))
    service: Optional[str] = Field(None, validation_alias=aliases("servicio", "service"))
    start_time: Optional[str] = Field(None, validation_alias=aliases("fecha_inicio", "fechaInicio"))
    end_time: Optional[str] = Field(None, validation_alias=aliases("fecha_final", "fechaFinal"))
    report_origin: Optional[str] = Field(None, validation_alias=aliases("origen_reporte", "origenReporte"))
    department: Optional[str] = Field(None, validation_alias=aliases("departamento", "department"))
    technician_email: Optional[str] = Field(None, validation_alias=aliases("email_tecnico", "emailTecnico"))
    technician_id: Optional[str] = Field(None, validation_alias=aliases("tecnico", "tecnicoId", "tecnico_id"))
    technician_name: Optional[str] = Field(None, validation_alias=aliases("tecnicoName", "technicianName", "tecnico_name"))
    attachment: Optional[bytes] = Field(None, validation_alias=aliases("archivo_ticket", "archivoTicket"))

    @field_validator("status", "priority", "service", "technician_id", mode="before")
    @classmethod
    def _as_text(cls, value):
        return None if value is None else str(value)

    # remote field name -> attribute, in the order the API documents them
    REMOTE_FIELDS: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("asuntos_default", "default_subject"),
        ("asunto", "subject"),
        ("descripcion", "description"),
        ("estado", "status"),
        ("prioridad", "priority"),
        ("servicio", "service"),
        ("fecha_inicio", "start_time"),
        ("fecha_final", "end_time"),
        ("origen_reporte", "report_origin"),
        ("departamento", "department"),
        ("email_tecnico", "technician_email"),
        ("tecnico", "technician_id"),
    )

    def remote_fields(self) -> List[Tuple[str, str]]:
        """Non-empty (remote_name, value) pairs, trimmed."""
        fields = []
        for remote_name, attr in self.REMOTE_FIELDS:
            value = getattr(self, attr)
            if value is not None and str(value).strip():
                fields.append((remote_name, str(value).strip()))
        return fields
