from typing import Any, List, Optional
from pydantic import BaseModel, Field


class StaffMember(BaseModel):
    id: str
    nombre: str
    email: Optional[str] = None


class TicketMatch(BaseModel):
    id_ticket: str
    servicio_nombre: str


class TicketSearchResult(BaseModel):
    id_ticket: Optional[str] = Field(None, description="First match, if any.")
    matches: List[TicketMatch] = Field(default_factory=list)
    scanned: int = 0
    pages: int = 0


class TicketEditResult(BaseModel):
    status: int
    data: Any = None
    sent_fields: List[str] = Field(default_factory=list)
    method: str = "PATCH"
    url: str
    ignored_fields: List[str] = Field(default_factory=list, description="Sent fields the PATCH echo did not reflect.")
