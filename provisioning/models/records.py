from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Record(BaseModel):
    """
    Base for locally stored records.
    Accepts both snake_case and the camelCase keys used by the intake API.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class InstallationRequest(Record):
    """
    A customer's installation request as captured by the intake form.
    Owned by the record store; workflows only read it and occasionally
    amend `agreed_installation_date`.
    """
    id: int = Field(..., description="Store primary key.")
    first_name: str = Field("", description="Given name(s).")
    last_name: str = Field("", description="Family name(s).")
    ci: str = Field("", description="National id (RUT / cedula), free format.")
    email: str = ""
    address: str = ""
    coordinates: str = Field("", description="'lat,lng' as typed by the customer.")
    neighborhood: str = ""
    city: str = ""
    postal_code: str = ""
    phone: str = ""
    additional_phone: Optional[str] = None
    comments: str = ""
    plan: Optional[str] = Field(None, description="Commercial plan label, e.g. 'Plan 50MB'.")
    agreed_installation_date: Optional[datetime] = Field(None, description="Required before activation.")
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def phone_list(self) -> str:
        if self.additional_phone:
            return f"{self.phone},{self.additional_phone}"
        return self.phone


class Technician(Record):
    id: Optional[int] = None
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class SectorialNode(Record):
    """A distribution node (sectorial antenna / OLT port) listed by the portal."""
    id: Optional[int] = None
    nombre: str
    tipo: Optional[str] = None
    ip: Optional[str] = None
    usuario: Optional[str] = None
    password: Optional[str] = None
    coordenadas: Optional[str] = None
    zona: Optional[str] = None
    total_clientes: int = 0
    ssid: Optional[str] = None
    frecuencias: Optional[str] = None
    nodo_torre: Optional[str] = None
    comentarios: Optional[str] = None
    falla_general: str = "No"
    accion: Optional[str] = None
