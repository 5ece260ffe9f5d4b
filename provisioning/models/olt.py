from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class OdbSummary(BaseModel):
    """One optical distribution box as listed by the OLT manager."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: Optional[str] = None
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None


class OdbPorts(BaseModel):
    external_id: str
    ports: List[str] = Field(default_factory=list, description="Free port labels, in the order the OLT lists them.")
    fallback: bool = Field(False, description="True when the OLT could not be read and a default port range is offered.")
    error: Optional[str] = None
