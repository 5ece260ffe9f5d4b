from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from provisioning.models.portal import OptionResolution


class ActivationStage(str, Enum):
    FIND_RECORD = "find_record"
    FIND_PREINSTALL_ROW = "find_preinstall_row"
    LOAD_ACTIVATION_FORM = "load_activation_form"
    RESOLVE_IDENTIFIERS = "resolve_identifiers"
    SUBMIT_ACTIVATION = "submit_activation"
    DONE = "done"
    FAILED = "failed"


class ActivationContext(BaseModel):
    """
    Identifiers resolved for a single activation attempt.
    Built fresh per attempt and discarded afterwards.
    """
    activation_link: str
    activation_id: Optional[str] = None
    technician: OptionResolution = Field(default_factory=OptionResolution)
    plan: OptionResolution = Field(default_factory=OptionResolution)
    zone: OptionResolution = Field(default_factory=OptionResolution)
    router: OptionResolution = Field(default_factory=OptionResolution)
    access_point: OptionResolution = Field(default_factory=OptionResolution)
    available_ip: Optional[str] = Field(None, description="First free IP advertised on the activation page.")

    def missing_required(self) -> List[str]:
        missing = []
        if not self.technician.resolved:
            missing.append("technician")
        if not self.plan.resolved:
            missing.append("plan")
        if not self.available_ip:
            missing.append("available_ip")
        return missing


class ActivationResult(BaseModel):
    installation_request_id: int
    activation_link: str
    external_id: str
    technician_id: str
    plan_id: str
    zone_id: str = ""
    router_id: str = ""
    ap_id: str = ""
    available_ip: Optional[str] = None
    status: int
    location: Optional[str] = None
    stages: List[ActivationStage] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
