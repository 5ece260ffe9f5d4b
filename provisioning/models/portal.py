from typing import Optional
from pydantic import BaseModel, Field

PLACEHOLDER_MARKER = "-----"


class OptionCandidate(BaseModel):
    """
    One <option> of a portal <select>.
    `value` is the opaque id the portal expects, `text` the label we match on.
    """
    value: str = Field("", description="Opaque option id submitted to the portal.")
    text: str = Field("", description="Visible label (stripped).")
    title: str = Field("", description="title attribute, often the full technician name.")
    data_email: str = Field("", description="data-email / data-tecnico-email attribute.")

    @property
    def is_placeholder(self) -> bool:
        return not self.value or PLACEHOLDER_MARKER in self.text


class OptionResolution(BaseModel):
    """Outcome of resolving a business name against a dropdown."""
    value: str = ""
    text: str = ""
    via: str = Field("none", description="correction | exact | structured | fuzzy | default | none")
    score: float = 0.0

    @property
    def resolved(self) -> bool:
        return bool(self.value)


class PortalResult(BaseModel):
    """Classified outcome of a form submission or portal action."""
    status: int
    location: Optional[str] = None
    outcome: str = Field("success", description="success | redirect")
    sent_fields: list[str] = Field(default_factory=list)
