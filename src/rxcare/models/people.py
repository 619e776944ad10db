"""
Collaborator Domain Models

Pydantic models for the records owned by neighbouring subsystems:
Patient, StaffUser and MtrReference. Interventions only hold their IDs.
"""

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Patient(BaseModel):
    """
    Patient entity.

    Represents a person receiving pharmacy care in a workplace.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Patient ID")
    tenant_id: str = Field(..., description="Owning workplace")

    # Identifiers
    mrn: str = Field(..., description="Medical Record Number")

    # Demographics
    first_name: str = Field(..., description="First/given name")
    last_name: str = Field(..., description="Last/family name")
    date_of_birth: date | None = Field(default=None, description="Date of birth")

    # Contact
    phone_number: str | None = Field(default=None, description="Primary phone")
    email: str | None = Field(default=None, description="Email address")

    is_deleted: bool = False

    @property
    def full_name(self) -> str:
        """Get full name."""
        return f"{self.first_name} {self.last_name}"

    def age(self, today: date | None = None) -> int | None:
        """Calculate age in whole years, None when the birth date is unknown."""
        if self.date_of_birth is None:
            return None
        today = today or date.today()
        return today.year - self.date_of_birth.year - (
            (today.month, today.day) < (self.date_of_birth.month, self.date_of_birth.day)
        )


class StaffUser(BaseModel):
    """
    Staff user entity.

    A pharmacist, technician or other team member who can identify
    interventions or receive assignments.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="User ID")
    workplace_id: str | None = Field(default=None, description="Workplace the user belongs to")
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone_number: str | None = None
    role: str = Field(default="pharmacist", description="Workplace role")

    # Channel opt-ins
    email_notifications: bool = True
    sms_notifications: bool = False

    @property
    def display_name(self) -> str:
        """Get display name."""
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.id


class MtrReference(BaseModel):
    """Medication Therapy Review record an intervention may link to."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    patient_id: str
    review_number: str | None = None
    status: Literal["in_progress", "completed", "cancelled", "on_hold"] = "in_progress"
