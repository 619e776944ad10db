"""
External Collaborators

Interfaces for the neighbouring subsystems the intervention workflow
reads from or sends through, plus in-memory implementations used in
development and tests:
- Patient, user and MTR directories
- Access gate (RBAC consumed as a yes/no answer)
- Message transports (email, SMS)
"""

from typing import Iterable, Protocol

import httpx
import structlog
from pydantic import BaseModel

from rxcare.models.people import MtrReference, Patient, StaffUser

logger = structlog.get_logger(__name__)


# =============================================================================
# Directories
# =============================================================================

class PatientDirectory(Protocol):
    async def find_by_id(self, patient_id: str, tenant_id: str) -> Patient | None: ...

    async def search(self, query: str, tenant_id: str, limit: int) -> list[Patient]: ...


class UserDirectory(Protocol):
    async def find_by_id(self, user_id: str) -> StaffUser | None: ...


class MtrDirectory(Protocol):
    async def find_by_id(self, mtr_id: str, tenant_id: str) -> MtrReference | None: ...


class InMemoryPatientDirectory:
    """Patient lookups over a dict, scoped by workplace."""

    def __init__(self, patients: Iterable[Patient] = ()):
        self._patients: dict[str, Patient] = {p.id: p for p in patients}

    def add(self, patient: Patient) -> Patient:
        self._patients[patient.id] = patient
        return patient

    async def find_by_id(self, patient_id: str, tenant_id: str) -> Patient | None:
        patient = self._patients.get(patient_id)
        if patient is None or patient.tenant_id != tenant_id or patient.is_deleted:
            return None
        return patient

    async def search(self, query: str, tenant_id: str, limit: int) -> list[Patient]:
        """Case-insensitive substring match on first name, last name or MRN."""
        needle = query.strip().lower()
        matches = [
            p for p in self._patients.values()
            if p.tenant_id == tenant_id and not p.is_deleted and (
                needle in p.first_name.lower()
                or needle in p.last_name.lower()
                or needle in p.mrn.lower()
            )
        ]
        matches.sort(key=lambda p: (p.last_name, p.first_name))
        return matches[:limit]


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[StaffUser] = ()):
        self._users: dict[str, StaffUser] = {u.id: u for u in users}

    def add(self, user: StaffUser) -> StaffUser:
        self._users[user.id] = user
        return user

    async def find_by_id(self, user_id: str) -> StaffUser | None:
        return self._users.get(user_id)


class InMemoryMtrDirectory:
    def __init__(self, reviews: Iterable[MtrReference] = ()):
        self._reviews: dict[str, MtrReference] = {r.id: r for r in reviews}

    def add(self, review: MtrReference) -> MtrReference:
        self._reviews[review.id] = review
        return review

    async def find_by_id(self, mtr_id: str, tenant_id: str) -> MtrReference | None:
        review = self._reviews.get(mtr_id)
        if review is None or review.tenant_id != tenant_id:
            return None
        return review


# =============================================================================
# Access Gate
# =============================================================================

class AccessGate(Protocol):
    async def is_allowed(self, actor_id: str, action: str) -> bool: ...


class AllowAllGate:
    """Permits everything. Development default."""

    async def is_allowed(self, actor_id: str, action: str) -> bool:
        return True


DEFAULT_ACTION_ROLES: dict[str, frozenset[str]] = {
    "intervention:read": frozenset({"pharmacist", "pharmacy_team", "pharmacy_outlet", "owner", "technician"}),
    "intervention:create": frozenset({"pharmacist", "pharmacy_team", "pharmacy_outlet", "owner"}),
    "intervention:update": frozenset({"pharmacist", "pharmacy_team", "pharmacy_outlet", "owner"}),
    "intervention:delete": frozenset({"pharmacy_outlet", "owner"}),
    "intervention:assign": frozenset({"pharmacist", "pharmacy_team", "pharmacy_outlet", "owner"}),
    "intervention:report": frozenset({"pharmacist", "pharmacy_team", "pharmacy_outlet", "owner"}),
    "intervention:export": frozenset({"pharmacy_outlet", "owner"}),
    "intervention:audit": frozenset({"pharmacy_outlet", "owner"}),
}


class RoleAccessGate:
    """
    Static action -> roles table over the user directory.

    Unknown users and unknown actions are denied.
    """

    def __init__(self, users: UserDirectory, action_roles: dict[str, frozenset[str]] | None = None):
        self.users = users
        self.action_roles = action_roles or DEFAULT_ACTION_ROLES

    async def is_allowed(self, actor_id: str, action: str) -> bool:
        user = await self.users.find_by_id(actor_id)
        if user is None:
            return False
        allowed = user.role in self.action_roles.get(action, frozenset())
        if not allowed:
            logger.info("Access denied", user_id=actor_id, action=action, role=user.role)
        return allowed


# =============================================================================
# Message Transports
# =============================================================================

class MessageContent(BaseModel):
    """Rendered notification content."""
    subject: str
    body: str


class MessageTransport(Protocol):
    async def send(self, address: str, content: MessageContent) -> None:
        """Deliver or raise."""
        ...


class LoggingEmailTransport:
    """Email transport that logs instead of sending (no SMTP relay configured)."""

    def __init__(self, from_address: str = "interventions@rxcare.health"):
        self.from_address = from_address

    async def send(self, address: str, content: MessageContent) -> None:
        logger.info(
            "Email notification (simulated)",
            to=address,
            sender=self.from_address,
            subject=content.subject,
        )


class HttpSmsTransport:
    """
    SMS transport posting to an HTTP gateway.

    Usage:
        transport = HttpSmsTransport("https://sms.example/send", token="...")
        await transport.send("+15551234567", content)
    """

    def __init__(self, gateway_url: str, token: str | None = None, timeout: float = 10.0):
        self.gateway_url = gateway_url
        self.token = token
        self.timeout = timeout

    async def send(self, address: str, content: MessageContent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"to": address, "message": f"{content.subject}: {content.body}"[:320]}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.gateway_url, json=payload, headers=headers)
            response.raise_for_status()
        logger.info("SMS notification sent", status_code=response.status_code)
