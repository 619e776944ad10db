"""
Shared fixtures: an in-memory container with seeded patients and staff,
a controllable clock, a manual retry scheduler and recording transports.
"""

from datetime import date, datetime, timedelta, timezone
import uuid

import pytest

from rxcare.collaborators import (
    InMemoryMtrDirectory,
    InMemoryPatientDirectory,
    InMemoryUserDirectory,
    MessageContent,
)
from rxcare.config import Settings
from rxcare.container import build_container
from rxcare.db.memory import MemoryAuditStore, MemoryInterventionStore
from rxcare.models.people import MtrReference, Patient, StaffUser
from rxcare.notifications.dispatcher import NotificationChannel

WORKPLACE = "workplace-a"
OTHER_WORKPLACE = "workplace-b"

PHARMACIST_ID = str(uuid.uuid4())
NURSE_ID = str(uuid.uuid4())
PHYSICIAN_ID = str(uuid.uuid4())
OUTSIDER_ID = str(uuid.uuid4())
PATIENT_ID = str(uuid.uuid4())
SECOND_PATIENT_ID = str(uuid.uuid4())
FOREIGN_PATIENT_ID = str(uuid.uuid4())
MTR_ID = str(uuid.uuid4())

STRATEGY = {
    "type": "dose_adjustment",
    "description": "Reduce metformin to 500 mg twice daily",
    "rationale": "eGFR has fallen below 45 mL/min",
    "expected_outcome": "Lactic acidosis risk reduced while glucose stays controlled",
    "priority": "primary",
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class ManualScheduler:
    """Records retries instead of arming timers."""

    def __init__(self):
        self.calls: list[tuple[float, object]] = []
        self.running = True

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    def call_later(self, delay_seconds, factory):
        if not self.running:
            return None
        self.calls.append((delay_seconds, factory))
        return str(len(self.calls))

    async def run_next(self) -> float:
        delay, factory = self.calls.pop(0)
        await factory()
        return delay


class RecordingTransport:
    """Succeeds after failing the first `failures` sends."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.sent: list[tuple[str, MessageContent]] = []

    async def send(self, address: str, content: MessageContent) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("gateway timeout")
        self.sent.append((address, content))


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def email():
    return RecordingTransport()


@pytest.fixture
def sms():
    return RecordingTransport()


@pytest.fixture
def users():
    return InMemoryUserDirectory([
        StaffUser(id=PHARMACIST_ID, workplace_id=WORKPLACE, first_name="Ada", last_name="Obi",
                  email="ada@pharmacy.test", phone_number="+2348000000001"),
        StaffUser(id=NURSE_ID, workplace_id=WORKPLACE, first_name="Bola", last_name="Ade",
                  email="bola@pharmacy.test", role="nurse"),
        StaffUser(id=PHYSICIAN_ID, workplace_id=WORKPLACE, first_name="Chidi", last_name="Eze",
                  email="chidi@pharmacy.test", phone_number="+2348000000003", role="physician"),
        StaffUser(id=OUTSIDER_ID, workplace_id=OTHER_WORKPLACE, first_name="Dayo", last_name="Lawal",
                  email="dayo@elsewhere.test"),
    ])


@pytest.fixture
def patients():
    return InMemoryPatientDirectory([
        Patient(id=PATIENT_ID, tenant_id=WORKPLACE, mrn="MRN-1001", first_name="Grace",
                last_name="Okafor", date_of_birth=date(1950, 6, 1)),
        Patient(id=SECOND_PATIENT_ID, tenant_id=WORKPLACE, mrn="MRN-1002", first_name="Musa",
                last_name="Bello", date_of_birth=date(1985, 1, 20)),
        Patient(id=FOREIGN_PATIENT_ID, tenant_id=OTHER_WORKPLACE, mrn="MRN-9001", first_name="Grace",
                last_name="Other"),
    ])


@pytest.fixture
def mtrs():
    return InMemoryMtrDirectory([
        MtrReference(id=MTR_ID, tenant_id=WORKPLACE, patient_id=PATIENT_ID, review_number="MTR-0001"),
    ])


@pytest.fixture
def container(clock, scheduler, email, sms, users, patients, mtrs):
    return build_container(
        Settings(),
        store=MemoryInterventionStore(),
        audit_store=MemoryAuditStore(),
        patients=patients,
        users=users,
        mtrs=mtrs,
        scheduler=scheduler,
        transports={NotificationChannel.EMAIL: email, NotificationChannel.SMS: sms},
        clock=clock,
    )


@pytest.fixture
def make_intervention(container):
    """Factory creating an intervention through the service."""

    async def factory(tenant_id=WORKPLACE, user_id=PHARMACIST_ID, **overrides):
        payload = {
            "patient_id": PATIENT_ID,
            "category": "drug_therapy_problem",
            "priority": "medium",
            "issue_description": "Duplicate therapy with two ACE inhibitors",
            "strategies": [STRATEGY],
        }
        payload.update(overrides)
        result = await container.interventions.create(payload, user_id, tenant_id)
        return result.intervention

    return factory
