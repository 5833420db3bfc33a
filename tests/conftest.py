from datetime import datetime, timedelta, timezone
import pytest
from fastapi.testclient import TestClient
from shared.coordinator import BookingCoordinator
from shared.event_handler import ChangeNotifier
from shared.inventory import RideInventory
from shared.ledger import RequestLedger
from shared.models import GuestIdentity, RegisteredIdentity, RideCreateRequest
from shared.runtime import build_components
from shared.storage import MemoryStorage

DRIVER = RegisteredIdentity(user_id="driver-1", role="driver")
OTHER_DRIVER = RegisteredIdentity(user_id="driver-2", role="driver")
PASSENGER = RegisteredIdentity(user_id="passenger-1")
SECOND_PASSENGER = RegisteredIdentity(user_id="passenger-2")
GUEST = GuestIdentity(contact_email="guest@campus.edu", contact_name="Guest")


class RecordingNotifier(ChangeNotifier):
    def __init__(self):
        self.events = []

    async def notify(self, entity_type, entity_id, new_state):
        self.events.append((entity_type, entity_id, new_state))
        return str(len(self.events))

    def of_type(self, entity_type):
        return [e for e in self.events if e[0] == entity_type]


def ride_details(total_seats=4, hours_ahead=24, origin="Campus", destination="Airport", **kwargs):
    return RideCreateRequest(
        origin=origin,
        destination=destination,
        departure_time=datetime.now(timezone.utc) + timedelta(hours=hours_ahead),
        total_seats=total_seats,
        **kwargs,
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def inventory(storage, notifier):
    return RideInventory(storage, notifier)


@pytest.fixture
def ledger(storage, notifier):
    return RequestLedger(storage, notifier)


@pytest.fixture
def coordinator(storage, notifier):
    return BookingCoordinator(storage, notifier, lock_timeout=0.5, max_attempts=3, retry_backoff=0)


@pytest.fixture
def components(storage, notifier):
    return build_components("TestService", storage=storage, notifier=notifier)


def _client(monkeypatch, module, components):
    monkeypatch.setattr(module, "components", components)
    return TestClient(module.app)


@pytest.fixture
def ride_client(monkeypatch, components):
    from svc_ride import service
    return _client(monkeypatch, service, components)


@pytest.fixture
def booking_client(monkeypatch, components):
    from svc_booking import service
    return _client(monkeypatch, service, components)


@pytest.fixture
def profile_client(monkeypatch, components):
    from svc_profile import service
    return _client(monkeypatch, service, components)


def auth(identity):
    return {"X-User-Id": identity.user_id, "X-User-Role": identity.role.value}
