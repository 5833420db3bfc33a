import asyncio
import random
import pytest
from shared.coordinator import BookingCoordinator
from shared.inventory import RideInventory
from shared.ledger import RequestLedger
from shared.errors import (
    DuplicateRequestError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RetryableError,
)
from shared.models import Decision, Outcome, RegisteredIdentity, RequestStatus
from shared.storage import MemoryStorage
from conftest import DRIVER, GUEST, OTHER_DRIVER, PASSENGER, SECOND_PASSENGER, ride_details


async def assert_seat_invariant(storage, ride_id):
    ride = await storage.get_ride(ride_id)
    approved = await storage.list_requests(ride_id=ride_id, status=RequestStatus.approved)
    assert ride.available_seats == ride.total_seats - sum(r.seats_requested for r in approved)
    assert 0 <= ride.available_seats <= ride.total_seats


async def test_approve_takes_seats(inventory, ledger, coordinator, storage):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 2)

    result = await coordinator.decide(request.id, Decision.approve, DRIVER)

    assert result.outcome == Outcome.approved
    assert result.request.status == RequestStatus.approved
    assert result.ride.available_seats == 2
    assert (await inventory.get_ride(ride.id)).available_seats == 2
    await assert_seat_invariant(storage, ride.id)


async def test_approve_without_enough_seats_auto_denies(inventory, ledger, coordinator, storage):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    first = await ledger.create_request(ride.id, PASSENGER, 2)
    await coordinator.decide(first.id, Decision.approve, DRIVER)
    second = await ledger.create_request(ride.id, SECOND_PASSENGER, 3)

    result = await coordinator.decide(second.id, Decision.approve, DRIVER)

    assert result.outcome == Outcome.auto_denied
    assert result.request.status == RequestStatus.denied
    assert (await inventory.get_ride(ride.id)).available_seats == 2
    await assert_seat_invariant(storage, ride.id)


async def test_duplicate_request_from_same_passenger(inventory, ledger):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    await ledger.create_request(ride.id, PASSENGER, 1)
    with pytest.raises(DuplicateRequestError):
        await ledger.create_request(ride.id, PASSENGER, 1)


async def test_deny_leaves_seats_untouched(inventory, ledger, coordinator):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 2)

    result = await coordinator.decide(request.id, Decision.deny, DRIVER)

    assert result.outcome == Outcome.denied
    assert result.request.status == RequestStatus.denied
    assert (await inventory.get_ride(ride.id)).available_seats == 4


async def test_second_deny_is_an_invalid_transition(inventory, ledger, coordinator):
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)

    await coordinator.decide(request.id, Decision.deny, DRIVER)
    with pytest.raises(InvalidTransitionError):
        await coordinator.decide(request.id, Decision.deny, DRIVER)


async def test_decisions_are_final(inventory, ledger, coordinator):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    approved = await ledger.create_request(ride.id, PASSENGER, 1)
    denied = await ledger.create_request(ride.id, SECOND_PASSENGER, 1)
    await coordinator.decide(approved.id, Decision.approve, DRIVER)
    await coordinator.decide(denied.id, Decision.deny, DRIVER)

    for request_id in (approved.id, denied.id):
        for decision in Decision:
            with pytest.raises(InvalidTransitionError):
                await coordinator.decide(request_id, decision, DRIVER)

    assert (await ledger.get_request(approved.id)).status == RequestStatus.approved
    assert (await ledger.get_request(denied.id)).status == RequestStatus.denied
    assert (await inventory.get_ride(ride.id)).available_seats == 3


async def test_concurrent_approvals_cannot_oversell(inventory, ledger, coordinator, storage):
    ride = await inventory.create_ride(ride_details(total_seats=3), DRIVER)
    first = await ledger.create_request(ride.id, PASSENGER, 2)
    second = await ledger.create_request(ride.id, SECOND_PASSENGER, 2)

    results = await asyncio.gather(
        coordinator.decide(first.id, Decision.approve, DRIVER),
        coordinator.decide(second.id, Decision.approve, DRIVER),
    )

    assert sorted(r.outcome.value for r in results) == ["approved", "auto_denied"]
    assert (await inventory.get_ride(ride.id)).available_seats == 1
    await assert_seat_invariant(storage, ride.id)


async def test_approvals_queue_behind_the_ride_lock(inventory, ledger, coordinator, storage):
    ride = await inventory.create_ride(ride_details(total_seats=3), DRIVER)
    first = await ledger.create_request(ride.id, PASSENGER, 2)
    second = await ledger.create_request(ride.id, SECOND_PASSENGER, 2)

    async with storage.ride_lock(ride.id):
        tasks = [
            asyncio.create_task(coordinator.decide(first.id, Decision.approve, DRIVER)),
            asyncio.create_task(coordinator.decide(second.id, Decision.approve, DRIVER)),
        ]
        await asyncio.sleep(0.05)
        assert not any(t.done() for t in tasks)
        assert (await storage.get_ride(ride.id)).available_seats == 3

    results = await asyncio.gather(*tasks)
    assert sorted(r.outcome.value for r in results) == ["approved", "auto_denied"]
    assert (await storage.get_ride(ride.id)).available_seats == 1


async def test_many_concurrent_decisions_keep_the_invariant(inventory, ledger, coordinator, storage):
    ride = await inventory.create_ride(ride_details(total_seats=10), DRIVER)
    rng = random.Random(7)
    requests = [
        await ledger.create_request(ride.id, RegisteredIdentity(user_id=f"p-{i}"), rng.randint(1, 4))
        for i in range(12)
    ]
    decisions = [rng.choice(list(Decision)) for _ in requests]

    results = await asyncio.gather(
        *(coordinator.decide(r.id, d, DRIVER) for r, d in zip(requests, decisions))
    )

    await assert_seat_invariant(storage, ride.id)
    for result, decision in zip(results, decisions):
        if decision == Decision.deny:
            assert result.outcome == Outcome.denied
        assert result.request.status != RequestStatus.pending


async def test_only_ride_owner_can_decide(inventory, ledger, coordinator):
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)

    with pytest.raises(PermissionDeniedError):
        await coordinator.decide(request.id, Decision.approve, OTHER_DRIVER)
    with pytest.raises(PermissionDeniedError):
        await coordinator.decide(request.id, Decision.approve, PASSENGER)
    with pytest.raises(PermissionDeniedError):
        await coordinator.decide(request.id, Decision.approve, None)
    assert (await ledger.get_request(request.id)).status == RequestStatus.pending


async def test_guest_posted_rides_cannot_be_decided(inventory, ledger, coordinator):
    ride = await inventory.create_ride(ride_details(), GUEST)
    request = await ledger.create_request(ride.id, PASSENGER, 1)
    with pytest.raises(PermissionDeniedError):
        await coordinator.decide(request.id, Decision.approve, DRIVER)


async def test_decide_missing_request(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.decide("missing", Decision.approve, DRIVER)


async def test_decide_emits_changes(inventory, ledger, coordinator, notifier):
    ride = await inventory.create_ride(ride_details(total_seats=4), DRIVER)
    approved = await ledger.create_request(ride.id, PASSENGER, 2)
    denied = await ledger.create_request(ride.id, SECOND_PASSENGER, 1)
    notifier.events.clear()

    result = await coordinator.decide(approved.id, Decision.approve, DRIVER)
    assert notifier.events == [
        ("request", approved.id, result.request.model_dump(mode="json")),
        ("ride", ride.id, result.ride.model_dump(mode="json")),
    ]

    notifier.events.clear()
    result = await coordinator.decide(denied.id, Decision.deny, DRIVER)
    assert notifier.events == [("request", denied.id, result.request.model_dump(mode="json"))]


async def test_failed_decision_emits_nothing(inventory, ledger, coordinator, notifier):
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)
    await coordinator.decide(request.id, Decision.deny, DRIVER)
    notifier.events.clear()

    with pytest.raises(InvalidTransitionError):
        await coordinator.decide(request.id, Decision.approve, DRIVER)
    assert notifier.events == []


async def test_lock_contention_exhausts_retries(inventory, ledger, storage):
    coordinator = BookingCoordinator(storage, lock_timeout=0.01, max_attempts=3, retry_backoff=0)
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)

    async with storage.ride_lock(ride.id):
        with pytest.raises(RetryableError):
            await coordinator.decide(request.id, Decision.approve, DRIVER)

    assert (await ledger.get_request(request.id)).status == RequestStatus.pending
    assert (await inventory.get_ride(ride.id)).available_seats == ride.total_seats


class FlakyStorage(MemoryStorage):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def approve_request(self, request_id, timeout=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RetryableError()
        return await super().approve_request(request_id, timeout)


async def test_transient_contention_is_retried():
    storage = FlakyStorage(failures=2)
    inventory, ledger = RideInventory(storage), RequestLedger(storage)
    coordinator = BookingCoordinator(storage, max_attempts=3, retry_backoff=0)
    ride = await inventory.create_ride(ride_details(total_seats=2), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 2)

    result = await coordinator.decide(request.id, Decision.approve, DRIVER)

    assert storage.attempts == 3
    assert result.outcome == Outcome.approved
    assert (await inventory.get_ride(ride.id)).available_seats == 0


async def test_retries_are_bounded():
    storage = FlakyStorage(failures=10)
    inventory, ledger = RideInventory(storage), RequestLedger(storage)
    coordinator = BookingCoordinator(storage, max_attempts=3, retry_backoff=0)
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)

    with pytest.raises(RetryableError):
        await coordinator.decide(request.id, Decision.approve, DRIVER)
    assert storage.attempts == 3


async def test_notifier_failure_does_not_undo_a_decision(inventory, ledger, storage):
    class BrokenNotifier:
        async def notify(self, entity_type, entity_id, new_state):
            raise ConnectionError("redis is down")

    coordinator = BookingCoordinator(storage, BrokenNotifier(), retry_backoff=0)
    ride = await inventory.create_ride(ride_details(total_seats=2), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)

    result = await coordinator.decide(request.id, Decision.approve, DRIVER)

    assert result.outcome == Outcome.approved
    assert (await inventory.get_ride(ride.id)).available_seats == 1


async def test_deny_on_a_ride_deleted_mid_decision(inventory, ledger, storage, monkeypatch):
    coordinator = BookingCoordinator(storage, retry_backoff=0)
    ride = await inventory.create_ride(ride_details(), DRIVER)
    request = await ledger.create_request(ride.id, PASSENGER, 1)
    set_request_status = storage.set_request_status

    async def deny_then_delete(request_id, status, timeout=None):
        denied = await set_request_status(request_id, status, timeout)
        await storage.delete_ride(ride.id)
        return denied

    monkeypatch.setattr(storage, "set_request_status", deny_then_delete)

    with pytest.raises(NotFoundError, match=f"Ride {ride.id} not found"):
        await coordinator.decide(request.id, Decision.deny, DRIVER)


@pytest.mark.parametrize("attempts", [0, -1])
def test_max_attempts_must_be_positive(storage, attempts):
    with pytest.raises(ValueError, match="max_attempts"):
        BookingCoordinator(storage, max_attempts=attempts)
