import asyncio
import datetime as dt
import threading
from types import SimpleNamespace

import pytest

from taxiinsta.models import RideState, Role
from taxiinsta.services import dispatch, lifecycle
from taxiinsta.services.fanout import FanoutHub, Interest, interests_for
from taxiinsta.web.realtime import _shown_in_snapshot

PICKUP = (-23.5505, -46.6333)
SECOND_RIDE = "7f1c6a3e-0000-4000-8000-000000000002"
T0 = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _ride(state=RideState.REQUESTED, driver_id=None, ride_id="7f1c6a3e-0000-4000-8000-000000000001", updated_at=None):
    now = dt.datetime.now(dt.timezone.utc)
    return SimpleNamespace(
        id=ride_id,
        passenger_id="pat",
        passenger_name="Pat",
        driver_id=driver_id,
        state=state.value,
        pickup_lat=PICKUP[0],
        pickup_lon=PICKUP[1],
        pickup_address=None,
        dropoff_lat=None,
        dropoff_lon=None,
        dropoff_address=None,
        fare_estimate=None,
        driver_lat=None,
        driver_lon=None,
        driver_location_at=None,
        cancelled_by=None,
        cancel_reason=None,
        created_at=now,
        updated_at=updated_at or now,
    )


def _types(sub):
    return [e.type for e in sub.drain()]


def test_interests_per_role():
    assert interests_for(Role.PASSENGER) == {Interest.OWN_RIDES}
    assert interests_for(Role.DRIVER) == {Interest.OWN_RIDES, Interest.PENDING_POOL}
    assert interests_for(Role.ADMIN) == {Interest.ALL_RIDES}


def test_new_request_offered_to_idle_drivers_only():
    hub = FanoutHub(queue_size=8)
    pat = hub.subscribe("pat", Role.PASSENGER)
    idle = hub.subscribe("dora", Role.DRIVER)
    busy = hub.subscribe("otto", Role.DRIVER)
    hub.register_snapshot(busy, active_ride=_ride(RideState.ASSIGNED, driver_id="otto", ride_id=SECOND_RIDE))
    stranger = hub.subscribe("paula", Role.PASSENGER)
    admin = hub.subscribe("ada", Role.ADMIN)

    delivered = hub.publish_ride(_ride(), "ride.requested")

    assert delivered == 3
    assert _types(pat) == ["ride.requested"]
    assert _types(idle) == ["ride.offered"]
    assert _types(busy) == []
    assert _types(stranger) == []
    assert _types(admin) == ["ride.requested"]


def test_claim_withdraws_offer_from_other_drivers():
    hub = FanoutHub(queue_size=8)
    winner = hub.subscribe("dora", Role.DRIVER)
    loser = hub.subscribe("otto", Role.DRIVER)
    hub.publish_ride(_ride(), "ride.requested")

    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated", previous_state=RideState.REQUESTED)

    assert _types(winner) == ["ride.offered", "ride.updated"]
    # the stale offer is discarded, only the withdrawal remains
    events = loser.drain()
    assert [e.type for e in events] == ["offer.withdrawn"]
    assert events[0].ride is None

    hub.publish_ride(_ride(ride_id=SECOND_RIDE), "ride.requested")
    assert _types(winner) == []
    assert _types(loser) == ["ride.offered"]


def test_withdrawn_driver_gets_nothing_further_about_the_ride():
    hub = FanoutHub(queue_size=8)
    hub.subscribe("dora", Role.DRIVER)
    loser = hub.subscribe("otto", Role.DRIVER)
    hub.publish_ride(_ride(), "ride.requested")
    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated")
    loser.drain()

    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.location")
    hub.publish_ride(_ride(RideState.ARRIVED_AT_PICKUP, driver_id="dora"), "ride.updated")

    assert loser.drain() == []


def test_passenger_cancel_withdraws_offer():
    hub = FanoutHub(queue_size=8)
    driver = hub.subscribe("dora", Role.DRIVER)
    hub.publish_ride(_ride(), "ride.requested")

    hub.publish_ride(_ride(RideState.CANCELLED), "ride.updated", previous_state=RideState.REQUESTED)

    assert _types(driver) == ["offer.withdrawn"]


def test_driver_is_idle_again_after_ride_ends():
    hub = FanoutHub(queue_size=8)
    driver = hub.subscribe("dora", Role.DRIVER)
    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated")
    hub.publish_ride(_ride(RideState.COMPLETED, driver_id="dora"), "ride.updated")

    hub.publish_ride(_ride(ride_id=SECOND_RIDE), "ride.requested")
    assert _types(driver) == ["ride.updated", "ride.updated", "ride.offered"]


def test_unsubscribe_is_idempotent():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("dora", Role.DRIVER)
    hub.publish_ride(_ride(), "ride.requested")

    hub.unsubscribe(sub)
    hub.unsubscribe(sub)

    assert hub.subscriber_count() == 0
    assert sub.closed is True
    assert hub.publish_ride(_ride(), "ride.requested") == 0


def test_slow_consumer_is_dropped_without_blocking_others():
    hub = FanoutHub(queue_size=2)
    slow = hub.subscribe("pat", Role.PASSENGER)
    admin = hub.subscribe("ada", Role.ADMIN)

    for _ in range(3):
        hub.publish_ride(_ride(), "ride.requested")
        admin.drain()

    assert slow.closed is True
    assert hub.subscriber_count() == 1
    assert hub.publish_ride(_ride(), "ride.requested") == 1


def test_snapshot_offers_are_withdrawn_on_claim():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("otto", Role.DRIVER)
    assert hub.register_snapshot(sub, offers=[_ride()]) == 0

    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated")

    assert _types(sub) == ["offer.withdrawn"]


def test_next_event_times_out_and_ends_on_close():
    hub = FanoutHub(queue_size=8)

    async def _scenario():
        sub = hub.subscribe("pat", Role.PASSENGER, loop=asyncio.get_running_loop())
        assert await sub.next_event(timeout=0.05) is None

        hub.publish_ride(_ride(), "ride.requested")
        event = await sub.next_event(timeout=1)
        assert event.type == "ride.requested"
        assert event.ride.state == "requested"

        hub.unsubscribe(sub)
        assert await sub.next_event(timeout=1) is None

    asyncio.run(_scenario())


def test_next_event_skips_offers_withdrawn_while_queued():
    hub = FanoutHub(queue_size=8)

    async def _scenario():
        sub = hub.subscribe("otto", Role.DRIVER, loop=asyncio.get_running_loop())
        hub.publish_ride(_ride(), "ride.requested")
        hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated")

        event = await sub.next_event(timeout=1)
        assert event.type == "offer.withdrawn"

    asyncio.run(_scenario())


def test_services_publish_through_the_hub(db, hub, passenger, driver, make_actor):
    other = make_actor("otto", Role.DRIVER)
    pat_sub = hub.subscribe(passenger.user_id, Role.PASSENGER)
    dora_sub = hub.subscribe(driver.user_id, Role.DRIVER)
    otto_sub = hub.subscribe(other.user_id, Role.DRIVER)

    ride = dispatch.request_ride(db, hub, passenger, pickup=PICKUP)
    dispatch.claim_ride(db, hub, driver, ride.id)
    lifecycle.advance_state(db, hub, driver, ride.id, "arrived_at_pickup")

    pat_events = pat_sub.drain()
    assert [(e.type, e.state) for e in pat_events] == [
        ("ride.requested", "requested"),
        ("ride.updated", "assigned"),
        ("ride.updated", "arrived_at_pickup"),
    ]
    assert pat_events[1].ride.driver_id == driver.user_id
    assert _types(dora_sub) == ["ride.offered", "ride.updated", "ride.updated"]
    assert _types(otto_sub) == ["offer.withdrawn"]


@pytest.mark.parametrize("role", [Role.PASSENGER, Role.DRIVER, Role.ADMIN])
def test_subscriptions_have_distinct_ids(role):
    hub = FanoutHub(queue_size=8)
    a = hub.subscribe("same-user", role)
    b = hub.subscribe("same-user", role)
    assert a.id != b.id
    assert hub.subscriber_count() == 2


def test_late_location_after_completion_leaves_driver_idle():
    hub = FanoutHub(queue_size=16)
    driver = hub.subscribe("dora", Role.DRIVER)
    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora", updated_at=T0), "ride.updated")
    hub.publish_ride(
        _ride(RideState.COMPLETED, driver_id="dora", updated_at=T0 + dt.timedelta(minutes=20)),
        "ride.updated",
    )

    # committed while the ride was in progress, published after it completed
    late = _ride(RideState.IN_PROGRESS, driver_id="dora", updated_at=T0 + dt.timedelta(minutes=15))
    assert hub.publish_ride(late, "ride.location") == 0

    hub.publish_ride(_ride(ride_id=SECOND_RIDE), "ride.requested")
    assert _types(driver) == ["ride.updated", "ride.updated", "ride.offered"]


def test_late_request_after_claim_is_never_offered():
    hub = FanoutHub(queue_size=8)
    pat = hub.subscribe("pat", Role.PASSENGER)
    winner = hub.subscribe("dora", Role.DRIVER)
    loser = hub.subscribe("otto", Role.DRIVER)
    requested = _ride(updated_at=T0)

    hub.publish_ride(
        _ride(RideState.ASSIGNED, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=2)),
        "ride.updated",
        previous_state=RideState.REQUESTED,
    )
    assert hub.publish_ride(requested, "ride.requested") == 0

    assert _types(pat) == ["ride.updated"]
    assert _types(winner) == ["ride.updated"]
    assert _types(loser) == []

    hub.publish_ride(
        _ride(RideState.ARRIVED_AT_PICKUP, driver_id="dora", updated_at=T0 + dt.timedelta(minutes=5)),
        "ride.updated",
    )
    assert _types(loser) == []


def test_older_location_at_same_state_is_dropped():
    hub = FanoutHub(queue_size=8)
    pat = hub.subscribe("pat", Role.PASSENGER)
    newer = _ride(RideState.IN_PROGRESS, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=10))
    older = _ride(RideState.IN_PROGRESS, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=5))

    assert hub.publish_ride(newer, "ride.location") == 1
    assert hub.publish_ride(older, "ride.location") == 0
    assert hub.publish_ride(newer, "ride.location") == 1

    assert _types(pat) == ["ride.location", "ride.location"]


def test_naive_store_timestamps_compare_with_aware_ones():
    hub = FanoutHub(queue_size=8)
    pat = hub.subscribe("pat", Role.PASSENGER)
    hub.publish_ride(_ride(updated_at=T0), "ride.requested")

    naive_later = (T0 + dt.timedelta(seconds=1)).replace(tzinfo=None)
    assert hub.publish_ride(_ride(updated_at=naive_later), "ride.requested") == 1
    assert _types(pat) == ["ride.requested", "ride.requested"]


def test_snapshot_offer_claimed_before_registration_is_withdrawn_at_once():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("otto", Role.DRIVER)
    # read from the store while still requested
    requested = _ride(updated_at=T0)
    hub.publish_ride(
        _ride(RideState.ASSIGNED, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=1)),
        "ride.updated",
    )

    assert hub.register_snapshot(sub, offers=[requested]) == 1

    events = sub.drain()
    assert [(e.type, e.state, e.ride) for e in events] == [("offer.withdrawn", "assigned", None)]

    hub.publish_ride(
        _ride(RideState.ARRIVED_AT_PICKUP, driver_id="dora", updated_at=T0 + dt.timedelta(minutes=3)),
        "ride.updated",
    )
    assert sub.drain() == []


def test_snapshot_active_ride_already_finished_leaves_driver_idle():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("dora", Role.DRIVER)
    assigned = _ride(RideState.ASSIGNED, driver_id="dora", updated_at=T0)
    hub.publish_ride(
        _ride(RideState.CANCELLED, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=30)),
        "ride.updated",
    )
    sub.drain()

    hub.register_snapshot(sub, active_ride=assigned)

    hub.publish_ride(_ride(ride_id=SECOND_RIDE), "ride.requested")
    assert _types(sub) == ["ride.offered"]


def test_requests_published_while_snapshot_loads_are_kept():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("dora", Role.DRIVER)

    hub.publish_ride(_ride(updated_at=T0), "ride.requested")
    hub.register_snapshot(sub, offers=[])

    assert _types(sub) == ["ride.offered"]


def test_register_snapshot_ignores_unknown_subscription():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("otto", Role.DRIVER)
    hub.unsubscribe(sub)

    assert hub.register_snapshot(sub, offers=[_ride()]) == 0
    hub.publish_ride(_ride(RideState.ASSIGNED, driver_id="dora"), "ride.updated")
    assert sub.drain() == []


def test_concurrent_publishes_with_overflowing_subscribers_finish():
    hub = FanoutHub(queue_size=1)
    for n in range(4):
        hub.subscribe(f"driver-{n}", Role.DRIVER)
    hub.subscribe("ada", Role.ADMIN)

    def _publisher(worker):
        for i in range(50):
            ride_id = f"7f1c6a3e-0000-4000-8000-{worker:04d}{i:08d}"
            hub.publish_ride(_ride(ride_id=ride_id), "ride.requested")
            hub.publish_ride(_ride(RideState.CANCELLED, ride_id=ride_id), "ride.updated")

    threads = [threading.Thread(target=_publisher, args=(w,), daemon=True) for w in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert not any(t.is_alive() for t in threads)
    assert hub.subscriber_count() == 0


def test_old_rides_are_forgotten_past_the_tracking_limit():
    hub = FanoutHub(queue_size=8, track_limit=2)
    pat = hub.subscribe("pat", Role.PASSENGER)
    first = "7f1c6a3e-0000-4000-8000-00000000000a"
    hub.publish_ride(_ride(RideState.COMPLETED, ride_id=first, updated_at=T0), "ride.updated")
    for n in range(2):
        hub.publish_ride(_ride(ride_id=f"7f1c6a3e-0000-4000-8000-00000000001{n}"), "ride.requested")
    pat.drain()

    # with its history gone the hub can no longer tell the event is late
    assert hub.publish_ride(_ride(ride_id=first, updated_at=T0), "ride.requested") == 1


def test_queued_events_already_in_the_snapshot_are_skipped():
    hub = FanoutHub(queue_size=8)
    sub = hub.subscribe("pat", Role.PASSENGER)
    hub.publish_ride(_ride(updated_at=T0), "ride.requested")
    hub.publish_ride(
        _ride(RideState.ASSIGNED, driver_id="dora", updated_at=T0 + dt.timedelta(seconds=5)),
        "ride.updated",
    )
    # read from the store between the two commits; SQLite returns naive UTC
    stored = _ride(updated_at=T0.replace(tzinfo=None))

    backlog = [e for e in sub.drain() if not _shown_in_snapshot(e, {stored.id: stored})]

    assert [(e.type, e.state) for e in backlog] == [("ride.updated", "assigned")]
