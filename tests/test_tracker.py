"""Tests for VehicleTracker with an in-memory Tranzy client."""

import datetime
import math
import time

import orjson
import pytest

from transit_eta.core.arrival import calculate_arrivals_for_stop
from transit_eta.core.broadcaster import Broadcaster
from transit_eta.core.distance import ShapeIndex, project_stop_to_shape
from transit_eta.core.models import ArrivalStatus, Coordinate, RouteShape, Stop, Trip, TripStopTime, Vehicle
from transit_eta.core.movement import enhance_vehicles_with_predictions
from transit_eta.core.tracker import TransitDataset, VehicleTracker

LON = 23.600
M_PER_DEG_LAT = 111_195.0


class FakeTranzy:
    agency_id = 2

    def __init__(self, stops=None, vehicles=None):
        self.stops = stops if stops is not None else make_stops()
        self.vehicles = vehicles if vehicles is not None else make_vehicles()

    async def fetch_stops(self):
        return self.stops

    async def fetch_trips(self):
        return [Trip("t1", route_id=5, shape_id="s1"), Trip("t2", route_id=6, shape_id="missing")]

    async def fetch_stop_times(self):
        return [TripStopTime("t1", stop_id, seq) for seq, stop_id in enumerate([1, 2, 3], start=1)] + [
            TripStopTime("t2", 3, 1), TripStopTime("t2", 2, 2),
        ]

    async def fetch_shapes(self):
        return {"s1": RouteShape.from_points("s1", [Coordinate(46.770 + 0.005 * i, LON) for i in range(3)])}

    async def fetch_vehicles(self):
        return self.vehicles


def make_stops(offset=0.0):
    return [
        Stop(1, "A", Coordinate(46.772 + offset, LON)),
        Stop(2, "B", Coordinate(46.776 + offset, LON)),
        Stop(3, "C", Coordinate(46.779 + offset, LON)),
    ]


def make_vehicles():
    now = datetime.datetime.now(datetime.timezone.utc)
    return [
        Vehicle(1, Coordinate(46.773, LON), 20.0, now - datetime.timedelta(seconds=15), "t1", 5, "101"),
        Vehicle(2, Coordinate(46.776, LON), 0.0, now, "t1", 5, "102"),
        Vehicle(3, Coordinate(46.778, LON), 18.0, now, "t2", 6, "201"),
    ]


async def make_tracker(**kwargs):
    tracker = VehicleTracker(FakeTranzy(**kwargs), Broadcaster())
    await tracker.load_static_data()
    await tracker.poll_vehicles()
    return tracker


@pytest.mark.anyio
async def test_load_static_data_builds_dataset():
    tracker = await make_tracker()
    dataset = tracker.dataset
    assert len(dataset.stops) == 3
    assert set(dataset.trips_by_id) == {"t1", "t2"}
    assert [st.stop_id for st in dataset.stop_times_by_trip["t2"]] == [3, 2]
    assert dataset.loaded_at is not None


@pytest.mark.anyio
async def test_empty_stop_list_keeps_previous_dataset():
    tracker = await make_tracker()
    previous = tracker.dataset
    tracker.tranzy.stops = []
    await tracker.load_static_data()
    assert tracker.dataset is previous


@pytest.mark.anyio
async def test_static_refresh_invalidates_density_center():
    tracker = await make_tracker()
    before = tracker.density_center()
    tracker.tranzy.stops = make_stops(offset=0.1)
    await tracker.load_static_data()
    after = tracker.density_center()
    assert after.lat == pytest.approx(before.lat + 0.1)


@pytest.mark.anyio
async def test_poll_publishes_predictions():
    tracker = await make_tracker()
    assert set(tracker.current_vehicles) == {1, 2, 3}
    assert tracker.current_vehicles[1].prediction.position_applied
    assert tracker.last_poll_at is not None

    snapshot = orjson.loads(tracker.broadcaster.get_current_state())
    assert snapshot["type"] == "update"
    assert {v["id"] for v in snapshot["vehicles"]} == {1, 2, 3}


@pytest.mark.anyio
async def test_arrivals_for_stop():
    tracker = await make_tracker()
    arrivals = tracker.get_arrivals_for_stop(2)
    assert [a["vehicle_id"] for a in arrivals] == [2, 1, 3]
    assert arrivals[0]["status"] == "at_stop"
    assert arrivals[1]["status"] == "in_minutes"
    assert arrivals[1]["time_range"]["min"] <= arrivals[1]["estimated_minutes"] <= arrivals[1]["time_range"]["max"]

    filtered = tracker.get_arrivals_for_stop(2, route_filter=6)
    assert [a["vehicle_id"] for a in filtered] == [3]


@pytest.mark.anyio
async def test_arrivals_for_unknown_stop():
    tracker = await make_tracker()
    assert tracker.get_arrivals_for_stop(999) is None


@pytest.mark.anyio
async def test_stop_arrivals_drop_off_flags():
    tracker = await make_tracker()
    data = tracker.get_stop_arrivals(2)
    assert data["stop_name"] == "B"
    # Trip t2 ends at B, trip t1 continues to C
    assert {a["vehicle_id"]: a["drop_off_only"] for a in data["arrivals"]} == {1: False, 2: False, 3: True}
    assert data["drop_off_only"] is False

    only_t2 = tracker.get_stop_arrivals(2, route_filter=6)
    assert only_t2["drop_off_only"] is True

    assert tracker.get_stop_arrivals(1, route_filter=6)["drop_off_only"] is False
    assert tracker.get_stop_arrivals(999) is None


@pytest.mark.anyio
async def test_static_load_snaps_trip_stops_once(monkeypatch):
    calls = []
    project = ShapeIndex.project

    def counting_project(self, point):
        calls.append(point)
        return project(self, point)

    monkeypatch.setattr(ShapeIndex, "project", counting_project)
    tracker = VehicleTracker(FakeTranzy(), Broadcaster())
    await tracker.load_static_data()
    # Only t1 has a shape; its three stops are snapped while building the dataset
    assert len(calls) == 3

    dataset = tracker.dataset
    for st in dataset.stop_times_by_trip["t1"]:
        project_stop_to_shape(dataset.stops_by_id[st.stop_id], dataset.shapes["s1"])
    assert len(calls) == 3


@pytest.mark.anyio
async def test_diagnostics():
    tracker = await make_tracker()
    diag = tracker.get_diagnostics()
    assert diag["total_stops"] == 3
    assert diag["trips_without_shape"] == 1
    assert diag["vehicles_with_known_trip"] == 3
    assert diag["vehicles_by_route"] == {"5": 2, "6": 1}
    assert diag["predictions"]["total_vehicles"] == 3
    assert diag["density_center"] is not None


def test_dense_network_projects_each_vehicle_a_bounded_number_of_times(monkeypatch):
    """400-point shape, 40 stops, 50 vehicles: stop projections come from the dataset."""
    points = [Coordinate(46.70 + 0.0005 * i, LON + 0.001 * math.sin(i / 10)) for i in range(400)]
    stops = [Stop(100 + k, f"S{k}", points[10 * k]) for k in range(40)]
    stop_times = [TripStopTime("t1", s.id, seq) for seq, s in enumerate(stops, start=1)]
    trips = [Trip("t1", route_id=5, shape_id="s1")]
    dataset = TransitDataset.build(stops, trips, stop_times, {"s1": RouteShape.from_points("s1", points)})

    now = datetime.datetime.now(datetime.timezone.utc)
    vehicles = [
        Vehicle(k, points[3 + 7 * k], 25.0, now - datetime.timedelta(seconds=20), "t1", 5)
        for k in range(50)
    ]

    calls = []
    project = ShapeIndex.project

    def counting_project(self, point):
        calls.append(point)
        return project(self, point)

    monkeypatch.setattr(ShapeIndex, "project", counting_project)
    started = time.perf_counter()

    enhanced = enhance_vehicles_with_predictions(
        vehicles, dataset.shapes, dataset.stop_times_by_trip, dataset.stops_by_id,
        trips=dataset.trips_by_id.values(), now=now,
    )
    results = calculate_arrivals_for_stop(
        stops[-1], vehicles, dataset.trips_by_id, dataset.stop_times_by_trip,
        dataset.stops_by_id, dataset.shapes,
    )

    elapsed = time.perf_counter() - started
    assert len(enhanced) == 50
    assert len(results) == 50
    assert all(r.status == ArrivalStatus.IN_MINUTES for r in results)
    # Vehicle fixes and leg endpoints only; no per-stop projections
    assert len(calls) <= 6 * len(vehicles)
    assert elapsed < 5.0
