"""Tests for route geometry stitching."""

import math
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from livetrack.models import LatLng, RouteGeometry
from livetrack.routing import RouteCancelledError, RouteServiceError
from livetrack.stitcher import (
    Chunk,
    RouteGeometryStitcher,
    build_cache_key,
    chunk_waypoints,
    stitch_legs,
    straight_line_geometry,
)


class FakeOracle:
    """Routes each leg through its midpoint."""

    def __init__(self, fail_with=None, gate=None):
        self.calls = []
        self.fail_with = fail_with
        self.gate = gate
        self.started = threading.Event()
        self._lock = threading.Lock()

    def fetch_legs(self, waypoints):
        with self._lock:
            self.calls.append(list(waypoints))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        legs = []
        for a, b in zip(waypoints, waypoints[1:]):
            mid = LatLng((a[0] + b[0]) / 2, (a[1] + b[1]) / 2)
            legs.append([LatLng(*a), mid, LatLng(*b)])
        return legs


def make_waypoints(n):
    return [LatLng(17.0 + i * 0.001, 78.0 + i * 0.001) for i in range(n)]


@pytest.fixture
def oracle():
    """Create fake routing oracle."""
    return FakeOracle()


@pytest.fixture
def stitcher(oracle):
    """Create stitcher with the public OSRM waypoint ceiling."""
    s = RouteGeometryStitcher(oracle, max_per_request=25)
    yield s
    s.close()


def test_cache_key_rounds_to_five_decimals():
    """Test float jitter below ~1m maps to the same key."""
    a = build_cache_key("r1", [(17.123451, 78.000001), (17.2, 78.2)])
    b = build_cache_key("r1", [(17.1234512, 78.0000014), (17.2, 78.2)])
    assert a == b
    assert a.startswith("r1::")
    assert build_cache_key("r2", [(17.123451, 78.000001), (17.2, 78.2)]) != a


def test_chunk_small_list_single_chunk():
    pts = make_waypoints(25)
    chunks = chunk_waypoints(pts, 25)
    assert chunks == [Chunk(0, pts)]


def test_chunk_overlap():
    """Test each chunk starts with the last waypoint of the previous one."""
    pts = make_waypoints(30)
    chunks = chunk_waypoints(pts, 25)

    assert [len(c.points) for c in chunks] == [25, 6]
    assert chunks[1].start == 24
    assert chunks[1].points[0] == chunks[0].points[-1]
    assert all(len(c.points) <= 25 for c in chunks)


def test_chunk_long_list():
    pts = make_waypoints(100)
    chunks = chunk_waypoints(pts, 25)

    assert len(chunks) == math.ceil((100 - 1) / (25 - 1))
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.points[0] == prev.points[-1]
    assert chunks[-1].points[-1] == pts[-1]


def test_chunk_rejects_tiny_ceiling():
    with pytest.raises(ValueError):
        chunk_waypoints(make_waypoints(5), 1)


def test_stitch_legs_drops_duplicated_leading_legs():
    """Test a chunk that repeats an already-stitched leg only adds new ones."""
    first = Chunk(0, make_waypoints(3))
    # Second chunk starts one waypoint early, so its first leg repeats leg 1
    second = Chunk(1, make_waypoints(5)[1:])
    legs = stitch_legs([first, second], [[["l0"], ["l1"]], [["l1"], ["l2"], ["l3"]]])
    assert legs == [["l0"], ["l1"], ["l2"], ["l3"]]


def test_short_route_single_request(stitcher, oracle):
    """Test a route under the ceiling uses one request."""
    geometry = stitcher.get_road_geometry("r1", make_waypoints(3))

    assert len(oracle.calls) == 1
    assert len(geometry.legs) == 2
    # 3 stops + 2 midpoints, shared stop collapsed
    assert len(geometry.full_path) == 5


def test_thirty_waypoints_stitched(stitcher, oracle):
    """Test the 30-stop cluster: two requests, n-1 legs, no repeated points."""
    pts = make_waypoints(30)
    geometry = stitcher.get_road_geometry("cluster-30", pts)

    assert len(oracle.calls) == 2
    assert len(oracle.calls[0]) == 25
    assert oracle.calls[1][0] == pts[24]
    assert len(geometry.legs) == len(pts) - 1

    for a, b in zip(geometry.full_path, geometry.full_path[1:]):
        assert a != b
    assert geometry.full_path[0] == pts[0]
    assert geometry.full_path[-1] == pts[-1]
    # Every stop appears on the path in order
    stops_on_path = [p for p in geometry.full_path if p in set(pts)]
    assert stops_on_path == pts

    for i, leg in enumerate(geometry.legs):
        assert leg[0] == pts[i]
        assert leg[-1] == pts[i + 1]


def test_long_route_request_count(stitcher, oracle):
    pts = make_waypoints(73)
    geometry = stitcher.get_road_geometry("r", pts)
    assert len(oracle.calls) == math.ceil((73 - 1) / (25 - 1))
    assert len(geometry.legs) == 72


def test_cached_result_identical(stitcher, oracle):
    """Test a second call returns the same object without another request."""
    pts = make_waypoints(30)
    first = stitcher.get_road_geometry("r1", pts)
    second = stitcher.get_road_geometry("r1", [LatLng(p.lat + 1e-7, p.lng) for p in pts])

    assert second is first
    assert len(oracle.calls) == 2
    assert stitcher.has_cached_geometry("r1", pts)


@pytest.mark.parametrize("waypoints", [
    [],
    [(17.0, 78.0)],
    [(17.0, 78.0), (float("nan"), 78.1)],
    [(float("inf"), 0.0), (None, 1.0), (17.0, 78.0)],
    None,
])
def test_too_few_valid_waypoints(stitcher, oracle, waypoints):
    """Test fewer than two valid stops give an empty geometry, no request."""
    geometry = stitcher.get_road_geometry("r1", waypoints)

    assert geometry == RouteGeometry(full_path=(), legs=())
    assert geometry.is_empty
    assert oracle.calls == []
    assert not stitcher.has_cached_geometry("r1", waypoints)


def test_non_finite_waypoints_filtered(stitcher, oracle):
    pts = [(17.0, 78.0), (float("nan"), 1.0), {"lat": 17.1, "lng": 78.1}]
    geometry = stitcher.get_road_geometry("r1", pts)
    assert oracle.calls == [[LatLng(17.0, 78.0), LatLng(17.1, 78.1)]]
    assert len(geometry.legs) == 1


def test_error_propagates_and_is_not_cached():
    """Test oracle failures reach the caller and the next call retries."""
    error = RouteServiceError("No route", code="NoRoute", status_code=200)
    oracle = FakeOracle(fail_with=error)
    with RouteGeometryStitcher(oracle) as stitcher:
        with pytest.raises(RouteServiceError) as exc_info:
            stitcher.get_road_geometry("r1", make_waypoints(3))
        assert exc_info.value is error

        future = stitcher.resolve("r1", make_waypoints(3))
        with pytest.raises(RouteServiceError):
            future.result(timeout=5)
        assert len(oracle.calls) == 2


def test_failure_removed_from_cache():
    oracle = FakeOracle(fail_with=RouteServiceError("down"))
    with RouteGeometryStitcher(oracle) as stitcher:
        with pytest.raises(RouteServiceError):
            stitcher.get_road_geometry("r1", make_waypoints(3))
        assert not stitcher.has_cached_geometry("r1", make_waypoints(3))
        assert len(stitcher) == 0


def test_single_flight_shares_in_flight_computation():
    """Test concurrent callers for one key share a single resolution."""
    gate = threading.Event()
    oracle = FakeOracle(gate=gate)
    with RouteGeometryStitcher(oracle) as stitcher:
        pts = make_waypoints(4)
        f1 = stitcher.resolve("r1", pts)
        assert oracle.started.wait(5)
        f2 = stitcher.resolve("r1", pts)

        assert f2 is f1
        gate.set()
        assert f1.result(timeout=5) is f2.result(timeout=5)
        assert len(oracle.calls) == 1


def test_different_clusters_resolve_independently(oracle):
    with RouteGeometryStitcher(oracle, executor=ThreadPoolExecutor(max_workers=2)) as stitcher:
        a = stitcher.get_road_geometry("a", make_waypoints(3))
        b = stitcher.get_road_geometry("b", make_waypoints(3))
        assert a == b
        assert a is not b
        assert len(oracle.calls) == 2


def test_cancel_running_resolution_unwinds_cache():
    """Test a cancelled resolution raises and leaves no cache entry."""
    gate = threading.Event()
    oracle = FakeOracle(gate=gate)
    with RouteGeometryStitcher(oracle, max_per_request=3) as stitcher:
        pts = make_waypoints(7)
        future = stitcher.resolve("r1", pts)
        assert oracle.started.wait(5)

        assert stitcher.cancel("r1", pts) is True
        gate.set()

        with pytest.raises(RouteCancelledError):
            future.result(timeout=5)
        assert len(oracle.calls) == 1
        assert not stitcher.has_cached_geometry("r1", pts)

        # A later call starts over
        oracle.gate = None
        geometry = stitcher.get_road_geometry("r1", pts)
        assert len(geometry.legs) == 6


def test_cancel_running_single_chunk_resolution():
    """Test cancelling during the only routing request still unwinds the entry."""
    gate = threading.Event()
    oracle = FakeOracle(gate=gate)
    with RouteGeometryStitcher(oracle, max_per_request=25) as stitcher:
        pts = make_waypoints(3)
        future = stitcher.resolve("r1", pts)
        assert oracle.started.wait(5)

        assert stitcher.cancel("r1", pts) is True
        gate.set()

        with pytest.raises(RouteCancelledError):
            future.result(timeout=5)
        assert len(oracle.calls) == 1
        assert not stitcher.has_cached_geometry("r1", pts)
        assert len(stitcher) == 0


def test_cancel_nothing_in_flight(stitcher):
    pts = make_waypoints(3)
    assert stitcher.cancel("r1", pts) is False
    stitcher.get_road_geometry("r1", pts)
    assert stitcher.cancel("r1", pts) is False
    assert stitcher.has_cached_geometry("r1", pts)


def test_lru_bound(oracle):
    """Test the oldest resolved entry is evicted past the bound."""
    with RouteGeometryStitcher(oracle, cache_max_entries=2) as stitcher:
        pts = make_waypoints(3)
        stitcher.get_road_geometry("a", pts)
        stitcher.get_road_geometry("b", pts)
        stitcher.get_road_geometry("a", pts)  # refresh a
        stitcher.get_road_geometry("c", pts)

        assert stitcher.has_cached_geometry("a", pts)
        assert not stitcher.has_cached_geometry("b", pts)
        assert stitcher.has_cached_geometry("c", pts)


def test_clear_cache(stitcher, oracle):
    pts = make_waypoints(3)
    stitcher.get_road_geometry("r1", pts)
    stitcher.clear_cache()
    stitcher.get_road_geometry("r1", pts)
    assert len(oracle.calls) == 2


def test_straight_line_geometry():
    """Test the fallback connects stops with straight segments."""
    pts = [(17.0, 78.0), (17.1, 78.1), (17.1, 78.1), (17.2, 78.2)]
    geometry = straight_line_geometry(pts)

    assert len(geometry.legs) == 3
    assert geometry.full_path == (LatLng(17.0, 78.0), LatLng(17.1, 78.1), LatLng(17.2, 78.2))
    assert straight_line_geometry([(1.0, 1.0)]).is_empty


def test_to_dict():
    geometry = straight_line_geometry([(17.0, 78.0), (17.1, 78.1)])
    d = geometry.to_dict()
    assert d["fullPath"][0] == {"lat": 17.0, "lng": 78.0}
    assert len(d["legs"]) == 1
