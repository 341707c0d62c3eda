import math

import pytest

from gridlocate.coords import (
    KM_PER_DEGREE,
    MAXIMUM_LONGITUDE,
    CoordHandling,
    SphereCoord,
    SphereCoordHandler,
    TimeCoord,
    TimeCoordHandler,
    coord_to_point,
    make_sphere_coord,
    parse_sphere_coord,
    point_to_coord,
    spheredist,
)
from gridlocate.errors import CoordinateError


def test_parse_sphere_coord():
    assert parse_sphere_coord("40.5,-73.25") == SphereCoord(40.5, -73.25)


@pytest.mark.parametrize("text", ["40.5", "a,b", "1,2,3", "nan,4"])
def test_parse_bad_coord(text):
    with pytest.raises(CoordinateError):
        parse_sphere_coord(text)


def test_validate_rejects_out_of_bounds():
    with pytest.raises(CoordinateError):
        make_sphere_coord(91.0, 0.0, CoordHandling.VALIDATE)


def test_accept_keeps_values():
    assert make_sphere_coord(95.0, 200.0, "accept") == SphereCoord(95.0, 200.0)


@pytest.mark.parametrize(
    "lat, long, expected",
    [
        (95.0, 0.0, SphereCoord(90.0, 0.0)),
        (-100.0, 10.0, SphereCoord(-90.0, 10.0)),
        (0.0, 190.0, SphereCoord(0.0, -170.0)),
        (0.0, -190.0, SphereCoord(0.0, 170.0)),
        (0.0, 180.0, SphereCoord(0.0, -180.0)),
    ],
)
def test_coerce(lat, long, expected):
    coord = make_sphere_coord(lat, long, "coerce")
    assert coord.lat == pytest.approx(expected.lat)
    assert coord.long == pytest.approx(expected.long)
    assert coord.long <= MAXIMUM_LONGITUDE


def test_coerce_warn_warns():
    with pytest.warns(UserWarning):
        coord = make_sphere_coord(0.0, 200.0, "coerce-warn")
    assert coord.long == pytest.approx(-160.0)


def test_spheredist_one_degree_of_longitude_at_equator():
    dist = spheredist(SphereCoord(0.0, 0.0), SphereCoord(0.0, 1.0))
    assert dist == pytest.approx(KM_PER_DEGREE, rel=1e-6)


def test_spheredist_identical_points():
    coord = SphereCoord(33.3, -97.1)
    assert spheredist(coord, coord) == pytest.approx(0.0, abs=1e-3)


def test_spheredist_is_symmetric():
    a, b = SphereCoord(51.5, -0.1), SphereCoord(40.7, -74.0)
    assert spheredist(a, b) == pytest.approx(spheredist(b, a))
    assert 5500 < spheredist(a, b) < 5600


def test_point_round_trip():
    assert point_to_coord(coord_to_point(SphereCoord(1.0, 2.0))) == SphereCoord(1.0, 2.0)
    assert point_to_coord(coord_to_point(TimeCoord(1850.0))) == TimeCoord(1850.0)


def test_handlers():
    assert SphereCoordHandler().format_distance(12.345) == "12.35 km"
    handler = TimeCoordHandler()
    assert handler.distance(TimeCoord(1900.0), TimeCoord(1850.0)) == 50.0
    assert not math.isnan(handler.distance(TimeCoord(0.0), TimeCoord(0.0)))
