from conftest import at, obs
from nsforecast.services.interval_matcher import find_match, find_nearest, within_acceptance_window


def test_picks_closest_to_target():
    candidates = [obs(19, 7.0), obs(26, 7.5)]
    match = find_match(at(0), candidates)
    assert match is not None
    assert match.value == 7.0
    assert match.observation.timestamp == at(19)
    assert match.elapsed_minutes == 19.0


def test_observations_at_or_before_forecast_are_never_candidates():
    assert find_match(at(0), [obs(0, 5.0), obs(-5, 5.0)], tolerance_minutes=60) is None


def test_outside_tolerance_returns_none():
    assert find_match(at(0), [obs(26, 7.5)]) is None
    assert find_match(at(0), [obs(14, 7.5)]) is None


def test_tolerance_boundary_is_inclusive():
    match = find_match(at(0), [obs(25, 7.5)])
    assert match is not None
    assert match.elapsed_minutes == 25.0


def test_tie_goes_to_earliest_candidate():
    candidates = [obs(22, 8.0, "late"), obs(18, 6.0, "early")]
    match = find_match(at(0), candidates)
    assert match.observation.id == "early"


def test_unsorted_candidates_are_handled():
    candidates = [obs(40, 9.0), obs(21, 7.2), obs(5, 5.0)]
    assert find_match(at(0), candidates).value == 7.2


def test_empty_candidates():
    assert find_match(at(0), []) is None


def test_acceptance_window_is_inclusive():
    assert within_acceptance_window(15.0) is True
    assert within_acceptance_window(25.0) is True
    assert within_acceptance_window(14.9) is False
    assert within_acceptance_window(25.1) is False


def test_find_nearest_is_symmetric():
    items = [at(seconds=-20), at(seconds=25)]
    assert find_nearest(at(0), items, key=lambda t: t, tolerance_seconds=30) == at(seconds=-20)
    assert find_nearest(at(0), [at(seconds=31)], key=lambda t: t, tolerance_seconds=30) is None
