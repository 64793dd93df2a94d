import math

import numpy as np
import pytest

from conftest import basis, make_student, shifted
from tardy_scanner.descriptor_store import RosterSnapshot
from tardy_scanner.exceptions import InvalidInput
from tardy_scanner.matcher import MatcherCache, build_matcher, match


def test_empty_roster_is_always_unknown():
    handle = build_matcher([])
    result = match(handle, basis(0))
    assert not result.matched
    assert math.isinf(result.distance)


def test_close_probe_matches_and_far_probe_is_unknown():
    handle = build_matcher([make_student("s1", "Ana", axis=0)])

    near = match(handle, shifted(basis(0), 0.3))
    assert near.identity_id == "s1"
    assert near.distance == pytest.approx(0.3)

    far = match(handle, shifted(basis(0), 0.8))
    assert not far.matched
    assert far.distance == pytest.approx(0.8)


def test_distance_equal_to_threshold_still_matches():
    handle = build_matcher([make_student("s1", "Ana", axis=0)])
    result = match(handle, shifted(basis(0), 0.6))
    assert result.identity_id == "s1"


def test_nearest_reference_wins():
    roster = [
        make_student("s1", "Ana", axis=0),
        make_student("s2", "Budi", axis=1),
        make_student("s3", "Citra", axis=2),
    ]
    handle = build_matcher(roster)
    probe = basis(1) + basis(0, 0.1)
    assert match(handle, probe).identity_id == "s2"


def test_students_without_descriptor_are_skipped():
    handle = build_matcher([make_student("s1", "Ana", axis=None), make_student("s2", "Budi", axis=3)])
    assert handle.identity_ids == ("s2",)


def test_rebuild_with_same_roster_is_equivalent():
    roster = [make_student("s1", "Ana", axis=0), make_student("s2", "Budi", axis=1)]
    first = build_matcher(roster)
    second = build_matcher(list(roster))

    assert first.stamp == second.stamp
    assert np.array_equal(first.matrix, second.matrix)
    for probe in (basis(0), basis(1), shifted(basis(0), 0.5), basis(5)):
        assert match(first, probe) == match(second, probe)


def test_probe_with_wrong_length_is_rejected():
    handle = build_matcher([make_student("s1", "Ana", axis=0)])
    with pytest.raises(InvalidInput):
        match(handle, np.zeros(64))


def test_custom_threshold():
    handle = build_matcher([make_student("s1", "Ana", axis=0)], threshold=0.2)
    assert not match(handle, shifted(basis(0), 0.3)).matched


def test_cache_rebuilds_only_when_roster_content_changes():
    cache = MatcherCache()
    roster = [make_student("s1", "Ana", axis=0)]

    first = cache.handle_for(RosterSnapshot.build(roster, version=1))
    # A new snapshot version with the same descriptors keeps the handle.
    again = cache.handle_for(RosterSnapshot.build(roster, version=2))
    assert again is first
    assert cache.builds == 1

    changed = cache.handle_for(RosterSnapshot.build(roster + [make_student("s2", "Budi", axis=1)], version=3))
    assert changed is not first
    assert changed.size == 2
    assert cache.builds == 2


def test_cache_ignores_edits_that_do_not_touch_descriptors():
    cache = MatcherCache()
    cache.handle_for(RosterSnapshot.build([make_student("s1", "Ana", axis=0)], version=1))
    cache.handle_for(RosterSnapshot.build([make_student("s1", "Ana Putri", axis=0)], version=2))
    assert cache.builds == 1
