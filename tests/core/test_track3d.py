from __future__ import annotations

import numpy as np

from depthscene.core.trackers.body import BodyData, dir_diff
from depthscene.core.trackers.kalman import KalVec
from depthscene.core.trackers.track3d import Track3D
from depthscene.core.types import RawHand, RawPerson


class StubDetector:
    """Returns a fixed list of people for every map."""

    def __init__(self, people=None):
        self.people = list(people or [])
        self.blob = 0

    def find_people(self, hmap):
        return list(self.people)

    def person_blob(self, wx, wy):
        return False

    def blob_at(self, wx, wy):
        return self.blob


def _hmap():
    return np.zeros((8, 8), np.uint8)


def _person(x=0.0, y=60.0, z=60.0, hand=False):
    p = RawPerson(x, y, z, blob=1)
    if hand:
        p.hands[1] = RawHand(np.array([10.0, 12.0, -10.0]), np.array([0.0, 1.0, 0.0]), True)
    return p


def test_kalvec_counts_hits_and_misses():
    kv = KalVec(3)
    assert kv.update(np.array([1.0, 2.0, 3.0]), 0.9, 1.0) == 1
    assert kv.x == 1.0 and kv.z == 3.0
    assert kv.update(np.array([1.0, 2.0, 3.0]), 0.9, 1.0) == 2
    assert kv.skip() == 1
    assert kv.skip() == 2
    assert kv.update(np.array([1.0, 2.0, 3.0]), 0.9, 1.0) == 1


def test_kalvec_moves_toward_observation():
    kv = KalVec(1)
    kv.update(np.array([0.0]), 0.9, 1.0)
    kv.update(np.array([10.0]), 0.9, 1.0)
    assert 0.0 < kv.pos[0] <= 10.0


def test_dir_diff_degrees():
    assert abs(dir_diff(np.array([1.0, 0.0, 0.0]), np.array([0.0, 1.0, 0.0])) - 90.0) < 1e-9
    assert dir_diff(np.zeros(3), np.array([0.0, 1.0, 0.0])) == 0.0


def test_person_promoted_after_enough_hits():
    det = StubDetector([_person()])
    trk = Track3D(det)
    for _ in range(4):
        trk.track_people(_hmap())
    assert trk.cnt_tracked() == 0
    assert trk.num_potential() == 1
    trk.track_people(_hmap())
    assert trk.cnt_tracked() == 1
    guy = trk.get_id(1)
    assert guy is not None
    assert np.allclose(guy.pos, [0.0, 60.0, 60.0])
    assert abs(trk.height(0) - 66.5) < 1e-6
    assert trk.closest() == 0
    assert trk.num_raw() == 1


def test_person_dropped_after_misses():
    det = StubDetector([_person()])
    trk = Track3D(det)
    for _ in range(5):
        trk.track_people(_hmap())
    det.people = []
    for _ in range(14):
        trk.track_people(_hmap())
    assert trk.cnt_tracked() == 1
    trk.track_people(_hmap())
    assert trk.cnt_tracked() == 0
    assert trk.track_index(1) == -1


def test_two_people_get_distinct_ids():
    det = StubDetector([_person(-30.0), _person(30.0)])
    trk = Track3D(det)
    for _ in range(6):
        trk.track_people(_hmap())
    ids = sorted(trk.get_person(i).id for i in range(trk.person_lim()))
    assert ids == [1, 2]


def test_far_jump_starts_new_track():
    det = StubDetector([_person()])
    trk = Track3D(det)
    for _ in range(5):
        trk.track_people(_hmap())
    det.people = [_person(x=50.0)]
    trk.track_people(_hmap())
    assert trk.num_potential() == 2
    assert trk.get_person(1).id == 0


def test_hand_becomes_solid_and_points():
    det = StubDetector([_person(hand=True)])
    trk = Track3D(det)
    for _ in range(12):
        trk.track_people(_hmap())
    guy = trk.get_id(1)
    assert guy.hand_ok(1)
    assert not guy.hand_ok(0)
    assert np.allclose(guy.hand_pos(1), [10.0, 72.0, 50.0])
    hit, pt = trk.target_y(0, 1, yoff=120.0)
    assert hit == 2
    assert abs(pt[1] - 120.0) < 1e-6
    hit, pt = trk.target(0, 1)
    assert hit == 1
    assert pt is not None
    assert trk.target(0, 0) == (0, None)


def test_person_touch_marks_nearer_hand():
    det = StubDetector([_person(hand=True)])
    trk = Track3D(det)
    for _ in range(12):
        trk.track_people(_hmap())
    assert trk.person_touch(10.0, 72.0) == 0
    det.blob = 1
    assert trk.person_touch(10.0, 72.0) == 1
    assert trk.get_id(1).busy[1] == 1


def test_names_and_nodes():
    det = StubDetector([_person(-30.0), _person(30.0)])
    trk = Track3D(det)
    for _ in range(6):
        trk.track_people(_hmap())
    assert trk.set_name(1, "Ann") == 1
    assert trk.get_name(1) == "Ann"
    assert trk.set_name(2, "ann") == 1
    assert trk.get_name(1) == ""
    assert trk.set_name(7, "Bob") == 0
    assert trk.set_name(1, None) == -1

    node = object()
    assert trk.set_node(node, 2) == 1
    assert trk.node_id(node) == 2
    assert trk.get_node(2) is node
    assert trk.node_id(None) == 0


def test_raw_queries_use_last_frame():
    det = StubDetector([_person()])
    trk = Track3D(det)
    trk.track_people(_hmap())
    assert trk.person_lim(trk=0) == 1
    assert trk.person_ok(0, trk=0)
    assert not trk.person_ok(0)


def test_gaze_smoothing():
    b = BodyData()
    b.id = 1
    for _ in range(5):
        b.gaze_est(np.array([0.0, 2.0, 0.0]))
        b.update_gaze()
    assert b.gok == 1
    assert np.allclose(b.gaze.pos, [0.0, 1.0, 0.0])
    hit, pt = b.eyes_hit(-10.0)
    assert hit == 1
    for _ in range(5):
        b.update_gaze()
    assert b.gok == -1


def test_reset_clears_tracks():
    det = StubDetector([_person()])
    trk = Track3D(det)
    for _ in range(5):
        trk.track_people(_hmap())
    trk.reset()
    assert trk.num_potential() == 0
    assert trk.cnt_tracked() == 0
