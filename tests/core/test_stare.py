from __future__ import annotations

import numpy as np

from depthscene.core.analytics.head_gaze import HeadGaze, pan_diff, tilt_diff
from depthscene.core.analytics.stare import Stare3D
from depthscene.core.detectors.parse3d import Parse3D
from depthscene.core.types import RawPerson


class StubDetector:
    def __init__(self, people=None):
        self.people = list(people or [])

    def find_people(self, hmap):
        return list(self.people)

    def person_blob(self, wx, wy):
        return False

    def blob_at(self, wx, wy):
        return 0


class NoFaces:
    def find_within(self, img, fsz):
        return None


def _tracked(n=5):
    s3 = Stare3D(1, StubDetector([RawPerson(0.0, 60.0, 59.5)]))
    s3.set_cam(0, 0.0, -60.0, 60.0, 90.0, -10.0, 0.0, 240.0)
    for _ in range(n):
        s3.analyze()
    return s3


def test_map_matches_default_room():
    s3 = Stare3D(1, StubDetector())
    assert s3.map.shape == (384, 384)
    assert s3.analyze() == 0
    assert s3.cnt_valid() == 0


def test_reset_configures_parser():
    s3 = Stare3D()
    det = s3.trk.detector
    assert isinstance(det, Parse3D)
    assert det.ipp == 0.5
    assert det.z0 == 0.0 and det.z1 == 96.0
    assert det.x0 == 96.0
    assert (det.mw, det.mh) == (384, 384)


def test_people_accessors():
    s3 = _tracked()
    assert s3.cnt_valid() == 1
    assert s3.cnt_valid(trk=0) == 1
    assert s3.person_ok(0)
    assert s3.person_id(0) == 1
    assert s3.track_index(1) == 0
    assert np.allclose(s3.head(0), [0.0, 60.0, 59.5])
    assert abs(s3.height(0) - 66.0) < 1e-6
    assert s3.hand(0) is None
    assert s3.hand_over(0) == -1.0
    assert s3.closest() == 0
    assert s3.head(3) is None
    assert s3.person_id(3) == -1


def test_names_through_finder():
    s3 = _tracked()
    assert not s3.named(0)
    assert s3.set_name(1, "Kim") == 1
    assert s3.named(0)
    assert s3.get_name(1) == "Kim"


def test_head_box_in_camera_view():
    s3 = _tracked()
    box = s3.head_box_cam(0)
    assert box is not None
    assert not box.empty()
    assert s3.head_box_cam(7) is None


def test_params_round_trip(tmp_path):
    s3 = Stare3D(1, StubDetector())
    s3.trk.tps.dmax0 = 24.0
    path = tmp_path / "stare.cfg"
    assert s3.save_vals(path) == 1
    other = Stare3D(1, StubDetector())
    other.defaults(path)
    assert other.trk.tps.dmax0 == 24.0


def test_angle_differences():
    a = np.array([1.0, 0.0, 0.0])
    b = np.array([0.0, 1.0, 0.0])
    assert abs(pan_diff(a, b) + 90.0) < 1e-9
    assert abs(pan_diff(np.array([-1.0, -0.01, 0.0]), np.array([-1.0, 0.01, 0.0]))) < 2.0
    assert abs(tilt_diff(np.array([1.0, 0.0, 1.0]), a) - 45.0) < 1e-9


def test_attention_counts_after_gaze_settles():
    s3 = _tracked()
    hg = HeadGaze(s3, NoFaces())
    guy = s3.get_person(0)
    me = np.array([hg.zps.xme, hg.zps.yme, hg.zps.zme])
    for _ in range(7):
        s3.analyze()
        guy.gaze_est(me - guy.pos)
        hg.done_rgb()
    assert guy.gok == 1
    assert hg.gaze_max() == 3
    assert hg.any_gaze(3) == 1
    assert hg.gaze_id(1) == 3
    assert hg.gaze_new() == 0
    assert hg.gaze_new_id() == 1


def test_gaze_away_not_counted():
    s3 = _tracked()
    hg = HeadGaze(s3, NoFaces())
    guy = s3.get_person(0)
    for _ in range(7):
        s3.analyze()
        guy.gaze_est(np.array([1.0, 0.0, 0.0]))
        hg.done_rgb()
    assert hg.gaze_max() == 0
    assert hg.gaze_new() == -1


def test_scan_without_faces():
    s3 = _tracked()
    hg = HeadGaze(s3, NoFaces())
    img = np.zeros((480, 640, 3), np.uint8)
    d16 = np.zeros((480, 640), np.uint16)
    assert hg.scan_rgb(img, d16) == 0
    assert HeadGaze(None, NoFaces()).scan_rgb(img, d16) == -1
    assert hg.scan_rgb(img, d16, cam=20) == -1


def test_from_settings_builds_configured_finder(tmp_path):
    from depthscene.core.config.settings import SceneSettings

    settings = SceneSettings(
        sensor="kinect2",
        num_cams=2,
        map_width=96.0,
        map_height=120.0,
        map_x0=48.0,
        map_ipp=0.5,
        face_cascade=str(tmp_path / "missing.xml"),
    )
    s3 = Stare3D.from_settings(settings, StubDetector())
    assert len(s3.cams) == 2
    assert s3.map.shape == (240, 192)
    assert s3.iw == 960

    hg = HeadGaze.from_settings(s3, settings)
    assert not hg.ff.ok()
    assert hg.scan_rgb(np.zeros((540, 960, 3), np.uint8), np.zeros((424, 512), np.uint16)) == 0
