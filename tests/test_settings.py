from pathlib import Path

import pytest

from depthscene.core.config import settings as cfg


def test_load_settings_reads_updated_file(tmp_path: Path, monkeypatch):
    conf_path = tmp_path / "config.yml"
    conf_path.write_text("sensor: kinect2\nmap_ipp: 0.25\n", encoding="utf-8")
    monkeypatch.setenv("DSC_CONFIG", str(conf_path))

    first = cfg.load_settings()
    assert first.sensor == "kinect2"
    assert first.map_ipp == 0.25

    conf_path.write_text("sensor: kinect1\nmap_ipp: 0.5\n", encoding="utf-8")

    second = cfg.load_settings()
    assert second.sensor == "kinect1"
    assert second.map_ipp == 0.5


def test_env_overrides_yaml(tmp_path: Path, monkeypatch):
    conf_path = tmp_path / "config.yml"
    conf_path.write_text("bg_hdes: 120\nnum_cams: 2\n", encoding="utf-8")
    monkeypatch.setenv("DSC_CONFIG", str(conf_path))
    monkeypatch.setenv("DSC_NUM_CAMS", "3")

    s = cfg.load_settings()
    assert s.bg_hdes == 120
    assert s.num_cams == 3


def test_missing_file_gives_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("DSC_CONFIG", str(tmp_path / "absent.yml"))
    s = cfg.load_settings()
    assert s.sensor == "kinect1"
    assert s.param_file is None
    assert cfg.settings_to_dict(s)["map_width"] == 192.0


def test_sensor_validation():
    assert cfg.SceneSettings(sensor=" Kinect2 ").sensor == "kinect2"
    with pytest.raises(ValueError):
        cfg.SceneSettings(sensor="lidar")


def test_num_cams_validation():
    with pytest.raises(ValueError):
        cfg.SceneSettings(num_cams=0)
    with pytest.raises(ValueError):
        cfg.SceneSettings(num_cams=13)
    assert cfg.SceneSettings(num_cams=12).num_cams == 12


def test_map_validation():
    with pytest.raises(ValueError):
        cfg.SceneSettings(map_ipp=0.0)
    with pytest.raises(ValueError):
        cfg.SceneSettings(map_width=-1.0)
    with pytest.raises(ValueError):
        cfg.SceneSettings(map_height=0.0)


def test_background_validation():
    with pytest.raises(ValueError):
        cfg.SceneSettings(bg_hdes=0)
    with pytest.raises(ValueError):
        cfg.SceneSettings(bg_force_mono=4)
    assert cfg.SceneSettings(bg_force_mono=3).bg_force_mono == 3


def test_sensor_from_settings():
    optics = cfg.sensor_from_settings(cfg.SceneSettings(sensor="kinect2"))
    assert (optics.width, optics.height) == (960, 540)
