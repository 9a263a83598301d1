import json
import os
import subprocess
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest


def _make_dummy_video(path: Path, frames: int = 5, size=(64, 48)):
    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(str(path), fourcc, 5.0, size)
    if not writer.isOpened():
        pytest.skip("OpenCV build cannot write MJPG video on this platform")
    for i in range(frames):
        frame = np.full((size[1], size[0], 3), 90, dtype=np.uint8)
        cv2.putText(frame, str(i), (5, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
        writer.write(frame)
    writer.release()


def _run(args, tmp_path: Path):
    env = os.environ.copy()
    env["PYTHONPATH"] = env.get("PYTHONPATH", ".") + os.pathsep + str(Path(__file__).resolve().parents[1])
    env["DSC_CONFIG"] = str(tmp_path / "absent.yml")
    cmd = [sys.executable, "-m", "depthscene.tools.run_bgsub", *args]
    return subprocess.run(cmd, env=env, capture_output=True, text=True)


def test_run_bgsub_cli(tmp_path: Path):
    video_path = tmp_path / "dummy.avi"
    out_path = tmp_path / "out" / "fg.json"
    _make_dummy_video(video_path)

    cap = cv2.VideoCapture(str(video_path))
    ok, frame = cap.read()
    cap.release()
    if not ok or frame is None:
        pytest.skip("OpenCV backend cannot read generated video on this platform")

    result = _run(
        ["--input", str(video_path), "--output", str(out_path), "--max-frames", "2", "--background", str(tmp_path / "nobg.bmp")],
        tmp_path,
    )
    assert result.returncode == 0, result.stderr
    assert out_path.exists()

    data = json.loads(out_path.read_text())
    assert 1 <= len(data) <= 2
    assert data[0]["frame"] == 0
    assert set(data[0]) == {"frame", "code", "status", "fg_fraction", "objects"}


def test_run_bgsub_cli_bad_input(tmp_path: Path):
    result = _run(["--input", str(tmp_path / "none.avi"), "--output", str(tmp_path / "o.json")], tmp_path)
    assert result.returncode != 0
    assert not (tmp_path / "o.json").exists()
