from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import cv2

from depthscene.core.background.bgsub import BgSub
from depthscene.core.config.settings import load_settings

logger = logging.getLogger(__name__)


def _objects(bs: BgSub) -> list[list[int]]:
    boxes = []
    for i in range(bs.object_cnt()):
        r = bs.object_box(i)
        if r is not None:
            boxes.append([r.x, r.y, r.w, r.h])
    return boxes


def run(args):
    cap = cv2.VideoCapture(args.input)
    if not cap.isOpened():
        raise SystemExit(f"Cannot open video {args.input}")
    settings = load_settings()
    bs = BgSub()
    params = args.params or settings.param_file
    if params:
        bs.defaults(params)
    bs.f2ps.hdes = args.hdes if args.hdes > 0 else settings.bg_hdes
    mono = 3 if args.mono else settings.bg_force_mono
    background = args.background or settings.background_file
    outputs = []
    while True:
        ok, frame = cap.read()
        if not ok:
            break
        if bs.fw <= 0:
            bs.set_size(frame.shape[1], frame.shape[0], 1 if frame.ndim == 2 else frame.shape[2], mono)
            if background and bs.load_bg(background) <= 0:
                logger.warning("Ignoring background %s, learning from the video instead", background)
        code, _ = bs.find_fg(frame)
        outputs.append(
            {
                "frame": len(outputs),
                "code": code,
                "status": bs.status(),
                "fg_fraction": round(bs.fg_fraction(), 4),
                "objects": _objects(bs) if code != 0 else [],
            }
        )
        if args.max_frames and len(outputs) >= args.max_frames:
            break
    cap.release()
    logger.info("Processed %d frames from %s", len(outputs), args.input)
    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(outputs, f, indent=2)
    print(f"Wrote {len(outputs)} frame records to {out_path}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run background subtraction on a video")
    parser.add_argument("--input", required=True, help="Path to video file")
    parser.add_argument("--output", required=True, help="Where to save JSON output")
    parser.add_argument("--max-frames", type=int, default=0, help="Limit frames for quick tests")
    parser.add_argument("--params", default="", help="Parameter file with bgs_* and agc_* lines")
    parser.add_argument("--background", default="", help="Saved background image to start from")
    parser.add_argument("--hdes", type=int, default=0, help="Internal processing height (0 keeps default)")
    parser.add_argument("--mono", action="store_true", help="Reduce color input to luminance first")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING))
    run(args)
