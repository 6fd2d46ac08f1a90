import os
import time
from typing import List, Optional

from flask import Flask, jsonify, request

import frameid
from align import SESSION_TIMEOUT_S, Cropping, align_videos
from frameid import Anchor, ScanRegion, configure_logging
from prepare import (
    FOURCC,
    PREPARE_FPS,
    PREPARE_HEIGHT,
    PREPARE_PAD_FRAMES,
    PREPARE_WIDTH,
    prepare_video,
)


BASE_DIR = os.path.abspath(os.path.dirname(__file__))
OUTPUT_DIR = os.environ.get("FRAMEID_OUTPUT_DIR", os.path.join(BASE_DIR, "static", "outputs"))

app = Flask(__name__)


def ensure_dirs() -> None:
    os.makedirs(OUTPUT_DIR, exist_ok=True)


def parse_cropping(values: Optional[List[object]]) -> Optional[Cropping]:
    if not values:
        return None
    if not isinstance(values, list) or len(values) > 4:
        raise ValueError("cropping must be a list of up to four integers [left, top, right, bottom].")
    return Cropping(*(int(value) for value in values))


def parse_region(payload: dict) -> Optional[ScanRegion]:
    if "anchor" not in payload and "size" not in payload:
        return None
    anchor = Anchor.parse(str(payload.get("anchor", "top-left")))
    size = payload.get("size") or [0, 0]
    if not isinstance(size, list) or len(size) != 2:
        raise ValueError("size must be [width, height].")
    return ScanRegion(anchor, (int(size[0]), int(size[1])))


@app.route("/prepare", methods=["POST"])
def prepare():
    payload = request.get_json(silent=True) or {}
    input_path = str(payload.get("input", "")).strip()
    if not input_path:
        return jsonify({"error": "input is required."}), 400

    output_path = str(payload.get("output", "")).strip()
    if not output_path:
        ensure_dirs()
        stem = os.path.splitext(os.path.basename(input_path))[0] or "video"
        output_path = os.path.join(OUTPUT_DIR, f"{stem}_frameid_{int(time.time())}.mp4")

    try:
        counts = prepare_video(input_path, output_path)
    except Exception as exc:
        return jsonify({"error": str(exc)}), 500

    return jsonify({"output": output_path, "counts": counts})


@app.route("/align", methods=["POST"])
def align():
    payload = request.get_json(silent=True) or {}
    reference = str(payload.get("reference", "")).strip()
    capture = str(payload.get("capture", "")).strip()
    if not reference or not capture:
        return jsonify({"error": "reference and capture are required."}), 400

    try:
        cropping = parse_cropping(payload.get("cropping"))
        region = parse_region(payload)
    except (TypeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400

    try:
        result = align_videos(
            reference,
            capture,
            cropping=cropping,
            write_output=bool(payload.get("write_output", False)),
            region=region,
        )
    except Exception as exc:
        return jsonify({"error": str(exc)}), 500

    return jsonify(result.to_dict())


@app.route("/config")
def config():
    return jsonify(
        {
            "module_size": frameid.MODULE_SIZE,
            "quiet_zone": frameid.QUIET_ZONE,
            "intensity": frameid.INTENSITY_POLICY,
            "scan_anchor": frameid.SCAN_ANCHOR,
            "scan_size": [frameid.SCAN_WIDTH, frameid.SCAN_HEIGHT],
            "prefixes": {
                "start": frameid.START_PREFIX,
                "frame": frameid.FRAME_PREFIX,
                "end": frameid.END_PREFIX,
            },
            "prepare": {
                "width": PREPARE_WIDTH,
                "height": PREPARE_HEIGHT,
                "fps": PREPARE_FPS,
                "pad_frames": PREPARE_PAD_FRAMES,
                "fourcc": FOURCC,
            },
            "session_timeout_s": SESSION_TIMEOUT_S,
        }
    )


if __name__ == "__main__":
    configure_logging()
    ensure_dirs()
    app.run(host="0.0.0.0", port=5000, debug=True)
