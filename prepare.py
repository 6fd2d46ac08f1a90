import logging
import os
import sys
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from frameid import (
    END_PREFIX,
    FRAME_PREFIX,
    START_PREFIX,
    FrameEncoder,
    RawFrameBuffer,
    configure_logging,
)


logger = logging.getLogger(__name__)

PREPARE_WIDTH = int(os.environ.get("PREPARE_WIDTH", "1280"))
PREPARE_HEIGHT = int(os.environ.get("PREPARE_HEIGHT", "720"))
PREPARE_FPS = float(os.environ.get("PREPARE_FPS", "24"))
PREPARE_PAD_FRAMES = int(os.environ.get("PREPARE_PAD_FRAMES", "300"))
FOURCC = os.environ.get("PREPARE_FOURCC", "mp4v")


def pattern_frame(index: int, total: int, size: Tuple[int, int], label: str = "") -> np.ndarray:
    width, height = size
    t = index / max(total - 1, 1)
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :, 0] = np.uint8(170 + 60 * t)
    frame[:, :, 1] = np.uint8(180 + 50 * (1 - t))
    frame[:, :, 2] = np.uint8(190 + 40 * np.sin(t * np.pi))
    if label:
        cv2.putText(
            frame,
            label,
            (20, height - 20),
            cv2.FONT_HERSHEY_SIMPLEX,
            1.0,
            (40, 40, 40),
            2,
            cv2.LINE_AA,
        )
    return frame


def write_pattern_video(
    path: str,
    frames: int,
    fps: float = PREPARE_FPS,
    size: Tuple[int, int] = (640, 360),
    fourcc: str = FOURCC,
) -> None:
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*fourcc), fps, size)
    if not writer.isOpened():
        raise RuntimeError(f"Unable to open output video: {path}")
    try:
        for i in range(frames):
            writer.write(pattern_frame(i, frames, size, "SOURCE"))
    finally:
        writer.release()


def tag_frame(encoder: FrameEncoder, frame: np.ndarray) -> str:
    buffer = RawFrameBuffer.from_array(frame)
    if encoder.geometry != buffer.geometry:
        encoder.set_caps(buffer.geometry)
    return encoder.encode_into(buffer).text


def prepare_video(
    input_path: str,
    output_path: str,
    pad_frames: int = PREPARE_PAD_FRAMES,
    size: Tuple[int, int] = (PREPARE_WIDTH, PREPARE_HEIGHT),
    fps: float = PREPARE_FPS,
    fourcc: str = FOURCC,
) -> Dict[str, int]:
    """Write ``output_path`` as start markers, the tagged input, then end markers.

    Start and end sections are generated pattern frames tagged with
    ``START_PREFIX`` and ``END_PREFIX``; every input frame is resized to
    ``size`` and tagged with ``FRAME_PREFIX``. Each section counts from 0.
    """
    cap = cv2.VideoCapture(input_path)
    if not cap.isOpened():
        raise RuntimeError(f"Failed to open input video: {input_path}")

    writer = cv2.VideoWriter(output_path, cv2.VideoWriter_fourcc(*fourcc), fps, size)
    if not writer.isOpened():
        cap.release()
        raise RuntimeError(f"Unable to open output video: {output_path}")

    counts = {"start": 0, "frames": 0, "end": 0}
    try:
        start_encoder = FrameEncoder(START_PREFIX)
        for i in range(pad_frames):
            frame = pattern_frame(i, pad_frames, size, "START")
            tag_frame(start_encoder, frame)
            writer.write(frame)
            counts["start"] += 1

        frame_encoder = FrameEncoder(FRAME_PREFIX)
        while True:
            ret, frame = cap.read()
            if not ret:
                break
            if (frame.shape[1], frame.shape[0]) != size:
                frame = cv2.resize(frame, size, interpolation=cv2.INTER_AREA)
            tag_frame(frame_encoder, frame)
            writer.write(frame)
            counts["frames"] += 1

        end_encoder = FrameEncoder(END_PREFIX)
        for i in range(pad_frames):
            frame = pattern_frame(i, pad_frames, size, "END")
            tag_frame(end_encoder, frame)
            writer.write(frame)
            counts["end"] += 1
    finally:
        cap.release()
        writer.release()

    logger.info("Prepared %s: %s", output_path, counts)
    return counts


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) < 2:
        print("Usage: python prepare.py <input_video> <output_video>")
        return 1

    configure_logging()
    try:
        counts = prepare_video(args[0], args[1])
    except Exception as exc:
        print(f"Prepare failed: {exc}")
        return 1

    print(
        f"Wrote {args[1]}: {counts['start']} start, "
        f"{counts['frames']} tagged, {counts['end']} end frames"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
