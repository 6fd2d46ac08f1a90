import sys
from typing import List, Optional, Tuple

import cv2

from frameid import FrameScanner, RawFrameBuffer, configure_logging


def print_code(frame_no: int, payload: str) -> None:
    """Print one scan line, escaping payload text the console cannot show."""
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    escaped = payload.encode("unicode_escape").decode("ascii")
    shown = payload if payload.isprintable() else escaped
    try:
        shown.encode(encoding)
    except UnicodeEncodeError:
        shown = escaped
    print(f"{frame_no}: {shown}")


def scan_video(path: str, prefix: Optional[str] = None) -> Tuple[List[Tuple[int, str]], int]:
    """Return ``(frame_number, payload)`` for every frame with a code, and the dropped count."""
    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise RuntimeError(f"Failed to open video: {path}")

    scanner = FrameScanner(prefix=prefix)
    found: List[Tuple[int, str]] = []
    dropped = 0
    frame_no = 0
    try:
        while True:
            ret, frame = cap.read()
            if not ret:
                break
            buffer = RawFrameBuffer.from_array(frame)
            if scanner.geometry != buffer.geometry:
                scanner.set_caps(buffer.geometry)
            result = scanner.scan(buffer)
            if result.found:
                found.append((frame_no, result.payload))
            else:
                dropped += 1
            frame_no += 1
    finally:
        cap.release()
    return found, dropped


def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python decoder.py <video_path> [prefix]")
        return 1
    path = sys.argv[1]
    prefix = sys.argv[2] if len(sys.argv) > 2 else None

    configure_logging()
    try:
        found, dropped = scan_video(path, prefix)
    except Exception as exc:
        print(f"Decode failed: {exc}")
        return 1

    for frame_no, payload in found:
        print_code(frame_no, payload)
    print(f"{len(found)} frames identified, {dropped} dropped.")
    return 0 if found else 1


if __name__ == "__main__":
    raise SystemExit(main())
