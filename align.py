import logging
import os
import queue
import re
import sys
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

import cv2
import numpy as np

from frameid import (
    FRAME_PREFIX,
    FrameScanner,
    RawFrameBuffer,
    ScanRegion,
    configure_logging,
)


logger = logging.getLogger(__name__)

SESSION_TIMEOUT_S = float(os.environ.get("SESSION_TIMEOUT_S", "0"))
OUTPUT_SUFFIX = ".I420"

CodeCallback = Callable[[str], Optional[bool]]
EventCallback = Callable[[Dict[str, str]], None]
Message = Tuple[str, object]


class SessionError(RuntimeError):
    pass


class CodeRegistry:
    """Set of canonical identifier texts shared with pipeline streaming threads."""

    def __init__(self, codes: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._codes: Set[str] = set(codes)

    def insert(self, code: str) -> bool:
        with self._lock:
            if code in self._codes:
                return False
            self._codes.add(code)
            return True

    def remove(self, code: str) -> bool:
        with self._lock:
            if code not in self._codes:
                return False
            self._codes.remove(code)
            return True

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._codes)

    def copy(self) -> "CodeRegistry":
        return CodeRegistry(self.snapshot())

    def __contains__(self, code: object) -> bool:
        with self._lock:
            return code in self._codes

    def __len__(self) -> int:
        with self._lock:
            return len(self._codes)


class ReferenceReducer:
    """Accepts the first frame carrying each marker code, rejects repeats."""

    def __init__(self, registry: CodeRegistry, marker: str = FRAME_PREFIX) -> None:
        self.registry = registry
        self.marker = marker

    def __call__(self, payload: str) -> Optional[bool]:
        if not payload.startswith(self.marker):
            return None
        if self.registry.insert(payload):
            return True
        logger.info("Repeated frame %r in reference", payload)
        return False


class CaptureReducer:
    """Accepts capture frames whose code is still pending from the reference."""

    def __init__(self, remaining: CodeRegistry, marker: str = FRAME_PREFIX) -> None:
        self.remaining = remaining
        self.marker = marker

    def __call__(self, payload: str) -> Optional[bool]:
        if not payload.startswith(self.marker):
            return None
        if self.remaining.remove(payload):
            return True
        logger.info("Frame %r is not pending from the reference", payload)
        return False


def code_sort_key(code: str) -> Tuple[str, int, str]:
    match = re.match(r"^(.*?)(\d+)$", code)
    if match is None:
        return code, -1, code
    return match.group(1), int(match.group(2)), code


@dataclass(frozen=True)
class MatchResult:
    matched: FrozenSet[str]
    missing_from_capture: FrozenSet[str]
    missing_from_reference: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "matched": sorted(self.matched, key=code_sort_key),
            "missing_from_capture": sorted(self.missing_from_capture, key=code_sort_key),
            "missing_from_reference": sorted(self.missing_from_reference, key=code_sort_key),
        }


class StreamMatcher:
    """Reconciles a reference session with a capture session.

    The reference session runs to completion through ``reference_reducer()``;
    ``begin_capture()`` then copies the reference codes into the pending set
    consumed by the capture session.
    """

    def __init__(self, marker: str = FRAME_PREFIX) -> None:
        self.marker = marker
        self.reference = CodeRegistry()
        self.remaining: Optional[CodeRegistry] = None

    def reference_reducer(self) -> ReferenceReducer:
        return ReferenceReducer(self.reference, self.marker)

    def begin_capture(self) -> CaptureReducer:
        self.remaining = self.reference.copy()
        return CaptureReducer(self.remaining, self.marker)

    def result(self) -> MatchResult:
        reference = self.reference.snapshot()
        missing = self.remaining.snapshot() if self.remaining is not None else reference
        return MatchResult(matched=reference - missing, missing_from_capture=missing)


def match_sequences(
    reference: Sequence[str], capture: Sequence[str], marker: str = FRAME_PREFIX
) -> MatchResult:
    matcher = StreamMatcher(marker)
    reduce_reference = matcher.reference_reducer()
    for payload in reference:
        reduce_reference(payload)
    reduce_capture = matcher.begin_capture()
    for payload in capture:
        reduce_capture(payload)
    return matcher.result()


@dataclass(frozen=True)
class Cropping:
    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0

    @classmethod
    def from_args(cls, args: Sequence[str]) -> "Cropping":
        values = [int(value) for value in args[:4]]
        return cls(*values)

    def apply(self, frame: np.ndarray) -> np.ndarray:
        height, width = frame.shape[:2]
        if min(self.left, self.top, self.right, self.bottom) < 0:
            raise ValueError(f"Negative cropping {self}.")
        if self.left + self.right >= width or self.top + self.bottom >= height:
            raise ValueError(f"Cropping {self} leaves nothing of a {width}x{height} frame.")
        return frame[self.top : height - self.bottom, self.left : width - self.right]


def to_i420(frame: np.ndarray) -> np.ndarray:
    # I420 chroma planes need even dimensions.
    height, width = frame.shape[:2]
    even = np.ascontiguousarray(frame[: height - (height % 2), : width - (width % 2)])
    return cv2.cvtColor(even, cv2.COLOR_BGR2YUV_I420)


def output_path(path: str) -> str:
    return f"{path}{OUTPUT_SUFFIX}"


class VideoSession:
    """Scans every frame of one video on a streaming thread.

    The streaming thread negotiates caps with the scanner, scans each frame in
    presentation order and hands found payloads to ``on_code``. Frames the
    callback accepts are written, cropped, as raw I420 to ``output``. Progress
    is reported on ``bus`` as ``element``, ``error`` and ``eos`` messages.
    """

    def __init__(
        self,
        path: str,
        scanner: FrameScanner,
        on_code: CodeCallback,
        output: Optional[str] = None,
        cropping: Optional[Cropping] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.path = path
        self.scanner = scanner
        self.on_code = on_code
        self.output = output
        self.cropping = cropping or Cropping()
        self.on_event = on_event
        self.bus: "queue.Queue[Message]" = queue.Queue()
        self.frames = 0
        self.found = 0
        self.kept = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _process(self, frame: np.ndarray, sink: Optional[BinaryIO]) -> None:
        buffer = RawFrameBuffer.from_array(frame)
        if self.scanner.geometry != buffer.geometry:
            logger.info("Negotiated %dx%d for %s", buffer.width, buffer.height, self.path)
            self.scanner.set_caps(buffer.geometry)

        self.frames += 1
        result = self.scanner.scan(buffer)
        if not result.found:
            return
        self.found += 1
        self.bus.put(("element", result.event()))

        if self.on_code(result.payload):
            self.kept += 1
            if sink is not None:
                sink.write(to_i420(self.cropping.apply(frame)).tobytes())

    def _stream_frames(self) -> None:
        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            raise SessionError(f"Unable to open video: {self.path}")

        sink = open(self.output, "wb") if self.output else None
        try:
            while not self._stop_event.is_set():
                ret, frame = cap.read()
                if not ret:
                    break
                self._process(frame, sink)
        finally:
            cap.release()
            if sink is not None:
                sink.close()

    def _stream(self) -> None:
        try:
            self._stream_frames()
        except Exception as exc:
            self.bus.put(("error", exc))
        else:
            self.bus.put(("eos", None))

    def start(self) -> None:
        logger.info("Starting session on %s", self.path)
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._stream, name=f"session-{os.path.basename(self.path)}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def run(self, timeout: Optional[float] = None) -> None:
        self.start()
        try:
            while True:
                try:
                    kind, body = self.bus.get(timeout=timeout or None)
                except queue.Empty:
                    raise SessionError(f"Timed out waiting on {self.path}") from None

                if kind == "eos":
                    logger.info(
                        "End of stream on %s: %d frames, %d codes, %d kept",
                        self.path,
                        self.frames,
                        self.found,
                        self.kept,
                    )
                    return
                if kind == "error":
                    logger.error("Session on %s failed: %s", self.path, body)
                    raise SessionError(f"Session on {self.path} failed: {body}") from body
                if kind == "element" and self.on_event is not None:
                    self.on_event(body)
        finally:
            self.stop()


def align_videos(
    reference: str,
    capture: str,
    cropping: Optional[Cropping] = None,
    write_output: bool = False,
    marker: str = FRAME_PREFIX,
    region: Optional[ScanRegion] = None,
    timeout: float = SESSION_TIMEOUT_S,
) -> MatchResult:
    matcher = StreamMatcher(marker)

    VideoSession(
        reference,
        FrameScanner(region=region),
        matcher.reference_reducer(),
        output=output_path(reference) if write_output else None,
        cropping=cropping,
    ).run(timeout)

    VideoSession(
        capture,
        FrameScanner(region=region),
        matcher.begin_capture(),
        output=output_path(capture) if write_output else None,
        cropping=cropping,
    ).run(timeout)

    return matcher.result()


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) < 2:
        print("Usage: python align.py <reference> <capture> [left top right bottom]")
        return 1

    configure_logging()
    try:
        cropping = Cropping.from_args(args[2:])
        result = align_videos(args[0], args[1], cropping=cropping, write_output=True)
    except Exception as exc:
        print(f"Align failed: {exc}")
        return 1

    report = result.to_dict()
    print(f"Matched ({len(report['matched'])}): " + ", ".join(report["matched"]))
    missing = report["missing_from_capture"]
    print(f"Missing from capture ({len(missing)}): " + (", ".join(missing) or "none"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
