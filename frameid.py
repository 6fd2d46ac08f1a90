"""Frame identification codec.

Stamps a QR symbol carrying ``prefix + frame_index`` into the top-left corner
of raw video frames and recovers it again from a configurable region.
"""

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np


logger = logging.getLogger(__name__)

MODULE_SIZE = max(1, int(os.environ.get("FRAMEID_MODULE_SIZE", "8")))
QUIET_ZONE = max(0, int(os.environ.get("FRAMEID_QUIET_ZONE", "32")))
MARGIN_MODULES = max(0, int(os.environ.get("FRAMEID_MARGIN_MODULES", "4")))
INTENSITY_POLICY = os.environ.get("FRAMEID_INTENSITY", "per-channel").strip().lower()
SCAN_ANCHOR = os.environ.get("FRAMEID_SCAN_ANCHOR", "top-left").strip().lower()
SCAN_WIDTH = int(os.environ.get("FRAMEID_SCAN_WIDTH", "0"))
SCAN_HEIGHT = int(os.environ.get("FRAMEID_SCAN_HEIGHT", "0"))
FRAME_PREFIX = os.environ.get("FRAME_PREFIX", "f:")
START_PREFIX = os.environ.get("START_PREFIX", "s:")
END_PREFIX = os.environ.get("END_PREFIX", "e:")
LOG_LEVEL = os.environ.get("FRAMEID_LOG_LEVEL", "WARNING").strip().upper()

FOUND_EVENT = "frameid-found"
INTENSITY_POLICIES = ("per-channel", "sum")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class FrameIdError(RuntimeError):
    pass


class NotConfiguredError(FrameIdError):
    pass


class BufferNotReadableError(FrameIdError):
    pass


class BufferNotWritableError(FrameIdError):
    pass


class InvalidPayloadError(FrameIdError):
    pass


@dataclass(frozen=True)
class DecodeError:
    """One symbol the detector located but could not decode."""

    reason: str


@dataclass(frozen=True, eq=False)
class Identifier:
    prefix: str
    sequence: int

    @property
    def text(self) -> str:
        return f"{self.prefix}{self.sequence}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self.text == other.text

    def __hash__(self) -> int:
        return hash(self.text)

    def __str__(self) -> str:
        return self.text


class PixelFormat(Enum):
    RGBX = "RGBx"
    RGB = "RGB"

    @property
    def bytes_per_pixel(self) -> int:
        return 4 if self is PixelFormat.RGBX else 3


@dataclass(frozen=True)
class FrameGeometry:
    width: int
    height: int
    pixel_format: PixelFormat

    @property
    def frame_size(self) -> int:
        return self.pixel_format.bytes_per_pixel * self.width * self.height


BufferData = Union[bytes, bytearray, memoryview, np.ndarray]


@dataclass
class RawFrameBuffer:
    width: int
    height: int
    pixel_format: PixelFormat
    data: BufferData

    @classmethod
    def from_array(cls, frame: np.ndarray) -> "RawFrameBuffer":
        if frame.ndim != 3 or frame.shape[2] not in (3, 4):
            raise ValueError(f"Expected an (h, w, 3|4) frame, got shape {frame.shape}.")
        pixel_format = PixelFormat.RGBX if frame.shape[2] == 4 else PixelFormat.RGB
        return cls(frame.shape[1], frame.shape[0], pixel_format, frame)

    @property
    def geometry(self) -> FrameGeometry:
        return FrameGeometry(self.width, self.height, self.pixel_format)

    def _flat(self, writable: bool) -> np.ndarray:
        data = self.data
        if isinstance(data, np.ndarray):
            if data.dtype != np.uint8:
                raise BufferNotReadableError(f"Unsupported buffer dtype {data.dtype}.")
            if not data.flags.c_contiguous:
                if writable:
                    raise BufferNotWritableError("Frame buffer is not contiguous.")
                data = np.ascontiguousarray(data)
            return data.reshape(-1)
        return np.frombuffer(data, dtype=np.uint8)

    def _shape(self, flat: np.ndarray) -> np.ndarray:
        bpp = self.pixel_format.bytes_per_pixel
        return flat[: self.geometry.frame_size].reshape(self.height, self.width, bpp)

    def map_readable(self) -> np.ndarray:
        flat = self._flat(writable=False)
        if flat.size < self.geometry.frame_size:
            raise BufferNotReadableError(
                f"Frame buffer holds {flat.size} bytes, expected {self.geometry.frame_size}."
            )
        return self._shape(flat)

    def map_writable(self) -> np.ndarray:
        try:
            flat = self._flat(writable=True)
        except BufferNotReadableError as exc:
            raise BufferNotWritableError(str(exc)) from exc
        if not flat.flags.writeable:
            raise BufferNotWritableError("Frame buffer is read-only.")
        if flat.size < self.geometry.frame_size:
            raise BufferNotWritableError(
                f"Frame buffer holds {flat.size} bytes, expected {self.geometry.frame_size}."
            )
        return self._shape(flat)


class Anchor(Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"

    @classmethod
    def parse(cls, value: Union[str, "Anchor"]) -> "Anchor":
        if isinstance(value, Anchor):
            return value
        key = value.strip().lower().replace("_", "-")
        for anchor in cls:
            if anchor.value == key:
                return anchor
        raise ValueError(f"Unknown anchor {value!r}.")


@dataclass(frozen=True)
class ScanRegion:
    anchor: Anchor = Anchor.TOP_LEFT
    size: Tuple[int, int] = (0, 0)

    def bounds(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Return ``(x0, y0, x1, y1)`` of the scanned rectangle, end-exclusive."""
        region_w = self.size[0] or width
        region_h = self.size[1] or height
        if region_w > width or region_h > height:
            raise ValueError(
                f"Scan region {region_w}x{region_h} exceeds frame {width}x{height}."
            )
        x0 = width - region_w if self.anchor in (Anchor.TOP_RIGHT, Anchor.BOTTOM_RIGHT) else 0
        y0 = height - region_h if self.anchor in (Anchor.BOTTOM_LEFT, Anchor.BOTTOM_RIGHT) else 0
        return x0, y0, x0 + region_w, y0 + region_h


def default_region() -> ScanRegion:
    return ScanRegion(Anchor.parse(SCAN_ANCHOR), (max(SCAN_WIDTH, 0), max(SCAN_HEIGHT, 0)))


SymbolEncoder = Callable[[str], np.ndarray]
SymbolCandidate = Union[bytes, DecodeError]
SymbolDecoder = Callable[[np.ndarray], Sequence[SymbolCandidate]]


def encode_symbol(text: str, module_size: Optional[int] = None) -> np.ndarray:
    size = max(module_size if module_size is not None else MODULE_SIZE, 1)
    rendered = cv2.QRCodeEncoder.create().encode(text)
    if rendered is None or rendered.size == 0:
        raise ValueError(f"Unable to render symbol for {text!r}.")
    if rendered.ndim == 3:
        rendered = cv2.cvtColor(rendered, cv2.COLOR_BGR2GRAY)

    # Drop the quiet zone: the finder patterns span the symbol's full extent.
    dark_rows = np.flatnonzero((rendered < 128).any(axis=1))
    dark_cols = np.flatnonzero((rendered < 128).any(axis=0))
    symbol = rendered[dark_rows[0] : dark_rows[-1] + 1, dark_cols[0] : dark_cols[-1] + 1]
    symbol = np.where(symbol < 128, 0, 255).astype(np.uint8)
    bitmap = np.repeat(np.repeat(symbol, size, axis=0), size, axis=1)

    # Light margin on the edges that face frame content; the frame corner
    # side is bordered by decode_symbols.
    margin = MARGIN_MODULES * size
    return cv2.copyMakeBorder(bitmap, 0, margin, 0, margin, cv2.BORDER_CONSTANT, value=255)


def decode_symbols(gray: np.ndarray) -> List[SymbolCandidate]:
    # Symbols are stamped flush with the frame corner, without a quiet zone there.
    gray = cv2.copyMakeBorder(
        gray, QUIET_ZONE, QUIET_ZONE, QUIET_ZONE, QUIET_ZONE, cv2.BORDER_CONSTANT, value=255
    )
    detector = cv2.QRCodeDetector()
    candidates: List[SymbolCandidate] = []

    ok, decoded_info, points, _ = detector.detectAndDecodeMulti(gray)
    if ok and points is not None:
        for info in decoded_info:
            if info:
                candidates.append(info.encode("utf-8"))
            else:
                candidates.append(DecodeError("symbol located but not decodable"))

    if not any(isinstance(candidate, bytes) for candidate in candidates):
        text, points, _ = detector.detectAndDecode(gray)
        if text:
            candidates.append(text.encode("utf-8"))
        elif points is not None and not candidates:
            candidates.append(DecodeError("symbol located but not decodable"))
    return candidates


class _Negotiated:
    """Unconfigured until the host reports frame geometry via ``set_caps``."""

    def __init__(self) -> None:
        self._state_lock = threading.Lock()
        self._settings_lock = threading.Lock()
        self._geometry: Optional[FrameGeometry] = None

    @property
    def geometry(self) -> Optional[FrameGeometry]:
        with self._state_lock:
            return self._geometry

    @property
    def configured(self) -> bool:
        return self.geometry is not None

    def set_caps(self, geometry: FrameGeometry) -> None:
        with self._state_lock:
            self._geometry = geometry
            self._reset_state()

    def _reset_state(self) -> None:
        pass

    def _negotiated_for(self, frame: RawFrameBuffer) -> FrameGeometry:
        # Caller holds _state_lock.
        if self._geometry is None:
            raise NotConfiguredError("No frame geometry negotiated yet.")
        if frame.geometry != self._geometry:
            raise NotConfiguredError(
                f"Frame geometry {frame.geometry} does not match negotiated {self._geometry}."
            )
        return self._geometry


class FrameEncoder(_Negotiated):
    """Stamps ``prefix + frame_index`` into each frame, in place."""

    def __init__(
        self,
        prefix: Optional[str] = None,
        symbol_encoder: Optional[SymbolEncoder] = None,
    ) -> None:
        super().__init__()
        self._prefix = prefix
        self._symbol_encoder = symbol_encoder or encode_symbol
        self._frame_index = 0

    @property
    def prefix(self) -> Optional[str]:
        with self._settings_lock:
            return self._prefix

    @prefix.setter
    def prefix(self, value: Optional[str]) -> None:
        with self._settings_lock:
            self._prefix = value

    @property
    def frame_index(self) -> int:
        with self._state_lock:
            return self._frame_index

    def _reset_state(self) -> None:
        self._frame_index = 0

    def encode_into(self, frame: RawFrameBuffer) -> Identifier:
        with self._state_lock:
            self._negotiated_for(frame)
            pixels = frame.map_writable()

            identifier = Identifier(self.prefix or "", self._frame_index)
            bitmap = self._symbol_encoder(identifier.text)

            height = min(bitmap.shape[0], pixels.shape[0])
            width = min(bitmap.shape[1], pixels.shape[1])
            pixels[:height, :width, :3] = bitmap[:height, :width, np.newaxis]

            self._frame_index += 1
            return identifier


class Outcome(Enum):
    FOUND = "found"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ScanResult:
    outcome: Outcome
    payload: str = ""

    @property
    def found(self) -> bool:
        return self.outcome is Outcome.FOUND

    def event(self) -> Dict[str, str]:
        return {"name": FOUND_EVENT, "payload": self.payload}


DROPPED = ScanResult(Outcome.DROPPED, "")


def to_intensity(pixels: np.ndarray, policy: str = INTENSITY_POLICY) -> np.ndarray:
    if policy not in INTENSITY_POLICIES:
        raise ValueError(f"Unknown intensity policy {policy!r}.")
    red = pixels[:, :, 0]
    green = pixels[:, :, 1]
    blue = pixels[:, :, 2]
    if policy == "sum":
        total = red.astype(np.uint16) + green + blue
        return (total // 3).astype(np.uint8)
    # Divide each channel before summing; existing fixtures depend on this rounding.
    return (red // 3) + (green // 3) + (blue // 3)


class FrameScanner(_Negotiated):
    """Finds the first identifier in a frame region whose text starts with ``prefix``."""

    def __init__(
        self,
        prefix: Optional[str] = None,
        region: Optional[ScanRegion] = None,
        symbol_decoder: Optional[SymbolDecoder] = None,
        intensity: str = INTENSITY_POLICY,
    ) -> None:
        super().__init__()
        self.intensity = intensity
        self._prefix = prefix
        self._region = region or default_region()
        self._symbol_decoder = symbol_decoder or decode_symbols

    @property
    def intensity(self) -> str:
        with self._settings_lock:
            return self._intensity

    @intensity.setter
    def intensity(self, value: str) -> None:
        if value not in INTENSITY_POLICIES:
            raise ValueError(f"Unknown intensity policy {value!r}.")
        with self._settings_lock:
            self._intensity = value

    @property
    def prefix(self) -> Optional[str]:
        with self._settings_lock:
            return self._prefix

    @prefix.setter
    def prefix(self, value: Optional[str]) -> None:
        with self._settings_lock:
            self._prefix = value

    @property
    def region(self) -> ScanRegion:
        with self._settings_lock:
            return self._region

    @region.setter
    def region(self, value: ScanRegion) -> None:
        with self._settings_lock:
            self._region = value

    def intensity_image(self, frame: RawFrameBuffer) -> np.ndarray:
        with self._state_lock:
            geometry = self._negotiated_for(frame)
            pixels = frame.map_readable()
        x0, y0, x1, y1 = self.region.bounds(geometry.width, geometry.height)
        return np.ascontiguousarray(to_intensity(pixels[y0:y1, x0:x1], self.intensity))

    def inspect_codes(self, gray: np.ndarray) -> ScanResult:
        prefix = self.prefix
        for candidate in self._symbol_decoder(gray):
            if isinstance(candidate, DecodeError):
                logger.debug("Skipping symbol: %s", candidate.reason)
                continue
            try:
                text = candidate.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidPayloadError(f"Invalid UTF-8 payload {candidate!r}: {exc}") from exc
            logger.debug("Code: %r", text)
            if prefix is None or text.startswith(prefix):
                return ScanResult(Outcome.FOUND, text)
        return DROPPED

    def scan(self, frame: RawFrameBuffer) -> ScanResult:
        return self.inspect_codes(self.intensity_image(frame))
