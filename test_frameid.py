"""
Checks for the frame identification codec: stamping, scanning, regions and
negotiation.
"""

import os
import sys
from typing import List

import numpy as np

# Add project directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from frameid import (  # noqa: E402
    Anchor,
    BufferNotReadableError,
    BufferNotWritableError,
    DecodeError,
    FrameEncoder,
    FrameGeometry,
    FrameScanner,
    Identifier,
    InvalidPayloadError,
    MARGIN_MODULES,
    MODULE_SIZE,
    NotConfiguredError,
    Outcome,
    PixelFormat,
    RawFrameBuffer,
    ScanRegion,
    encode_symbol,
    to_intensity,
)


def bytes_to_bits(data: bytes) -> List[int]:
    bits: List[int] = []
    for byte in data:
        for shift in range(7, -1, -1):
            bits.append((byte >> shift) & 1)
    return bits


def bits_to_bytes(bits: List[int]) -> bytes:
    out = bytearray()
    for i in range(0, len(bits) - (len(bits) % 8), 8):
        value = 0
        for bit in bits[i : i + 8]:
            value = (value << 1) | (bit & 1)
        out.append(value)
    return bytes(out)


def strip_encode(text: str) -> np.ndarray:
    """Length-prefixed black/white bit strip, two rows tall."""
    payload = text.encode("utf-8")
    bits = bytes_to_bits(bytes((len(payload),)) + payload)
    row = np.array([255 if bit else 0 for bit in bits], dtype=np.uint8)
    return np.vstack([row, row])


def strip_decode(gray: np.ndarray) -> List[bytes]:
    bits = [1 if value > 127 else 0 for value in gray[0]]
    length = bits_to_bytes(bits[:8])[0] if len(bits) >= 8 else 0
    if length == 0 or len(bits) < 8 * (length + 1):
        return []
    return [bits_to_bytes(bits[8 : 8 * (length + 1)])]


def blank_frame(
    width: int = 96,
    height: int = 16,
    pixel_format: PixelFormat = PixelFormat.RGB,
    fill: int = 0,
) -> RawFrameBuffer:
    size = pixel_format.bytes_per_pixel * width * height
    return RawFrameBuffer(width, height, pixel_format, bytearray([fill]) * size)


def negotiated(component, frame: RawFrameBuffer):
    component.set_caps(frame.geometry)
    return component


def test_identifier_equality_uses_canonical_text() -> None:
    assert Identifier("f:", 12).text == "f:12"
    assert str(Identifier("", 3)) == "3"
    assert Identifier("f:1", 2) == Identifier("f:", 12)
    assert len({Identifier("f:1", 2), Identifier("f:", 12)}) == 1
    assert Identifier("f:", 1) != Identifier("s:", 1)


def test_encode_before_negotiation_fails() -> None:
    encoder = FrameEncoder("f:", symbol_encoder=strip_encode)
    frame = blank_frame()
    try:
        encoder.encode_into(frame)
    except NotConfiguredError:
        pass
    else:
        raise AssertionError("encode_into should fail before negotiation")
    assert encoder.frame_index == 0
    assert not encoder.configured


def test_scan_before_negotiation_fails() -> None:
    scanner = FrameScanner(symbol_decoder=strip_decode)
    try:
        scanner.scan(blank_frame())
    except NotConfiguredError:
        pass
    else:
        raise AssertionError("scan should fail before negotiation")


def test_strip_roundtrip() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), frame)
    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), frame)

    identifier = encoder.encode_into(frame)
    result = scanner.scan(frame)

    assert identifier.text == "f:0"
    assert result.outcome is Outcome.FOUND
    assert result.payload == "f:0"


def test_counter_is_monotonic() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), frame)
    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), frame)

    payloads = []
    for _ in range(5):
        encoder.encode_into(frame)
        payloads.append(scanner.scan(frame).payload)

    assert payloads == ["f:0", "f:1", "f:2", "f:3", "f:4"]
    assert encoder.frame_index == 5


def test_renegotiation_resets_counter() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder(symbol_encoder=strip_encode), frame)
    encoder.encode_into(frame)
    encoder.encode_into(frame)
    assert encoder.frame_index == 2

    encoder.set_caps(frame.geometry)
    assert encoder.frame_index == 0
    assert encoder.encode_into(frame).text == "0"


def test_prefix_can_change_between_frames() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder(symbol_encoder=strip_encode), frame)
    assert encoder.encode_into(frame).text == "0"
    encoder.prefix = "e:"
    assert encoder.prefix == "e:"
    assert encoder.encode_into(frame).text == "e:1"


def test_prefix_filter_drops_other_prefixes() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder("s:", symbol_encoder=strip_encode), frame)
    scanner = negotiated(FrameScanner(prefix="f:", symbol_decoder=strip_decode), frame)

    encoder.encode_into(frame)
    result = scanner.scan(frame)

    assert result.outcome is Outcome.DROPPED
    assert result.payload == ""
    scanner.prefix = "s:"
    assert scanner.scan(frame).payload == "s:0"


def test_blank_frame_is_dropped() -> None:
    frame = blank_frame()
    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), frame)
    assert not scanner.scan(frame).found


def test_rgbx_padding_is_untouched() -> None:
    frame = blank_frame(pixel_format=PixelFormat.RGBX, fill=7)
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), frame)
    encoder.encode_into(frame)

    pixels = np.frombuffer(frame.data, dtype=np.uint8).reshape(16, 96, 4)
    assert (pixels[:, :, 3] == 7).all()
    assert set(np.unique(pixels[:2, :32, :3]).tolist()) <= {0, 255}

    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), frame)
    assert scanner.scan(frame).payload == "f:0"


def test_encoder_never_clears_frame() -> None:
    frame = blank_frame(fill=77)
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), frame)
    encoder.encode_into(frame)

    pixels = np.frombuffer(frame.data, dtype=np.uint8).reshape(16, 96, 3)
    assert (pixels[2:, :, :] == 77).all()
    assert (pixels[:2, 32:, :] == 77).all()


def test_bitmap_is_clipped_to_frame() -> None:
    frame = blank_frame(width=10, height=10)
    encoder = negotiated(
        FrameEncoder(symbol_encoder=lambda text: np.full((50, 50), 255, dtype=np.uint8)), frame
    )
    encoder.encode_into(frame)
    assert bytes(frame.data) == b"\xff" * (10 * 10 * 3)


def test_readonly_buffer_is_not_writable() -> None:
    frame = blank_frame()
    readonly = RawFrameBuffer(frame.width, frame.height, frame.pixel_format, bytes(frame.data))
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), readonly)
    try:
        encoder.encode_into(readonly)
    except BufferNotWritableError:
        pass
    else:
        raise AssertionError("read-only buffer should not be writable")
    assert encoder.frame_index == 0


def test_short_buffer_is_not_readable() -> None:
    short = RawFrameBuffer(96, 16, PixelFormat.RGB, bytes(10))
    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), short)
    try:
        scanner.scan(short)
    except BufferNotReadableError:
        pass
    else:
        raise AssertionError("short buffer should not be readable")


def test_geometry_mismatch_is_not_configured() -> None:
    scanner = FrameScanner(symbol_decoder=strip_decode)
    scanner.set_caps(FrameGeometry(32, 32, PixelFormat.RGB))
    try:
        scanner.scan(blank_frame())
    except NotConfiguredError:
        pass
    else:
        raise AssertionError("mismatched geometry should be rejected")


def test_region_bounds() -> None:
    size = (100, 100)
    assert ScanRegion(Anchor.TOP_LEFT, size).bounds(640, 480) == (0, 0, 100, 100)
    assert ScanRegion(Anchor.TOP_RIGHT, size).bounds(640, 480) == (540, 0, 640, 100)
    assert ScanRegion(Anchor.BOTTOM_LEFT, size).bounds(640, 480) == (0, 380, 100, 480)
    assert ScanRegion(Anchor.BOTTOM_RIGHT, size).bounds(640, 480) == (540, 380, 640, 480)
    assert ScanRegion().bounds(640, 480) == (0, 0, 640, 480)
    assert ScanRegion(Anchor.BOTTOM_RIGHT, (0, 50)).bounds(640, 480) == (0, 430, 640, 480)
    assert Anchor.parse("bottom_right") is Anchor.BOTTOM_RIGHT

    try:
        ScanRegion(Anchor.TOP_LEFT, (700, 10)).bounds(640, 480)
    except ValueError:
        pass
    else:
        raise AssertionError("oversized region should be rejected")


def test_bottom_right_region_scans_exact_rectangle() -> None:
    pixels = np.zeros((480, 640, 3), dtype=np.uint8)
    pixels[380, 540] = 255
    pixels[479, 639] = 255
    pixels[379, 539] = 255
    frame = RawFrameBuffer.from_array(pixels)

    seen = []

    def recording_decoder(gray: np.ndarray) -> List[bytes]:
        seen.append(gray.copy())
        return []

    scanner = negotiated(
        FrameScanner(region=ScanRegion(Anchor.BOTTOM_RIGHT, (100, 100)), symbol_decoder=recording_decoder),
        frame,
    )
    assert scanner.scan(frame).outcome is Outcome.DROPPED

    gray = seen[0]
    assert gray.shape == (100, 100)
    assert gray[0, 0] == 255
    assert gray[99, 99] == 255
    assert int(gray.sum()) == 2 * 255


def test_intensity_policies() -> None:
    pixels = np.array([[[2, 2, 2], [100, 101, 102], [255, 255, 255]]], dtype=np.uint8)
    assert to_intensity(pixels, "per-channel").tolist() == [[0, 100, 255]]
    assert to_intensity(pixels, "sum").tolist() == [[2, 101, 255]]

    try:
        FrameScanner(intensity="average")
    except ValueError:
        pass
    else:
        raise AssertionError("unknown intensity policy should be rejected")

    scanner = FrameScanner(intensity="sum")
    try:
        scanner.intensity = "bogus"
    except ValueError:
        pass
    else:
        raise AssertionError("unknown intensity policy should be rejected after construction")
    assert scanner.intensity == "sum"

    try:
        to_intensity(pixels, "bogus")
    except ValueError:
        pass
    else:
        raise AssertionError("to_intensity should reject unknown policies")


def test_decode_errors_are_skipped_and_first_match_wins() -> None:
    frame = blank_frame()

    def decoder(gray: np.ndarray):
        return [DecodeError("checksum"), b"s:1", b"f:3", b"f:4"]

    scanner = negotiated(FrameScanner(symbol_decoder=decoder), frame)
    assert scanner.scan(frame).payload == "s:1"
    scanner.prefix = "f:"
    assert scanner.scan(frame).payload == "f:3"


def test_invalid_utf8_payload_is_fatal() -> None:
    frame = blank_frame()
    scanner = negotiated(FrameScanner(symbol_decoder=lambda gray: [b"\xff\xfe"]), frame)
    try:
        scanner.scan(frame)
    except InvalidPayloadError:
        pass
    else:
        raise AssertionError("invalid UTF-8 should be fatal")


def test_found_event() -> None:
    frame = blank_frame()
    encoder = negotiated(FrameEncoder("f:", symbol_encoder=strip_encode), frame)
    scanner = negotiated(FrameScanner(symbol_decoder=strip_decode), frame)
    encoder.encode_into(frame)
    assert scanner.scan(frame).event() == {"name": "frameid-found", "payload": "f:0"}


def test_qr_roundtrip() -> None:
    for channels in (3, 4):
        pixels = np.full((240, 320, channels), 255, dtype=np.uint8)
        frame = RawFrameBuffer.from_array(pixels)
        encoder = negotiated(FrameEncoder("f:"), frame)
        scanner = negotiated(FrameScanner(prefix="f:"), frame)

        for expected in ("f:0", "f:1"):
            encoder.encode_into(frame)
            result = scanner.scan(frame)
            assert result.found, f"no symbol found in {channels}-channel frame"
            assert result.payload == expected


def test_qr_prefix_filter() -> None:
    pixels = np.full((240, 320, 3), 255, dtype=np.uint8)
    frame = RawFrameBuffer.from_array(pixels)
    encoder = negotiated(FrameEncoder("s:"), frame)
    scanner = negotiated(FrameScanner(prefix="f:"), frame)
    encoder.encode_into(frame)
    assert scanner.scan(frame).outcome is Outcome.DROPPED


def test_symbol_has_light_margin_toward_frame_content() -> None:
    bitmap = encode_symbol("f:0")
    margin = MARGIN_MODULES * MODULE_SIZE
    assert bitmap[0, 0] == 0
    assert (bitmap[-margin:, :] == 255).all()
    assert (bitmap[:, -margin:] == 255).all()
    assert (bitmap[:-margin, :-margin] == 0).any()


def test_qr_roundtrip_on_dark_frames() -> None:
    for fill in (0, 60):
        pixels = np.full((240, 320, 3), fill, dtype=np.uint8)
        frame = RawFrameBuffer.from_array(pixels)
        encoder = negotiated(FrameEncoder("f:"), frame)
        scanner = negotiated(FrameScanner(), frame)

        encoder.encode_into(frame)
        result = scanner.scan(frame)
        assert result.found, f"no symbol found on fill {fill}"
        assert result.payload == "f:0"


def test_qr_roundtrip_with_dark_content_beside_symbol() -> None:
    margin = MARGIN_MODULES * MODULE_SIZE
    extent = encode_symbol("f:0").shape[0] - margin
    pixels = np.full((240, 320, 3), 255, dtype=np.uint8)
    # Dark bands start exactly where the symbol modules end.
    pixels[extent:, :] = 20
    pixels[:, extent:] = 20
    frame = RawFrameBuffer.from_array(pixels)
    encoder = negotiated(FrameEncoder("f:"), frame)
    scanner = negotiated(FrameScanner(prefix="f:"), frame)

    encoder.encode_into(frame)
    assert (pixels[extent : extent + margin, :extent] == 255).all()
    assert (pixels[extent + margin :, :] == 20).all()
    result = scanner.scan(frame)
    assert result.found
    assert result.payload == "f:0"


def main() -> int:
    failed = 0
    for name, func in sorted(globals().items()):
        if not name.startswith("test_") or not callable(func):
            continue
        try:
            func()
            print(f"  PASS {name}")
        except Exception as exc:
            print(f"  FAIL {name}: {exc!r}")
            failed += 1
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
