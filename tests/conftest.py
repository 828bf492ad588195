import shutil
import struct
import threading
import time
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from export_heic import (
    CouldNotEncodeImage,
    CouldNotReadImage,
    DecodedImage,
    ImageProperties,
    MetadataError,
)


class FakeCodec:
    """
    Codec double working on text files.

    A file containing "corrupt" fails to decode, a file containing "wide" decodes
    with a 10-bit depth, a file containing "meta" carries metadata and a file
    containing "unencodable" decodes but fails to encode. Encoded size grows
    linearly with quality: 1000 + 9000 * quality bytes.
    """

    def __init__(self, fail_metadata=False):
        self.fail_metadata = fail_metadata
        self.encodes = []
        self.decoded = []
        self.lock = threading.Lock()

    @staticmethod
    def size_for(quality):
        return 1000 + int(round(9000 * quality))

    def decode(self, path):
        content = Path(path).read_text()
        with self.lock:
            self.decoded.append(Path(path))
        if "corrupt" in content:
            raise CouldNotReadImage(path, "not an image")
        bit_depth = 10 if "wide" in content else 8
        return DecodedImage(Path(path), pixels=content, bit_depth=bit_depth, color_space=None)

    def encode(self, image, quality, color_space, wide):
        with self.lock:
            self.encodes.append((image.source, quality, color_space, wide))
        if "unencodable" in image.pixels:
            raise CouldNotEncodeImage(image.source, "encoder rejected the image")
        return b"x" * self.size_for(quality)

    def read_properties(self, path):
        if "meta" in Path(path).read_text():
            return ImageProperties(Path(path), exif=b"Exif\x00\x00fake")
        return None

    def write_with_properties(self, image_path, properties, dest_path):
        if self.fail_metadata:
            Path(dest_path).write_bytes(b"partial")
            raise MetadataError("simulated failure")
        shutil.copyfile(image_path, dest_path)
        with open(dest_path, "ab") as handle:
            handle.write(b"+meta")


class CountingCodec(FakeCodec):
    """Tracks how many conversions are inside the codec at the same time."""

    def __init__(self, delay=0.02):
        super().__init__()
        self.delay = delay
        self.active = 0
        self.peak = 0

    def decode(self, path):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delay)
            return super().decode(path)
        finally:
            with self.lock:
                self.active -= 1


class FixedCoreCounter:
    def __init__(self, count):
        self.count = count
        self.calls = 0

    def default_concurrency(self):
        self.calls += 1
        return self.count


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def image_tree(tmp_path):
    """a.avif, b.avif (corrupt) and c.avif at the root plus a nested and a hidden file."""
    root = tmp_path / "photos"
    (root / "nested").mkdir(parents=True)
    (root / ".hidden").mkdir()
    (root / "a.avif").write_text("image a")
    (root / "b.avif").write_text("corrupt")
    (root / "c.avif").write_text("image c meta")
    (root / "nested" / "d.AVIF").write_text("image d")
    (root / "nested" / "notes.txt").write_text("not an image")
    (root / ".hidden" / "e.avif").write_text("image e")
    (root / ".f.avif").write_text("image f")
    return root


def noise_image(size=(64, 48), seed=0, mode="RGB"):
    rng = np.random.default_rng(seed)
    channels = {"RGB": 3, "RGBA": 4}[mode]
    data = rng.integers(0, 256, size=(size[1], size[0], channels), dtype=np.uint8)
    return Image.fromarray(data)


def box(kind, payload=b""):
    return struct.pack(">I4s", 8 + len(payload), kind) + payload


def avif_header(pixi_bits=None, av1c_flags=0x0C):
    """
    ftyp + meta + empty mdat, with the item properties an AVIF encoder writes.

    av1c_flags is the third byte of the AV1 configuration record:
    0x40 high_bitdepth, 0x20 twelve_bit, 0x0C chroma subsampling x/y.
    """
    properties = box(b"ispe", bytes(4) + struct.pack(">II", 64, 48))
    if pixi_bits is not None:
        properties += box(b"pixi", bytes(4) + bytes([3, pixi_bits, pixi_bits, pixi_bits]))
    properties += box(b"av1C", bytes([0x81, 0x00, av1c_flags, 0x00]))
    meta = box(
        b"meta",
        bytes(4)
        + box(b"hdlr", bytes(8) + b"pict" + bytes(13))
        + box(b"iprp", box(b"ipco", properties) + box(b"ipma", bytes(4))),
    )
    return box(b"ftyp", b"avif" + bytes(4) + b"avifmif1miaf") + meta + box(b"mdat")


@pytest.fixture
def png_file(tmp_path):
    path = tmp_path / "noise.png"
    noise_image().save(path)
    return path


@pytest.fixture
def srgb():
    from export_heic import srgb_color_space

    return srgb_color_space()
