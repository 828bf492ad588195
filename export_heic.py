#!/usr/bin/env python3
"""
Export HEIC - Convert AVIF Images to HEIF, One File or a Whole Tree
===================================================================

Purpose
-------
Re-encode images from a source codec (AVIF by default) as HEIF/HEIC by:
- decoding the input and detecting its bit depth and color space,
- encoding at a fixed quality, or searching for the highest quality that fits a byte budget,
- copying the source metadata (EXIF/XMP) into the result with a safe replace,
- walking a directory tree and converting files in parallel with a bounded job count.

In batch mode every discovered file is attempted even when some of them fail;
the first failure is reported at the end and the converted files stay on disk.

Dependencies
------------
- Pillow (PIL), built with AVIF support
- pillow-heif
- NumPy (np)
- psutil
- exiftool (optional, only needed to carry metadata over)

Usage
-----
    export-heic --input-file photo.avif photo.heic
    export-heic --input-dir ~/Pictures --jobs 4

    Options:
        --quality Q          Fixed quality 0.0-1.0 (default: 0.8)
        --size-limit BYTES   Search for the best quality that fits BYTES
        --min-quality Q      Lower bound for the search (default: 0.0)
        --max-quality Q      Upper bound for the search (default: 1.0)
        --color-space NAME   sRGB, DisplayP3 or AdobeRGB1998
        --jobs N             Parallel conversions with --input-dir
        --verbose            Per-file diagnostics
"""
from __future__ import annotations

import argparse
import logging
import os
import platform
import struct
import subprocess
import sys
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import psutil
from PIL import Image, ImageCms
from pillow_heif import from_bytes, register_heif_opener

register_heif_opener()


# -----------------------------
# Configuration
# -----------------------------
@dataclass
class ConversionConfig:
    """Configurable conversion parameters."""
    input_extension: str = "avif"                      # files picked up by the directory scan
    output_extension: str = "heic"                     # batch outputs land next to their inputs
    output_format: str = "HEIF"                        # Pillow format name used for encoding
    default_quality: float = 0.8                       # used when neither quality nor size limit is given
    min_quality: float = 0.0                           # size search floor
    max_quality: float = 1.0                           # size search ceiling
    search_tolerance: float = 1e-3                     # stop bisecting once the interval is this narrow
    max_search_trials: int = 12                        # hard cap on encodes per size search
    icc_profile_dir: Optional[Path] = None             # holds DisplayP3.icc / AdobeRGB1998.icc
    exiftool: str = "exiftool"                         # binary used to copy metadata


DEFAULT_CONFIG = ConversionConfig()

COLOR_SPACE_NAMES: Tuple[str, ...] = ("sRGB", "DisplayP3", "AdobeRGB1998")


# -----------------------------
# Logging setup
# -----------------------------
logger = logging.getLogger(__name__)


# -----------------------------
# Errors
# -----------------------------
class ExportHEICError(Exception):
    """Base class for every error reported to the user."""


class ConfigurationError(ExportHEICError):
    """Options are missing, conflicting or out of range."""


class InvalidInputDirectory(ExportHEICError):
    def __init__(self, path: Union[str, Path]):
        super().__init__(f"Input directory is missing or not a directory: {path}")
        self.path = Path(path)


class CouldNotEnumerateDirectory(ExportHEICError):
    def __init__(self, path: Union[str, Path], detail: Optional[str] = None):
        message = f"Could not enumerate input directory: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.path = Path(path)


class ConversionError(ExportHEICError):
    """A single file could not be converted. Carries the offending input path."""
    reason = "Could not convert image"

    def __init__(self, path: Union[str, Path], detail: Optional[str] = None):
        message = f"{self.reason}: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.path = Path(path)


class CouldNotReadImage(ConversionError):
    reason = "Could not read image file"


class CouldNotEncodeImage(ConversionError):
    reason = "Could not encode image file"


class CouldNotWriteImage(ConversionError):
    reason = "Could not write output file"


class MetadataError(ExportHEICError):
    """Copying metadata into a converted file failed."""


# -----------------------------
# Quality modes and requests
# -----------------------------
def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"`--{name}` must be between 0.0 and 1.0, got {value}")


@dataclass(frozen=True)
class FixedQuality:
    quality: float

    def __post_init__(self):
        _check_unit_interval("quality", self.quality)


@dataclass(frozen=True)
class SizeTargeted:
    limit_bytes: int
    min_quality: float = 0.0
    max_quality: float = 1.0

    def __post_init__(self):
        if self.limit_bytes < 1:
            raise ConfigurationError(f"`--size-limit` must be at least 1 byte, got {self.limit_bytes}")
        _check_unit_interval("min-quality", self.min_quality)
        _check_unit_interval("max-quality", self.max_quality)
        if self.min_quality > self.max_quality:
            raise ConfigurationError(
                f"`--min-quality` ({self.min_quality}) is greater than `--max-quality` ({self.max_quality})"
            )

    @property
    def quality_range(self) -> Tuple[float, float]:
        return self.min_quality, self.max_quality


QualityMode = Union[FixedQuality, SizeTargeted]


def quality_mode_from_options(
    quality: Optional[float] = None,
    size_limit: Optional[int] = None,
    min_quality: Optional[float] = None,
    max_quality: Optional[float] = None,
    config: ConversionConfig = DEFAULT_CONFIG,
) -> QualityMode:
    """
    Reconcile the quality flags into exactly one mode.

    --quality excludes --size-limit, --min-quality and --max-quality; the bounds
    only make sense together with --size-limit. With no flag at all the default
    fixed quality applies.
    """
    if quality is not None:
        for label, value in (("size-limit", size_limit), ("min-quality", min_quality), ("max-quality", max_quality)):
            if value is not None:
                raise ConfigurationError(f"`--quality` cannot be used with `--{label}`")
        return FixedQuality(quality)

    if size_limit is None:
        for label, value in (("min-quality", min_quality), ("max-quality", max_quality)):
            if value is not None:
                raise ConfigurationError(f"`--{label}` cannot be used without `--size-limit`")
        return FixedQuality(config.default_quality)

    return SizeTargeted(
        size_limit,
        config.min_quality if min_quality is None else min_quality,
        config.max_quality if max_quality is None else max_quality,
    )


def validate_inputs(input_file: Optional[str], input_dir: Optional[str]) -> None:
    if input_file is not None and input_dir is not None:
        raise ConfigurationError("`--input-file` cannot be used with `--input-dir`")
    if input_file is None and input_dir is None:
        raise ConfigurationError("One of --input-file, --input-dir must be specified")


# -----------------------------
# Color spaces
# -----------------------------
@dataclass(frozen=True)
class ColorSpace:
    name: str
    icc_profile: bytes

    @classmethod
    def from_icc(cls, icc_profile: bytes) -> "ColorSpace":
        """Wrap an embedded ICC profile, named after its description when readable."""
        try:
            profile = ImageCms.ImageCmsProfile(BytesIO(icc_profile))
            name = ImageCms.getProfileDescription(profile).strip() or "unnamed ICC profile"
        except (OSError, ImageCms.PyCMSError):
            name = "unrecognized ICC profile"
        return cls(name, icc_profile)


@lru_cache(maxsize=1)
def srgb_color_space() -> ColorSpace:
    profile = ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB"))
    return ColorSpace("sRGB", profile.tobytes())


def load_color_space(name: str, icc_profile_dir: Optional[Union[str, Path]] = None) -> ColorSpace:
    """Resolve a --color-space name. Wide-gamut profiles are read from <icc_profile_dir>/<name>.icc."""
    if name not in COLOR_SPACE_NAMES:
        raise ConfigurationError(f"Unknown color space {name!r}; expected one of {', '.join(COLOR_SPACE_NAMES)}")
    if name == "sRGB":
        return srgb_color_space()
    if icc_profile_dir is None:
        raise ConfigurationError(f"Color space {name} needs an ICC profile directory (--icc-dir)")

    path = Path(icc_profile_dir) / f"{name}.icc"
    try:
        return ColorSpace(name, path.read_bytes())
    except OSError as e:
        raise ConfigurationError(f"Cannot load ICC profile for {name} from {path}: {e}") from e


@dataclass(frozen=True)
class ConversionRequest:
    input_path: Path
    output_path: Path
    quality_mode: QualityMode
    color_space: Optional[ColorSpace] = None
    verbose: bool = False

    def __post_init__(self):
        if not isinstance(self.quality_mode, (FixedQuality, SizeTargeted)):
            raise ConfigurationError(f"Invalid quality mode: {self.quality_mode!r}")
        object.__setattr__(self, "input_path", Path(self.input_path))
        object.__setattr__(self, "output_path", Path(self.output_path))


# -----------------------------
# Codec
# -----------------------------
@dataclass(frozen=True)
class ImageProperties:
    """Metadata carried over from a source file."""
    source: Path
    exif: Optional[bytes] = None
    xmp: Optional[bytes] = None

    @property
    def present(self) -> bool:
        return bool(self.exif or self.xmp)


@dataclass
class DecodedImage:
    source: Path
    pixels: Image.Image
    bit_depth: int
    color_space: Optional[ColorSpace]
    properties: Optional[ImageProperties] = None

    @property
    def wide(self) -> bool:
        return self.bit_depth > 8


@dataclass(frozen=True)
class EncodeOutcome:
    data: bytes
    quality: float

    @property
    def size(self) -> int:
        return len(self.data)


class Codec(Protocol):
    def decode(self, path: Path) -> DecodedImage:
        ...

    def encode(self, image: DecodedImage, quality: float, color_space: ColorSpace, wide: bool) -> bytes:
        ...

    def read_properties(self, path: Path) -> Optional[ImageProperties]:
        ...

    def write_with_properties(self, image_path: Path, properties: ImageProperties, dest_path: Path) -> None:
        ...


_MODE_BIT_DEPTH = {"I;16": 16, "I;16B": 16, "I;16L": 16, "I;16N": 16, "I": 16}


# -----------------------------
# AVIF container header
# -----------------------------
def _iter_boxes(data: bytes):
    """Yield (type, payload) for the ISOBMFF boxes packed in data."""
    offset = 0
    while offset + 8 <= len(data):
        size, box_type = struct.unpack_from(">I4s", data, offset)
        header = 8
        if size == 1:
            if offset + 16 > len(data):
                return
            size = struct.unpack_from(">Q", data, offset + 8)[0]
            header = 16
        elif size == 0:
            size = len(data) - offset
        if size < header:
            return
        yield box_type, data[offset + header:offset + size]
        offset += size


def _read_top_level_box(handle, wanted: bytes) -> Optional[bytes]:
    while True:
        header = handle.read(8)
        if len(header) < 8:
            return None
        size, box_type = struct.unpack(">I4s", header)
        header_size = 8
        if size == 1:
            size = struct.unpack(">Q", handle.read(8))[0]
            header_size = 16
        if size and size < header_size:
            return None
        if box_type == wanted:
            return handle.read(size - header_size) if size else handle.read()
        if size == 0:
            return None
        handle.seek(size - header_size, os.SEEK_CUR)


def _av1c_bit_depth(payload: bytes) -> Optional[int]:
    if len(payload) < 3:
        return None
    flags = payload[2]
    high_bitdepth, twelve_bit = flags & 0x40, flags & 0x20
    if high_bitdepth:
        return 12 if twelve_bit else 10
    return 8


def read_avif_bit_depth(path: Union[str, Path]) -> Optional[int]:
    """
    Bits per channel of an AVIF file, read from its item properties.

    Pillow decodes every AVIF to 8-bit RGB(A), so the stored depth has to come
    from the container: the `pixi` property when present, else the
    high_bitdepth / twelve_bit flags of the `av1C` configuration box.
    Returns None when the header cannot be read.
    """
    try:
        with open(path, "rb") as handle:
            meta = _read_top_level_box(handle, b"meta")
    except (OSError, struct.error):
        return None
    if meta is None or len(meta) < 4:
        return None

    pixi_depths, av1c_depths = [], []
    # meta is a full box: skip version and flags
    for kind, iprp in _iter_boxes(meta[4:]):
        if kind != b"iprp":
            continue
        for kind, ipco in _iter_boxes(iprp):
            if kind != b"ipco":
                continue
            for prop, body in _iter_boxes(ipco):
                if prop == b"pixi" and len(body) >= 6:
                    pixi_depths.extend(body[5:5 + body[4]])
                elif prop == b"av1C":
                    depth = _av1c_bit_depth(body)
                    if depth is not None:
                        av1c_depths.append(depth)

    depths = pixi_depths or av1c_depths
    return max(depths) if depths else None


# -----------------------------
# Pillow / pillow-heif codec
# -----------------------------
class PillowHeifCodec:
    """Decode with Pillow, encode HEIF with pillow-heif, copy metadata with exiftool."""

    def __init__(self, config: ConversionConfig = DEFAULT_CONFIG):
        self.config = config

    def decode(self, path: Path) -> DecodedImage:
        try:
            pixels = Image.open(path)
            pixels.load()
        except Exception as e:
            raise CouldNotReadImage(path, str(e)) from e

        bit_depth = pixels.info.get("bit_depth")
        if not bit_depth and pixels.format == "AVIF":
            bit_depth = read_avif_bit_depth(path)
        bit_depth = int(bit_depth or _MODE_BIT_DEPTH.get(pixels.mode, 8))
        icc = pixels.info.get("icc_profile")
        color_space = ColorSpace.from_icc(icc) if icc else None
        return DecodedImage(Path(path), pixels, bit_depth, color_space)

    def encode(self, image: DecodedImage, quality: float, color_space: ColorSpace, wide: bool) -> bytes:
        buffer = BytesIO()
        encoder_quality = int(round(quality * 100))
        try:
            pixels = self._convert_color_space(image, color_space)
            if wide:
                heif_file = self._to_wide_heif(pixels)
                heif_file.save(buffer, quality=encoder_quality, icc_profile=color_space.icc_profile)
            else:
                if pixels.mode not in ("RGB", "RGBA"):
                    pixels = pixels.convert("RGBA" if "A" in pixels.getbands() else "RGB")
                pixels.save(
                    buffer,
                    format=self.config.output_format,
                    quality=encoder_quality,
                    icc_profile=color_space.icc_profile,
                )
        except Exception as e:
            raise CouldNotEncodeImage(image.source, str(e)) from e
        return buffer.getvalue()

    def _convert_color_space(self, image: DecodedImage, color_space: ColorSpace) -> Image.Image:
        """
        Convert pixels from the source profile to color_space.

        Any mode is brought to L or RGB first, matching the source profile, and
        alpha is carried around the transform. 16-bit sources are color managed
        at 8 bits per channel; the wide encode path promotes them again.
        """
        pixels = image.pixels
        source = image.color_space or srgb_color_space()
        if source == color_space:
            return pixels

        source_profile = ImageCms.ImageCmsProfile(BytesIO(source.icc_profile))
        alpha = None
        if pixels.mode in _MODE_BIT_DEPTH:
            pixels = Image.fromarray((np.clip(np.asarray(pixels), 0, 65535) >> 8).astype(np.uint8))
        elif "A" in pixels.getbands() or pixels.has_transparency_data:
            pixels = pixels.convert("RGBA")
            alpha = pixels.getchannel("A")

        grey = source_profile.profile.xcolor_space.strip() == "GRAY"
        converted = ImageCms.profileToProfile(
            pixels.convert("L" if grey else "RGB"),
            source_profile,
            ImageCms.ImageCmsProfile(BytesIO(color_space.icc_profile)),
            outputMode="RGB",
        )
        if alpha is not None:
            converted.putalpha(alpha)
        return converted

    def _to_wide_heif(self, pixels: Image.Image):
        """Promote pixels to 16 bits per channel; pillow-heif stores them as 10-bit HEIF."""
        if pixels.mode in _MODE_BIT_DEPTH:
            grey = np.clip(np.asarray(pixels), 0, 65535).astype(np.uint16)
            array = np.dstack([grey, grey, grey])
            mode = "RGB;16"
        else:
            has_alpha = "A" in pixels.getbands()
            rgb = pixels.convert("RGBA" if has_alpha else "RGB")
            # 255 * 257 == 65535
            array = np.asarray(rgb, dtype=np.uint16) * 257
            mode = "RGBA;16" if has_alpha else "RGB;16"
        return from_bytes(mode, pixels.size, np.ascontiguousarray(array).tobytes())

    def read_properties(self, path: Path) -> Optional[ImageProperties]:
        try:
            # header chunks only; pixels are not decoded
            with Image.open(path) as img:
                exif = img.info.get("exif")
                xmp = img.info.get("xmp") or img.info.get("XML:com.adobe.xmp")
        except Exception as e:
            logger.debug(f"No readable metadata in {path}: {e}")
            return None

        if isinstance(xmp, str):
            xmp = xmp.encode("utf-8")
        properties = ImageProperties(Path(path), exif=exif or None, xmp=xmp or None)
        return properties if properties.present else None

    def write_with_properties(self, image_path: Path, properties: ImageProperties, dest_path: Path) -> None:
        """Write dest_path as a copy of image_path carrying the tags of properties.source, without re-encoding."""
        cmd = [
            self.config.exiftool,
            "-q",
            "-TagsFromFile", str(properties.source),
            "-all:all",
            "-o", str(dest_path),
            str(image_path),
        ]
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise MetadataError(f"exiftool not found: {self.config.exiftool}") from e
        except subprocess.CalledProcessError as e:
            raise MetadataError(f"exiftool failed: {e.stderr.strip() or e.returncode}") from e
        if not dest_path.exists():
            raise MetadataError(f"exiftool did not create {dest_path}")


# -----------------------------
# Directory scan
# -----------------------------
class FileScanner:
    """Recursively list files with one extension, skipping hidden entries, sorted by full path."""

    def __init__(self, extension: str = DEFAULT_CONFIG.input_extension):
        self.suffix = "." + extension.lower().lstrip(".")

    def scan(self, root_dir: Union[str, Path]) -> List[Path]:
        root = Path(root_dir)
        if not root.is_dir():
            raise InvalidInputDirectory(root)
        root = root.resolve()
        try:
            with os.scandir(root):
                pass
        except OSError as e:
            raise CouldNotEnumerateDirectory(root, e.strerror) from e

        found: List[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in filenames:
                if name.startswith("."):
                    continue
                path = Path(dirpath) / name
                if path.suffix.lower() != self.suffix:
                    continue
                if path.is_symlink() or not path.is_file():
                    continue
                found.append(path)
        return sorted(found, key=str)


# -----------------------------
# Size-targeted quality search
# -----------------------------
class SizeTargetSearch:
    """
    Bisect the quality interval for the highest quality whose encoding fits a byte limit.

    The ceiling is tried first and returned straight away when it already fits.
    Otherwise the interval is halved until it is narrower than `tolerance` or the
    trial budget is spent; one trial is always kept in reserve so that, when no
    midpoint fits, the floor can still be encoded and returned as a best effort.
    Every trial is a real encode, so the result depends only on the inputs.
    """

    def __init__(self, codec: Codec, *, tolerance: float = 1e-3, max_trials: int = 12):
        if max_trials < 2:
            raise ConfigurationError(f"Size search needs at least 2 trials, got {max_trials}")
        self.codec = codec
        self.tolerance = tolerance
        self.max_trials = max_trials

    def search(
        self,
        image: DecodedImage,
        limit_bytes: int,
        quality_range: Tuple[float, float],
        *,
        color_space: ColorSpace,
        wide: bool = False,
        verbose: bool = False,
    ) -> EncodeOutcome:
        lo, hi = quality_range
        trials = 0

        def trial(quality: float) -> EncodeOutcome:
            nonlocal trials
            trials += 1
            outcome = EncodeOutcome(self.codec.encode(image, quality, color_space, wide), quality)
            if verbose:
                logger.info(f"Size search trial {trials}: quality={quality:.4f} size={outcome.size} limit={limit_bytes}")
            return outcome

        ceiling = trial(hi)
        if ceiling.size <= limit_bytes or lo == hi:
            return self._finish(ceiling, limit_bytes, verbose)

        best: Optional[EncodeOutcome] = None
        while hi - lo > self.tolerance and trials < self.max_trials - 1:
            mid = (lo + hi) / 2
            outcome = trial(mid)
            if outcome.size <= limit_bytes:
                best = outcome
                lo = mid
            else:
                hi = mid

        if best is None:
            best = trial(quality_range[0])
        return self._finish(best, limit_bytes, verbose)

    def _finish(self, outcome: EncodeOutcome, limit_bytes: int, verbose: bool) -> EncodeOutcome:
        if outcome.size > limit_bytes and verbose:
            logger.warning(
                f"Size limit {limit_bytes} bytes unreachable; using quality {outcome.quality:.4f} "
                f"({outcome.size} bytes)"
            )
        return outcome


# -----------------------------
# Single file conversion
# -----------------------------
@dataclass
class ConversionReport:
    input_path: Path
    output_path: Path
    quality: float
    bytes: int
    wide: bool
    metadata: str                                      # "applied", "failed" or "none"


class ConversionPipeline:
    """Convert one input file to one output file."""

    def __init__(self, codec: Codec, config: ConversionConfig = DEFAULT_CONFIG):
        self.codec = codec
        self.config = config
        self.size_search = SizeTargetSearch(
            codec,
            tolerance=config.search_tolerance,
            max_trials=config.max_search_trials,
        )

    def convert(self, request: ConversionRequest) -> ConversionReport:
        image = self.codec.decode(request.input_path)
        color_space = request.color_space or image.color_space or srgb_color_space()
        image.properties = self.codec.read_properties(request.input_path)

        if request.verbose:
            logger.info(f"Input URL: {request.input_path}")
            logger.info(f"Input Colorspace: {image.color_space.name if image.color_space else '<none>'}")
            logger.info(f"Input Bitdepth: {image.bit_depth}")
            logger.info(f"Input Metadata: {'<present>' if image.properties else '<none>'}")

        self._remove_existing(request)
        outcome = self._encode(image, request, color_space)
        self._write_output(request, outcome.data)

        metadata = "none"
        if image.properties is not None:
            applied = self.apply_metadata(image.properties, request.output_path, verbose=request.verbose)
            metadata = "applied" if applied else "failed"

        return ConversionReport(
            input_path=request.input_path,
            output_path=request.output_path,
            quality=outcome.quality,
            bytes=outcome.size,
            wide=image.wide,
            metadata=metadata,
        )

    def _encode(self, image: DecodedImage, request: ConversionRequest, color_space: ColorSpace) -> EncodeOutcome:
        mode = request.quality_mode
        if isinstance(mode, SizeTargeted):
            return self.size_search.search(
                image,
                mode.limit_bytes,
                mode.quality_range,
                color_space=color_space,
                wide=image.wide,
                verbose=request.verbose,
            )
        return EncodeOutcome(self.codec.encode(image, mode.quality, color_space, image.wide), mode.quality)

    def _remove_existing(self, request: ConversionRequest) -> None:
        try:
            request.output_path.unlink(missing_ok=True)
        except OSError as e:
            raise CouldNotWriteImage(request.input_path, f"cannot replace {request.output_path}: {e}") from e

    def _write_output(self, request: ConversionRequest, data: bytes) -> None:
        try:
            request.output_path.parent.mkdir(parents=True, exist_ok=True)
            request.output_path.write_bytes(data)
        except OSError as e:
            raise CouldNotWriteImage(request.input_path, f"{request.output_path}: {e}") from e

    def apply_metadata(self, properties: ImageProperties, output_path: Path, *, verbose: bool = False) -> bool:
        """
        Re-embed source metadata into an already written output.

        A hidden temporary file next to the output receives the image plus the
        metadata and then replaces the output atomically. Any failure leaves the
        output as written, removes the temporary file and returns False.
        """
        temp_path = output_path.with_name(f".{uuid.uuid4().hex}-{output_path.name}")
        try:
            self.codec.write_with_properties(output_path, properties, temp_path)
            os.replace(temp_path, output_path)
        except Exception as e:
            if verbose:
                logger.info(f"Metadata: not applied to {output_path} ({e})")
            return False
        finally:
            temp_path.unlink(missing_ok=True)

        if verbose:
            logger.info("Metadata: applied")
        return True


# -----------------------------
# Batch dispatch
# -----------------------------
class CoreCounter(Protocol):
    def default_concurrency(self) -> int:
        ...


class SystemCoreCounter:
    """Performance cores on Apple silicon, else physical cores, else logical cores."""

    PERFORMANCE_KEYS = ("hw.perflevel0.physicalcpu", "hw.perflevel0.logicalcpu")

    def default_concurrency(self) -> int:
        candidates = []
        if platform.system() == "Darwin":
            candidates.extend(self._sysctl(key) for key in self.PERFORMANCE_KEYS)
        candidates.append(psutil.cpu_count(logical=False))
        candidates.append(os.cpu_count())
        for count in candidates:
            if count and count > 0:
                return count
        return 1

    def _sysctl(self, key: str) -> Optional[int]:
        try:
            result = subprocess.run(["sysctl", "-n", key], check=True, capture_output=True, text=True)
            return int(result.stdout.strip())
        except (OSError, subprocess.CalledProcessError, ValueError):
            return None


@dataclass(frozen=True)
class BatchFailure:
    path: Path
    error: Exception


@dataclass
class BatchResult:
    discovered: int
    processed: int = 0
    converted: int = 0
    first_failure: Optional[BatchFailure] = None

    @property
    def failed(self) -> int:
        return self.processed - self.converted

    def raise_for_error(self) -> None:
        if self.first_failure is not None:
            raise self.first_failure.error


class FirstErrorSlot:
    """Keeps the first failure reported by any worker; later ones are dropped."""

    def __init__(self):
        self._lock = threading.Lock()
        self._failure: Optional[BatchFailure] = None

    def record(self, path: Path, error: Exception) -> bool:
        with self._lock:
            if self._failure is not None:
                return False
            self._failure = BatchFailure(path, error)
            return True

    @property
    def failure(self) -> Optional[BatchFailure]:
        with self._lock:
            return self._failure


class BatchDispatcher:
    """
    Run a per-file function over many paths.

    Paths are submitted in the given order. With concurrency <= 1 they run one by
    one; otherwise an admission gate keeps at most `concurrency` of them in
    flight. A failure never stops the remaining files.
    """

    def __init__(self, core_counter: Optional[CoreCounter] = None):
        self.core_counter = core_counter or SystemCoreCounter()

    def run(
        self,
        paths: Sequence[Path],
        concurrency: Optional[int],
        convert_one: Callable[[Path], object],
    ) -> BatchResult:
        paths = list(paths)
        if not paths:
            return BatchResult(discovered=0)

        if concurrency is None:
            concurrency = self.core_counter.default_concurrency()
        jobs = max(1, concurrency)
        slot = FirstErrorSlot()

        if jobs <= 1:
            outcomes = [self._attempt(path, convert_one, slot) for path in paths]
        else:
            gate = threading.BoundedSemaphore(jobs)
            futures = []
            with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="export-heic") as executor:
                for path in paths:
                    gate.acquire()
                    futures.append(executor.submit(self._admitted, gate, path, convert_one, slot))
            outcomes = [future.result() for future in futures]

        return BatchResult(
            discovered=len(paths),
            processed=len(outcomes),
            converted=sum(outcomes),
            first_failure=slot.failure,
        )

    def _admitted(self, gate: threading.BoundedSemaphore, path: Path, convert_one, slot: FirstErrorSlot) -> bool:
        try:
            return self._attempt(path, convert_one, slot)
        finally:
            gate.release()

    def _attempt(self, path: Path, convert_one, slot: FirstErrorSlot) -> bool:
        try:
            convert_one(path)
        except Exception as e:
            logger.error(f"Failed to convert {path}: {e}")
            slot.record(path, e)
            return False
        return True


# -----------------------------
# Output path generation
# -----------------------------
def output_path_for_input(input_path: Union[str, Path], config: ConversionConfig = DEFAULT_CONFIG) -> Path:
    """Batch output: same directory and basename as the input, output container extension."""
    return Path(input_path).with_suffix(f".{config.output_extension}")


# -----------------------------
# Entry points
# -----------------------------
def convert_file(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    quality_mode: Optional[QualityMode] = None,
    *,
    color_space: Optional[ColorSpace] = None,
    verbose: bool = False,
    codec: Optional[Codec] = None,
    config: ConversionConfig = DEFAULT_CONFIG,
) -> ConversionReport:
    """Convert a single file, always overwriting output_path. Errors propagate to the caller."""
    request = ConversionRequest(
        input_path,
        output_path,
        quality_mode or FixedQuality(config.default_quality),
        color_space,
        verbose,
    )
    pipeline = ConversionPipeline(codec or PillowHeifCodec(config), config)
    return pipeline.convert(request)


def convert_directory(
    input_dir: Union[str, Path],
    quality_mode: Optional[QualityMode] = None,
    *,
    jobs: Optional[int] = None,
    color_space: Optional[ColorSpace] = None,
    verbose: bool = False,
    codec: Optional[Codec] = None,
    core_counter: Optional[CoreCounter] = None,
    config: ConversionConfig = DEFAULT_CONFIG,
) -> BatchResult:
    """
    Convert every matching file under input_dir, writing each output next to its input.

    Discovery errors raise immediately. Per-file errors are collected; the first
    one is available on the returned result (see BatchResult.raise_for_error).
    """
    files = FileScanner(config.input_extension).scan(input_dir)
    if verbose:
        logger.info(f"Found {len(files)} .{config.input_extension} file(s) under {Path(input_dir).resolve()}")

    quality_mode = quality_mode or FixedQuality(config.default_quality)
    pipeline = ConversionPipeline(codec or PillowHeifCodec(config), config)

    def convert_one(path: Path) -> ConversionReport:
        request = ConversionRequest(path, output_path_for_input(path, config), quality_mode, color_space, verbose)
        return pipeline.convert(request)

    result = BatchDispatcher(core_counter).run(files, jobs, convert_one)

    if verbose:
        logger.info(
            f"Summary: discovered={result.discovered} processed={result.processed} "
            f"converted={result.converted} failed={result.failed}"
        )
    return result


# -----------------------------
# Main entry point
# -----------------------------
def _unit_float(value: str) -> float:
    number = float(value)
    if not 0.0 <= number <= 1.0:
        raise argparse.ArgumentTypeError(f"{value} is not between 0.0 and 1.0")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="export-heic",
        description="Export an input image file as HEIC, or batch convert files in a directory tree.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--input-file", help="Path to input image file.")
    parser.add_argument(
        "--input-dir",
        help="Root directory to scan for input files (recursively). Output is written next to inputs.",
    )
    parser.add_argument(
        "--quality",
        type=_unit_float,
        help="Compression quality between 0.0-1.0 (default: 0.8). Cannot be used with --size-limit.",
    )
    parser.add_argument(
        "--size-limit",
        type=_positive_int,
        help="Limit the size in bytes of the resulting image file instead of specifying a quality.",
    )
    parser.add_argument(
        "--min-quality",
        type=_unit_float,
        help="Minimal allowed quality, 0.0-1.0, with --size-limit (default: 0.0).",
    )
    parser.add_argument(
        "--max-quality",
        type=_unit_float,
        help="Maximal allowed quality, 0.0-1.0, with --size-limit (default: 1.0).",
    )
    parser.add_argument(
        "--color-space",
        choices=COLOR_SPACE_NAMES,
        help="Name of the output color space. Omit to use the input image color space.",
    )
    parser.add_argument(
        "--jobs",
        type=_positive_int,
        help="Files to process in parallel with --input-dir (default: performance core count).",
    )
    parser.add_argument(
        "--input-ext",
        default=DEFAULT_CONFIG.input_extension,
        help="Extension of the files picked up by --input-dir (default: avif).",
    )
    parser.add_argument(
        "--icc-dir",
        default=os.environ.get("EXPORT_HEIC_ICC_DIR"),
        help="Directory holding DisplayP3.icc and AdobeRGB1998.icc (default: $EXPORT_HEIC_ICC_DIR).",
    )
    parser.add_argument(
        "--exiftool",
        default=DEFAULT_CONFIG.exiftool,
        help="exiftool binary used to copy metadata (default: exiftool).",
    )
    parser.add_argument("--verbose", action="store_true", help="Print per-file diagnostics.")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: WARNING, or INFO with --verbose; --verbose needs INFO or DEBUG).",
    )
    parser.add_argument(
        "output_file",
        nargs="?",
        help="Path where the output file will be placed (required with --input-file, ignored with --input-dir).",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging
    log_level = getattr(logging, args.log_level or ("INFO" if args.verbose else "WARNING"))
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    config = replace(
        DEFAULT_CONFIG,
        input_extension=args.input_ext,
        icc_profile_dir=Path(args.icc_dir) if args.icc_dir else None,
        exiftool=args.exiftool,
    )

    try:
        if args.verbose and log_level > logging.INFO:
            raise ConfigurationError(f"`--verbose` cannot be used with `--log-level {args.log_level}`")
        validate_inputs(args.input_file, args.input_dir)
        quality_mode = quality_mode_from_options(
            args.quality, args.size_limit, args.min_quality, args.max_quality, config
        )
        color_space = load_color_space(args.color_space, config.icc_profile_dir) if args.color_space else None

        if args.input_dir is not None:
            result = convert_directory(
                args.input_dir,
                quality_mode,
                jobs=args.jobs,
                color_space=color_space,
                verbose=args.verbose,
                config=config,
            )
            result.raise_for_error()
            return 0

        if args.output_file is None:
            raise ConfigurationError("Missing required argument: `output-file`")
        convert_file(
            args.input_file,
            args.output_file,
            quality_mode,
            color_space=color_space,
            verbose=args.verbose,
            config=config,
        )
        return 0
    except ExportHEICError as e:
        logger.critical(f"Fatal: {e}")
        return 1
    except Exception as e:
        logger.critical(f"Fatal: Unexpected error: {e}", exc_info=True)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
