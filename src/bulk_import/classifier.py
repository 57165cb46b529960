"""Filename parsing: which look a photo belongs to and which view it shows."""

from __future__ import annotations

import re
from pathlib import Path

from bulk_import.schema import Classification, Subtype

IMAGE_EXTENSION_PATTERN = re.compile(r"\.(tiff?|png|jpe?g|webp)$", re.IGNORECASE)
SUPPORTED_EXTENSIONS = frozenset({".tif", ".tiff", ".png", ".jpg", ".jpeg", ".webp"})
CONVERTIBLE_EXTENSIONS = frozenset({".tif", ".tiff"})

LONG_CODE_PATTERN = re.compile(r"[A-Z0-9]{8,}", re.IGNORECASE)
SEGMENT_SPLIT_PATTERN = re.compile(r"[_\s\-#]+")
SHORT_CODE_MIN_LENGTH = 6
LEADING_NUMBER_PATTERN = re.compile(r"^(\d+)_")
DESCRIPTOR_PATTERN = re.compile(r"\s([a-z]+)(?:#|\s*\d*$)", re.IGNORECASE)
SEQUENCE_PATTERN = re.compile(r"#(\d+)")

# Checked in order; the first keyword found decides the view.
SUBTYPE_KEYWORDS: tuple[tuple[Subtype, tuple[str, ...]], ...] = (
    (Subtype.FRONT, ("front",)),
    (Subtype.BACK, ("back", "rear")),
    (Subtype.SIDE, ("side", "profile")),
    (Subtype.DETAIL, ("detail", "close")),
)


def _strip_extension(filename: str) -> str:
    return IMAGE_EXTENSION_PATTERN.sub("", filename)


def _has_letters_and_digits(value: str) -> bool:
    return any(ch.isalpha() for ch in value) and any(ch.isdigit() for ch in value)


def normalize_key(key: str) -> str:
    """Canonical form used for every group key comparison."""
    return key.strip().upper()


def extract_group_key(filename: str) -> str | None:
    """Extract a SKU-like look key such as ``MW0MW43114GXR`` from a filename."""
    stem = _strip_extension(filename)

    long_codes = LONG_CODE_PATTERN.findall(stem)
    if long_codes:
        # Codes mixing letters and digits are far more likely to be SKUs.
        sku_like = next((code for code in long_codes if _has_letters_and_digits(code)), None)
        return normalize_key(sku_like or long_codes[0])

    segments = [
        segment
        for segment in SEGMENT_SPLIT_PATTERN.split(stem)
        if len(segment) >= SHORT_CODE_MIN_LENGTH
        and segment.isalnum()
        and segment.isascii()
        and _has_letters_and_digits(segment)
    ]
    if segments:
        return normalize_key(max(segments, key=len))

    leading = LEADING_NUMBER_PATTERN.match(stem)
    return leading.group(1) if leading else None


def extract_descriptor(filename: str) -> str | None:
    """Product word before ``#`` or at the end, e.g. "short" in ``X short#008``."""
    match = DESCRIPTOR_PATTERN.search(_strip_extension(filename))
    return match.group(1).lower() if match else None


def extract_sequence(filename: str) -> str | None:
    match = SEQUENCE_PATTERN.search(filename)
    return match.group(1) if match else None


def infer_subtype(filename: str) -> Subtype:
    lowered = filename.lower()
    for subtype, keywords in SUBTYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return subtype
    return Subtype.UNASSIGNED


def classify(filename: str) -> Classification:
    """Classify a raw filename. Never raises; unknown names come back unassigned."""
    return Classification(
        subtype=infer_subtype(filename),
        group_key=extract_group_key(filename),
        descriptor=extract_descriptor(filename),
        sequence=extract_sequence(filename),
    )


def derive_key_from_name(display_name: str) -> str | None:
    """Recover a group key from a display name like ``MW0MW43114GXR - short``."""
    return extract_group_key(display_name)


def is_supported_image(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS


def needs_conversion(filename: str) -> bool:
    """TIFFs go through the conversion service; everything else is stored as-is."""
    return Path(filename).suffix.lower() in CONVERTIBLE_EXTENSIONS
