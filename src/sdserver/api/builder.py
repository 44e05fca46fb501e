"""Request descriptor builder — JSON request body to :class:`JobDescriptor`.

The builder is a pure function of the request body and a small set of
server-wide defaults.  It never touches the filesystem or the network: image
references are recorded, not loaded.

Field rules
-----------
- Unknown keys are ignored.
- An optional field with the wrong JSON type is treated as absent and its
  default applies.  Booleans never count as numbers, integers are accepted
  where a float is expected, and integers must fit the field's width
  (64-bit for ``seed``, 32-bit otherwise).
- Fields the mode requires (``mode``, ``prompt``, ``input_image``) must be
  present *and* well-typed, otherwise :class:`MissingRequiredField`.
- Well-typed values outside their allowed range raise
  :class:`InvalidFieldValue`; unknown enum tokens raise
  :class:`InvalidEnumValue`.

JSON keys
---------
=========================  ======================
JSON key                   JobDescriptor field
=========================  ======================
``num_inference_steps``    ``sample_steps``
``min_cfg``                ``min_guidance_scale``
=========================  ======================

All other keys share the field's name.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sdserver.api.models import ImageRef, JobDefaults, JobDescriptor, Mode
from sdserver.core.engine import SampleMethod
from sdserver.core.errors import (
    InvalidEnumValue,
    InvalidFieldValue,
    MalformedJson,
    MissingRequiredField,
)
from sdserver.core.images import OutputFormat

logger = logging.getLogger(__name__)

_INT32 = (-(2**31), 2**31 - 1)
_INT64 = (-(2**63), 2**63 - 1)

_OUTPUT_FORMATS = {
    "png": OutputFormat.PNG,
    "jpg": OutputFormat.JPEG,
    "jpeg": OutputFormat.JPEG,
}

# (json key, descriptor field) pairs, grouped by JSON type.
_INT32_FIELDS = [
    ("width", "width"),
    ("height", "height"),
    ("num_inference_steps", "sample_steps"),
    ("batch_count", "batch_count"),
    ("clip_skip", "clip_skip"),
    ("video_frames", "video_frames"),
    ("fps", "fps"),
    ("motion_bucket_id", "motion_bucket_id"),
]
_NUMBER_FIELDS = [
    ("guidance_scale", "guidance_scale"),
    ("min_cfg", "min_guidance_scale"),
    ("strength", "strength"),
    ("control_strength", "control_strength"),
    ("style_ratio", "style_ratio"),
    ("augmentation_level", "augmentation_level"),
    ("output_quality", "output_quality"),
]
_BOOL_FIELDS = [
    ("normalize_input", "normalize_input"),
    ("canny_preprocess", "canny_preprocess"),
]
_STRING_FIELDS = [
    ("negative_prompt", "negative_prompt"),
    ("input_id_images_path", "input_id_images_path"),
]

_POSITIVE_FIELDS = ("width", "height", "sample_steps", "batch_count", "video_frames", "fps")
_UNIT_INTERVAL_FIELDS = ("strength", "output_quality")


# ---------------------------------------------------------------------------
# Typed accessors.  Each returns None when the value has the wrong type.
# ---------------------------------------------------------------------------


def _as_int(value: Any, bounds: tuple[int, int] = _INT32) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    lo, hi = bounds
    if not lo <= value <= hi:
        return None
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _as_image_ref(value: Any) -> ImageRef | None:
    """Accept a data-URI string or an object with a string ``path``."""
    if isinstance(value, str) and value:
        return ImageRef(data_uri=value)
    if isinstance(value, dict):
        path = value.get("path")
        if isinstance(path, str) and path:
            return ImageRef(path=path)
    return None


# ---------------------------------------------------------------------------
# Builder.
# ---------------------------------------------------------------------------


def _parse_object(body: bytes | str) -> dict:
    try:
        document = json.loads(body)
    except (ValueError, RecursionError) as e:
        raise MalformedJson("Failed to parse JSON request body") from e
    if not isinstance(document, dict):
        raise MalformedJson("Invalid JSON request body")
    return document


def _parse_mode(document: dict) -> Mode:
    raw = _as_str(document.get("mode"))
    if raw is None:
        raise MissingRequiredField("mode")
    try:
        return Mode(raw)
    except ValueError:
        raise InvalidEnumValue("mode", raw) from None


def build_job(body: bytes | str, defaults: JobDefaults | None = None) -> JobDescriptor:
    """Parse and validate a request body into a :class:`JobDescriptor`.

    Args:
        body: Raw request body.
        defaults: Server-wide defaults for width, height, steps, guidance
            scale and sample method.  ``None`` uses the built-in defaults.

    Returns:
        The immutable, fully-defaulted job descriptor.

    Raises:
        MalformedJson: Body is not a JSON object.
        MissingRequiredField: ``mode``, ``prompt`` or ``input_image`` is
            missing or ill-typed where the mode requires it.
        InvalidEnumValue: Unknown ``mode`` or ``sample_method`` token.
        InvalidFieldValue: A value is outside its allowed range.
    """
    defaults = defaults or JobDefaults()
    document = _parse_object(body)
    mode = _parse_mode(document)

    fields: dict[str, Any] = {
        "mode": mode,
        "width": defaults.width,
        "height": defaults.height,
        "sample_steps": defaults.sample_steps,
        "guidance_scale": defaults.guidance_scale,
        "sample_method": defaults.sample_method,
    }

    # --- Required-by-mode fields ----------------------------------------
    prompt = _as_str(document.get("prompt"))
    if mode.requires_prompt and not prompt:
        raise MissingRequiredField("prompt")
    if prompt is not None:
        fields["prompt"] = prompt

    input_image = _as_image_ref(document.get("input_image"))
    if mode.requires_input_image and input_image is None:
        raise MissingRequiredField("input_image")
    fields["input_image"] = input_image
    fields["control_image"] = _as_image_ref(document.get("control_image"))

    # --- Plain typed fields ---------------------------------------------
    for key, name in _INT32_FIELDS:
        value = _as_int(document.get(key))
        if value is not None:
            fields[name] = value

    seed = _as_int(document.get("seed"), _INT64)
    if seed is not None:
        fields["seed"] = seed

    for key, name in _NUMBER_FIELDS:
        value = _as_number(document.get(key))
        if value is not None:
            fields[name] = value

    for key, name in _BOOL_FIELDS:
        value = _as_bool(document.get(key))
        if value is not None:
            fields[name] = value

    for key, name in _STRING_FIELDS:
        value = _as_str(document.get(key))
        if value is not None:
            fields[name] = value

    # --- Enumerations ---------------------------------------------------
    sample_method = _as_str(document.get("sample_method"))
    if sample_method is not None:
        try:
            fields["sample_method"] = SampleMethod(sample_method)
        except ValueError:
            raise InvalidEnumValue("sample_method", sample_method) from None

    output_format = _as_str(document.get("output_format"))
    if output_format is not None:
        if output_format not in _OUTPUT_FORMATS:
            raise InvalidFieldValue("output_format", output_format, "must be png, jpg or jpeg")
        fields["output_format"] = _OUTPUT_FORMATS[output_format]

    # --- Ranges ---------------------------------------------------------
    for name in _POSITIVE_FIELDS:
        if fields.get(name, 1) <= 0:
            raise InvalidFieldValue(name, fields[name], "must be positive")
    for name in _UNIT_INTERVAL_FIELDS:
        value = fields.get(name)
        if value is not None and not 0.0 <= value <= 1.0:
            raise InvalidFieldValue(name, value, "must be between 0 and 1")

    job = JobDescriptor(**fields)
    logger.debug("Built %s job (%dx%d, %d steps).", job.mode.value, job.width, job.height, job.sample_steps)
    return job
