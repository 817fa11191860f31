"""Image Synthesis Adapter — one input/output contract over several Replicate models.

Callers pass a prompt, optional reference images and the user's generation
settings; the adapter picks the model spec, clamps every value the model
would reject (aspect ratio, resolution tier, reference count, enum options),
runs the prediction, mirrors the result to durable storage and returns
``{"success": True, "imageUrl": ...}`` or ``{"success": False, "error": ...}``.
It never raises: the loop treats synthesis failures as data.
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, Optional, TypedDict

import httpx
import replicate

from nas.config import get_config, get_image_defaults, require_env
from nas.storage import SupabaseStorage, new_object_path
from nas.tools import MAX_REFERENCE_IMAGES

# Global ordering of resolution tiers, lowest first.
RESOLUTION_TIERS = ("512px", "1K", "2K", "4K")

_COMMON_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")

_POLL_SECONDS = 0.5
_FINISHED = ("succeeded", "failed", "canceled")


class PredictionInterrupted(Exception):
    """A running prediction was cancelled because its loop stopped or ran out of time."""


class SynthesisResult(TypedDict, total=False):
    success: bool
    imageUrl: str
    error: str
    model: str
    settings: dict


@dataclass(frozen=True)
class ModelSpec:
    """Parameter shape of one backing image model."""

    model_id: str
    aspect_ratios: tuple[str, ...]
    default_aspect_ratio: str
    resolution_field: Optional[str]  # "resolution", "size" or None
    resolutions: tuple[str, ...]  # subset of RESOLUTION_TIERS, lowest first
    default_resolution: Optional[str]
    reference_field: str
    max_references: int
    # option name -> allowed values; the first value is the default
    options: dict[str, tuple[str, ...]] = field(default_factory=dict)


MODELS: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec(
            model_id="google/nano-banana-pro",
            aspect_ratios=_COMMON_RATIOS,
            default_aspect_ratio="4:5",
            resolution_field="resolution",
            resolutions=("1K", "2K", "4K"),
            default_resolution="1K",
            reference_field="image_input",
            max_references=MAX_REFERENCE_IMAGES,
            options={
                "output_format": ("jpg", "png"),
                "safety_filter_level": (
                    "block_only_high",
                    "block_medium_and_above",
                    "block_low_and_above",
                ),
            },
        ),
        ModelSpec(
            model_id="google/nano-banana-2",
            aspect_ratios=_COMMON_RATIOS,
            default_aspect_ratio="4:5",
            resolution_field="resolution",
            resolutions=("512px", "1K", "2K", "4K"),
            default_resolution="1K",
            reference_field="image_input",
            max_references=MAX_REFERENCE_IMAGES,
            options={"output_format": ("jpg", "png")},
        ),
        ModelSpec(
            model_id="bytedance/seedream-4.5",
            aspect_ratios=tuple(r for r in _COMMON_RATIOS if r not in ("4:5", "5:4")),
            default_aspect_ratio="3:4",
            resolution_field="size",
            resolutions=("2K", "4K"),
            default_resolution="2K",
            reference_field="image_input",
            max_references=MAX_REFERENCE_IMAGES,
        ),
        ModelSpec(
            model_id="ideogram-ai/ideogram-v3-turbo",
            aspect_ratios=("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9"),
            default_aspect_ratio="4:5",
            resolution_field=None,
            resolutions=(),
            default_resolution=None,
            reference_field="style_reference_images",
            max_references=3,
            options={"magic_prompt_option": ("Auto", "On", "Off")},
        ),
    )
}

DEFAULT_MODEL = "google/nano-banana-2"


def _warn(message: str) -> None:
    print(f"[NAS] {message}", file=sys.stderr)


def _ratio_value(ratio: str) -> Optional[Fraction]:
    try:
        w, h = ratio.split(":")
        return Fraction(int(w), int(h))
    except (ValueError, ZeroDivisionError):
        return None


def clamp_aspect_ratio(spec: ModelSpec, requested: Optional[str]) -> str:
    """Return ``requested`` if the model supports it, else the nearest supported ratio."""
    if requested in spec.aspect_ratios:
        return requested
    target = _ratio_value(requested) if isinstance(requested, str) else None
    if target is None:
        return spec.default_aspect_ratio
    return min(spec.aspect_ratios, key=lambda r: abs(_ratio_value(r) - target))


def clamp_resolution(spec: ModelSpec, requested: Optional[str]) -> Optional[str]:
    """Return the highest supported tier not above ``requested``.

    Unknown tiers fall back to the model default; tiers below the model's
    minimum are raised to it.
    """
    if not spec.resolutions:
        return None
    if requested in spec.resolutions:
        return requested
    if requested not in RESOLUTION_TIERS:
        return spec.default_resolution
    rank = RESOLUTION_TIERS.index(requested)
    allowed = [r for r in spec.resolutions if RESOLUTION_TIERS.index(r) <= rank]
    return allowed[-1] if allowed else spec.resolutions[0]


def merge_reference_images(
    model_supplied: list[str] | tuple[str, ...] | None,
    attached: list[str] | tuple[str, ...] | None,
    limit: int = MAX_REFERENCE_IMAGES,
    is_trusted=None,
) -> list[str]:
    """Merge model-supplied and user-attached reference images.

    Model-supplied URLs are only kept when they are data: URLs or trusted
    (durable storage) URLs; arbitrary http URLs the model inferred tend to
    404 when the image backend fetches them. Attached images are always
    kept. Order is preserved, duplicates dropped, the result capped at ``limit``.
    """
    trusted = is_trusted or (lambda url: False)
    merged = [
        url for url in (model_supplied or [])
        if isinstance(url, str) and (url.startswith("data:") or trusted(url))
    ]
    merged += [url for url in (attached or []) if isinstance(url, str) and url]
    return list(dict.fromkeys(merged))[:limit]


def _first_url(output) -> Optional[str]:
    """Normalize a Replicate output (str, FileOutput, or list of either) to one URL."""
    if isinstance(output, (list, tuple)):
        output = output[0] if output else None
    if output is None:
        return None
    url = getattr(output, "url", output)
    url = url() if callable(url) else url
    return str(url) if url else None


class ImageSynthesizer:
    """Runs image predictions on Replicate and mirrors results to storage."""

    def __init__(
        self,
        client=None,
        storage: SupabaseStorage | None = None,
        poll_interval: float = _POLL_SECONDS,
    ):
        if client is None:
            timeout = httpx.Timeout(float(get_config().get("request_timeout_seconds", 60)))
            client = replicate.Client(api_token=require_env("REPLICATE_API_TOKEN"), timeout=timeout)
        self._client = client
        self._storage = storage if storage is not None else SupabaseStorage()
        self._poll_interval = poll_interval

    def build_input(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        settings: dict | None = None,
    ) -> tuple[ModelSpec, dict]:
        """Return the model spec and a payload with every value clamped for that model."""
        settings = {**get_image_defaults(), **(settings or {})}
        model_id = settings.get("model") or DEFAULT_MODEL
        spec = MODELS.get(model_id)
        if spec is None:
            _warn(f"Unknown image model '{model_id}'. Using {DEFAULT_MODEL}.")
            spec = MODELS[DEFAULT_MODEL]

        payload: dict = {"prompt": prompt}

        requested_ratio = settings.get("aspect_ratio")
        ratio = clamp_aspect_ratio(spec, requested_ratio)
        if requested_ratio and ratio != requested_ratio:
            _warn(f"Clamped aspect_ratio {requested_ratio} -> {ratio} for {spec.model_id}.")
        payload["aspect_ratio"] = ratio

        if spec.resolution_field:
            # Seedream names its tier "size"; fall back to the generic key.
            requested_res = settings.get(spec.resolution_field) or settings.get("resolution")
            resolution = clamp_resolution(spec, requested_res)
            if requested_res and resolution != requested_res:
                _warn(f"Clamped {spec.resolution_field} {requested_res} -> {resolution} for {spec.model_id}.")
            payload[spec.resolution_field] = resolution

        for option, allowed in spec.options.items():
            value = settings.get(option)
            payload[option] = value if value in allowed else allowed[0]

        references = merge_reference_images(
            None, reference_images, limit=spec.max_references,
        )
        if reference_images and len(references) < len(reference_images):
            _warn(
                f"{spec.model_id} accepts at most {spec.max_references} reference images; "
                f"dropped {len(reference_images) - len(references)}."
            )
        if references:
            payload[spec.reference_field] = references

        return spec, payload

    def _durable_reference(self, url: str) -> str:
        """Upload an attached data: URL so the reference outlives the request."""
        if not url.startswith("data:"):
            return url
        try:
            return self._storage.upload_data_url(url)
        except Exception as exc:
            # Replicate accepts data: URLs directly; only persistence is lost.
            _warn(f"Could not persist reference image: {exc!r}")
            return url

    def _cancel(self, prediction) -> None:
        try:
            prediction.cancel()
        except Exception as exc:
            _warn(f"Could not cancel prediction {getattr(prediction, 'id', '?')}: {exc!r}")

    def _run_prediction(
        self,
        spec: ModelSpec,
        payload: dict,
        deadline: Optional[float] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ):
        """Create a prediction and poll it, cancelling it on stop or at ``deadline``.

        ``deadline`` is a ``time.monotonic()`` value. Returns the raw output.
        """
        prediction = self._client.predictions.create(model=spec.model_id, input=payload)
        while prediction.status not in _FINISHED:
            if should_stop is not None and should_stop():
                self._cancel(prediction)
                raise PredictionInterrupted("Generation cancelled.")
            if deadline is not None and time.monotonic() >= deadline:
                self._cancel(prediction)
                raise PredictionInterrupted("Generation timed out.")
            time.sleep(self._poll_interval)
            prediction.reload()
        if prediction.status != "succeeded":
            raise RuntimeError(prediction.error or f"Prediction {prediction.status}.")
        return prediction.output

    def generate(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        settings: dict | None = None,
        deadline: Optional[float] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> SynthesisResult:
        """Generate one image. Never raises; failures come back as data."""
        try:
            spec, payload = self.build_input(prompt, reference_images, settings)
        except Exception as exc:
            return {"success": False, "error": f"Invalid generation settings: {exc}"}

        if spec.reference_field in payload:
            payload[spec.reference_field] = [
                self._durable_reference(url) for url in payload[spec.reference_field]
            ]

        try:
            output = self._run_prediction(spec, payload, deadline, should_stop)
            ephemeral_url = _first_url(output)
        except PredictionInterrupted as exc:
            _warn(f"{spec.model_id}: {exc}")
            return {"success": False, "error": str(exc), "model": spec.model_id}
        except Exception as exc:
            _warn(f"Replicate error ({spec.model_id}): {exc!r}")
            return {"success": False, "error": str(exc) or "Image generation failed", "model": spec.model_id}

        if not ephemeral_url:
            return {"success": False, "error": "Image model returned no output.", "model": spec.model_id}

        ext = payload.get("output_format", "jpg")
        try:
            image_url = self._storage.mirror(ephemeral_url, new_object_path("generated", f"image/{ext}"))
        except Exception as exc:
            _warn(f"Mirroring {ephemeral_url} failed: {exc!r}")
            return {"success": False, "error": f"Storage mirroring failed: {exc}", "model": spec.model_id}

        return {
            "success": True,
            "imageUrl": image_url,
            "model": spec.model_id,
            "settings": {k: v for k, v in payload.items() if k not in ("prompt", spec.reference_field)},
        }


def get_synthesizer() -> ImageSynthesizer:
    """Build the adapter with its production collaborators."""
    return ImageSynthesizer()
