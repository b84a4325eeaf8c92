"""
Credit pricing for AI operations.

Maps an operation kind and its usage units to a credit quote. Pure and
deterministic: no I/O, no clock, no third-party imports.

Linear kinds (translate, transcribe, summarize) scale with input size.
Discrete kinds (image, video, voice) are table lookups on their options.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_CEILING, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ValidationError


class OperationKind(Enum):
    """Metered AI operations."""
    TRANSLATE = "translate"
    TRANSCRIBE = "transcribe"
    SUMMARIZE = "summarize"
    GENERATE_IMAGE = "generateImage"
    GENERATE_VIDEO = "generateVideo"
    TTS = "tts"


LINEAR_KINDS = (OperationKind.TRANSLATE, OperationKind.TRANSCRIBE, OperationKind.SUMMARIZE)


@dataclass(frozen=True)
class LinearPricing:
    """Proportional pricing: base_rate credits per normalization_unit."""
    base_rate: Decimal
    min_credits: int
    normalization_unit: int  # 1000 words, or 60 seconds of audio

    def __post_init__(self):
        if self.base_rate < 0:
            raise ValueError("base_rate must be >= 0")
        if self.min_credits < 0:
            raise ValueError("min_credits must be >= 0")
        if self.normalization_unit <= 0:
            raise ValueError("normalization_unit must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    """Static pricing configuration."""
    fee_percent: Decimal
    linear: Dict[OperationKind, LinearPricing]

    def get_linear(self, kind: OperationKind) -> LinearPricing:
        if kind not in self.linear:
            raise ValidationError(f"No linear pricing configured for {kind.value}")
        return self.linear[kind]


# 1 credit = 0.01 EUR
DEFAULT_PRICING = PricingConfig(
    fee_percent=Decimal("10"),
    linear={
        OperationKind.TRANSLATE: LinearPricing(
            base_rate=Decimal("0.5"), min_credits=1, normalization_unit=1000
        ),
        OperationKind.TRANSCRIBE: LinearPricing(
            base_rate=Decimal("1"), min_credits=2, normalization_unit=60
        ),
        OperationKind.SUMMARIZE: LinearPricing(
            base_rate=Decimal("0.3"), min_credits=1, normalization_unit=1000
        ),
    },
)

IMAGE_SIZES = ("1024x1024", "1792x1024", "1024x1792")
IMAGE_QUALITIES = ("standard", "hd")
IMAGE_STYLES = ("vivid", "natural")

# (size, quality) -> credits
IMAGE_CREDITS: Dict[Tuple[str, str], int] = {
    ("1024x1024", "standard"): 5,
    ("1792x1024", "standard"): 5,
    ("1024x1792", "standard"): 5,
    ("1024x1024", "hd"): 8,
    ("1792x1024", "hd"): 10,
    ("1024x1792", "hd"): 10,
}

VIDEO_CREDITS: Dict[int, int] = {5: 25, 10: 40, 15: 55, 20: 70}
VIDEO_ASPECT_RATIOS = ("16:9", "9:16", "1:1")
VIDEO_STYLES = ("cinematic", "animated", "realistic")

TTS_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
# model -> credits per started block of TTS_BLOCK_CHARACTERS
TTS_BLOCK_CREDITS: Dict[str, int] = {"tts-1": 2, "tts-1-hd": 4}
TTS_BLOCK_CHARACTERS = 1000
TTS_MAX_CHARACTERS = 4096

# Voice previews always speak one of these samples and are free.
TTS_PREVIEW_TEXT: Dict[str, str] = {
    "en": (
        "Hello! This is a preview of how this voice sounds. "
        "I can read any text you provide with natural intonation and rhythm."
    ),
    "de": (
        "Hallo! Dies ist eine Vorschau, wie diese Stimme klingt. "
        "Ich kann jeden Text mit natürlicher Betonung und Rhythmus vorlesen."
    ),
}

TRANSLATE_LANGUAGES = (
    "en", "de", "fr", "es", "it", "pt", "nl", "pl",
    "ru", "zh", "ja", "ko", "ar", "hi", "tr",
)
TRANSCRIBE_LANGUAGES = ("auto", "en", "de", "fr", "es", "it", "pt", "nl", "pl", "ru", "zh", "ja")


@dataclass(frozen=True)
class PriceQuote:
    """Cost of one operation. Only total_credits is ever persisted."""
    kind: str
    units: float
    base_credits: int
    service_fee: float
    total_credits: int
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "units": self.units,
            "base_credits": self.base_credits,
            "service_fee": self.service_fee,
            "total_credits": self.total_credits,
        }


def parse_kind(kind: Any) -> OperationKind:
    """Coerce a kind name or enum member to an OperationKind."""
    if isinstance(kind, OperationKind):
        return kind
    try:
        return OperationKind(kind)
    except ValueError:
        valid = [k.value for k in OperationKind]
        raise ValidationError(f"Unsupported operation kind: {kind!r} (expected one of {valid})")


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _parse_units(units: Any) -> Decimal:
    if isinstance(units, bool) or not isinstance(units, (int, float, Decimal)):
        raise ValidationError(f"units must be a number, got {units!r}")
    if isinstance(units, float) and not math.isfinite(units):
        raise ValidationError("units must be finite")
    try:
        value = Decimal(str(units))
    except InvalidOperation:
        raise ValidationError(f"units must be a number, got {units!r}")
    if value < 0:
        raise ValidationError("units must be >= 0")
    return value


def _require_member(options: Mapping[str, Any], name: str, allowed: tuple, default: Any) -> Any:
    value = options.get(name, default)
    if value not in allowed:
        raise ValidationError(f"Invalid {name}: {value!r} (supported: {', '.join(map(str, allowed))})")
    return value


def validate_options(kind: OperationKind, options: Mapping[str, Any]) -> Dict[str, Any]:
    """Check option values against the enumerated sets for a kind.

    Returns the options with defaults filled in.

    Raises:
        ValidationError: If a value is not a member of its configured set
    """
    resolved = dict(options)
    if kind in (OperationKind.TRANSLATE, OperationKind.SUMMARIZE):
        for name in ("target_language", "source_language"):
            if options.get(name) is not None:
                _require_member(options, name, TRANSLATE_LANGUAGES, None)
    elif kind is OperationKind.TRANSCRIBE:
        resolved["language"] = _require_member(options, "language", TRANSCRIBE_LANGUAGES, "auto")
    elif kind is OperationKind.GENERATE_IMAGE:
        resolved["size"] = _require_member(options, "size", IMAGE_SIZES, "1024x1024")
        resolved["quality"] = _require_member(options, "quality", IMAGE_QUALITIES, "standard")
        resolved["style"] = _require_member(options, "style", IMAGE_STYLES, "vivid")
    elif kind is OperationKind.GENERATE_VIDEO:
        resolved["duration"] = _require_member(options, "duration", tuple(VIDEO_CREDITS), 5)
        resolved["aspect_ratio"] = _require_member(options, "aspect_ratio", VIDEO_ASPECT_RATIOS, "16:9")
        resolved["style"] = _require_member(options, "style", VIDEO_STYLES, "cinematic")
    elif kind is OperationKind.TTS:
        resolved["model"] = _require_member(options, "model", tuple(TTS_BLOCK_CREDITS), "tts-1")
        resolved["voice"] = _require_member(options, "voice", TTS_VOICES, "alloy")
        preview = options.get("preview", False)
        if not isinstance(preview, bool):
            raise ValidationError(f"preview must be true or false, got {preview!r}")
        resolved["preview"] = preview
        if preview:
            resolved["preview_language"] = _require_member(
                options, "preview_language", tuple(TTS_PREVIEW_TEXT), "en"
            )
    return resolved


def preview_text(options: Mapping[str, Any]) -> str:
    """Sample text spoken by a voice preview with these resolved options."""
    return TTS_PREVIEW_TEXT[options.get("preview_language", "en")]


def _linear_base(pricing: LinearPricing, units: Decimal) -> int:
    scaled = units / Decimal(pricing.normalization_unit) * pricing.base_rate
    return max(pricing.min_credits, _ceil(scaled))


def _with_fee(base: int, fee_percent: Decimal) -> Tuple[Decimal, int]:
    fee = Decimal(base) * fee_percent / Decimal(100)
    return fee, _ceil(Decimal(base) + fee)


def price(
    kind: Any,
    units: Any,
    options: Optional[Mapping[str, Any]] = None,
    pricing: PricingConfig = DEFAULT_PRICING,
) -> PriceQuote:
    """Compute the credit cost of an operation.

    Args:
        kind: Operation kind name or OperationKind
        units: Words for text kinds, seconds for transcription,
            characters for tts; ignored for image and video
        options: Kind-specific options (size, quality, duration, model, ...)
        pricing: Pricing configuration for the linear kinds

    Returns:
        PriceQuote with base credits, service fee and rounded-up total

    Raises:
        ValidationError: If kind, units or options are invalid
    """
    op = parse_kind(kind)
    amount = _parse_units(units)
    resolved = validate_options(op, options or {})

    if op in LINEAR_KINDS:
        base = _linear_base(pricing.get_linear(op), amount)
        fee, total = _with_fee(base, pricing.fee_percent)
    elif op is OperationKind.GENERATE_IMAGE:
        base = IMAGE_CREDITS[(resolved["size"], resolved["quality"])]
        fee, total = Decimal(0), base
    elif op is OperationKind.GENERATE_VIDEO:
        base = VIDEO_CREDITS[resolved["duration"]]
        fee, total = Decimal(0), base
    else:
        if amount > TTS_MAX_CHARACTERS:
            raise ValidationError(f"Text exceeds maximum length of {TTS_MAX_CHARACTERS} characters")
        if resolved["preview"]:
            base, fee, total = 0, Decimal(0), 0
        else:
            blocks = max(1, _ceil(amount / Decimal(TTS_BLOCK_CHARACTERS)))
            base = blocks * TTS_BLOCK_CREDITS[resolved["model"]]
            fee, total = _with_fee(base, pricing.fee_percent)

    return PriceQuote(
        kind=op.value,
        units=float(amount),
        base_credits=base,
        service_fee=float(fee),
        total_credits=total,
        options=resolved,
    )
