"""
OpenAI-backed providers.

Each adapter makes exactly one upstream call per invoke(). The OpenAI client
is created with its own retries disabled: retrying belongs to the executor,
which needs to see every failure to keep the attempt count bounded.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import openai
from openai import OpenAI

from ai_credit_meter.core.errors import (
    MeteringError,
    ProviderPermanentError,
    ProviderTransientError,
    ValidationError,
)
from ai_credit_meter.core.pricing import OperationKind, TTS_MAX_CHARACTERS
from ai_credit_meter.core.units import TokenUsage, count_characters, count_words

from .provider import Provider, ProviderResult, classify_status

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
TRANSCRIPTION_MODEL = "whisper-1"
IMAGE_MODEL = "dall-e-3"

IMAGE_PROMPT_MIN = 10
IMAGE_PROMPT_MAX = 4000

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English", "de": "German", "fr": "French", "es": "Spanish",
    "it": "Italian", "pt": "Portuguese", "nl": "Dutch", "pl": "Polish",
    "ru": "Russian", "zh": "Chinese", "ja": "Japanese", "ko": "Korean",
    "ar": "Arabic", "hi": "Hindi", "tr": "Turkish",
}

TRANSLATE_PROMPT = """You are a professional translator. Translate the following text{source} to {target}.

Important instructions:
- Preserve the original formatting (paragraphs, line breaks, bullet points)
- Maintain the tone and style of the original text
- Do not add any explanations or notes, only provide the translation
- Keep proper nouns and technical terms as-is or use their common translation

Text to translate:
\"\"\"
{text}
\"\"\"

Translation:"""

SUMMARIZE_PROMPT = """Please provide a concise summary of the following text in {language}.
Include key points, main topics discussed, and any important conclusions or action items.

Text:
{text}"""


def classify_openai_error(exc: Exception) -> MeteringError:
    """Translate an OpenAI SDK exception into the provider error contract."""
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTransientError(f"OpenAI request timed out: {exc}")
    if isinstance(exc, openai.APIConnectionError):
        return ProviderTransientError(f"OpenAI connection failed: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return classify_status(exc.status_code, exc.message, getattr(exc, "code", None))
    return ProviderPermanentError(f"OpenAI error: {exc}")


def _require_text(payload: Any, name: str = "text") -> str:
    if not isinstance(payload, str) or not payload.strip():
        raise ValidationError(f"{name} is required and cannot be empty")
    return payload


class OpenAIProvider(Provider):
    """Base adapter: lazy client creation and error classification.

    invoke() trusts its input; the executor calls validate() once beforehand.
    """

    def __init__(self, client: Optional[OpenAI] = None):
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(max_retries=0)
        return self._client

    def invoke(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        try:
            return self._call(payload, options, timeout)
        except openai.OpenAIError as e:
            error = classify_openai_error(e)
            logger.warning("%s call failed (%s): %s", self.kind.value, error.code, e)
            raise error from e

    def _call(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        raise NotImplementedError


class OpenAIChatProvider(OpenAIProvider):
    """Translation and summarization through chat completions."""

    def __init__(self, kind: OperationKind, model: str = DEFAULT_CHAT_MODEL, client: Optional[OpenAI] = None):
        if kind not in (OperationKind.TRANSLATE, OperationKind.SUMMARIZE):
            raise ValueError(f"Chat provider does not handle {kind.value}")
        super().__init__(client)
        self.kind = kind
        self.model = model

    def validate(self, payload: Any, options: Mapping[str, Any]) -> None:
        _require_text(payload)
        if self.kind is OperationKind.TRANSLATE and not options.get("target_language"):
            raise ValidationError("target_language is required")

    def _prompt(self, text: str, options: Mapping[str, Any]) -> str:
        if self.kind is OperationKind.TRANSLATE:
            source = options.get("source_language")
            target = options["target_language"]
            return TRANSLATE_PROMPT.format(
                source=f" from {LANGUAGE_NAMES.get(source, source)}" if source else "",
                target=LANGUAGE_NAMES.get(target, target),
                text=text,
            )
        language = options.get("target_language") or "en"
        return SUMMARIZE_PROMPT.format(language=LANGUAGE_NAMES.get(language, language), text=text)

    def _call(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": self._prompt(payload, options)}],
            temperature=0.1 if self.kind is OperationKind.TRANSLATE else 0.3,
            timeout=timeout,
        )
        text = response.choices[0].message.content or ""
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return ProviderResult(
            output=text,
            units=count_words(payload),
            usage=usage,
            output_size=count_words(text),
        )


class OpenAITranscriptionProvider(OpenAIProvider):
    """Speech to text with Whisper. Bills on the duration Whisper reports."""
    kind = OperationKind.TRANSCRIBE

    def validate(self, payload: Any, options: Mapping[str, Any]) -> None:
        if payload is None:
            raise ValidationError("audio file is required")
        if isinstance(payload, (str, Path)) and not Path(payload).is_file():
            raise ValidationError(f"audio file not found: {payload}")

    def _call(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        params: Dict[str, Any] = {
            "model": TRANSCRIPTION_MODEL,
            "response_format": "verbose_json",
            "timeout": timeout,
        }
        language = options.get("language")
        if language and language != "auto":
            params["language"] = language

        if isinstance(payload, (str, Path)):
            with open(payload, "rb") as audio:
                response = self.client.audio.transcriptions.create(file=audio, **params)
        else:
            response = self.client.audio.transcriptions.create(file=payload, **params)

        duration = getattr(response, "duration", None)
        return ProviderResult(
            output={"text": response.text, "language": getattr(response, "language", None), "duration": duration},
            units=float(duration) if duration is not None else None,
            output_size=count_words(response.text),
        )


class OpenAIImageProvider(OpenAIProvider):
    kind = OperationKind.GENERATE_IMAGE

    def validate(self, payload: Any, options: Mapping[str, Any]) -> None:
        prompt = _require_text(payload, "prompt")
        if len(prompt) < IMAGE_PROMPT_MIN:
            raise ValidationError(f"Prompt must be at least {IMAGE_PROMPT_MIN} characters")
        if len(prompt) > IMAGE_PROMPT_MAX:
            raise ValidationError(f"Prompt must be under {IMAGE_PROMPT_MAX} characters")

    def _call(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        response = self.client.images.generate(
            model=IMAGE_MODEL,
            prompt=payload,
            n=1,
            size=options.get("size", "1024x1024"),
            quality=options.get("quality", "standard"),
            style=options.get("style", "vivid"),
            response_format="url",
            timeout=timeout,
        )
        if not response.data or not response.data[0].url:
            raise ProviderPermanentError("Image generation returned no image")
        image = response.data[0]
        return ProviderResult(output={"url": image.url, "revised_prompt": image.revised_prompt}, output_size=1)


class OpenAISpeechProvider(OpenAIProvider):
    """Text to speech. Returns the encoded audio bytes."""
    kind = OperationKind.TTS

    def validate(self, payload: Any, options: Mapping[str, Any]) -> None:
        text = _require_text(payload)
        if count_characters(text) > TTS_MAX_CHARACTERS:
            raise ValidationError(f"Text exceeds maximum length of {TTS_MAX_CHARACTERS} characters")
        speed = options.get("speed", 1.0)
        if not isinstance(speed, (int, float)) or not 0.25 <= speed <= 4.0:
            raise ValidationError("speed must be between 0.25 and 4.0")

    def _call(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        response = self.client.audio.speech.create(
            model=options.get("model", "tts-1"),
            voice=options.get("voice", "alloy"),
            input=payload,
            speed=options.get("speed", 1.0),
            timeout=timeout,
        )
        audio = response.content
        return ProviderResult(output=audio, units=count_characters(payload), output_size=len(audio))


def build_openai_providers(client: Optional[OpenAI] = None, chat_model: str = DEFAULT_CHAT_MODEL) -> Dict[OperationKind, Provider]:
    """Providers for every kind OpenAI serves.

    A given client is shared; without one each provider creates its own on
    first use.

    Video generation has no public API yet and is left unregistered.
    """
    return {
        OperationKind.TRANSLATE: OpenAIChatProvider(OperationKind.TRANSLATE, chat_model, client),
        OperationKind.SUMMARIZE: OpenAIChatProvider(OperationKind.SUMMARIZE, chat_model, client),
        OperationKind.TRANSCRIBE: OpenAITranscriptionProvider(client),
        OperationKind.GENERATE_IMAGE: OpenAIImageProvider(client),
        OperationKind.TTS: OpenAISpeechProvider(client),
    }
