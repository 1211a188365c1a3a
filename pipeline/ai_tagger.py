"""
AI image analysis using the OpenAI Vision API.

Provides:
- ImageAnalyzer: the interface the analyze pipeline depends on
- AITagger: OpenAI implementation with ordered model fallback
- Response parsing with a best-effort fallback for malformed output
- Suggested-name normalization
"""

import base64
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import openai
from dotenv import load_dotenv
from openai import OpenAI

from pipeline.errors import AnalyzerError, AnalyzerNotConfiguredError, ModelUnavailableError

load_dotenv()

logger = logging.getLogger(__name__)

# Tried after the per-call override and ANALYZER_MODEL
DEFAULT_MODELS = ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini", "gpt-4.1"]

MAX_SUGGESTED_NAME_LENGTH = 40
MAX_TAGS = 10
MAX_COLORS = 5
MAX_OBJECTS = 10
DEFAULT_CATEGORY = "photo"
DEFAULT_CONFIDENCE = 0.8
FALLBACK_CONFIDENCE = 0.5

ANALYSIS_PROMPT = """Analyze this image comprehensively and return a JSON object with the following structure. Be detailed and accurate.

{
  "suggestedName": "descriptive_filename_max_40_chars",
  "title": "A short descriptive title for this image",
  "description": "A detailed 2-3 sentence description of what's in the image",
  "tags": ["tag1", "tag2", "tag3", "tag4", "tag5"],
  "colors": ["primary_color", "secondary_color", "accent_color"],
  "objects": ["main_object", "object2", "object3"],
  "category": "one of: photo, illustration, graphic, screenshot, document, artwork",
  "subcategory": "more specific category like: landscape, portrait, product, interior, food, etc",
  "style": "style description like: modern, vintage, minimalist, colorful, etc",
  "mood": "emotional mood like: peaceful, energetic, professional, cozy, etc",
  "confidence": 0.95
}

Rules for suggestedName:
- Lowercase only
- Use underscores instead of spaces
- Max 40 characters
- No file extension
- Be descriptive: "modern_living_room_beige_sofa" not "image1"

Return ONLY valid JSON, no markdown, no explanation."""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_NAME_FALLBACK = re.compile(r"suggestedName[\"\s:]+([a-z0-9_]+)", re.IGNORECASE)


@dataclass
class AnalysisResult:
    """Normalized analyzer output for one image."""
    suggested_name: str
    title: str
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    objects: list[str] = field(default_factory=list)
    category: str = DEFAULT_CATEGORY
    subcategory: str | None = None
    style: str | None = None
    mood: str | None = None
    confidence: float = DEFAULT_CONFIDENCE
    model: str | None = None
    parse_failed: bool = False


# ────────────────────────────────────────────────────────────────────────────────
# Parsing
# ────────────────────────────────────────────────────────────────────────────────

def normalize_suggested_name(name: str | None) -> str:
    """
    Normalize an AI-suggested filename base.

    Lowercases, replaces characters outside [a-z0-9_] with underscores,
    collapses underscore runs and truncates to 40 characters.
    """
    normalized = re.sub(r"[^a-z0-9_]", "_", (name or "").lower())
    normalized = re.sub(r"_+", "_", normalized)[:MAX_SUGGESTED_NAME_LENGTH]
    return normalized if normalized.strip("_") else "image"


def _string_list(value: Any, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return items[:limit]


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_analysis(raw: str) -> AnalysisResult:
    """
    Parse an analyzer response into an AnalysisResult.

    Markdown code fences are stripped before JSON decoding. When the text
    is not a JSON object, only a name-like token is extracted and the rest
    is filled with defaults rather than failing the item.

    Args:
        raw: Response text from the model.

    Returns:
        Normalized AnalysisResult.
    """
    text = _FENCE.sub("", raw.strip())

    try:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("response is not a JSON object")
    except ValueError:
        logger.warning("JSON parse failed, extracting filename from raw text")
        match = _NAME_FALLBACK.search(raw)
        name = normalize_suggested_name(match.group(1) if match else None)
        return AnalysisResult(
            suggested_name=name,
            title=name.replace("_", " "),
            description="Analysis parsing failed",
            confidence=FALLBACK_CONFIDENCE,
            parse_failed=True,
        )

    name = normalize_suggested_name(_optional_str(data.get("suggestedName")))

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not confidence:
        confidence = DEFAULT_CONFIDENCE

    return AnalysisResult(
        suggested_name=name,
        title=_optional_str(data.get("title")) or name.replace("_", " "),
        description=_optional_str(data.get("description")),
        tags=_string_list(data.get("tags"), MAX_TAGS),
        colors=_string_list(data.get("colors"), MAX_COLORS),
        objects=_string_list(data.get("objects"), MAX_OBJECTS),
        category=_optional_str(data.get("category")) or DEFAULT_CATEGORY,
        subcategory=_optional_str(data.get("subcategory")),
        style=_optional_str(data.get("style")),
        mood=_optional_str(data.get("mood")),
        confidence=float(confidence),
    )


# ────────────────────────────────────────────────────────────────────────────────
# Analyzers
# ────────────────────────────────────────────────────────────────────────────────

class ImageAnalyzer(ABC):
    """External content analyzer used by the analyze pipeline."""

    @abstractmethod
    def candidate_models(self, override: str | None = None) -> list[str]:
        """Model identifiers in the order they are tried."""

    @abstractmethod
    def analyze(
        self,
        data: bytes,
        mime_type: str,
        model: str | None = None
    ) -> AnalysisResult:
        """
        Analyze one image.

        Raises:
            AnalyzerError: If every candidate failed or a non-fallback error occurred.
        """


def is_model_unavailable(error: Exception) -> bool:
    """Check whether an error means the model does not exist for this key."""
    if isinstance(error, (openai.NotFoundError, ModelUnavailableError)):
        return True
    message = str(error).lower()
    return "404" in message or "not found" in message or "model_not_found" in message


class AITagger(ImageAnalyzer):
    """
    AI-powered image analysis using the OpenAI Vision API.

    Models are tried in order: the per-call override, ANALYZER_MODEL,
    then DEFAULT_MODELS. Only "model unavailable" failures move on to the
    next model; any other failure is final for the image.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        detail: str = "high",
        timeout: float | None = None,
        max_retries: int | None = None,
        client: OpenAI | None = None
    ):
        """
        Initialize the analyzer.

        Args:
            api_key: OpenAI API key. If None, reads OPENAI_API_KEY.
            model: Preferred model. If None, reads ANALYZER_MODEL.
            detail: Image detail level for API ("low", "high", "auto").
            timeout: Per-request deadline in seconds (ANALYZER_TIMEOUT, default 60).
            max_retries: Client retries on transient errors (ANALYZER_MAX_RETRIES, default 2).
            client: Preconfigured OpenAI client.

        Raises:
            AnalyzerNotConfiguredError: If no API key or client is available.
        """
        self.model = model or os.getenv("ANALYZER_MODEL")
        self.detail = detail

        if client is not None:
            self.client = client
            return

        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise AnalyzerNotConfiguredError(
                "OpenAI API key not configured. Add OPENAI_API_KEY to your .env file."
            )

        self.client = OpenAI(
            api_key=api_key,
            timeout=timeout if timeout is not None else float(os.getenv("ANALYZER_TIMEOUT", "60")),
            max_retries=max_retries if max_retries is not None else int(os.getenv("ANALYZER_MAX_RETRIES", "2")),
        )

    def candidate_models(self, override: str | None = None) -> list[str]:
        models = []
        for candidate in [override, self.model, *DEFAULT_MODELS]:
            if candidate and candidate not in models:
                models.append(candidate)
        return models

    def _call_model(self, model: str, data: bytes, mime_type: str) -> str:
        data_url = f"data:{mime_type};base64," + base64.b64encode(data).decode()

        response = self.client.chat.completions.create(
            model=model,
            max_tokens=800,
            temperature=0.2,
            messages=[
                {
                    "role": "system",
                    "content": (
                        "You are an image cataloguing assistant. You describe images "
                        "accurately and suggest short, descriptive filenames."
                    ),
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {"url": data_url, "detail": self.detail},
                        },
                    ],
                },
            ],
        )

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise AnalyzerError(f"Empty response from {model}")
        return content.strip()

    def analyze(
        self,
        data: bytes,
        mime_type: str,
        model: str | None = None
    ) -> AnalysisResult:
        """
        Analyze one image, falling back across candidate models.

        Args:
            data: Image contents.
            mime_type: MIME type of the image.
            model: Per-call model override, tried first.

        Returns:
            Parsed AnalysisResult with `model` set to the model that answered.

        Raises:
            ModelUnavailableError: If no candidate model is available.
            AnalyzerError: On any other API failure.
        """
        candidates = self.candidate_models(model)
        last_error: Exception | None = None

        for candidate in candidates:
            try:
                raw = self._call_model(candidate, data, mime_type)
            except AnalyzerError:
                raise
            except Exception as e:
                if is_model_unavailable(e):
                    logger.warning(f"Model {candidate} not available, trying next...")
                    last_error = e
                    continue
                raise AnalyzerError(str(e)) from e

            if candidate != candidates[0]:
                logger.info(f"Using fallback model: {candidate}")
            logger.debug(f"Response received from {candidate} ({len(raw)} chars)")

            result = parse_analysis(raw)
            result.model = candidate
            return result

        raise ModelUnavailableError(f"No working model found. Last error: {last_error}")


def create_analyzer() -> ImageAnalyzer | None:
    """
    Build the configured analyzer.

    Returns:
        AITagger if OPENAI_API_KEY is set, otherwise None.
    """
    if not os.getenv("OPENAI_API_KEY"):
        logger.info("Analyzer disabled (OPENAI_API_KEY not set)")
        return None
    return AITagger()
