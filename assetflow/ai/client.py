"""
AI vendor clients for tagging and metadata generation.

Quota and plan-limit errors surface as terminal exceptions so the pipeline
records them once instead of retrying into the same wall.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from PIL import Image

from ..exceptions import AIQuotaExceededError, TransientError

logger = logging.getLogger(__name__)

TAG_PROMPT = (
    "List up to {limit} short descriptive tags for this image. "
    'Respond only with JSON: {{"tags": [{{"tag": "<tag>", "confidence": <0..1>}}]}}'
)

METADATA_PROMPT = (
    "Suggest values for these metadata fields of the image: {fields}. "
    'Respond only with JSON mapping each field to {{"value": <value>, "confidence": <0..1>}}. '
    "Omit fields you cannot determine."
)

DEFAULT_METADATA_FIELDS = ('subject', 'scene', 'mood', 'setting', 'primary_object')


class AIVendorClient(ABC):
    """Contract for vision AI providers."""

    @abstractmethod
    def generate_tags(self, image: Image.Image, limit: int = 15) -> List[Tuple[str, float]]:
        """Return (tag, confidence) pairs."""
        pass

    @abstractmethod
    def generate_metadata(self, image: Image.Image,
                          fields: Optional[Sequence[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Return ``{field: {"value": ..., "confidence": float}}``."""
        pass


def _parse_json(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown fences."""
    cleaned = re.sub(r'^```(?:json)?\s*|\s*```$', '', (text or '').strip())
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid AI response: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Invalid AI response: expected a JSON object")
    return parsed


class GeminiVisionClient(AIVendorClient):
    """Google Gemini implementation."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Gemini client.

        Args:
            config: The ``ai`` config section (api_key, model, temperature,
                max_output_tokens)
        """
        api_key = config.get('api_key') or os.environ.get('GEMINI_API_KEY')
        if not api_key:
            raise ValueError("Gemini API key not provided")

        genai.configure(api_key=api_key)
        self.model_name = config.get('model', 'gemini-1.5-flash')
        self.model = genai.GenerativeModel(self.model_name)
        self.generation_config = {
            'temperature': config.get('temperature', 0.2),
            'max_output_tokens': config.get('max_output_tokens', 1024),
            'response_mime_type': 'application/json',
        }

    def _generate(self, prompt: str, image: Image.Image) -> Dict[str, Any]:
        try:
            response = self.model.generate_content(
                [prompt, image],
                generation_config=self.generation_config,
            )
        except google_exceptions.ResourceExhausted as e:
            raise AIQuotaExceededError(f"Gemini quota exceeded: {e}") from e
        except (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded,
                google_exceptions.InternalServerError) as e:
            raise TransientError(f"Gemini unavailable: {e}") from e

        if hasattr(response, 'usage_metadata'):
            logger.debug(f"Gemini usage: {response.usage_metadata.total_token_count} tokens")
        return _parse_json(response.text)

    def generate_tags(self, image: Image.Image, limit: int = 15) -> List[Tuple[str, float]]:
        payload = self._generate(TAG_PROMPT.format(limit=limit), image)
        tags = []
        for item in payload.get('tags', [])[:limit]:
            if isinstance(item, dict) and item.get('tag'):
                tags.append((str(item['tag']), float(item.get('confidence') or 0.0)))
            elif isinstance(item, str):
                tags.append((item, 0.0))
        return tags

    def generate_metadata(self, image: Image.Image,
                          fields: Optional[Sequence[str]] = None) -> Dict[str, Dict[str, Any]]:
        fields = list(fields or DEFAULT_METADATA_FIELDS)
        payload = self._generate(METADATA_PROMPT.format(fields=', '.join(fields)), image)
        result = {}
        for field_key in fields:
            entry = payload.get(field_key)
            if isinstance(entry, dict) and 'value' in entry:
                confidence = entry.get('confidence')
                result[field_key] = {
                    'value': entry['value'],
                    'confidence': float(confidence) if confidence is not None else None,
                }
        return result


def create_ai_client(config: Dict[str, Any]) -> Optional[AIVendorClient]:
    """Build the configured AI client, or None when AI is disabled."""
    ai_config = config.get('ai', {})
    if not ai_config.get('enabled', False):
        return None
    provider = ai_config.get('provider', 'gemini')
    if provider == 'gemini':
        return GeminiVisionClient(ai_config)
    raise ValueError(f"Unknown AI provider: {provider}")
