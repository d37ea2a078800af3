"""
Categorization provider interface for decoupling from specific AI vendors.

OpenAIProvider talks to OpenAI or any OpenAI-compatible endpoint (OpenRouter,
a local gateway) through base_url. MockProvider is for development and tests.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from openai import AsyncOpenAI, APIConnectionError, APITimeoutError, RateLimitError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings
from .exceptions import MissingAPIKeyError, ProviderError

logger = logging.getLogger(__name__)

CATEGORIZATION_SYSTEM_PROMPT = (
    "You are a feedback analyzer that categorizes student course reviews into specific topics: "
    "teaching quality, assessment methods, study materials, and course tips."
)

CATEGORIZATION_SCHEMA = {
    "name": "feedback_categorization",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "hasTeaching": {
                "type": "boolean",
                "description": "Mentions professor, teaching style, lecture quality, engagement, "
                               "office hours, or responsiveness"
            },
            "hasAssessment": {
                "type": "boolean",
                "description": "Mentions grading, exams, projects, fairness, deadlines, workload, "
                               "or difficulty of tests"
            },
            "hasMaterials": {
                "type": "boolean",
                "description": "Mentions slides, textbooks, past exams, practice exercises, "
                               "or specific study resources"
            },
            "hasTips": {
                "type": "boolean",
                "description": "Mentions specific advice for future students, insider tips, "
                               "or things to know before starting"
            }
        },
        "required": ["hasTeaching", "hasAssessment", "hasMaterials", "hasTips"],
        "additionalProperties": False
    }
}

# Only transport-level failures are worth another attempt
TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


def build_categorization_messages(comment: str) -> list:
    """Fixed prompt sent for every categorization request."""
    return [
        {"role": "system", "content": CATEGORIZATION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Analyze this course feedback and determine which categories it discusses:\n\n{comment}"
        }
    ]


class CategorizationProvider(ABC):
    """Abstract base class for categorization providers."""

    name = "base"

    @abstractmethod
    async def categorize(self, comment: str) -> Dict:
        """
        Classify a feedback comment.

        Args:
            comment: Raw feedback text

        Returns:
            Dict with hasTeaching, hasAssessment, hasMaterials, hasTips

        Raises:
            ProviderError: If the call fails or the response cannot be parsed
        """
        pass


class OpenAIProvider(CategorizationProvider):
    """OpenAI (or OpenAI-compatible) implementation of the categorization provider."""

    name = "openai"

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        base_url: Optional[str] = None,
        timeout: float = None
    ):
        """
        Initialize OpenAI provider.

        Args:
            api_key: API key (defaults to settings.openai_api_key)
            model: Categorization model (defaults to settings.categorization_model)
            base_url: Alternative OpenAI-compatible endpoint
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key or settings.openai_api_key
        if not self.api_key:
            raise MissingAPIKeyError("OPENAI_API_KEY")

        self.model = model or settings.categorization_model
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=base_url or settings.openai_base_url,
            timeout=timeout or settings.categorization_timeout_seconds,
            max_retries=0  # Retries are handled by tenacity below
        )

    @retry(
        stop=stop_after_attempt(settings.categorization_max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True
    )
    async def _call_openai(self, comment: str) -> str:
        """Call the chat completions API with the categorization schema."""
        logger.debug(f"Calling categorization model: {self.model}")
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=build_categorization_messages(comment),
            response_format={"type": "json_schema", "json_schema": CATEGORIZATION_SCHEMA},
        )

        if not response.choices or not response.choices[0].message.content:
            raise ProviderError(self.name, "response contained no message content")

        if getattr(response, "usage", None):
            logger.info(
                f"Categorization usage: model={self.model}, "
                f"tokens={response.usage.prompt_tokens}+{response.usage.completion_tokens}"
            )
        return response.choices[0].message.content

    async def categorize(self, comment: str) -> Dict:
        """Classify a comment using the chat completions API."""
        try:
            content = await self._call_openai(comment)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(self.name, f"{type(e).__name__}: {e}") from e

        try:
            result = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Raw categorization response was: {content[:500]}")
            raise ProviderError(self.name, "response is not valid JSON") from e

        if not isinstance(result, dict):
            raise ProviderError(self.name, f"expected a JSON object, got {type(result).__name__}")
        return result


class MockProvider(CategorizationProvider):
    """
    Mock categorization provider for development and testing.

    Returns the same payload for every comment without making API calls.
    """

    name = "mock"

    def __init__(self, payload: Dict = None):
        self.payload = payload if payload is not None else {
            "hasTeaching": True,
            "hasAssessment": False,
            "hasMaterials": False,
            "hasTips": False
        }
        self.calls = 0

    async def categorize(self, comment: str) -> Dict:
        self.calls += 1
        return dict(self.payload)


def get_categorization_provider(provider_type: str = None) -> CategorizationProvider:
    """
    Factory function to get the configured categorization provider.

    Args:
        provider_type: Override provider type ("openai", "mock").
                       Defaults to settings.categorization_provider.

    Raises:
        ValueError: If provider type is unknown
    """
    provider = provider_type or settings.categorization_provider

    if provider == "openai":
        return OpenAIProvider()
    elif provider == "mock":
        return MockProvider()
    else:
        raise ValueError(f"Unknown categorization provider: {provider}. Supported: openai, mock")
