"""
Uses a remote vision model to find an element whose locator stopped working.

Speaks the OpenAI-compatible chat-completions API (OpenRouter by default):
the page screenshot goes up as a data URL together with a prompt describing
the step, and the model answers with JSON naming candidate selectors.
"""

import json
import re
from typing import Optional, Dict, Any

import httpx

from stepheal.errors import ProviderError
from stepheal.models import BoundingBox, PageSnapshot
from stepheal.self_healing.config import (
    RemoteVisionConfig,
    VISION_PROMPT_TEMPLATE,
    ELEMENT_KIND_HINTS,
    DEFAULT_ELEMENT_KIND_HINT,
)
from stepheal.self_healing.types import AnalysisContext, AnalysisResult, AlternativeLocator
from stepheal.utils.logger import get_logger
from stepheal.utils.retry_handler import retry_async, RetryError

logger = get_logger(__name__)

ALTERNATIVE_CONFIDENCE_PENALTY = 0.10

_FENCE = re.compile(r'```(?:json)?\s*([\s\S]*?)```', re.IGNORECASE)


class RemoteVisionClient:
    """Remote vision analyzer for the remote-vision provider."""

    def __init__(
        self,
        config: Optional[RemoteVisionConfig] = None,
        api_key: Optional[str] = None,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            config: Endpoint, model and retry settings
            api_key: Overrides config.api_key
            enabled: Start enabled (still unavailable without a key)
            transport: httpx transport, e.g. httpx.MockTransport in tests
        """
        self.config = config if config is not None else RemoteVisionConfig()
        self._api_key = api_key if api_key is not None else self.config.api_key
        self._enabled = enabled
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self.request_count = 0
        self.total_cost = 0.0

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key or ""

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def is_available(self) -> bool:
        return self._enabled and bool(self._api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)
        return self._client

    def build_prompt(self, context: AnalysisContext) -> str:
        if context.expected_bounds is not None:
            b = context.expected_bounds
            position = f"x={b.x:.0f}, y={b.y:.0f}, width={b.width:.0f}, height={b.height:.0f}"
        else:
            position = "unknown"

        return VISION_PROMPT_TEMPLATE.format(
            action=context.element_kind,
            selector=context.original_locator or "none",
            element_type=ELEMENT_KIND_HINTS.get(context.element_kind.lower(), DEFAULT_ELEMENT_KIND_HINT),
            label=context.target_label,
            position=position,
        )

    async def analyze(self, snapshot: Optional[PageSnapshot], context: AnalysisContext) -> AnalysisResult:
        """
        Ask the model where the element went.

        Transient failures (timeouts, connection errors, 429 and 5xx) are
        retried ``retry_count`` times.

        Raises:
            ProviderError: not configured, no screenshot, a non-transient
                HTTP failure, retries exhausted, or an unparseable answer
        """
        if not self.is_available():
            raise ProviderError("Remote vision is disabled or has no API key")
        if snapshot is None or not snapshot.image_data:
            raise ProviderError("Remote vision needs a screenshot")

        payload = {
            "model": self.config.model,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": self.build_prompt(context)},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{snapshot.to_base64()}"}},
                ],
            }],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

        try:
            raw_text = await retry_async(
                lambda: self._send(payload),
                max_attempts=self.config.retry_count + 1,
                delay=self.config.retry_delay,
                exceptions=(ProviderError,),
                should_retry=lambda e: getattr(e, 'retryable', False),
            )
        except RetryError as e:
            raise ProviderError(str(e.last_exception or e)) from e

        logger.debug(f"Vision response: {raw_text}")
        return self.parse_response(raw_text)

    async def _send(self, payload: Dict[str, Any]) -> str:
        client = self._get_client()
        try:
            response = await client.post(
                f"{self.config.base_url.rstrip('/')}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "X-Title": "Step Replay Self-Healing",
                },
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Vision request timed out: {e}", retryable=True)
        except httpx.RequestError as e:
            raise ProviderError(f"Vision request failed: {e}", retryable=True)

        self.request_count += 1
        self.total_cost += self.config.cost_per_request

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderError(f"Vision API error {response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise ProviderError(f"Vision API error {response.status_code}: {response.text[:200]}")

        try:
            return response.json()['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected vision API payload: {e}")

    @staticmethod
    def parse_response(raw_text: str) -> AnalysisResult:
        """
        Parse the model's JSON answer.

        Confidence comes back on a 0-100 scale and is normalized to 0-1. The
        first suggested selector is the suggestion; the rest become
        alternatives at a slightly lower confidence.
        """
        text = raw_text or ""
        fenced = _FENCE.search(text)
        if fenced:
            text = fenced.group(1)

        json_match = re.search(r'\{[\s\S]*\}', text)
        if not json_match:
            raise ProviderError("No JSON in vision response")
        try:
            data = json.loads(json_match.group())
        except ValueError as e:
            raise ProviderError(f"Unparseable vision response: {e}")

        reasoning = str(data.get('reasoning', ''))
        if not data.get('found', False):
            return AnalysisResult(found=False, reasoning=reasoning or "Element not found")

        try:
            confidence = float(data.get('confidence', 0)) / 100
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        box = data.get('bounding_box')
        bounds = BoundingBox.from_dict(box) if isinstance(box, dict) else None

        selectors = [s for s in data.get('suggested_selectors') or [] if isinstance(s, str) and s.strip()]
        if not selectors:
            return AnalysisResult(
                found=False,
                confidence=confidence,
                reasoning=reasoning or "No selector suggested",
                element_bounds=bounds,
            )

        alternatives = tuple(
            AlternativeLocator(s, round(max(0.0, confidence - ALTERNATIVE_CONFIDENCE_PENALTY), 3), strategy='remote-vision')
            for s in selectors[1:]
        )
        return AnalysisResult(
            found=True,
            confidence=confidence,
            suggested_locator=selectors[0],
            reasoning=reasoning,
            alternatives=alternatives,
            element_bounds=bounds,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
