"""
Unit tests for RemoteVisionClient.

HTTP is served by httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest
from PIL import Image

from stepheal.errors import ProviderError
from stepheal.models import BoundingBox, PageSnapshot
from stepheal.self_healing.config import RemoteVisionConfig
from stepheal.self_healing.types import AnalysisContext
from stepheal.self_healing.vision_locator import RemoteVisionClient


def completion(content: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={'choices': [{'message': {'content': content}}]})


FOUND = json.dumps({
    'found': True,
    'confidence': 92,
    'bounding_box': {'x': 10, 'y': 20, 'width': 100, 'height': 30},
    'element_type': 'button',
    'text_content': 'Save changes',
    'reasoning': 'Button labelled Save changes',
    'suggested_selectors': ['button[data-testid="save"]', '#save-v2'],
})


class TestRemoteVisionClient:
    """Test suite for RemoteVisionClient."""

    @pytest.fixture
    def snapshot(self):
        return PageSnapshot.from_image(Image.new('RGB', (320, 200), color='white'))

    @pytest.fixture
    def context(self):
        return AnalysisContext(
            target_label='Save changes',
            element_kind='click',
            expected_bounds=BoundingBox(10, 20, 100, 30),
            original_locator='#save',
        )

    def make_client(self, handler, **config) -> RemoteVisionClient:
        config.setdefault('retry_delay', 0.0)
        return RemoteVisionClient(
            RemoteVisionConfig(**config),
            api_key='test-key',
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_successful_analysis(self, snapshot, context):
        seen = []

        def handler(request):
            seen.append(request)
            return completion(FOUND)

        client = self.make_client(handler)
        result = await client.analyze(snapshot, context)

        assert result.found is True
        assert result.suggested_locator == 'button[data-testid="save"]'
        assert result.confidence == pytest.approx(0.92)
        assert result.alternatives[0].locator == '#save-v2'
        assert result.alternatives[0].confidence == pytest.approx(0.82)
        assert result.element_bounds == BoundingBox(10, 20, 100, 30)

        request = seen[0]
        assert request.url.path.endswith('/chat/completions')
        assert request.headers['Authorization'] == 'Bearer test-key'
        body = json.loads(request.content)
        assert body['messages'][0]['content'][1]['image_url']['url'].startswith('data:image/png;base64,')
        assert 'button or link' in body['messages'][0]['content'][0]['text']

        assert client.request_count == 1
        assert client.total_cost == pytest.approx(0.005)
        await client.close()

    @pytest.mark.asyncio
    async def test_markdown_fenced_answer(self, snapshot, context):
        client = self.make_client(lambda request: completion(f"```json\n{FOUND}\n```"))
        result = await client.analyze(snapshot, context)
        assert result.found is True

    @pytest.mark.asyncio
    async def test_not_found(self, snapshot, context):
        answer = json.dumps({'found': False, 'confidence': 0, 'reasoning': 'No such button'})
        client = self.make_client(lambda request: completion(answer))
        result = await client.analyze(snapshot, context)
        assert result.found is False
        assert result.reasoning == 'No such button'

    @pytest.mark.asyncio
    async def test_retries_transient_failure_once(self, snapshot, context):
        responses = [httpx.Response(503), completion(FOUND)]

        client = self.make_client(lambda request: responses.pop(0), retry_count=1)
        result = await client.analyze(snapshot, context)

        assert result.found is True
        assert client.request_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self, snapshot, context):
        client = self.make_client(lambda request: httpx.Response(500), retry_count=1)
        with pytest.raises(ProviderError):
            await client.analyze(snapshot, context)
        assert client.request_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, snapshot, context):
        client = self.make_client(lambda request: httpx.Response(401, text='bad key'), retry_count=3)
        with pytest.raises(ProviderError):
            await client.analyze(snapshot, context)
        assert client.request_count == 1

    @pytest.mark.asyncio
    async def test_unparseable_answer(self, snapshot, context):
        client = self.make_client(lambda request: completion('I could not decide'))
        with pytest.raises(ProviderError):
            await client.analyze(snapshot, context)

    @pytest.mark.asyncio
    async def test_requires_key_and_screenshot(self, snapshot, context):
        client = RemoteVisionClient(RemoteVisionConfig())
        assert client.is_available() is False
        with pytest.raises(ProviderError):
            await client.analyze(snapshot, context)

        client.set_api_key('k')
        assert client.is_available() is True
        with pytest.raises(ProviderError):
            await client.analyze(None, context)

        client.set_enabled(False)
        assert client.is_available() is False

    def test_found_without_selector_is_not_found(self):
        result = RemoteVisionClient.parse_response(json.dumps({'found': True, 'confidence': 90}))
        assert result.found is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
