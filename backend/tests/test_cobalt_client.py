"""Tests for the Cobalt audio extraction client."""

import json

import httpx
import pytest

from vidscribe.services.cobalt_client import (
    AudioExtractionError,
    CobaltClient,
    CobaltErrorCode,
)

API_URL = "https://cobalt.test"


def _client(handler, api_key=None) -> CobaltClient:
    return CobaltClient(
        api_url=API_URL, api_key=api_key, timeout=5, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_tunnel_response_resolves_and_downloads_audio():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(
                200,
                json={"status": "tunnel", "url": "https://media.test/a.mp3", "filename": "a.mp3"},
            )
        return httpx.Response(200, content=b"ID3audio", headers={"content-type": "audio/mpeg"})

    payload = await _client(handler, api_key="secret").extract_audio("dQw4w9WgXcQ")

    assert payload.data == b"ID3audio"
    assert payload.size == len(b"ID3audio")
    assert payload.content_type == "audio/mpeg"
    assert payload.filename == "a.mp3"

    body = json.loads(seen[0].content)
    assert body["url"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert body["downloadMode"] == "audio"
    assert body["audioFormat"] == "mp3"
    assert seen[0].headers["Authorization"] == "Api-Key secret"
    assert str(seen[1].url) == "https://media.test/a.mp3"


@pytest.mark.asyncio
async def test_picker_response_selects_audio_entry():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "status": "picker",
                "picker": [
                    {"type": "video", "url": "https://media.test/v.mp4"},
                    {"type": "audio", "url": "https://media.test/a.mp3"},
                ],
            },
        )

    resolved = await _client(handler).resolve_audio_url("vid1")

    assert resolved.url == "https://media.test/a.mp3"
    assert resolved.filename == "vid1.mp3"


@pytest.mark.asyncio
async def test_picker_without_audio_is_not_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "picker", "picker": [{"type": "video"}]})

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).resolve_audio_url("vid1")

    assert excinfo.value.code == CobaltErrorCode.NO_AUDIO_STREAM
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, message, retryable",
    [
        ("error.api.content.unavailable", "Video is unavailable or private", False),
        ("error.api.youtube.age_restricted", "Video is age-restricted", False),
        ("error.api.rate_exceeded", "Rate limit exceeded, please try again later", True),
        ("error.api.fetch.fail", "Failed to fetch video data", True),
        ("error.api.something.new", "Unknown error occurred", False),
    ],
)
async def test_service_error_codes_map_to_messages(code, message, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"status": "error", "error": {"code": code}})

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).resolve_audio_url("vid1")

    assert excinfo.value.code == code
    assert excinfo.value.message == message
    assert excinfo.value.retryable is retryable


@pytest.mark.asyncio
async def test_unknown_shape_fails_with_unexpected_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "local-processing"})

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).resolve_audio_url("vid1")

    assert excinfo.value.code == CobaltErrorCode.UNEXPECTED_RESPONSE
    assert excinfo.value.message == "Cobalt API returned unexpected response format"


@pytest.mark.asyncio
async def test_server_errors_are_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).resolve_audio_url("vid1")

    assert excinfo.value.code == CobaltErrorCode.HTTP_ERROR
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_network_failure_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).resolve_audio_url("vid1")

    assert excinfo.value.code == CobaltErrorCode.NETWORK_ERROR
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_download_failure_is_reported():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"status": "redirect", "url": "https://media.test/a"})
        return httpx.Response(404)

    with pytest.raises(AudioExtractionError) as excinfo:
        await _client(handler).extract_audio("vid1")

    assert excinfo.value.code == CobaltErrorCode.DOWNLOAD_FAILED
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_can_extract_audio_probe():
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "tunnel", "url": "https://media.test/a"})

    def private(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"status": "error", "error": {"code": "error.api.content.unavailable"}}
        )

    assert await _client(ok).can_extract_audio("vid1") == (True, None)
    assert await _client(private).can_extract_audio("vid1") == (
        False,
        "Video is unavailable or private",
    )
