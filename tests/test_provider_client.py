import base64
import json

import httpx
import pytest

from app.services.provider_client import ProviderClient, decode_download_body, extract_provider_message_id


def _client(handler) -> ProviderClient:
    return ProviderClient("https://provider.test", timeout=5, transport=httpx.MockTransport(handler))


class TestDecodeDownloadBody:
    def test_data_uri_prefix_stripped(self):
        encoded = base64.b64encode(b"hello").decode()
        media = decode_download_body({"base64Data": f"data:image/png;base64,{encoded}", "mimetype": "image/png"})
        assert media.data == b"hello"
        assert media.mime_type == "image/png"
        assert media.size == 5

    def test_nested_base64_and_default_mime(self):
        encoded = base64.b64encode(b"voice").decode()
        media = decode_download_body({"data": {"base64": encoded}})
        assert media.data == b"voice"
        assert media.mime_type == "audio/ogg"

    def test_non_string_payload_is_ignored(self):
        assert decode_download_body({"base64": 12345, "base64Data": None}) is None
        encoded = base64.b64encode(b"x").decode()
        assert decode_download_body({"base64": encoded, "mimetype": 7}).mime_type == "audio/ogg"

    def test_no_content(self):
        assert decode_download_body({"status": "ok"}) is None
        assert decode_download_body(["not", "a", "dict"]) is None


class TestExtractMessageId:
    def test_key_id_preferred(self):
        assert extract_provider_message_id({"key": {"id": "K"}, "messageId": "M", "id": "I"}) == "K"

    def test_fallbacks(self):
        assert extract_provider_message_id({"messageId": "M", "id": "I"}) == "M"
        assert extract_provider_message_id({"id": "I"}) == "I"
        assert extract_provider_message_id(None) is None


class TestDownloadMedia:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["token"] = request.headers.get("token")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"base64Data": base64.b64encode(b"img").decode(), "mimetype": "image/jpeg"})

        result = await _client(handler).download_media("M1", "tok-1")

        assert result.ok is True
        assert result.value.data == b"img"
        assert seen == {"path": "/message/download", "token": "tok-1", "body": {"id": "M1", "return_base64": True}}

    @pytest.mark.asyncio
    async def test_http_error(self):
        result = await _client(lambda request: httpx.Response(500, text="down")).download_media("M1", "tok")
        assert result.ok is False
        assert result.error == "HTTP 500"
        assert result.error_code == "download_failed"

    @pytest.mark.asyncio
    async def test_empty_body(self):
        result = await _client(lambda request: httpx.Response(200, json={})).download_media("M1", "tok")
        assert result.error == "No media content in download response"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        result = await _client(handler).download_media("M1", "tok")
        assert result.error_code == "provider_error"


class TestSend:
    @pytest.mark.asyncio
    async def test_send_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"key": {"id": "OUT-1"}})

        result = await _client(handler).send_text("tok", "5511999999999", "oi")

        assert result.value == "OUT-1"
        assert seen == {"path": "/send/text", "body": {"number": "5511999999999", "text": "oi"}}

    @pytest.mark.asyncio
    async def test_send_ptt(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messageId": "OUT-2"})

        result = await _client(handler).send_ptt("tok", "5511999999999", "https://cdn.test/a.wav")

        assert result.value == "OUT-2"
        assert seen["path"] == "/send/media"
        assert seen["body"]["type"] == "ptt"
        assert seen["body"]["file"] == "https://cdn.test/a.wav"

    @pytest.mark.asyncio
    async def test_send_rejected(self):
        result = await _client(lambda request: httpx.Response(401, text="bad token")).send_text("tok", "1", "x")
        assert result.ok is False
        assert result.error_code == "send_failed"
        assert result.error.startswith("HTTP 401")
