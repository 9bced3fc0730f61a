"""UAZAPI (WhatsApp gateway) HTTP client."""

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.result import ErrorCode, Result

logger = get_logger("provider_client")

DEFAULT_DOWNLOAD_MIME = "audio/ogg"


@dataclass(frozen=True)
class DownloadedMedia:
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def extract_provider_message_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    key = body.get("key") if isinstance(body.get("key"), dict) else {}
    return key.get("id") or body.get("messageId") or body.get("id")


def _extract_base64(body: dict) -> Optional[str]:
    for candidate in (
        body.get("base64Data"),
        body.get("base64"),
        (body.get("data") or {}).get("base64") if isinstance(body.get("data"), dict) else None,
        (body.get("media") or {}).get("base64") if isinstance(body.get("media"), dict) else None,
    ):
        if candidate and isinstance(candidate, str):
            return candidate
    return None


def decode_download_body(body: Any) -> Optional[DownloadedMedia]:
    """Decode the provider's base64 download response. Returns None when it carries no media."""
    if not isinstance(body, dict):
        return None
    encoded = _extract_base64(body)
    if not encoded:
        return None
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        return None
    if not data:
        return None
    mime_type = body.get("mimetype") or body.get("mimeType")
    if not isinstance(mime_type, str) or not mime_type:
        mime_type = DEFAULT_DOWNLOAD_MIME
    return DownloadedMedia(data=data, mime_type=mime_type)


class ProviderClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._transport = transport

    async def _post(self, path: str, token: str, payload: dict) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"token": token, "Content-Type": "application/json"},
            )

    async def download_media(self, provider_message_id: str, token: str) -> Result[DownloadedMedia]:
        try:
            response = await self._post(
                "/message/download",
                token,
                {"id": provider_message_id, "return_base64": True},
            )
        except Exception as e:
            logger.warning(f"Provider download request failed: {e}")
            return Result.failure(str(e), ErrorCode.PROVIDER_ERROR)

        if response.status_code != 200:
            logger.warning(
                "Provider download rejected",
                extra={"context": {"status": response.status_code, "body": response.text[:200]}},
            )
            return Result.failure(f"HTTP {response.status_code}", ErrorCode.DOWNLOAD_FAILED)

        try:
            media = decode_download_body(response.json())
        except (ValueError, TypeError) as e:
            return Result.failure(f"Invalid download response: {e}", ErrorCode.DOWNLOAD_FAILED)
        if media is None:
            return Result.failure("No media content in download response", ErrorCode.DOWNLOAD_FAILED)
        return Result.success(media)

    async def _send(self, path: str, token: str, payload: dict) -> Result[Optional[str]]:
        try:
            response = await self._post(path, token, payload)
        except Exception as e:
            logger.error(f"Provider send failed: {e}")
            return Result.failure(str(e), ErrorCode.SEND_FAILED)

        logger.info(f"Provider response: path={path}, status={response.status_code}")
        if not response.is_success:
            return Result.failure(f"HTTP {response.status_code}: {response.text[:200]}", ErrorCode.SEND_FAILED)
        try:
            body = response.json()
        except ValueError:
            body = None
        return Result.success(extract_provider_message_id(body))

    async def send_text(self, token: str, number: str, text: str) -> Result[Optional[str]]:
        return await self._send("/send/text", token, {"number": number, "text": text})

    async def send_ptt(self, token: str, number: str, file_url: str) -> Result[Optional[str]]:
        """Send an audio URL as a push-to-talk voice note."""
        return await self._send(
            "/send/media",
            token,
            {"number": number, "type": "ptt", "file": file_url, "text": ""},
        )
