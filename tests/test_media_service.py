from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import httpx
import pytest

from app.models import Message
from app.schemas.tasks import MediaTask
from app.services.media_service import (
    MediaOutcome,
    build_object_key,
    choose_file_format,
    display_mime_type,
    download_with_retry,
    extension_for,
    materialize,
    storage_safe_mime_type,
)
from app.services.object_storage import ObjectStorageError
from app.services.provider_client import DownloadedMedia, ProviderClient
from app.services.result import Result


def _task(**overrides) -> MediaTask:
    values = dict(
        message_id=uuid4(),
        provider_message_id="M1",
        media_kind="image",
        company_id=uuid4(),
        connection_id=uuid4(),
        instance_token="tok-1",
    )
    values.update(overrides)
    return MediaTask(**values)


def _db(status="pending", updated=1) -> Mock:
    db = Mock()
    db.query.return_value.filter.return_value.first.return_value = SimpleNamespace(status=status) if status else None
    db.query.return_value.filter.return_value.update.return_value = updated
    return db


def _updates(db: Mock) -> dict:
    return db.query.return_value.filter.return_value.update.call_args.args[0]


async def _no_sleep(_seconds):
    return None


class TestFileFormat:
    def test_sticker_always_webp(self):
        assert choose_file_format("sticker", "application/octet-stream").extension == "webp"

    def test_image_uses_downloaded_mime(self):
        file_format = choose_file_format("image", "image/png")
        assert file_format.extension == "png"
        assert file_format.storage_mime_type == "image/png"

    def test_audio_with_codec_parameter(self):
        file_format = choose_file_format("audio", "audio/ogg; codecs=opus")
        assert file_format.extension == "ogg"
        assert file_format.storage_mime_type == "audio/ogg"

    def test_markdown_document(self):
        file_format = choose_file_format("document", "audio/ogg", "notes.md", "text/plain")
        assert file_format.extension == "md"
        assert file_format.display_mime_type == "text/markdown"
        assert file_format.storage_mime_type == "application/octet-stream"

    def test_pdf_document(self):
        file_format = choose_file_format("document", "audio/ogg", "contract.pdf", "application/pdf")
        assert file_format.extension == "pdf"
        assert file_format.storage_mime_type == "application/pdf"

    def test_extension_falls_back_to_subtype(self):
        assert extension_for("image/heic") == "heic"
        assert extension_for("image/jpeg") == "jpg"
        assert extension_for(None) == "bin"

    def test_display_mime_prefers_extension(self):
        assert display_mime_type("report.xlsx", "application/octet-stream") == (
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        )
        assert display_mime_type(None, None) == "application/octet-stream"

    def test_storage_safe_mime(self):
        assert storage_safe_mime_type("text/html") == "application/octet-stream"
        assert storage_safe_mime_type("image/png") == "image/png"


class TestObjectKey:
    def test_key_is_tenant_and_month_scoped(self):
        company_id, connection_id = uuid4(), uuid4()
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        key, file_name = build_object_key(company_id, connection_id, "audio", "ogg", now)
        assert key == f"{company_id}/{connection_id}/2024-05/{file_name}"
        assert file_name.startswith(f"audio_{int(now.timestamp() * 1000)}_")
        assert file_name.endswith(".ogg")


class TestDownloadWithRetry:
    @pytest.mark.asyncio
    async def test_second_attempt_succeeds(self):
        provider = Mock()
        media = DownloadedMedia(b"abc", "image/png")
        provider.download_media = AsyncMock(
            side_effect=[Result.failure("HTTP 500", "download_failed"), Result.success(media)]
        )
        sleep = AsyncMock()
        result = await download_with_retry(provider, "M1", "tok", sleep_func=sleep, retry_delay=2)
        assert result.value == media
        sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_two_failures(self):
        provider = Mock()
        provider.download_media = AsyncMock(return_value=Result.failure("HTTP 500", "download_failed"))
        result = await download_with_retry(provider, "M1", "tok", sleep_func=_no_sleep)
        assert result.ok is False
        assert provider.download_media.await_count == 2


class TestMaterialize:
    @pytest.mark.asyncio
    async def test_delivered(self):
        db = _db()
        provider = Mock()
        provider.download_media = AsyncMock(return_value=Result.success(DownloadedMedia(b"img", "image/jpeg")))
        storage = Mock()
        storage.upload_async = AsyncMock(return_value="https://cdn.test/key.jpg")
        task = _task(file_name="photo.jpg")

        outcome = await materialize(db, task, provider, storage, sleep_func=_no_sleep)

        assert outcome == MediaOutcome.DELIVERED
        key, data, content_type = storage.upload_async.await_args.args
        assert key.startswith(f"{task.company_id}/{task.connection_id}/")
        assert key.endswith(".jpg")
        assert data == b"img"
        assert content_type == "image/jpeg"
        updates = _updates(db)
        assert updates[Message.status] == "delivered"
        assert updates[Message.media_url] == "https://cdn.test/key.jpg"
        assert updates[Message.media_mime_type] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_already_settled_is_skipped(self):
        db = _db(status="delivered")
        provider = Mock()
        provider.download_media = AsyncMock()
        outcome = await materialize(db, _task(), provider, Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.SKIPPED
        provider.download_media.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_row_is_skipped(self):
        outcome = await materialize(_db(status=None), _task(), Mock(), Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_missing_token_fails_row(self):
        db = _db()
        provider = Mock()
        provider.download_media = AsyncMock()
        outcome = await materialize(db, _task(instance_token=None), provider, Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.FAILED
        updates = _updates(db)
        assert updates[Message.status] == "failed"
        assert updates[Message.error_message] == "Missing provider token for connection"
        provider.download_media.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_download_failure_fails_row(self):
        db = _db()
        provider = Mock()
        provider.download_media = AsyncMock(return_value=Result.failure("HTTP 404", "download_failed"))
        outcome = await materialize(db, _task(), provider, Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.FAILED
        assert _updates(db)[Message.error_message] == "Download failed from provider after 2 attempts: HTTP 404"

    @pytest.mark.asyncio
    async def test_upload_failure_fails_row(self):
        db = _db()
        provider = Mock()
        provider.download_media = AsyncMock(return_value=Result.success(DownloadedMedia(b"a", "audio/ogg")))
        storage = Mock()
        storage.upload_async = AsyncMock(side_effect=ObjectStorageError("bucket missing"))
        outcome = await materialize(db, _task(media_kind="audio"), provider, storage, sleep_func=_no_sleep)
        assert outcome == MediaOutcome.FAILED
        assert _updates(db)[Message.error_message] == "Upload failed: bucket missing"

    @pytest.mark.asyncio
    async def test_concurrent_settle_is_skipped(self):
        db = _db(updated=0)
        provider = Mock()
        provider.download_media = AsyncMock(return_value=Result.success(DownloadedMedia(b"a", "video/mp4")))
        storage = Mock()
        storage.upload_async = AsyncMock(return_value="https://cdn.test/v.mp4")
        outcome = await materialize(db, _task(media_kind="video"), provider, storage, sleep_func=_no_sleep)
        assert outcome == MediaOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_row(self):
        db = _db()
        provider = Mock()
        provider.download_media = AsyncMock(side_effect=AttributeError("'int' object has no attribute 'startswith'"))
        outcome = await materialize(db, _task(), provider, Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.FAILED
        db.rollback.assert_called_once()
        updates = _updates(db)
        assert updates[Message.status] == "failed"
        assert updates[Message.error_message].startswith("Media processing error:")

    @pytest.mark.asyncio
    async def test_non_string_base64_fails_row(self):
        provider = ProviderClient(
            base_url="https://provider.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"base64": 12345})),
        )
        db = _db()
        outcome = await materialize(db, _task(), provider, Mock(), sleep_func=_no_sleep)
        assert outcome == MediaOutcome.FAILED
        assert _updates(db)[Message.status] == "failed"
