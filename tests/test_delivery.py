"""
Tests for the DeliveryService and its channels.

External systems (SMTP, HTTP, FTP) are mocked.

Run with:
    pytest tests/test_delivery.py -v
"""

import io
import zipfile
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import aiosmtplib
import pytest
import pytest_asyncio

from reportflow.errors import DeliveryError
from reportflow.models import DeliveryConfig, DeliveryType, FTPConfig, S3Config
from reportflow.services.config import ConfigService
from reportflow.services.delivery import (
    DeliveryPayload,
    DeliveryService,
    EmailChannel,
    EmailConfig,
    FTPChannel,
    LogChannel,
    ObjectStorageChannel,
    WebhookChannel,
    compress,
)
from reportflow.services.storage import StorageService


@pytest.fixture
def payload():
    return DeliveryPayload(
        report_name="Sales Summary",
        filename="Sales_Summary_20250115_103000.csv",
        content=b"region,amount\nnorth,120\n",
        content_type="text/csv",
        format="csv",
        subscription_id="sub-1",
        subscription_name="Daily sales",
    )


@pytest.fixture
def email_channel():
    return EmailChannel(EmailConfig(smtp_host="smtp.example.com", smtp_port=2525))


@pytest_asyncio.fixture
async def storage(tmp_path):
    service = StorageService(base_path=str(tmp_path))
    await service.initialize()
    return service


def mock_webhook_session(mock_session, status=200, text="OK"):
    """Wire a patched aiohttp.ClientSession to return one response."""
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.text = AsyncMock(return_value=text)

    mock_context = AsyncMock()
    mock_context.__aenter__.return_value = mock_response
    mock_context.__aexit__.return_value = None

    mock_post = MagicMock(return_value=mock_context)
    mock_session.return_value.__aenter__.return_value.post = mock_post
    mock_session.return_value.__aexit__.return_value = None
    return mock_post


# =============================================================================
# Helpers
# =============================================================================

class TestCompress:
    def test_compress_single_file(self, payload):
        filename, content = compress(payload.filename, payload.content)

        assert filename == "Sales_Summary_20250115_103000.zip"
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            assert archive.read(payload.filename) == payload.content


# =============================================================================
# Email
# =============================================================================

class TestEmailChannel:
    """Test SMTP delivery through aiosmtplib."""

    def test_message_has_attachment(self, email_channel, payload):
        config = DeliveryConfig(type=DeliveryType.EMAIL, recipients=["a@example.com", "b@example.com"])

        msg = email_channel.build_message(config, payload)

        assert msg["To"] == "a@example.com, b@example.com"
        assert msg["Subject"] == "Report: Sales Summary"
        attachments = [p for p in msg.get_payload() if p.get_filename()]
        assert attachments[0].get_filename() == payload.filename

    def test_compressed_attachment(self, email_channel, payload):
        config = DeliveryConfig(
            type=DeliveryType.EMAIL, recipients=["a@example.com"], compress=True, subject="Zipped",
        )

        msg = email_channel.build_message(config, payload)

        assert msg["Subject"] == "Zipped"
        attachments = [p for p in msg.get_payload() if p.get_filename()]
        assert attachments[0].get_filename().endswith(".zip")

    def test_without_attachments(self, email_channel, payload):
        config = DeliveryConfig(type=DeliveryType.EMAIL, recipients=["a@example.com"], attachments=False)

        msg = email_channel.build_message(config, payload)

        assert all(not p.get_filename() for p in msg.get_payload())

    @pytest.mark.asyncio
    async def test_send(self, email_channel, payload):
        config = DeliveryConfig(type=DeliveryType.EMAIL, recipients=["a@example.com"])

        with patch("reportflow.services.delivery.aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            location = await email_channel.deliver(config, payload)

        assert location == "email:a@example.com"
        mock_send.assert_awaited_once()
        assert mock_send.await_args.kwargs["hostname"] == "smtp.example.com"
        assert mock_send.await_args.kwargs["port"] == 2525

    @pytest.mark.asyncio
    async def test_smtp_failure(self, email_channel, payload):
        config = DeliveryConfig(type=DeliveryType.EMAIL, recipients=["a@example.com"])

        with patch(
            "reportflow.services.delivery.aiosmtplib.send",
            new_callable=AsyncMock,
            side_effect=aiosmtplib.SMTPException("connection refused"),
        ):
            with pytest.raises(DeliveryError, match="connection refused"):
                await email_channel.deliver(config, payload)

    @pytest.mark.asyncio
    async def test_requires_recipients(self, email_channel, payload):
        with pytest.raises(DeliveryError):
            await email_channel.deliver(DeliveryConfig(type=DeliveryType.EMAIL), payload)

    @pytest.mark.asyncio
    async def test_requires_smtp_host(self, payload):
        channel = EmailChannel(EmailConfig(smtp_host=""))
        config = DeliveryConfig(type=DeliveryType.EMAIL, recipients=["a@example.com"])

        with pytest.raises(DeliveryError, match="SMTP host"):
            await channel.deliver(config, payload)


# =============================================================================
# Webhook
# =============================================================================

class TestWebhookChannel:
    """Test HTTP POST delivery through aiohttp."""

    @pytest.mark.asyncio
    async def test_post_json(self, payload):
        config = DeliveryConfig(
            type=DeliveryType.WEBHOOK,
            webhook_url="https://hooks.example.com/reports",
            webhook_headers={"X-Token": "secret"},
        )

        with patch("reportflow.services.delivery.aiohttp.ClientSession") as mock_session:
            mock_post = mock_webhook_session(mock_session)
            location = await WebhookChannel().deliver(config, payload)

        assert location == "https://hooks.example.com/reports"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.example.com/reports"
        assert kwargs["headers"]["X-Token"] == "secret"
        assert kwargs["json"]["subscription_id"] == "sub-1"
        assert kwargs["json"]["size_bytes"] == payload.size_bytes

    @pytest.mark.asyncio
    async def test_error_status(self, payload):
        config = DeliveryConfig(type=DeliveryType.WEBHOOK, webhook_url="https://hooks.example.com")

        with patch("reportflow.services.delivery.aiohttp.ClientSession") as mock_session:
            mock_webhook_session(mock_session, status=500, text="Internal Server Error")
            with pytest.raises(DeliveryError, match="500"):
                await WebhookChannel().deliver(config, payload)

    @pytest.mark.asyncio
    async def test_client_error(self, payload):
        config = DeliveryConfig(type=DeliveryType.WEBHOOK, webhook_url="https://hooks.example.com")

        with patch("reportflow.services.delivery.aiohttp.ClientSession") as mock_session:
            mock_session.return_value.__aenter__.side_effect = aiohttp.ClientError("unreachable")
            with pytest.raises(DeliveryError, match="unreachable"):
                await WebhookChannel().deliver(config, payload)

    @pytest.mark.asyncio
    async def test_requires_url(self, payload):
        with pytest.raises(DeliveryError):
            await WebhookChannel().deliver(DeliveryConfig(type=DeliveryType.WEBHOOK), payload)


# =============================================================================
# FTP and object storage
# =============================================================================

class TestFileChannels:
    """Test FTP upload and object storage."""

    @pytest.mark.asyncio
    async def test_ftp_upload(self, payload):
        config = DeliveryConfig(
            type=DeliveryType.FTP,
            ftp=FTPConfig(host="ftp.example.com", username="reports", password="pw", path="/outbox/"),
        )

        with patch("reportflow.services.delivery.ftplib.FTP") as mock_ftp_cls:
            location = await FTPChannel().deliver(config, payload)

        ftp = mock_ftp_cls.return_value
        ftp.connect.assert_called_once_with("ftp.example.com", 21, timeout=30)
        ftp.login.assert_called_once_with("reports", "pw")
        ftp.cwd.assert_called_once_with("/outbox/")
        assert ftp.storbinary.call_args.args[0] == f"STOR {payload.filename}"
        assert location == f"ftp://ftp.example.com/outbox/{payload.filename}"

    @pytest.mark.asyncio
    async def test_ftp_failure(self, payload):
        config = DeliveryConfig(type=DeliveryType.FTP, ftp=FTPConfig(host="ftp.example.com"))

        with patch("reportflow.services.delivery.ftplib.FTP") as mock_ftp_cls:
            mock_ftp_cls.return_value.connect.side_effect = OSError("timed out")
            with pytest.raises(DeliveryError, match="timed out"):
                await FTPChannel().deliver(config, payload)

    @pytest.mark.asyncio
    async def test_object_storage(self, storage, payload):
        config = DeliveryConfig(
            type=DeliveryType.S3,
            s3=S3Config(bucket="reports-bucket", path="daily"),
        )

        location = await ObjectStorageChannel(storage).deliver(config, payload)

        assert location == f"s3://reports-bucket/daily/{payload.filename}"
        stored = await storage.retrieve(f"objects/reports-bucket/daily/{payload.filename}")
        assert stored == payload.content


# =============================================================================
# Delivery service
# =============================================================================

class TestDeliveryService:
    """Test channel dispatch and error wrapping."""

    @pytest.mark.asyncio
    async def test_dispatch_by_type(self, payload):
        service = DeliveryService()
        service.register_channel(LogChannel())

        location = await service.deliver(DeliveryConfig(type=DeliveryType.LOG), payload)

        assert location == f"log://{payload.filename}"
        assert service.get_stats()["sent"] == 1

    @pytest.mark.asyncio
    async def test_missing_channel(self, payload):
        service = DeliveryService()

        with pytest.raises(DeliveryError, match="sharepoint"):
            await service.deliver(DeliveryConfig(type=DeliveryType.SHAREPOINT), payload)
        assert service.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_errors_wrapped(self, payload):
        channel = MagicMock()
        channel.channel_type = DeliveryType.LOG
        channel.deliver = AsyncMock(side_effect=RuntimeError("disk on fire"))
        service = DeliveryService()
        service.register_channel(channel)

        with pytest.raises(DeliveryError, match="disk on fire"):
            await service.deliver(DeliveryConfig(type=DeliveryType.LOG), payload)

    def test_from_config_without_smtp(self):
        service = DeliveryService.from_config(ConfigService())

        assert not service.has_channel(DeliveryType.EMAIL)
        assert service.has_channel(DeliveryType.WEBHOOK)
        assert service.has_channel(DeliveryType.FTP)
        assert not service.has_channel(DeliveryType.S3)

    def test_from_config_with_smtp_and_storage(self, tmp_path):
        config = ConfigService(overrides={"delivery": {"smtp": {"host": "smtp.example.com"}}})

        service = DeliveryService.from_config(config, storage=StorageService(base_path=str(tmp_path)))

        assert service.has_channel(DeliveryType.EMAIL)
        assert service.has_channel(DeliveryType.S3)
        assert "email" in service.get_stats()["channels"]
