"""
Delivery Service - hands exported report artifacts to delivery channels.

Channels: email (SMTP), webhook (HTTP POST), FTP, object storage and log.
"""

import asyncio
import base64
import ftplib
import io
import logging
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

import aiohttp
import aiosmtplib

from ..errors import DeliveryError
from ..models import DeliveryConfig, DeliveryType, FTPConfig, utcnow

logger = logging.getLogger(__name__)


# ============================================
# Types
# ============================================

@dataclass
class DeliveryPayload:
    """An exported artifact ready to be delivered."""
    report_name: str
    filename: str
    content: bytes
    content_type: str
    format: str
    subscription_id: Optional[str] = None
    subscription_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass
class EmailConfig:
    """SMTP settings for the email channel."""
    smtp_host: str
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = "reports@reportflow.local"
    from_name: str = "Reportflow"
    use_tls: bool = True
    timeout: int = 30

    @classmethod
    def from_config(cls, config) -> "EmailConfig":
        return cls(
            smtp_host=config.get("delivery.smtp.host", ""),
            smtp_port=config.get("delivery.smtp.port", 587),
            username=config.get("delivery.smtp.username"),
            password=config.get("delivery.smtp.password"),
            from_address=config.get("delivery.smtp.from_address", "reports@reportflow.local"),
            from_name=config.get("delivery.smtp.from_name", "Reportflow"),
            use_tls=config.get("delivery.smtp.use_tls", True),
            timeout=config.get("delivery.smtp.timeout", 30),
        )


def compress(filename: str, content: bytes) -> tuple:
    """Zip a single file. Returns (zip filename, zip bytes)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(filename, content)
    return f"{PurePosixPath(filename).stem}.zip", buffer.getvalue()


# ============================================
# Channel Handlers
# ============================================

class DeliveryChannel(ABC):
    """Abstract base class for delivery channels."""

    @property
    @abstractmethod
    def channel_type(self) -> DeliveryType:
        """Return the channel type."""
        pass

    @abstractmethod
    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        """
        Deliver an artifact.

        Returns:
            Location or receipt describing where the artifact went

        Raises:
            DeliveryError: If delivery fails
        """
        pass


class LogChannel(DeliveryChannel):
    """Write deliveries to the application log."""

    @property
    def channel_type(self) -> DeliveryType:
        return DeliveryType.LOG

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        logger.info(
            f"[DELIVERY] {payload.report_name}: {payload.filename} "
            f"({payload.size_bytes} bytes, {payload.format})"
        )
        return f"log://{payload.filename}"


class EmailChannel(DeliveryChannel):
    """Send artifacts as email attachments."""

    def __init__(self, config: EmailConfig):
        self.config = config

    @property
    def channel_type(self) -> DeliveryType:
        return DeliveryType.EMAIL

    def build_message(self, config: DeliveryConfig, payload: DeliveryPayload) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["Subject"] = config.subject or f"Report: {payload.report_name}"
        msg["From"] = f"{self.config.from_name} <{self.config.from_address}>"
        msg["To"] = ", ".join(config.recipients)

        body = config.message or (
            f"Please find the {payload.report_name} report attached.\n\n"
            f"Generated at {utcnow().strftime('%Y-%m-%d %H:%M:%S')} UTC"
        )
        msg.attach(MIMEText(body, "plain"))

        if config.attachments:
            filename, content = payload.filename, payload.content
            if config.compress:
                filename, content = compress(filename, content)
            part = MIMEApplication(content, Name=filename)
            part["Content-Disposition"] = f'attachment; filename="{filename}"'
            msg.attach(part)

        return msg

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        if not config.recipients:
            raise DeliveryError("Email delivery requires at least one recipient")
        if not self.config.smtp_host:
            raise DeliveryError("SMTP host not configured")

        msg = self.build_message(config, payload)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                username=self.config.username,
                password=self.config.password,
                start_tls=self.config.use_tls,
                timeout=self.config.timeout,
            )
        except Exception as e:
            logger.error(f"Email delivery failed: {e}")
            raise DeliveryError(f"Failed to send email: {e}") from e

        logger.info(f"Email sent to {len(config.recipients)} recipient(s)")
        return "email:" + ",".join(config.recipients)


class WebhookChannel(DeliveryChannel):
    """POST artifacts to a webhook as base64 JSON."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    @property
    def channel_type(self) -> DeliveryType:
        return DeliveryType.WEBHOOK

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        if not config.webhook_url:
            raise DeliveryError("Webhook delivery requires webhook_url")

        headers = {
            "Content-Type": "application/json",
            **config.webhook_headers,
        }
        body = {
            "subscription_id": payload.subscription_id,
            "subscription_name": payload.subscription_name,
            "report_name": payload.report_name,
            "format": payload.format,
            "filename": payload.filename,
            "content_type": payload.content_type,
            "size_bytes": payload.size_bytes,
            "content": base64.b64encode(payload.content).decode("ascii"),
            "timestamp": utcnow().isoformat(),
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(config.webhook_url, json=body, headers=headers) as response:
                    if response.status >= 400:
                        text = await response.text()
                        raise DeliveryError(f"Webhook returned {response.status}: {text}")
        except aiohttp.ClientError as e:
            logger.error(f"Webhook delivery failed: {e}")
            raise DeliveryError(f"Failed to send webhook: {e}") from e
        except asyncio.TimeoutError as e:
            raise DeliveryError(f"Webhook timed out after {self.timeout}s") from e

        logger.info(f"Webhook sent to {config.webhook_url}")
        return config.webhook_url


class FTPChannel(DeliveryChannel):
    """Upload artifacts to an FTP (or FTPS) server."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    @property
    def channel_type(self) -> DeliveryType:
        return DeliveryType.FTP

    def _upload(self, ftp_config: FTPConfig, filename: str, content: bytes) -> None:
        ftp = ftplib.FTP_TLS() if ftp_config.secure else ftplib.FTP()
        try:
            ftp.connect(ftp_config.host, ftp_config.port, timeout=self.timeout)
            ftp.login(ftp_config.username or "anonymous", ftp_config.password or "")
            if ftp_config.secure:
                ftp.prot_p()
            if ftp_config.path and ftp_config.path != "/":
                ftp.cwd(ftp_config.path)
            ftp.storbinary(f"STOR {filename}", io.BytesIO(content))
        finally:
            try:
                ftp.quit()
            except (ftplib.Error, OSError):
                ftp.close()

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        if config.ftp is None or not config.ftp.host:
            raise DeliveryError("FTP delivery requires a host")

        filename, content = payload.filename, payload.content
        if config.compress:
            filename, content = compress(filename, content)

        try:
            await asyncio.to_thread(self._upload, config.ftp, filename, content)
        except ftplib.all_errors as e:
            logger.error(f"FTP delivery failed: {e}")
            raise DeliveryError(f"Failed to upload to {config.ftp.host}: {e}") from e

        path = (config.ftp.path or "/").rstrip("/")
        logger.info(f"Uploaded {filename} to ftp://{config.ftp.host}{path}")
        return f"ftp://{config.ftp.host}{path}/{filename}"


class ObjectStorageChannel(DeliveryChannel):
    """Store artifacts as objects under bucket/path in the artifact storage."""

    def __init__(self, storage):
        self._storage = storage

    @property
    def channel_type(self) -> DeliveryType:
        return DeliveryType.S3

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        if config.s3 is None or not config.s3.bucket:
            raise DeliveryError("Object storage delivery requires a bucket")

        filename, content = payload.filename, payload.content
        if config.compress:
            filename, content = compress(filename, content)

        key = "/".join(p for p in ((config.s3.path or "").strip("/"), filename) if p)
        await self._storage.store(f"{config.s3.bucket}/{key}", content, category="objects")
        logger.info(f"Stored object s3://{config.s3.bucket}/{key}")
        return f"s3://{config.s3.bucket}/{key}"


# ============================================
# Delivery Service
# ============================================

class DeliveryService:
    """
    Dispatches artifacts to the channel named by a DeliveryConfig.

    Any channel failure surfaces as DeliveryError.
    """

    def __init__(self):
        self._channels: Dict[DeliveryType, DeliveryChannel] = {}
        self._stats = {"sent": 0, "failed": 0}

    @classmethod
    def from_config(cls, config=None, storage=None) -> "DeliveryService":
        """Build a service with every channel the configuration supports."""
        service = cls()
        service.register_channel(LogChannel())
        webhook_timeout = config.get("delivery.webhook.timeout", 30) if config else 30
        ftp_timeout = config.get("delivery.ftp.timeout", 30) if config else 30
        service.register_channel(WebhookChannel(timeout=webhook_timeout))
        service.register_channel(FTPChannel(timeout=ftp_timeout))
        if config is not None and config.get("delivery.smtp.host"):
            service.register_channel(EmailChannel(EmailConfig.from_config(config)))
        if storage is not None:
            service.register_channel(ObjectStorageChannel(storage))
        return service

    def register_channel(self, channel: DeliveryChannel) -> None:
        self._channels[channel.channel_type] = channel
        logger.debug(f"Registered delivery channel: {channel.channel_type.value}")

    def has_channel(self, channel_type: DeliveryType) -> bool:
        return channel_type in self._channels

    @property
    def channels(self) -> Dict[DeliveryType, DeliveryChannel]:
        return dict(self._channels)

    async def deliver(self, config: DeliveryConfig, payload: DeliveryPayload) -> str:
        channel = self._channels.get(config.type)
        if channel is None:
            self._stats["failed"] += 1
            raise DeliveryError(f"No delivery channel for type: {config.type.value}")

        try:
            location = await channel.deliver(config, payload)
        except DeliveryError:
            self._stats["failed"] += 1
            raise
        except Exception as e:
            self._stats["failed"] += 1
            raise DeliveryError(f"{config.type.value} delivery failed: {e}") from e

        self._stats["sent"] += 1
        return location

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "channels": sorted(t.value for t in self._channels),
        }
