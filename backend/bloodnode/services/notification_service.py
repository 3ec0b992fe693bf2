"""
Notification fan-out for emergency alerts.

One e-mail per matched donor, sent concurrently with bounded parallelism and a
per-send timeout.  A failed or timed-out send is recorded against that
recipient only; the fan-out itself never fails because of it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Protocol, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.config import Settings
from bloodnode.models.emergency import EmergencyAlert
from bloodnode.models.notification_log import NotificationLog, DeliveryStatus
from bloodnode.services.donor_directory import DonorRecord
from bloodnode.services.donor_matcher import DonorMatch
from bloodnode.services.email_templates import render_alert_email, render_selection_email

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str


@dataclass
class BatchResult:
    succeeded: int
    failed: int


class NotificationTransport(Protocol):
    async def send_batch(self, messages: list[EmailMessage]) -> BatchResult: ...


class ResendEmailTransport:
    """Transactional e-mail through the Resend batch API.

    One ``httpx.AsyncClient`` is opened on first use and reused for every
    send until ``aclose``; a client passed in by the caller is never closed here.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.api_key = settings.RESEND_API_KEY
        self.sender = settings.EMAIL_FROM
        self.url = f"{settings.EMAIL_API_URL.rstrip('/')}/emails/batch"
        self.timeout = settings.NOTIFICATION_SEND_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_batch(self, messages: list[EmailMessage]) -> BatchResult:
        if not messages:
            return BatchResult(succeeded=0, failed=0)
        if not self.api_key:
            logger.warning("Resend API key not configured, %d e-mail(s) not sent", len(messages))
            return BatchResult(succeeded=0, failed=len(messages))

        payload = [
            {"from": self.sender, "to": [m.to], "subject": m.subject, "html": m.html}
            for m in messages
        ]
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._get_client().post(self.url, headers=headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("E-mail batch of %d failed: %s", len(messages), exc.__class__.__name__)
            return BatchResult(succeeded=0, failed=len(messages))

        try:
            data = response.json().get("data")
        except (ValueError, AttributeError):
            logger.warning("E-mail batch accepted with an unreadable reply (HTTP %d)", response.status_code)
            data = None
        sent = min(len(data), len(messages)) if isinstance(data, list) else len(messages)
        return BatchResult(succeeded=sent, failed=len(messages) - sent)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

@dataclass
class FanoutResult:
    total: int = 0
    notified: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _send_one(
    transport: NotificationTransport,
    message: EmailMessage,
    semaphore: asyncio.Semaphore,
    timeout_seconds: float,
) -> tuple[DeliveryStatus, str | None]:
    async with semaphore:
        try:
            result = await asyncio.wait_for(transport.send_batch([message]), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return DeliveryStatus.TIMEOUT, f"timed out after {timeout_seconds:g}s"
        except Exception as exc:
            # Per-recipient failure; never aborts the fan-out
            return DeliveryStatus.FAILED, exc.__class__.__name__
    if result.succeeded >= 1:
        return DeliveryStatus.SENT, None
    return DeliveryStatus.FAILED, "rejected by transport"


async def fan_out(
    db: AsyncSession,
    alert: EmergencyAlert,
    matches: Sequence[DonorMatch],
    *,
    transport: NotificationTransport,
    base_url: str,
    max_concurrency: int = 10,
    timeout_seconds: float = 10.0,
) -> FanoutResult:
    """Send the alert to every match and record one NotificationLog per donor."""
    result = FanoutResult(total=len(matches))
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    recipients: list[DonorMatch] = []
    sends = []
    for match in matches:
        if not match.donor.email:
            db.add(NotificationLog(
                alert_id=alert.id,
                donor_id=match.donor.user_id,
                delivery_status=DeliveryStatus.SKIPPED,
                error="no e-mail address",
            ))
            result.skipped += 1
            continue
        subject, html = render_alert_email(
            alert,
            donor_name=match.donor.name,
            distance_km=match.distance_km,
            base_url=base_url,
        )
        recipients.append(match)
        sends.append(_send_one(
            transport, EmailMessage(to=match.donor.email, subject=subject, html=html),
            semaphore, timeout_seconds,
        ))

    outcomes = await asyncio.gather(*sends)

    for match, (status, error) in zip(recipients, outcomes):
        if status == DeliveryStatus.SENT:
            result.notified += 1
        elif status == DeliveryStatus.TIMEOUT:
            result.timed_out += 1
            logger.error("Alert %s: send to donor %s timed out", alert.id, match.donor.user_id)
        else:
            result.failed += 1
            logger.error("Alert %s: send to donor %s failed (%s)", alert.id, match.donor.user_id, error)
        db.add(NotificationLog(
            alert_id=alert.id,
            donor_id=match.donor.user_id,
            delivery_status=status,
            error=error,
        ))

    await db.flush()
    logger.info(
        "Alert %s fan-out: %d notified, %d failed, %d timed out, %d skipped of %d",
        alert.id, result.notified, result.failed, result.timed_out, result.skipped, result.total,
    )
    return result


async def notify_selected_donor(
    alert: EmergencyAlert,
    donor: DonorRecord | None,
    *,
    transport: NotificationTransport,
    base_url: str,
    timeout_seconds: float = 10.0,
) -> bool:
    """Best-effort confirmation to the selected donor.  Returns delivery success."""
    if donor is None or not donor.email:
        logger.info("Alert %s: selected donor has no e-mail on file", alert.id)
        return False
    subject, html = render_selection_email(alert, donor_name=donor.name, base_url=base_url)
    try:
        result = await asyncio.wait_for(
            transport.send_batch([EmailMessage(to=donor.email, subject=subject, html=html)]),
            timeout=timeout_seconds,
        )
    except Exception:
        logger.exception("Alert %s: selection e-mail to donor %s failed", alert.id, donor.user_id)
        return False
    return result.succeeded >= 1

