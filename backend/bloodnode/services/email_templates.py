"""E-mail bodies for emergency alerts and donor selection."""

from __future__ import annotations

from html import escape

from bloodnode.models.emergency import EmergencyAlert, UrgencyLevel

URGENCY_EMOJI = {
    UrgencyLevel.LOW: "\U0001F7E1",       # yellow circle
    UrgencyLevel.MEDIUM: "\U0001F7E0",    # orange circle
    UrgencyLevel.HIGH: "\U0001F534",      # red circle
    UrgencyLevel.CRITICAL: "\U0001F6A8",  # rotating light
}

URGENCY_COLOR = {
    UrgencyLevel.LOW: "#fbbf24",
    UrgencyLevel.MEDIUM: "#f97316",
    UrgencyLevel.HIGH: "#ef4444",
    UrgencyLevel.CRITICAL: "#dc2626",
}


def format_distance(distance_km: float) -> str:
    if distance_km < 1:
        return f"{round(distance_km * 1000)}m"
    return f"{distance_km:.1f}km"


def alert_subject(alert: EmergencyAlert, distance_km: float) -> str:
    urgency = UrgencyLevel(alert.urgency_level)
    return (
        f"{URGENCY_EMOJI[urgency]} URGENT: {alert.blood_type.value} Blood Needed"
        f" - {format_distance(distance_km)} away"
    )


def _row(label: str, value) -> str:
    if value in (None, ""):
        return ""
    return (
        f'<tr><td style="padding:4px 12px 4px 0;color:#6b7280">{escape(label)}</td>'
        f'<td style="padding:4px 0;font-weight:600">{escape(str(value))}</td></tr>'
    )


def render_alert_email(
    alert: EmergencyAlert,
    *,
    donor_name: str | None,
    distance_km: float,
    base_url: str,
) -> tuple[str, str]:
    """Return ``(subject, html)`` for one recipient."""
    urgency = UrgencyLevel(alert.urgency_level)
    color = URGENCY_COLOR[urgency]
    respond_url = f"{base_url.rstrip('/')}/emergency/respond/{alert.id}"
    greeting = f"Hi {escape(donor_name)}," if donor_name else "Hi,"

    rows = "".join([
        _row("Blood type needed", alert.blood_type.value),
        _row("Urgency", urgency.value.upper()),
        _row("Units required", alert.required_bags),
        _row("Distance from you", format_distance(distance_km)),
        _row("Search radius", f"{alert.radius_km:g} km"),
        _row("Hospital / place", alert.donation_place or alert.address),
        _row("Date", alert.donation_date.isoformat() if alert.donation_date else None),
        _row("Time", alert.donation_time),
        _row("Patient condition", alert.patient_condition),
        _row("Contact", alert.contact_info),
        _row("Reference", alert.serial_number),
    ])

    html = f"""\
<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
  <div style="background:{color};color:#ffffff;padding:16px 20px;border-radius:8px 8px 0 0">
    <h2 style="margin:0">{URGENCY_EMOJI[urgency]} Emergency blood request</h2>
  </div>
  <div style="border:1px solid #e5e7eb;border-top:none;padding:20px;border-radius:0 0 8px 8px">
    <p>{greeting}</p>
    <p>Someone near you urgently needs <strong>{alert.blood_type.value}</strong> blood and your
    blood type is compatible.</p>
    <table style="border-collapse:collapse">{rows}</table>
    <p style="margin-top:24px">
      <a href="{escape(respond_url)}" style="background:{color};color:#ffffff;padding:12px 20px;
      border-radius:6px;text-decoration:none;font-weight:600">I can donate</a>
    </p>
    <p style="color:#6b7280;font-size:12px">You are receiving this because you opted in to
    emergency alerts. Update your preferences in your donor profile.</p>
  </div>
</div>"""
    return alert_subject(alert, distance_km), html


def render_selection_email(
    alert: EmergencyAlert,
    *,
    donor_name: str | None,
    base_url: str,
) -> tuple[str, str]:
    subject = f"You have been selected to donate {alert.blood_type.value} blood"
    greeting = f"Hi {escape(donor_name)}," if donor_name else "Hi,"
    details_url = f"{base_url.rstrip('/')}/emergency/alert/{alert.id}"
    rows = "".join([
        _row("Hospital / place", alert.donation_place or alert.address),
        _row("Date", alert.donation_date.isoformat() if alert.donation_date else None),
        _row("Time", alert.donation_time),
        _row("Contact", alert.contact_info),
        _row("Reference", alert.serial_number),
    ])
    html = f"""\
<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
  <p>{greeting}</p>
  <p>Thank you for responding. The requester has selected you as the donor for this
  emergency. Please get in touch as soon as possible.</p>
  <table style="border-collapse:collapse">{rows}</table>
  <p><a href="{escape(details_url)}">View request details</a></p>
</div>"""
    return subject, html
