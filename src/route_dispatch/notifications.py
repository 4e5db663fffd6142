"""
Notification senders and message formatting.

Two thin senders cover the outbound channels:
- TelegramSender delivers a team's route to its lead's chat
- SmsSender delivers each customer's ETA window by text message

Senders never raise for delivery problems. Missing configuration, timeouts,
HTTP errors and provider-side rejections all come back as a SendOutcome with
the error text, so the caller can record the failure and keep going.
"""

import html
import logging
import re
from datetime import datetime
from typing import Optional

import httpx

from .config import get_settings
from .models import DispatchResult, OptimizationResult, RouteStop, SendOutcome, TeamRoute

logger = logging.getLogger(__name__)


def _timeout(seconds: Optional[float]) -> httpx.Timeout:
    if seconds is None:
        seconds = get_settings()["notification_timeout_seconds"]
    return httpx.Timeout(seconds, connect=5.0)


def to_e164(phone: str) -> Optional[str]:
    """Normalizes a North American phone number to E.164, or None if it cannot be."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if phone and phone.strip().startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    return None


# --- Senders ---

class TelegramSender:
    """Sends HTML-formatted messages through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.bot_token = bot_token or settings["telegram_bot_token"]
        self.api_base = (api_base or settings["telegram_api_base"]).rstrip("/")
        self._client = client or httpx.Client(timeout=_timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def send_to_team_lead(self, chat_id: str, text: str) -> SendOutcome:
        if not self.bot_token:
            return SendOutcome(error="Telegram bot token not configured")
        if not chat_id:
            return SendOutcome(error="Chat ID required")

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        try:
            response = self._client.post(url, json=payload)
            data = response.json()
        except httpx.TimeoutException:
            return SendOutcome(error="Telegram request timed out")
        except (httpx.HTTPError, ValueError) as e:
            return SendOutcome(error=f"Telegram request failed: {e}")

        if not data.get("ok"):
            return SendOutcome(error=data.get("description") or f"Telegram API error (HTTP {response.status_code})")
        message_id = (data.get("result") or {}).get("message_id")
        return SendOutcome(message_id=str(message_id) if message_id is not None else None)


class SmsSender:
    """Sends plain-text SMS through an OpenPhone compatible messages endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_number: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings["sms_api_key"]
        self.from_number = from_number or settings["sms_from_number"]
        self.api_url = api_url or settings["sms_api_url"]
        self._client = client or httpx.Client(timeout=_timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def send_sms(self, phone: str, text: str) -> SendOutcome:
        if not self.api_key:
            return SendOutcome(error="SMS API key not configured")
        if not self.from_number:
            return SendOutcome(error="SMS sender number not configured")
        to = to_e164(phone)
        if not to:
            return SendOutcome(error=f"Invalid phone number: {phone}")

        payload = {"from": self.from_number, "to": [to], "content": text}
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        try:
            response = self._client.post(self.api_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            return SendOutcome(error="SMS request timed out")
        except httpx.HTTPStatusError as e:
            return SendOutcome(error=f"SMS API error: {e.response.status_code} - {e.response.text}")
        except (httpx.HTTPError, ValueError) as e:
            return SendOutcome(error=f"SMS request failed: {e}")

        message_id = (data.get("data") or {}).get("id") or data.get("id")
        return SendOutcome(message_id=str(message_id) if message_id is not None else None)


# --- Message Formatting ---

def format_clock(value: datetime) -> str:
    """12-hour wall-clock time, e.g. '8:05 AM'."""
    return value.strftime("%I:%M %p").lstrip("0")

def format_window(stop: RouteStop) -> str:
    return f"{format_clock(stop.eta.start)} - {format_clock(stop.eta.end)}"

def _humanize(value: str) -> str:
    return " ".join(value.replace("_", " ").split())

def _duration(minutes: int) -> str:
    return f"{minutes / 60:.1f}h" if minutes >= 60 else f"{minutes}min"


def format_team_route(route: TeamRoute) -> str:
    """Morning route message for a team lead: ordered stops with ETAs and drive times."""
    stop_lines = []
    for idx, stop in enumerate(route.stops):
        drive_from = "depot" if idx == 0 else f"stop {idx}"
        service = f" | {html.escape(_humanize(stop.service_type))}" if stop.service_type else ""
        stop_lines.append(
            f"<b>{stop.sequence + 1}. {format_clock(stop.eta.start)}</b> - {html.escape(stop.address or 'No address')}\n"
            f"   {html.escape(stop.customer_name or 'Customer')} | ~{_duration(stop.service_minutes)}{service}\n"
            f"   Drive: {round(stop.drive_minutes)} min from {drive_from}"
        )

    count = len(route.stops)
    lines = [
        f"<b>Good morning, {html.escape(route.team_name)}!</b>",
        "",
        f"Here's your optimized route for today ({count} job{'s' if count != 1 else ''}):",
        "",
        "\n\n".join(stop_lines),
        "",
        f"<b>Total drive time:</b> {round(route.total_drive_minutes)} min",
    ]
    if route.stops:
        lines.append(f"<b>Estimated finish:</b> {format_clock(route.stops[-1].departure)}")
    lines += ["", "Have a great day!"]
    return "\n".join(lines)


def format_customer_eta(business_name: Optional[str], stop: RouteStop, team_name: str) -> str:
    greeting = f"Hi {stop.customer_name}!" if stop.customer_name else "Hi!"
    service = _humanize(stop.service_type) if stop.service_type else "service visit"
    business = f"{business_name} " if business_name else ""
    return (
        f"{greeting} Your {business}{service} is scheduled for today. "
        f"Estimated arrival: {format_window(stop)}. Your team: {team_name}. Reply with any questions!"
    )


def format_owner_summary(result: OptimizationResult, dispatch: DispatchResult, limit: int = 5) -> str:
    """Operator summary: counts, then warnings, unassigned jobs and errors when present."""
    teams = result.stats.active_teams
    lines = [
        f"<b>Logistics Dispatch - {result.date.isoformat()}</b>",
        "",
        f"Jobs: {dispatch.jobs_updated} dispatched to {teams} team{'s' if teams != 1 else ''}",
    ]
    if dispatch.telegrams_sent:
        lines.append(f"Telegram routes sent: {dispatch.telegrams_sent}")
    if dispatch.sms_sent:
        lines.append(f"Customer ETA texts: {dispatch.sms_sent}")

    if result.warnings:
        lines += ["", "<b>Warnings:</b>"]
        lines += [f"  - {html.escape(w)}" for w in result.warnings]

    if result.unassigned:
        lines += ["", f"<b>Unassigned jobs ({len(result.unassigned)}):</b>"]
        lines += [f"  - Job #{u.job_id}: {html.escape(u.reason)}" for u in result.unassigned[:limit]]
        if len(result.unassigned) > limit:
            lines.append(f"  ... and {len(result.unassigned) - limit} more")

    if dispatch.errors:
        lines += ["", "<b>Errors:</b>"]
        lines += [f"  - {html.escape(e.recipient)}: {html.escape(e.reason)}" for e in dispatch.errors[:limit]]
        if len(dispatch.errors) > limit:
            lines.append(f"  ... and {len(dispatch.errors) - limit} more")

    return "\n".join(lines)
