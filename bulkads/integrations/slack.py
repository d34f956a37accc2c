from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Union

import requests

from ..infrastructure.utils import getenv_b, getenv_f

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = getenv_f("SLACK_TIMEOUT", 10.0)
MAX_TEXT = 3000

EMOJI = {
    "info": "ℹ️",
    "warn": "⏸️",
    "error": "🛑",
}


def _env_webhooks() -> Dict[str, str]:
    main_webhook = os.getenv("SLACK_WEBHOOK_URL", "") or ""
    return {
        "default": main_webhook,
        "alerts": os.getenv("SLACK_WEBHOOK_ALERTS", "") or main_webhook,
    }


def _slack_enabled_now() -> bool:
    return any(_env_webhooks().values()) and getenv_b("SLACK_ENABLED", True)


def _truncate(s: str, limit: int) -> str:
    return s if len(s) <= limit else (s[: max(0, limit - 1)] + "…")


def _sanitize_line(text: str) -> str:
    s = re.sub(r"[\x00-\x08\x0b-\x1f\x7f]", "", text or "")
    return _truncate(s.strip(), MAX_TEXT)


@dataclass
class SlackMessage:
    text: str
    severity: Literal["info", "warn", "error"] = "info"
    topic: Union[Literal["default", "alerts"], str] = "default"

    def route_webhook(self) -> str:
        w = _env_webhooks()
        if self.topic == "alerts" and w["alerts"]:
            return w["alerts"]
        return w["default"]


class SlackClient:
    def __init__(self) -> None:
        self.enabled = _slack_enabled_now()
        self.dry_run = getenv_b("SLACK_DRY_RUN", False) or not self.enabled
        self.timeout = SLACK_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def close(self) -> None:
        self.session.close()

    def notify(self, msg: SlackMessage) -> bool:
        webhook = msg.route_webhook()
        text = f"{EMOJI.get(msg.severity, '')} {msg.text}".strip()
        if not webhook or self.dry_run:
            logger.info(f"[SLACK MOCK {msg.severity}/{msg.topic}] {msg.text}")
            return False
        try:
            r = self.session.post(webhook, json={"text": text}, timeout=self.timeout)
            r.raise_for_status()
            return True
        except requests.RequestException as e:
            # alerts are best effort; the event itself is already in the logs
            logger.warning(f"Slack delivery failed ({msg.topic}): {e}")
            return False


_client: Optional[SlackClient] = None
_client_lock = threading.Lock()


def client() -> SlackClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = SlackClient()
        return _client


def notify(
    text: str,
    severity: Literal["info", "warn", "error"] = "info",
    topic: Union[str, Literal["default", "alerts"]] = "default",
) -> bool:
    return client().notify(SlackMessage(text=_sanitize_line(text), severity=severity, topic=topic))


def alert_error(error_msg: str) -> bool:
    return notify(f"Something went wrong: {error_msg}", severity="error", topic="alerts")


def alert_rollback(job_id: str, deleted: int, failed: int, reason: str) -> bool:
    if failed:
        text = (
            f"Rollback of job {job_id} was partial: {deleted} deleted, {failed} need manual cleanup. "
            f"Reason: {reason}"
        )
        return notify(text, severity="error", topic="alerts")
    return notify(f"Rolled back job {job_id}: {deleted} entities deleted. Reason: {reason}", severity="warn")


__all__ = ["SlackClient", "SlackMessage", "client", "notify", "alert_error", "alert_rollback"]
