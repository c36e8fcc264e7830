from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


@dataclass(frozen=True)
class WebhookNotifier:
    url: str
    timeout_seconds: int = 10

    def post_json(self, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        req = urllib.request.Request(self.url, data=body, method="POST")
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except Exception:
                detail = ""
            raise NotificationError(f"HTTP {e.code} from notification webhook: {detail[:300]}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"Notification webhook unreachable: {e.reason}") from e


def withdrawal_message(status: str, amount: float) -> tuple[str, str]:
    subject = f"Withdrawal Request {status[:1].upper()}{status[1:]}"
    message = f"Your withdrawal request for ${amount:.2f} has been {status}."
    return subject, message


def send_withdrawal_notification(
    config: dict,
    *,
    email: str,
    status: str,
    amount: float,
    affiliate_code: str,
) -> bool:
    """
    Tell the affiliate about a withdrawal status change.

    Posts to NOTIFY_WEBHOOK_URL when configured, otherwise only logs. Failures are
    logged and reported as False; they never abort the status change itself.
    """
    subject, message = withdrawal_message(status, amount)
    payload = {
        "type": "withdrawal_status",
        "email": email,
        "status": status,
        "amount": round(amount, 2),
        "affiliate_code": affiliate_code,
        "subject": subject,
        "message": message,
    }
    url = (config.get("NOTIFY_WEBHOOK_URL") or "").strip()
    if not url:
        logger.info("Withdrawal notification (no webhook configured): %s -> %s", email, subject)
        return False
    try:
        WebhookNotifier(url=url).post_json(payload)
    except NotificationError as e:
        logger.warning("Withdrawal notification failed for %s: %s", email, e)
        return False
    logger.info("Withdrawal notification sent to %s (%s)", email, status)
    return True
