"""Fire-and-forget notifications (ntfy-style webhook)."""

import os
from typing import Optional

import httpx

from ralph_loop.constants import NOTIFY_TIMEOUT_S
from ralph_loop.debug import debug


def notify(
    title: str,
    message: str,
    priority: str = "default",
    url: Optional[str] = None,
    timeout: float = NOTIFY_TIMEOUT_S,
) -> bool:
    """
    POST a notification to NTFY_URL.

    Args:
        title: Sent as the Title header
        message: Request body
        priority: ntfy priority ("default", "high", ...)
        url: Override for NTFY_URL

    Returns:
        True if the webhook accepted the message. Failures are swallowed.
    """
    target = url or os.environ.get("NTFY_URL")
    if not target:
        return False

    headers = {"Title": title, "Priority": priority}
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(target, headers=headers, content=message.encode("utf-8"))
            response.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        debug("notify", f"Notification failed: {e}")
        return False
    return True
