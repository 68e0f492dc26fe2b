"""Push notifications to an uptime monitor (Uptime Kuma push API)."""

import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

logger = logging.getLogger(__name__)


def send_monitor_push(
    push_url: str,
    success: bool,
    message: Optional[str] = None,
    retry_delay: float = 120,
    timeout: float = 10,
) -> bool:
    """
    Report the run status to a push monitor.

    Args:
        push_url: Push endpoint, e.g. 'http://localhost:3001/api/push/<token>'
        success: Run outcome, sent as status=up/down
        message: Short message, defaults to "OK" or "FAILED"
        retry_delay: Seconds to wait before the single retry
        timeout: HTTP timeout per attempt

    Returns:
        True if the monitor acknowledged the push
    """
    params = {
        "status": "up" if success else "down",
        "msg": message or ("OK" if success else "FAILED"),
        "ping": "",
    }
    separator = "&" if "?" in push_url else "?"
    full_url = f"{push_url}{separator}{urllib.parse.urlencode(params)}"

    def _make_request(url: str) -> bool:
        try:
            with urllib.request.urlopen(url, timeout=timeout) as response:
                if response.getcode() < 400:
                    return True
                logger.warning(f"Monitor push failed with HTTP {response.getcode()}")
                return False
        except (urllib.error.URLError, OSError) as e:
            logger.warning(f"Monitor push failed: {e}")
            return False

    if _make_request(full_url):
        logger.debug(f"Monitor push sent: status={params['status']}, msg={params['msg']}")
        return True

    logger.info(f"Monitor push failed, retrying in {retry_delay:g}s...")
    time.sleep(retry_delay)

    if _make_request(full_url):
        logger.info("Monitor push sent on retry")
        return True

    logger.error("Monitor push failed on retry, giving up")
    return False
