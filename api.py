"""
api.py — External HTTP calls for twitch_monitor
"""

import asyncio
import datetime as dt
import logging
from typing import Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from env import DISCORD_WEBHOOK_URL, PROBE_TIMEOUT

# Setup logging
logger = logging.getLogger("twitch_monitor")

TWITCH_URL = "https://www.twitch.tv/{channel}"
LIVE_MARKER = "isLiveBroadcast"
USER_AGENT = "Mozilla/5.0"

WEBHOOK_ATTEMPTS = 3
WEBHOOK_RETRY_WAIT = wait_exponential(multiplier=1, min=2, max=30)


async def is_live(
    channel: str,
    session: Optional[aiohttp.ClientSession] = None,
    url_template: str = TWITCH_URL,
) -> bool:
    """Check if a Twitch channel is currently live.

    Fetches the public channel page and looks for the live broadcast marker.
    Anything short of positively finding the marker (network error, timeout,
    unexpected status) counts as offline.

    Args:
        channel: The Twitch channel login name
        session: Optional session to reuse, a new one is opened otherwise
        url_template: Page URL with a ``{channel}`` placeholder

    Returns:
        bool: True if the live marker was found, False otherwise
    """
    url = url_template.format(channel=channel)
    timeout = aiohttp.ClientTimeout(total=PROBE_TIMEOUT)
    headers = {"User-Agent": USER_AGENT}

    try:
        if session is None:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as own:
                return await _page_has_marker(own, url)
        return await _page_has_marker(session, url, timeout=timeout, headers=headers)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"Liveness check failed for {channel}: {e!r}")
        return False


async def _page_has_marker(session: aiohttp.ClientSession, url: str, **kwargs) -> bool:
    async with session.get(url, **kwargs) as response:
        if response.status != 200:
            logger.debug(f"GET {url} returned {response.status}")
            return False
        body = await response.text(errors="replace")
    return LIVE_MARKER in body


async def send_discord_notification(channel_name: str, output_path: str):
    """Send a Discord webhook notification when a recording starts.

    Connection errors and non-2xx responses are retried a few times and then
    only logged.

    Args:
        channel_name: The channel name that is being recorded
        output_path: The capture file being written
    """
    if not DISCORD_WEBHOOK_URL:
        logger.debug("Discord webhook URL not set, skipping webhook notification.")
        return

    now_str = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    embed = {
        "title": f"🟣 {channel_name}",
        "description": f"Recording to {output_path}",
        "fields": [
            {"name": "Platform", "value": "Twitch", "inline": True},
            {"name": "Date", "value": now_str, "inline": True},
        ],
        "timestamp": dt.datetime.now().isoformat(),
    }
    payload = {"embeds": [embed]}

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(WEBHOOK_ATTEMPTS),
            wait=WEBHOOK_RETRY_WAIT,
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                async with aiohttp.ClientSession() as session:
                    async with session.post(DISCORD_WEBHOOK_URL, json=payload) as response:
                        if not 200 <= response.status < 300:
                            logger.warning(
                                f"Discord webhook for {channel_name} returned {response.status}: {await response.text(errors='replace')}"
                            )
                        response.raise_for_status()
                        logger.debug(f"Discord notification sent for {channel_name}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Error sending Discord notification for {channel_name}: {e}")
