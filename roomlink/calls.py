"""Notify the external call tracker when a session ends."""

import asyncio
import logging

import requests

logger = logging.getLogger(__name__)

CALL_API_TIMEOUT = 10  # seconds


def end_call(endpoint: str) -> bool:
    """Mark a call as ended.

    Args:
        endpoint: Call tracker URL for the call record.

    Returns:
        True if the tracker accepted the update.
    """
    try:
        response = requests.patch(
            endpoint, json={"status": "ended"}, timeout=CALL_API_TIMEOUT
        )
    except requests.RequestException as e:
        logger.error(f"Failed to end call: {e}")
        return False

    if response.status_code >= 400:
        logger.error(f"Failed to end call: HTTP {response.status_code}")
        return False

    logger.info(f"Call ended: {endpoint}")
    return True


async def end_call_async(endpoint: str) -> bool:
    """``end_call`` without blocking the event loop."""
    return await asyncio.to_thread(end_call, endpoint)
