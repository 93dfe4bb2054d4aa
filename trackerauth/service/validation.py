from __future__ import annotations

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor

from trackerauth.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+", re.IGNORECASE)
MAX_EMAIL_LENGTH = 254
DEFAULT_EMAIL_TIMEOUT_SECONDS = 0.25
MIN_PASSWORD_LENGTH = 8

# Regex matching runs off the event loop so a slow match can be abandoned.
_regex_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="email-regex")


def _match_email(email: str) -> bool:
    return EMAIL_PATTERN.fullmatch(email) is not None


async def is_valid_email(
    email: str, *, timeout: float = DEFAULT_EMAIL_TIMEOUT_SECONDS
) -> bool:
    """Check an address against ``local@domain.tld`` within ``timeout`` seconds.

    A check that runs out of time counts as invalid.
    """
    if not email or not isinstance(email, str):
        return False
    if len(email) > MAX_EMAIL_LENGTH:
        return False
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_regex_executor, _match_email, email),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("email_validation_timeout", length=len(email))
        return False


def is_valid_password(password: str) -> bool:
    return isinstance(password, str) and len(password) >= MIN_PASSWORD_LENGTH
