"""Customer token generation."""

import secrets
import time
from typing import Optional

from app.config import settings


def generate_token(prefix: Optional[str] = None) -> str:
    """Generate a customer token in format VLT-XXXXXXXXX.

    Last 6 digits of the millisecond clock plus 3 random digits. Best-effort
    only: the vehicle store rejects collisions and the caller retries.

    Returns:
        str: Token like 'VLT-482913057'
    """
    prefix = prefix or settings.TOKEN_PREFIX
    timestamp = str(int(time.time() * 1000))[-6:]
    random_part = f"{secrets.randbelow(1000):03d}"
    return f"{prefix}-{timestamp}{random_part}"
