"""
HTTPS reachability check for the proxy after a certificate change.

Completes a TLS handshake against the configured URL with retries so
the operator learns whether the freshly injected certificate is served.
Certificate trust is not verified: self-signed bundles are expected.
"""

import asyncio
import logging
from typing import Optional

import httpx

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class HealthCheckError(Exception):
    """Health check failed after all retries."""

    def __init__(self, message: str, attempts: int, last_error: Optional[str] = None):
        self.message = message
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class HealthChecker:
    """Verify the proxy answers over HTTPS."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    async def verify_https(
        self,
        url: Optional[str] = None,
        retries: Optional[int] = None,
        interval: Optional[float] = None,
        timeout: float = 5.0,
    ) -> bool:
        """
        Verify the proxy completes a TLS handshake and answers.

        Any response below 500 counts as healthy; the point is that the
        handshake with the new certificate succeeded.

        Raises:
            HealthCheckError: If all retries fail
        """
        url = url or self.settings.proxy_https_probe_url
        retries = retries if retries is not None else self.settings.proxy_https_probe_retries
        interval = interval if interval is not None else self.settings.proxy_https_probe_interval

        last_error = None

        for attempt in range(1, retries + 1):
            try:
                async with httpx.AsyncClient(verify=False) as client:
                    response = await client.get(url, timeout=timeout)

                if response.status_code < 500:
                    logger.info(f"HTTPS check passed on attempt {attempt}/{retries}")
                    return True

                last_error = f"HTTP {response.status_code}"
                logger.warning(f"HTTPS check attempt {attempt}/{retries} returned status {response.status_code}")

            except httpx.ConnectError as e:
                last_error = f"Connection error: {e}"
                logger.warning(f"HTTPS check attempt {attempt}/{retries} connection failed: {e}")

            except httpx.TimeoutException:
                last_error = "Timeout"
                logger.warning(f"HTTPS check attempt {attempt}/{retries} timed out")

            except httpx.RequestError as e:
                last_error = str(e)
                logger.warning(f"HTTPS check attempt {attempt}/{retries} failed: {e}")

            if attempt < retries:
                await asyncio.sleep(interval)

        raise HealthCheckError(
            f"HTTPS check of {url} failed after {retries} attempts", attempts=retries, last_error=last_error
        )
