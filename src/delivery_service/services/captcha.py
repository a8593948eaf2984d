"""Captcha token verification against the provider siteverify APIs."""
from __future__ import annotations

import asyncio
from typing import Any, Mapping

import aiohttp
import structlog
from aiohttp import ClientSession, ClientTimeout

from delivery_service.core.exceptions import CaptchaVerificationError

logger = structlog.get_logger(__name__)

SITEVERIFY_URLS = {
    "turnstile": "https://challenges.cloudflare.com/turnstile/v0/siteverify",
    "hcaptcha": "https://api.hcaptcha.com/siteverify",
}


def required_provider(anti_spam: Mapping[str, Any] | None) -> str | None:
    provider = (anti_spam or {}).get("captcha")
    return provider if provider in SITEVERIFY_URLS else None


class CaptchaVerifier:
    def __init__(
        self,
        session: ClientSession,
        *,
        secrets: Mapping[str, str | None],
        timeout_seconds: float = 5.0,
    ):
        self._session = session
        self._secrets = dict(secrets)
        self._timeout = ClientTimeout(total=timeout_seconds)

    async def verify(
        self,
        anti_spam: Mapping[str, Any] | None,
        token: str | None,
        *,
        remote_ip: str | None = None,
    ) -> None:
        """Raise :class:`CaptchaVerificationError` unless the project's captcha passes."""
        provider = required_provider(anti_spam)
        if provider is None:
            return
        if not token:
            raise CaptchaVerificationError("Captcha token required")
        secret = self._secrets.get(provider)
        if not secret:
            # the project asks for a provider this deployment has no key for
            logger.warning("Captcha secret not configured", provider=provider)
            raise CaptchaVerificationError("Captcha verification unavailable")

        form = {"secret": secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            async with self._session.post(SITEVERIFY_URLS[provider], data=form, timeout=self._timeout) as resp:
                result = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Captcha provider unreachable", provider=provider, error=str(exc))
            raise CaptchaVerificationError("Captcha verification failed") from exc
        if not isinstance(result, dict) or not result.get("success"):
            raise CaptchaVerificationError("Captcha verification failed")
