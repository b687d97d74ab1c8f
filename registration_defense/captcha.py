from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


class CaptchaVerifier(Protocol):
    def verify(self, token: str, ip: str) -> bool: ...


class RecaptchaVerifier:
    """Verifies reCAPTCHA v2 and v3 tokens.

    v3 responses carry a score; a token only passes when the provider reports
    success and the score is above ``min_score``. Any transport or decoding
    failure counts as a failed verification.
    """

    def __init__(
        self,
        secret: str,
        min_score: float = 0.5,
        verify_url: str = RECAPTCHA_VERIFY_URL,
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret = secret
        self.min_score = min_score
        self.verify_url = verify_url
        self.client = httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    def verify(self, token: str, ip: str) -> bool:
        if not token:
            return False
        try:
            response = self.client.post(
                self.verify_url,
                data={"secret": self.secret, "response": token, "remoteip": ip},
            )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("CAPTCHA verification failed: %s", exc)
            return False

        success = bool(result.get("success"))
        if result.get("score") is not None:
            return success and float(result["score"]) > self.min_score
        return success

    def close(self) -> None:
        self.client.close()


class StaticCaptchaVerifier:
    """Accepts a fixed set of tokens; for local development and tests."""

    def __init__(self, valid_tokens=("pass",)):
        self.valid_tokens = set(valid_tokens)

    def verify(self, token: str, ip: str) -> bool:
        return token in self.valid_tokens
