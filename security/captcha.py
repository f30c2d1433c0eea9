"""
security/captcha.py -- Captcha verification strategies.

Modes (the server's effective captchaType decides; whatever the client
claims is ignored):
  disabled    -- always passes.
  local       -- the token is the JSON the login form posts,
                 {"type": "local", "timeDiff": <ms>}. Forms submitted faster
                 than captcha_min_solve_ms are treated as bots. A missing or
                 unparsable token passes: this mode is a speed bump, not a wall.
  google      -- reCAPTCHA v3 siteverify; success plus score >= min score.
  cloudflare  -- Turnstile siteverify; success.

External modes fail open (pass, with a warning) when the secret is not
configured or the provider cannot be reached, so a provider outage does not
lock every user out. A missing token always fails in those modes.

HTTP goes through one module-level requests.Session, as in the rest of the
service. Tests inject their own session object.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import requests

from core.config import Settings, get_settings

logger = logging.getLogger("gatehouse.captcha")

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"

# max_redirects=3 -- two known endpoints; anything longer is not them.
_session = requests.Session()
_session.max_redirects = 3


@dataclass(frozen=True)
class CaptchaResult:
    success: bool
    reason: str | None = None
    score: float | None = None


class CaptchaVerifier:
    def __init__(self, settings: Settings | None = None, session: requests.Session | None = None) -> None:
        self._settings = settings or get_settings()
        self._session = session or _session

    def verify(self, token: str | None, mode: str, remote_ip: str | None = None) -> CaptchaResult:
        if mode == "disabled":
            return CaptchaResult(success=True)
        if mode == "local":
            return self._verify_local(token)
        if mode == "google":
            return self._verify_remote(
                token,
                remote_ip,
                url=RECAPTCHA_VERIFY_URL,
                secret=self._settings.recaptcha_secret_key,
                min_score=self._settings.recaptcha_min_score,
            )
        if mode == "cloudflare":
            return self._verify_remote(
                token, remote_ip, url=TURNSTILE_VERIFY_URL, secret=self._settings.turnstile_secret_key
            )
        logger.error("Unknown captcha mode %r -- rejecting", mode)
        return CaptchaResult(success=False, reason="unknown captcha mode")

    def _verify_local(self, token: str | None) -> CaptchaResult:
        if not token:
            logger.warning("Local captcha: no token supplied, allowing")
            return CaptchaResult(success=True)
        try:
            data = json.loads(token)
        except ValueError:
            logger.warning("Local captcha: token is not JSON, allowing")
            return CaptchaResult(success=True)
        if not isinstance(data, dict) or data.get("type") != "local":
            return CaptchaResult(success=False, reason="invalid local captcha token")
        time_diff = data.get("timeDiff")
        if not isinstance(time_diff, (int, float)) or isinstance(time_diff, bool):
            return CaptchaResult(success=False, reason="invalid local captcha token")
        if time_diff < self._settings.captcha_min_solve_ms:
            return CaptchaResult(success=False, reason="form submitted too quickly")
        return CaptchaResult(success=True)

    def _verify_remote(
        self,
        token: str | None,
        remote_ip: str | None,
        *,
        url: str,
        secret: str,
        min_score: float | None = None,
    ) -> CaptchaResult:
        if not token:
            return CaptchaResult(success=False, reason="missing captcha token")
        if not secret:
            logger.warning("Captcha secret for %s is not configured, allowing", url)
            return CaptchaResult(success=True)
        payload = {"secret": secret, "response": token}
        if remote_ip:
            payload["remoteip"] = remote_ip
        try:
            resp = self._session.post(url, data=payload, timeout=10)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Captcha provider unreachable (%s), allowing: %s", url, e)
            return CaptchaResult(success=True)
        if not data.get("success"):
            return CaptchaResult(success=False, reason=",".join(data.get("error-codes", [])) or "rejected")
        score = data.get("score")
        if min_score is not None and score is not None and score < min_score:
            return CaptchaResult(success=False, reason="score too low", score=score)
        return CaptchaResult(success=True, score=score)
