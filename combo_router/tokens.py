from __future__ import annotations

import time
from typing import Any

import jwt


class TokenMetadataParser:
    CHATGPT_ACCOUNT_CLAIM_PATH = "https://api.openai.com/auth"

    @staticmethod
    def unverified_claims(token: str | None) -> dict[str, Any]:
        if not token or token.count(".") != 2:
            return {}
        try:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
                algorithms=["HS256", "RS256", "ES256", "none"],
            )
        except jwt.PyJWTError:
            return {}
        return claims if isinstance(claims, dict) else {}

    @staticmethod
    def is_token_expiring(expires_at: float | None, skew_seconds: float = 60) -> bool:
        if expires_at is None:
            return False
        return expires_at <= time.time() + skew_seconds

    @staticmethod
    def extract_expires_at(token_response: dict[str, Any]) -> int | None:
        now = int(time.time())

        raw_expires_in = token_response.get("expires_in")
        if raw_expires_in is not None:
            try:
                return now + int(float(raw_expires_in))
            except (TypeError, ValueError):
                pass

        raw_expires_at = token_response.get("expires_at")
        if raw_expires_at is not None:
            try:
                value = float(raw_expires_at)
            except (TypeError, ValueError):
                return None
            # Some vendors report milliseconds.
            if value > 10_000_000_000:
                value /= 1000.0
            return int(value)

        return None

    @classmethod
    def token_expiry(cls, token: str | None) -> int | None:
        exp = cls.unverified_claims(token).get("exp")
        if isinstance(exp, (int, float)) and exp > 0:
            return int(exp)
        return None

    @classmethod
    def extract_chatgpt_account_id(
        cls,
        token: str | None,
        *,
        claim_path: str | None = None,
    ) -> str | None:
        claim = cls.unverified_claims(token).get(
            claim_path or cls.CHATGPT_ACCOUNT_CLAIM_PATH
        )
        if isinstance(claim, dict):
            account_id = claim.get("chatgpt_account_id")
            if isinstance(account_id, str) and account_id.strip():
                return account_id.strip()
        return None
