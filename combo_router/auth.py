from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from combo_router.settings import Settings

LEGACY_API_KEY_SECRET = "endpoint-proxy-api-key-secret"


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but nothing can satisfy it."""


@dataclass(frozen=True, slots=True)
class ParsedApiKey:
    key_id: str
    machine_id: str | None
    signed: bool


def api_key_crc(machine_id: str, key_id: str, secret: str | None = None) -> str:
    effective = (secret or "").strip() or LEGACY_API_KEY_SECRET
    digest = hmac.new(effective.encode("utf-8"), (machine_id + key_id).encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()[:8]


def generate_api_key(machine_id: str, key_id: str, secret: str | None = None) -> str:
    return f"sk-{machine_id}-{key_id}-{api_key_crc(machine_id, key_id, secret)}"


def parse_api_key(api_key: str | None, secret: str | None = None) -> ParsedApiKey | None:
    """Parse ``sk-{machineId}-{keyId}-{crc8}`` or the older ``sk-{keyId}`` form."""
    if not api_key or not api_key.startswith("sk-"):
        return None
    parts = api_key.split("-")
    if len(parts) == 4:
        _, machine_id, key_id, crc = parts
        if not hmac.compare_digest(crc, api_key_crc(machine_id, key_id, secret)):
            return None
        return ParsedApiKey(key_id=key_id, machine_id=machine_id, signed=True)
    if len(parts) == 2:
        return ParsedApiKey(key_id=parts[1], machine_id=None, signed=False)
    return None


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


def _extract_client_key(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    # Anthropic and Gemini clients send their key in vendor headers.
    for header in ("x-api-key", "x-goog-api-key"):
        value = request.headers.get(header, "").strip()
        if value:
            return value
    return None


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = set(settings.ingress_api_keys_list)
        self.accept_signed = settings.accept_signed_api_keys
        self.secret = settings.api_key_secret

        if self.required and not self.api_keys and not self.accept_signed:
            raise AuthConfigurationError(
                "Ingress auth is required, but no API keys are configured and signed keys are disabled.",
            )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        client_key = _extract_client_key(request)
        if not client_key:
            return _unauthorized("Missing API key.")

        if client_key in self.api_keys:
            request.state.auth = AuthResult(method="api_key", principal="api-key-client")
            return None

        if self.accept_signed:
            parsed = parse_api_key(client_key, self.secret)
            if parsed is not None and parsed.signed:
                request.state.auth = AuthResult(method="signed_api_key", principal=parsed.key_id)
                return None

        return _unauthorized("Invalid API key.")


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
