from __future__ import annotations

from combo_router.executors.base import HttpExecutor, OutboundRequest
from combo_router.formats import claude as claude_format
from combo_router.models import Account, CanonicalRequest

ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA = "oauth-2025-04-20"


class MessagesExecutor(HttpExecutor):
    provider = "claude"
    target_format = claude_format.FORMAT_KEY
    default_base_url = "https://api.anthropic.com"
    token_url = "https://console.anthropic.com/v1/oauth/token"
    refresh_uses_json = True

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        body = claude_format.request_from_canonical(request.with_model(model))
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if request.stream else "application/json",
            "anthropic-version": str(account.extras.get("anthropic_version") or ANTHROPIC_VERSION),
        }
        if account.auth == "oauth":
            if account.access_token:
                headers["Authorization"] = f"Bearer {account.access_token}"
            beta = account.extras.get("anthropic_beta")
            headers["anthropic-beta"] = f"{OAUTH_BETA},{beta}" if beta else OAUTH_BETA
        elif account.api_key:
            headers["x-api-key"] = account.api_key
        return OutboundRequest(
            method="POST",
            url=f"{self.base_url(account)}/v1/messages",
            headers=headers,
            target_format=self.target_format,
            stream=request.stream,
            json_body=body,
            account_id=account.id,
            provider=self.provider,
            model=model,
        )
