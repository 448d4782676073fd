from __future__ import annotations

from dataclasses import replace
from typing import Any

from combo_router.executors.base import HttpExecutor, OutboundRequest
from combo_router.formats import responses as responses_format
from combo_router.models import Account, CanonicalRequest
from combo_router.tokens import TokenMetadataParser


def chatgpt_account_id(account: Account) -> str | None:
    configured = account.extras.get("chatgpt_account_id")
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    return TokenMetadataParser.extract_chatgpt_account_id(account.access_token)


class CodexExecutor(HttpExecutor):
    provider = "codex"
    target_format = responses_format.FORMAT_KEY
    default_base_url = "https://chatgpt.com/backend-api"
    token_url = "https://auth.openai.com/oauth/token"

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        # The Codex backend only answers in streaming mode.
        body = responses_format.request_from_canonical(replace(request, model=model, stream=True))
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "OpenAI-Beta": "responses=experimental",
            "originator": str(account.extras.get("originator") or "pi"),
        }
        token = account.bearer_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        account_id = chatgpt_account_id(account)
        if account_id:
            headers["chatgpt-account-id"] = account_id
        return OutboundRequest(
            method="POST",
            url=f"{self.base_url(account)}/codex/responses",
            headers=headers,
            target_format=self.target_format,
            stream=True,
            json_body=body,
            account_id=account.id,
            provider=self.provider,
            model=model,
        )

    def extras_from_token(self, access_token: str) -> dict[str, Any]:
        account_id = TokenMetadataParser.extract_chatgpt_account_id(access_token)
        return {"chatgpt_account_id": account_id} if account_id else {}
