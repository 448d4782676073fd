from __future__ import annotations

from urllib.parse import quote

from combo_router.executors.base import HttpExecutor, OutboundRequest
from combo_router.formats import gemini as gemini_format
from combo_router.models import Account, CanonicalRequest


class GenerateContentExecutor(HttpExecutor):
    provider = "gemini"
    target_format = gemini_format.FORMAT_KEY
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    token_url = "https://oauth2.googleapis.com/token"

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        upstream_model = model.removeprefix("models/")
        body = gemini_format.request_from_canonical(request.with_model(upstream_model))
        method = "streamGenerateContent" if request.stream else "generateContent"
        params: dict[str, str] = {}
        if request.stream:
            params["alt"] = "sse"
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if request.stream else "application/json",
        }
        if account.auth == "oauth":
            if account.access_token:
                headers["Authorization"] = f"Bearer {account.access_token}"
        elif account.api_key:
            params["key"] = account.api_key
        return OutboundRequest(
            method="POST",
            url=f"{self.base_url(account)}/models/{quote(upstream_model, safe='-._')}:{method}",
            headers=headers,
            target_format=self.target_format,
            stream=request.stream,
            json_body=body,
            params=params,
            account_id=account.id,
            provider=self.provider,
            model=model,
        )
