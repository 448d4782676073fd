from __future__ import annotations

from combo_router.executors.base import HttpExecutor, OutboundRequest
from combo_router.formats import openai as openai_format
from combo_router.models import Account, CanonicalRequest


class ChatCompletionsExecutor(HttpExecutor):
    """`openai` and `openai-compatible` accounts: bearer key, POST {base}/chat/completions."""

    provider = "openai"
    target_format = openai_format.FORMAT_KEY
    default_base_url = "https://api.openai.com/v1"
    token_url = "https://auth.openai.com/oauth/token"

    def __init__(self, provider: str = "openai") -> None:
        super().__init__(provider)
        if provider != "openai":
            # Compatible vendors must name their own endpoint and token URL.
            self.default_base_url = None
            self.token_url = None

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        body = openai_format.request_from_canonical(request.with_model(model))
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if request.stream else "application/json",
        }
        token = account.bearer_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        organization = account.extras.get("organization")
        if organization:
            headers["OpenAI-Organization"] = str(organization)
        project = account.extras.get("project")
        if project:
            headers["OpenAI-Project"] = str(project)
        return OutboundRequest(
            method="POST",
            url=f"{self.base_url(account)}/chat/completions",
            headers=headers,
            target_format=self.target_format,
            stream=request.stream,
            json_body=body,
            account_id=account.id,
            provider=self.provider,
            model=model,
        )
