from __future__ import annotations

from typing import Any, AsyncIterator
from uuid import uuid4

import httpx

from combo_router.cursor_protocol import cursor_checksum, iter_connect_frames
from combo_router.errors import ExecutionError
from combo_router.executors.base import HttpExecutor, OutboundRequest, ResponseShape
from combo_router.formats import cursor as cursor_format
from combo_router.models import Account, CanonicalRequest

CHAT_PATH = "/aiserver.v1.ChatService/StreamUnifiedChatWithTools"
CLIENT_VERSION = "1.1.3"


class ConnectRpcExecutor(HttpExecutor):
    provider = "cursor"
    target_format = cursor_format.FORMAT_KEY
    default_base_url = "https://api2.cursor.sh"

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        machine_id = account.extras.get("machine_id")
        if not isinstance(machine_id, str) or not machine_id.strip():
            raise ExecutionError(
                f"Cursor account '{account.id}' has no machine_id configured.",
                status=400,
                retryable=False,
                provider=self.provider,
                account_id=account.id,
            )
        mac_machine_id = account.extras.get("mac_machine_id")
        token = account.bearer_token or ""
        # Tokens copied from the IDE store carry a "userId::" prefix.
        if "::" in token:
            token = token.split("::", 1)[1]
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/connect+proto",
            "Connect-Protocol-Version": "1",
            "Connect-Accept-Encoding": "gzip",
            "x-cursor-checksum": cursor_checksum(
                machine_id.strip(),
                mac_machine_id if isinstance(mac_machine_id, str) else None,
            ),
            "x-cursor-client-version": str(account.extras.get("client_version") or CLIENT_VERSION),
            "x-cursor-timezone": str(account.extras.get("timezone") or "UTC"),
            "x-ghost-mode": "true",
            "x-request-id": str(uuid4()),
        }
        return OutboundRequest(
            method="POST",
            url=f"{self.base_url(account)}{CHAT_PATH}",
            headers=headers,
            target_format=self.target_format,
            stream=True,
            content=cursor_format.request_from_canonical(request.with_model(model)),
            account_id=account.id,
            provider=self.provider,
            model=model,
        )

    def classify_response_shape(self, response: httpx.Response) -> ResponseShape:
        return ResponseShape.STREAM

    def iter_events(self, response: httpx.Response) -> AsyncIterator[Any]:
        return iter_connect_frames(response.aiter_bytes())
