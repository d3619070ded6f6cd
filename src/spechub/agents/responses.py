from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import OpenAI

from spechub.agents.base import AccessMode, AgentDispatchError, AgentDispatcher, AgentRequest
from spechub.agents.cli import with_external_spec_hint

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-codex"
SYSTEM_PROMPT = "You are a coding agent operating on a spec-driven repository."


class ResponsesAgentDispatcher(AgentDispatcher):
    """Sessionless dispatcher backed by the OpenAI Responses API.

    It never returns thread ids, so callers always fall back to
    ``send_message_sync``.
    """

    def __init__(self, *, model: str = DEFAULT_MODEL, client: Any | None = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def start_thread(self, workspace_id: str) -> dict[str, Any]:
        return {}

    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        access_mode: AccessMode = "full-access",
        custom_spec_root: str | None = None,
    ) -> dict[str, Any]:
        return {}

    async def send_message(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        return {}

    async def send_message_sync(self, workspace_id: str, request: AgentRequest) -> dict[str, Any]:
        prompt = with_external_spec_hint(request.text, request.custom_spec_root)

        def _request() -> Any:
            return self.client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise AgentDispatchError(
                f"Responses API execution failed: {exc}", engine=request.engine
            ) from exc
        logger.debug("Responses API turn finished for %s", workspace_id)
        return {"text": self._extract_text(payload).strip(), "engine": request.engine}
