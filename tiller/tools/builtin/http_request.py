# ==============================
# Tool: http_request
# ==============================
from __future__ import annotations

import asyncio
from typing import Any, Dict, Literal, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolErrorCode, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

MAX_BODY_CHARS = 50_000


class HttpRequestParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    url: str = Field(..., pattern=r"^https?://")
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = Field(default=None, description="Raw request body.")
    timeout: float = Field(default=30.0, gt=0, le=120)


class HttpRequestTool(BaseTool):
    name = "http_request"
    description = "Perform an HTTP request and return status, headers and (truncated) body."
    capabilities = frozenset({Capability.NETWORK})
    Params = HttpRequestParams

    def __init__(self, *, config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None) -> None:
        super().__init__(config=config)
        self.session = session or requests.Session()

    def requires_approval(self) -> bool:
        return True

    def describe_call(self, params: Dict[str, Any]) -> str:
        return f"{params.get('method', 'GET')} {params.get('url', '?')}"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = HttpRequestParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        try:
            resp = await asyncio.to_thread(
                self.session.request,
                p.method,
                p.url,
                headers=p.headers,
                params=p.query,
                data=p.body.encode("utf-8") if p.body is not None else None,
                timeout=p.timeout,
            )
        except requests.Timeout:
            return ToolResult.failure(
                code=ToolErrorCode.TIMEOUT,
                message=f"Request timed out after {p.timeout:g}s",
                meta=self.meta(),
                recoverable=True,
            )
        except requests.RequestException as exc:
            return self.failed(f"Request failed: {exc}")

        body = resp.text or ""
        truncated = len(body) > MAX_BODY_CHARS
        if truncated:
            body = body[:MAX_BODY_CHARS]
        return ToolResult.success(
            data={
                "output": f"HTTP {resp.status_code}\n{body}",
                "status": resp.status_code,
                "headers": dict(resp.headers),
                "body": body,
                "truncated": truncated,
            },
            meta=self.meta(),
        )


def build(session: Optional[requests.Session] = None) -> HttpRequestTool:
    return HttpRequestTool(session=session)
