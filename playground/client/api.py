# playground/client/api.py
"""Thin async wrapper over the HTTP API. Streaming calls yield decoded StreamEvents."""
from typing import Any, AsyncIterator, Optional

import httpx

from playground.errors import ApiError
from playground.sse import StreamEvent, iter_events


def _detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return r.text[:300]
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)[:300]


def _drop_none(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if v is not None}


class PlaygroundAPI:
    def __init__(self, base_url: str = "", client: Optional[httpx.AsyncClient] = None, timeout: float = 120.0,
                 token: Optional[str] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # ---------- plumbing ----------

    async def _json(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        r = await self._client.request(method, path, json=json)
        if r.status_code >= 400:
            raise ApiError(r.status_code, _detail(r))
        return r.json()

    async def _stream(self, path: str, json: dict) -> AsyncIterator[StreamEvent]:
        async with self._client.stream("POST", path, json=json, headers={"Accept": "text/event-stream"}) as r:
            if r.status_code >= 400:
                await r.aread()
                raise ApiError(r.status_code, _detail(r))
            async for event in iter_events(r.aiter_bytes()):
                yield event

    # ---------- auth ----------

    async def login(self, email: str, password: str) -> str:
        """Exchange credentials for a bearer token; later calls send it."""
        r = await self._client.post("/auth/bearer/login", data={"username": email, "password": password})
        if r.status_code >= 400:
            raise ApiError(r.status_code, _detail(r))
        token = r.json()["access_token"]
        self._client.headers["Authorization"] = f"Bearer {token}"
        return token

    # ---------- threads ----------

    async def create_thread(self, title: Optional[str] = None) -> dict:
        return await self._json("POST", "/api/threads", _drop_none({"title": title}))

    async def get_thread(self, thread_id: str) -> dict:
        return await self._json("GET", f"/api/threads/{thread_id}")

    async def get_messages(self, thread_id: str) -> list[dict]:
        return (await self._json("GET", f"/api/threads/{thread_id}/messages"))["messages"]

    def send_message(
        self,
        thread_id: str,
        content: str,
        *,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        mode: Optional[str] = None,
        current_html: Optional[str] = None,
        enhance_widget_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        return self._stream(
            f"/api/threads/{thread_id}/messages",
            _drop_none({
                "content": content,
                "model": model,
                "provider": provider,
                "mode": mode,
                "currentHTML": current_html,
                "enhanceWidgetId": enhance_widget_id,
            }),
        )

    # ---------- reports ----------

    async def get_report(self, report_id: str) -> dict:
        return await self._json("GET", f"/api/reports/{report_id}")

    async def get_usage(self, report_id: str) -> dict:
        return await self._json("GET", f"/api/reports/{report_id}/usage")

    async def suggestions(self, report_id: str, count: int = 5) -> list[str]:
        return (await self._json("POST", f"/api/reports/{report_id}/suggestions", {"count": count}))["suggestions"]

    # ---------- sections ----------

    def edit_section(
        self, report_id: str, section_id: str, content: str, *,
        model: Optional[str] = None, provider: Optional[str] = None, mode: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        return self._stream(
            f"/api/reports/{report_id}/sections/{section_id}/edit",
            _drop_none({"content": content, "model": model, "provider": provider, "mode": mode}),
        )

    def add_section(
        self, report_id: str, content: str, *, position: Optional[int] = None, type: Optional[str] = None,
        model: Optional[str] = None, provider: Optional[str] = None, mode: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        return self._stream(
            f"/api/reports/{report_id}/sections",
            _drop_none({
                "content": content, "position": position, "type": type,
                "model": model, "provider": provider, "mode": mode,
            }),
        )

    async def patch_section(self, report_id: str, section_id: str, html_content: str, title: Optional[str] = None) -> dict:
        return await self._json(
            "PATCH", f"/api/reports/{report_id}/sections/{section_id}",
            _drop_none({"htmlContent": html_content, "title": title}),
        )

    async def move_section(self, report_id: str, section_id: str, direction: str) -> dict:
        return await self._json("POST", f"/api/reports/{report_id}/sections/{section_id}/move", {"direction": direction})

    async def duplicate_section(self, report_id: str, section_id: str) -> dict:
        return await self._json("POST", f"/api/reports/{report_id}/sections/{section_id}/duplicate")

    async def delete_section(self, report_id: str, section_id: str) -> dict:
        return await self._json("DELETE", f"/api/reports/{report_id}/sections/{section_id}")

    async def restore_section(self, report_id: str, section_id: str, version: int) -> dict:
        return await self._json("POST", f"/api/reports/{report_id}/sections/{section_id}/restore", {"version": version})

    # ---------- generations ----------

    async def cancel(self, generation_id: str) -> bool:
        """False when the server already began finalizing (409)."""
        try:
            await self._json("POST", f"/api/generations/{generation_id}/cancel")
        except ApiError as e:
            if e.status_code == 409:
                return False
            raise
        return True
