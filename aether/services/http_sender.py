# aether/services/http_sender.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

try:
    import certifi
    _CERT_BUNDLE = certifi.where()
except Exception:
    _CERT_BUNDLE = None

from aether.automation.errors import ExecutionError


class HttpSender:
    """
    Реальная отправка http-действий через requests.
    Вызывается как http_send(descriptor): descriptor = {url, method, headers, body}.
    Блокирующий requests уносим в поток, чтобы не держать event loop.
    Ошибка → ExecutionError (попадёт в журнал фоновых задач).
    """

    def __init__(
        self,
        timeout: float = 10.0,
        insecure_tls: bool = False,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.insecure_tls = insecure_tls
        self.session = session or requests.Session()
        self.log = logging.getLogger("automation.http")

    async def __call__(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.send, request)

    def send(self, request: Dict[str, Any]) -> Dict[str, Any]:
        url = request.get("url")
        if not url:
            raise ExecutionError("HTTP action requires url")
        method = str(request.get("method") or "GET").upper()
        headers = dict(request.get("headers") or {})
        body = request.get("body")

        kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": self.timeout,
            # сначала certifi (если есть), иначе системный
            "verify": False if self.insecure_tls else (_CERT_BUNDLE or True),
        }
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = str(body)

        try:
            r = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise ExecutionError(f"HTTP {method} {url} failed: {exc}") from exc

        if r.status_code >= 400:
            raise ExecutionError(f"HTTP {method} {url} → {r.status_code}: {r.text[:500]}")

        self.log.debug("HTTP %s %s → %s", method, url, r.status_code)
        return {"status": r.status_code, "url": url, "method": method}
