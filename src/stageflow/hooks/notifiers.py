"""Notification sinks used by ``notify`` post actions: ``send(severity, text)``."""

from __future__ import annotations

import asyncio
from typing import Any, Final, Protocol

import requests
import structlog

from stageflow.domain.errors import NotificationError
from stageflow.domain.models import Severity

_LOG_METHODS: Final[dict[Severity, str]] = {
    Severity.INFO: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
}


class Notifier(Protocol):
    async def send(self, severity: Severity, text: str) -> None: ...


class LogNotifier:
    """Writes notifications to the run log; always configured."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def send(self, severity: Severity, text: str) -> None:
        log = getattr(self._logger, _LOG_METHODS[severity])
        log("notification", severity=severity.value, text=text)


class WebhookNotifier:
    """POSTs ``{"severity", "text"}`` as JSON to a chat-style incoming webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._session = session

    async def send(self, severity: Severity, text: str) -> None:
        await asyncio.to_thread(self._post, severity, text)

    def _post(self, severity: Severity, text: str) -> None:
        poster = self._session.post if self._session is not None else requests.post
        try:
            response = poster(
                self._url,
                json={"severity": severity.value, "text": text},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            # The URL usually embeds a token; keep it out of the message.
            raise NotificationError(f"webhook delivery failed: {type(exc).__name__}") from None


__all__ = ["LogNotifier", "Notifier", "WebhookNotifier"]
