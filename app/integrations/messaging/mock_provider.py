from __future__ import annotations

import os
import uuid

from app.integrations.messaging.base import MessageResult, MessagingProvider, PromptButton


class MockMessagingProvider(MessagingProvider):
    """Records every message in a class-level outbox instead of sending it."""

    name = "mock"

    outbox: list[dict] = []

    @classmethod
    def reset(cls) -> None:
        cls.outbox = []

    @classmethod
    def sent_to(cls, recipient: str) -> list[dict]:
        return [m for m in cls.outbox if m.get("to") == recipient]

    def _force_failure(self, text: str) -> bool:
        msg = (text or "").lower()
        return "[fail]" in msg or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def _record(self, kind: str, to: str, text: str, **extra) -> MessageResult:
        if self._force_failure(text):
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="mock forced failure")
        ref = f"mock_{uuid.uuid4().hex[:12]}"
        entry = {"kind": kind, "to": to, "body": text, "provider_ref": ref}
        entry.update(extra)
        type(self).outbox.append(entry)
        return MessageResult(ok=True, code="OK", message="mock_sent", provider_ref=ref, raw=entry)

    def send_text(self, *, to: str, body: str) -> MessageResult:
        return self._record("text", to, body)

    def send_document(self, *, to: str, url: str, caption: str = "", filename: str = "") -> MessageResult:
        return self._record("document", to, caption, url=url, filename=filename)

    def send_interactive(self, *, to: str, body: str, buttons: list[PromptButton]) -> MessageResult:
        return self._record(
            "interactive",
            to,
            body,
            buttons=[{"id": b.id, "title": b.title} for b in buttons],
        )
