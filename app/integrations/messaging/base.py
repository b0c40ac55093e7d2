from __future__ import annotations

from dataclasses import dataclass


@dataclass
class MessageResult:
    ok: bool
    code: str = ""
    message: str = ""
    provider_ref: str = ""
    raw: dict | None = None


@dataclass
class PromptButton:
    id: str
    title: str


class MessagingProvider:
    name = "unknown"

    def send_text(self, *, to: str, body: str) -> MessageResult:
        raise NotImplementedError

    def send_document(self, *, to: str, url: str, caption: str = "", filename: str = "") -> MessageResult:
        raise NotImplementedError

    def send_interactive(self, *, to: str, body: str, buttons: list[PromptButton]) -> MessageResult:
        raise NotImplementedError
