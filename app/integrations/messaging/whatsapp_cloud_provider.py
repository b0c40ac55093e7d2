from __future__ import annotations

import requests

from app.integrations.messaging.base import MessageResult, MessagingProvider, PromptButton
from app.utils.env import env_str


GRAPH_BASE = "https://graph.facebook.com"


def _map_whatsapp_error(status: int, code: int | None, message: str) -> str:
    msg = (message or "").lower()
    if status in (401, 403) or code in (190, 10):
        return "WHATSAPP_AUTH_FAILED"
    if status == 429 or code in (4, 80007, 130429, 131048, 131056):
        return "WHATSAPP_RATE_LIMITED"
    if code in (131026, 131051) or "recipient" in msg or "phone" in msg:
        return "WHATSAPP_INVALID_RECIPIENT"
    if code == 131047 or "24 hour" in msg or "re-engagement" in msg:
        return "WHATSAPP_SESSION_EXPIRED"
    if status >= 500:
        return "WHATSAPP_PROVIDER_DOWN"
    return "WHATSAPP_REJECTED"


def _normalize_msisdn(to: str) -> str:
    digits = "".join(ch for ch in str(to or "") if ch.isdigit())
    if digits.startswith("0") and len(digits) == 11:
        digits = "234" + digits[1:]
    return digits


class WhatsAppCloudMessagingProvider(MessagingProvider):
    name = "whatsapp_cloud"

    def __init__(self, *, access_token: str, phone_number_id: str, api_version: str = "v19.0", timeout: int = 12):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.timeout = int(timeout)

    def _send(self, payload: dict) -> MessageResult:
        url = f"{GRAPH_BASE}/{self.api_version}/{self.phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        body = {"messaging_product": "whatsapp", "recipient_type": "individual"}
        body.update(payload)
        try:
            r = requests.post(url, headers=headers, json=body, timeout=self.timeout)
            try:
                data = r.json() if r.content else {}
            except ValueError:
                data = {}
            if 200 <= r.status_code < 300:
                messages = data.get("messages") if isinstance(data, dict) else None
                ref = ""
                if isinstance(messages, list) and messages:
                    ref = str((messages[0] or {}).get("id") or "")
                return MessageResult(ok=True, code="OK", message="sent", provider_ref=ref, raw=data if isinstance(data, dict) else {"payload": data})
            err = (data.get("error") or {}) if isinstance(data, dict) else {}
            detail = str(err.get("message") or "")
            try:
                err_code = int(err.get("code")) if err.get("code") is not None else None
            except (TypeError, ValueError):
                err_code = None
            return MessageResult(
                ok=False,
                code=_map_whatsapp_error(r.status_code, err_code, detail),
                message=(detail or f"http_{r.status_code}")[:200],
                raw=data if isinstance(data, dict) else {"payload": data},
            )
        except requests.Timeout:
            return MessageResult(ok=False, code="WHATSAPP_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return MessageResult(ok=False, code="WHATSAPP_PROVIDER_DOWN", message=str(e)[:200])

    def send_text(self, *, to: str, body: str) -> MessageResult:
        return self._send(
            {
                "to": _normalize_msisdn(to),
                "type": "text",
                "text": {"preview_url": False, "body": body[:4096]},
            }
        )

    def send_document(self, *, to: str, url: str, caption: str = "", filename: str = "") -> MessageResult:
        document = {"link": url}
        if caption:
            document["caption"] = caption[:1024]
        if filename:
            document["filename"] = filename[:240]
        return self._send({"to": _normalize_msisdn(to), "type": "document", "document": document})

    def send_interactive(self, *, to: str, body: str, buttons: list[PromptButton]) -> MessageResult:
        # Cloud API reply buttons: max 3, titles up to 20 chars.
        rows = [
            {"type": "reply", "reply": {"id": b.id[:256], "title": b.title[:20]}}
            for b in list(buttons)[:3]
        ]
        return self._send(
            {
                "to": _normalize_msisdn(to),
                "type": "interactive",
                "interactive": {
                    "type": "button",
                    "body": {"text": body[:1024]},
                    "action": {"buttons": rows},
                },
            }
        )


def whatsapp_health() -> dict:
    missing = []
    if not env_str("WHATSAPP_ACCESS_TOKEN"):
        missing.append("WHATSAPP_ACCESS_TOKEN")
    if not env_str("WHATSAPP_PHONE_NUMBER_ID"):
        missing.append("WHATSAPP_PHONE_NUMBER_ID")
    return {"missing": missing}
