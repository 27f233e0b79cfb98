"""Tests for the curator webhook client and its fallback replies"""
from unittest.mock import MagicMock, patch

import requests

from earlyrise.application.curator import (
    PROVIDER_FALLBACK,
    PROVIDER_WEBHOOK,
    CuratorClient,
    fallback_curator_reply,
)

USER = {"telegram_user_id": 1, "username": "riser"}


def _response(status=200, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    return resp


class TestCuratorClient:
    def test_no_webhook_uses_fallback(self):
        with patch("earlyrise.application.curator.requests.post") as post:
            reply = CuratorClient(webhook_url="").get_reply("text", USER, 1, text="Встал в 6, сделал зарядку")
        post.assert_not_called()
        assert reply.provider == PROVIDER_FALLBACK
        assert reply.reply == fallback_curator_reply("Встал в 6, сделал зарядку")
        assert reply.raw["reason"] == "webhook_not_configured"

    def test_webhook_reply_parsed(self):
        body = {"reply": "Отличное утро!", "transcript": "встал рано", "confidence": 0.92}
        with patch("earlyrise.application.curator.requests.post", return_value=_response(200, body)) as post:
            reply = CuratorClient(webhook_url="http://curator.local/hook", timeout=3).get_reply(
                "voice", USER, 7, audio={"base64": "AAA", "mime": "audio/ogg"},
            )
        payload = post.call_args.kwargs["json"]
        assert payload["event"] == "earlyrise_voice_checkin"
        assert payload["challenge"] == {"id": 7}
        assert payload["audio"]["mime"] == "audio/ogg"
        assert post.call_args.kwargs["timeout"] == 3
        assert reply.provider == PROVIDER_WEBHOOK
        assert reply.reply == "Отличное утро!"
        assert reply.transcript == "встал рано"
        assert reply.confidence == 0.92

    def test_empty_reply_falls_back_to_template(self):
        body = {"reply": "  ", "transcript": "встал рано", "confidence": True}
        with patch("earlyrise.application.curator.requests.post", return_value=_response(200, body)):
            reply = CuratorClient(webhook_url="http://curator.local/hook").get_reply("voice", USER, 1)
        assert reply.provider == PROVIDER_WEBHOOK
        assert reply.reply == fallback_curator_reply("встал рано")
        assert reply.confidence is None

    def test_http_error_falls_back(self):
        with patch("earlyrise.application.curator.requests.post", return_value=_response(500, {"error": "x"})):
            reply = CuratorClient(webhook_url="http://curator.local/hook").get_reply("text", USER, 1, text="ok")
        assert reply.provider == PROVIDER_FALLBACK
        assert reply.raw == {"status": 500}
        assert reply.transcript == "ok"

    def test_timeout_falls_back(self):
        with patch(
            "earlyrise.application.curator.requests.post",
            side_effect=requests.Timeout("read timed out"),
        ):
            reply = CuratorClient(webhook_url="http://curator.local/hook").get_reply("voice", USER, 1)
        assert reply.provider == PROVIDER_FALLBACK
        assert reply.reply == fallback_curator_reply(None)

    def test_invalid_json_falls_back(self):
        resp = _response(200, {})
        resp.json.side_effect = ValueError("not json")
        with patch("earlyrise.application.curator.requests.post", return_value=resp):
            reply = CuratorClient(webhook_url="http://curator.local/hook").get_reply("text", USER, 1, text="t")
        assert reply.provider == PROVIDER_FALLBACK


class TestFallbackReply:
    def test_empty_transcript_template(self):
        assert fallback_curator_reply("   ").startswith("Принял твоё голосовое")

    def test_transcript_template(self):
        text = fallback_curator_reply("встал")
        assert text.startswith("Принял твой отчёт")
        assert "80%" in text
