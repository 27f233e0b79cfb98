"""
Curator reply provider.

Внешний webhook (n8n или аналог) получает текст/аудио отчёта и возвращает
{reply, transcript?, confidence?}. Вызов ограничен таймаутом; при любой
ошибке или пустом ответе используется встроенный шаблон.
"""
import logging
from dataclasses import dataclass, field

import requests

from earlyrise.config import get_settings

logger = logging.getLogger(__name__)

PROVIDER_WEBHOOK = "webhook"
PROVIDER_FALLBACK = "fallback"
PROVIDER_DISABLED = "disabled"

VOICE_FEEDBACK_DISABLED_REPLY = "Принял голосовое. (Сейчас фидбек по голосу отключён в настройках.)"


@dataclass
class CuratorReply:
    reply: str
    provider: str
    transcript: str | None = None
    confidence: float | None = None
    raw: dict = field(default_factory=dict)


def fallback_curator_reply(transcript: str | None) -> str:
    if not (transcript and transcript.strip()):
        return " ".join([
            "Принял твоё голосовое — спасибо, что отметил чек-ин.",
            "Даже сам факт фиксации — полезное действие и вклад в привычку.",
            "Если сейчас тяжело, это нормально: устойчивость строится не идеальными днями, а возвращением к ритму.",
            "Наша цель — 80% ранних подъёмов за всё время, без давления и без перфекционизма.",
        ])
    return " ".join([
        "Принял твой отчёт — спасибо, что проговорил, как прошло утро.",
        "Вижу полезные действия и внимание к процессу — это укрепляет привычку.",
        "Если было сложно, это ок: такие дни не отменяют прогресс, они часть пути.",
        "Двигаемся к 80% ранних подъёмов за всё время — спокойно и стабильно.",
    ])


class CuratorClient:
    def __init__(self, webhook_url: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.webhook_url = settings.CURATOR_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = settings.CURATOR_TIMEOUT_SECONDS if timeout is None else timeout

    def get_reply(
        self,
        mode: str,
        user: dict,
        challenge_id: int,
        text: str | None = None,
        audio: dict | None = None,
    ) -> CuratorReply:
        """
        mode: "voice" | "text". Никогда не бросает — при сбое отдаёт fallback.
        """
        if not self.webhook_url:
            return CuratorReply(
                reply=fallback_curator_reply(text),
                provider=PROVIDER_FALLBACK,
                transcript=text,
                raw={"skipped": True, "reason": "webhook_not_configured"},
            )

        payload: dict = {
            "event": f"earlyrise_{mode}_checkin",
            "mode": mode,
            "user": user,
            "challenge": {"id": challenge_id},
        }
        if text is not None:
            payload["text"] = text
        if audio is not None:
            payload["audio"] = audio

        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            body = resp.json() if resp.content else {}
        except (requests.RequestException, ValueError):
            logger.warning("Curator webhook failed (mode=%s)", mode, exc_info=True)
            return CuratorReply(
                reply=fallback_curator_reply(text),
                provider=PROVIDER_FALLBACK,
                transcript=text,
                raw={"error": "webhook_failed"},
            )

        if not resp.ok or not isinstance(body, dict):
            logger.warning("Curator webhook returned HTTP %s (mode=%s)", resp.status_code, mode)
            return CuratorReply(
                reply=fallback_curator_reply(text),
                provider=PROVIDER_FALLBACK,
                transcript=text,
                raw={"status": resp.status_code},
            )

        transcript = body.get("transcript") if isinstance(body.get("transcript"), str) else text
        confidence = body.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = None
        reply = body.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            reply = fallback_curator_reply(transcript)
        return CuratorReply(
            reply=reply,
            provider=PROVIDER_WEBHOOK,
            transcript=transcript,
            confidence=confidence,
            raw={"status": resp.status_code, "json": body},
        )
