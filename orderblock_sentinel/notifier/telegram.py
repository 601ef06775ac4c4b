from __future__ import annotations

import asyncio

import aiohttp
from typing import List, Optional
import logging

log = logging.getLogger("telegram")

_PARSE_MODES = {"HTML": "HTML", "MARKDOWNV2": "MarkdownV2"}


class TelegramNotifier:
    def __init__(
        self,
        token: str,
        chat_ids: List[str],
        *,
        disable_web_page_preview: bool = True,
        enabled: bool = True,
    ):
        self.token = (token or "").strip()
        self.chat_ids = [str(x).strip() for x in (chat_ids or []) if str(x).strip()]
        self.disable_web_page_preview = disable_web_page_preview
        self._enabled = enabled

    def enabled(self) -> bool:
        return self._enabled and bool(self.token) and bool(self.chat_ids)

    async def send(self, text: str, *, parse_mode: Optional[str] = None) -> int:
        """Send `text` to every chat. Returns the number of chats that accepted it."""
        if not self.enabled():
            return 0
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        sent = 0
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as sess:
            for chat_id in self.chat_ids:
                payload = {
                    "chat_id": chat_id,
                    "text": text,
                    "disable_web_page_preview": self.disable_web_page_preview,
                }
                if parse_mode:
                    payload["parse_mode"] = _PARSE_MODES.get(parse_mode.upper(), parse_mode)
                try:
                    async with sess.post(url, json=payload) as resp:
                        if resp.status != 200:
                            body = await resp.text()
                            log.warning("telegram_send_failed chat_id=%s status=%s body=%s", chat_id, resp.status, body[:2000])
                            continue
                    sent += 1
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    log.exception("telegram_send_exception chat_id=%s err=%s", chat_id, e)
        return sent
