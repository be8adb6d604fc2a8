import asyncio
import logging
import re
import time
import uuid
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:[^,]*,", re.IGNORECASE)


class PromptOptimizer:
    """
    Uses Grok (xAI chat completions) to rewrite an amateur image-edit prompt
    into a precise one. Falls back to the cleaned original prompt whenever the
    model is unavailable.
    """

    SYSTEM_PROMPT = """
You are an expert at writing prompts for instruction-based image editing models.

Rewrite the user's prompt into one precise editing instruction:

- Be specific and detailed.
- Use clear action verbs: "change", "add", "remove", "modify", "replace".
- Describe colors, materials and textures exactly.
- State positions clearly: "on the left side", "in the background", etc.
- Prefer realistic edits over complicated effects.
- Keep it under 50 words.

Examples:
User: "make the shirt blue"
Optimized: "Change the shirt color to deep navy blue with subtle fabric texture"

User: "remove background"
Optimized: "Remove the entire background and replace it with a clean white background"

Answer ONLY with the optimized prompt, no explanations.
""".strip()

    def __init__(
        self,
        api_url: str = "https://api.x.ai/v1/chat/completions",
        model: str = "grok-3",
        api_key: Optional[str] = None,
        request_timeout: float = 20.0,
        max_words: int = 80,
    ):
        self.api_url = api_url
        self.model = model
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.max_words = max_words

    async def optimize(self, prompt: str) -> str:
        prompt = self._fallback_rule(prompt)
        if not prompt or not self.api_key:
            return prompt

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": 600,
            "temperature": 0.7,
            "stream": False,
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.api_url, headers=headers, json=payload) as resp:
                    if resp.status != 200:
                        body_text = await resp.text()
                        logger.warning("Grok HTTP %s from %s: %s", resp.status, self.api_url, body_text[:300])
                        return prompt
                    body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Error calling Grok, keeping original prompt: %s", e)
            return prompt

        text = self._extract_text(body)
        cleaned = self._clean_response(text)
        if not cleaned or len(cleaned.split()) > self.max_words:
            logger.info("Grok answer unusable, keeping original prompt: %r", text[:200])
            return prompt
        return cleaned

    @staticmethod
    def _extract_text(body) -> str:
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return ""

    @staticmethod
    def _clean_response(text: str) -> str:
        """
        Strip the wrappers chat models like to add: "Optimized:" labels,
        surrounding quotes and extra lines.
        """
        text = (text or "").strip()
        if not text:
            return ""
        text = text.splitlines()[0].strip()
        text = re.sub(r"^(optimi[sz]ed( prompt)?|prompt)\s*:\s*", "", text, flags=re.IGNORECASE)
        return text.strip().strip('"\'“”').strip()

    @staticmethod
    def _fallback_rule(prompt: str) -> str:
        """Collapse whitespace; this is what gets sent when the model can't help."""
        return " ".join((prompt or "").split())


def strip_data_uri(value: str) -> str:
    """'data:image/png;base64,AAAA' -> 'AAAA'; plain base64 is returned unchanged."""
    return _DATA_URI_PREFIX.sub("", value.strip(), count=1)


def gen_request_id() -> str:
    return str(uuid.uuid4())


def get_timestamp_ms() -> int:
    return int(time.time() * 1000)
