"""
LLM text generation for story outlines, scene scripts and shot prompts.

Talks to an OpenAI-style chat completions endpoint (Poe by default).

Usage:
    from reelforge.llm import llm_client
    outline = await llm_client.generate_story_outline("A lighthouse keeper finds a message in a bottle")
"""
import re
import asyncio
import logging
from typing import Dict, List, Optional

import requests

from reelforge import config
from reelforge.errors import BackendError, NonRetryableBackendError
from reelforge.schemas import StoryOutline

logger = logging.getLogger(__name__)

STORY_SYSTEM_PROMPT = (
    "You are a professional storytelling assistant. "
    "Generate engaging story outlines for short video content."
)

SCRIPT_SYSTEM_PROMPT = (
    "You are a professional scriptwriter. "
    "Generate detailed scene scripts for video production."
)

PROMPT_SYSTEM_PROMPT = (
    "You are an expert at writing prompts for AI image generation models like Stable Diffusion. "
    "Convert scene descriptions into optimized English prompts."
)

EDITOR_SYSTEM_PROMPT = (
    "You are a professional editor. "
    "Compress text while maintaining its core message and natural flow."
)

_HOOK = re.compile(r"Hook:\s*(.+?)(?=\nMiddle:|$)", re.DOTALL)
_MIDDLE = re.compile(r"Middle:\s*(.+?)(?=\nEnding:|$)", re.DOTALL)
_ENDING = re.compile(r"Ending:\s*(.+?)$", re.DOTALL)


def parse_story_outline(text: str) -> StoryOutline:
    """Parses the Hook:/Middle:/Ending: layout the outline prompt asks for."""
    def grab(pattern):
        match = pattern.search(text)
        return match.group(1).strip() if match else ""

    return StoryOutline(hook=grab(_HOOK), middle_structure=grab(_MIDDLE), ending=grab(_ENDING))


class LLMClient:
    def __init__(self, api_url: str = None, api_key: str = None, model: str = None,
                 timeout: int = None, max_retries: int = None, retry_delay: float = None):
        self.api_url = api_url or config.LLM_API_URL
        self.api_key = api_key if api_key is not None else config.LLM_API_KEY
        self.model = model or config.LLM_MODEL
        self.timeout = timeout or config.LLM_TIMEOUT
        self.max_retries = max_retries or config.LLM_MAX_RETRIES
        self.retry_delay = config.LLM_RETRY_DELAY if retry_delay is None else retry_delay

    def _post(self, payload: dict) -> requests.Response:
        return requests.post(
            self.api_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7, max_tokens: int = 2000) -> str:
        """
        One chat completion. Auth and bad-request rejections raise immediately;
        network errors and 5xx responses are retried with exponential backoff.
        """
        if not self.api_key:
            raise NonRetryableBackendError("LLM_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await loop.run_in_executor(None, lambda: self._post(payload))
            except requests.RequestException as e:
                last_error = BackendError(f"LLM request failed: {e}")
            else:
                if response.status_code in (401, 403):
                    raise NonRetryableBackendError("Invalid LLM API key", status_code=response.status_code)
                if response.status_code == 400:
                    raise NonRetryableBackendError(f"Bad request to LLM API: {response.text[:300]}", status_code=400)
                if 200 <= response.status_code < 300:
                    choices = (response.json() or {}).get("choices") or []
                    if choices:
                        return choices[0]["message"]["content"]
                    last_error = BackendError("No response from LLM API")
                else:
                    last_error = BackendError(f"LLM API error: {response.status_code}", status_code=response.status_code)

            if attempt < self.max_retries:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"LLM call failed (attempt {attempt}/{self.max_retries}): {last_error}, retrying in {delay:.1f}s")
                await self._sleep(delay)

        raise BackendError(f"LLM API call failed after {self.max_retries} attempts: {last_error.message}")

    async def generate_story_outline(self, project_description: str) -> StoryOutline:
        messages = [
            {"role": "system", "content": STORY_SYSTEM_PROMPT},
            {"role": "user", "content": (
                "Based on the following project description, generate a story outline with three parts:\n"
                "1. Hook: An engaging opening that captures attention\n"
                "2. Middle Structure: The main content and development\n"
                "3. Ending: A satisfying conclusion\n\n"
                f"Project Description: {project_description}\n\n"
                "Please provide the outline in the following format:\n"
                "Hook: [your hook here]\n"
                "Middle: [your middle structure here]\n"
                "Ending: [your ending here]"
            )},
        ]
        response = await self.chat(messages, temperature=0.8, max_tokens=1500)
        return parse_story_outline(response)

    async def generate_scene_script(self, scene_description: str, outline: StoryOutline) -> str:
        messages = [
            {"role": "system", "content": SCRIPT_SYSTEM_PROMPT},
            {"role": "user", "content": (
                "Based on the following story outline and scene description, "
                "generate a detailed voiceover script for this scene.\n\n"
                "Story Outline:\n"
                f"Hook: {outline.hook}\n"
                f"Middle: {outline.middle_structure}\n"
                f"Ending: {outline.ending}\n\n"
                f"Scene Description: {scene_description}\n\n"
                "Write a natural, engaging voiceover script that fits this scene and the overall story. "
                "Keep it concise and suitable for video narration."
            )},
        ]
        return (await self.chat(messages, temperature=0.7, max_tokens=1000)).strip()

    async def optimize_prompt(self, environment: str = None, subject: str = None, action: str = None,
                              camera_movement: str = None, lighting: str = None, style: str = None) -> str:
        """Turns shot description fields into a comma-separated image generation prompt."""
        parts = [p for p in (environment, subject, action, camera_movement, lighting, style) if p]
        messages = [
            {"role": "system", "content": PROMPT_SYSTEM_PROMPT},
            {"role": "user", "content": (
                "Convert the following scene description into an optimized English prompt for AI image generation. "
                "Focus on visual details, composition, lighting, and style. Use comma-separated keywords and phrases.\n\n"
                f"Scene Description: {', '.join(parts)}\n\n"
                "Provide only the optimized prompt without any explanation."
            )},
        ]
        return (await self.chat(messages, temperature=0.5, max_tokens=500)).strip()

    async def compress_voiceover(self, text: str, target_duration: float) -> str:
        """Shortens narration to fit target_duration seconds. Text that already fits is returned as-is."""
        target_words = int(target_duration * config.NARRATION_WORDS_PER_SECOND)
        current_words = len(text.split())
        if current_words <= target_words:
            return text

        messages = [
            {"role": "system", "content": EDITOR_SYSTEM_PROMPT},
            {"role": "user", "content": (
                f"Compress the following voiceover text to approximately {target_words} words "
                f"(target duration: {target_duration} seconds at ~{config.NARRATION_WORDS_PER_SECOND} words per second). "
                "Maintain the key message and natural narration flow.\n\n"
                f"Original text ({current_words} words):\n{text}\n\n"
                "Provide only the compressed text without any explanation."
            )},
        ]
        return (await self.chat(messages, temperature=0.3, max_tokens=1000)).strip()


# Global Instance
llm_client = LLMClient()
