"""
AI summaries for suggestion descriptions.

Long descriptions are summarised through the Gemini generateContent REST API.
A failed call never fails a submission: summarize_or_truncate falls back to
the first SUMMARY_LIMIT characters.
"""

import logging
from typing import Optional

import httpx

from errors import SummarizerError

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 100
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

PROMPT = """Please act as a professional summarizer.
Read the following text and provide a concise, engaging summary.
Ensure the summary is a tidy paragraph in plain text. Remove all emojis, and keep it simple.

--- TEXT TO SUMMARIZE ---
{text}"""


class GeminiSummarizer:
    def __init__(self, api_key: str, model: str = "gemini-2.5-flash",
                 client: Optional[httpx.Client] = None, timeout: float = 20.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def summarize(self, text: str) -> str:
        if not self.api_key:
            raise SummarizerError("GEMINI_API_KEY is not configured")
        try:
            response = self.client.post(
                GEMINI_URL.format(model=self.model),
                headers={"x-goog-api-key": self.api_key},
                json={"contents": [{"parts": [{"text": PROMPT.format(text=text)}]}]},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SummarizerError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise SummarizerError("Gemini returned a non-JSON response") from e

        parts = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    parts.append(part["text"])
            if parts:
                break
        summary = "".join(parts).strip()
        if not summary:
            raise SummarizerError(
                "Gemini API did not return text. Content may have been blocked or the input was invalid."
            )
        return summary

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def truncate(text: str, limit: int = SUMMARY_LIMIT) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def summarize_or_truncate(text: str, summarizer: Optional[GeminiSummarizer]) -> str:
    text = (text or "").strip()
    if len(text) <= SUMMARY_LIMIT or summarizer is None:
        return truncate(text)
    try:
        return summarizer.summarize(text)
    except SummarizerError as e:
        logger.warning("Summary generation failed, using truncated text: %s", e)
        return truncate(text)
