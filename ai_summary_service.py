import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Union

import httpx

from config import settings
from errors import FALLBACK_NOTE, ServiceDegraded, ServiceError
from utils.validators import TextValidator


# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)


MAX_TAGS = 6

TIMEOUT_NOTE = "Fallback AI used (AI service timed out)."
PARSE_FAILURE_NOTE = "Fallback AI used (AI response could not be parsed)."
DISABLED_NOTE = "Fallback AI used (AI features disabled)."

# Keyword groups checked in order; every matching group contributes its tags.
KEYWORD_TAGS: List[Tuple[Tuple[str, ...], Tuple[str, ...]]] = [
    (("harry", "wizard", "magic"), ("fantasy", "magic", "adventure")),
    (("love", "romance"), ("romance", "relationships")),
    (("murder", "crime", "detective"), ("mystery", "crime", "thriller")),
    (("space", "alien", "robot", "future"), ("sci-fi", "future")),
    (("history", "war"), ("history", "war")),
    (("business", "money", "startup"), ("business", "career")),
]
GENERIC_TAGS = ("general", "popular", "recommended")

PROMPT_TEMPLATE = """
You are a librarian assistant.
Given a book title and author, generate:
1) a 1-2 sentence summary (fictional if unknown)
2) 3-6 short tags

Return STRICT JSON only with keys:
ai_summary (string), ai_tags (array of strings)

Title: {title}
Author: {author}
"""


@dataclass
class SummaryResult:
    """Summary and tags for a title, plus where they came from."""
    summary: str
    tags: List[str] = field(default_factory=list)
    source: str = "openai"
    note: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == "fallback"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ai_summary": self.summary, "ai_tags": self.tags}
        if self.note:
            data["note"] = self.note
        return data


@dataclass(frozen=True)
class ParsedSummary:
    summary: str
    tags: List[str]


@dataclass(frozen=True)
class ParseFailure:
    reason: str


def fallback_summary(title: str, author: str, note: str = FALLBACK_NOTE) -> SummaryResult:
    """Rule-based summary and tags. Identical input always gives identical output."""
    haystack = f"{title} {author}".lower()
    tags: List[str] = []
    for keywords, group_tags in KEYWORD_TAGS:
        if any(k in haystack for k in keywords):
            tags.extend(group_tags)
    if not tags:
        tags.extend(GENERIC_TAGS)

    summary = (
        f'A short, engaging summary for "{title}" by {author}. '
        f"This book explores key themes and keeps readers engaged from start to finish."
    )
    return SummaryResult(
        summary=summary,
        tags=TextValidator.normalize_tags(tags, limit=MAX_TAGS),
        source="fallback",
        note=note,
    )


def parse_summary_content(content: Optional[str]) -> Union[ParsedSummary, ParseFailure]:
    """Parse the model's JSON answer into a summary and tag list."""
    if not content or not content.strip():
        return ParseFailure("empty response")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        return ParseFailure(f"invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        return ParseFailure("response is not a JSON object")

    summary = data.get("ai_summary")
    if not isinstance(summary, str) or not summary.strip():
        return ParseFailure("missing ai_summary")

    raw_tags = data.get("ai_tags")
    tags = TextValidator.normalize_tags(raw_tags if isinstance(raw_tags, list) else [], limit=MAX_TAGS)
    return ParsedSummary(summary=summary.strip(), tags=tags)


class SummaryGenerator:
    """Summaries and tags from an OpenAI-compatible chat completions API.

    Falls back to :func:`fallback_summary` when no API key is configured, the
    service is rate-limited or out of quota, the call times out, or the answer
    cannot be parsed. Any other failure raises :class:`ServiceError`.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout = timeout if timeout is not None else settings.ai_timeout
        self.temperature = settings.openai_temperature
        # Lets tests swap in httpx.MockTransport
        self.transport = transport

    def is_available(self) -> bool:
        """True when the primary (external) path will be attempted."""
        return bool(self.api_key) and settings.enable_ai_features

    async def generate(self, title: str, author: str) -> SummaryResult:
        """Summary and tags for ``title`` by ``author``.

        Raises ValidationError for blank input and ServiceError for
        unrecognized external failures; otherwise always returns a result.
        """
        title = TextValidator.validate_title(title)
        author = TextValidator.validate_author(author)

        if not self.api_key:
            logger.info("OpenAI API key not configured, using fallback summary")
            return fallback_summary(title, author)
        if not settings.enable_ai_features:
            logger.info("AI features disabled, using fallback summary")
            return fallback_summary(title, author, note=DISABLED_NOTE)

        try:
            content = await self._request_completion(title, author)
        except ServiceDegraded as e:
            logger.warning(f"AI service degraded ({e}), using fallback summary")
            return fallback_summary(title, author, note=e.note)

        parsed = parse_summary_content(content)
        if isinstance(parsed, ParseFailure):
            logger.warning(f"Could not parse AI response ({parsed.reason}), using fallback summary")
            return fallback_summary(title, author, note=PARSE_FAILURE_NOTE)

        logger.info(f"AI summary generated: title={title!r}, tags={len(parsed.tags)}")
        return SummaryResult(summary=parsed.summary, tags=parsed.tags, source="openai")

    async def _request_completion(self, title: str, author: str) -> str:
        """Call chat completions and return the message content ('' if absent)."""
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": PROMPT_TEMPLATE.format(title=title, author=author)}],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }

        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                # httpx times each phase separately; this caps the whole call
                response = await asyncio.wait_for(
                    client.post(url, json=payload, headers=headers), timeout=self.timeout
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            logger.error(f"AI request timed out after {self.timeout}s")
            raise ServiceDegraded("AI request timed out", note=TIMEOUT_NOTE) from e
        except httpx.RequestError as e:
            logger.error(f"AI request failed: {e}")
            raise ServiceError(f"AI service unreachable: {e}") from e

        response_time_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"AI request finished: status={response.status_code}, time={response_time_ms}ms")

        if response.status_code == 200:
            return self._extract_content(response)

        message = self._error_message(response)
        lowered = message.lower()
        if response.status_code == 429 or "quota" in lowered or "billing" in lowered:
            logger.warning(f"AI quota/billing issue: {response.status_code} - {message}")
            raise ServiceDegraded(message)

        logger.error(f"AI request failed: {response.status_code} - {message}")
        raise ServiceError(message)

    @staticmethod
    def _extract_content(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return ""
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content if isinstance(content, str) else ""

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Best-effort error text from an OpenAI-style error body."""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"AI service returned HTTP {response.status_code}"
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
        return f"AI service returned HTTP {response.status_code}"
