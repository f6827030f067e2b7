"""Enrichment service.

Rewrites raw feed content into readable markdown plus a summary and a short
push-notification text, using an OpenAI-compatible chat completion API
(OpenAI itself, or OpenRouter via ``OPENAI_BASE_URL``).
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from feed_crawler.services.feed_parser import ParsedEntry, html_to_text

logger = logging.getLogger(__name__)

MIN_FORMATTED_LENGTH = 200
NOTIFICATION_MAX_LENGTH = 200
TITLE_MAX_LENGTH = 120

SYSTEM_PROMPT = """You are a content formatter and technical writer. Rewrite the \
article you are given as well-structured, readable markdown: headings, short \
paragraphs, bullet lists for features, bold for key terms. Drop navigation, ads \
and social widgets but keep every important fact.

{language_rule}

Respond with ONLY a JSON object with these keys:
- "formattedContent": the full article as markdown
- "summary": a 2-3 paragraph summary
- "notificationContent": a push notification message under 200 characters
- "translatedTitle": the title in the output language, under 120 characters"""

KEEP_LANGUAGE_RULE = (
    "Keep the original language of the content. Do not translate; "
    "translatedTitle must equal the original title."
)
TRANSLATE_RULE = "Translate everything, including translatedTitle, into {language}."


class EnrichmentError(Exception):
    """The enrichment service failed or returned an unusable response."""


@dataclass
class Enrichment:
    """Result of enriching one entry."""

    summary: str
    formatted_content: str
    notification_content: str = ""
    title: Optional[str] = None


class Enricher(Protocol):
    async def enrich(self, entry: ParsedEntry, language: str = "auto") -> Enrichment:
        ...


class OpenAIEnricher:
    """Enricher backed by an OpenAI-compatible chat completion endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 300.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def enrich(self, entry: ParsedEntry, language: str = "auto") -> Enrichment:
        """Enrich one entry.

        Args:
            entry: The parsed feed entry
            language: Target language, or ``auto`` to keep the original

        Returns:
            Enrichment with formatted content, summary and notification text

        Raises:
            EnrichmentError: On API errors, timeouts or unparseable output
        """
        if language and language != "auto":
            language_rule = TRANSLATE_RULE.format(language=language)
        else:
            language_rule = KEEP_LANGUAGE_RULE

        prompt = f"Original title: {entry.title}\n\nOriginal content:\n{entry.content}"

        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT.format(language_rule=language_rule)},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.3,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise EnrichmentError(f"Enrichment timed out after {self.timeout}s") from e
        except OpenAIError as e:
            raise EnrichmentError(f"Enrichment API call failed: {e}") from e

        if not completion.choices or not completion.choices[0].message.content:
            raise EnrichmentError("No response from enrichment API")

        return build_enrichment(completion.choices[0].message.content, entry)


def parse_response(text: str) -> dict:
    """Extract the JSON object from a model response.

    Handles responses wrapped in markdown code fences or surrounded by prose.

    Raises:
        EnrichmentError: If no JSON object can be recovered
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]

    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise EnrichmentError("Enrichment response contains no JSON object")
        try:
            result = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise EnrichmentError(f"Enrichment response is not valid JSON: {e}") from e

    if not isinstance(result, dict):
        raise EnrichmentError("Enrichment response is not a JSON object")
    return result


def build_enrichment(text: str, entry: ParsedEntry) -> Enrichment:
    """Turn a raw model response into an Enrichment, filling gaps from the entry."""
    result = parse_response(text)

    formatted = str(result.get("formattedContent") or "")
    if len(formatted) < MIN_FORMATTED_LENGTH:
        logger.warning(
            f"Formatted content too short ({len(formatted)} chars) for '{entry.title[:50]}', using raw content"
        )
        formatted = html_to_text(entry.content)

    summary = str(result.get("summary") or "")
    notification = str(result.get("notificationContent") or "")[:NOTIFICATION_MAX_LENGTH]
    title = str(result.get("translatedTitle") or "").strip()[:TITLE_MAX_LENGTH] or None

    return Enrichment(
        summary=summary,
        formatted_content=formatted,
        notification_content=notification,
        title=title,
    )
