"""
Artifact distillation.

Selected artifacts are condensed into ``{summary, hard_facts, keywords}``
before they enter a bundle. A ``Summarizer`` does the condensing;
``DistillationGate`` runs it for every artifact concurrently and reports every
failure so callers can refuse to build an incomplete bundle.
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from ..config import Settings, get_settings
from .primitives import DistilledArtifact
from .sources import ArtifactSource

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n\n[Content truncated due to length]"

_CODE_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.MULTILINE)
_CODE_FENCE_CLOSE = re.compile(r"\s*```$", re.MULTILINE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_QUOTED_SUMMARY = re.compile(r'"summary"\s*:\s*"((?:[^"\\]|\\.)+)"', re.IGNORECASE)
_QUOTED_LIST = r'"{name}"\s*:\s*\[([^\]]*)\]'

PROMPT_TEMPLATE = """You are a technical documentation distiller. Your task is to extract structured information from an artifact.

Artifact Title: {title}
Artifact ID: {artifact_id}

Artifact Content:
{body}

Extract the following information and return it as valid JSON:

1. **summary**: A concise 2-4 sentence summary of the artifact's main purpose and content. Focus on what the artifact describes or documents.

2. **hard_facts**: An array of specific, verifiable facts extracted from the artifact. Each fact should be:
   - Concrete and specific (not vague)
   - Verifiable (can be checked against the source)
   - Important (not trivial details)
   - Written as a complete sentence or short phrase
   Include 3-10 hard facts, depending on the artifact's content.

3. **keywords**: An array of 5-15 relevant keywords or key phrases that would help someone find this artifact. Include technical terms, feature names, component names, process names and important concepts.

Return ONLY valid JSON in this exact format (no markdown, no code fences, no explanation):
{{
  "summary": "Brief summary here",
  "hard_facts": ["Fact 1", "Fact 2", "Fact 3"],
  "keywords": ["keyword1", "keyword2", "keyword3"]
}}"""


class SummarizationError(Exception):
    """A single artifact could not be summarized."""


@dataclass
class DistilledContent:
    summary: str
    hard_facts: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


class Summarizer(ABC):
    """Turns one artifact body into distilled content."""

    @abstractmethod
    async def summarize(self, artifact_id: str, title: str, body: str) -> DistilledContent:
        """Raise ``SummarizationError`` when no usable summary can be produced."""


def truncate_body(body: str, max_chars: int) -> str:
    if len(body) <= max_chars:
        return body
    return body[:max_chars] + TRUNCATION_MARKER


def build_prompt(artifact_id: str, title: str, body: str) -> str:
    return PROMPT_TEMPLATE.format(artifact_id=artifact_id, title=title, body=body)


def _clean_items(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [item.strip() if isinstance(item, str) else str(item).strip() for item in value]
    return [item for item in items if item]


def _salvage(text: str) -> Optional[DistilledContent]:
    """Recover fields from almost-JSON output; None unless a quoted summary exists."""
    summary_match = _QUOTED_SUMMARY.search(text)
    if not summary_match or not summary_match.group(1).strip():
        return None

    def quoted_list(name: str) -> List[str]:
        match = re.search(_QUOTED_LIST.format(name=name), text, re.IGNORECASE | re.DOTALL)
        if not match:
            return []
        parts = [part.strip().strip("\"'") for part in match.group(1).split(",")]
        return [part for part in parts if part]

    return DistilledContent(
        summary=summary_match.group(1).strip(),
        hard_facts=quoted_list("hard_facts"),
        keywords=quoted_list("keywords"),
    )


def parse_distillation(text: str) -> DistilledContent:
    """Parse a model reply into distilled content.

    Code fences are stripped and the outermost ``{...}`` object is parsed.
    Replies that are not valid JSON are salvaged only when they still carry a
    quoted ``"summary"`` field.
    """
    cleaned = _CODE_FENCE_CLOSE.sub("", _CODE_FENCE_OPEN.sub("", text.strip())).strip()
    match = _JSON_OBJECT.search(cleaned)
    if match:
        cleaned = match.group(0)

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        salvaged = _salvage(text)
        if salvaged is None:
            raise SummarizationError("Distillation failed: response was not valid JSON")
        return salvaged

    if not isinstance(parsed, dict):
        raise SummarizationError("Invalid distillation result: expected object")

    summary = parsed.get("summary")
    summary = summary.strip() if isinstance(summary, str) else ""
    if not summary:
        raise SummarizationError("Distillation failed: summary is missing or empty")

    return DistilledContent(
        summary=summary,
        hard_facts=_clean_items(parsed.get("hard_facts")),
        keywords=_clean_items(parsed.get("keywords")),
    )


class OpenAISummarizer(Summarizer):
    """Summarizer backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_body_chars: int = 50_000,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = (api_key or "").strip() or None
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_body_chars = max_body_chars
        self.timeout = timeout
        self.client = client

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OpenAISummarizer":
        settings = settings or get_settings()
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            max_body_chars=settings.distill_max_body_chars,
            timeout=settings.distill_timeout_seconds,
        )

    async def _post(self, request: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.client is not None:
            return await self.client.post(url, json=request, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=request, headers=headers)

    async def summarize(self, artifact_id: str, title: str, body: str) -> DistilledContent:
        if not self.api_key:
            raise SummarizationError(
                "OpenAI API key not configured. Set OPENAI_API_KEY in environment variables."
            )

        prompt = build_prompt(artifact_id, title, truncate_body(body, self.max_body_chars))
        request = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.3,
            "max_tokens": 2000,
        }

        try:
            response = await self._post(request)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise SummarizationError(
                f"Chat completion request failed with status {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise SummarizationError(f"Chat completion request failed: {e}") from e
        except ValueError as e:
            raise SummarizationError("Chat completion response was not JSON") from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise SummarizationError("Chat completion response had no message content") from e

        return parse_distillation(text)


@dataclass
class GateResult:
    """Outcome of distilling a batch: successes in input order plus failures.

    ``outcomes`` holds one entry per input artifact, failed ones carrying
    ``distillation_error``.
    """

    distilled: List[DistilledArtifact] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    outcomes: List[DistilledArtifact] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class DistillationGate:
    """Distills artifacts concurrently with bounded parallelism and per-call timeouts.

    Every artifact either distills or yields an error string; nothing raises
    out of ``distill`` except cancellation, which propagates to every
    in-flight call.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        timeout_seconds: float = 60.0,
        max_concurrency: int = 3,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.summarizer = summarizer
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max_concurrency

    async def _distill_one(
        self, artifact: ArtifactSource, semaphore: asyncio.Semaphore
    ) -> DistilledArtifact:
        body = artifact.body_md or ""
        if not body.strip():
            return DistilledArtifact(
                artifact_id=artifact.artifact_id,
                artifact_title=artifact.title,
                distillation_error="Artifact body is empty or missing",
            )

        async with semaphore:
            try:
                content = await asyncio.wait_for(
                    self.summarizer.summarize(artifact.artifact_id, artifact.title, body),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = f"Distillation timed out after {self.timeout_seconds:g}s"
            except SummarizationError as e:
                error = str(e)
            except Exception as e:
                logger.exception("distillation_unexpected_error", artifact_id=artifact.artifact_id)
                error = f"Unexpected distillation error: {e}"
            else:
                return DistilledArtifact(
                    artifact_id=artifact.artifact_id,
                    artifact_title=artifact.title,
                    summary=content.summary,
                    hard_facts=content.hard_facts,
                    keywords=content.keywords,
                )

        logger.warning("distillation_failed", artifact_id=artifact.artifact_id, error=error)
        return DistilledArtifact(
            artifact_id=artifact.artifact_id,
            artifact_title=artifact.title,
            distillation_error=error,
        )

    async def distill(self, artifacts: Sequence[ArtifactSource]) -> GateResult:
        if not artifacts:
            return GateResult()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._distill_one(artifact, semaphore) for artifact in artifacts)
        )

        result = GateResult(outcomes=list(outcomes))
        for outcome in outcomes:
            if outcome.distillation_error:
                result.failures[outcome.artifact_id] = outcome.distillation_error
            else:
                result.distilled.append(outcome)

        logger.info(
            "distillation_complete",
            artifacts=len(artifacts),
            distilled=len(result.distilled),
            failed=len(result.failures),
        )
        return result
