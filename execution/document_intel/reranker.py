"""
LLM Reranker

Scores all fused candidates with one chat-completion call instead of one
call per candidate. The model is served by Ollama through its
OpenAI-compatible /v1 endpoint.

Reranking is an optimization, never a requirement: on timeout, transport
error or an unparseable answer the first candidates are returned in their
fused order.
"""

import os
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from openai import OpenAI

from .vector_store import Candidate

logger = logging.getLogger(__name__)

RERANK_PROMPT = """Du bist ein Relevanz-Bewerter fuer einen deutschen Rechtsanwalt.

Aufgabe: Bewerte jeden der folgenden Textausschnitte hinsichtlich ihrer Relevanz fuer die Suchanfrage.
Bewertungsskala: 0 (voellig irrelevant) bis 10 (hochgradig relevant).

Suchanfrage: "{query}"

Textausschnitte:
{passages}

Antworte NUR mit einem JSON-Objekt. Schluessel ist die id des Textausschnitts, Wert ist die ganzzahlige Bewertung 0-10.
Beispiel: {{"id-1": 8, "id-2": 3}}
Keine Erklaerungen, kein Text ausserhalb des JSON."""


@dataclass
class RerankerConfig:
    """Configuration for the LLM reranker."""
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"  # Ollama ignores it, the client requires one
    model: str = "qwen3.5:35b"
    timeout_ms: int = 3000
    max_candidates: int = 50
    top_n: int = 10
    snippet_chars: int = 300
    max_tokens: int = 500

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.top_n <= 0 or self.max_candidates <= 0:
            raise ValueError("top_n and max_candidates must be positive")

    @classmethod
    def from_env(cls) -> "RerankerConfig":
        defaults = cls()
        ollama_url = os.getenv("OLLAMA_URL")
        base_url = os.getenv(
            "RERANKER_URL",
            f"{ollama_url.rstrip('/')}/v1" if ollama_url else defaults.base_url,
        )
        return cls(
            base_url=base_url,
            api_key=os.getenv("RERANKER_API_KEY", defaults.api_key),
            model=os.getenv("RERANKER_MODEL", defaults.model),
            timeout_ms=int(os.getenv("RERANKER_TIMEOUT_MS", defaults.timeout_ms)),
        )


def extract_json_object(text: str) -> dict:
    """
    Return the first well-formed JSON object embedded in text.

    Reasoning models may prepend a <think>...</think> block or wrap the
    answer in prose, so every "{" is tried as a starting point.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    raise ValueError(f"No JSON object found in reranker response: {text[:200]!r}")


def _as_score(value) -> float:
    # bool is an int subclass but never a meaningful score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


class LLMReranker:
    """Single-batch pointwise reranker over an OpenAI-compatible chat API."""

    def __init__(self, config: Optional[RerankerConfig] = None, client=None):
        self.config = config or RerankerConfig()
        self._client = client

    def _get_client(self):
        """Get or create cached OpenAI client."""
        if self._client is None:
            self._client = OpenAI(
                base_url=self.config.base_url,
                api_key=self.config.api_key,
                timeout=self.config.timeout_ms / 1000.0,
                max_retries=0,
            )
        return self._client

    def build_prompt(self, query: str, candidates: list[Candidate]) -> str:
        passages = "\n\n".join(
            f'[{i}] id="{c.chunk_id}"\n{c.content[:self.config.snippet_chars]}'
            for i, c in enumerate(candidates)
        )
        return RERANK_PROMPT.format(query=query, passages=passages)

    def rerank(
        self,
        query: str,
        candidates: list[Candidate],
        timeout_ms: Optional[int] = None,
    ) -> list[Candidate]:
        """
        Rerank candidates with one LLM call.

        Args:
            query: The user's question
            candidates: Fused candidates, best first
            timeout_ms: Per-call deadline (defaults to config.timeout_ms)

        Returns:
            At most top_n candidates, sorted by LLM score with rerank_score
            set. On any failure: candidates[:top_n] unchanged.
        """
        if not candidates:
            return []

        top_n = self.config.top_n
        pool = candidates[:self.config.max_candidates]
        timeout = (timeout_ms or self.config.timeout_ms) / 1000.0
        start = time.time()

        try:
            response = self._get_client().chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": self.build_prompt(query, pool)}],
                temperature=0,
                max_tokens=self.config.max_tokens,
                timeout=timeout,
            )
            raw_text = response.choices[0].message.content or ""
            scores = extract_json_object(raw_text)

            ranked = sorted(
                pool,
                key=lambda c: _as_score(scores.get(c.chunk_id)),
                reverse=True,
            )
            reranked = [
                replace(c, rerank_score=_as_score(scores.get(c.chunk_id)))
                for c in ranked[:top_n]
            ]
        except Exception as e:
            elapsed = (time.time() - start) * 1000
            logger.warning(f"Reranking failed after {elapsed:.0f}ms: {e}. Using fused order.")
            return candidates[:top_n]

        logger.info(
            f"Reranked {len(pool)} candidates in {(time.time() - start) * 1000:.0f}ms"
        )
        return reranked
