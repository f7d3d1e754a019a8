"""Expertise matching between conversation content and team member keywords."""

from __future__ import annotations

import re
from typing import Literal, Optional, Protocol, Sequence

import httpx
import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from backend.domain.errors import ExternalCapabilityError
from backend.domain.models import Candidate, ExpertiseMatchResult
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_TOKEN = re.compile(r"\w+")


class ExpertiseMatcher(Protocol):
    def match(
        self,
        content: str,
        candidates: Sequence[Candidate],
    ) -> ExpertiseMatchResult:
        """Return which candidates fit the content; raise ExternalCapabilityError on failure."""


class KeywordSimilarityMatcher:
    """Local matcher scoring TF-IDF cosine similarity of content against keyword sets."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def match(
        self,
        content: str,
        candidates: Sequence[Candidate],
    ) -> ExpertiseMatchResult:
        if not candidates:
            return ExpertiseMatchResult(matches={}, reasoning="No candidates to match.")

        documents = [content] + [" ".join(c.member.keywords) for c in candidates]
        vectorizer = TfidfVectorizer(lowercase=True, token_pattern=r"(?u)\b\w+\b")
        try:
            matrix = vectorizer.fit_transform(documents)
        except ValueError as exc:
            raise ExternalCapabilityError(f"Keyword vectorization failed: {exc}") from exc

        similarities = cosine_similarity(matrix[0:1], matrix[1:]).ravel()
        threshold = self._settings.expertise_similarity_threshold
        content_tokens = {token.lower() for token in _TOKEN.findall(content)}

        matches: dict[str, bool] = {}
        explanations: list[str] = []
        for candidate, similarity in zip(candidates, similarities):
            matched = bool(similarity > 0.0 and similarity >= threshold)
            matches[candidate.user_id] = matched
            if matched:
                shared = sorted(
                    keyword
                    for keyword in candidate.member.keywords
                    if set(_TOKEN.findall(keyword.lower())) & content_tokens
                )
                explanations.append(
                    f"{candidate.member.display_name} ({candidate.status.value}, "
                    f"{candidate.current_workload} open) matches on {', '.join(shared)}"
                )

        if explanations:
            reasoning = "Expertise match: " + "; ".join(explanations) + "."
        else:
            reasoning = "No team member expertise keywords matched the conversation."
        return ExpertiseMatchResult(
            matches=matches,
            reasoning=reasoning,
            confidence_score=float(np.max(similarities)) if similarities.size else 0.0,
        )


class _ClassifierResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    matches: dict[str, bool]
    reasoning: str
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0, alias="confidenceScore")
    urgency_level: Literal["low", "medium", "high"] | None = Field(
        default=None,
        alias="urgencyLevel",
    )


class HttpExpertiseMatcher:
    """Delegates matching to a remote classifier service."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._client = client or httpx.Client()

    def match(
        self,
        content: str,
        candidates: Sequence[Candidate],
    ) -> ExpertiseMatchResult:
        payload = {
            "conversation": content,
            "candidates": [
                {
                    "id": candidate.user_id,
                    "status": candidate.status.value,
                    "current_workload": candidate.current_workload,
                    "role": candidate.member.role.value,
                    "keywords": list(candidate.member.keywords),
                }
                for candidate in candidates
            ],
        }
        try:
            response = self._client.post(
                self._url,
                json=payload,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
            parsed = _ClassifierResponse.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise ExternalCapabilityError(f"Expertise classifier request failed: {exc}") from exc
        except (ValueError, ValidationError) as exc:
            raise ExternalCapabilityError(f"Expertise classifier returned invalid data: {exc}") from exc

        known_ids = {candidate.user_id for candidate in candidates}
        return ExpertiseMatchResult(
            matches={
                user_id: matched
                for user_id, matched in parsed.matches.items()
                if user_id in known_ids
            },
            reasoning=parsed.reasoning,
            confidence_score=parsed.confidence_score,
            urgency_level=parsed.urgency_level,
        )


def build_expertise_matcher(settings: Optional[Settings] = None) -> ExpertiseMatcher:
    settings = settings or get_settings()
    if settings.expertise_matcher_url:
        logger.info("Using remote expertise classifier | url=%s", settings.expertise_matcher_url)
        return HttpExpertiseMatcher(
            url=settings.expertise_matcher_url,
            timeout_seconds=settings.expertise_matcher_timeout_seconds,
        )
    return KeywordSimilarityMatcher(settings=settings)
