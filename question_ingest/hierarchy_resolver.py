"""Resolves subject/chapter/topic ids for a question by asking the LLM to pick from backend candidates."""

import logging
from typing import List, Optional

from pydantic import ValidationError

from question_ingest.backend_client import HierarchyAPIClient, HierarchyNode
from question_ingest.errors import BackendAPIError, HierarchyResolutionError
from question_ingest.llm_service import LLMService
from question_ingest.state import ResolvedHierarchy

logger = logging.getLogger(__name__)


def match_candidate(candidates: List[HierarchyNode], matched_name: str) -> HierarchyNode:
    """
    Pick the candidate whose name contains the model's answer (case-insensitive),
    falling back to the first candidate.
    """
    needle = matched_name.strip().strip('"\'.').lower()
    if needle:
        for candidate in candidates:
            if needle in candidate.name.lower():
                return candidate
    return candidates[0]


class HierarchyResolver:
    """Maps extracted subject/chapter/topic hints onto backend hierarchy ids."""

    def __init__(self, hierarchy_client: HierarchyAPIClient, llm_service: LLMService):
        self.hierarchy_client = hierarchy_client
        self.llm_service = llm_service

    async def resolve(self, question_text: str, subject_hint: Optional[str] = None,
                      chapter_hint: Optional[str] = None,
                      topic_hint: Optional[str] = None) -> ResolvedHierarchy:
        """
        Subject and topic are only matched when a hint exists; the chapter is always
        matched against the question text.

        Raises:
            HierarchyResolutionError: backend or model failure, or an empty candidate list.
        """
        try:
            subjects = self._require(await self.hierarchy_client.get_subjects(), "subjects")
            subject = subjects[0]
            if subject_hint:
                subject = await self._match("subject", subjects, question_text, subject_hint)

            chapters = self._require(await self.hierarchy_client.get_chapters(subject.id),
                                     f"chapters for subject {subject.name}")
            chapter = await self._match("chapter", chapters, question_text, chapter_hint)

            topics = self._require(await self.hierarchy_client.get_topics(chapter.id),
                                   f"topics for chapter {chapter.name}")
            topic = topics[0]
            if topic_hint:
                topic = await self._match("topic", topics, question_text, topic_hint)
        except BackendAPIError as e:
            raise HierarchyResolutionError(f"Hierarchy lookup failed: {e}") from e
        except ValidationError as e:
            raise HierarchyResolutionError(f"Unexpected hierarchy data: {e}") from e

        logger.debug(f"Resolved hierarchy {subject.name} / {chapter.name} / {topic.name}")
        return ResolvedHierarchy(subject_id=subject.id, chapter_id=chapter.id, topic_id=topic.id)

    @staticmethod
    def _require(candidates: List[HierarchyNode], what: str) -> List[HierarchyNode]:
        if not candidates:
            raise HierarchyResolutionError(f"No {what} available")
        return candidates

    async def _match(self, level: str, candidates: List[HierarchyNode], question_text: str,
                     hint: Optional[str]) -> HierarchyNode:
        names = ", ".join(candidate.name for candidate in candidates)
        hint_clause = f' and {level} hint: "{hint}"' if hint else ""
        prompt = (
            f'Given this question: "{question_text}"{hint_clause}, which of these {level}s is the best match? '
            f"Return ONLY the {level} name, nothing else.\n\n{level.capitalize()}s: {names}"
        )
        try:
            matched_name = await self.llm_service.generate_text(prompt)
        except Exception as e:
            # Provider SDKs raise their own exception hierarchies
            raise HierarchyResolutionError(f"{level.capitalize()} matching failed: {e}") from e
        return match_candidate(candidates, matched_name)
