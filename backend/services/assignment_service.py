"""Workload- and expertise-aware routing of unassigned conversations."""

from __future__ import annotations

from typing import Optional, Sequence

from backend.domain.constraints import (
    AssignmentConfig,
    assignment_config_from_settings,
    validate_assignment_config,
)
from backend.domain.errors import ConversationNotFoundError, ExternalCapabilityError, MailboxNotFoundError
from backend.domain.models import (
    ACTIVE_ROLES,
    AssignmentOutcome,
    AvailabilityMetrics,
    AvailabilityStatus,
    Candidate,
    Conversation,
    ExpertiseMatchResult,
    ScoredCandidate,
    TeamMember,
    TeamRole,
)
from backend.repository.data_repository import DataRepository
from backend.services.availability_service import AvailabilityService
from backend.services.expertise_service import ExpertiseMatcher, build_expertise_matcher
from backend.services.workload_service import WorkloadSampler
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

SKIP_ALREADY_ASSIGNED = "Skipped: already assigned"
SKIP_MERGED = "Skipped: conversation is merged"
SKIP_NO_ACTIVE_MEMBERS = "Skipped: no active team members available for assignment"
SKIP_NO_SUITABLE_MEMBER = "Skipped: could not find suitable team member for assignment"
NO_MEMBERS_AVAILABLE = "No team members available for assignment"


def get_conversation_content(conversation: Conversation) -> str:
    """Subject followed by every user message's cleaned text."""
    parts = [conversation.subject or ""]
    parts.extend(
        message.cleaned_up_text
        for message in conversation.messages
        if message.role == "user" and message.cleaned_up_text
    )
    return " ".join(part for part in parts if part).strip()


def can_handle_workload(candidate: Candidate, config: AssignmentConfig) -> bool:
    return candidate.current_workload < config.workload_thresholds[candidate.status]


def calculate_member_score(
    candidate: Candidate,
    has_expertise: bool,
    config: AssignmentConfig,
) -> int:
    score = config.priority_scores[candidate.status]
    score -= min(
        candidate.current_workload * config.workload_penalty_per_item,
        config.workload_penalty_cap,
    )
    if has_expertise:
        score += config.expertise_bonus
    if candidate.member.role is TeamRole.CORE:
        score += config.core_role_bonus
    return max(0, score)


def compute_availability_metrics(candidates: Sequence[Candidate]) -> AvailabilityMetrics:
    available = [candidate for candidate in candidates if candidate.is_available_for_assignment]
    if available:
        average_workload = sum(c.current_workload for c in available) / len(available)
    else:
        average_workload = 0.0
    return AvailabilityMetrics(
        total_available=len(available),
        online_members=sum(1 for c in available if c.status is AvailabilityStatus.ONLINE),
        busy_members=sum(1 for c in available if c.status is AvailabilityStatus.BUSY),
        average_workload=float(average_workload),
    )


def rank_candidates(
    candidates: Sequence[Candidate],
    matched_user_ids: frozenset[str],
    config: AssignmentConfig,
) -> list[ScoredCandidate]:
    return [
        ScoredCandidate(
            candidate=candidate,
            score=calculate_member_score(candidate, candidate.user_id in matched_user_ids, config),
            has_expertise=candidate.user_id in matched_user_ids,
        )
        for candidate in candidates
    ]


def tied_for_best(scored: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    """Best score first, then lowest workload; roster order is kept among equals."""
    if not scored:
        return []
    best_score = max(item.score for item in scored)
    top = [item for item in scored if item.score == best_score]
    lowest_workload = min(item.candidate.current_workload for item in top)
    return [item for item in top if item.candidate.current_workload == lowest_workload]


class AutoAssignmentService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        availability_service: Optional[AvailabilityService] = None,
        workload_sampler: Optional[WorkloadSampler] = None,
        matcher: Optional[ExpertiseMatcher] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._availability_service = availability_service or AvailabilityService(
            repository=self._repository,
            settings=self._settings,
        )
        self._workload_sampler = workload_sampler or WorkloadSampler(
            repository=self._repository,
            settings=self._settings,
        )
        self._matcher = matcher or build_expertise_matcher(self._settings)
        self._config = assignment_config_from_settings(self._settings)
        validate_assignment_config(self._config)

    def auto_assign(self, conversation_id: int) -> AssignmentOutcome:
        """Route one conversation to the best available team member.

        Returns an ``assigned`` or ``skipped`` outcome. Only missing entities and
        persistence failures raise.
        """
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        mailbox_id = conversation.mailbox_id
        if self._repository.get_mailbox(mailbox_id) is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")

        if conversation.assigned_to_id is not None:
            return self._skip(conversation_id, SKIP_ALREADY_ASSIGNED)
        if conversation.merged_into_id is not None:
            return self._skip(conversation_id, SKIP_MERGED)

        members = [
            member
            for member in self._repository.list_team_members(mailbox_id)
            if member.role in ACTIVE_ROLES
        ]
        if not members:
            return self._skip(conversation_id, SKIP_NO_ACTIVE_MEMBERS)

        candidates = self._build_candidates(mailbox_id, members)
        metrics = compute_availability_metrics(candidates)
        available = [c for c in candidates if c.is_available_for_assignment]
        if not available:
            return self._skip(
                conversation_id,
                SKIP_NO_SUITABLE_MEMBER,
                details=NO_MEMBERS_AVAILABLE,
                availability_metrics=metrics,
            )

        within_capacity = [c for c in available if can_handle_workload(c, self._config)]
        if not within_capacity:
            logger.info(
                "Everyone available is over capacity; using full pool | conversation_id=%s",
                conversation_id,
            )
        pool = within_capacity or available

        content = get_conversation_content(conversation)
        expertise = self._match_expertise(conversation_id, content, pool)
        matched = expertise.matched_user_ids if expertise is not None else frozenset()

        winner = self._select(mailbox_id, rank_candidates(pool, matched, self._config))
        if winner is None:
            return self._skip(
                conversation_id,
                SKIP_NO_SUITABLE_MEMBER,
                availability_metrics=metrics,
            )

        chosen = winner.candidate
        note = (
            expertise.reasoning
            if expertise is not None and expertise.reasoning
            else (
                f"Assigned based on availability ({chosen.status.value}) "
                f"and workload ({chosen.current_workload} conversations)"
            )
        )

        self._availability_service.record_activity(chosen.user_id, mailbox_id)
        if not self._repository.assign_conversation(conversation_id, chosen.user_id, note):
            # Another worker assigned or merged it between the read and the write.
            return self._skip(
                conversation_id,
                SKIP_ALREADY_ASSIGNED,
                availability_metrics=metrics,
            )

        logger.info(
            (
                "Conversation assigned | conversation_id=%s | mailbox_id=%s | assignee=%s | "
                "status=%s | workload=%s | score=%s | expertise=%s"
            ),
            conversation_id,
            mailbox_id,
            chosen.user_id,
            chosen.status.value,
            chosen.current_workload,
            winner.score,
            winner.has_expertise,
        )
        return AssignmentOutcome(
            status="assigned",
            message=f"Assigned to {chosen.member.display_name}",
            conversation_id=conversation_id,
            assignee_id=chosen.user_id,
            assignee_role=chosen.member.role,
            assignee_status=chosen.status,
            assignee_workload=chosen.current_workload,
            details=note,
            expertise_result=expertise,
            availability_metrics=metrics,
        )

    def _build_candidates(
        self,
        mailbox_id: int,
        members: Sequence[TeamMember],
    ) -> list[Candidate]:
        workload = self._workload_sampler.sample(mailbox_id)
        records = {
            record.user_id: record
            for record in self._repository.list_team_availability(mailbox_id)
        }
        candidates = []
        for member in members:
            record = records.get(member.user_id)
            candidates.append(
                Candidate(
                    member=member,
                    status=record.status if record is not None else AvailabilityStatus.OFFLINE,
                    current_workload=workload.get(member.user_id, 0),
                    custom_message=record.custom_message if record is not None else None,
                )
            )
        return candidates

    def _match_expertise(
        self,
        conversation_id: int,
        content: str,
        pool: list[Candidate],
    ) -> Optional[ExpertiseMatchResult]:
        # Only members declaring keywords are offered to the matcher.
        with_keywords = [candidate for candidate in pool if candidate.member.keywords]
        if not content or not with_keywords:
            return None
        try:
            return self._matcher.match(content, with_keywords)
        except ExternalCapabilityError as exc:
            logger.warning(
                "Expertise matching unavailable; continuing without it | conversation_id=%s | error=%s",
                conversation_id,
                exc,
            )
            return None

    def _select(
        self,
        mailbox_id: int,
        scored: list[ScoredCandidate],
    ) -> Optional[ScoredCandidate]:
        tied = tied_for_best(scored)
        if not tied:
            return None
        if len(tied) == 1:
            return tied[0]
        position = self._repository.advance_rotation_cursor(
            mailbox_id,
            len(tied),
            max_attempts=self._settings.rotation_cas_max_attempts,
        )
        logger.debug(
            "Round-robin tie-break | mailbox_id=%s | tied=%s | position=%s",
            mailbox_id,
            len(tied),
            position,
        )
        return tied[position]

    @staticmethod
    def _skip(
        conversation_id: int,
        message: str,
        *,
        details: Optional[str] = None,
        availability_metrics: Optional[AvailabilityMetrics] = None,
    ) -> AssignmentOutcome:
        logger.info("Assignment skipped | conversation_id=%s | reason=%s", conversation_id, message)
        return AssignmentOutcome(
            status="skipped",
            message=message,
            conversation_id=conversation_id,
            details=details,
            availability_metrics=availability_metrics,
        )
