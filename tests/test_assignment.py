from __future__ import annotations

from dataclasses import replace

import pytest

from backend.domain.constraints import assignment_config_from_settings
from backend.domain.errors import ConversationNotFoundError, ExternalCapabilityError
from backend.domain.models import (
    AvailabilityStatus,
    Candidate,
    Conversation,
    ConversationMessage,
    ExpertiseMatchResult,
    TeamMember,
    TeamRole,
)
from backend.repository.data_repository import DataRepository
from backend.services.assignment_service import (
    NO_MEMBERS_AVAILABLE,
    SKIP_ALREADY_ASSIGNED,
    SKIP_MERGED,
    SKIP_NO_ACTIVE_MEMBERS,
    SKIP_NO_SUITABLE_MEMBER,
    AutoAssignmentService,
    calculate_member_score,
    get_conversation_content,
)
from backend.services.availability_service import AvailabilityService
from backend.services.expertise_service import KeywordSimilarityMatcher
from backend.utils.config import Settings, get_settings


ONLINE = AvailabilityStatus.ONLINE
BUSY = AvailabilityStatus.BUSY
AWAY = AvailabilityStatus.AWAY


class RecordingMatcher:
    def __init__(self, result=None, error=None):
        self.calls = []
        self._result = result
        self._error = error

    def match(self, content, candidates):
        self.calls.append((content, [candidate.user_id for candidate in candidates]))
        if self._error is not None:
            raise self._error
        return self._result


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, expertise_matcher_url="")


def _build_engine(tmp_path, clock, matcher=None):
    settings = _build_test_settings(tmp_path, "assignment.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    mailbox_id = repository.create_mailbox("Support")
    availability_service = AvailabilityService(
        repository=repository,
        settings=settings,
        clock=clock,
    )
    engine = AutoAssignmentService(
        repository=repository,
        availability_service=availability_service,
        matcher=matcher or KeywordSimilarityMatcher(settings),
        settings=settings,
    )
    return engine, repository, availability_service, mailbox_id


def _add_member(
    repository,
    availability_service,
    mailbox_id,
    user_id,
    status,
    *,
    role=TeamRole.NON_CORE,
    keywords=(),
):
    repository.add_team_member(mailbox_id, user_id, user_id.title(), role, keywords)
    if status is not None:
        availability_service.set_status(user_id, mailbox_id, status)


def _give_workload(repository, mailbox_id, user_id, count):
    for index in range(count):
        repository.create_conversation(mailbox_id, f"Existing {index}", assigned_to_id=user_id)


def _new_conversation(repository, mailbox_id, subject="Where is my order?", body=None):
    messages = [("user", body)] if body else []
    return repository.create_conversation(mailbox_id, subject, messages=messages)


# --- Pure scoring helpers ---

def _candidate(status, workload, role=TeamRole.NON_CORE):
    member = TeamMember(user_id="user_x", mailbox_id=1, display_name="X", role=role)
    return Candidate(member=member, status=status, current_workload=workload)


def test_member_score_formula():
    config = assignment_config_from_settings(Settings())

    assert calculate_member_score(_candidate(ONLINE, 2), False, config) == 90
    assert calculate_member_score(_candidate(BUSY, 0), False, config) == 50
    assert calculate_member_score(_candidate(ONLINE, 1, TeamRole.CORE), True, config) == 130
    # Penalty is capped at 50 and the score never goes negative.
    assert calculate_member_score(_candidate(ONLINE, 40), False, config) == 50
    assert calculate_member_score(_candidate(BUSY, 12), False, config) == 0


def test_conversation_content_uses_subject_and_user_messages():
    conversation = Conversation(
        conversation_id=1,
        mailbox_id=1,
        subject="Refund",
        status="open",
        assigned_to_id=None,
        merged_into_id=None,
        messages=(
            ConversationMessage(role="user", cleaned_up_text="Charged twice"),
            ConversationMessage(role="staff", cleaned_up_text="Looking into it"),
            ConversationMessage(role="user", cleaned_up_text=None),
            ConversationMessage(role="user", cleaned_up_text="Any update?"),
        ),
    )

    assert get_conversation_content(conversation) == "Refund Charged twice Any update?"
    assert get_conversation_content(replace(conversation, messages=())) == "Refund"


# --- Engine ---

def test_online_member_with_small_workload_beats_idle_busy_member(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", BUSY)
    _give_workload(repository, mailbox_id, "user_a", 2)
    conversation_id = _new_conversation(repository, mailbox_id)

    outcome = engine.auto_assign(conversation_id)

    assert outcome.assigned
    assert outcome.assignee_id == "user_a"
    assert outcome.assignee_status is ONLINE
    assert outcome.assignee_workload == 2
    expected_note = "Assigned based on availability (online) and workload (2 conversations)"
    assert outcome.details == expected_note
    assert repository.get_conversation(conversation_id).assigned_to_id == "user_a"
    assert repository.list_conversation_notes(conversation_id) == [expected_note]
    metrics = outcome.availability_metrics
    assert (metrics.total_available, metrics.online_members, metrics.busy_members) == (2, 1, 1)
    assert metrics.average_workload == pytest.approx(1.0)


def test_core_member_wins_otherwise_equal_tie(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", ONLINE, role=TeamRole.CORE)

    outcome = engine.auto_assign(_new_conversation(repository, mailbox_id))

    assert outcome.assignee_id == "user_b"
    assert outcome.assignee_role is TeamRole.CORE
    assert repository.get_rotation_cursor(mailbox_id) == 0


def test_ties_rotate_through_the_mailbox_cursor(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    for user_id in ("user_a", "user_b", "user_c"):
        _add_member(repository, availability_service, mailbox_id, user_id, ONLINE)

    assignees = [
        engine.auto_assign(_new_conversation(repository, mailbox_id, subject=f"Order {n}")).assignee_id
        for n in range(3)
    ]

    # [a, b, c] tied -> cursor 1 picks b; [a, c] tied -> cursor 0 picks a; c alone.
    assert assignees == ["user_b", "user_a", "user_c"]
    assert repository.get_rotation_cursor(mailbox_id) == 0


def test_rotation_continues_from_stored_cursor(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    for user_id in ("user_a", "user_b", "user_c"):
        _add_member(repository, availability_service, mailbox_id, user_id, ONLINE)
    repository.advance_rotation_cursor(mailbox_id, 3)

    outcome = engine.auto_assign(_new_conversation(repository, mailbox_id))

    assert outcome.assignee_id == "user_c"
    assert repository.get_rotation_cursor(mailbox_id) == 2


def test_rotation_cursor_cycles_modulo_tied_count(tmp_path):
    settings = _build_test_settings(tmp_path, "cursor.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    mailbox_id = repository.create_mailbox("Support")

    positions = [repository.advance_rotation_cursor(mailbox_id, 3) for _ in range(4)]

    assert positions == [1, 2, 0, 1]
    with pytest.raises(ValueError):
        repository.advance_rotation_cursor(mailbox_id, 0)


def test_capacity_gate_prefers_members_under_threshold(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", BUSY)
    _give_workload(repository, mailbox_id, "user_a", 8)
    _give_workload(repository, mailbox_id, "user_b", 2)

    outcome = engine.auto_assign(_new_conversation(repository, mailbox_id))

    # user_a scores higher (60 vs 40) but is at the online threshold.
    assert outcome.assignee_id == "user_b"


def test_capacity_gate_falls_back_when_everyone_is_full(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", BUSY)
    _give_workload(repository, mailbox_id, "user_a", 8)
    _give_workload(repository, mailbox_id, "user_b", 3)

    outcome = engine.auto_assign(_new_conversation(repository, mailbox_id))

    assert outcome.assigned
    assert outcome.assignee_id == "user_a"


def test_busy_member_at_threshold_is_assigned_through_fallback(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_b", BUSY)
    _give_workload(repository, mailbox_id, "user_b", 3)
    conversation_id = _new_conversation(repository, mailbox_id)

    outcome = engine.auto_assign(conversation_id)

    assert outcome.assigned
    assert outcome.assignee_id == "user_b"
    assert repository.get_conversation(conversation_id).assigned_to_id == "user_b"


def test_expertise_match_adds_bonus_and_note(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", ONLINE, keywords=("refund",))
    _give_workload(repository, mailbox_id, "user_b", 1)
    conversation_id = _new_conversation(repository, mailbox_id, subject="Refund request")

    outcome = engine.auto_assign(conversation_id)

    # 95 + 25 for the keyword match beats 100.
    assert outcome.assignee_id == "user_b"
    assert outcome.expertise_result is not None
    assert outcome.expertise_result.matches == {"user_b": True}
    assert repository.list_conversation_notes(conversation_id) == [outcome.expertise_result.reasoning]
    assert "refund" in outcome.details


def test_matcher_is_skipped_without_keywords(tmp_path, clock):
    matcher = RecordingMatcher(result=ExpertiseMatchResult(matches={}, reasoning="unused"))
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock, matcher)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)

    outcome = engine.auto_assign(_new_conversation(repository, mailbox_id))

    assert matcher.calls == []
    assert outcome.assigned
    assert outcome.expertise_result is None


def test_matcher_receives_content_and_gated_candidates_with_keywords(tmp_path, clock):
    matcher = RecordingMatcher(
        result=ExpertiseMatchResult(matches={"user_a": True}, reasoning="Ada knows billing"),
    )
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock, matcher)
    _add_member(repository, availability_service, mailbox_id, "user_a", BUSY, keywords=("billing",))
    _add_member(repository, availability_service, mailbox_id, "user_b", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_c", AWAY, keywords=("billing",))
    conversation_id = _new_conversation(repository, mailbox_id, subject="Invoice", body="Billing is wrong")

    outcome = engine.auto_assign(conversation_id)

    assert matcher.calls == [("Invoice Billing is wrong", ["user_a"])]
    # 50 + 25 does not beat an idle online member at 100.
    assert outcome.assignee_id == "user_b"
    assert repository.list_conversation_notes(conversation_id) == ["Ada knows billing"]


def test_matcher_failure_degrades_to_plain_scoring(tmp_path, clock):
    matcher = RecordingMatcher(error=ExternalCapabilityError("classifier timed out"))
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock, matcher)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE, keywords=("billing",))
    conversation_id = _new_conversation(repository, mailbox_id, subject="Billing")

    outcome = engine.auto_assign(conversation_id)

    assert len(matcher.calls) == 1
    assert outcome.assigned
    assert outcome.expertise_result is None
    assert outcome.details == "Assigned based on availability (online) and workload (0 conversations)"


def test_winner_activity_is_recorded(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    clock.advance(minutes=7)

    engine.auto_assign(_new_conversation(repository, mailbox_id))

    assert repository.get_availability("user_a", mailbox_id).last_activity_at == clock.current


def _snapshot(repository, mailbox_id, conversation_id):
    return (
        repository.get_conversation(conversation_id),
        repository.list_conversation_notes(conversation_id),
        repository.list_team_availability(mailbox_id),
        repository.get_rotation_cursor(mailbox_id),
    )


@pytest.mark.parametrize(
    ("kwargs", "expected_message"),
    [
        ({"assigned_to_id": "user_z"}, SKIP_ALREADY_ASSIGNED),
        ({"merged_into_id": 999}, SKIP_MERGED),
    ],
)
def test_assigned_or_merged_conversation_is_skipped_without_writes(tmp_path, clock, kwargs, expected_message):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE)
    _add_member(repository, availability_service, mailbox_id, "user_b", ONLINE)
    conversation_id = repository.create_conversation(mailbox_id, "Hello", **kwargs)
    before = _snapshot(repository, mailbox_id, conversation_id)
    clock.advance(minutes=1)

    outcome = engine.auto_assign(conversation_id)

    assert outcome.status == "skipped"
    assert outcome.message == expected_message
    assert _snapshot(repository, mailbox_id, conversation_id) == before


def test_mailbox_without_active_members_is_skipped(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", ONLINE, role=TeamRole.AFK)
    conversation_id = _new_conversation(repository, mailbox_id)

    outcome = engine.auto_assign(conversation_id)

    assert outcome.status == "skipped"
    assert outcome.message == SKIP_NO_ACTIVE_MEMBERS
    assert repository.get_conversation(conversation_id).assigned_to_id is None


def test_nobody_available_is_skipped_with_diagnostics(tmp_path, clock):
    engine, repository, availability_service, mailbox_id = _build_engine(tmp_path, clock)
    _add_member(repository, availability_service, mailbox_id, "user_a", AWAY)
    _add_member(repository, availability_service, mailbox_id, "user_b", None)
    conversation_id = _new_conversation(repository, mailbox_id)
    before = _snapshot(repository, mailbox_id, conversation_id)

    outcome = engine.auto_assign(conversation_id)

    assert outcome.status == "skipped"
    assert outcome.message == SKIP_NO_SUITABLE_MEMBER
    assert outcome.details == NO_MEMBERS_AVAILABLE
    assert outcome.availability_metrics.total_available == 0
    assert outcome.availability_metrics.average_workload == 0.0
    assert _snapshot(repository, mailbox_id, conversation_id) == before


def test_missing_conversation_raises_not_found(tmp_path, clock):
    engine, _, _, _ = _build_engine(tmp_path, clock)

    with pytest.raises(ConversationNotFoundError):
        engine.auto_assign(12345)
