from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from backend.domain.errors import AvailabilityValidationError, PersistenceError
from backend.domain.models import (
    AvailabilityStatus,
    BusinessHours,
    ChangeReason,
    DaySchedule,
    SessionMetrics,
    TeamRole,
)
from backend.repository.data_repository import DataRepository
from backend.services.availability_service import AvailabilityService
from backend.services.broadcast_service import (
    AVAILABILITY_UPDATED_EVENT,
    AvailabilityBroadcaster,
    team_channel_id,
)
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.utils.config import get_settings


ONLINE = AvailabilityStatus.ONLINE
BUSY = AvailabilityStatus.BUSY
AWAY = AvailabilityStatus.AWAY
OFFLINE = AvailabilityStatus.OFFLINE


def _build_test_settings(tmp_path, filename: str, **overrides):
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, **overrides)


def _build_service(tmp_path, clock, **overrides):
    settings = _build_test_settings(tmp_path, "availability.db", **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    mailbox_id = repository.create_mailbox("Support")
    repository.add_team_member(mailbox_id, "user_a", "Ada", TeamRole.CORE)
    broadcaster = AvailabilityBroadcaster()
    service = AvailabilityService(
        repository=repository,
        settings=settings,
        broadcaster=broadcaster,
        clock=clock,
    )
    return service, repository, broadcaster, mailbox_id


def test_unknown_user_reads_as_virtual_offline_without_writing(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    record = service.get_status("user_a", mailbox_id)

    assert record.status is OFFLINE
    assert record.last_activity_at == clock.current
    assert repository.get_availability("user_a", mailbox_id) is None


def test_each_transition_appends_exactly_one_history_entry(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    service.set_status("user_a", mailbox_id, ONLINE)
    clock.advance(seconds=30)
    service.set_status("user_a", mailbox_id, BUSY)
    clock.advance(seconds=90, microseconds=500_000)
    record = service.set_status("user_a", mailbox_id, AWAY)

    history = repository.list_user_history("user_a", mailbox_id)
    assert [(entry.from_status, entry.to_status) for entry in history] == [
        (OFFLINE, ONLINE),
        (ONLINE, BUSY),
        (BUSY, AWAY),
    ]
    assert [entry.duration_seconds for entry in history] == [None, 30, 90]
    assert all(entry.change_reason is ChangeReason.MANUAL for entry in history)
    assert record.last_status_change_at == clock.current
    assert repository.get_availability("user_a", mailbox_id).status is AWAY


def test_same_status_patches_fields_without_history(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    first = service.set_status("user_a", mailbox_id, ONLINE)
    clock.advance(minutes=5)
    patched = service.set_status("user_a", mailbox_id, ONLINE, custom_message="Reviewing refunds")

    assert len(repository.list_user_history("user_a", mailbox_id)) == 1
    stored = repository.get_availability("user_a", mailbox_id)
    assert stored.custom_message == "Reviewing refunds"
    assert stored.last_status_change_at == first.last_status_change_at
    assert stored.last_activity_at == clock.current
    assert patched.status is ONLINE


def test_explicit_patch_creates_offline_row_without_history(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    service.set_status("user_a", mailbox_id, OFFLINE, custom_message="On leave")

    stored = repository.get_availability("user_a", mailbox_id)
    assert stored is not None
    assert stored.status is OFFLINE
    assert stored.custom_message == "On leave"
    assert repository.list_user_history("user_a", mailbox_id) == []


def test_session_metrics_are_stored_with_history(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE)
    clock.advance(hours=1)

    service.set_status(
        "user_a",
        mailbox_id,
        OFFLINE,
        session_data=SessionMetrics(conversations_handled=4, average_response_time=12.5),
    )

    entry = repository.list_user_history("user_a", mailbox_id)[-1]
    assert entry.session_data == SessionMetrics(
        conversations_handled=4,
        messages_replied=None,
        average_response_time=12.5,
    )
    assert entry.duration_seconds == 3600


def test_invalid_reason_for_transition_raises_without_side_effects(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    with pytest.raises(AvailabilityValidationError):
        service.set_status("user_a", mailbox_id, AWAY, ChangeReason.AUTO_INACTIVITY)

    assert repository.get_availability("user_a", mailbox_id) is None
    assert repository.list_user_history("user_a", mailbox_id) == []


def test_unknown_status_value_raises(tmp_path, clock):
    service, _, _, mailbox_id = _build_service(tmp_path, clock)

    with pytest.raises(AvailabilityValidationError):
        service.set_status("user_a", mailbox_id, "sleeping")


def test_record_activity_creates_online_record(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    record = service.record_activity("user_a", mailbox_id)

    assert record.status is ONLINE
    history = repository.list_user_history("user_a", mailbox_id)
    assert len(history) == 1
    assert history[0].change_reason is ChangeReason.AUTO_ACTIVITY
    assert history[0].duration_seconds is None
    assert record.auto_away_at is None


def test_record_activity_wakes_away_user(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, AWAY)
    clock.advance(minutes=10)

    record = service.record_activity("user_a", mailbox_id)

    assert record.status is ONLINE
    last = repository.list_user_history("user_a", mailbox_id)[-1]
    assert (last.from_status, last.to_status) == (AWAY, ONLINE)
    assert last.change_reason is ChangeReason.AUTO_ACTIVITY
    assert last.duration_seconds == 600


def test_record_activity_keeps_busy_status(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, BUSY)
    clock.advance(minutes=3)

    record = service.record_activity("user_a", mailbox_id)

    assert record.status is BUSY
    assert record.last_activity_at == clock.current
    assert len(repository.list_user_history("user_a", mailbox_id)) == 1


def test_record_activity_reschedules_armed_auto_away(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE, auto_away_at=clock.current + timedelta(minutes=5))
    clock.advance(minutes=2)

    service.record_activity("user_a", mailbox_id)

    stored = repository.get_availability("user_a", mailbox_id)
    assert stored.auto_away_at == clock.current + timedelta(minutes=15)


def test_record_activity_arms_auto_away_when_configured(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(
        tmp_path,
        clock,
        arm_auto_away_on_activity=True,
    )

    service.record_activity("user_a", mailbox_id)

    stored = repository.get_availability("user_a", mailbox_id)
    assert stored.auto_away_at == clock.current + timedelta(minutes=15)


def test_leaving_a_status_clears_its_deadline(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE, auto_away_at=clock.current + timedelta(minutes=15))
    service.set_status("user_a", mailbox_id, BUSY)
    assert repository.get_availability("user_a", mailbox_id).auto_away_at is None

    service.set_scheduled_return("user_a", mailbox_id, clock.current + timedelta(hours=1))
    assert repository.get_availability("user_a", mailbox_id).scheduled_return_at is not None
    service.set_status("user_a", mailbox_id, ONLINE)
    assert repository.get_availability("user_a", mailbox_id).scheduled_return_at is None


def test_scheduled_return_sets_away_with_message(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    return_at = clock.current + timedelta(hours=2)

    record = service.set_scheduled_return("user_a", mailbox_id, return_at, "Dentist")

    assert record.status is AWAY
    assert record.scheduled_return_at == return_at
    assert record.custom_message == "Dentist"
    assert repository.list_user_history("user_a", mailbox_id)[-1].change_reason is ChangeReason.MANUAL


def test_scheduled_return_in_the_past_is_rejected(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)

    with pytest.raises(AvailabilityValidationError):
        service.set_scheduled_return("user_a", mailbox_id, clock.current - timedelta(minutes=1))

    assert repository.get_availability("user_a", mailbox_id) is None


def test_business_hours_are_stored_without_status_change(tmp_path, clock):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE)
    hours = BusinessHours(
        timezone="America/New_York",
        schedule={"monday": DaySchedule(start="08:00", end="16:00"), "sunday": None},
    )

    service.set_business_hours("user_a", mailbox_id, hours)

    stored = repository.get_availability("user_a", mailbox_id)
    assert stored.business_hours == hours
    assert stored.status is ONLINE
    assert len(repository.list_user_history("user_a", mailbox_id)) == 1


def test_invalid_business_hours_rejected(tmp_path, clock):
    service, _, _, mailbox_id = _build_service(tmp_path, clock)

    with pytest.raises(AvailabilityValidationError):
        service.set_business_hours(
            "user_a",
            mailbox_id,
            BusinessHours(timezone="Nowhere/Else", schedule={}),
        )


def test_changes_are_broadcast_to_team_channel(tmp_path, clock):
    service, _, broadcaster, mailbox_id = _build_service(tmp_path, clock)
    received = []
    broadcaster.subscribe(lambda channel, event, payload: received.append((channel, event, payload)))

    service.set_status("user_a", mailbox_id, BUSY, custom_message="Heads down")

    assert len(received) == 1
    channel, event, payload = received[0]
    assert channel == team_channel_id(mailbox_id)
    assert event == AVAILABILITY_UPDATED_EVENT
    assert payload["status"] == "busy"
    assert payload["custom_message"] == "Heads down"


def test_failing_subscriber_does_not_undo_transition(tmp_path, clock):
    service, repository, broadcaster, mailbox_id = _build_service(tmp_path, clock)

    def explode(channel, event, payload):
        raise RuntimeError("socket closed")

    broadcaster.subscribe(explode)

    record = service.set_status("user_a", mailbox_id, ONLINE)

    assert record.status is ONLINE
    assert repository.get_availability("user_a", mailbox_id).status is ONLINE
    assert len(repository.list_user_history("user_a", mailbox_id)) == 1


def test_lost_race_is_retried_without_duplicate_history(tmp_path, clock, monkeypatch):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE)

    original = repository.apply_status_transition
    calls = []

    def lose_first_race(record, entry, expected_status):
        calls.append(expected_status)
        if len(calls) == 1:
            return False
        return original(record, entry, expected_status)

    monkeypatch.setattr(repository, "apply_status_transition", lose_first_race)

    service.set_status("user_a", mailbox_id, BUSY)

    assert calls == [ONLINE, ONLINE]
    assert len(repository.list_user_history("user_a", mailbox_id)) == 2


def _run_before_first_patch(monkeypatch, repository, action):
    original = repository.save_availability_fields
    pending = [action]

    def interleaved(record, expected_status):
        if pending:
            pending.pop()()
        return original(record, expected_status)

    monkeypatch.setattr(repository, "save_availability_fields", interleaved)


def test_activity_patch_racing_auto_away_wakes_the_user(tmp_path, clock, monkeypatch):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    sweeper = ScheduledTransitionSweeper(repository=repository, availability_service=service)
    service.set_status("user_a", mailbox_id, ONLINE, auto_away_at=clock.current + timedelta(minutes=15))
    clock.advance(minutes=16)
    _run_before_first_patch(monkeypatch, repository, lambda: sweeper.sweep(clock.current))

    record = service.record_activity("user_a", mailbox_id)

    stored = repository.get_availability("user_a", mailbox_id)
    assert record.status is ONLINE
    assert stored.status is ONLINE
    assert stored.auto_away_at is None
    history = repository.list_user_history("user_a", mailbox_id)
    assert [(entry.to_status, entry.change_reason) for entry in history[1:]] == [
        (AWAY, ChangeReason.AUTO_INACTIVITY),
        (ONLINE, ChangeReason.AUTO_ACTIVITY),
    ]


def test_field_patch_does_not_revert_concurrent_transition(tmp_path, clock, monkeypatch):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE, custom_message="Taking billing")
    _run_before_first_patch(
        monkeypatch,
        repository,
        lambda: service.set_status("user_a", mailbox_id, BUSY, custom_message="Heads down"),
    )
    hours = BusinessHours(timezone="Europe/London", schedule={"monday": DaySchedule("09:00", "17:00")})

    service.set_business_hours("user_a", mailbox_id, hours)

    stored = repository.get_availability("user_a", mailbox_id)
    assert stored.status is BUSY
    assert stored.custom_message == "Heads down"
    assert stored.business_hours == hours
    assert len(repository.list_user_history("user_a", mailbox_id)) == 2



def test_exhausted_retries_raise_persistence_error(tmp_path, clock, monkeypatch):
    service, repository, _, mailbox_id = _build_service(tmp_path, clock)
    service.set_status("user_a", mailbox_id, ONLINE)
    monkeypatch.setattr(repository, "apply_status_transition", lambda *args, **kwargs: False)

    with pytest.raises(PersistenceError) as exc_info:
        service.set_status("user_a", mailbox_id, BUSY)

    assert exc_info.value.retriable is True
    assert repository.get_availability("user_a", mailbox_id).status is ONLINE
