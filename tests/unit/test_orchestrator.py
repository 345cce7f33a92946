"""
Tests for the planning loop: terminal decisions, the round bound, write
deduplication, slot checking against check_schedule output, and the
commit retry / compensation path.
"""

import asyncio
import json
from datetime import timedelta, timezone

import pytest

from stina.errors import (
    OrchestrationError,
    PersistenceError,
    PlanningExhaustedError,
    ProviderError,
    ValidationError,
)
from stina.models.domain.calendar_domain import BusyPeriod
from stina.models.domain.meeting_request_domain import MeetingRequestStatus, ProposedTime
from stina.services.llm.openai_client import LanguageModelError
from stina.services.orchestration.decisions import PlanningDecision
from stina.services.orchestration.orchestrator import (
    NO_TOOL_CALL_NUDGE,
    SchedulingOrchestrator,
    commit_target,
)
from tests.fakes import (
    GUEST_EMAIL,
    USER_EMAIL,
    FakeLanguageModel,
    at,
    check_schedule_call,
    decision_call,
    make_communication,
    reply,
    tool_call,
)

S = MeetingRequestStatus

BOOKED_SLOT = (at(11, 15), at(11, 45))


class HookedLanguageModel(FakeLanguageModel):
    """Runs `hook` just before answering the second planning round."""

    def __init__(self, replies, hook):
        super().__init__(replies=replies)
        self.hook = hook

    async def plan_with_tools(self, messages, tools):
        if len(self.planner_calls) == 1:
            await self.hook()
        return await super().plan_with_tools(messages, tools)


class SlowLanguageModel(FakeLanguageModel):
    async def plan_with_tools(self, messages, tools):
        self.planner_calls.append(messages)
        await asyncio.sleep(1)


@pytest.fixture
def build_orchestrator(state_machine, registry, calendar, preferences_repository):
    def _build(language_model, **overrides):
        options = {
            "user_email": USER_EMAIL,
            "max_rounds": 4,
            "llm_timeout": 1.0,
            "commit_max_retries": 3,
            "commit_backoff_seconds": 0,
        }
        options.update(overrides)
        return SchedulingOrchestrator(
            state_machine=state_machine,
            registry=registry,
            language_model=language_model,
            calendar=calendar,
            preferences=preferences_repository,
            **options,
        )

    return _build


@pytest.fixture(autouse=True)
def busy_morning(calendar):
    calendar.busy = [BusyPeriod(at(10), at(11))]


def tool_payloads(messages):
    return {m["tool_call_id"]: json.loads(m["content"]) for m in messages if m["role"] == "tool"}


class TestDecisions:
    @pytest.mark.asyncio
    async def test_book_creates_event_and_schedules(
        self, make_request, orchestrator, language_model, calendar, repository
    ):
        await make_request()
        language_model.replies = [
            reply(check_schedule_call()),
            reply(
                decision_call(
                    "book",
                    [BOOKED_SLOT],
                    summary="Booked",
                    reason="First free slot",
                    event_title="Catch-up",
                )
            ),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED
        assert outcome.rounds == 2
        assert outcome.tool_calls == 1
        assert outcome.processed_communication_ids == ["comm-1"]
        assert calendar.created[0]["summary"] == "Catch-up"
        assert calendar.created[0]["attendees"] == [GUEST_EMAIL]

        stored = await repository.get("meeting_test")
        assert stored.status == S.SCHEDULED
        assert stored.scheduled_event.external_event_id == "evt-1"
        assert stored.proposed_times[0].start == BOOKED_SLOT[0]
        assert stored.context.summary == "Booked"
        assert stored.progress.percent == 100
        assert all(c.processed for c in stored.communications)

    @pytest.mark.asyncio
    async def test_propose_moves_to_pending_reply(
        self, make_request, orchestrator, language_model, calendar, repository
    ):
        await make_request()
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("propose", [(at(9), at(9, 30)), BOOKED_SLOT], reason="Two options")),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.PENDING_REPLY
        assert outcome.scheduled_event is None
        assert calendar.created == []
        stored = await repository.get("meeting_test")
        assert [t.start for t in stored.proposed_times] == [at(9), at(11, 15)]
        assert stored.progress.percent == 50

    @pytest.mark.asyncio
    async def test_propose_while_pending_reply_only_writes_fields(
        self, make_request, orchestrator, language_model, repository
    ):
        await make_request(status=S.PENDING_REPLY)
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("propose", [BOOKED_SLOT])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.PENDING_REPLY
        stored = await repository.get("meeting_test")
        assert len(stored.proposed_times) == 1
        assert stored.communications[0].processed

    @pytest.mark.asyncio
    async def test_clarification_needs_no_slots(
        self, make_request, orchestrator, language_model, repository
    ):
        await make_request()
        language_model.replies = [
            reply(decision_call("request_clarification", summary="Asked Sam for a timeframe"))
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.PENDING_REPLY
        assert outcome.decision.kind == "request_clarification"
        assert (await repository.get("meeting_test")).context.summary == "Asked Sam for a timeframe"

    @pytest.mark.asyncio
    async def test_cancel(self, make_request, orchestrator, language_model, repository):
        await make_request()
        language_model.replies = [reply(decision_call("cancel", reason="Sam withdrew the request"))]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.CANCELLED
        stored = await repository.get("meeting_test")
        assert stored.progress.note == "Sam withdrew the request"

    @pytest.mark.asyncio
    async def test_rescheduled_request_can_be_booked_again(
        self, make_request, orchestrator, language_model, repository
    ):
        last_week = at(0) - timedelta(days=7)
        previous = ProposedTime(start=at(9, day=last_week), end=at(9, 30, day=last_week), timezone="UTC")
        await make_request(status=S.RESCHEDULED, proposed_times=[previous])
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("book", [BOOKED_SLOT])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED
        assert outcome.scheduled_event.external_event_id == "evt-1"
        stored = await repository.get("meeting_test")
        assert [t.start for t in stored.proposed_times] == [BOOKED_SLOT[0]]


class TestDecisionChecks:
    @pytest.mark.asyncio
    async def test_slot_not_returned_by_check_schedule_is_rejected(
        self, make_request, orchestrator, language_model, calendar
    ):
        await make_request()
        language_model.replies = [
            reply(decision_call("book", [(at(10), at(10, 30))])),
            reply(check_schedule_call()),
            reply(decision_call("book", [(at(9), at(9, 30))])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED
        assert outcome.rounds == 3
        assert len(calendar.created) == 1
        rejection = tool_payloads(language_model.planner_calls[1])["call_decision_book"]
        assert rejection["success"] is False
        assert rejection["field"] == "slots"

    @pytest.mark.asyncio
    async def test_busy_slot_is_rejected_even_after_check(
        self, make_request, orchestrator, language_model, calendar
    ):
        await make_request()
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("book", [(at(10), at(10, 30))])),
            reply(decision_call("request_clarification")),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.decision.kind == "request_clarification"
        assert calendar.created == []

    @pytest.mark.asyncio
    async def test_offered_slot_matches_in_any_offset(self, make_request, orchestrator, language_model):
        await make_request()
        plus_one = timezone(timedelta(hours=1))
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("book", [tuple(t.astimezone(plus_one) for t in BOOKED_SLOT)])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED

    @pytest.mark.asyncio
    async def test_malformed_decision_is_fed_back(self, make_request, orchestrator, language_model):
        await make_request()
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("book", [(at(9), at(9, 30)), BOOKED_SLOT])),
            reply(decision_call("book", [BOOKED_SLOT])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED
        rejection = tool_payloads(language_model.planner_calls[2])["call_decision_book"]
        assert rejection["error_kind"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_calendar_failure_is_fed_back(
        self, make_request, orchestrator, language_model, calendar, repository
    ):
        await make_request()
        calendar.create_error = ProviderError("calendar down", kind="unavailable", status_code=503)
        language_model.replies = [
            reply(check_schedule_call()),
            reply(decision_call("book", [BOOKED_SLOT])),
            reply(decision_call("propose", [BOOKED_SLOT])),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.PENDING_REPLY
        failure = tool_payloads(language_model.planner_calls[2])["call_decision_book"]
        assert failure["error_kind"] == "unavailable"
        assert (await repository.get("meeting_test")).scheduled_event is None


class TestLoop:
    @pytest.mark.asyncio
    async def test_tools_include_submit_decision(self, make_request, orchestrator, language_model):
        await make_request()
        language_model.replies = [reply(decision_call("request_clarification"))]

        await orchestrator.run("meeting_test")

        names = [tool["function"]["name"] for tool in language_model.tools]
        assert names[-1] == "submit_decision"
        assert "check_schedule" in names

    @pytest.mark.asyncio
    async def test_reply_without_tool_calls_is_nudged(self, make_request, orchestrator, language_model):
        await make_request()
        language_model.replies = [
            reply(text="I think Monday works."),
            reply(decision_call("request_clarification")),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.rounds == 2
        second_round = language_model.planner_calls[1]
        assert second_round[-2] == {"role": "assistant", "content": "I think Monday works."}
        assert second_round[-1] == {"role": "user", "content": NO_TOOL_CALL_NUDGE}

    @pytest.mark.asyncio
    async def test_repeated_write_runs_once(self, make_request, orchestrator, language_model, messaging):
        await make_request()
        arguments = {"recipients": [GUEST_EMAIL], "subject": "Re: Catch-up", "body": "Monday 11:15?"}
        language_model.replies = [
            reply(
                tool_call("send_message", arguments, "call_a"),
                tool_call("send_message", arguments, "call_b"),
            ),
            reply(tool_call("send_message", arguments, "call_c")),
            reply(decision_call("request_clarification")),
        ]

        outcome = await orchestrator.run("meeting_test")

        assert len(messaging.sent) == 1
        assert outcome.tool_calls == 1
        payloads = tool_payloads(language_model.planner_calls[2])
        assert payloads["call_a"] == payloads["call_b"] == payloads["call_c"]
        assert payloads["call_a"]["success"] is True

    @pytest.mark.asyncio
    async def test_round_limit_raises_and_records_failure(
        self, make_request, orchestrator, language_model, repository
    ):
        request = await make_request()

        with pytest.raises(PlanningExhaustedError) as exc_info:
            await orchestrator.run("meeting_test")

        assert exc_info.value.rounds == 4
        assert len(language_model.planner_calls) == 4
        stored = await repository.get("meeting_test")
        assert stored.status == request.status
        assert stored.last_failure.error_type == "planning_exhausted"
        assert not stored.communications[0].processed

    @pytest.mark.asyncio
    async def test_model_timeout_counts_as_a_round(self, make_request, build_orchestrator):
        await make_request()
        model = SlowLanguageModel()
        orchestrator = build_orchestrator(model, max_rounds=2, llm_timeout=0.01)

        with pytest.raises(PlanningExhaustedError):
            await orchestrator.run("meeting_test")

        assert len(model.planner_calls) == 2

    @pytest.mark.asyncio
    async def test_model_failure_raises_orchestration_error(
        self, make_request, orchestrator, language_model, repository
    ):
        await make_request()
        language_model.replies = [LanguageModelError("upstream 500")]

        with pytest.raises(OrchestrationError):
            await orchestrator.run("meeting_test")

        stored = await repository.get("meeting_test")
        assert stored.last_failure.stage == "orchestration"
        assert stored.status == S.CONTEXT_COLLECTION

    @pytest.mark.asyncio
    async def test_unplannable_status_rejected(self, make_request, orchestrator):
        await make_request(status=S.ANALYSING_EMAIL, extracted=False)

        with pytest.raises(ValidationError):
            await orchestrator.run("meeting_test")

    @pytest.mark.asyncio
    async def test_message_arriving_mid_plan_stays_unprocessed(
        self, make_request, build_orchestrator, ingestion_service, repository
    ):
        await make_request()

        async def new_message():
            await ingestion_service.ingest_communication(
                "meeting_test", make_communication("comm-2", content="Actually, Tuesday please")
            )

        model = HookedLanguageModel(
            [reply(check_schedule_call()), reply(decision_call("propose", [BOOKED_SLOT]))], new_message
        )

        outcome = await build_orchestrator(model).run("meeting_test")

        assert outcome.processed_communication_ids == ["comm-1"]
        stored = await repository.get("meeting_test")
        assert [c.id for c in stored.unprocessed_communications()] == ["comm-2"]


class TestCommit:
    @pytest.mark.asyncio
    async def test_transient_persistence_failure_is_retried(
        self, make_request, orchestrator, language_model, state_machine, monkeypatch
    ):
        await make_request()
        attempts = []
        original = state_machine.apply_transition

        async def flaky(*args, **kwargs):
            attempts.append(kwargs.get("trigger"))
            if len(attempts) < 3:
                raise PersistenceError("connection reset", operation="update")
            return await original(*args, **kwargs)

        monkeypatch.setattr(state_machine, "apply_transition", flaky)
        language_model.replies = [reply(check_schedule_call()), reply(decision_call("book", [BOOKED_SLOT]))]

        outcome = await orchestrator.run("meeting_test")

        assert outcome.status == S.SCHEDULED
        assert attempts == ["orchestration"] * 3

    @pytest.mark.asyncio
    async def test_persistent_failure_deletes_created_event(
        self, make_request, orchestrator, language_model, calendar, state_machine, repository, monkeypatch
    ):
        await make_request()

        async def always_fails(*args, **kwargs):
            raise PersistenceError("database unavailable", operation="update")

        monkeypatch.setattr(state_machine, "apply_transition", always_fails)
        language_model.replies = [reply(check_schedule_call()), reply(decision_call("book", [BOOKED_SLOT]))]

        with pytest.raises(OrchestrationError):
            await orchestrator.run("meeting_test")

        assert calendar.deleted == ["evt-1"]
        stored = await repository.get("meeting_test")
        assert stored.status == S.CONTEXT_COLLECTION
        assert stored.scheduled_event is None
        assert stored.last_failure.error_type == "orchestration_error"
        assert not stored.communications[0].processed

    @pytest.mark.asyncio
    async def test_request_cancelled_mid_plan_rolls_back_booking(
        self, make_request, build_orchestrator, state_machine, calendar, repository
    ):
        await make_request()

        async def cancel():
            await state_machine.apply_transition("meeting_test", S.CANCELLED)

        model = HookedLanguageModel(
            [reply(check_schedule_call()), reply(decision_call("book", [BOOKED_SLOT]))], cancel
        )

        with pytest.raises(OrchestrationError):
            await build_orchestrator(model).run("meeting_test")

        assert calendar.deleted == ["evt-1"]
        assert (await repository.get("meeting_test")).status == S.CANCELLED


@pytest.mark.parametrize(
    "kind, current, expected",
    [
        ("book", S.CONTEXT_COLLECTION, S.SCHEDULED),
        ("book", S.RESCHEDULED, S.SCHEDULED),
        ("cancel", S.PENDING_REPLY, S.CANCELLED),
        ("propose", S.CONTEXT_COLLECTION, S.PENDING_REPLY),
        ("propose", S.PENDING_REPLY, None),
        ("request_clarification", S.RESCHEDULED, None),
        ("request_clarification", S.CONTEXT_COLLECTION, S.PENDING_REPLY),
    ],
)
def test_commit_target(kind, current, expected):
    slots = {
        "book": [{"start": BOOKED_SLOT[0], "end": BOOKED_SLOT[1]}],
        "propose": [{"start": BOOKED_SLOT[0], "end": BOOKED_SLOT[1]}],
    }.get(kind, [])
    decision = PlanningDecision(kind=kind, slots=slots, reason="because")
    assert commit_target(decision, current) == expected
