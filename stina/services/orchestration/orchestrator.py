"""
Scheduling orchestrator: the bounded tool-calling loop.

Each round asks the language model for tool calls or a terminal decision.
Tool calls run through the registry and their results are fed back; a
decision is checked against the slots check_schedule actually returned,
then committed through the state machine in one update that also marks the
consumed communications processed.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from stina.errors import (
    MeetingRequestNotFoundError,
    OrchestrationError,
    PersistenceError,
    PlanningExhaustedError,
    ProviderError,
    SchedulingError,
    ValidationError,
)
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.calendar_domain import CreatedEvent, parse_iso_datetime
from stina.models.domain.meeting_request_domain import (
    FailureRecord,
    MeetingRequest,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    ProgressInfo,
    ScheduledEvent,
    utc_now,
)
from stina.models.domain.preferences_domain import UserPreferences
from stina.repositories.preferences_repository import PreferencesRepository
from stina.services.calendar.google_client import CalendarProvider
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.llm.openai_client import LanguageModel, LanguageModelError, RequestedToolCall
from stina.services.orchestration.decisions import (
    SUBMIT_DECISION,
    DecisionSlot,
    PlanningDecision,
    submit_decision_tool,
)
from stina.services.orchestration.prompts import initial_messages, tool_message
from stina.services.tools.handlers import CHECK_SCHEDULE
from stina.services.tools.registry import ToolContext, ToolRegistry, ToolResult, canonical_arguments

logger = get_logger(__name__)

S = MeetingRequestStatus

ORCHESTRATABLE_STATUSES = frozenset({S.CONTEXT_COLLECTION, S.PENDING_REPLY, S.RESCHEDULED})

NO_TOOL_CALL_NUDGE = (
    "Call one of the available tools, or finish with exactly one submit_decision call."
)


@dataclass
class OrchestrationOutcome:
    meeting_request_id: str
    decision: PlanningDecision
    status: MeetingRequestStatus
    rounds: int
    tool_calls: int
    processed_communication_ids: list[str] = field(default_factory=list)
    scheduled_event: ScheduledEvent | None = None


@dataclass
class _PlanningState:
    """Mutable bookkeeping for one invocation."""

    request_id: str
    preferences: UserPreferences
    consumed_ids: list[str]
    offered_slots: list[tuple[datetime, datetime]] = field(default_factory=list)
    completed_writes: dict[str, ToolResult] = field(default_factory=dict)
    tool_calls: int = 0
    rounds: int = 0


class SchedulingOrchestrator:
    def __init__(
        self,
        state_machine: LifecycleStateMachine,
        registry: ToolRegistry,
        language_model: LanguageModel,
        calendar: CalendarProvider,
        preferences: PreferencesRepository,
        user_email: str | None = None,
        max_rounds: int = 8,
        llm_timeout: float = 45.0,
        commit_max_retries: int = 3,
        commit_backoff_seconds: float = 0.2,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.registry = registry
        self.language_model = language_model
        self.calendar = calendar
        self.preferences = preferences
        self.user_email = user_email
        self.max_rounds = max_rounds
        self.llm_timeout = llm_timeout
        self.commit_max_retries = commit_max_retries
        self.commit_backoff_seconds = commit_backoff_seconds

    async def run(self, meeting_request_id: str) -> OrchestrationOutcome:
        """
        Plan and commit one terminal decision for a request.

        Raises:
            MeetingRequestNotFoundError: unknown id
            ValidationError: request is not in a plannable status
            PlanningExhaustedError: no accepted decision within max_rounds
            OrchestrationError: the model failed, or the commit could not be persisted
        """
        request = await self.repository.get(meeting_request_id)
        if request is None:
            raise MeetingRequestNotFoundError(meeting_request_id)
        if request.status not in ORCHESTRATABLE_STATUSES:
            raise ValidationError(
                f"Cannot orchestrate a request in status {request.status.value}", field="status"
            )

        owner_email = self.user_email or request.creator.email
        preferences = await self.preferences.get(owner_email)
        state = _PlanningState(
            request_id=request.id,
            preferences=preferences,
            consumed_ids=[c.id for c in request.unprocessed_communications()],
        )
        context = ToolContext(
            meeting_request_id=request.id, user_email=owner_email, preferences=preferences
        )

        with structlog.contextvars.bound_contextvars(meeting_request_id=request.id):
            logger.info(
                "Orchestration started",
                status=request.status.value,
                pending_communications=len(state.consumed_ids),
            )
            return await self._plan(request, state, context)

    async def _plan(
        self, request: MeetingRequest, state: _PlanningState, context: ToolContext
    ) -> OrchestrationOutcome:
        messages = initial_messages(request, state.preferences, utc_now())
        tools = self.registry.catalogue() + [submit_decision_tool()]

        for round_number in range(1, self.max_rounds + 1):
            state.rounds = round_number
            try:
                reply = await asyncio.wait_for(
                    self.language_model.plan_with_tools(messages, tools), self.llm_timeout
                )
            except TimeoutError:
                logger.warning("Planning round timed out", round=round_number, timeout=self.llm_timeout)
                continue
            except LanguageModelError as e:
                error = OrchestrationError(f"Language model failed during planning: {e}")
                await self._record_failure(state.request_id, error)
                raise error from e

            if not reply.tool_calls:
                logger.info("Planner replied without tool calls", round=round_number)
                if reply.text:
                    messages.append({"role": "assistant", "content": reply.text})
                messages.append({"role": "user", "content": NO_TOOL_CALL_NUDGE})
                continue

            messages.append(_assistant_message(reply.text, reply.tool_calls))
            for call in reply.tool_calls:
                if call.name == SUBMIT_DECISION:
                    outcome = await self._handle_decision(call, state)
                    if isinstance(outcome, OrchestrationOutcome):
                        return outcome
                    messages.append(tool_message(call.id, outcome.to_model_payload()))
                    continue

                result = await self._execute_tool(call, context, state)
                messages.append(tool_message(call.id, result.to_model_payload()))

            logger.info("Planning round finished", round=round_number, tool_calls=state.tool_calls)

        error = PlanningExhaustedError(self.max_rounds)
        await self._record_failure(state.request_id, error)
        logger.error("Planning exhausted", rounds=self.max_rounds)
        raise error

    async def _execute_tool(
        self, call: RequestedToolCall, context: ToolContext, state: _PlanningState
    ) -> ToolResult:
        spec = self.registry.get(call.name)
        dedup_key = None

        if spec is not None and spec.side_effect == "write":
            try:
                _, arguments = self.registry.validate(call.name, call.arguments_json)
            except SchedulingError:
                # execute() reports the same failure back to the planner
                pass
            else:
                dedup_key = f"{call.name}:{canonical_arguments(arguments.model_dump(mode='json'))}"
                previous = state.completed_writes.get(dedup_key)
                if previous is not None:
                    logger.info("Skipping repeated write tool call", tool=call.name)
                    return previous

        result = await self.registry.execute(call.name, call.arguments_json, context)
        state.tool_calls += 1

        if result.success and dedup_key:
            state.completed_writes[dedup_key] = result
        if result.success and call.name == CHECK_SCHEDULE:
            state.offered_slots.extend(_slots_from_output(result.output))
        return result

    async def _handle_decision(
        self, call: RequestedToolCall, state: _PlanningState
    ) -> OrchestrationOutcome | ToolResult:
        """Commit an acceptable decision, or return the reason it was rejected."""
        try:
            decision = PlanningDecision.model_validate(json.loads(call.arguments_json or "{}"))
        except json.JSONDecodeError as e:
            return ToolResult.failure(SUBMIT_DECISION, "invalid_input", f"Arguments are not valid JSON: {e}")
        except PydanticValidationError as e:
            detail = e.errors()[0]
            return ToolResult.failure(
                SUBMIT_DECISION,
                "invalid_input",
                detail.get("msg", "invalid decision"),
                field=".".join(str(part) for part in detail.get("loc", ())) or None,
            )

        unoffered = [slot for slot in decision.slots if not _was_offered(slot, state.offered_slots)]
        if unoffered:
            logger.info("Decision rejected: slot not offered", kind=decision.kind)
            return ToolResult.failure(
                SUBMIT_DECISION,
                "invalid_input",
                "Every slot must be one returned by a successful check_schedule call; "
                "when none fits, use request_clarification",
                field="slots",
            )

        event = None
        if decision.kind == "book":
            try:
                event = await self._create_event(state, decision)
            except ProviderError as e:
                logger.warning("Booking failed", error=str(e), kind=e.kind)
                return ToolResult.failure(SUBMIT_DECISION, e.kind, f"Could not create the calendar event: {e}")

        updated = await self._commit(state, decision, event)
        logger.info(
            "Orchestration committed",
            decision=decision.kind,
            status=updated.status.value,
            rounds=state.rounds,
            tool_calls=state.tool_calls,
        )
        return OrchestrationOutcome(
            meeting_request_id=updated.id,
            decision=decision,
            status=updated.status,
            rounds=state.rounds,
            tool_calls=state.tool_calls,
            processed_communication_ids=list(state.consumed_ids),
            scheduled_event=updated.scheduled_event,
        )

    async def _create_event(self, state: _PlanningState, decision: PlanningDecision) -> CreatedEvent:
        request = await self.repository.get(state.request_id)
        if request is None:
            raise MeetingRequestNotFoundError(state.request_id)

        slot = decision.slots[0]
        return await self.calendar.create_event(
            summary=decision.event_title or request.metadata.agenda or "Meeting",
            start=slot.start,
            end=slot.end,
            timezone=slot.timezone or state.preferences.timezone,
            attendees=[p.email for p in request.participants],
            description=decision.summary or request.context.summary,
            location=slot.location.name if slot.location else (request.metadata.location or ""),
        )

    def _commit_fields(
        self, state: _PlanningState, decision: PlanningDecision, event: CreatedEvent | None
    ) -> MeetingRequestUpdate:
        fields = MeetingRequestUpdate(
            context_summary=decision.summary,
            processed_communication_ids=list(state.consumed_ids),
            clear_last_failure=True,
        )
        if decision.slots:
            fields.proposed_times = [
                slot.to_proposed_time(state.preferences.timezone) for slot in decision.slots
            ]
        if event is not None:
            fields.scheduled_event = ScheduledEvent(
                external_event_id=event.event_id,
                calendar_id=event.calendar_id,
                start=event.start,
                end=event.end,
            )
        if decision.reason:
            fields.progress = ProgressInfo(
                percent=100 if decision.kind in ("book", "cancel") else 50,
                note=decision.reason[:500],
            )
        return fields

    async def _commit(
        self, state: _PlanningState, decision: PlanningDecision, event: CreatedEvent | None
    ) -> MeetingRequest:
        fields = self._commit_fields(state, decision, event)
        delay = self.commit_backoff_seconds
        last_error: SchedulingError | None = None

        for attempt in range(1, self.commit_max_retries + 1):
            try:
                current = await self.repository.get(state.request_id)
                if current is None:
                    raise MeetingRequestNotFoundError(state.request_id)

                target = commit_target(decision, current.status)
                if target is None:
                    return await self.state_machine.apply_fields(
                        current.id, fields, expected_status=current.status
                    )
                return await self.state_machine.apply_transition(
                    current.id, target, fields=fields, trigger="orchestration"
                )
            except PersistenceError as e:
                last_error = e
                if not e.recoverable or attempt == self.commit_max_retries:
                    break
                logger.warning(
                    "Commit failed, retrying",
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                delay *= 2
            except SchedulingError as e:
                last_error = e
                break

        if event is not None:
            await self._compensate(event)

        error = OrchestrationError(
            f"Could not persist the {decision.kind} decision: {last_error.reason}"
        )
        await self._record_failure(state.request_id, error)
        raise error from last_error

    async def _compensate(self, event: CreatedEvent) -> None:
        try:
            await self.calendar.delete_event(event.event_id)
            logger.info("Compensated orphaned calendar event", event_id=event.event_id)
        except ProviderError as e:
            logger.error(
                "Failed to delete orphaned calendar event",
                event_id=event.event_id,
                error=str(e),
            )

    async def _record_failure(self, meeting_request_id: str, error: SchedulingError) -> None:
        """Leave an inspectable reason on the request; status is not touched."""
        try:
            await self.state_machine.apply_fields(
                meeting_request_id,
                MeetingRequestUpdate(
                    last_failure=FailureRecord(
                        stage="orchestration",
                        error_type=error.error_type,
                        reason=error.reason,
                        occurred_at=utc_now(),
                    )
                ),
            )
        except SchedulingError as e:
            logger.error(
                "Could not record orchestration failure",
                meeting_request_id=meeting_request_id,
                original_error=error.reason,
                error=str(e),
            )


def commit_target(
    decision: PlanningDecision, current: MeetingRequestStatus
) -> MeetingRequestStatus | None:
    """Status a decision moves to from `current`; None means fields only."""
    if decision.kind == "book":
        return S.SCHEDULED
    if decision.kind == "cancel":
        return S.CANCELLED
    if current in (S.PENDING_REPLY, S.RESCHEDULED):
        return None
    return S.PENDING_REPLY


def _assistant_message(text: str | None, calls: list[RequestedToolCall]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": text,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments_json},
            }
            for call in calls
        ],
    }


def _slots_from_output(output: dict[str, Any] | None) -> list[tuple[datetime, datetime]]:
    return [
        (parse_iso_datetime(slot["start"]), parse_iso_datetime(slot["end"]))
        for slot in (output or {}).get("available_slots", [])
    ]


def _was_offered(slot: DecisionSlot, offered: list[tuple[datetime, datetime]]) -> bool:
    # Aware datetimes compare as instants, whatever offset the model wrote
    return any(start == slot.start and end == slot.end for start, end in offered)
