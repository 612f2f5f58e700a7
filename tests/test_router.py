#!/usr/bin/env python3
"""
Tests for the dispatch router.

Tests:
- End-to-end dispatch (match, no match, multi-step sessions)
- Idempotent dispatch
- Constraint enforcement and duration estimates
- Handler failures and shutdown

Run with: pytest tests/test_router.py -v
"""
import asyncio
import os
import sys
import time
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _router(profile=None):
    from src.interactions.registry import HandlerRegistry
    from src.interactions.router import DispatchRouter

    registry = HandlerRegistry()
    return DispatchRouter(registry, profile=profile)


def _register(router, kind, key, handler, **options):
    from src.interactions.registry import HandlerRegistration
    return router.registry.register(HandlerRegistration.create(kind, key, handler, **options))


# =============================================================================
# TEST: End-to-end
# =============================================================================

class TestDispatch:
    """End-to-end dispatch through the router."""

    def test_command_is_handled(self):
        """A registered command returns the handler's response."""
        from src.interactions.model import Interaction, OutcomeKind, Response

        router = _router()
        reply = Response.message("pong")

        async def handle_ping(interaction, ctx):
            return reply

        _register(router, "command", "ping", handle_ping)
        outcome = asyncio.run(router.dispatch(Interaction.create("command", "ping")))

        assert outcome.kind == OutcomeKind.HANDLED
        assert outcome.ok == True
        assert outcome.response is reply
        print("✓ Command handled")

    def test_unknown_component_is_no_match(self):
        from src.interactions.model import Interaction, NoMatch

        router = _router()
        _register(router, "component", "confirm-delete", lambda i, c: "deleted")

        outcome = asyncio.run(router.dispatch(Interaction.create("component", "confirm-other")))
        assert isinstance(outcome, NoMatch)
        assert outcome.routing_key == "confirm-other"
        print("✓ Unmatched routing key gives NoMatch")

    def test_form_follow_up_sees_command_session(self):
        """A form submission reads the session its command started."""
        from src.interactions.model import Interaction, OutcomeKind, Response, ResponseType

        router = _router()
        seen = {}

        async def handle_feedback(interaction, ctx):
            ctx.start_session(topic="billing", ticket=42)
            return Response.form("feedback-form", "Feedback")

        async def handle_feedback_form(interaction, ctx):
            seen.update(ctx.session.data)
            return Response.message("Thanks!")

        _register(router, "command", "feedback", handle_feedback)
        _register(router, "form_submit", "feedback-form", handle_feedback_form)

        command = Interaction.create("command", "feedback", origin_user="user-1")
        form = Interaction.create("form_submit", "feedback-form", origin_user="user-1",
                                  parent_interaction_id=command.id)

        async def scenario():
            first = await router.dispatch(command)
            second = await router.dispatch(form)
            return first, second

        first, second = asyncio.run(scenario())
        assert first.response.type == ResponseType.FORM
        assert second.kind == OutcomeKind.HANDLED
        assert seen == {"topic": "billing", "ticket": 42}
        print("✓ Multi-step session carried to the follow-up")

    def test_missing_parent_session_gets_empty_session(self):
        from src.interactions.model import Interaction, OutcomeKind

        router = _router()
        seen = []

        def handle_form(interaction, ctx):
            seen.append(ctx.session)
            return None

        _register(router, "form_submit", "survey", handle_form)
        outcome = asyncio.run(router.dispatch(
            Interaction.create("form_submit", "survey", parent_interaction_id="long-gone")
        ))

        assert outcome.kind == OutcomeKind.HANDLED
        assert seen[0] is not None
        assert seen[0].data == {}
        # The parent id now resolves to the synthetic session
        assert router.store.resolve_interaction("long-gone").correlation_id == seen[0].correlation_id
        print("✓ Synthetic session created for unknown parent")

    def test_sync_handler_and_coercion(self):
        """Sync handlers run off-loop; dicts become messages, None an ack."""
        from src.interactions.model import Interaction, ResponseType

        router = _router()
        _register(router, "command", "stats", lambda i, c: {"content": "42 users", "ephemeral": True})
        _register(router, "component", "dismiss", lambda i, c: None)

        async def scenario():
            return (await router.dispatch(Interaction.create("command", "stats")),
                    await router.dispatch(Interaction.create("component", "dismiss")))

        stats, dismiss = asyncio.run(scenario())
        assert stats.response.type == ResponseType.MESSAGE
        assert stats.response.content == "42 users"
        assert stats.response.ephemeral == True
        assert dismiss.response.type == ResponseType.ACK
        print("✓ Return values coerced")


# =============================================================================
# TEST: Idempotence
# =============================================================================

class TestIdempotence:
    """The same interaction id never runs its handler twice."""

    def test_sequential_duplicates(self):
        from src.interactions.model import Interaction

        router = _router()
        calls = {"count": 0}

        async def handle_count(interaction, ctx):
            calls["count"] += 1
            return str(calls["count"])

        _register(router, "command", "count", handle_count)
        interaction = Interaction.create("command", "count")

        async def scenario():
            first = await router.dispatch(interaction)
            second = await router.dispatch(interaction)
            return first, second

        first, second = asyncio.run(scenario())
        assert calls["count"] == 1
        assert first is second
        print("✓ Sequential duplicate returns first outcome")

    def test_concurrent_duplicates(self):
        from src.interactions.model import Interaction

        router = _router()
        calls = {"count": 0}

        async def handle_slow(interaction, ctx):
            calls["count"] += 1
            await asyncio.sleep(0.05)
            return "done"

        _register(router, "command", "slow", handle_slow)
        interaction = Interaction.create("command", "slow")

        async def scenario():
            return await asyncio.gather(*(router.dispatch(interaction) for _ in range(5)))

        outcomes = asyncio.run(scenario())
        assert calls["count"] == 1
        assert len({id(o) for o in outcomes}) == 1
        print("✓ Concurrent duplicates share one run")

    def test_duplicate_window_is_bounded(self):
        """Ids evicted from the window run again on redelivery."""
        from src.interactions.model import Interaction
        from src.interactions.registry import HandlerRegistry
        from src.interactions.router import DispatchRouter

        router = DispatchRouter(HandlerRegistry(), dedupe_capacity=2)
        calls = []
        _register(router, "command", "count", lambda i, c: calls.append(i.id))

        async def scenario():
            for interaction_id in ("1", "2", "3", "1", "3"):
                await router.dispatch(Interaction.create("command", "count", interaction_id=interaction_id))

        asyncio.run(scenario())
        # "1" was evicted by "3"; "3" was still remembered
        assert calls == ["1", "2", "3", "1"]
        print("✓ Duplicate window keeps the most recent ids")



# =============================================================================
# TEST: Constraints
# =============================================================================

class TestConstraints:
    """Constraint profile enforcement."""

    def test_slow_handler_violates_short_limit(self):
        """100ms limit without background execution, 200ms handler."""
        from src.interactions.model import ConstraintViolated, Interaction
        from src.runtime.constraints import ConstraintProfile

        router = _router(ConstraintProfile(max_execution_time=0.1, supports_background_execution=False))
        finished = []

        async def handle_slow(interaction, ctx):
            await asyncio.sleep(0.2)
            finished.append(True)
            return "too late"

        _register(router, "command", "slow", handle_slow)

        async def scenario():
            outcome = await router.dispatch(Interaction.create("command", "slow"))
            await asyncio.sleep(0.15)
            return outcome

        outcome = asyncio.run(scenario())
        assert isinstance(outcome, ConstraintViolated)
        # The handler was cancelled, not left running
        assert finished == []
        print("✓ Slow handler produces ConstraintViolated")

    def test_background_host_only_bounded_by_execution_time(self):
        """With background execution the ack deadline does not cut the handler."""
        from src.interactions.model import Interaction, OutcomeKind
        from src.runtime.constraints import ConstraintProfile

        router = _router(ConstraintProfile(max_execution_time=5.0, supports_background_execution=True))

        async def handle_report(interaction, ctx):
            await asyncio.sleep(0.05)
            return "report"

        _register(router, "command", "report", handle_report)
        # Deadline already passed on arrival
        interaction = Interaction.create("command", "report", received_at=time.time() - 10)
        outcome = asyncio.run(router.dispatch(interaction))
        assert outcome.kind == OutcomeKind.HANDLED
        print("✓ Background-capable host lets late handlers finish")

    def test_expired_deadline_without_background_rejects(self):
        from src.interactions.model import ConstraintViolated, Interaction
        from src.runtime.constraints import get_constraint_profile

        router = _router(get_constraint_profile("aws-lambda"))
        handler = MagicMock(return_value="never")
        _register(router, "command", "late", handler)

        interaction = Interaction.create("command", "late", received_at=time.time() - 10)
        outcome = asyncio.run(router.dispatch(interaction))
        assert isinstance(outcome, ConstraintViolated)
        handler.assert_not_called()
        print("✓ Past deadline rejected before invocation")

    def test_declared_duration_short_circuits(self):
        from src.interactions.model import ConstraintViolated, Interaction
        from src.runtime.constraints import ConstraintProfile

        router = _router(ConstraintProfile(max_execution_time=1.0, supports_background_execution=False))
        calls = []

        def handle_export(interaction, ctx):
            calls.append(1)
            return "exported"

        _register(router, "command", "export", handle_export, expected_duration=30.0)
        outcome = asyncio.run(router.dispatch(Interaction.create("command", "export")))

        assert isinstance(outcome, ConstraintViolated)
        assert "expected duration" in outcome.reason
        assert calls == []
        print("✓ Declared duration checked before invoking")

    def test_duration_estimator(self):
        from src.interactions.registry import HandlerRegistration
        from src.interactions.router import DurationEstimator

        estimator = DurationEstimator(alpha=0.5)
        registration = HandlerRegistration.create("command", "x", lambda i, c: None)
        assert estimator.estimate(registration) is None
        estimator.record(registration, 2.0)
        estimator.record(registration, 4.0)
        assert estimator.estimate(registration) == 3.0

        declared = HandlerRegistration.create("command", "y", lambda i, c: None, expected_duration=1.5)
        estimator.record(declared, 10.0)
        assert estimator.estimate(declared) == 1.5
        print("✓ Estimates are EWMA unless declared")

    def test_caller_deadline_settles_outcome(self):
        """A caller's cutoff bounds the handler even on background hosts."""
        from src.interactions.model import ConstraintViolated, Interaction

        router = _router()
        finished = []

        async def handle_slow(interaction, ctx):
            await asyncio.sleep(0.2)
            finished.append(interaction.id)

        _register(router, "command", "slow", handle_slow)
        interaction = Interaction.create("command", "slow")

        async def scenario():
            first = await router.dispatch(interaction, deadline=time.time() + 0.05)
            second = await router.dispatch(interaction)
            await asyncio.sleep(0.25)
            return first, second

        first, second = asyncio.run(scenario())
        assert isinstance(first, ConstraintViolated)
        assert second is first
        assert finished == []
        print("✓ Caller deadline cuts off the handler once")

    def test_sync_handler_thread_outlives_its_budget(self):
        """Executor threads cannot be cancelled; only the outcome is settled."""
        from src.interactions.model import ConstraintViolated, Interaction

        router = _router()
        finished = []

        def handle_blocking(interaction, ctx):
            time.sleep(0.15)
            finished.append(interaction.id)
            return "too late"

        _register(router, "command", "blocking", handle_blocking)
        interaction = Interaction.create("command", "blocking", interaction_id="sync-1")

        outcome = asyncio.run(router.dispatch(interaction, deadline=time.time() + 0.05))
        assert isinstance(outcome, ConstraintViolated)
        # asyncio.run waits for the default executor before returning
        assert finished == ["sync-1"]
        print("✓ Sync handler finishes in its thread after the cutoff")



# =============================================================================
# TEST: Failures & Shutdown
# =============================================================================

class TestFailures:
    """Handler failures, store failures and shutdown."""

    def test_handler_exception_becomes_outcome(self):
        from src.interactions.model import HandlerFailed, Interaction

        router = _router()
        error = ValueError("boom")

        async def handle_broken(interaction, ctx):
            raise error

        _register(router, "command", "broken", handle_broken)
        outcome = asyncio.run(router.dispatch(Interaction.create("command", "broken")))

        assert isinstance(outcome, HandlerFailed)
        assert outcome.error is error
        assert outcome.to_dict()["outcome"] == "handler_failed"
        print("✓ Handler exception captured")

    def test_unsupported_return_type_fails(self):
        from src.interactions.model import HandlerFailed, Interaction

        router = _router()
        _register(router, "command", "odd", lambda i, c: 42)
        outcome = asyncio.run(router.dispatch(Interaction.create("command", "odd")))
        assert isinstance(outcome, HandlerFailed)
        assert isinstance(outcome.error, TypeError)
        print("✓ Unsupported return type is a failure")

    def test_context_store_error_propagates(self):
        from src.interactions.context_store import ContextStore
        from src.interactions.errors import ContextStoreError
        from src.interactions.model import Interaction
        from src.interactions.registry import HandlerRegistry
        from src.interactions.router import DispatchRouter

        backend = MagicMock()
        backend.load_link.side_effect = RuntimeError("corrupt")
        router = DispatchRouter(HandlerRegistry(), store=ContextStore(backend=backend))
        _register(router, "form_submit", "survey", lambda i, c: "ok")

        try:
            asyncio.run(router.dispatch(
                Interaction.create("form_submit", "survey", parent_interaction_id="p-1")
            ))
            assert False, "expected ContextStoreError"
        except ContextStoreError as e:
            assert "corrupt" in str(e)
        print("✓ Store failures propagate")

    def test_shutdown_cancels_after_grace(self):
        from src.interactions.errors import ShutdownError
        from src.interactions.model import HandlerFailed, Interaction

        router = _router()

        async def handle_forever(interaction, ctx):
            await asyncio.sleep(10)

        async def handle_quick(interaction, ctx):
            await asyncio.sleep(0.01)
            return "quick"

        _register(router, "command", "forever", handle_forever)
        _register(router, "command", "quick", handle_quick)

        async def scenario():
            slow = asyncio.ensure_future(router.dispatch(Interaction.create("command", "forever")))
            quick = asyncio.ensure_future(router.dispatch(Interaction.create("command", "quick")))
            await asyncio.sleep(0)
            cancelled = await router.shutdown(grace=0.1)
            late = await router.dispatch(Interaction.create("command", "quick"))
            return cancelled, await slow, await quick, late

        cancelled, slow, quick, late = asyncio.run(scenario())
        assert cancelled == 1
        assert isinstance(slow, HandlerFailed)
        assert isinstance(slow.error, ShutdownError)
        assert quick.ok == True
        assert isinstance(late, HandlerFailed)
        assert router.in_flight == 0
        print("✓ Shutdown waits for grace then cancels")

    def test_call_later_released_on_deregister(self):
        from src.interactions.model import Interaction

        router = _router()
        fired = []

        async def handle_reminder(interaction, ctx):
            ctx.call_later(0.05, fired.append, "reminder")
            return "scheduled"

        _register(router, "command", "remind", handle_reminder)

        async def scenario():
            await router.dispatch(Interaction.create("command", "remind"))
            assert router.lifecycle.resources(handle_reminder)["timers"] == 1
            router.registry.deregister("remind")
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert fired == []
        print("✓ Handler timers cancelled on deregister")
