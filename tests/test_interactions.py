import os
import sys
import threading

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.error_handler import InteractionAborted
from nara.interactions import CancelToken, Interaction, InteractionManager, InteractionOutcome, InteractionState
from nara.models import AnswerResult


def test_cancel_runs_callbacks_once():
    token = CancelToken()
    calls = []
    token.add_callback(lambda: calls.append("a"))
    remove = token.add_callback(lambda: calls.append("b"))
    remove()

    assert token.cancel("barge-in")
    assert not token.cancel("again")
    assert calls == ["a"]
    assert token.reason == "barge-in"


def test_callback_after_cancel_runs_immediately():
    token = CancelToken()
    token.cancel()
    calls = []
    token.add_callback(lambda: calls.append(1))
    assert calls == [1]


def test_failing_callback_does_not_block_cancel():
    token = CancelToken()
    calls = []

    def boom():
        raise RuntimeError("close failed")

    token.add_callback(boom)
    token.add_callback(lambda: calls.append("ok"))
    token.cancel()
    assert calls == ["ok"]


def test_raise_if_cancelled():
    token = CancelToken()
    token.raise_if_cancelled()
    token.cancel("stop")
    with pytest.raises(InteractionAborted):
        token.raise_if_cancelled("pipeline", "answer")


def test_state_callback_can_call_into_manager():
    manager = InteractionManager()
    seen = []

    def callback(old_state, new_state):
        seen.append((old_state, new_state, manager.get_stats()["state"]))

    manager.register_state_callback(callback)

    thread = threading.Thread(target=manager.update_state, args=(InteractionState.LISTENING,))
    thread.start()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert seen == [(InteractionState.IDLE, InteractionState.LISTENING, "listening")]


def test_same_state_does_not_notify():
    manager = InteractionManager()
    seen = []
    manager.register_state_callback(lambda old, new: seen.append(new))
    manager.update_state(InteractionState.IDLE)
    assert seen == []


def test_outcome_recorded_once():
    manager = InteractionManager()
    interaction = Interaction.create("why?")
    manager.begin(interaction)

    assert manager.record_outcome(interaction, InteractionOutcome.ABORTED)
    assert not manager.record_outcome(interaction, InteractionOutcome.COMPLETED)
    assert interaction.outcome is InteractionOutcome.ABORTED
    assert manager.current is None
    assert manager.get_stats()["outcomes"]["aborted"] == 1
    assert manager.get_stats()["outcomes"]["completed"] == 0


def test_history_is_bounded():
    manager = InteractionManager(max_history=3)
    for i in range(5):
        manager.begin(Interaction.create(f"q{i}"))
    assert [i.question for i in manager.history] == ["q2", "q3", "q4"]


def test_stats_and_transcript():
    manager = InteractionManager()
    done = Interaction.create("What is zero to one?")
    done.result = AnswerResult(markdown="Vertical progress.", latency_ms=120.0)
    manager.begin(done)
    manager.record_outcome(done, InteractionOutcome.COMPLETED)

    failed = Interaction.create("What next?")
    manager.begin(failed)
    manager.record_outcome(failed, InteractionOutcome.FAILED)

    stats = manager.get_stats()
    assert stats["total_interactions"] == 2
    assert stats["average_latency_ms"] == 120.0
    assert manager.recent_transcript() == "Listener: What is zero to one?\nNara: Vertical progress."
    assert [s["outcome"] for s in manager.get_summary()] == ["completed", "failed"]
