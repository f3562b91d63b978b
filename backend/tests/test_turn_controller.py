import asyncio
from dataclasses import replace

import pytest

from campus2career.interview.controller import TurnController
from campus2career.interview.errors import InvalidTransition, SessionNotFound
from campus2career.interview.models import SessionStatus
from campus2career.interview.state import LoadOutcome, TurnPhase


def _controller(store, speech_input, speech_output, config, **kwargs):
    session_id = kwargs.pop("session_id", None) or store.create_session(
        total_questions=kwargs.pop("total", 2),
        questions=kwargs.pop("questions", ["Tell me about yourself.", "Why this role?"]),
    )
    return TurnController(session_id, store, speech_input, speech_output, config=config, **kwargs)


async def _reach_listening(controller, speech_output, wait):
    await wait(lambda: controller.phase == TurnPhase.SPEAKING)
    speech_output.started()
    speech_output.finish()
    await wait(lambda: controller.phase == TurnPhase.LISTENING)


@pytest.mark.asyncio
async def test_two_question_interview_runs_to_completion(store, speech_input, speech_output, fast_config, wait):
    snapshots = []

    async def _on_change(snapshot):
        snapshots.append(snapshot)

    controller = _controller(store, speech_input, speech_output, fast_config, on_change=_on_change)

    outcome = await controller.start_interview()
    assert outcome == LoadOutcome.RESUMED
    assert speech_output.spoken == ["Tell me about yourself."]

    await _reach_listening(controller, speech_output, wait)
    assert speech_input.active is True
    assert controller.watchdog.armed is True

    speech_input.final("I study computer science")
    speech_input.final(" and build robots.")
    await wait(lambda: len(speech_output.spoken) == 2)
    assert store.submissions[0][0] == "I study computer science and build robots."

    await _reach_listening(controller, speech_output, wait)
    speech_input.final("I love the mission.")
    assert await controller.wait_completed(timeout=2.0) is True

    assert controller.phase == TurnPhase.COMPLETED
    assert [item[0] for item in store.submissions] == [
        "I study computer science and build robots.",
        "I love the mission.",
    ]
    session = await store.get_session(controller.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.answered_count == 2

    assert speech_input.active is False
    assert controller.watchdog.armed is False
    assert speech_input.handler_count == 0
    assert speech_output.handler_count == 0
    assert TurnPhase.SPEAKING in [item.phase for item in snapshots]
    assert snapshots[-1].completed is True


@pytest.mark.asyncio
async def test_end_early_while_listening_discards_partial_answer(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)

    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    speech_input.final("half an answer")
    await wait(lambda: controller.answer_buffer == "half an answer")

    snapshot = await controller.end_interview_early()

    assert snapshot.phase == TurnPhase.COMPLETED
    assert snapshot.answer_buffer == ""
    assert store.submissions == []
    assert store.end_calls == 1
    assert speech_input.active is False
    session = await store.get_session(controller.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.answered_count == 0


@pytest.mark.asyncio
async def test_end_early_is_idempotent_once_completed(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()

    await controller.end_interview_early()
    snapshot = await controller.end_interview_early()

    assert snapshot.phase == TurnPhase.COMPLETED
    assert store.end_calls == 1


@pytest.mark.asyncio
async def test_end_early_while_speaking_cancels_playback_and_releases_ports(
    store, speech_input, speech_output, fast_config, wait
):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    assert controller.phase == TurnPhase.SPEAKING

    await controller.end_interview_early()
    await controller.end_interview_early()
    speech_output.finish("u1")
    await asyncio.sleep(0.05)

    assert controller.phase == TurnPhase.COMPLETED
    assert store.end_calls == 1
    assert speech_output.cancel_calls == 1
    assert speech_input.handler_count == 0
    assert speech_output.handler_count == 0
    assert speech_input.start_calls == 0
    assert controller.watchdog.armed is False


@pytest.mark.asyncio
async def test_end_early_completes_even_when_the_store_is_unreachable(
    store, speech_input, speech_output, fast_config, wait
):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    speech_input.final("I think")
    await wait(lambda: controller.answer_buffer == "I think")
    store.end_error = ConnectionError("store unreachable")

    snapshot = await controller.end_interview_early()

    assert snapshot.phase == TurnPhase.COMPLETED
    assert snapshot.answer_buffer == ""
    assert snapshot.error["code"] == "store_error"
    assert speech_input.active is False
    assert controller.watchdog.armed is False
    assert await controller.wait_completed(timeout=0.1) is True


@pytest.mark.asyncio
async def test_transcript_outside_listening_is_dropped(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    assert controller.phase == TurnPhase.SPEAKING

    speech_input.final("echo of the question")
    await asyncio.sleep(0.03)

    assert controller.answer_buffer == ""
    assert controller.phase == TurnPhase.SPEAKING


@pytest.mark.asyncio
async def test_interim_results_never_reach_the_buffer(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    speech_input.interim("I thi")
    speech_input.final("I think so")
    speech_input.interim("and")
    await wait(lambda: controller.answer_buffer == "I think so")
    await asyncio.sleep(0.02)

    assert controller.answer_buffer == "I think so"


@pytest.mark.asyncio
async def test_empty_buffer_never_submits_on_silence(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    await asyncio.sleep(0.3)

    assert store.submissions == []
    assert controller.phase == TurnPhase.LISTENING
    assert controller.watchdog.fired_count >= 2


@pytest.mark.asyncio
async def test_manual_submit_with_empty_buffer_reports_empty_answer(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    snapshot = await controller.submit_answer()

    assert snapshot.error["code"] == "empty_answer"
    assert snapshot.phase == TurnPhase.LISTENING
    assert store.submissions == []


@pytest.mark.asyncio
async def test_manual_submit_skips_the_silence_wait(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    speech_input.final("Short answer.")
    await wait(lambda: controller.answer_buffer == "Short answer.")

    await controller.submit_answer()
    await wait(lambda: len(speech_output.spoken) == 2)

    assert [item[0] for item in store.submissions] == ["Short answer."]


@pytest.mark.asyncio
async def test_submit_while_speaking_is_rejected(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()

    with pytest.raises(InvalidTransition):
        await controller.submit_answer()
    assert controller.phase == TurnPhase.SPEAKING


@pytest.mark.asyncio
async def test_failed_submission_keeps_buffer_and_retries_on_request(store, speech_input, speech_output, fast_config, wait):
    store.fail_submits = 1
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    speech_input.final("My answer")
    await wait(lambda: controller.error is not None)

    assert controller.phase == TurnPhase.SUBMITTING
    assert controller.error.code == "submission_failure"
    assert controller.answer_buffer == "My answer"

    await asyncio.sleep(0.2)
    assert store.submissions == []

    await controller.submit_answer()
    await wait(lambda: len(speech_output.spoken) == 2)

    assert [item[0] for item in store.submissions] == ["My answer"]
    assert controller.answer_buffer == ""
    assert controller.error is None


@pytest.mark.asyncio
async def test_replay_drops_events_from_the_cancelled_utterance(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    first_utterance = speech_output.current

    await controller.replay_current_question()
    second_utterance = speech_output.current

    assert speech_output.spoken == ["Tell me about yourself.", "Tell me about yourself."]
    assert speech_output.cancel_calls >= 1

    speech_output.finish(first_utterance)
    await asyncio.sleep(0.03)
    assert controller.phase == TurnPhase.SPEAKING

    speech_output.finish(second_utterance)
    await wait(lambda: controller.phase == TurnPhase.LISTENING)


@pytest.mark.asyncio
async def test_replay_keeps_the_answer_buffer(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    speech_input.final("first part")
    await wait(lambda: controller.answer_buffer == "first part")

    snapshot = await controller.replay_current_question()

    assert snapshot.phase == TurnPhase.SPEAKING
    assert snapshot.answer_buffer == "first part"
    assert speech_input.active is False
    assert snapshot.question_index == 0


@pytest.mark.asyncio
async def test_interrupt_cancels_playback_and_listens(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()

    snapshot = await controller.interrupt()

    assert snapshot.phase == TurnPhase.LISTENING_ARMED
    assert speech_output.cancel_calls == 1
    await wait(lambda: controller.phase == TurnPhase.LISTENING)


@pytest.mark.asyncio
async def test_speech_output_failure_falls_through_to_listening(store, speech_input, speech_output, fast_config, wait):
    async def _broken_speak(text):
        raise RuntimeError("no voices")

    speech_output.speak = _broken_speak
    controller = _controller(store, speech_input, speech_output, fast_config)

    await controller.start_interview()

    await wait(lambda: controller.phase == TurnPhase.LISTENING)
    assert controller.snapshot().spoken_question == "Tell me about yourself."


@pytest.mark.asyncio
async def test_transient_capture_error_waits_for_resume(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    speech_input.error("network")
    await wait(lambda: controller.phase == TurnPhase.LISTENING_ARMED)

    assert controller.error.code == "speech_capture_error"
    assert controller.error.recoverable is True
    assert controller.watchdog.armed is False

    snapshot = await controller.resume_listening()
    assert snapshot.phase == TurnPhase.LISTENING
    assert snapshot.error is None


@pytest.mark.asyncio
async def test_denied_microphone_moves_to_error(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    speech_input.error("not-allowed", fatal=True)
    await wait(lambda: controller.phase == TurnPhase.ERROR)

    assert controller.error.code == "speech_capture_unavailable"
    assert controller.error.recoverable is False
    assert controller.watchdog.armed is False


@pytest.mark.asyncio
async def test_capture_that_ends_on_its_own_is_restarted(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    starts = speech_input.start_calls

    speech_input.ended()
    await wait(lambda: speech_input.start_calls == starts + 1)

    assert controller.phase == TurnPhase.LISTENING
    assert speech_input.active is True


@pytest.mark.asyncio
async def test_silent_candidate_hits_answer_timeout(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=0.03, max_silent_cycles=2)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    await wait(lambda: controller.phase == TurnPhase.LISTENING_ARMED)

    assert controller.error.code == "answer_timeout"
    assert speech_input.active is False
    assert store.submissions == []

    snapshot = await controller.resume_listening()
    assert snapshot.phase == TurnPhase.LISTENING


@pytest.mark.asyncio
async def test_load_of_unknown_session_raises(store, speech_input, speech_output, fast_config):
    controller = TurnController("missing", store, speech_input, speech_output, config=fast_config)

    with pytest.raises(SessionNotFound):
        await controller.load_session()

    assert controller.phase == TurnPhase.ERROR
    assert controller.error.code == "session_not_found"


@pytest.mark.asyncio
async def test_load_of_draft_session_waits_for_start(store, speech_input, speech_output, fast_config):
    controller = _controller(store, speech_input, speech_output, fast_config)

    outcome = await controller.load_session()

    assert outcome == LoadOutcome.NOT_STARTED
    assert controller.phase == TurnPhase.IDLE
    assert speech_output.spoken == []


@pytest.mark.asyncio
async def test_load_of_completed_session_goes_straight_to_completed(store, speech_input, speech_output, fast_config):
    session_id = store.create_session(total_questions=2)
    await store.start_session(session_id)
    await store.end_session(session_id)
    controller = TurnController(session_id, store, speech_input, speech_output, config=fast_config)

    outcome = await controller.load_session()

    assert outcome == LoadOutcome.COMPLETED
    assert controller.phase == TurnPhase.COMPLETED
    assert speech_output.spoken == []


@pytest.mark.asyncio
async def test_load_resumes_at_the_stored_question(store, speech_input, speech_output, fast_config):
    session_id = store.create_session(total_questions=3, questions=["Q1", "Q2", "Q3"])
    await store.start_session(session_id)
    await store.submit_answer(session_id, "A1", "A1", 4)
    controller = TurnController(session_id, store, speech_input, speech_output, config=fast_config)

    outcome = await controller.load_session()

    assert outcome == LoadOutcome.RESUMED
    assert speech_output.spoken == ["Q2"]
    assert controller.snapshot().question_index == 1


@pytest.mark.asyncio
async def test_generated_questions_are_fetched_when_missing(store, speech_input, speech_output, fast_config, wait):
    session_id = store.create_session(total_questions=2)
    controller = TurnController(session_id, store, speech_input, speech_output, config=fast_config)

    await controller.start_interview()

    assert speech_output.spoken == ["Tell me about yourself and your background."]


@pytest.mark.asyncio
async def test_close_releases_ports_and_rejects_commands(store, speech_input, speech_output, fast_config, wait):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    await controller.close()

    assert speech_input.active is False
    assert speech_input.handler_count == 0
    assert speech_output.handler_count == 0
    assert controller.watchdog.armed is False
    with pytest.raises(InvalidTransition):
        await controller.submit_answer()


@pytest.mark.asyncio
async def test_speak_current_question_restarts_the_turn(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)

    snapshot = await controller.speak_current_question()

    assert snapshot.phase == TurnPhase.SPEAKING
    assert snapshot.watchdog_armed is False
    assert speech_output.spoken == ["Tell me about yourself.", "Tell me about yourself."]
    assert speech_input.active is False


@pytest.mark.asyncio
async def test_resume_while_listening_does_not_restart_capture(store, speech_input, speech_output, fast_config, wait):
    config = replace(fast_config, silence_timeout_sec=5.0)
    controller = _controller(store, speech_input, speech_output, config)
    await controller.start_interview()
    await _reach_listening(controller, speech_output, wait)
    starts = speech_input.start_calls

    snapshot = await controller.resume_listening()
    await controller.resume_listening()

    assert snapshot.phase == TurnPhase.LISTENING
    assert speech_input.start_calls == starts


@pytest.mark.asyncio
async def test_spoken_interruption_during_playback_moves_to_listening(
    store, speech_input, speech_output, fast_config, wait
):
    controller = _controller(store, speech_input, speech_output, fast_config)
    await controller.start_interview()

    speech_input.interim("Wait, can you")
    await wait(lambda: controller.phase != TurnPhase.SPEAKING)

    assert speech_output.cancel_calls == 1
    assert controller.answer_buffer == ""
    await wait(lambda: controller.phase == TurnPhase.LISTENING)
    assert controller.snapshot().spoken_question == "Tell me about yourself."
