"""
SessionOrchestrator tests.
End-to-end processing of voice input with fake collaborators.
"""
import asyncio

import pytest
import pytest_asyncio

from assistant.errors import (
    ApiQuotaExceededError,
    CompletionUnavailableError,
    ErrorKind,
    SessionAlreadyExistsError,
    SessionNotFoundError,
)
from assistant.instructions import AssistantTexts
from assistant.orchestrator import (
    ControlCommand,
    ResponseType,
    SessionOrchestrator,
    match_control_phrase,
)
from assistant.recovery import ErrorClassifier, ErrorHandler, RecoveryPolicy, RecoveryStrategy
from assistant.session import SessionConfig, SessionState
from assistant.turns import ConversationMode
from knowledge.models import Document
from observability.event_store import event_store

from tests.conftest import FailingEmbedder, StemmingEmbedder


REFUND_DOC = Document(
    id="doc1",
    content="Our refund policy allows returns within 30 days of purchase.",
    metadata={"title": "Refunds"},
)

TEXTS = AssistantTexts()

MULTI_SPEAKER = SessionConfig(
    conversation_mode=ConversationMode.MULTI_SPEAKER,
    expected_speakers=2,
    enable_turn_management=True,
)


@pytest_asyncio.fixture
async def acme(engine):
    await engine.ingest("acme", REFUND_DOC)
    return "acme"


class BlockingCompletion:
    """
    Completion that waits until the test releases it.

    With ``block_on`` only queries containing that text wait; with ``error``
    the released call raises it.
    """

    def __init__(self, block_on=None, error=None):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.block_on = block_on
        self.error = error

    async def complete(self, prompt, context=None):
        if self.block_on is not None and self.block_on not in (context or ""):
            return "quick answer"
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return "late answer"


class TestControlPhrases:
    @pytest.mark.parametrize("text,command", [
        ("pause", ControlCommand.PAUSE),
        ("Please pause.", ControlCommand.PAUSE),
        ("stop listening for now", ControlCommand.PAUSE),
        ("Resume", ControlCommand.RESUME),
        ("continue", ControlCommand.RESUME),
        ("Goodbye!", ControlCommand.END),
        ("end session", ControlCommand.END),
        ("help", ControlCommand.HELP),
        ("what can you do", ControlCommand.HELP),
        ("say that again", ControlCommand.REPEAT),
    ])
    def test_recognized(self, text, command):
        assert match_control_phrase(text) is command

    @pytest.mark.parametrize("text", [
        "pause the video",
        "continue with the form",
        "I need help with my invoice",
        "What is the refund policy?",
    ])
    def test_single_words_inside_sentences_ignored(self, text):
        assert match_control_phrase(text) is None


class TestLifecycle:
    """Start, pause, resume, end and idle expiry."""

    @pytest.mark.asyncio
    async def test_start(self, orchestrator):
        started = await orchestrator.start("s1", "acme")

        assert started.session.session_id == "s1"
        assert started.session.state is SessionState.ACTIVE
        assert started.welcome_message == TEXTS.welcome_text
        assert event_store.query(session_id="s1", event_type="session.started")[0]["client_id"] == "acme"

    @pytest.mark.asyncio
    async def test_start_generates_id(self, orchestrator):
        started = await orchestrator.start(None, "acme")
        assert started.session.session_id

    @pytest.mark.asyncio
    async def test_welcome_messages(self, orchestrator):
        multi = await orchestrator.start("m", "acme", MULTI_SPEAKER)
        custom = await orchestrator.start("c", "acme", SessionConfig(welcome_message="Hi there"))

        assert multi.welcome_message == TEXTS.multi_speaker_welcome_text
        assert custom.welcome_message == "Hi there"

    @pytest.mark.asyncio
    async def test_duplicate_session_id(self, orchestrator):
        await orchestrator.start("s1", "acme")
        with pytest.raises(SessionAlreadyExistsError):
            await orchestrator.start("s1", "acme")

    @pytest.mark.asyncio
    async def test_pause_resume(self, orchestrator):
        await orchestrator.start("s1", "acme")

        assert (await orchestrator.pause("s1")).state is SessionState.PAUSED
        assert (await orchestrator.resume("s1")).state is SessionState.ACTIVE
        changes = event_store.query(session_id="s1", event_type="session.state_changed")
        assert [(e["from_state"], e["to_state"]) for e in changes] == [("active", "paused"), ("paused", "active")]

    @pytest.mark.asyncio
    async def test_end(self, orchestrator, clock):
        await orchestrator.start("s1", "acme")
        clock.advance(30)

        stats = await orchestrator.end("s1")

        assert stats.state is SessionState.ENDED
        assert stats.duration_seconds == 30
        assert stats.end_reason == "user_requested"
        assert orchestrator.registry.get("s1") is None
        assert (await orchestrator.end("s1")) is stats

    @pytest.mark.asyncio
    async def test_ended_id_can_be_reused(self, orchestrator):
        await orchestrator.start("s1", "acme")
        await orchestrator.end("s1")

        started = await orchestrator.start("s1", "acme")
        assert started.session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_end_unknown(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.end("nope")

    @pytest.mark.asyncio
    async def test_idle_sessions_expire(self, orchestrator, clock):
        await orchestrator.start("idle", "acme")
        clock.advance(1000)
        await orchestrator.start("fresh", "acme")
        clock.advance(800)

        expired = orchestrator.sweep_idle_sessions()

        assert expired == ["idle"]
        assert orchestrator.stats("idle").end_reason == "idle_timeout"
        result = await orchestrator.process_input("idle", "hello")
        assert result.error.kind is ErrorKind.SESSION_EXPIRED
        assert orchestrator.registry.get("fresh") is not None

    @pytest.mark.asyncio
    async def test_busy_session_not_swept(self, orchestrator, clock):
        started = await orchestrator.start("s1", "acme")
        clock.advance(5000)

        async with started.session.lock:
            assert orchestrator.sweep_idle_sessions() == []

    @pytest.mark.asyncio
    async def test_sweeper_task(self, engine, clock):
        orchestrator = SessionOrchestrator(engine, sweep_interval_seconds=0.01, now=clock)
        await orchestrator.start("s1", "acme")
        clock.advance(4000)

        task = orchestrator.start_idle_sweeper()
        for _ in range(100):
            if orchestrator.registry.get("s1") is None:
                break
            await asyncio.sleep(0.01)
        await orchestrator.stop_idle_sweeper()

        assert task.done()
        assert orchestrator.registry.get("s1") is None


class TestProcessInput:
    """Test the processing pipeline."""

    @pytest.mark.asyncio
    async def test_knowledge_grounded_answer(self, orchestrator, acme, completion, tts):
        await orchestrator.start("s1", acme)

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert result.success
        assert result.response_type is ResponseType.RAG_RESPONSE
        assert "30 days" in result.response_text
        assert result.sources[0]["document_id"] == "doc1"
        assert result.sources[0]["source"] == "Refunds"
        assert result.audio == b"RIFF-audio"
        assert result.error is None
        prompt, context = completion.calls[0]
        assert prompt == TEXTS.rag_prompt
        assert "[Document 1 - Refunds]" in context
        assert tts.calls == [(result.response_text, "alloy")]

        turn = event_store.query(session_id="s1", event_type="turn.processed")[0]
        assert turn["correlation_id"] == "s1:1"
        assert turn["response_type"] == "rag_response"
        assert turn["chunk_count"] == 1

    @pytest.mark.asyncio
    async def test_result_dict(self, orchestrator, acme):
        await orchestrator.start("s1", acme)

        data = (await orchestrator.process_input("s1", "What is the refund policy?")).to_dict()

        assert data["success"] is True
        assert data["response_type"] == "rag_response"
        assert data["audio_base64"]
        assert data["session_state"] == "active"

    @pytest.mark.asyncio
    async def test_general_answer(self, orchestrator, acme, completion):
        await orchestrator.start("s1", acme)

        result = await orchestrator.process_input("s1", "Tell me a joke")

        assert result.success
        assert result.response_type is ResponseType.GENERAL_RESPONSE
        assert result.sources == []
        assert completion.calls[0][0] == TEXTS.general_prompt

    @pytest.mark.asyncio
    async def test_other_clients_knowledge_not_used(self, orchestrator, acme):
        await orchestrator.start("g1", "globex")

        result = await orchestrator.process_input("g1", "What is the refund policy?")

        assert result.response_type is ResponseType.GENERAL_RESPONSE
        assert "30 days" not in result.response_text

    @pytest.mark.asyncio
    async def test_extractive_answer_without_completion(self, engine, acme, clock):
        orchestrator = SessionOrchestrator(engine, now=clock)
        await orchestrator.start("s1", acme)

        rag = await orchestrator.process_input("s1", "What is the refund policy?")
        general = await orchestrator.process_input("s1", "Tell me a joke")

        assert rag.response_text == REFUND_DOC.content
        assert rag.audio is None
        assert general.response_text == TEXTS.fallback_text

    @pytest.mark.asyncio
    async def test_completion_failure_with_knowledge(self, orchestrator, acme, completion):
        await orchestrator.start("s1", acme)
        completion.error = RuntimeError("upstream down")

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert result.success
        assert result.response_text == REFUND_DOC.content
        assert [d.kind for d in result.recovered_errors] == [ErrorKind.COMPLETION_UNAVAILABLE]

    @pytest.mark.asyncio
    async def test_completion_failure_without_knowledge(self, orchestrator, acme, completion):
        await orchestrator.start("s1", acme)
        completion.error = RuntimeError("upstream down")

        result = await orchestrator.process_input("s1", "Tell me a joke")

        assert result.success
        assert result.response_text == result.recovered_errors[0].user_message

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_general(self, orchestrator, acme, cache, completion):
        await orchestrator.start("s1", acme)
        cache._embedder = FailingEmbedder()

        result = await orchestrator.process_input("s1", "What about refund timing?")

        assert result.success
        assert result.response_type is ResponseType.GENERAL_RESPONSE
        assert result.recovered_errors[0].kind is ErrorKind.EMBEDDING_UNAVAILABLE
        assert result.recovered_errors[0].strategy is RecoveryStrategy.FALLBACK_TO_GENERAL
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_tts_failure_falls_back_to_text(self, orchestrator, acme, tts):
        await orchestrator.start("s1", acme)
        tts.error = RuntimeError("voice service down")

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert result.success
        assert result.audio is None
        assert result.recovered_errors[0].kind is ErrorKind.TTS_FAILED
        assert result.recovered_errors[0].strategy is RecoveryStrategy.FALLBACK_TO_TEXT

    @pytest.mark.asyncio
    async def test_tts_disabled(self, orchestrator, acme, tts):
        await orchestrator.start("s1", acme, SessionConfig(tts_enabled=False))

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert result.audio is None
        assert tts.calls == []

    @pytest.mark.asyncio
    async def test_quota_exhaustion_ends_session(self, orchestrator, acme, completion):
        await orchestrator.start("s1", acme)
        completion.error = ApiQuotaExceededError("insufficient_quota")

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert not result.success
        assert result.error.kind is ErrorKind.API_QUOTA_EXCEEDED
        assert result.error.strategy is RecoveryStrategy.TERMINATE
        assert result.session_state is SessionState.ENDED

        after = await orchestrator.process_input("s1", "hello")
        assert after.error.kind is ErrorKind.SESSION_ENDED

    @pytest.mark.asyncio
    async def test_empty_transcript(self, orchestrator):
        await orchestrator.start("s1", "acme")

        result = await orchestrator.process_input("s1", "   ")

        assert not result.success
        assert result.error.kind is ErrorKind.AUDIO_TOO_SHORT
        assert result.session_state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_session(self, orchestrator):
        result = await orchestrator.process_input("missing", "hello")

        assert not result.success
        assert result.error.kind is ErrorKind.SESSION_NOT_FOUND
        assert result.session_state is None
        assert orchestrator.classifier.peek("missing") is None

    @pytest.mark.asyncio
    async def test_history_and_stats(self, orchestrator, acme):
        await orchestrator.start("s1", acme)
        await orchestrator.process_input("s1", "What is the refund policy?")
        await orchestrator.process_input("s1", "Tell me a joke")

        stats = orchestrator.stats("s1")
        assert stats.interaction_count == 2
        assert stats.errors["total_errors"] == 0


class TestStemmedKnowledge:
    """Questions phrased differently from the document still find it."""

    @pytest.fixture
    def embedder(self):
        return StemmingEmbedder()

    @pytest.mark.asyncio
    async def test_return_policy_question(self, orchestrator, engine):
        await engine.ingest("acme", Document(id="doc1", content="Returns are accepted within 30 days."))
        await orchestrator.start("s1", "acme")

        result = await orchestrator.process_input("s1", "What is your return policy?")

        assert result.success
        assert result.response_type is ResponseType.RAG_RESPONSE
        assert "30 days" in result.response_text
        assert result.sources[0]["document_id"] == "doc1"


class TestControlCommands:
    """Session control spoken as input."""

    @pytest.mark.asyncio
    async def test_pause_blocks_questions(self, orchestrator, acme):
        await orchestrator.start("s1", acme)

        paused = await orchestrator.process_input("s1", "pause")
        question = await orchestrator.process_input("s1", "What is the refund policy?")
        resumed = await orchestrator.process_input("s1", "resume")
        answer = await orchestrator.process_input("s1", "What is the refund policy?")

        assert paused.response_type is ResponseType.CONTROL
        assert paused.response_text == TEXTS.paused_text
        assert paused.session_state is SessionState.PAUSED
        assert not question.success
        assert question.error.kind is ErrorKind.SESSION_PAUSED
        assert resumed.session_state is SessionState.ACTIVE
        assert answer.response_type is ResponseType.RAG_RESPONSE

    @pytest.mark.asyncio
    async def test_repeat_last_answer(self, orchestrator, acme):
        await orchestrator.start("s1", acme)

        nothing = await orchestrator.process_input("s1", "repeat")
        answer = await orchestrator.process_input("s1", "What is the refund policy?")
        await orchestrator.process_input("s1", "pause")
        await orchestrator.process_input("s1", "resume")
        repeated = await orchestrator.process_input("s1", "say that again")

        assert nothing.response_text == TEXTS.nothing_to_repeat_text
        assert repeated.response_type is ResponseType.REPEAT
        assert repeated.response_text == answer.response_text

    @pytest.mark.asyncio
    async def test_help(self, orchestrator):
        await orchestrator.start("s1", "acme")

        result = await orchestrator.process_input("s1", "What can you do?")

        assert result.response_type is ResponseType.HELP
        assert result.response_text == TEXTS.help_text

    @pytest.mark.asyncio
    async def test_goodbye_ends_session(self, orchestrator):
        await orchestrator.start("s1", "acme")

        result = await orchestrator.process_input("s1", "Goodbye")

        assert result.success
        assert result.response_text == TEXTS.goodbye_text
        assert result.session_state is SessionState.ENDED
        stats = orchestrator.stats("s1")
        assert stats.end_reason == "user_requested"
        assert stats.interaction_count == 1
        assert event_store.query(session_id="s1", event_type="session.ended")


class TestSpeakersAndTurns:
    """Speaker identification and turn management."""

    @pytest.mark.asyncio
    async def test_second_speaker_rejected(self, orchestrator, acme):
        await orchestrator.start("s1", acme, MULTI_SPEAKER)

        alice = await orchestrator.process_input("s1", "What is the refund policy?", speaker_id="alice")
        bob = await orchestrator.process_input("s1", "Tell me a joke", speaker_id="bob")

        assert alice.success
        assert alice.turn_info.allowed
        assert not bob.success
        assert bob.response_type is ResponseType.TURN_MANAGEMENT
        assert bob.error.kind is ErrorKind.TURN_NOT_ALLOWED
        assert bob.turn_info.current_speaker == "alice"
        assert bob.turn_info.queue_position == 1
        assert event_store.query(session_id="s1", event_type="turn.rejected")[0]["speaker_id"] == "bob"

    @pytest.mark.asyncio
    async def test_waiting_speaker_cannot_end_or_pause(self, orchestrator, acme):
        await orchestrator.start("s1", acme, MULTI_SPEAKER)
        await orchestrator.process_input("s1", "What is the refund policy?", speaker_id="alice")

        end = await orchestrator.process_input("s1", "end session", speaker_id="bob")
        pause = await orchestrator.process_input("s1", "pause", speaker_id="bob")

        assert end.response_type is ResponseType.TURN_MANAGEMENT
        assert pause.response_type is ResponseType.TURN_MANAGEMENT
        assert orchestrator.stats("s1").state is SessionState.ACTIVE

        paused = await orchestrator.process_input("s1", "pause", speaker_id="alice")
        assert paused.session_state is SessionState.PAUSED

    @pytest.mark.asyncio
    async def test_turn_passes_after_hold(self, orchestrator, acme, clock):
        await orchestrator.start("s1", acme, MULTI_SPEAKER)
        await orchestrator.process_input("s1", "Tell me a joke", speaker_id="alice")
        clock.advance(2.5)

        bob = await orchestrator.process_input("s1", "Tell me a joke", speaker_id="bob")

        assert bob.success
        assert orchestrator.stats("s1").current_speaker == "bob"

    @pytest.mark.asyncio
    async def test_release_turn(self, orchestrator, acme):
        await orchestrator.start("s1", acme, MULTI_SPEAKER)
        await orchestrator.process_input("s1", "Tell me a joke", speaker_id="alice")

        assert await orchestrator.release_turn("s1", "alice") is True
        bob = await orchestrator.process_input("s1", "Tell me a joke", speaker_id="bob")
        assert bob.success

    @pytest.mark.asyncio
    async def test_missing_speaker_continues(self, orchestrator, acme):
        await orchestrator.start("s1", acme, SessionConfig(enable_speaker_identification=True))

        result = await orchestrator.process_input("s1", "What is the refund policy?")

        assert result.success
        assert result.response_type is ResponseType.RAG_RESPONSE
        assert result.recovered_errors[0].kind is ErrorKind.SPEAKER_ID_FAILED
        assert result.recovered_errors[0].strategy is RecoveryStrategy.CONTINUE_GRACEFULLY

    @pytest.mark.asyncio
    async def test_speaker_counts(self, orchestrator, acme, clock):
        await orchestrator.start("s1", acme, MULTI_SPEAKER)
        await orchestrator.process_input("s1", "Tell me a joke", speaker_id="alice")
        await orchestrator.process_input("s1", "Tell me another", speaker_id="alice")

        assert orchestrator.stats("s1").speaker_counts == {"alice": 2}


class TestErrorReporting:
    """Failures reported by the transport layer."""

    @pytest.mark.asyncio
    async def test_stt_failures_escalate_then_reset(self, orchestrator, acme):
        await orchestrator.start("s1", acme)

        first = orchestrator.report_error("s1", ErrorKind.STT_FAILED)
        second = orchestrator.report_error("s1", ErrorKind.STT_FAILED)
        third = orchestrator.report_error("s1", ErrorKind.STT_FAILED)

        assert first.strategy is RecoveryStrategy.ENCOURAGE_RETRY
        assert first.should_retry
        assert second.consecutive_count == 2
        assert third.strategy is RecoveryStrategy.ESCALATE
        assert not third.should_retry

        await orchestrator.process_input("s1", "What is the refund policy?")
        after = orchestrator.report_error("s1", ErrorKind.STT_FAILED)
        assert after.consecutive_count == 1
        assert after.strategy is RecoveryStrategy.ENCOURAGE_RETRY
        assert orchestrator.stats("s1").errors["totals"]["stt_failed"] == 4

    @pytest.mark.asyncio
    async def test_errors_are_per_session(self, orchestrator):
        await orchestrator.start("s1", "acme")
        await orchestrator.start("s2", "acme")

        orchestrator.report_error("s1", ErrorKind.STT_FAILED)
        orchestrator.report_error("s1", ErrorKind.STT_FAILED)

        assert orchestrator.report_error("s2", ErrorKind.STT_FAILED).consecutive_count == 1

    @pytest.mark.asyncio
    async def test_non_recoverable_report_ends_session(self, orchestrator):
        await orchestrator.start("s1", "acme")

        decision = orchestrator.report_error("s1", ErrorKind.INTERNAL_ERROR, "decoder crashed")

        assert decision.terminates_session
        assert orchestrator.stats("s1").end_reason == "error:internal_error"

    @pytest.mark.asyncio
    async def test_report_for_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            orchestrator.report_error("missing", ErrorKind.STT_FAILED)


class TestConcurrency:
    """Ending a session while its input is in flight."""

    @pytest.mark.asyncio
    async def test_end_while_processing(self, engine, acme, clock):
        completion = BlockingCompletion()
        orchestrator = SessionOrchestrator(engine, completion, now=clock)
        await orchestrator.start("s1", acme)

        task = asyncio.create_task(orchestrator.process_input("s1", "What is the refund policy?"))
        await asyncio.wait_for(completion.started.wait(), timeout=1)
        stats = await orchestrator.end("s1")
        completion.release.set()
        result = await task

        assert not result.success
        assert result.error.kind is ErrorKind.SESSION_ENDED
        assert result.session_state is SessionState.ENDED
        assert stats.interaction_count == 0
        assert orchestrator.stats("s1").interaction_count == 0

    @pytest.mark.asyncio
    async def test_inputs_of_one_session_are_serialized(self, engine, acme, clock):
        completion = BlockingCompletion()
        orchestrator = SessionOrchestrator(engine, completion, now=clock)
        await orchestrator.start("s1", acme)

        first = asyncio.create_task(orchestrator.process_input("s1", "Tell me a joke"))
        await asyncio.wait_for(completion.started.wait(), timeout=1)
        second = asyncio.create_task(orchestrator.process_input("s1", "pause"))
        await asyncio.sleep(0)

        assert not second.done()
        completion.release.set()
        results = await asyncio.gather(first, second)

        assert results[0].response_type is ResponseType.GENERAL_RESPONSE
        assert results[1].session_state is SessionState.PAUSED
        history = orchestrator.registry.get("s1").history
        assert [t.transcript for t in history] == ["Tell me a joke", "pause"]

    @pytest.mark.asyncio
    async def test_other_sessions_not_blocked(self, engine, acme, clock):
        completion = BlockingCompletion(block_on="joke")
        orchestrator = SessionOrchestrator(engine, completion, now=clock)
        await orchestrator.start("s1", acme)
        await orchestrator.start("s2", acme)

        slow = asyncio.create_task(orchestrator.process_input("s1", "Tell me a joke"))
        await asyncio.wait_for(completion.started.wait(), timeout=1)
        quick = await asyncio.wait_for(orchestrator.process_input("s2", "What is the refund policy?"), timeout=1)

        assert quick.success
        assert quick.response_text == "quick answer"
        assert not slow.done()
        completion.release.set()
        assert (await slow).response_text == "late answer"

    @pytest.mark.asyncio
    async def test_late_failure_does_not_touch_restarted_session(self, engine, acme, clock):
        completion = BlockingCompletion(error=CompletionUnavailableError("upstream down"))
        orchestrator = SessionOrchestrator(
            engine, completion, error_handler=ErrorHandler(ErrorClassifier(now=clock), RecoveryPolicy()), now=clock
        )
        await orchestrator.start("s1", acme)

        task = asyncio.create_task(orchestrator.process_input("s1", "Tell me a joke"))
        await asyncio.wait_for(completion.started.wait(), timeout=1)
        await orchestrator.end("s1")
        await orchestrator.start("s1", acme)
        completion.release.set()
        result = await task

        assert result.error.kind is ErrorKind.SESSION_ENDED
        state = orchestrator.classifier.peek("s1")
        assert state is None or state.consecutive_count(ErrorKind.COMPLETION_UNAVAILABLE) == 0
        assert orchestrator.registry.get("s1").state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_restart_starts_with_clean_error_state(self, orchestrator):
        await orchestrator.start("s1", "acme")
        orchestrator.report_error("s1", ErrorKind.STT_FAILED)
        orchestrator.classifier.track_error("s9", ErrorKind.STT_FAILED)
        await orchestrator.start("s9", "acme")

        assert orchestrator.classifier.peek("s9") is None
        assert orchestrator.classifier.peek("s1").consecutive_count(ErrorKind.STT_FAILED) == 1


class TestUIIntegration:
    """UI actions and UI state."""

    @pytest.mark.asyncio
    async def test_navigation_published(self, orchestrator):
        await orchestrator.start("s1", "acme")

        class Socket:
            def __init__(self):
                self.sent = []

            async def send_json(self, data):
                self.sent.append(data)

        socket = Socket()
        orchestrator.ui_channel.connect("s1", socket)

        result = await orchestrator.process_input("s1", "Go to the dashboard")

        assert [(c.action, c.target) for c in result.ui_commands] == [("navigate", "dashboard")]
        assert socket.sent[0]["type"] == "ui_command"
        assert socket.sent[0]["target"] == "dashboard"
        assert socket.sent[-1]["type"] == "voice_feedback"

    @pytest.mark.asyncio
    async def test_ui_state_used_as_context(self, orchestrator, completion):
        await orchestrator.start("s1", "acme")
        orchestrator.ui_channel.handle_message("s1", {"type": "ui_state_update", "page": "billing"})

        await orchestrator.process_input("s1", "Tell me a joke")

        assert '"page": "billing"' in completion.calls[0][1]

    @pytest.mark.asyncio
    async def test_ui_state_kept_only_for_live_sessions(self, orchestrator):
        await orchestrator.start("s1", "acme")
        await orchestrator.end("s1")

        orchestrator.ui_channel.handle_message("s1", {"type": "ui_state_update", "page": "billing"})
        orchestrator.ui_channel.handle_message("ghost", {"type": "ui_state_update", "page": "billing"})

        assert orchestrator.ui_channel.current_context("s1") is None
        assert orchestrator.ui_channel.current_context("ghost") is None

    @pytest.mark.asyncio
    async def test_explicit_context_wins(self, orchestrator, completion):
        await orchestrator.start("s1", "acme")
        orchestrator.ui_channel.handle_message("s1", {"type": "ui_state_update", "page": "billing"})

        await orchestrator.process_input("s1", "Tell me a joke", current_context={"page": "orders"})

        assert '"page": "orders"' in completion.calls[0][1]
