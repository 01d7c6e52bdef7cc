"""
Testes de integração do CallController com transporte falso.

Os thresholds do watchdog vêm do fixture fast_config (décimos de
segundo), então os cenários de timeout esperam com asyncio.sleep real.
"""

import asyncio

import pytest

from callflow.controller import CallController
from callflow.core.events import CallEventType
from callflow.errors import AdmissionRejected, TransportFailure, WatchdogTimeout
from callflow.handlers.error_classifier import USER_MESSAGES, ErrorKind

NUMBER = "+15551234567"


def notification(state, call_ref="call-1", **extra):
    return {"type": "callUpdate", "call": {"state": state, "call_control_id": call_ref, **extra}}


async def notify(controller, state, call_ref="call-1", **extra):
    return await controller.handle_notification(notification(state, call_ref, **extra))


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_answered_call(self, controller, recorder, transport):
        session = await controller.start_call(NUMBER, caller_identity="user-1")
        assert session.call_ref == "call-1"
        assert transport.placed == [NUMBER]

        for raw in ("new", "early", "answered"):
            await notify(controller, raw)

        assert recorder.states == ["dialing", "ringing", "connected"]
        assert controller.is_call_active
        assert not controller.is_connecting

    @pytest.mark.asyncio
    async def test_local_hangup_completes_call(self, controller, recorder, transport):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "active")

        await controller.hangup()

        assert recorder.states == ["dialing", "ringing", "connected", "ended", "idle"]
        assert transport.hung_up == ["call-1"]
        assert len(recorder.records) == 1
        record = recorder.records[0].data
        assert record["status"] == "completed"
        assert record["phone_number"] == NUMBER
        assert record["call_ref"] == "call-1"
        assert controller.session is None

    @pytest.mark.asyncio
    async def test_remote_hangup_completes_call(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await controller.handle_call_event("call.ringing", {"call_control_id": "call-1"})
        await controller.handle_call_event("call.answered", {"call_control_id": "call-1"})
        await controller.handle_call_event("call.hangup", {"call_control_id": "call-1"})

        assert recorder.states == ["dialing", "ringing", "connected", "ended", "idle"]
        assert recorder.records[0].data["status"] == "completed"
        assert recorder.user_errors == []

    @pytest.mark.asyncio
    async def test_view_snapshot(self, controller):
        await controller.start_call("+1 (555) 123-4567", caller_identity="user-1")
        await notify(controller, "early")

        view = controller.view()
        assert view.state == "ringing"
        assert view.is_connecting is True
        assert view.is_call_active is False
        assert view.dialed_number == NUMBER
        assert view.call_ref == "call-1"
        assert view.user_error is None

    @pytest.mark.asyncio
    async def test_health_while_connected(self, controller):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "active")

        health = controller.health()
        assert health.is_healthy
        assert health.score == 100

    @pytest.mark.asyncio
    async def test_metrics_follow_transitions(self, controller):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")

        metrics = controller.metrics
        assert metrics.get_sample("callflow_admissions_total", {"outcome": "allowed"}) == 1.0
        assert metrics.get_sample(
            "callflow_transitions_total",
            {"from_state": "dialing", "to_state": "ringing", "synthesized": "false"},
        ) == 1.0
        assert metrics.get_sample("callflow_active_call") == 1.0


class TestVoicemail:

    @pytest.mark.asyncio
    async def test_machine_answer(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "answered", voice_mail_detected=True)

        assert recorder.states == ["dialing", "ringing", "voicemail"]
        assert controller.is_call_active
        assert len(recorder.notices) == 1
        assert controller.view().notice == USER_MESSAGES[ErrorKind.VOICEMAIL]
        assert controller.user_error is None

    @pytest.mark.asyncio
    async def test_voicemail_record(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await controller.handle_call_event(
            "answered",
            {"call_control_id": "call-1", "sip_headers": {"X-Voicemail": "1"}},
        )
        await notify(controller, "hangup")

        assert recorder.states[-3:] == ["voicemail", "ended", "idle"]
        assert recorder.records[0].data["status"] == "voicemail"


class TestFailures:

    @pytest.mark.asyncio
    async def test_purge_fails_with_user_error(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "new")
        await notify(controller, "purge")

        assert recorder.states == ["dialing", "failed", "idle"]
        assert recorder.transitions[1].data["reason"] == "purge"
        assert controller.user_error == USER_MESSAGES[ErrorKind.CALL_FAILED]
        assert recorder.records[0].data["status"] == "failed"
        assert recorder.records[0].data["failure_reason"] == "purge"

    @pytest.mark.asyncio
    async def test_busy_before_answer_is_missed(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "hangup", cause="USER_BUSY")

        assert recorder.pairs[:3] == [("idle", "dialing"), ("dialing", "ringing"), ("ringing", "failed")]
        assert recorder.records[0].data["status"] == "missed"
        assert controller.user_error == USER_MESSAGES[ErrorKind.BUSY]
        assert recorder.user_errors[0].data["kind"] == "busy"

    @pytest.mark.asyncio
    async def test_unknown_failure_soft_resets(self, controller, recorder):
        """Falha não classificada: sem erro para o usuário, volta a idle sozinha."""
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await controller.handle_call_event("hangup", {"call_control_id": "call-1"})

        assert controller.state == "failed"
        assert controller.user_error is None
        assert recorder.user_errors == []

        await asyncio.sleep(0.2)

        assert controller.state == "idle"
        assert controller.session is None
        assert recorder.records[0].data["status"] == "failed"

    @pytest.mark.asyncio
    async def test_failure_on_connected_call_is_ignored(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "active")

        assert await notify(controller, "purge") == []
        assert controller.state == "connected"

    @pytest.mark.asyncio
    async def test_without_auto_reset_failure_waits_for_acknowledge(self, transport, fast_config, clock):
        config = fast_config.model_copy(update={"auto_reset": False})
        controller = CallController(transport, config, rate_limit_clock=clock)
        try:
            await controller.start_call(NUMBER, caller_identity="user-1")
            await notify(controller, "purge")

            assert controller.state == "failed"
            assert controller.user_error is not None

            await controller.acknowledge_failure()

            assert controller.state == "idle"
            assert controller.user_error is None
            assert controller.session is None
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_new_call_from_failed_state(self, transport, fast_config, clock):
        config = fast_config.model_copy(update={"auto_reset": False})
        controller = CallController(transport, config, rate_limit_clock=clock)
        try:
            await controller.start_call(NUMBER, caller_identity="user-1")
            await notify(controller, "purge")

            session = await controller.start_call(NUMBER, caller_identity="user-1")

            assert session.call_ref == "call-2"
            assert controller.state == "dialing"
            assert controller.user_error is None
        finally:
            await controller.close()


class TestEventMerging:

    @pytest.mark.asyncio
    async def test_duplicate_answer_across_channels(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await controller.handle_call_event("call.answered", {"call_control_id": "call-1"})
        await notify(controller, "active")

        assert recorder.states.count("connected") == 1
        assert recorder.states == ["dialing", "ringing", "connected"]

    @pytest.mark.asyncio
    async def test_answer_while_dialing_synthesizes_ring(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")

        transitions = await notify(controller, "active")

        assert [t.new_state.value for t in transitions] == ["ringing", "connected"]
        assert recorder.states == ["dialing", "ringing", "connected"]
        assert recorder.transitions[1].data["synthesized"] is True
        assert recorder.transitions[2].data["synthesized"] is False

    @pytest.mark.asyncio
    async def test_event_without_call_ref_goes_to_active_session(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await controller.handle_call_event("ringing")

        assert controller.state == "ringing"
        assert recorder.transitions[-1].data["call_ref"] == "call-1"

    @pytest.mark.asyncio
    async def test_stale_call_ref_is_dropped(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await controller.hangup()
        await controller.start_call(NUMBER, caller_identity="user-1")
        before = list(recorder.states)

        assert await notify(controller, "active", call_ref="call-1") == []

        assert recorder.states == before
        assert controller.state == "dialing"
        dropped = controller.events.get_history(CallEventType.STALE_EVENT_DROPPED)
        assert dropped[-1].data["call_ref"] == "call-1"
        assert dropped[-1].data["active_ref"] == "call-2"
        assert controller.metrics.get_sample("callflow_stale_events_total") == 1.0

    @pytest.mark.asyncio
    async def test_event_without_session_is_dropped(self, controller, recorder):
        assert await notify(controller, "early") == []
        assert recorder.transitions == []

    @pytest.mark.asyncio
    async def test_unknown_notification_is_ignored(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")

        assert await controller.handle_notification({"type": "userMediaError"}) == []
        assert await notify(controller, "held") == []
        assert controller.state == "dialing"


class TestAdmission:

    @pytest.mark.asyncio
    async def test_second_call_while_ringing(self, controller):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")

        with pytest.raises(AdmissionRejected) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1")

        assert exc.value.reason == "call already in progress"
        assert controller.state == "ringing"
        assert controller.session.call_ref == "call-1"

    @pytest.mark.asyncio
    async def test_microphone_required(self, controller, transport):
        with pytest.raises(AdmissionRejected) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1", has_audio_capability=False)

        assert exc.value.reason == "microphone access required"
        assert controller.state == "idle"
        assert controller.session is None
        assert transport.placed == []

    @pytest.mark.asyncio
    async def test_unsafe_number_rejected(self, controller, transport):
        with pytest.raises(AdmissionRejected) as exc:
            await controller.start_call("<script>alert(1)</script>", caller_identity="user-1")

        assert exc.value.reason == "invalid phone number format"
        assert "script" not in exc.value.user_message
        assert transport.placed == []

    @pytest.mark.asyncio
    async def test_rejection_is_published(self, controller):
        with pytest.raises(AdmissionRejected):
            await controller.start_call("123", caller_identity="user-1")

        events = controller.events.get_history(CallEventType.ADMISSION_REJECTED)
        assert events[-1].data["outcome"] == "invalid_number"

    @pytest.mark.asyncio
    async def test_rate_limit(self, controller, clock):
        """Cinco tentativas por minuto; a sexta espera a janela."""
        for _ in range(5):
            await controller.start_call(NUMBER, caller_identity="user-1")
            await controller.hangup()
            clock.advance(1.0)

        with pytest.raises(AdmissionRejected) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1")

        assert exc.value.reason == "too many call attempts"
        assert exc.value.retry_after == pytest.approx(55.0)

        clock.advance(56.0)
        session = await controller.start_call(NUMBER, caller_identity="user-1")
        assert session.call_ref == "call-6"


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_stuck_in_dialing(self, controller, recorder, transport):
        await controller.start_call(NUMBER, caller_identity="user-1")

        await asyncio.sleep(0.5)

        assert recorder.states == ["dialing", "failed", "idle"]
        assert recorder.transitions[1].data["reason"] == "stuck in dialing"
        assert controller.user_error == "Call failed - stuck in dialing"
        assert transport.hung_up == ["call-1"]
        assert controller.metrics.get_sample(
            "callflow_watchdog_expired_total", {"state": "dialing"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_trying_tightens_deadline(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "trying")

        await asyncio.sleep(0.2)

        assert "failed" in recorder.states
        assert controller.user_error == "Call failed - stuck in dialing"

    @pytest.mark.asyncio
    async def test_ringing_timeout(self, controller, recorder, transport):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")

        await asyncio.sleep(0.6)

        assert recorder.states == ["dialing", "ringing", "failed", "idle"]
        assert controller.user_error == "Call failed - no response after ring timeout"
        assert transport.hung_up == ["call-1"]

    @pytest.mark.asyncio
    async def test_progress_rearms_watchdog(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await asyncio.sleep(0.2)
        await notify(controller, "early")
        await asyncio.sleep(0.2)
        await notify(controller, "active")
        await asyncio.sleep(0.5)

        assert recorder.states == ["dialing", "ringing", "connected"]
        assert controller.user_error is None

    @pytest.mark.asyncio
    async def test_late_answer_after_timeout_is_dropped(self, controller, recorder):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await asyncio.sleep(0.5)

        assert await notify(controller, "active") == []
        assert recorder.states == ["dialing", "failed", "idle"]

    @pytest.mark.asyncio
    async def test_place_call_beyond_dialing_threshold(self, controller, recorder, transport):
        transport.delay = 0.6

        with pytest.raises(WatchdogTimeout) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1")

        assert exc.value.state == "dialing"
        await asyncio.sleep(0.1)
        assert recorder.states.count("failed") == 1
        assert controller.state == "idle"
        assert transport.hung_up == []


class TestTransportErrors:

    @pytest.mark.asyncio
    async def test_place_call_rejected(self, controller, recorder, transport):
        transport.fail_with = ConnectionError("connection refused")

        with pytest.raises(TransportFailure) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1")

        assert exc.value.error_kind == "network"
        assert exc.value.user_message == USER_MESSAGES[ErrorKind.NETWORK]
        assert isinstance(exc.value.__cause__, ConnectionError)
        assert recorder.states == ["dialing", "failed", "idle"]
        assert controller.user_error == USER_MESSAGES[ErrorKind.NETWORK]

    @pytest.mark.asyncio
    async def test_transport_timeout_is_not_watchdog(self, controller, recorder, transport):
        """TimeoutError do próprio transporte é classificado, não vira WatchdogTimeout."""
        transport.fail_with = TimeoutError("sip registration timed out")

        with pytest.raises(TransportFailure) as exc:
            await controller.start_call(NUMBER, caller_identity="user-1")

        assert exc.value.error_kind == "timeout"
        assert exc.value.detail == "sip registration timed out"
        assert isinstance(exc.value.__cause__, TimeoutError)
        assert controller.metrics.get_sample(
            "callflow_watchdog_expired_total", {"state": "dialing"}
        ) == 0.0
        assert controller.metrics.get_sample(
            "callflow_failures_total", {"kind": "timeout", "user_facing": "true"}
        ) == 1.0
        assert recorder.states == ["dialing", "failed", "idle"]

    @pytest.mark.asyncio
    async def test_transport_hangup_error_is_logged(self, controller, transport):
        async def broken_hangup(call_ref):
            raise RuntimeError("socket closed")

        transport.hangup = broken_hangup
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "active")

        await controller.hangup()

        assert controller.state == "idle"


class TestCancelAndReset:

    @pytest.mark.asyncio
    async def test_hangup_while_ringing_is_missed(self, controller, recorder, transport):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")

        await controller.hangup()

        assert recorder.states == ["dialing", "ringing", "failed", "idle"]
        assert recorder.records[0].data["status"] == "missed"
        assert controller.user_error is None
        assert transport.hung_up == ["call-1"]

    @pytest.mark.asyncio
    async def test_hangup_during_slow_call_request(self, controller, recorder, transport):
        """Cancelamento durante place_call não espera o transporte responder."""
        transport.delay = 0.2
        start = asyncio.create_task(controller.start_call(NUMBER, caller_identity="user-1"))
        await asyncio.sleep(0.05)

        loop = asyncio.get_running_loop()
        began = loop.time()
        await controller.hangup()
        assert loop.time() - began < 0.05

        session = await start

        assert session.call_ref == "call-1"
        assert recorder.states == ["dialing", "failed", "idle"]
        assert recorder.records[0].data["status"] == "missed"
        assert transport.hung_up == ["call-1"]
        assert controller.user_error is None

    @pytest.mark.asyncio
    async def test_reset_during_slow_call_request(self, controller, transport):
        transport.delay = 0.2
        start = asyncio.create_task(controller.start_call(NUMBER, caller_identity="user-1"))
        await asyncio.sleep(0.05)

        await controller.reset()
        assert controller.state == "dialing"

        await start

        assert controller.state == "idle"
        assert controller.session is None
        assert transport.hung_up == ["call-1"]

    @pytest.mark.asyncio
    async def test_hangup_without_session(self, controller, transport):
        await controller.hangup()
        assert transport.hung_up == []

    @pytest.mark.asyncio
    async def test_forced_reset_of_live_call(self, controller, recorder, transport):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "early")
        await notify(controller, "active")

        await controller.reset()

        assert controller.state == "idle"
        assert controller.session is None
        assert recorder.records[0].data["status"] == "completed"
        assert transport.hung_up == ["call-1"]

    @pytest.mark.asyncio
    async def test_reset_clears_user_error(self, controller):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await notify(controller, "purge")
        assert controller.user_error is not None

        await controller.reset()

        assert controller.user_error is None
        assert controller.state == "idle"

    @pytest.mark.asyncio
    async def test_session_events(self, controller):
        await controller.start_call(NUMBER, caller_identity="user-1")
        await controller.hangup()

        created = controller.events.get_history(CallEventType.SESSION_CREATED)
        cleared = controller.events.get_history(CallEventType.SESSION_CLEARED)
        assert len(created) == 1
        assert len(cleared) == 1
        assert created[0].call_id == cleared[0].call_id
