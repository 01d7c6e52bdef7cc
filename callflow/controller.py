"""
CallController - Dono da sessão de chamada.

Liga as peças do núcleo:
- CallAdmissionGate decide se uma chamada pode começar
- TelephonyEventAdapter funde os dois canais do transporte
- CallStateMachine aplica a tabela de transições
- FailureWatchdog força falha de sessões presas

Toda mutação passa por um único asyncio.Lock, então eventos de uma
sessão são aplicados estritamente na ordem de chegada. O único ponto de
suspensão dentro da seção serializada é o pedido de chamada ao transporte.

Handlers do EventBus rodam dentro da seção serializada e não devem
chamar operações do controlador.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Mapping, Optional, Set
import time

from .config import ControllerConfig
from .core.event_bus import EventBus
from .core.events import CallEvent, CallEventType, EventChannel, RawStateReport, TelephonyEvent, TelephonyEventKind
from .core.state_machine import (
    ACTIVE_STATES,
    CONNECTING_STATES,
    TERMINAL_STATES,
    CallState,
    CallStateMachine,
    StateTransition,
)
from .core.watchdog import STUCK_REASONS, FailureWatchdog, WatchdogExpiry
from .errors import AdmissionRejected, StaleEvent, TransportFailure, WatchdogTimeout
from .handlers.admission_gate import AdmissionRequest, CallAdmissionGate
from .handlers.error_classifier import (
    USER_MESSAGES,
    ErrorClassification,
    ErrorKind,
    classification_for,
    classify_error,
)
from .handlers.telephony_adapter import TelephonyEventAdapter
from .health_check import CallFlowHealth, evaluate_call_flow_health
from .logging_config import CallLogContext
from .session import CallSession, CallView
from .utils.metrics import CallFlowMetrics
from .utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


class TelephonyTransport(ABC):
    """Comandos de saída para o transporte de telefonia."""

    @abstractmethod
    async def place_call(self, destination: str) -> str:
        """Pede uma chamada e retorna o call_ref do transporte."""

    @abstractmethod
    async def hangup(self, call_ref: str) -> None:
        """Encerra a chamada no transporte."""


class CallController:
    """
    Controlador do ciclo de vida da chamada.

    Uso:
        controller = CallController(transport, ControllerConfig())
        controller.events.on(CallEventType.STATE_CHANGED, ui.render)

        await controller.start_call("+15551234567", caller_identity="user-1")
        await controller.handle_call_event("ringing", {"call_control_id": ref})
        await controller.handle_notification({"type": "callUpdate", "call": {...}})
        await controller.hangup()
    """

    def __init__(
        self,
        transport: TelephonyTransport,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[CallFlowMetrics] = None,
        rate_limit_clock: Callable[[], float] = time.monotonic
    ):
        self.transport = transport
        self.config = config or ControllerConfig()
        self.events = event_bus or EventBus(owner="controller")
        self.metrics = metrics or CallFlowMetrics()

        self.rate_limiter = SlidingWindowRateLimiter(self.config.rate_limit, clock=rate_limit_clock)
        self.admission = CallAdmissionGate(self.rate_limiter, self.config.validation)
        self.adapter = TelephonyEventAdapter(self.config.voicemail)
        self.watchdog = FailureWatchdog(
            self.config.watchdog,
            on_expire=self._on_watchdog_expired,
            owner="controller"
        )
        self.machine = CallStateMachine(self.events, self.watchdog)
        self.machine.after("*", self._after_transition)

        self._lock = asyncio.Lock()
        self._session: Optional[CallSession] = None
        self._log_ctx: Optional[CallLogContext] = None
        self._user_error: Optional[str] = None
        self._notice: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        # Sessão cujo place_call está em curso (o lock está com start_call)
        self._placing: Optional[CallSession] = None
        self._cancel_pending: Optional[str] = None

    # ========================================
    # PROPRIEDADES PARA A UI
    # ========================================

    @property
    def state(self) -> str:
        return self.machine.state_name

    @property
    def is_connecting(self) -> bool:
        return self.machine.is_connecting

    @property
    def is_call_active(self) -> bool:
        return self.machine.is_call_active

    @property
    def user_error(self) -> Optional[str]:
        return self._user_error

    @property
    def session(self) -> Optional[CallSession]:
        """Sessão ativa (somente leitura para quem está fora do controlador)."""
        return self._session

    def view(self) -> CallView:
        session = self._session
        return CallView(
            state=self.state,
            is_connecting=self.is_connecting,
            is_call_active=self.is_call_active,
            user_error=self._user_error,
            notice=self._notice,
            dialed_number=session.dialed_number if session else None,
            call_ref=session.call_ref if session else None,
        )

    def health(self) -> CallFlowHealth:
        session = self._session
        return evaluate_call_flow_health(
            raw_state=session.raw_state if session else None,
            canonical_state=self.state,
            is_connecting=self.is_connecting,
            is_call_active=self.is_call_active,
            state_age_seconds=self.machine.state_age,
            stuck_thresholds=self.config.watchdog.state_thresholds,
        )

    # ========================================
    # OPERAÇÕES
    # ========================================

    async def start_call(
        self,
        phone_number: Optional[str],
        caller_identity: str,
        has_audio_capability: bool = True
    ) -> CallSession:
        """
        Admite e inicia uma chamada.

        Raises:
            AdmissionRejected: chamada em andamento, sem microfone, número
                inválido ou rate limit
            TransportFailure: o transporte recusou o pedido de chamada
            WatchdogTimeout: o transporte não confirmou o pedido a tempo
        """
        async with self._lock:
            if self.machine.state in TERMINAL_STATES:
                await self._reset_locked("new call")

            decision = self.admission.evaluate(AdmissionRequest(
                phone_number_input=phone_number,
                caller_identity=caller_identity,
                current_state=self.state,
                has_audio_capability=has_audio_capability,
            ))
            self.metrics.record_admission(decision.outcome)

            if not decision.allowed:
                await self.events.emit(CallEvent(
                    type=CallEventType.ADMISSION_REJECTED,
                    call_id=self._session.id if self._session else "",
                    data={
                        "reason": decision.reason,
                        "outcome": decision.outcome,
                        "retry_after": decision.retry_after,
                    }
                ))
                raise AdmissionRejected(decision.reason, retry_after=decision.retry_after)

            session = CallSession(
                dialed_number=decision.sanitized_number,
                caller_identity=caller_identity,
            )
            self._open_session(session)
            await self.events.emit(CallEvent(
                type=CallEventType.SESSION_CREATED,
                call_id=session.id,
                data={"caller_identity": caller_identity}
            ))

            await self.machine.dial(call_ref=None)

            self._placing = session
            try:
                call_ref = await self._place_call(session.dialed_number)
            except WatchdogTimeout as error:
                self.metrics.record_watchdog_expired(error.state)
                await self._fail_locked(
                    self._watchdog_classification(error),
                    reason=error.detail,
                    call_ref=None,
                )
                await self._settle_locked()
                raise
            except Exception as e:
                classification = classify_error(e)
                logger.warning(
                    f"[CONTROLLER] Transport rejected call request: {e}",
                    extra={"call_id": session.id, "kind": classification.kind.value}
                )
                await self._fail_locked(classification, reason=classification.detail, call_ref=None)
                await self._settle_locked()
                raise TransportFailure(
                    classification.detail,
                    user_message=classification.user_message,
                    error_kind=classification.kind.value,
                    is_user_facing=classification.is_user_facing,
                    is_retryable=classification.is_retryable,
                ) from e
            finally:
                self._placing = None
                cancel_reason, self._cancel_pending = self._cancel_pending, None

            session.call_ref = call_ref
            logger.info(
                "[CONTROLLER] Call requested",
                extra={"call_id": session.id, "call_ref": call_ref}
            )

            if cancel_reason:
                await self._end_locked(session, reason=cancel_reason)

        if cancel_reason:
            await self._request_transport_hangup(call_ref)
        return session

    async def handle_call_event(
        self,
        name: str,
        payload: Optional[Mapping[str, Any]] = None
    ) -> List[StateTransition]:
        """Entrada do canal de callbacks por chamada."""
        return await self._handle_report(self.adapter.from_call_event(name, payload))

    async def handle_notification(self, notification: Mapping[str, Any]) -> List[StateTransition]:
        """Entrada do stream genérico de notificações."""
        return await self._handle_report(self.adapter.from_notification(notification))

    async def hangup(self) -> None:
        """
        Encerra a chamada a pedido do usuário.

        Em dialing/ringing é um cancelamento (registrado como missed);
        em connected/voicemail vai para ended. Durante o pedido de chamada
        ao transporte o cancelamento fica pendente e é aplicado assim que
        o call_ref chega.
        """
        if self._placing is not None:
            self._request_cancel("local hangup")
            return

        async with self._lock:
            session = self._session
            if session is None:
                return
            call_ref = session.call_ref
            await self._end_locked(session, reason="local hangup")

        if call_ref:
            await self._request_transport_hangup(call_ref)

    async def reset(self) -> None:
        """Reset forçado: encerra o que houver e volta para idle."""
        if self._placing is not None:
            self._user_error = None
            self._request_cancel("forced reset")
            return

        async with self._lock:
            session = self._session
            call_ref = session.call_ref if session else None
            was_live = self.machine.state not in TERMINAL_STATES and self.machine.state != CallState.IDLE

            if session is not None and was_live:
                await self._end_locked(session, reason="forced reset")
            if self.machine.state in TERMINAL_STATES:
                await self._reset_locked("forced reset")
            self._user_error = None

        if call_ref and was_live:
            await self._request_transport_hangup(call_ref)

    async def acknowledge_failure(self) -> None:
        """A UI dispensou o erro: limpa a mensagem e sai do estado terminal."""
        async with self._lock:
            self._user_error = None
            self._notice = None
            if self.machine.state in TERMINAL_STATES:
                await self._reset_locked("acknowledged")

    async def close(self) -> None:
        """Cancela timers e tarefas pendentes e fecha o EventBus."""
        if self._closed:
            return
        self._closed = True

        self.watchdog.close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._log_ctx is not None:
            self._log_ctx.close(status="closed")
            self._log_ctx = None
        self.events.close()

    # ========================================
    # SEÇÃO SERIALIZADA
    # ========================================

    async def _handle_report(self, report: Optional[RawStateReport]) -> List[StateTransition]:
        if report is None:
            return []

        async with self._lock:
            session = self._session
            try:
                self._check_active(report.call_ref)
            except StaleEvent as e:
                logger.debug(
                    f"[CONTROLLER] {e.detail}",
                    extra={"raw_state": report.raw_state, "channel": report.source_channel.value}
                )
                self.metrics.record_stale_event()
                await self.events.emit(CallEvent(
                    type=CallEventType.STALE_EVENT_DROPPED,
                    call_id=session.id if session else "",
                    data={
                        "call_ref": e.call_ref,
                        "active_ref": e.active_ref,
                        "raw_state": report.raw_state,
                    }
                ))
                return []

            # Sem handle no relato: pertence à sessão ativa
            if report.call_ref is None:
                report.call_ref = session.call_ref

            session.raw_state = report.raw_state
            self.watchdog.tighten_for_raw_state(report.raw_state)

            event = self.adapter.ingest(report)
            if event is None:
                return []

            transitions = await self._apply_locked(event)
            await self._settle_locked()
            return transitions

    def _check_active(self, call_ref: Optional[str]) -> None:
        session = self._session
        if session is None or session.call_ref is None:
            raise StaleEvent(call_ref, None)
        if not session.matches(call_ref):
            raise StaleEvent(call_ref, session.call_ref)

    async def _apply_locked(self, event: TelephonyEvent) -> List[StateTransition]:
        state = self.machine.state

        if event.kind == TelephonyEventKind.ENDED and state in CONNECTING_STATES:
            # Sem aresta dialing|ringing -> ended: encerramento antes do
            # atendimento é uma falha com a causa do transporte
            return await self._fail_locked(
                classify_error(event.reason),
                reason=event.reason,
                call_ref=event.call_ref,
            )

        if event.kind == TelephonyEventKind.FAILED:
            if state in ACTIVE_STATES:
                logger.warning(
                    f"[CONTROLLER] Failure reported on {state.value} call ignored: {event.reason}",
                    extra={"call_ref": event.call_ref}
                )
                return []
            if state in CONNECTING_STATES:
                return await self._fail_locked(
                    classify_error(event.reason),
                    reason=event.reason,
                    call_ref=event.call_ref,
                )

        return await self.machine.apply(event)

    async def _fail_locked(
        self,
        classification: ErrorClassification,
        reason: Optional[str],
        call_ref: Optional[str]
    ) -> List[StateTransition]:
        session = self._session
        transition = await self.machine.fail(
            reason=reason or classification.detail,
            call_ref=call_ref,
            kind=classification.kind.value,
            user_facing=classification.is_user_facing,
        )
        if transition is None:
            return []

        if session is not None:
            session.failure = classification
            session.failure_reason = reason or classification.detail

        self.metrics.record_failure(classification.kind.value, classification.is_user_facing)
        if self._log_ctx is not None:
            self._log_ctx.log_failure(
                classification.kind.value,
                classification.is_user_facing,
                detail=reason,
            )

        if classification.is_user_facing:
            self._user_error = classification.user_message
            await self.events.emit(CallEvent(
                type=CallEventType.USER_ERROR,
                call_id=session.id if session else "",
                data={
                    "message": classification.user_message,
                    "kind": classification.kind.value,
                    "retryable": classification.is_retryable,
                }
            ))

        return [transition]

    async def _end_locked(self, session: CallSession, reason: str) -> None:
        state = self.machine.state
        if state in CONNECTING_STATES:
            await self._fail_locked(
                classification_for(ErrorKind.CANCELLED, reason),
                reason=reason,
                call_ref=session.call_ref,
            )
            await self._settle_locked(immediate_reset=True)
        elif state in ACTIVE_STATES:
            await self.machine.apply(TelephonyEvent(
                kind=TelephonyEventKind.ENDED,
                call_ref=session.call_ref,
                raw_state="hangup",
                source_channel=EventChannel.INTERNAL,
                reason=reason,
            ))
            await self._settle_locked()

    async def _settle_locked(self, immediate_reset: bool = False) -> None:
        """Emite o registro final e decide o reset ao entrar em estado terminal."""
        session = self._session
        state = self.machine.state
        if session is None or state not in TERMINAL_STATES:
            return

        if not session.record_emitted:
            session.record_emitted = True
            record = session.to_record()
            self.metrics.record_call_finished(record.status, record.duration_seconds)
            await self.events.emit(CallEvent(
                type=CallEventType.CALL_RECORD_READY,
                call_id=session.id,
                data=record.to_dict()
            ))

        if immediate_reset:
            await self._reset_locked("cancelled")
            return

        failure = session.failure
        if state == CallState.FAILED and failure is not None and not failure.is_user_facing:
            self.watchdog.schedule_soft_reset(
                self.config.soft_reset_delay,
                session.call_ref,
                reason=f"soft reset after {failure.kind.value}",
            )
            return

        if self.config.auto_reset:
            await self._reset_locked("auto reset")

    async def _reset_locked(self, reason: str) -> None:
        session = self._session
        self.watchdog.cancel()

        if self.machine.state in TERMINAL_STATES:
            await self.machine.reset(
                call_ref=session.call_ref if session else None,
                reason=reason,
            )

        if session is None:
            return

        self.adapter.forget(session.call_ref)
        if self._log_ctx is not None:
            self._log_ctx.close(status=session.record_status)
            self._log_ctx = None

        self._session = None
        self.machine.call_id = ""

        await self.events.emit(CallEvent(
            type=CallEventType.SESSION_CLEARED,
            call_id=session.id,
            data={"reason": reason, "call_ref": session.call_ref}
        ))

    def _open_session(self, session: CallSession) -> None:
        self._session = session
        self._user_error = None
        self._notice = None
        self.machine.call_id = session.id
        self._log_ctx = CallLogContext(session.id, session.dialed_number).open()
        self.metrics.session_started()

    async def _after_transition(self, transition: StateTransition) -> None:
        session = self._session
        new_state = transition.new_state.value

        if session is not None:
            session.enter(new_state, transition.timestamp)
        self.metrics.record_transition(
            transition.previous_state.value,
            new_state,
            synthesized=transition.synthesized,
        )
        if self._log_ctx is not None:
            self._log_ctx.log_transition(
                transition.previous_state.value,
                new_state,
                trigger=transition.trigger,
                synthesized=transition.synthesized,
            )

        if transition.new_state == CallState.VOICEMAIL:
            self._notice = USER_MESSAGES[ErrorKind.VOICEMAIL]
            await self.events.emit(CallEvent(
                type=CallEventType.USER_NOTICE,
                call_id=session.id if session else "",
                data={"message": self._notice, "kind": "voicemail"}
            ))

    # ========================================
    # TRANSPORTE E WATCHDOG
    # ========================================

    async def _place_call(self, destination: str) -> str:
        """
        Pede a chamada ao transporte, limitado pelo threshold de dialing.

        Só o prazo do próprio controlador vira WatchdogTimeout; qualquer
        exceção do transporte (inclusive TimeoutError) sobe como está.
        """
        timeout = self.config.watchdog.state_thresholds.get("dialing")
        if not timeout:
            return await self.transport.place_call(destination)

        task = asyncio.ensure_future(self.transport.place_call(destination))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            raise WatchdogTimeout("dialing", STUCK_REASONS["dialing"], timeout)
        return task.result()

    def _request_cancel(self, reason: str) -> None:
        if self._cancel_pending is None:
            self._cancel_pending = reason
            logger.info(
                f"[CONTROLLER] Cancel pending until call request completes ({reason})",
                extra={"call_id": self._placing.id if self._placing else ""}
            )

    async def _request_transport_hangup(self, call_ref: str) -> None:
        try:
            await self.transport.hangup(call_ref)
        except Exception as e:
            logger.warning(
                f"[CONTROLLER] Transport hangup failed: {e}",
                extra={"call_ref": call_ref}
            )

    async def _on_watchdog_expired(self, expiry: WatchdogExpiry) -> None:
        call_ref = None
        async with self._lock:
            # Uma transição depois da armação invalida esta expiração
            if not self.watchdog.is_current(expiry) or self.state != expiry.state:
                return

            session = self._session
            if session is None:
                return

            if expiry.kind == "soft_reset":
                await self._reset_locked(expiry.reason)
                return

            error = WatchdogTimeout(expiry.state, expiry.reason, expiry.threshold)
            self.metrics.record_watchdog_expired(expiry.state)
            await self.events.emit(CallEvent(
                type=CallEventType.WATCHDOG_FIRED,
                call_id=session.id,
                data={
                    "state": expiry.state,
                    "reason": expiry.reason,
                    "threshold": expiry.threshold,
                    "elapsed": expiry.elapsed,
                },
                source="watchdog"
            ))

            call_ref = session.call_ref
            await self._fail_locked(
                self._watchdog_classification(error),
                reason=expiry.reason,
                call_ref=call_ref,
            )
            await self._settle_locked()

        if call_ref:
            self._spawn(self._request_transport_hangup(call_ref))

    @staticmethod
    def _watchdog_classification(error: WatchdogTimeout) -> ErrorClassification:
        return ErrorClassification(
            kind=ErrorKind.TIMEOUT,
            is_user_facing=True,
            is_retryable=True,
            user_message=error.user_message,
            detail=error.detail,
        )

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
