"""
CallStateMachine - Estado canônico da chamada.

Aplica a tabela de transições, sintetiza o toque quando o transporte
responde antes de reportar ringing e mantém o watchdog sincronizado
dentro da própria transição.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING
import time

from .events import CallEvent, CallEventType, TelephonyEvent, TelephonyEventKind
from .event_bus import EventBus

if TYPE_CHECKING:
    from .watchdog import FailureWatchdog

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Estados canônicos expostos para a UI."""
    IDLE = "idle"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    VOICEMAIL = "voicemail"
    ENDED = "ended"
    FAILED = "failed"


TERMINAL_STATES = frozenset({CallState.ENDED, CallState.FAILED})
CONNECTING_STATES = frozenset({CallState.DIALING, CallState.RINGING})
ACTIVE_STATES = frozenset({CallState.CONNECTED, CallState.VOICEMAIL})


@dataclass
class StateTransition:
    """Registro de uma transição de estado"""
    previous_state: CallState
    new_state: CallState
    trigger: str
    call_ref: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    synthesized: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "trigger": self.trigger,
            "call_ref": self.call_ref,
            "timestamp": self.timestamp,
            "synthesized": self.synthesized,
            **self.data,
        }


class CallStateMachine:
    """
    Máquina de estados do ciclo de vida da chamada.

    Uso:
        sm = CallStateMachine(event_bus, watchdog)
        await sm.dial(call_ref)              # idle -> dialing
        await sm.apply(telephony_event)      # eventos normalizados do adapter
        await sm.reset()                     # failed/ended -> idle

    Garantias:
    - Só transições da tabela TRANSITIONS são aplicadas
    - dialing -> connected nunca acontece: uma resposta durante dialing
      gera antes um ringing sintetizado (duração zero)
    - Duplicatas para o estado atual são no-op; não há regressão
    """

    # Formato: (estado_atual, trigger) -> estado_destino
    TRANSITIONS = {
        (CallState.IDLE, "dial"): CallState.DIALING,
        (CallState.DIALING, "ring"): CallState.RINGING,
        (CallState.DIALING, "fail"): CallState.FAILED,
        (CallState.RINGING, "answer_human"): CallState.CONNECTED,
        (CallState.RINGING, "answer_machine"): CallState.VOICEMAIL,
        (CallState.RINGING, "fail"): CallState.FAILED,
        (CallState.CONNECTED, "hangup"): CallState.ENDED,
        (CallState.VOICEMAIL, "hangup"): CallState.ENDED,
        (CallState.FAILED, "reset"): CallState.IDLE,
        (CallState.ENDED, "reset"): CallState.IDLE,
    }

    # Evento normalizado -> trigger. DIALING não move a máquina:
    # idle -> dialing só acontece pela admissão.
    EVENT_TRIGGERS = {
        TelephonyEventKind.RINGING: "ring",
        TelephonyEventKind.ANSWERED_HUMAN: "answer_human",
        TelephonyEventKind.ANSWERED_MACHINE: "answer_machine",
        TelephonyEventKind.ENDED: "hangup",
        TelephonyEventKind.FAILED: "fail",
    }

    def __init__(
        self,
        event_bus: EventBus,
        watchdog: Optional["FailureWatchdog"] = None,
        history_limit: int = 200
    ):
        """
        Args:
            event_bus: EventBus para publicar STATE_CHANGED
            watchdog: FailureWatchdog re-armado a cada transição
            history_limit: Número de transições mantidas para debug
        """
        self.events = event_bus
        self.watchdog = watchdog
        self.call_id = ""

        self._state = CallState.IDLE
        self._entered_at = time.time()
        self._history: List[StateTransition] = []
        self._history_limit = history_limit
        self._after_callbacks: Dict[str, List[Callable]] = {}

    @property
    def state(self) -> CallState:
        """Estado atual"""
        return self._state

    @property
    def state_name(self) -> str:
        return self._state.value

    @property
    def state_age(self) -> float:
        """Segundos desde a última transição."""
        return time.time() - self._entered_at

    @property
    def is_connecting(self) -> bool:
        return self._state in CONNECTING_STATES

    @property
    def is_call_active(self) -> bool:
        return self._state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def after(self, trigger: str, callback: Callable) -> None:
        """
        Adiciona callback executado APÓS a transição.

        O callback recebe o StateTransition aplicado (sync ou async).
        Use "*" para receber todas as transições.
        """
        self._after_callbacks.setdefault(trigger, []).append(callback)

    async def trigger(
        self,
        trigger_name: str,
        call_ref: Optional[str] = None,
        raw_state: Optional[str] = None,
        synthesized: bool = False,
        **data
    ) -> Optional[StateTransition]:
        """
        Executa trigger para transição de estado.

        Returns:
            StateTransition aplicado, ou None se não há transição na tabela
        """
        key = (self._state, trigger_name)

        if key not in self.TRANSITIONS:
            logger.debug(
                f"No transition for '{trigger_name}' from state '{self._state.value}'",
                extra={"call_id": self.call_id, "call_ref": call_ref}
            )
            await self.events.emit(CallEvent(
                type=CallEventType.TRANSITION_IGNORED,
                call_id=self.call_id,
                data={
                    "trigger": trigger_name,
                    "state": self._state.value,
                    "call_ref": call_ref,
                },
                source="state_machine"
            ))
            return None

        target_state = self.TRANSITIONS[key]
        old_state = self._state

        self._state = target_state
        self._entered_at = time.time()

        transition = StateTransition(
            previous_state=old_state,
            new_state=target_state,
            trigger=trigger_name,
            call_ref=call_ref,
            timestamp=self._entered_at,
            synthesized=synthesized,
            data={k: v for k, v in data.items() if v is not None},
        )
        self._history.append(transition)
        if len(self._history) > self._history_limit:
            self._history.pop(0)

        # Watchdog no mesmo passo da transição: sem janela para um timer
        # antigo disparar sobre o estado novo
        if self.watchdog is not None:
            self.watchdog.on_state_entered(target_state.value, call_ref, raw_state)

        logger.info(
            f"[STATE] {old_state.value} --[{trigger_name}]--> {target_state.value}"
            + (" (synthesized)" if synthesized else ""),
            extra={"call_id": self.call_id, "call_ref": call_ref}
        )

        await self.events.emit(CallEvent(
            type=CallEventType.STATE_CHANGED,
            call_id=self.call_id,
            data=transition.to_dict(),
            timestamp=transition.timestamp,
            source="state_machine"
        ))

        callbacks = self._after_callbacks.get(trigger_name, []) + self._after_callbacks.get("*", [])
        for callback in callbacks:
            try:
                result = callback(transition)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"After callback error: {e}", exc_info=True)

        return transition

    async def apply(self, event: TelephonyEvent) -> List[StateTransition]:
        """
        Aplica um evento normalizado do adapter.

        Returns:
            Transições aplicadas (0, 1, ou 2 quando o toque é sintetizado)
        """
        trigger_name = self.EVENT_TRIGGERS.get(event.kind)
        if trigger_name is None:
            return []

        if self.TRANSITIONS.get((self._state, trigger_name)) is None:
            if self._target_of(event.kind) == self._state:
                logger.debug(
                    f"Duplicate {event.kind.value} ignored (already {self._state.value})",
                    extra={"call_id": self.call_id, "call_ref": event.call_ref}
                )
                return []

        applied: List[StateTransition] = []

        if self._state == CallState.DIALING and event.kind in (
            TelephonyEventKind.ANSWERED_HUMAN,
            TelephonyEventKind.ANSWERED_MACHINE,
        ):
            ring = await self.trigger(
                "ring",
                call_ref=event.call_ref,
                raw_state=event.raw_state,
                synthesized=True,
            )
            if ring is not None:
                applied.append(ring)

        transition = await self.trigger(
            trigger_name,
            call_ref=event.call_ref,
            raw_state=event.raw_state,
            reason=event.reason,
            source_channel=event.source_channel.value,
            **event.data
        )
        if transition is not None:
            applied.append(transition)

        return applied

    # ========================================
    # MÉTODOS DE CONVENIÊNCIA
    # ========================================

    async def dial(self, call_ref: Optional[str] = None, **data) -> Optional[StateTransition]:
        """idle -> dialing"""
        return await self.trigger("dial", call_ref=call_ref, raw_state="new", **data)

    async def fail(self, reason: str, call_ref: Optional[str] = None, **data) -> Optional[StateTransition]:
        """dialing/ringing -> failed"""
        return await self.trigger("fail", call_ref=call_ref, reason=reason, **data)

    async def reset(self, call_ref: Optional[str] = None, reason: Optional[str] = None) -> Optional[StateTransition]:
        """failed/ended -> idle"""
        return await self.trigger("reset", call_ref=call_ref, reason=reason)

    # ========================================
    # DEBUG
    # ========================================

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Retorna histórico de transições para debug"""
        return [t.to_dict() for t in self._history[-limit:]]

    def get_available_triggers(self) -> List[str]:
        """Retorna triggers disponíveis no estado atual"""
        return [
            trigger
            for (state, trigger) in self.TRANSITIONS.keys()
            if state == self._state
        ]

    @staticmethod
    def _target_of(kind: TelephonyEventKind) -> Optional[CallState]:
        return {
            TelephonyEventKind.RINGING: CallState.RINGING,
            TelephonyEventKind.ANSWERED_HUMAN: CallState.CONNECTED,
            TelephonyEventKind.ANSWERED_MACHINE: CallState.VOICEMAIL,
            TelephonyEventKind.ENDED: CallState.ENDED,
            TelephonyEventKind.FAILED: CallState.FAILED,
        }.get(kind)
