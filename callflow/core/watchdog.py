"""
FailureWatchdog - Timer único de segurança por sessão.

Força a chamada para failed quando ela fica presa em dialing/ringing.
Também agenda o soft reset de falhas não exibidas ao usuário, usando o
mesmo slot de timer: qualquer transição re-arma e cancela o anterior.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set
import time

from ..config import WatchdogSettings

logger = logging.getLogger(__name__)


STUCK_REASONS = {
    "dialing": "stuck in dialing",
    "ringing": "no response after ring timeout",
}


@dataclass
class ActiveTimer:
    """Representa o timer armado"""
    kind: str                # "stuck" ou "soft_reset"
    state: str
    call_ref: Optional[str]
    reason: str
    seconds: float
    started_at: float
    deadline: float
    generation: int
    handle: Optional[asyncio.TimerHandle] = None

    @property
    def remaining(self) -> float:
        return max(0.0, self.deadline - time.time())


@dataclass
class WatchdogExpiry:
    """Entregue ao callback do controlador quando o timer expira."""
    kind: str
    state: str
    call_ref: Optional[str]
    reason: str
    threshold: float
    elapsed: float
    generation: int


class FailureWatchdog:
    """
    Watchdog com um único timer armado por vez.

    - on_state_entered: chamado pela máquina a cada transição
    - tighten_for_raw_state: estados crus (ex: trying) só encurtam o prazo
    - schedule_soft_reset: agenda failed -> idle para falhas silenciosas

    O disparo entrega um WatchdogExpiry ao callback; o controlador ainda
    confere call_ref e estado antes de agir, então cada armação dispara
    no máximo uma vez.
    """

    def __init__(
        self,
        settings: WatchdogSettings,
        on_expire: Callable[[WatchdogExpiry], Any],
        owner: str = "callflow"
    ):
        """
        Args:
            settings: Thresholds por estado canônico e por estado cru
            on_expire: Callback (sync ou async) chamado na expiração
            owner: Identificação para logging
        """
        self.settings = settings
        self.owner = owner
        self._on_expire = on_expire

        self._timer: Optional[ActiveTimer] = None
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._fired_count = 0

    @property
    def active(self) -> Optional[ActiveTimer]:
        return self._timer

    @property
    def fired_count(self) -> int:
        return self._fired_count

    def on_state_entered(
        self,
        state: str,
        call_ref: Optional[str] = None,
        raw_state: Optional[str] = None
    ) -> None:
        """Cancela o timer anterior e arma um novo se o estado é vigiado."""
        self.cancel()

        seconds = self.settings.state_thresholds.get(state)
        if seconds is None:
            return

        self._arm(
            kind="stuck",
            state=state,
            call_ref=call_ref,
            reason=STUCK_REASONS.get(state, f"stuck in {state}"),
            seconds=seconds,
        )

        if raw_state:
            self.tighten_for_raw_state(raw_state)

    def tighten_for_raw_state(self, raw_state: str) -> bool:
        """
        Aplica o threshold de um estado cru ao timer de dialing.

        Returns:
            True se o prazo foi encurtado
        """
        timer = self._timer
        if timer is None or timer.kind != "stuck" or timer.state != "dialing":
            return False

        seconds = self.settings.raw_state_thresholds.get(raw_state.strip().lower())
        if seconds is None:
            return False

        if time.time() + seconds >= timer.deadline:
            return False

        logger.debug(
            f"[WATCHDOG] Deadline tightened by raw state '{raw_state}' to {seconds}s",
            extra={"watchdog_owner": self.owner, "call_ref": timer.call_ref}
        )
        self.cancel()
        self._arm(
            kind="stuck",
            state=timer.state,
            call_ref=timer.call_ref,
            reason=timer.reason,
            seconds=seconds,
        )
        return True

    def schedule_soft_reset(self, delay: float, call_ref: Optional[str], reason: str) -> None:
        """Agenda o retorno a idle após uma falha não exibida."""
        self.cancel()
        self._arm(
            kind="soft_reset",
            state="failed",
            call_ref=call_ref,
            reason=reason,
            seconds=delay,
        )

    def cancel(self) -> bool:
        """
        Cancela o timer armado.

        Returns:
            True se havia timer armado
        """
        # Sempre avança a geração: invalida também uma expiração que já
        # disparou e ainda espera o controlador
        self._generation += 1
        timer = self._timer
        if timer is None:
            return False

        self._timer = None
        if timer.handle is not None:
            timer.handle.cancel()
        return True

    def is_current(self, expiry: WatchdogExpiry) -> bool:
        """Se nenhuma armação posterior substituiu esta expiração."""
        return expiry.generation == self._generation

    def close(self) -> None:
        """Cancela timer e callbacks pendentes."""
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def get_active_timeout(self) -> Optional[Dict[str, Any]]:
        """Retorna info do timer armado (para debug)."""
        timer = self._timer
        if timer is None:
            return None
        return {
            "kind": timer.kind,
            "state": timer.state,
            "call_ref": timer.call_ref,
            "reason": timer.reason,
            "seconds": timer.seconds,
            "remaining": timer.remaining,
        }

    def _arm(
        self,
        kind: str,
        state: str,
        call_ref: Optional[str],
        reason: str,
        seconds: float
    ) -> None:
        loop = asyncio.get_running_loop()
        self._generation += 1
        started_at = time.time()

        timer = ActiveTimer(
            kind=kind,
            state=state,
            call_ref=call_ref,
            reason=reason,
            seconds=seconds,
            started_at=started_at,
            deadline=started_at + seconds,
            generation=self._generation,
        )
        timer.handle = loop.call_later(seconds, self._fire, timer.generation)
        self._timer = timer

        logger.debug(
            f"[WATCHDOG] Armed {kind} for {state} ({seconds}s)",
            extra={"watchdog_owner": self.owner, "call_ref": call_ref}
        )

    def _fire(self, generation: int) -> None:
        timer = self._timer
        if timer is None or timer.generation != generation:
            return

        self._timer = None
        elapsed = time.time() - timer.started_at
        if timer.kind == "stuck":
            self._fired_count += 1
            logger.warning(
                f"[WATCHDOG] EXPIRED: {timer.state} after {elapsed:.1f}s (limit: {timer.seconds}s)",
                extra={
                    "watchdog_owner": self.owner,
                    "call_ref": timer.call_ref,
                    "timeout_seconds": timer.seconds,
                    "elapsed_seconds": elapsed,
                }
            )

        expiry = WatchdogExpiry(
            kind=timer.kind,
            state=timer.state,
            call_ref=timer.call_ref,
            reason=timer.reason,
            threshold=timer.seconds,
            elapsed=elapsed,
            generation=generation,
        )

        try:
            result = self._on_expire(expiry)
        except Exception as e:
            logger.error(f"[WATCHDOG] Expiry callback error: {e}", exc_info=True)
            return

        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
