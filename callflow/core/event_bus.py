"""
EventBus - Publicação/assinatura das notificações do controlador.

A UI e o colaborador de persistência assinam CallEventType sem
conhecer a máquina de estados nem o transporte.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .events import CallEvent, CallEventType

logger = logging.getLogger(__name__)


class EventBus:
    """
    Event Bus assíncrono do controlador.

    Funcionalidades:
    - on(event_type, handler): Registra handler
    - off(event_type, handler): Remove handler
    - once(event_type, handler): Handler executado uma vez
    - emit(event): Emite evento para handlers
    - wait_for(event_type, timeout): Aguarda evento
    - wait_for_any(event_types, timeout): Aguarda qualquer evento da lista

    Handlers podem ser sync ou async. Handlers NÃO devem chamar operações
    do CallController: o emit acontece dentro da seção serializada.
    """

    def __init__(self, owner: str = "callflow", max_history: int = 100):
        """
        Args:
            owner: Identificação do dono do bus (para logging)
            max_history: Número de eventos mantidos para debug
        """
        self.owner = owner
        self._handlers: Dict[CallEventType, List[Callable]] = {}
        self._event_history: List[CallEvent] = []
        self._max_history = max_history
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event_type: CallEventType, handler: Callable) -> 'EventBus':
        """
        Registra handler para tipo de evento.

        Returns:
            self para permitir chaining: bus.on(A, h1).on(B, h2)
        """
        if self._closed:
            logger.warning(f"EventBus closed, ignoring handler registration for {event_type.value}")
            return self

        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug(
                f"Handler registered for {event_type.value}",
                extra={"bus_owner": self.owner}
            )

        return self

    def off(self, event_type: CallEventType, handler: Callable) -> 'EventBus':
        """Remove handler (ignora se não estava registrado)."""
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
        return self

    def once(self, event_type: CallEventType, handler: Callable) -> 'EventBus':
        """Registra handler que executa apenas uma vez."""
        async def wrapper(event: CallEvent):
            self.off(event_type, wrapper)
            if asyncio.iscoroutinefunction(handler):
                await handler(event)
            else:
                handler(event)

        return self.on(event_type, wrapper)

    async def emit(self, event: CallEvent) -> None:
        """
        Emite evento para todos os handlers registrados.

        Handlers são executados em sequência, na ordem de registro.
        Erros em handlers são logados mas não propagados.
        """
        if self._closed:
            return

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history.pop(0)

        handlers = self._handlers.get(event.type, []).copy()
        log_level = logging.INFO if event.type == CallEventType.STATE_CHANGED else logging.DEBUG
        logger.log(
            log_level,
            f"[EVENT_BUS] {event.type.value}",
            extra={
                "call_id": event.call_id,
                "event_type": event.type.value,
                "event_source": event.source,
                "handlers_count": len(handlers),
                "event_data": str(event.data)[:200],
            }
        )

        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(
                    f"Error in event handler for {event.type.value}: {e}",
                    extra={"call_id": event.call_id},
                    exc_info=True
                )

    async def wait_for(
        self,
        event_type: CallEventType,
        timeout: Optional[float] = None,
        condition: Optional[Callable[[CallEvent], bool]] = None
    ) -> Optional[CallEvent]:
        """
        Aguarda evento com timeout opcional.

        Returns:
            CallEvent se recebido, None se timeout

        Example:
            event = await bus.wait_for(
                CallEventType.STATE_CHANGED,
                timeout=5,
                condition=lambda e: e.data.get("new_state") == "connected"
            )
        """
        event_received = asyncio.Event()
        received: List[CallEvent] = []

        async def capture_event(event: CallEvent):
            if not received and (condition is None or condition(event)):
                received.append(event)
                event_received.set()

        self.on(event_type, capture_event)

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    return None
            else:
                await event_received.wait()

            return received[0] if received else None
        finally:
            self.off(event_type, capture_event)

    async def wait_for_any(
        self,
        event_types: List[CallEventType],
        timeout: Optional[float] = None
    ) -> Optional[CallEvent]:
        """Aguarda o primeiro de vários tipos de evento (None se timeout)."""
        event_received = asyncio.Event()
        received: List[CallEvent] = []

        async def capture_event(event: CallEvent):
            if not received:
                received.append(event)
                event_received.set()

        for event_type in event_types:
            self.on(event_type, capture_event)

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    return None
            else:
                await event_received.wait()

            return received[0] if received else None
        finally:
            for event_type in event_types:
                self.off(event_type, capture_event)

    def get_history(
        self,
        event_type: Optional[CallEventType] = None,
        limit: int = 10
    ) -> List[CallEvent]:
        """Retorna os últimos eventos (mais recentes por último)."""
        if event_type:
            filtered = [e for e in self._event_history if e.type == event_type]
        else:
            filtered = self._event_history.copy()

        return filtered[-limit:]

    def close(self) -> None:
        """Fecha o EventBus. Novos eventos são ignorados após fechar."""
        self._closed = True
        handlers_cleared = sum(len(h) for h in self._handlers.values())
        self._handlers.clear()

        logger.info(
            "[EVENT_BUS] Closed",
            extra={
                "bus_owner": self.owner,
                "events_processed": len(self._event_history),
                "handlers_cleared": handlers_cleared,
            }
        )
