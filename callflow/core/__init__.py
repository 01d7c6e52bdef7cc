"""
Core - Estado canônico e eventos do controlador de chamadas.

Componentes:
- TelephonyEvent, CallEvent: Eventos normalizados e notificações
- EventBus: Publicação/assinatura de notificações
- CallStateMachine, CallState: Máquina de estados da chamada
- FailureWatchdog: Timer de segurança para chamadas presas
"""

from .events import (
    CallEvent,
    CallEventType,
    EventChannel,
    RawStateReport,
    TelephonyEvent,
    TelephonyEventKind,
)
from .event_bus import EventBus
from .state_machine import CallStateMachine, CallState, StateTransition
from .watchdog import FailureWatchdog, WatchdogExpiry

__all__ = [
    # Eventos
    'CallEvent',
    'CallEventType',
    'EventChannel',
    'RawStateReport',
    'TelephonyEvent',
    'TelephonyEventKind',
    'EventBus',

    # Estado
    'CallStateMachine',
    'CallState',
    'StateTransition',

    # Watchdog
    'FailureWatchdog',
    'WatchdogExpiry',
]
