"""
Eventos internos do controlador de chamadas.

Dois níveis de evento:
- RawStateReport: o que o transporte reportou (string crua + canal de origem)
- TelephonyEvent: variante fechada normalizada pelo adapter
- CallEvent: notificações publicadas no EventBus para UI/persistência

Toda a lógica abaixo do adapter opera apenas sobre TelephonyEventKind,
nunca sobre strings do transporte.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import time


class EventChannel(Enum):
    """Canal de origem de um evento do transporte."""
    PRIMARY = "primary"              # Callbacks por chamada (ringing/answered/ended)
    NOTIFICATION = "notification"    # Stream genérico de notificações (state string)
    INTERNAL = "internal"            # Sintetizado pelo próprio controlador


class TelephonyEventKind(Enum):
    """
    Variante fechada de eventos normalizados.
    
    Qualquer estado cru que não mapeia para um destes é descartado
    no adapter (fail open).
    """
    DIALING = "dialing"
    RINGING = "ringing"
    ANSWERED_HUMAN = "answered_human"
    ANSWERED_MACHINE = "answered_machine"
    ENDED = "ended"
    FAILED = "failed"
    
    @property
    def group(self) -> str:
        """
        Grupo de destino usado na deduplicação.
        
        ANSWERED_HUMAN e ANSWERED_MACHINE resolvem para o mesmo alvo:
        a primeira resposta vence, independente da classificação.
        """
        if self in (TelephonyEventKind.ANSWERED_HUMAN, TelephonyEventKind.ANSWERED_MACHINE):
            return "answered"
        return self.value


@dataclass
class RawStateReport:
    """
    Relato cru de mudança de estado vindo do transporte.
    
    Efêmero: nunca é persistido.
    
    Attributes:
        source_channel: Canal que entregou o relato
        raw_state: String de estado como veio do transporte
        call_ref: Handle opaco da chamada no transporte
        timestamp: Momento do recebimento
        metadata: Payload restante (flags de voicemail, headers, causa)
    """
    source_channel: EventChannel
    raw_state: str
    call_ref: Optional[str]
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TelephonyEvent:
    """Evento normalizado emitido pelo TelephonyEventAdapter."""
    kind: TelephonyEventKind
    call_ref: Optional[str]
    raw_state: str
    source_channel: EventChannel = EventChannel.INTERNAL
    timestamp: float = field(default_factory=time.time)
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    
    def __repr__(self) -> str:
        ref_short = self.call_ref[:8] if self.call_ref else "none"
        return (
            f"TelephonyEvent({self.kind.value}, call={ref_short}, "
            f"raw={self.raw_state}, via={self.source_channel.value})"
        )


class CallEventType(Enum):
    """
    Notificações publicadas pelo controlador no EventBus.
    
    Consumidores típicos: camada de UI e colaborador de persistência.
    """
    
    # ========================================
    # ESTADO
    # ========================================
    STATE_CHANGED = "state_changed"             # Transição canônica aplicada
    TRANSITION_IGNORED = "transition_ignored"   # Trigger sem entrada na tabela
    
    # ========================================
    # SESSÃO
    # ========================================
    SESSION_CREATED = "session_created"
    SESSION_CLEARED = "session_cleared"
    CALL_RECORD_READY = "call_record_ready"     # Registro final para persistência
    
    # ========================================
    # ADMISSÃO / FALHAS
    # ========================================
    ADMISSION_REJECTED = "admission_rejected"
    WATCHDOG_FIRED = "watchdog_fired"
    USER_ERROR = "user_error"                   # Erro que a UI deve exibir
    USER_NOTICE = "user_notice"                 # Aviso não fatal (ex: voicemail)
    STALE_EVENT_DROPPED = "stale_event_dropped"


@dataclass
class CallEvent:
    """
    Notificação publicada no EventBus.
    
    Attributes:
        type: Tipo da notificação
        call_id: ID da sessão (vazio quando não há sessão)
        data: Payload (varia por tipo)
        timestamp: Momento da publicação
        source: Componente que publicou (para debug)
    """
    type: CallEventType
    call_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = "controller"
    
    def __repr__(self) -> str:
        call_short = self.call_id[:8] if self.call_id else "none"
        data_preview = str(self.data)[:50] if self.data else "{}"
        return f"CallEvent({self.type.value}, call={call_short}..., data={data_preview})"
    
    def __str__(self) -> str:
        return f"[{self.type.value}] {self.data}"
