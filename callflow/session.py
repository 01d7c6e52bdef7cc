"""
Sessão de chamada e os dados entregues aos colaboradores externos.

- CallSession: a única sessão ativa, criada pela admissão e mantida pelo
  CallController
- CallRecord: registro final entregue à persistência
- CallView: snapshot para a UI
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import time

from .handlers.error_classifier import ErrorClassification


RECORD_COMPLETED = "completed"
RECORD_FAILED = "failed"
RECORD_MISSED = "missed"
RECORD_VOICEMAIL = "voicemail"


@dataclass
class CallRecord:
    """Registro final de uma chamada (status em completed/failed/missed/voicemail)."""
    phone_number: str
    status: str
    duration_seconds: int
    call_id: str
    call_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phone_number": self.phone_number,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
            "call_id": self.call_id,
            "call_ref": self.call_ref,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at,
        }


@dataclass
class CallSession:
    """
    Estado de uma chamada em andamento.

    Só o CallController cria e muta instâncias. call_ref fica None até o
    transporte confirmar o pedido de chamada.
    """
    dialed_number: str
    caller_identity: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    canonical_state: str = "idle"
    raw_state: Optional[str] = None
    call_ref: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    ringing_started_at: Optional[float] = None
    answered_at: Optional[float] = None
    ended_at: Optional[float] = None
    previous_state: Optional[str] = None
    failure: Optional[ErrorClassification] = None
    failure_reason: Optional[str] = None
    record_emitted: bool = False

    def enter(self, state: str, timestamp: Optional[float] = None) -> None:
        """Atualiza o estado canônico e os carimbos de tempo."""
        timestamp = timestamp or time.time()
        self.previous_state = self.canonical_state
        self.canonical_state = state

        if state == "ringing" and self.ringing_started_at is None:
            self.ringing_started_at = timestamp
        elif state in ("connected", "voicemail") and self.answered_at is None:
            self.answered_at = timestamp
        elif state in ("ended", "failed") and self.ended_at is None:
            self.ended_at = timestamp

    def matches(self, call_ref: Optional[str]) -> bool:
        """Se um evento do transporte pertence a esta sessão."""
        return call_ref is None or call_ref == self.call_ref

    @property
    def duration_seconds(self) -> int:
        if self.answered_at is None:
            return 0
        end = self.ended_at or time.time()
        return max(0, int(round(end - self.answered_at)))

    @property
    def record_status(self) -> str:
        if self.canonical_state == "ended":
            return RECORD_VOICEMAIL if self.previous_state == "voicemail" else RECORD_COMPLETED
        if self.failure is not None and self.failure.is_missed:
            return RECORD_MISSED
        return RECORD_FAILED

    def to_record(self) -> CallRecord:
        return CallRecord(
            phone_number=self.dialed_number,
            status=self.record_status,
            duration_seconds=self.duration_seconds,
            call_id=self.id,
            call_ref=self.call_ref,
            failure_reason=self.failure_reason,
            started_at=self.started_at,
        )


@dataclass(frozen=True)
class CallView:
    """Snapshot para a camada de UI."""
    state: str
    is_connecting: bool
    is_call_active: bool
    user_error: Optional[str] = None
    notice: Optional[str] = None
    dialed_number: Optional[str] = None
    call_ref: Optional[str] = None
