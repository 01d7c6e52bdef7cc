"""
TelephonyEventAdapter - Funil único dos eventos do transporte.

O transporte entrega a mesma chamada por dois canais concorrentes:
- callbacks por chamada (ringing, answered, ended)
- stream genérico de notificações ({"type": "callUpdate", "call": {...}})

Os dois relatam as mesmas transições, às vezes fora de ordem. O adapter
converte ambos em RawStateReport, normaliza para TelephonyEvent e aplica
a deduplicação por grupo de destino: o primeiro evento que resolve para
um grupo vence, os seguintes são descartados.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Set
import time

from ..config import VoicemailSettings
from ..core.events import EventChannel, RawStateReport, TelephonyEvent, TelephonyEventKind
from .voicemail_classifier import answer_metadata_from_payload, classify_answer

logger = logging.getLogger(__name__)


# Estado cru -> kind. "answered" é resolvido pelo VoicemailClassifier.
RAW_STATE_MAP = {
    "new": TelephonyEventKind.DIALING,
    "requesting": TelephonyEventKind.DIALING,
    "trying": TelephonyEventKind.DIALING,
    "early": TelephonyEventKind.RINGING,
    "ringing": TelephonyEventKind.RINGING,
    "answered": TelephonyEventKind.ANSWERED_HUMAN,
    "active": TelephonyEventKind.ANSWERED_HUMAN,
    "hangup": TelephonyEventKind.ENDED,
    "destroy": TelephonyEventKind.ENDED,
    "ended": TelephonyEventKind.ENDED,
    "purge": TelephonyEventKind.FAILED,
}

_REF_KEYS = ("call_ref", "call_control_id", "callControlId", "call_id", "id")
_REASON_KEYS = ("cause", "hangup_cause", "reason", "error", "sip_reason")


class TelephonyEventAdapter:
    """
    Normaliza e deduplica eventos do transporte.

    Uso:
        report = adapter.from_notification(notification)
        event = adapter.ingest(report)     # None se descartado
        ...
        adapter.forget(call_ref)           # ao encerrar a sessão
    """

    def __init__(
        self,
        voicemail_settings: VoicemailSettings,
        clock: Callable[[], float] = time.time
    ):
        self.voicemail_settings = voicemail_settings
        self._clock = clock
        self._resolved: Dict[str, Set[str]] = {}
        self._ring_started: Dict[str, float] = {}
        self._dropped = 0

    @property
    def dropped_count(self) -> int:
        return self._dropped

    # ========================================
    # ENTRADA DOS CANAIS
    # ========================================

    def from_call_event(
        self,
        name: str,
        payload: Optional[Mapping[str, Any]] = None
    ) -> Optional[RawStateReport]:
        """Converte um callback por chamada (ex: "call.answered")."""
        if not name:
            return None

        raw_state = name.strip().lower()
        if raw_state.startswith("call."):
            raw_state = raw_state[len("call."):]

        payload = dict(payload or {})
        return RawStateReport(
            source_channel=EventChannel.PRIMARY,
            raw_state=raw_state,
            call_ref=_call_ref(payload),
            timestamp=self._clock(),
            metadata=payload,
        )

    def from_notification(self, notification: Mapping[str, Any]) -> Optional[RawStateReport]:
        """
        Converte uma notificação do stream genérico.

        Aceita {"type": "callUpdate", "call": {"state": ...}} ou o formato
        plano {"state": ..., "call_ref": ...}. Outros tipos são ignorados.
        """
        if not notification:
            return None

        notification_type = notification.get("type")
        call = notification.get("call")

        if isinstance(call, Mapping):
            if notification_type not in (None, "callUpdate"):
                logger.debug(f"[ADAPTER] Ignoring notification type {notification_type}")
                return None
            body = dict(call)
        else:
            body = dict(notification)

        state = body.get("state")
        if not isinstance(state, str) or not state.strip():
            return None

        return RawStateReport(
            source_channel=EventChannel.NOTIFICATION,
            raw_state=state.strip().lower(),
            call_ref=_call_ref(body),
            timestamp=self._clock(),
            metadata=body,
        )

    # ========================================
    # FUNIL
    # ========================================

    def normalize(self, report: RawStateReport) -> Optional[TelephonyEvent]:
        """
        Converte RawStateReport em TelephonyEvent, sem deduplicar.

        Returns:
            None para estados crus sem mapeamento (fail open)
        """
        raw_state = report.raw_state
        kind = RAW_STATE_MAP.get(raw_state)

        if kind is None and ("fail" in raw_state or "error" in raw_state):
            kind = TelephonyEventKind.FAILED

        if kind is None:
            logger.info(
                f"[ADAPTER] Unmapped raw state '{raw_state}' dropped",
                extra={"call_ref": report.call_ref, "channel": report.source_channel.value}
            )
            return None

        data: Dict[str, Any] = {}
        reason: Optional[str] = None

        if kind == TelephonyEventKind.ANSWERED_HUMAN:
            metadata = answer_metadata_from_payload(
                report.metadata,
                elapsed_ring_duration_ms=self._ring_elapsed_ms(report.call_ref, report.timestamp),
            )
            classification = classify_answer(metadata, self.voicemail_settings.header_patterns)
            if classification.is_voicemail:
                kind = TelephonyEventKind.ANSWERED_MACHINE
            data["answer_matched_by"] = classification.matched_by
            data["elapsed_ring_duration_ms"] = metadata.elapsed_ring_duration_ms

        if kind in (TelephonyEventKind.FAILED, TelephonyEventKind.ENDED):
            reason = _reason(report.metadata) or raw_state

        return TelephonyEvent(
            kind=kind,
            call_ref=report.call_ref,
            raw_state=raw_state,
            source_channel=report.source_channel,
            timestamp=report.timestamp,
            reason=reason,
            data=data,
        )

    def ingest(self, report: RawStateReport) -> Optional[TelephonyEvent]:
        """
        Normaliza e deduplica um relato de qualquer canal.

        Returns:
            TelephonyEvent, ou None se não mapeado ou duplicado
        """
        event = self.normalize(report)
        if event is None:
            return None

        key = event.call_ref or ""
        resolved = self._resolved.setdefault(key, set())
        group = event.kind.group

        if group in resolved:
            self._dropped += 1
            logger.debug(
                f"[ADAPTER] Duplicate {group} from {event.source_channel.value} dropped",
                extra={"call_ref": event.call_ref, "raw_state": event.raw_state}
            )
            return None

        resolved.add(group)
        if event.kind == TelephonyEventKind.RINGING:
            self._ring_started.setdefault(key, event.timestamp)

        logger.debug(
            f"[ADAPTER] {event!r}",
            extra={"call_ref": event.call_ref}
        )
        return event

    def forget(self, call_ref: Optional[str]) -> None:
        """Descarta o estado de deduplicação de uma chamada."""
        key = call_ref or ""
        self._resolved.pop(key, None)
        self._ring_started.pop(key, None)

    def _ring_elapsed_ms(self, call_ref: Optional[str], now: float) -> Optional[int]:
        started = self._ring_started.get(call_ref or "")
        if started is None:
            return None
        return max(0, int((now - started) * 1000))


def _call_ref(payload: Mapping[str, Any]) -> Optional[str]:
    for key in _REF_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    return None


def _reason(payload: Mapping[str, Any]) -> Optional[str]:
    for key in _REASON_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    return None
