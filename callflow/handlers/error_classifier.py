"""
Classificação de erros do transporte.

Mapeia sinais heterogêneos (string, código de causa, exceção ou payload)
para uma taxonomia fechada com flags de retry e de exibição ao usuário.

- is_user_facing=True: falha visível, transição terminal imediata
- is_user_facing=False: ruído transitório de setup, soft reset atrasado
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Pattern, Tuple


class ErrorKind(str, Enum):
    VOICEMAIL = "voicemail"
    BUSY = "busy"
    REJECTED = "rejected"
    NO_ANSWER = "no_answer"
    CANCELLED = "cancelled"
    INVALID_NUMBER = "invalid_number"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CALL_FAILED = "call_failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    is_user_facing: bool
    is_retryable: bool
    user_message: str
    detail: str = ""

    @property
    def is_missed(self) -> bool:
        """Desfechos registrados como "missed" no histórico."""
        return self.kind in (ErrorKind.NO_ANSWER, ErrorKind.BUSY, ErrorKind.CANCELLED)


# Mensagens exibidas; o texto cru do transporte nunca chega à UI
USER_MESSAGES = {
    ErrorKind.VOICEMAIL: "Call forwarded to voice mail",
    ErrorKind.BUSY: "The number is currently busy",
    ErrorKind.REJECTED: "The call was rejected by the recipient",
    ErrorKind.NO_ANSWER: "The call was not answered",
    ErrorKind.CANCELLED: "Call cancelled",
    ErrorKind.INVALID_NUMBER: "This phone number cannot be reached",
    ErrorKind.TIMEOUT: "Call timed out",
    ErrorKind.NETWORK: "Network error - please check connection",
    ErrorKind.CALL_FAILED: "Call failed - Check SIP credentials and outbound voice profile",
    ErrorKind.UNKNOWN: "Call failed",
}

# (kind, user_facing, retryable)
_FLAGS = {
    ErrorKind.VOICEMAIL: (True, False),
    ErrorKind.BUSY: (True, True),
    ErrorKind.REJECTED: (True, True),
    ErrorKind.NO_ANSWER: (True, True),
    ErrorKind.CANCELLED: (False, True),
    ErrorKind.INVALID_NUMBER: (True, False),
    ErrorKind.TIMEOUT: (True, True),
    ErrorKind.NETWORK: (True, True),
    ErrorKind.CALL_FAILED: (True, True),
    ErrorKind.UNKNOWN: (False, True),
}

# Causas de hangup da operadora (comparação exata, maiúsculas)
HANGUP_CAUSES = {
    "USER_BUSY": ErrorKind.BUSY,
    "CALL_REJECTED": ErrorKind.REJECTED,
    "NO_ANSWER": ErrorKind.NO_ANSWER,
    "NO_USER_RESPONSE": ErrorKind.NO_ANSWER,
    "ORIGINATOR_CANCEL": ErrorKind.NO_ANSWER,
    "NORMAL_CLEARING": ErrorKind.NO_ANSWER,
    "UNALLOCATED_NUMBER": ErrorKind.INVALID_NUMBER,
    "INVALID_NUMBER_FORMAT": ErrorKind.INVALID_NUMBER,
    "NO_ROUTE_DESTINATION": ErrorKind.INVALID_NUMBER,
    "RECOVERY_ON_TIMER_EXPIRE": ErrorKind.TIMEOUT,
    "NETWORK_OUT_OF_ORDER": ErrorKind.NETWORK,
    "DESTINATION_OUT_OF_ORDER": ErrorKind.NETWORK,
}

# Ordem importa: o primeiro padrão que casa vence
PATTERN_TABLE: Tuple[Tuple[ErrorKind, Pattern], ...] = (
    (ErrorKind.VOICEMAIL, re.compile(r"voice[-_ ]?mail|machine", re.IGNORECASE)),
    (ErrorKind.BUSY, re.compile(r"busy", re.IGNORECASE)),
    (ErrorKind.REJECTED, re.compile(r"reject|declin", re.IGNORECASE)),
    (ErrorKind.NO_ANSWER, re.compile(r"no[-_ ]?answer|not answered|unanswered", re.IGNORECASE)),
    (ErrorKind.CANCELLED, re.compile(r"cancel", re.IGNORECASE)),
    (ErrorKind.INVALID_NUMBER, re.compile(
        r"invalid|unallocated|not reachable|unreachable|no route", re.IGNORECASE)),
    (ErrorKind.TIMEOUT, re.compile(r"time[d]?[-_ ]?out|timer[-_ ]?expire", re.IGNORECASE)),
    (ErrorKind.NETWORK, re.compile(r"network|connection|socket|\bice\b", re.IGNORECASE)),
    (ErrorKind.CALL_FAILED, re.compile(r"purge|fail|error", re.IGNORECASE)),
)


def classify_error(raw: Any) -> ErrorClassification:
    """Classifica um sinal de erro do transporte. Função pura."""
    detail = _extract_text(raw)
    kind = _match(detail)
    user_facing, retryable = _FLAGS[kind]
    return ErrorClassification(
        kind=kind,
        is_user_facing=user_facing,
        is_retryable=retryable,
        user_message=USER_MESSAGES[kind],
        detail=detail,
    )


def classification_for(kind: ErrorKind, detail: str = "") -> ErrorClassification:
    """Classificação pronta para um kind conhecido (ex: cancelamento local)."""
    user_facing, retryable = _FLAGS[kind]
    return ErrorClassification(
        kind=kind,
        is_user_facing=user_facing,
        is_retryable=retryable,
        user_message=USER_MESSAGES[kind],
        detail=detail or kind.value,
    )


def _match(detail: str) -> ErrorKind:
    if not detail:
        return ErrorKind.UNKNOWN

    code = detail.strip().upper()
    if code in HANGUP_CAUSES:
        return HANGUP_CAUSES[code]

    for kind, pattern in PATTERN_TABLE:
        if pattern.search(detail):
            return kind

    return ErrorKind.UNKNOWN


def _extract_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, BaseException):
        return str(raw) or type(raw).__name__
    if isinstance(raw, Mapping):
        for key in ("cause", "hangup_cause", "reason", "error", "message", "code"):
            value = raw.get(key)
            if value:
                return _extract_text(value)
        return ""
    return str(raw)
