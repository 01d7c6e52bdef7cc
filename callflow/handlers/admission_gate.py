"""
CallAdmissionGate - Pré-checagem antes de iniciar uma chamada.

Checagens em curto-circuito, nesta ordem:
1. Estado atual em {idle, ended}, senão "call already in progress"
2. Acesso ao áudio, senão "microphone access required"
3. Validação do número: risco alto -> mensagem genérica; inválido -> pede
   um número válido (a entrada crua nunca é ecoada)
4. Rate limit por identidade; ao exceder retorna retry_after e NÃO
   consome slot

Só uma decisão allowed=True consome slot do rate limiter.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import ValidationSettings
from ..utils.phone_validation import validate_phone_number
from ..utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


ADMITTING_STATES = ("idle", "ended")

REASON_IN_PROGRESS = "call already in progress"
REASON_NO_AUDIO = "microphone access required"
REASON_HIGH_RISK = "invalid phone number format"
REASON_INVALID = "please enter a valid phone number"
REASON_RATE_LIMITED = "too many call attempts"


@dataclass(frozen=True)
class AdmissionRequest:
    phone_number_input: Optional[str]
    caller_identity: str
    current_state: str
    has_audio_capability: bool


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: Optional[str] = None
    outcome: str = "allowed"
    retry_after: Optional[float] = None
    sanitized_number: Optional[str] = None

    @classmethod
    def reject(cls, reason: str, outcome: str, retry_after: Optional[float] = None) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason, outcome=outcome, retry_after=retry_after)


class CallAdmissionGate:
    """Valida e limita a taxa de novas chamadas."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        validation_settings: ValidationSettings
    ):
        self.rate_limiter = rate_limiter
        self.validation_settings = validation_settings

    def evaluate(self, request: AdmissionRequest) -> AdmissionDecision:
        decision = self._evaluate(request)

        if decision.allowed:
            logger.info(
                "[ADMISSION] Call admitted",
                extra={"caller_identity": request.caller_identity}
            )
        else:
            logger.info(
                f"[ADMISSION] Rejected: {decision.reason}",
                extra={
                    "caller_identity": request.caller_identity,
                    "outcome": decision.outcome,
                    "current_state": request.current_state,
                    "retry_after": decision.retry_after,
                }
            )
        return decision

    def _evaluate(self, request: AdmissionRequest) -> AdmissionDecision:
        if request.current_state not in ADMITTING_STATES:
            return AdmissionDecision.reject(REASON_IN_PROGRESS, "in_progress")

        if not request.has_audio_capability:
            return AdmissionDecision.reject(REASON_NO_AUDIO, "no_audio")

        validation = validate_phone_number(request.phone_number_input, self.validation_settings)
        if validation.is_high_risk:
            return AdmissionDecision.reject(REASON_HIGH_RISK, "invalid_number")
        if not validation.is_valid:
            return AdmissionDecision.reject(REASON_INVALID, "invalid_number")

        limit = self.rate_limiter.check(request.caller_identity)
        if not limit.allowed:
            return AdmissionDecision.reject(REASON_RATE_LIMITED, "rate_limited", limit.retry_after)

        return AdmissionDecision(
            allowed=True,
            sanitized_number=validation.sanitized_value,
        )
