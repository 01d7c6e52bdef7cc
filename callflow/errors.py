"""Taxonomia de falhas do controlador de chamadas.

- AdmissionRejected: sempre exibida ao usuário
- TransportFailure: exibida apenas quando o ErrorClassifier marca user facing
- WatchdogTimeout: sempre exibida ao usuário
- StaleEvent: nunca exibida, apenas logada
"""

from typing import Optional


class CallFlowError(Exception):
    kind: str = "call_flow_error"
    default_detail: str = "Call flow error"
    is_user_facing: bool = True

    def __init__(self, detail: Optional[str] = None, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail
        # Texto seguro para a UI; nunca ecoa entrada crua
        self.user_message = user_message or self.detail


class AdmissionRejected(CallFlowError):
    kind = "admission_rejected"
    default_detail = "Call not allowed"

    def __init__(self, reason: str, retry_after: Optional[float] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after


class TransportFailure(CallFlowError):
    kind = "transport_failure"
    default_detail = "Call failed"

    def __init__(
        self,
        detail: Optional[str] = None,
        user_message: Optional[str] = None,
        error_kind: str = "unknown",
        is_user_facing: bool = True,
        is_retryable: bool = False,
    ) -> None:
        super().__init__(detail, user_message)
        self.error_kind = error_kind
        self.is_user_facing = is_user_facing
        self.is_retryable = is_retryable


class WatchdogTimeout(CallFlowError):
    kind = "watchdog_timeout"
    default_detail = "Call timed out"

    def __init__(self, state: str, reason: str, threshold: float) -> None:
        super().__init__(reason, user_message=f"Call failed - {reason}")
        self.state = state
        self.threshold = threshold


class StaleEvent(CallFlowError):
    kind = "stale_event"
    default_detail = "Event references an inactive call"
    is_user_facing = False

    def __init__(self, call_ref: Optional[str], active_ref: Optional[str]) -> None:
        super().__init__(f"Stale event for call {call_ref!r} (active: {active_ref!r})")
        self.call_ref = call_ref
        self.active_ref = active_ref
