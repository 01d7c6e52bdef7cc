"""
Health check do fluxo de chamada.

Compara o último estado cru do transporte com o estado canônico e com as
flags derivadas, e aponta sessões paradas além dos thresholds. Score
começa em 100; saudável com score >= 80.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

HEALTHY_SCORE = 80

_RINGING_RAW = ("early", "ringing")
_DIALING_RAW = ("new", "requesting", "trying")


@dataclass
class CallFlowHealth:
    is_healthy: bool
    score: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "status": "healthy" if self.is_healthy else "unhealthy",
            "score": self.score,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


def check_state_consistency(
    raw_state: Optional[str],
    canonical_state: str,
    is_connecting: bool,
    is_call_active: bool
) -> List[str]:
    """Inconsistências entre estado cru, canônico e flags derivadas."""
    issues = []

    if raw_state in _RINGING_RAW and canonical_state == "idle":
        issues.append("Transport is ringing but call state is idle")

    if raw_state in _DIALING_RAW and canonical_state == "idle":
        issues.append("Transport is connecting but call state is idle")

    if is_connecting and canonical_state not in ("dialing", "ringing"):
        issues.append("is_connecting is true but call state is not dialing/ringing")

    if is_call_active and canonical_state not in ("connected", "voicemail"):
        issues.append("is_call_active is true but call state is not connected/voicemail")

    if raw_state in _RINGING_RAW and canonical_state == "dialing":
        issues.append("Transport is ringing but call state is still dialing")

    return issues


def evaluate_call_flow_health(
    raw_state: Optional[str],
    canonical_state: str,
    is_connecting: bool,
    is_call_active: bool,
    state_age_seconds: float,
    stuck_thresholds: Mapping[str, float]
) -> CallFlowHealth:
    """
    Avalia a saúde do fluxo de chamada.

    Args:
        raw_state: Último estado cru reportado pelo transporte
        canonical_state: Estado canônico atual
        is_connecting / is_call_active: Flags expostas para a UI
        state_age_seconds: Tempo no estado canônico atual
        stuck_thresholds: Thresholds por estado (os mesmos do watchdog)
    """
    recommendations = []
    score = 100

    issues = check_state_consistency(raw_state, canonical_state, is_connecting, is_call_active)
    score -= 20 * len(issues)

    dialing_limit = stuck_thresholds.get("dialing")
    if canonical_state == "dialing" and dialing_limit and state_age_seconds > dialing_limit:
        issues.append("Call stuck in dialing state for too long")
        recommendations.append("Check that the transport reports early/ringing progress")
        score -= 30

    ringing_limit = stuck_thresholds.get("ringing")
    if canonical_state == "ringing" and ringing_limit and state_age_seconds > ringing_limit:
        issues.append("Call stuck in ringing state for too long")
        recommendations.append("Check whether the call is connecting or the network is failing")
        score -= 20

    if raw_state in _RINGING_RAW and canonical_state == "dialing":
        recommendations.append("Check ringing notifications reach the event adapter")
        score -= 30

    score = max(0, score)
    return CallFlowHealth(
        is_healthy=score >= HEALTHY_SCORE,
        score=score,
        issues=issues,
        recommendations=recommendations,
    )
