"""
Handlers - Fronteira com o transporte e decisões puras.

- TelephonyEventAdapter: normaliza/deduplica os dois canais do transporte
- classify_answer: humano vs. caixa postal
- classify_error: taxonomia de erros do transporte
- CallAdmissionGate: validação e rate limit antes de discar
"""

from .admission_gate import AdmissionDecision, AdmissionRequest, CallAdmissionGate
from .error_classifier import ErrorClassification, ErrorKind, classify_error
from .telephony_adapter import TelephonyEventAdapter
from .voicemail_classifier import AnswerClassification, AnswerMetadata, classify_answer

__all__ = [
    'AdmissionDecision',
    'AdmissionRequest',
    'CallAdmissionGate',
    'ErrorClassification',
    'ErrorKind',
    'classify_error',
    'TelephonyEventAdapter',
    'AnswerClassification',
    'AnswerMetadata',
    'classify_answer',
]
