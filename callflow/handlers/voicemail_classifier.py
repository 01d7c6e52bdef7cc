"""
Classificação humano vs. caixa postal no momento do atendimento.

Ordem de prioridade:
1. Flag explícita de voicemail detectado
2. Flag de atendimento por máquina
3. Header cuja chave casa com um padrão de voicemail (case-insensitive)
4. Caso contrário: humano

A duração do toque é registrada mas nunca decide: chamadas curtas sem
indicador explícito são humanas.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping, Optional, Pattern, Tuple


@dataclass(frozen=True)
class AnswerMetadata:
    """Metadados disponíveis quando o transporte reporta o atendimento."""
    voicemail_detected: bool = False
    machine_answer: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ring_duration_ms: Optional[int] = None


@dataclass(frozen=True)
class AnswerClassification:
    is_voicemail: bool
    matched_by: str          # voicemail_flag, machine_flag, header:<chave>, default

    @property
    def kind(self) -> str:
        return "machine" if self.is_voicemail else "human"


_VOICEMAIL_FLAG_KEYS = ("voice_mail_detected", "voicemail_detected", "voiceMailDetected")
_MACHINE_FLAG_KEYS = ("machine_answer", "answered_by_machine", "machineAnswer")
_TRUTHY = ("1", "true", "yes", "on", "machine")


@lru_cache(maxsize=32)
def _compile(patterns: Tuple[str, ...]) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def classify_answer(
    metadata: AnswerMetadata,
    header_patterns: Iterable[str]
) -> AnswerClassification:
    """Decide voicemail vs. humano. Função pura."""
    if metadata.voicemail_detected:
        return AnswerClassification(is_voicemail=True, matched_by="voicemail_flag")

    if metadata.machine_answer:
        return AnswerClassification(is_voicemail=True, matched_by="machine_flag")

    compiled = _compile(tuple(header_patterns))
    for key in metadata.headers:
        if any(p.search(key) for p in compiled):
            return AnswerClassification(is_voicemail=True, matched_by=f"header:{key}")

    return AnswerClassification(is_voicemail=False, matched_by="default")


def answer_metadata_from_payload(
    payload: Optional[Mapping[str, Any]],
    elapsed_ring_duration_ms: Optional[int] = None
) -> AnswerMetadata:
    """
    Extrai AnswerMetadata de um payload frouxo do transporte.

    Aceita flags no nível raiz ou dentro de "call", e headers como dict
    ou lista de {"name": ..., "value": ...}.
    """
    if not payload:
        return AnswerMetadata(elapsed_ring_duration_ms=elapsed_ring_duration_ms)

    sources = [payload]
    nested = payload.get("call")
    if isinstance(nested, Mapping):
        sources.append(nested)

    voicemail = any(_flag(src, _VOICEMAIL_FLAG_KEYS) for src in sources)
    machine = any(_flag(src, _MACHINE_FLAG_KEYS) for src in sources)

    headers: Dict[str, str] = {}
    for src in sources:
        headers.update(_headers(src.get("headers")))
        headers.update(_headers(src.get("sip_headers")))

    return AnswerMetadata(
        voicemail_detected=voicemail,
        machine_answer=machine,
        headers=headers,
        elapsed_ring_duration_ms=elapsed_ring_duration_ms,
    )


def _flag(source: Mapping[str, Any], keys: Tuple[str, ...]) -> bool:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool):
            if value:
                return True
        elif isinstance(value, str):
            if value.strip().lower() in _TRUTHY:
                return True
        elif value:
            return True
    return False


def _headers(raw: Any) -> Dict[str, str]:
    if isinstance(raw, Mapping):
        return {str(k): str(v) for k, v in raw.items()}
    if isinstance(raw, (list, tuple)):
        headers = {}
        for item in raw:
            if isinstance(item, Mapping) and "name" in item:
                headers[str(item["name"])] = str(item.get("value", ""))
        return headers
    return {}
