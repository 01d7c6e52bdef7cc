"""
Rate limiter de tentativas de chamada.

Janela deslizante por identidade do chamador. Uma tentativa rejeitada
não consome slot: quem insiste durante o bloqueio não estende a espera.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional
import time

import structlog

from ..config import RateLimitSettings

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitWindow:
    """Estado da janela de uma identidade."""
    identity_key: str
    hits: Deque[float] = field(default_factory=deque)

    @property
    def window_start(self) -> Optional[float]:
        return self.hits[0] if self.hits else None

    @property
    def count(self) -> int:
        return len(self.hits)


@dataclass
class RateLimitInfo:
    """Resultado de uma verificação."""
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None


class SlidingWindowRateLimiter:
    """
    Rate limiter em memória, uma janela por identidade.

    O relógio é injetável (padrão time.monotonic) para testes.
    Não é thread-safe: o CallController serializa o acesso.
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}

    def check(self, identity_key: str) -> RateLimitInfo:
        """
        Verifica e, se permitido, consome um slot.

        Returns:
            RateLimitInfo com remaining e retry_after (quando bloqueado)
        """
        now = self._clock()
        self._sweep(now)

        window = self._windows.get(identity_key)
        if window is None:
            window = RateLimitWindow(identity_key=identity_key)
            self._windows[identity_key] = window

        if window.count >= self.settings.max_requests:
            retry_after = max(0.0, window.hits[0] + self.settings.window_seconds - now)
            logger.warning(
                "Rate limit exceeded",
                identity=identity_key,
                count=window.count,
                limit=self.settings.max_requests,
                retry_after=round(retry_after, 3),
            )
            return RateLimitInfo(allowed=False, remaining=0, retry_after=retry_after)

        window.hits.append(now)
        return RateLimitInfo(
            allowed=True,
            remaining=self.settings.max_requests - window.count,
        )

    def peek(self, identity_key: str) -> RateLimitInfo:
        """Como check(), mas sem consumir slot."""
        now = self._clock()
        window = self._windows.get(identity_key)
        if window is None or not self._evict(window, now):
            self._windows.pop(identity_key, None)
            return RateLimitInfo(allowed=True, remaining=self.settings.max_requests)

        if window.count >= self.settings.max_requests:
            retry_after = max(0.0, window.hits[0] + self.settings.window_seconds - now)
            return RateLimitInfo(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitInfo(
            allowed=True,
            remaining=self.settings.max_requests - window.count,
        )

    def get_stats(self, identity_key: Optional[str] = None) -> Dict:
        """Retorna contadores por identidade (ou de uma só)."""
        now = self._clock()
        stats = {
            "config": {
                "max_requests": self.settings.max_requests,
                "window_seconds": self.settings.window_seconds,
            },
            "identities": {},
        }

        keys = [identity_key] if identity_key else list(self._windows)
        for key in keys:
            window = self._windows.get(key)
            if window is None:
                continue
            if not self._evict(window, now):
                del self._windows[key]
                continue
            stats["identities"][key] = {
                "count": window.count,
                "remaining": max(0, self.settings.max_requests - window.count),
                "window_start": window.window_start,
            }

        return stats

    def reset(self, identity_key: Optional[str] = None) -> None:
        """Zera a janela de uma identidade, ou de todas."""
        if identity_key:
            self._windows.pop(identity_key, None)
        else:
            self._windows.clear()
        logger.info("Rate limit reset", identity=identity_key or "*")

    def _evict(self, window: RateLimitWindow, now: float) -> bool:
        """Descarta hits fora da janela. Retorna False se a janela esvaziou."""
        horizon = now - self.settings.window_seconds
        while window.hits and window.hits[0] <= horizon:
            window.hits.popleft()
        return bool(window.hits)

    def _sweep(self, now: float) -> None:
        """Remove identidades cuja janela esvaziou."""
        expired = [key for key, window in self._windows.items() if not self._evict(window, now)]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Rate limit windows expired", count=len(expired))
