"""
Fixtures compartilhadas.

FakeTransport simula o transporte de telefonia: devolve call_refs
sequenciais e registra hangups. Os thresholds do watchdog são curtos para
os testes não esperarem segundos reais.
"""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from callflow.config import (
    ControllerConfig,
    RateLimitSettings,
    ValidationSettings,
    VoicemailSettings,
    WatchdogSettings,
)
from callflow.controller import CallController, TelephonyTransport
from callflow.core.event_bus import EventBus
from callflow.core.events import CallEventType


class FakeTransport(TelephonyTransport):
    """Transporte roteirizado para testes."""

    def __init__(self):
        self.placed: List[str] = []
        self.hung_up: List[str] = []
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0
        self._counter = 0

    async def place_call(self, destination: str) -> str:
        self.placed.append(destination)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        return f"call-{self._counter}"

    async def hangup(self, call_ref: str) -> None:
        self.hung_up.append(call_ref)


class StateRecorder:
    """Coleta os estados publicados em STATE_CHANGED."""

    def __init__(self, bus: EventBus):
        self.transitions = []
        self.user_errors = []
        self.records = []
        self.notices = []
        bus.on(CallEventType.STATE_CHANGED, self.transitions.append)
        bus.on(CallEventType.USER_ERROR, self.user_errors.append)
        bus.on(CallEventType.CALL_RECORD_READY, self.records.append)
        bus.on(CallEventType.USER_NOTICE, self.notices.append)

    @property
    def states(self) -> List[str]:
        return [e.data["new_state"] for e in self.transitions]

    @property
    def pairs(self):
        return [(e.data["previous_state"], e.data["new_state"]) for e in self.transitions]


class FakeClock:
    """Relógio manual para o rate limiter."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_config():
    return ControllerConfig(
        rate_limit=RateLimitSettings(max_requests=5, window_seconds=60.0),
        watchdog=WatchdogSettings(
            state_thresholds={"dialing": 0.3, "ringing": 0.4},
            raw_state_thresholds={"trying": 0.1},
        ),
        voicemail=VoicemailSettings(),
        validation=ValidationSettings(),
        soft_reset_delay=0.05,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def controller(transport, fast_config, clock):
    ctrl = CallController(transport, fast_config, rate_limit_clock=clock)
    yield ctrl
    await ctrl.close()


@pytest.fixture
def recorder(controller):
    return StateRecorder(controller.events)
