"""
Helpers for driving the experiment server without a network or real timers.

- ManualScheduler: virtual clock; timers fire only when the test advances it
- RecordingTransport: captures every outbound message per socket
- write_content / make_content_root: trial content directories for AI modes
- ServerHarness: fully wired server components on top of the two fakes
"""
from __future__ import annotations

import dataclasses
import heapq
import itertools
import os

import numpy as np
import pandas as pd

from wagerlab.server.ai_mode_rotator import AIModeRotator
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.server.document_store import InMemoryDocumentStore
from wagerlab.server.message_router import MessageRouter
from wagerlab.server.participant_state import ParticipantStateTracker
from wagerlab.server.phase_coordinator import PhaseCoordinator
from wagerlab.server.result_aggregator import ResultAggregator
from wagerlab.server.scheduler import TimerHandle, TimerScheduler
from wagerlab.server.session_events import SessionEventBus
from wagerlab.server.session_manager import SessionManager
from wagerlab.server.transport import SessionBroadcaster, Transport

START_MS = 1_700_000_000_000


class _ManualHandle(TimerHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(TimerScheduler):
    """Virtual clock. ``advance`` fires due timers in due-time order."""

    def __init__(self, start_ms: int = START_MS):
        self.current_ms = start_ms
        self._timers: list = []
        self._counter = itertools.count()

    def now_ms(self) -> int:
        return self.current_ms

    def call_later(self, delay_s, fn, *args) -> TimerHandle:
        handle = _ManualHandle()
        due_ms = self.current_ms + int(delay_s * 1000)
        heapq.heappush(self._timers, (due_ms, next(self._counter), handle, fn, args))
        return handle

    def advance(self, seconds: float) -> None:
        target_ms = self.current_ms + int(seconds * 1000)
        while self._timers and self._timers[0][0] <= target_ms:
            due_ms, _, handle, fn, args = heapq.heappop(self._timers)
            self.current_ms = max(self.current_ms, due_ms)
            if not handle.cancelled:
                fn(*args)
        self.current_ms = target_ms

    def fire_cancelled(self) -> int:
        """Run every cancelled timer anyway, as a late-firing real timer would."""
        fired = 0
        for entry in sorted(self._timers):
            if entry[2].cancelled:
                entry[3](*entry[4])
                fired += 1
        return fired

    def pending(self) -> int:
        return sum(1 for entry in self._timers if not entry[2].cancelled)


class RecordingTransport(Transport):
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.broadcasts: list[tuple[str, dict]] = []

    def send(self, sid, message_type, payload):
        self.sent.append((sid, message_type, {"type": message_type, **payload}))

    def broadcast(self, message_type, payload):
        self.broadcasts.append((message_type, {"type": message_type, **payload}))

    def messages(self, sid, message_type=None) -> list[dict]:
        return [
            payload for to, mtype, payload in self.sent
            if to == sid and (message_type is None or mtype == message_type)
        ]

    def last(self, sid, message_type) -> dict | None:
        found = self.messages(sid, message_type)
        return found[-1] if found else None

    def clear(self) -> None:
        self.sent.clear()
        self.broadcasts.clear()


def content_rows(n: int, tag: str = "") -> list[dict]:
    return [
        {
            "fight_id": f"{tag}fight{i}",
            "r_wins_total": str(10 + i),
            "b_wins_total": str(5 + i),
            "predicted_winner": str(i % 2),
            "rationale_feature": f"feature {i}",
        }
        for i in range(n)
    ]


def write_content(root, ai_mode: str, rows: list[dict], filename: str = "fights.csv") -> str:
    directory = os.path.join(str(root), ai_mode)
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    sep = "\t" if filename.endswith(".tsv") else ","
    pd.DataFrame(rows).to_csv(path, sep=sep, index=False)
    return path


def make_content_root(root, modes: dict[str, int]) -> str:
    """Create one content directory per AI mode holding ``n`` rows tagged with the mode name."""
    for ai_mode, n in modes.items():
        write_content(root, ai_mode, content_rows(n, tag=f"{ai_mode}-"))
    return str(root)


@dataclasses.dataclass
class ServerHarness:
    store: InMemoryDocumentStore
    scheduler: ManualScheduler
    transport: RecordingTransport
    registry: ConnectionRegistry
    tracker: ParticipantStateTracker
    event_bus: SessionEventBus
    manager: SessionManager
    coordinator: PhaseCoordinator
    aggregator: ResultAggregator
    router: MessageRouter

    def connect(self, subject_id: str, sid: str | None = None) -> str:
        """Register ``subject_id`` on socket ``sid`` (default ``sid-<subject_id>``)."""
        sid = sid or f"sid-{subject_id}"
        self.router.handle(sid, "register", {"type": "register", "clientID": subject_id})
        return sid

    def send(self, subject_id: str, message_type: str, **fields) -> None:
        sid = self.registry.sid_for(subject_id) or f"sid-{subject_id}"
        self.router.handle(sid, message_type, {"type": message_type, "clientID": subject_id, **fields})


def build_harness(
    content_root: str,
    ai_modes: list[str] | None = None,
    waiting_duration_s: float = 30,
    phase_duration_s: float = 15,
    chat_duration_s: float = 30,
    seed: int = 0,
    store: InMemoryDocumentStore | None = None,
) -> ServerHarness:
    store = store if store is not None else InMemoryDocumentStore()
    scheduler = ManualScheduler()
    transport = RecordingTransport()
    registry = ConnectionRegistry()
    tracker = ParticipantStateTracker()
    event_bus = SessionEventBus()
    broadcaster = SessionBroadcaster(transport, registry)

    manager = SessionManager(
        store=store,
        rotator=AIModeRotator(store, content_root, ai_modes),
        event_bus=event_bus,
        scheduler=scheduler,
        registry=registry,
        participant_state_tracker=tracker,
        waiting_duration_s=waiting_duration_s,
        rng=np.random.default_rng(seed),
    )
    coordinator = PhaseCoordinator(
        broadcaster=broadcaster,
        scheduler=scheduler,
        event_bus=event_bus,
        registry=registry,
        phase_duration_s=phase_duration_s,
        chat_duration_s=chat_duration_s,
    )
    aggregator = ResultAggregator(
        store=store,
        event_bus=event_bus,
        scheduler=scheduler,
        participant_state_tracker=tracker,
    )
    router = MessageRouter(
        registry=registry,
        broadcaster=broadcaster,
        session_manager=manager,
        coordinator=coordinator,
        aggregator=aggregator,
        participant_state_tracker=tracker,
    )
    event_bus.subscribe(router)
    event_bus.subscribe(coordinator)
    event_bus.subscribe(manager)
    event_bus.subscribe(aggregator)

    return ServerHarness(
        store=store,
        scheduler=scheduler,
        transport=transport,
        registry=registry,
        tracker=tracker,
        event_bus=event_bus,
        manager=manager,
        coordinator=coordinator,
        aggregator=aggregator,
        router=router,
    )
