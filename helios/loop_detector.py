"""Detect runaway tool-call repetition within a session."""

import hashlib
import json
import time
from collections import Counter, deque
from dataclasses import dataclass

MAX_HISTORY = 20
CONSECUTIVE_LIMIT = 2  # repeats after the first occurrence
FREQUENCY_LIMIT = 5


@dataclass(frozen=True)
class StepRecord:
    hash: str
    action: str
    timestamp: float


@dataclass(frozen=True)
class LoopCheck:
    is_loop: bool
    risk: str  # "low" | "medium" | "high"
    message: str = ""


def step_hash(action: str, args: dict) -> str:
    """First 8 hex chars of an md5 over the canonical JSON of the step."""
    payload = json.dumps(
        {"action": action, "args": args}, sort_keys=True, default=str
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()[:8]


class LoopDetector:
    """Bounded window of recent tool calls.

    Each call to check() records the step and reports the highest risk it
    sees: the same step repeated back to back, one action dominating the
    window, or two actions alternating.
    """

    def __init__(self, max_history: int = MAX_HISTORY):
        self.history: deque[StepRecord] = deque(maxlen=max_history)
        self.consecutive = 0

    def check(self, action: str, args: dict) -> LoopCheck:
        h = step_hash(action, args)

        if self.history and self.history[-1].hash == h:
            self.consecutive += 1
        else:
            self.consecutive = 0

        self.history.append(StepRecord(hash=h, action=action, timestamp=time.time()))

        if self.consecutive >= CONSECUTIVE_LIMIT:
            return LoopCheck(
                True,
                "high",
                f'Loop detected: "{action}" repeated {self.consecutive + 1} times consecutively',
            )

        count = Counter(step.action for step in self.history)[action]
        if count >= FREQUENCY_LIMIT:
            return LoopCheck(
                True, "medium", f'Potential loop: "{action}" called {count} times recently'
            )

        if len(self.history) >= 4:
            a0, a1, a2, a3 = (step.action for step in list(self.history)[-4:])
            if a0 == a2 and a1 == a3 and a0 != a1:
                return LoopCheck(
                    True,
                    "medium",
                    "Oscillation pattern detected: alternating between two actions",
                )

        return LoopCheck(False, "low")

    def reset(self) -> None:
        self.history.clear()
        self.consecutive = 0
