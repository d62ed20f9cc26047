"""
Append-only event log consumed by external observers.

The engine writes one entry per arrival, assignment, completion, SLA
violation and health transition. It never reads the log back; renderers
and exporters do. Every entry is also forwarded to the module logger at
debug level so operators can follow a run without an observer attached.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List
import logging


logger = logging.getLogger(__name__)


class LogCategory(str, Enum):
    """What kind of engine event an entry describes."""
    SIMULATION = "simulation"
    ARRIVAL = "arrival"
    HIGH_PRIORITY_ARRIVAL = "high-priority"
    ASSIGNMENT = "task-assigned"
    COMPLETION = "task-completed"
    SLA_VIOLATION = "sla-violation"
    SERVER_FAILURE = "server-failure"
    SERVER_RECOVERY = "server-recovery"
    SERVER_OVERLOAD = "server-overload"


@dataclass(frozen=True)
class LogEvent:
    """A single (tick, message, category) entry."""
    tick: int
    message: str
    category: LogCategory

    def __str__(self) -> str:
        return f"[{self.tick}] {self.message}"

    def to_dict(self) -> Dict[str, object]:
        return {"tick": self.tick, "message": self.message, "category": self.category.value}


class EventLog:
    """
    Ordered, append-only collection of LogEvent entries.

    The owning simulation keeps `tick` current so that components which
    emit events (server pool, assignment) do not need to know the clock.
    """

    def __init__(self) -> None:
        self._events: List[LogEvent] = []
        self.tick: int = 0

    def record(self, message: str, category: LogCategory = LogCategory.SIMULATION) -> LogEvent:
        event = LogEvent(tick=self.tick, message=message, category=category)
        self._events.append(event)
        logger.debug("%s", event)
        return event

    def filter(self, category: LogCategory) -> List[LogEvent]:
        return [e for e in self._events if e.category is category]

    def __iter__(self) -> Iterator[LogEvent]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index: int) -> LogEvent:
        return self._events[index]
