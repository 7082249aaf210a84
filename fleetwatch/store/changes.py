"""
Change notifications emitted by the store gateway.

A ChangeChannel is the unit a consumer pays for: one open channel per
table is what the subscription multiplexer tries to keep to a minimum.
Events are published after the writing transaction commits, so a
consumer that re-reads on notification always sees the new rows.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from fleetwatch.models.base import utc_now

logger = logging.getLogger(__name__)


class ChangeOperation(str, Enum):
    """Kind of write that produced a change event."""
    INSERT = 'insert'
    UPDATE = 'update'
    UPSERT = 'upsert'
    DELETE = 'delete'


@dataclass(frozen=True)
class ChangeEvent:
    """A committed write against one table."""
    table: str
    operation: ChangeOperation
    rowcount: int
    occurred_at: datetime = field(default_factory=utc_now)


ChangeHandler = Callable[[ChangeEvent], None]


class ChangeChannel:
    """
    Live notification channel for one table.

    Delivers every committed change on the table to a single handler
    until closed. Closing is idempotent.
    """

    def __init__(
        self,
        table: str,
        handler: ChangeHandler,
        on_close: Optional[Callable[['ChangeChannel'], None]] = None,
    ):
        self.table = table
        self._handler = handler
        self._on_close = on_close
        self._open = True
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._open

    def deliver(self, event: ChangeEvent) -> None:
        """Hand an event to the handler; handler errors never reach the writer."""
        if not self._open:
            return
        try:
            self._handler(event)
        except Exception:
            logger.exception(f'Change handler for {self.table} failed')

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False

        if self._on_close:
            self._on_close(self)
        logger.debug(f'Change channel for {self.table} closed')

    def __repr__(self) -> str:
        state = 'open' if self._open else 'closed'
        return f'<ChangeChannel {self.table} {state}>'
