"""
Store access layer for FleetWatch.

The gateway is the sole interface to the backing store; change channels
are how readers learn that it was written to.
"""

from fleetwatch.store.changes import ChangeChannel, ChangeEvent, ChangeOperation
from fleetwatch.store.gateway import StoreGateway, UpsertResult

__all__ = ['StoreGateway', 'UpsertResult', 'ChangeChannel', 'ChangeEvent', 'ChangeOperation']
