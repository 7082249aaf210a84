"""
Long-lived services shared by the API layer.

The reader serves cached, deduplicated queries; the runtime owns it and
every other service object for the lifetime of the process.
"""

from fleetwatch.services.fleet_reader import FleetReader
from fleetwatch.services.runtime import FleetRuntime

__all__ = ['FleetReader', 'FleetRuntime']
