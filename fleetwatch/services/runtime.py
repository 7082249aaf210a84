"""
Runtime wiring for one FleetWatch process.

Owns every long-lived service object (gateway, cache, multiplexer,
reader, ingestion job) so that none of them is a module-level global.
The Flask app keeps its runtime in app.extensions['fleetwatch'].
"""

import logging
from typing import Optional

from fleetwatch.cache import RequestCache
from fleetwatch.config import AppConfig, config as default_config
from fleetwatch.exceptions import ConfigError
from fleetwatch.ingestion import IngestionJob, UpstreamClient
from fleetwatch.models import init_db
from fleetwatch.services.fleet_reader import FleetReader
from fleetwatch.store import StoreGateway
from fleetwatch.subscriptions import SubscriptionMultiplexer

logger = logging.getLogger(__name__)


class FleetRuntime:
    """
    Container for the shared service objects.

    The ingestion job is optional: without a configured feed the process
    still serves whatever is already in the database.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        cache: Optional[RequestCache] = None,
        job: Optional[IngestionJob] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or default_config
        self.gateway = gateway
        self.cache = cache or RequestCache()
        self.multiplexer = SubscriptionMultiplexer(gateway)
        self.reader = FleetReader(gateway, self.cache, self.multiplexer)
        self.job = job
        self._started = False

    @classmethod
    def build(cls, config: Optional[AppConfig] = None) -> 'FleetRuntime':
        """Create a runtime from application configuration."""
        config = config or default_config
        gateway = StoreGateway.from_config(config.database)

        job = None
        try:
            client = UpstreamClient.from_config(config.upstream)
            job = IngestionJob(gateway, client=client)
        except ConfigError as e:
            logger.warning(f'Ingestion disabled: {e}. Set FEED_URL and FEED_API_TOKEN in .env')

        return cls(gateway, job=job, config=config)

    @property
    def started(self) -> bool:
        return self._started

    def start(self, start_ingestion: bool = True) -> None:
        """Create the schema, start background threads and cache invalidation."""
        if self._started:
            return

        logger.info('Initializing database...')
        init_db(self.gateway.engine)

        self.cache.start()
        self.reader.start()

        if start_ingestion and self.job:
            self.job.start_background(self.config.ingestion.interval_minutes)
            logger.info(f'Ingestion scheduled every {self.config.ingestion.interval_minutes} minutes')

        self._started = True

    def stop(self) -> None:
        """Stop background threads and close every change channel."""
        if self.job:
            self.job.stop()
        self.reader.stop()
        self.multiplexer.stop()
        self.cache.stop()
        self._started = False
        logger.info('FleetWatch runtime stopped')

    @property
    def stats(self) -> dict:
        return {
            'ingestion': self.job.stats if self.job else {'state': 'disabled'},
            'cache': self.cache.stats,
            'subscriptions': self.multiplexer.stats,
            'channels': self.gateway.open_channel_counts(),
        }
