"""
Service wiring shared by the HTTP server, the queue worker and the CLI.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .arr_client import RadarrClient, SonarrClient
from .config import ConfigStore, Settings
from .downloads import CompletionPoller
from .metadata_client import MetadataClient
from .overseerr_client import OverseerrClient
from .persistence import PersistenceManager
from .qbittorrent_client import CredentialCache, QBittorrentClient
from .reconcile import ReconciliationJob
from .rejection import RejectionWorkflow
from .retry import RetryConfig
from .selection import SelectionWorkflow
from .tasks import BestEffortRunner
from .webhook import JobQueue, WebhookPipeline, WebhookWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler or worker needs."""
    settings: Settings
    persistence: PersistenceManager
    config: ConfigStore
    runner: BestEffortRunner
    metadata: MetadataClient
    qbit: QBittorrentClient
    overseerr: OverseerrClient
    radarr: RadarrClient
    sonarr: SonarrClient
    queue: JobQueue
    webhook: WebhookPipeline
    reconciliation: ReconciliationJob
    selection: SelectionWorkflow
    poller: CompletionPoller
    rejection: RejectionWorkflow

    @property
    def clients(self) -> Dict[str, object]:
        return {
            "qbittorrent": self.qbit,
            "overseerr": self.overseerr,
            "radarr": self.radarr,
            "sonarr": self.sonarr,
            "tmdb": self.metadata,
        }

    def worker(self) -> WebhookWorker:
        s = self.settings
        return WebhookWorker(
            self.queue,
            metadata=self.metadata,
            retry_config=RetryConfig(
                max_attempts=s.queue_max_attempts,
                initial_delay=s.queue_initial_delay,
                max_delay=s.queue_max_delay,
            ),
        )

    async def close(self) -> None:
        await self.runner.drain(timeout=10)
        for client in self.clients.values():
            await client.close()
        await self.persistence.close()


async def build_services(
    settings: Settings,
    persistence: Optional[PersistenceManager] = None,
) -> Services:
    """Create and initialize the store, clients and workflows."""
    if persistence is None:
        persistence = PersistenceManager(settings.db_path)
    await persistence.initialize()
    pruned = await persistence.prune_activity_log(settings.activity_log_max_entries)
    if pruned:
        logger.info(f"Pruned {pruned} old activity log entries")

    config = ConfigStore(persistence)
    runner = BestEffortRunner()
    metadata = MetadataClient(
        settings.tmdb_api_key,
        base_url=settings.tmdb_base_url,
        image_base=settings.tmdb_image_base,
        cache_ttl=settings.metadata_cache_ttl,
    )
    qbit = QBittorrentClient(
        settings.qbit_url,
        settings.qbit_username,
        settings.qbit_password,
        credentials=CredentialCache(ttl=settings.qbit_session_ttl),
    )
    overseerr = OverseerrClient(settings.overseerr_url, settings.overseerr_api_key)
    radarr = RadarrClient(settings.radarr_url, settings.radarr_api_key)
    sonarr = SonarrClient(settings.sonarr_url, settings.sonarr_api_key)

    queue = JobQueue(persistence, max_attempts=settings.queue_max_attempts)

    for name, client in (
        ("qbittorrent", qbit), ("overseerr", overseerr),
        ("radarr", radarr), ("sonarr", sonarr), ("tmdb", metadata),
    ):
        if not client.configured:
            logger.warning(f"{name} is not configured")

    return Services(
        settings=settings,
        persistence=persistence,
        config=config,
        runner=runner,
        metadata=metadata,
        qbit=qbit,
        overseerr=overseerr,
        radarr=radarr,
        sonarr=sonarr,
        queue=queue,
        webhook=WebhookPipeline(persistence, config, queue, metadata=metadata),
        reconciliation=ReconciliationJob(
            persistence, overseerr, metadata=metadata,
            max_pages=settings.sync_max_pages, page_size=settings.sync_page_size,
        ),
        selection=SelectionWorkflow(
            persistence, config, qbit, overseerr, runner,
            movie_category=settings.qbit_movie_category,
            tv_category=settings.qbit_tv_category,
            tag=settings.qbit_tag,
        ),
        poller=CompletionPoller(
            persistence, qbit, overseerr, radarr, sonarr, runner,
            window_hours=settings.completed_window_hours,
        ),
        rejection=RejectionWorkflow(persistence, qbit, overseerr, radarr, sonarr, runner),
    )
