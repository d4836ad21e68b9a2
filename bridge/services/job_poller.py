# bridge/services/job_poller.py
"""Pulls pending jobs for this device and runs them one after another."""

from pydantic import ValidationError

from bridge.schemas.job import Job
from bridge.services.ingest_client import IngestClient
from bridge.services.job_executor import JobExecutor
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class JobPoller:
    def __init__(self, client: IngestClient, executor: JobExecutor, bridge_id: str, batch_size: int = 5):
        self.client = client
        self.executor = executor
        self.bridge_id = bridge_id
        self.batch_size = max(1, int(batch_size))
        self._polling = False

    async def poll_once(self) -> int:
        """Fetch one batch and execute it sequentially. Returns the number of jobs run."""
        if self._polling:
            return 0
        self._polling = True
        try:
            res = await self.client.pull_jobs(self.bridge_id, self.batch_size)
            if not res.ok:
                logger.debug(f"[JOBS] Pull failed: {res.error}")
                return 0
            raw_jobs = (res.data or {}).get("jobs")
            if not isinstance(raw_jobs, list) or not raw_jobs:
                return 0

            logger.info(f"[JOBS] Received {len(raw_jobs)}")
            ran = 0
            for raw in raw_jobs:
                try:
                    job = Job.model_validate(raw)
                except ValidationError as e:
                    logger.warning(f"[JOBS] Ignoring malformed job: {e.errors()[:1]}")
                    continue
                await self.executor.run(job)
                ran += 1
            return ran
        finally:
            self._polling = False
