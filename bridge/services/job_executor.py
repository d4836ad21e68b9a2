# bridge/services/job_executor.py
"""
Job executor — runs one remote-issued configuration job against the device
and reports its completion exactly once.

Each action is a short chain of device steps; the first failing step aborts
the chain and its error (plus trimmed device detail) becomes the job error.
Idempotency sentinels ("already exists", "not found") are resolved inside the
device client, so re-running a job converges on the same device state.
"""

from typing import Awaitable, Callable, Optional

from bridge.schemas.job import Job, JobAction, JobOutcome
from bridge.services.device_client import DeviceClient, StepResult, trim_detail
from bridge.services.ingest_client import IngestClient
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

RETRY_IN_SEC = 5

Handler = Callable[[Job], Awaitable[JobOutcome]]


def _failed(step: StepResult) -> JobOutcome:
    return JobOutcome.failure(step.error or "step_failed", detail=step.detail, retry_in_sec=RETRY_IN_SEC)


class JobExecutor:
    def __init__(self, device: DeviceClient, client: IngestClient):
        self.device = device
        self.client = client
        self._handlers: dict[JobAction, Handler] = {
            JobAction.UPSERT: self._upsert,
            JobAction.FINGERPRINT_CAPTURE: self._fingerprint_capture,
            JobAction.FINGERPRINT_APPLY: self._fingerprint_apply,
            JobAction.DELETE_FINGERPRINT: self._delete_fingerprint,
            JobAction.CLEAR_CARD: self._clear_card,
            JobAction.DELETE_USER: self._delete_user,
        }
        missing = set(JobAction) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for job action(s): {sorted(a.value for a in missing)}")

    @property
    def handlers(self) -> dict[JobAction, Handler]:
        return dict(self._handlers)

    async def execute(self, job: Job) -> JobOutcome:
        """Run the job's steps. Never raises; a crashing handler becomes internal_error."""
        action = job.parsed_action
        if action is None:
            logger.warning(f"[JOB] Unknown action '{job.action}' for job {job.id}")
            return JobOutcome.failure("unknown_action", retry_in_sec=0, action=job.action)

        logger.info(f"[JOB] {action.value} -> {job.subject}")
        try:
            return await self._handlers[action](job)
        except Exception as e:
            logger.error(f"[JOB] {action.value} crashed for job {job.id}: {e}", exc_info=True)
            return JobOutcome.failure("internal_error", detail=trim_detail(repr(e)), retry_in_sec=RETRY_IN_SEC)

    async def run(self, job: Job) -> JobOutcome:
        """Execute and report completion. Completion failures are logged, not retried."""
        outcome = await self.execute(job)
        if outcome.ok:
            logger.info(f"[JOB] {job.action} OK ({job.id})")
        else:
            logger.error(f"[JOB] {job.action} error: {outcome.error} {outcome.result.get('detail') or ''}".rstrip())
        res = await self.client.complete_job(job.id, outcome.status, outcome.error, outcome.result, outcome.retry_in_sec)
        if not res.ok:
            logger.warning(f"[JOB] Could not report completion of job {job.id}: {res.error}")
        return outcome

    # ── Shared steps ──────────────────────────────────────────────────────

    async def _ensure_holder(self, job: Job) -> Optional[JobOutcome]:
        """User then card. Returns a failure outcome, or None when both are in place."""
        user = await self.device.ensure_user(job.employee_no, job.full_name)
        if not user.ok:
            return _failed(user)
        card = await self.device.ensure_card(job.employee_no, job.card_no)
        if not card.ok:
            return _failed(card)
        return None

    @staticmethod
    def _finger(job: Job) -> Optional[int]:
        fn = job.finger_no
        return fn if fn is not None and 1 <= fn <= 10 else None

    # ── Handlers ──────────────────────────────────────────────────────────

    async def _upsert(self, job: Job) -> JobOutcome:
        failure = await self._ensure_holder(job)
        return failure or JobOutcome.success()

    async def _fingerprint_capture(self, job: Job) -> JobOutcome:
        finger_no = self._finger(job)
        if finger_no is None:
            return JobOutcome.failure("invalid_finger_no", retry_in_sec=RETRY_IN_SEC)
        failure = await self._ensure_holder(job)
        if failure:
            return failure

        captured = await self.device.capture_fingerprint(finger_no)
        if not captured.ok:
            return _failed(captured)
        finger_data = captured.data["finger_data"]

        applied = await self.device.apply_fingerprint(job.employee_no, finger_no, finger_data)
        if not applied.ok:
            return _failed(applied)

        stored = await self.client.store_fingerprint_template(job.employee_no, finger_no, finger_data)
        if not stored.ok:
            logger.error(f"[JOB] Template store failed: {stored.error}")
        quality = captured.data.get("quality")
        logger.info(f"[JOB] Fingerprint OK | quality: {quality if quality is not None else 'n/a'}")
        return JobOutcome.success(quality=quality)

    async def _fingerprint_apply(self, job: Job) -> JobOutcome:
        finger_no = self._finger(job)
        if finger_no is None:
            return JobOutcome.failure("invalid_finger_no", retry_in_sec=RETRY_IN_SEC)
        failure = await self._ensure_holder(job)
        if failure:
            return failure

        tpl = await self.client.fetch_fingerprint_template(job.employee_no, finger_no)
        if not tpl.ok:
            return JobOutcome.failure(tpl.error or "template_fetch_failed", detail=tpl.data, retry_in_sec=RETRY_IN_SEC)
        finger_data = (tpl.data or {}).get("finger_data")
        if not finger_data:
            return JobOutcome.failure("template_missing", retry_in_sec=RETRY_IN_SEC)

        applied = await self.device.apply_fingerprint(job.employee_no, finger_no, finger_data)
        return _failed(applied) if not applied.ok else JobOutcome.success()

    async def _delete_fingerprint(self, job: Job) -> JobOutcome:
        finger_no = self._finger(job)
        if finger_no is None:
            return JobOutcome.failure("invalid_finger_no", retry_in_sec=RETRY_IN_SEC)
        result = await self.device.delete_fingerprint(job.employee_no, finger_no)
        return _failed(result) if not result.ok else JobOutcome.success()

    async def _clear_card(self, job: Job) -> JobOutcome:
        result = await self.device.delete_card(job.employee_no, job.card_no)
        return _failed(result) if not result.ok else JobOutcome.success()

    async def _delete_user(self, job: Job) -> JobOutcome:
        result = await self.device.delete_user(job.employee_no)
        return _failed(result) if not result.ok else JobOutcome.success()
