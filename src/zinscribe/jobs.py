"""
Batch minting jobs.

A job mints ``total_count`` copies of one content sequentially, one full
commit/reveal cycle per unit. Progress is persisted after every unit, so a
failed or interrupted job resumes at the next unit when retried.
"""

from __future__ import annotations

import time
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from zinscribe.content import InscriptionContent
from zinscribe.errors import ContextNotFound, InvalidPhase, ZinscribeError
from zinscribe.models import (
    BatchJob,
    ContextPhase,
    InscriptionAmounts,
    JobStatus,
    SigningRequest,
)
from zinscribe.orchestrator import InscriptionOrchestrator, Signer
from zinscribe.store import DocumentStore

JOBS = "jobs"
BATCH_MINT = "batch-mint"


class BatchMintParams(BaseModel):
    """Parameters of a batch-mint job."""

    address: str
    public_key: str
    content: InscriptionContent
    amounts: InscriptionAmounts = Field(default_factory=InscriptionAmounts)


class JobStep(BaseModel):
    """A job driven by an out-of-process signer, and the digests it now waits on."""

    job: BatchJob
    request: SigningRequest | None = None


class BatchJobEngine:
    def __init__(self, store: DocumentStore, orchestrator: InscriptionOrchestrator):
        self.store = store
        self.orchestrator = orchestrator
        self._active: set[str] = set()

    def _save(self, job: BatchJob) -> None:
        stored = self.store.get(JOBS, job.job_id) or {}
        # a cancel issued while a unit was in flight wins over the running state
        if job.status == JobStatus.RUNNING and stored.get("status") == JobStatus.CANCELLED.value:
            job.status = JobStatus.CANCELLED
        job.updated_at = time.time()
        self.store.put(JOBS, job.job_id, job.model_dump(mode="json"))

    def get(self, job_id: str) -> BatchJob:
        doc = self.store.get(JOBS, job_id)
        if doc is None:
            raise ContextNotFound("Job", job_id)
        return BatchJob.model_validate(doc)

    def list_jobs(self, status: JobStatus | None = None) -> list[BatchJob]:
        docs = self.store.list(
            JOBS, None if status is None else (lambda d: d["status"] == status.value)
        )
        return sorted((BatchJob.model_validate(d) for d in docs), key=lambda j: j.created_at)

    def create_job(
        self, job_type: str, params: BatchMintParams | dict[str, Any], total_count: int
    ) -> BatchJob:
        """
        Persist a pending job.

        Raises:
            ValueError: For an unknown job type or invalid parameters
        """
        if job_type != BATCH_MINT:
            raise ValueError(f"Unsupported job type: {job_type}")
        if not isinstance(params, BatchMintParams):
            params = BatchMintParams.model_validate(params)
        job = BatchJob(
            type=job_type, params=params.model_dump(mode="json"), total_count=total_count
        )
        self.store.create(JOBS, job.job_id, job.model_dump(mode="json"))
        logger.info(f"Created job {job.job_id}: {total_count} x {params.content.kind}")
        return job

    def cancel(self, job_id: str) -> BatchJob:
        """Request cancellation; a running job stops before its next unit."""
        job = self.get(job_id)
        if job.status == JobStatus.COMPLETED:
            return job
        job.status = JobStatus.CANCELLED
        self._save(job)
        logger.info(f"Job {job_id} cancelled at {job.completed_count}/{job.total_count}")
        return job

    async def retry(self, job_id: str, signer: Signer) -> BatchJob:
        """Resume a failed job at its next unit."""
        job = self.get(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidPhase(job_id, job.status.value, JobStatus.FAILED.value)
        job.status = JobStatus.PENDING
        self._save(job)
        return await self.run(job_id, signer)

    async def _resume_pending(self, job: BatchJob, signer: Signer) -> str | None:
        """Finish a unit whose commit was broadcast before the job stopped."""
        ctx = self.orchestrator.get(job.pending_context_id)
        if ctx.phase == ContextPhase.DONE:
            return ctx.inscription_id
        if ctx.phase != ContextPhase.AWAITING_REVEAL_SIGNATURE:
            return None
        logger.info(f"Job {job.job_id}: retrying reveal of context {ctx.context_id}")
        request = self.orchestrator.signing_request(ctx.context_id)
        return await self.orchestrator.submit_reveal_signatures(
            ctx.context_id, await signer(request)
        )

    async def _mint_one(self, job: BatchJob, params: BatchMintParams, signer: Signer) -> str:
        if job.pending_context_id:
            inscription_id = await self._resume_pending(job, signer)
            if inscription_id is not None:
                return inscription_id

        def remember(context_id: str) -> None:
            job.pending_context_id = context_id
            self._save(job)

        ctx = await self.orchestrator.mint(
            params.address,
            params.public_key,
            params.content,
            signer,
            amounts=params.amounts,
            exclude=job.spent_outputs,
            on_begin=remember,
        )
        return ctx.inscription_id

    def _record_spent(self, job: BatchJob) -> None:
        if not job.pending_context_id:
            return
        try:
            ctx = self.orchestrator.get(job.pending_context_id)
        except ContextNotFound:
            return
        if ctx.commit_txid is not None:
            job.spent_outputs.extend(o for o in ctx.input_ids if o not in job.spent_outputs)

    def _complete_unit(self, job: BatchJob, inscription_id: str) -> None:
        self._record_spent(job)
        job.produced_ids.append(inscription_id)
        job.completed_count += 1
        job.pending_context_id = None

    async def run(self, job_id: str, signer: Signer) -> BatchJob:
        """
        Mint the remaining units of a job.

        Never raises for a failed unit: the error text is stored on the job,
        which is marked failed with every earlier inscription id kept.
        """
        if job_id in self._active:
            logger.warning(f"Job {job_id} is already running")
            return self.get(job_id)

        job = self.get(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return job
        params = BatchMintParams.model_validate(job.params)

        self._active.add(job_id)
        try:
            job.status = JobStatus.RUNNING
            job.error = None
            self._save(job)

            while job.completed_count < job.total_count:
                if job.status == JobStatus.CANCELLED:
                    logger.info(f"Job {job_id} stopping: cancelled")
                    return job

                unit = job.completed_count + 1
                logger.info(f"Job {job_id}: minting {unit}/{job.total_count}")
                try:
                    inscription_id = await self._mint_one(job, params, signer)
                except Exception as e:
                    self._record_spent(job)
                    job.status = JobStatus.FAILED
                    job.error = str(e)
                    self._save(job)
                    logger.error(f"Job {job_id} failed at unit {unit}: {e}")
                    return job

                self._complete_unit(job, inscription_id)
                self._save(job)

            job.status = JobStatus.COMPLETED
            self._save(job)
            logger.info(f"Job {job_id} completed: {len(job.produced_ids)} inscription(s)")
            return job
        finally:
            self._active.discard(job_id)

    async def step(self, job_id: str, signatures: list[str] | None = None) -> JobStep:
        """
        Advance a job by one signing round for a signer outside this process.

        Without signatures, returns the outstanding signing request, starting
        the next unit when none is pending. With signatures, submits them to
        the pending unit: a signed commit yields the reveal request, a signed
        reveal completes the unit and starts the next one.

        As with ``run``, a failed unit marks the job failed instead of
        raising; stepping a failed job resumes it.
        """
        if job_id in self._active:
            raise InvalidPhase(job_id, JobStatus.RUNNING.value, "idle")
        job = self.get(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return JobStep(job=job)
        params = BatchMintParams.model_validate(job.params)

        self._active.add(job_id)
        try:
            job.status = JobStatus.RUNNING
            job.error = None
            try:
                request = await self._step_unit(job, params, signatures)
            except (ZinscribeError, ValueError) as e:
                self._record_spent(job)
                job.status = JobStatus.FAILED
                job.error = str(e)
                self._save(job)
                logger.error(f"Job {job_id} failed at unit {job.completed_count + 1}: {e}")
                return JobStep(job=job)

            if request is None:
                job.status = JobStatus.COMPLETED
                logger.info(f"Job {job_id} completed: {len(job.produced_ids)} inscription(s)")
            self._save(job)
            return JobStep(job=job, request=request)
        finally:
            self._active.discard(job_id)

    async def _step_unit(
        self, job: BatchJob, params: BatchMintParams, signatures: list[str] | None
    ) -> SigningRequest | None:
        if job.pending_context_id:
            ctx = self.orchestrator.get(job.pending_context_id)
            awaiting = ctx.phase in (
                ContextPhase.AWAITING_COMMIT_SIGNATURE,
                ContextPhase.AWAITING_REVEAL_SIGNATURE,
            )
            if awaiting and signatures is None:
                return self.orchestrator.signing_request(ctx.context_id)
            if ctx.phase == ContextPhase.AWAITING_COMMIT_SIGNATURE:
                request = await self.orchestrator.submit_commit_signatures(
                    ctx.context_id, signatures or []
                )
                self._record_spent(job)
                return request
            if ctx.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE:
                await self.orchestrator.submit_reveal_signatures(ctx.context_id, signatures or [])
                ctx = self.orchestrator.get(ctx.context_id)

            if ctx.phase == ContextPhase.DONE and ctx.inscription_id:
                self._complete_unit(job, ctx.inscription_id)
            elif ctx.phase == ContextPhase.ABORTED:
                self._record_spent(job)
                job.pending_context_id = None
            else:
                raise InvalidPhase(ctx.context_id, ctx.phase.value, "awaiting signatures")
        elif signatures:
            raise InvalidPhase(job.job_id, "no pending unit", "awaiting signatures")

        if job.completed_count >= job.total_count:
            return None
        logger.info(f"Job {job.job_id}: starting unit {job.completed_count + 1}/{job.total_count}")
        request = await self.orchestrator.begin(
            params.address,
            params.public_key,
            params.content,
            params.amounts,
            exclude=job.spent_outputs,
        )
        job.pending_context_id = request.context_id
        return request
