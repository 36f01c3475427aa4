"""
In-place version upgrade of the managed container.

Workflow:
1. Stop the deployment (compose ``down``, no version override)
2. Poll until the old container is gone (bounded)
3. Start the deployment with the target version injected (compose ``up -d``)

If the old container never disappears the job fails and nothing is started;
the deployment is left stopped rather than racing a still-terminating
instance.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from errors import RuntimeOperationFailed, UpgradeInProgress, UpgradeTimeout, ValidationError

logger = logging.getLogger(__name__)


class UpgradePhase(str, Enum):
    STOPPING = "stopping"
    AWAITING_REMOVAL = "awaiting_removal"
    STARTING = "starting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UpgradeJob:
    target_version: str
    phase: UpgradePhase = UpgradePhase.STOPPING
    poll_attempts: int = 0
    reason: Optional[str] = None
    timed_out: bool = False
    created_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None

    def fail(self, reason: str, timed_out: bool = False) -> None:
        self.phase = UpgradePhase.FAILED
        self.reason = reason
        self.timed_out = timed_out
        self.finished_at = _now()

    def to_dict(self) -> dict:
        return {
            "target_version": self.target_version,
            "phase": self.phase.value,
            "poll_attempts": self.poll_attempts,
            "reason": self.reason,
            "timed_out": self.timed_out,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class UpgradeOrchestrator:
    def __init__(self, docker_manager, poll_interval: float = 0.5, max_polls: int = 30):
        self.docker_manager = docker_manager
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._active: Optional[UpgradeJob] = None

    @property
    def current(self) -> Optional[UpgradeJob]:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None

    async def upgrade(self, version: Optional[str]) -> UpgradeJob:
        """Run one upgrade to ``version`` and return the finished job.

        Raises ValidationError for a missing version and UpgradeInProgress when
        another job holds the slot; every other failure ends up on the job.
        """
        version = (version or "").strip()
        if not version:
            raise ValidationError("version is required")
        # Claimed without awaiting in between, so overlapping requests cannot both pass
        if self._active is not None:
            raise UpgradeInProgress(
                f"Upgrade to {self._active.target_version} is already {self._active.phase.value}"
            )
        job = UpgradeJob(target_version=version)
        self._active = job
        try:
            await self._run(job)
        finally:
            self._active = None
        return job

    async def _run(self, job: UpgradeJob) -> None:
        logger.info(f"Upgrading {self.docker_manager.container_name} to {job.target_version}")
        try:
            job.phase = UpgradePhase.STOPPING
            await asyncio.to_thread(self.docker_manager.compose_down)

            job.phase = UpgradePhase.AWAITING_REMOVAL
            await self._await_removal(job)

            job.phase = UpgradePhase.STARTING
            logger.info(f"Starting {self.docker_manager.container_name} with version {job.target_version}")
            await asyncio.to_thread(self.docker_manager.compose_up, job.target_version)
        except UpgradeTimeout as e:
            logger.error(f"Upgrade to {job.target_version} timed out: {e}")
            job.fail(str(e), timed_out=True)
            return
        except RuntimeOperationFailed as e:
            logger.error(f"Upgrade to {job.target_version} failed while {job.phase.value}: {e.reason}")
            job.fail(e.reason)
            return

        job.phase = UpgradePhase.SUCCEEDED
        job.finished_at = _now()
        logger.info(f"Upgrade to {job.target_version} succeeded")

    async def _await_removal(self, job: UpgradeJob) -> None:
        for attempt in range(1, self.max_polls + 1):
            job.poll_attempts = attempt
            try:
                ref = await asyncio.to_thread(self.docker_manager.find_container)
            except RuntimeOperationFailed as e:
                logger.warning(f"Removal poll {attempt}/{self.max_polls} failed: {e.reason}")
            else:
                if ref is None:
                    logger.info(f"{self.docker_manager.container_name} removed after {attempt} poll(s)")
                    return
                logger.debug(f"Removal poll {attempt}/{self.max_polls}: {ref.name} is {ref.state}")
            if attempt < self.max_polls:
                await asyncio.sleep(self.poll_interval)
        raise UpgradeTimeout(
            f"{self.docker_manager.container_name} still present after {self.max_polls} polls"
        )
