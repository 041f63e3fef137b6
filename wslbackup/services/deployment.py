"""
Batch deployment of one migration package to many targets.
"""
import asyncio
from pathlib import Path
from typing import Optional, List, Callable, Sequence
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ValidationError
from wslbackup.core.logging_handler import log_success
from wslbackup.models.migration import (
    BatchDeploymentResult,
    DeploymentJob,
    DeploymentTarget,
    DeployOptions,
    JobStatus,
)
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.migration import MigrationPackager
from wslbackup.services.wsl import create_runtime

logger = logging.getLogger(__name__)

PackagerFactory = Callable[[DeploymentTarget], MigrationPackager]


class BatchDeploymentCoordinator:
    """
    Runs ``unpack_and_deploy`` for every target with bounded concurrency.

    A failing target never affects the others; every job reaches a terminal
    state before ``deploy`` returns.
    """

    def __init__(
        self,
        settings: Settings,
        packager_factory: Optional[PackagerFactory] = None,
        verifier: Optional[IntegrityVerifier] = None
    ):
        self.settings = settings
        self.verifier = verifier or IntegrityVerifier()
        self.packager_factory = packager_factory or self._default_packager

    def _default_packager(self, target: DeploymentTarget) -> MigrationPackager:
        return MigrationPackager(create_runtime(self.settings, target.host), self.settings, self.verifier)

    @staticmethod
    def _check_targets(targets: Sequence[DeploymentTarget]):
        seen = set()
        duplicates = []
        for target in targets:
            key = target.key.lower()
            if key in seen:
                duplicates.append(target.key)
            seen.add(key)
        if duplicates:
            raise ValidationError(f"Duplicate deployment target(s): {', '.join(duplicates)}")

    async def _run_job(
        self,
        job: DeploymentJob,
        package: Path,
        options: DeployOptions,
        semaphore: asyncio.Semaphore
    ):
        async with semaphore:
            job.transition(JobStatus.RUNNING)
            logger.info(f"Deploying {package.name} to {job.target.key}")
            try:
                packager = self.packager_factory(job.target)
                target_options = options
                if job.target.install_dir:
                    target_options = options.model_copy(update={"install_dir": job.target.install_dir})
                job.result = await packager.unpack_and_deploy(package, job.target.name, target_options)
            except Exception as e:
                job.error = str(e)
                job.error_type = type(e).__name__
                job.transition(JobStatus.FAILED)
                logger.error(f"Deployment to {job.target.key} failed: {e}")
                return

            job.transition(JobStatus.SUCCEEDED)
            log_success(logger, f"Deployment to {job.target.key} finished in {job.duration_seconds:.1f}s")

    async def deploy(
        self,
        package,
        targets: Sequence[DeploymentTarget],
        max_concurrency: Optional[int] = None,
        options: Optional[DeployOptions] = None
    ) -> BatchDeploymentResult:
        """
        Deploy ``package`` to every target.

        Args:
            package: Migration package path
            targets: Distinct deployment targets
            max_concurrency: Upper bound on simultaneous deployments
            options: Options applied to every target

        Raises:
            ValidationError: Bad concurrency bound, duplicate targets or missing package
        """
        if max_concurrency is None:
            max_concurrency = self.settings.DEFAULT_MAX_CONCURRENCY
        if max_concurrency < 1:
            raise ValidationError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self._check_targets(targets)

        package = Path(package)
        if not package.is_file():
            raise ValidationError(f"Package not found: {package}")

        options = options or DeployOptions()
        jobs: List[DeploymentJob] = [DeploymentJob(target=target) for target in targets]
        semaphore = asyncio.Semaphore(max_concurrency)

        logger.info(
            f"Deploying {package.name} to {len(jobs)} target(s), "
            f"at most {max_concurrency} at a time"
        )
        await asyncio.gather(*(self._run_job(job, package, options, semaphore) for job in jobs))

        succeeded = sum(1 for job in jobs if job.status == JobStatus.SUCCEEDED)
        failed = sum(1 for job in jobs if job.status == JobStatus.FAILED)
        result = BatchDeploymentResult(
            success=failed == 0,
            package_path=str(package),
            total=len(jobs),
            succeeded=succeeded,
            failed=failed,
            jobs=jobs,
        )

        if failed:
            logger.warning(f"Batch deployment finished with {failed} failure(s) out of {len(jobs)}")
        else:
            log_success(logger, f"Batch deployment of {package.name} succeeded on all {len(jobs)} target(s)")
        return result
