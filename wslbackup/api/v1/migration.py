"""
Migration package API endpoints.
"""
from pathlib import Path
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional

from wslbackup.api.deps import get_services
from wslbackup.models.migration import (
    BatchDeploymentResult,
    DeploymentTarget,
    DeployOptions,
    DeployResult,
    PackOptions,
    PackResult,
)
from wslbackup.services import Services

router = APIRouter()


class PackRequest(BaseModel):
    """Request model for building a migration package."""
    distribution: str = Field(..., description="Distribution to pack")
    output_dir: Optional[str] = Field(None, description="Directory for the package (BACKUP_BASE_PATH/packages when omitted)")
    options: PackOptions = Field(default_factory=PackOptions)


class DeployRequest(BaseModel):
    """Request model for deploying a package to one target."""
    package_path: str
    target_name: str
    host: Optional[str] = Field(None, description="Remote host (user@host); local machine when omitted")
    options: DeployOptions = Field(default_factory=DeployOptions)


class BatchDeployRequest(BaseModel):
    """Request model for deploying a package to many targets."""
    package_path: str
    targets: List[DeploymentTarget] = Field(..., min_length=1)
    max_concurrency: Optional[int] = Field(None, description="Simultaneous deployments (DEFAULT_MAX_CONCURRENCY when omitted)")
    options: DeployOptions = Field(default_factory=DeployOptions)


@router.post("/pack", response_model=PackResult)
async def pack_distribution(request: PackRequest, services: Services = Depends(get_services)):
    """Snapshot a distribution with its captured configuration into one package."""
    output_dir = request.output_dir or str(Path(services.settings.BACKUP_BASE_PATH) / "packages")
    return await services.packager.pack(request.distribution, output_dir, request.options)


@router.post("/deploy", response_model=DeployResult)
async def deploy_package(request: DeployRequest, services: Services = Depends(get_services)):
    packager = services.packager
    if request.host:
        packager = services.deployer.packager_factory(
            DeploymentTarget(name=request.target_name, host=request.host)
        )
    return await packager.unpack_and_deploy(request.package_path, request.target_name, request.options)


@router.post("/batch-deploy", response_model=BatchDeploymentResult)
async def batch_deploy(request: BatchDeployRequest, services: Services = Depends(get_services)):
    """
    Deploy a package to many targets with bounded concurrency.

    Per-target failures are reported in ``jobs`` and ``failures``; the
    request itself only fails on invalid input.
    """
    return await services.deployer.deploy(
        request.package_path,
        request.targets,
        max_concurrency=request.max_concurrency,
        options=request.options
    )
