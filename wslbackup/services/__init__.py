"""
Service wiring.

``build_services`` constructs every service from one ``Settings`` object and
one runtime so the API and tests share the same composition.
"""
from dataclasses import dataclass
from typing import Optional

from wslbackup.core.config import Settings
from wslbackup.services.backup import BackupService
from wslbackup.services.backup_chain import ChainResolver
from wslbackup.services.deployment import BatchDeploymentCoordinator
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.metadata_store import MetadataStore
from wslbackup.services.migration import MigrationPackager
from wslbackup.services.restore import RestoreOrchestrator
from wslbackup.services.snapshot import SnapshotEngine
from wslbackup.services.wsl import EnvironmentRuntime, create_runtime


@dataclass
class Services:
    settings: Settings
    runtime: EnvironmentRuntime
    store: MetadataStore
    verifier: IntegrityVerifier
    engine: SnapshotEngine
    backups: BackupService
    resolver: ChainResolver
    restorer: RestoreOrchestrator
    packager: MigrationPackager
    deployer: BatchDeploymentCoordinator


def build_services(
    settings: Settings,
    runtime: Optional[EnvironmentRuntime] = None,
    deployer: Optional[BatchDeploymentCoordinator] = None
) -> Services:
    """
    Build the service graph.

    Args:
        settings: Application settings
        runtime: Runtime for local operations (``wsl.exe`` when omitted)
        deployer: Batch coordinator override, e.g. with a custom packager factory
    """
    runtime = runtime or create_runtime(settings)
    store = MetadataStore(settings)
    verifier = IntegrityVerifier()
    engine = SnapshotEngine(runtime, verifier, settings)
    resolver = ChainResolver(store, settings, verifier)
    restorer = RestoreOrchestrator(runtime, store, verifier, resolver, settings)
    packager = MigrationPackager(runtime, settings, verifier, restorer=restorer)

    return Services(
        settings=settings,
        runtime=runtime,
        store=store,
        verifier=verifier,
        engine=engine,
        backups=BackupService(store, engine, settings),
        resolver=resolver,
        restorer=restorer,
        packager=packager,
        deployer=deployer or BatchDeploymentCoordinator(settings, verifier=verifier),
    )
