# FILE: appbuilder/services/runtime.py
"""One wired set of job services per process (single uvicorn worker)."""
from dataclasses import dataclass
from typing import Optional

from appbuilder.services.build_validator import BuildValidator
from appbuilder.services.dependency_installer import DependencyInstaller
from appbuilder.services.generator import GenerationProcessManager
from appbuilder.services.job_registry import JobRegistry
from appbuilder.services.job_store import JobStore
from appbuilder.services.orchestrator import GenerationOrchestrator
from appbuilder.services.preview_service import PreviewService
from appbuilder.services.progress_stream import ProgressHub
from appbuilder.services.stage_tracker import StageTracker
from appbuilder.services.workspace_service import WorkspaceProvisioner


@dataclass
class Services:
    store: JobStore
    registry: JobRegistry
    tracker: StageTracker
    hub: ProgressHub
    orchestrator: GenerationOrchestrator
    preview: PreviewService


def build_services(
        store: Optional[JobStore] = None,
        provisioner: Optional[WorkspaceProvisioner] = None,
        preview: Optional[PreviewService] = None,
) -> Services:
    store = store or JobStore()
    registry = JobRegistry()
    tracker = StageTracker(registry)
    hub = ProgressHub()
    tracker.add_listener(hub.publish)

    installer = DependencyInstaller(registry)
    validator = BuildValidator(registry, tracker)
    manager = GenerationProcessManager(registry, tracker, installer, validator=validator)
    orchestrator = GenerationOrchestrator(
        store=store,
        tracker=tracker,
        registry=registry,
        installer=installer,
        manager=manager,
        provisioner=provisioner or WorkspaceProvisioner(),
    )
    return Services(
        store=store,
        registry=registry,
        tracker=tracker,
        hub=hub,
        orchestrator=orchestrator,
        preview=preview or PreviewService(),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services
