from appbuilder.models.generated_app import GeneratedApp, JobStatus
from appbuilder.models.app_iteration import AppIteration

__all__ = [
    "GeneratedApp", "JobStatus", "AppIteration",
]
