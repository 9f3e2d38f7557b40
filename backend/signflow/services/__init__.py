from signflow.services.access import SigningAccessService
from signflow.services.audit import SigningEventLog
from signflow.services.scheduler import SigningScheduler, run_signing_scheduler
from signflow.services.workflow import SigningWorkflowService

__all__ = [
    "SigningAccessService",
    "SigningEventLog",
    "SigningScheduler",
    "SigningWorkflowService",
    "run_signing_scheduler",
]
