"""crmflow: visual workflow automation for CRM contacts, deals and companies."""

from .contracts import Workflow, WorkflowEnrollment
from .editor import WorkflowEditor
from .execute import StepEngine
from .graph import StepGraph, parse_steps, validate
from .persistence import get_repository
from .scheduler import Scheduler
from .service import WorkflowService, build_service
from .templates import BUILTIN_TEMPLATES, instantiate
from .transports import get_transport
from .worker import EnrollmentWorker

__version__ = "0.1.0"
__all__ = [
    "BUILTIN_TEMPLATES",
    "EnrollmentWorker",
    "Scheduler",
    "StepEngine",
    "StepGraph",
    "Workflow",
    "WorkflowEditor",
    "WorkflowEnrollment",
    "WorkflowService",
    "build_service",
    "get_repository",
    "get_transport",
    "instantiate",
    "parse_steps",
    "validate",
]
