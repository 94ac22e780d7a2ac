from .dsl import attach, checkout, definitions, invoke, job, matrix, persist, sh, use, wf, workflow
from .config import Definitions, load_config, load_config_text
from .plan import active_workflows, make_context, materialize
from .runner import Scheduler, prepare_run, run_workflow
from .settings import Settings
from .model import JobStatus, RunContext, RunReport, RunStatus, SkipPolicy

__all__ = [
    "attach", "checkout", "definitions", "invoke", "job", "matrix", "persist", "sh", "use", "wf", "workflow",
    "Definitions", "load_config", "load_config_text",
    "active_workflows", "make_context", "materialize",
    "Scheduler", "prepare_run", "run_workflow",
    "Settings",
    "JobStatus", "RunContext", "RunReport", "RunStatus", "SkipPolicy",
]
