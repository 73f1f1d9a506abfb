"""Process and job definitions, validated when registered."""

from __future__ import annotations

from caseflow.core.errors import ConfigurationError, ErrorCode
from caseflow.core.models.definition import ProcessDefinition
from caseflow.core.models.records import JobDefinition
from caseflow.core.registry.base import Registry
from caseflow.core.registry.capabilities import CapabilityRegistry
from caseflow.core.types.status import RecordType


class DefinitionRegistry:
    """
    Holds the templates an app can launch.

    Process definitions are validated against the registered handlers and
    already-registered subprocesses; a definition may name itself as a
    subprocess for recursion.
    """

    def __init__(self, capabilities: CapabilityRegistry) -> None:
        self.capabilities = capabilities
        self.processes: Registry[ProcessDefinition] = Registry('process')
        self.jobs: Registry[JobDefinition] = Registry('job')

    def register_process(
        self, definition: ProcessDefinition, *, replace: bool = False
    ) -> ProcessDefinition:
        known = set(self.processes.keys_list())
        known.add(definition.name)
        definition.validate(
            handlers=self.capabilities.handlers,
            subprocesses=known,
        )
        return self.processes.register(definition, name=definition.name, replace=replace)

    def register_job(self, job: JobDefinition, *, replace: bool = False) -> JobDefinition:
        if job.type is RecordType.WORKFLOW:
            if not job.process:
                raise ConfigurationError(
                    message=f"workflow job '{job.name}' names no process",
                    code=ErrorCode.JOB_DEFINITION_INVALID,
                    help_text='set JobDefinition.process to a registered process name',
                )
            if job.process not in self.processes:
                raise ConfigurationError(
                    message=f"workflow job '{job.name}' names unknown process '{job.process}'",
                    code=ErrorCode.JOB_DEFINITION_INVALID,
                    notes=[f'registered processes: {self.processes.keys_list()}'],
                    help_text='register the process definition before the job',
                )
        return self.jobs.register(job, name=job.name, replace=replace)

    def get_process(self, name: str) -> ProcessDefinition:
        """Return the registered definition; raises NotRegistered."""
        return self.processes[name]

    def get_job(self, name: str) -> JobDefinition:
        return self.jobs[name]
