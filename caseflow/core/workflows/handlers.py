"""Interceptor hooks a process definition can name through ``handler``."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from caseflow.core.models.case import Approval, ProcessInstance
    from caseflow.core.models.records import WorkItem


class WorkflowHandler:
    """
    Base class for approval interceptors. Every hook is a no-op; override the
    ones you need and register the instance with ``@app.handler('name')``.

    Hooks run inside the engine invocation that caused them. An exception is
    logged and recorded as a warning on the case; it never stops the case.
    """

    async def start_approval(self, instance: ProcessInstance, approval: Approval) -> None:
        """Called when a container or leaf approval is started."""

    async def open_work_item(self, instance: ProcessInstance, item: WorkItem) -> None:
        """Called after a work item was saved and its owner notified."""

    async def pre_assimilation(
        self, instance: ProcessInstance, approval: Approval, item: WorkItem
    ) -> None:
        """Called before a decision is copied into the case."""

    async def post_assimilation(
        self, instance: ProcessInstance, approval: Approval, item: WorkItem
    ) -> None:
        """Called after a decision was copied into the case."""

    async def end_approval(self, instance: ProcessInstance, approval: Approval) -> None:
        """Called when an approval node completes."""

    async def cancel_approval(self, instance: ProcessInstance, approval: Approval) -> None:
        """Called when an approval node is canceled."""
