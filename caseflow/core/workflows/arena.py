"""CaseArena: a root case and all of its descendants, loaded together."""

from __future__ import annotations

import dataclasses
from typing import Iterator

from result import is_err

from caseflow.core.logging import get_logger
from caseflow.core.models.case import ProcessInstance
from caseflow.core.models.records import WorkItem
from caseflow.core.persistence.base import Filter, Repository, collect
from caseflow.core.utils.clock import utcnow

logger = get_logger('arena')


class CaseArena:
    """
    Instances of one case tree addressed by id.

    The arena is always loaded fresh before mutation. Work items created
    while advancing are staged here and only saved after ``checkpoint()``.
    """

    def __init__(self, repo: Repository, root: ProcessInstance) -> None:
        self.repo = repo
        self.root_id: str = root.id
        self.instances: dict[str, ProcessInstance] = {root.id: root}
        self.staged: list[WorkItem] = []
        self.doomed_items: list[str] = []
        self.removed: dict[str, ProcessInstance] = {}

    @classmethod
    async def load(cls, repo: Repository, case_id: str) -> CaseArena | None:
        instance = await repo.get(ProcessInstance, case_id)
        if instance is None:
            return None
        root = instance
        if instance.root_id and instance.root_id != instance.id:
            loaded_root = await repo.get(ProcessInstance, instance.root_id)
            if loaded_root is not None:
                root = loaded_root
        arena = cls(repo, root)
        for member in await collect(repo, ProcessInstance, Filter(eq={'root_id': root.id})):
            if member.id != root.id:
                arena.instances[member.id] = member
        if instance.id not in arena.instances:
            arena.instances[instance.id] = instance
        return arena

    @property
    def root(self) -> ProcessInstance:
        return self.instances[self.root_id]

    def __iter__(self) -> Iterator[ProcessInstance]:
        return iter(list(self.instances.values()))

    def get(self, case_id: str) -> ProcessInstance | None:
        return self.instances.get(case_id)

    def add(self, instance: ProcessInstance) -> None:
        instance.root_id = self.root_id
        self.instances[instance.id] = instance

    def remove(self, instance: ProcessInstance) -> None:
        self.instances.pop(instance.id, None)
        self.removed[instance.id] = instance

    def parent_of(self, instance: ProcessInstance) -> ProcessInstance | None:
        if instance.parent_id is None:
            return None
        return self.instances.get(instance.parent_id)

    def outermost(self, instance: ProcessInstance) -> ProcessInstance:
        """Walk parent ids up to the outermost loaded instance."""
        current = instance
        seen: set[str] = set()
        while current.parent_id is not None and current.id not in seen:
            seen.add(current.id)
            parent = self.instances.get(current.parent_id)
            if parent is None:
                break
            current = parent
        return current

    def lineage(self, instance: ProcessInstance) -> list[ProcessInstance]:
        """The instance followed by its ancestors, innermost first."""
        chain = [instance]
        while (parent := self.parent_of(chain[-1])) is not None and parent not in chain:
            chain.append(parent)
        return chain

    # -- work items -----------------------------------------------------------

    def stage(self, item: WorkItem) -> None:
        self.staged.append(item)

    def discard_item(self, item_id: str) -> None:
        """Drop a staged item, or schedule a saved one for deletion."""
        for item in self.staged:
            if item.id == item_id:
                self.staged.remove(item)
                return
        if item_id not in self.doomed_items:
            self.doomed_items.append(item_id)

    async def find_open_item(
        self, instance: ProcessInstance, step_id: str, step_name: str, owner: str | None
    ) -> WorkItem | None:
        """An in-flight item for the same case, step and owner, staged or saved."""
        for item in self.staged:
            if item.case_id == instance.id and item.step_id == step_id and item.owner == owner:
                return item
        flt = Filter(
            eq={'case_id': instance.id, 'step_id': step_id, 'owner': owner, 'state': None},
            name_prefix=instance.work_item_prefix(step_name),
            limit=1,
        )
        async for item in self.repo.search(WorkItem, flt):
            if item.id not in self.doomed_items:
                return item
        return None

    def take_staged(self) -> list[WorkItem]:
        staged, self.staged = self.staged, []
        return staged

    # -- persistence ----------------------------------------------------------

    async def checkpoint(self) -> bool:
        """Save every instance. Failures are logged; the next checkpoint retries."""
        ok = True
        now = utcnow()
        for instance in self:
            instance.updated = now
            transient = {
                v.name for v in instance.definition.variables if v.transient
            }
            to_save = instance
            if transient:
                to_save = dataclasses.replace(
                    instance,
                    variables={k: v for k, v in instance.variables.items() if k not in transient},
                )
            save_r = await self.repo.save(to_save)
            if is_err(save_r):
                ok = False
                logger.error(f'Checkpoint of case {instance.id} failed: {save_r.err_value}')
        for instance in self.removed.values():
            await self.repo.delete(instance)
        self.removed.clear()
        return ok

    async def delete_doomed_items(self) -> None:
        for item_id in self.doomed_items:
            item = await self.repo.get(WorkItem, item_id)
            if item is not None:
                await self.repo.delete(item)
        self.doomed_items = []
