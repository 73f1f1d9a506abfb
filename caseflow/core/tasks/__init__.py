from caseflow.core.tasks.commands import CommandProcessor, capture_stacks
from caseflow.core.tasks.monitor import TaskMonitor
from caseflow.core.tasks.partitions import PartitionPlanner, partition
from caseflow.core.tasks.results import ResultCoordinator
from caseflow.core.tasks.termination import TerminationCoordinator

__all__ = [
    'CommandProcessor',
    'capture_stacks',
    'TaskMonitor',
    'PartitionPlanner',
    'partition',
    'ResultCoordinator',
    'TerminationCoordinator',
]
