"""Task workflow for cbox.

- task: the phase state machine and the task file
- tracker: issue/PR collaborators and the tracker sync hook
- flow: ``FlowOrchestrator`` operations (new, shape, ready, run, verify, pr, merge...)
- status: concurrent status aggregation and clean-merged
"""

from cbox.workflow.flow import FlowOrchestrator
from cbox.workflow.status import StatusAggregator
from cbox.workflow.task import TaskStore, check_merge_gate, set_phase, validate_transition
from cbox.workflow.tracker import IssueTrackerSync, Tracker

__all__ = [
    "FlowOrchestrator",
    "IssueTrackerSync",
    "StatusAggregator",
    "TaskStore",
    "Tracker",
    "check_merge_gate",
    "set_phase",
    "validate_transition",
]
