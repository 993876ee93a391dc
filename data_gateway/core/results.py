# data_gateway/core/results.py
from enum import Enum
from typing import Dict, Iterable, List, Optional

from data_gateway.core.schemas import ProcessingResult, ResultStatus


class RecordState(str, Enum):
    PENDING = "Pending"
    VALIDATED = "Validated"
    BEFORE_APPLIED = "BeforeApplied"
    UPSERTED = "Upserted"
    CHILDREN_INSERTED = "ChildrenInserted"
    AFTER_APPLIED = "AfterApplied"
    DONE = "Done"
    FAILED = "Failed"


# Allowed forward transitions; FAILED is reachable from any non-terminal state.
_NEXT_STATE = {
    RecordState.PENDING: RecordState.VALIDATED,
    RecordState.VALIDATED: RecordState.BEFORE_APPLIED,
    RecordState.BEFORE_APPLIED: RecordState.UPSERTED,
    RecordState.UPSERTED: RecordState.CHILDREN_INSERTED,
    RecordState.CHILDREN_INSERTED: RecordState.AFTER_APPLIED,
    RecordState.AFTER_APPLIED: RecordState.DONE,
}


class ResultAggregator:
    """
    Tracks the processing state of every input record by its original index
    and serializes the outcome in input order, whatever order records were
    processed in. Every index yields exactly one result.
    """

    def __init__(self, size: int):
        self._states: Dict[int, RecordState] = {index: RecordState.PENDING for index in range(size)}
        self._messages: Dict[int, str] = {}
        self._record_ids: Dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._states)

    def active_indexes(self, state: Optional[RecordState] = None) -> List[int]:
        return [
            index for index, current in self._states.items()
            if current not in (RecordState.FAILED, RecordState.DONE) and (state is None or current == state)
        ]

    def advance(self, index: int, to_state: RecordState) -> None:
        current = self._states[index]
        if _NEXT_STATE.get(current) != to_state:
            raise ValueError(f"Invalid transition for record {index}: {current.value} -> {to_state.value}")
        self._states[index] = to_state

    def advance_all(self, indexes: Iterable[int], to_state: RecordState) -> None:
        for index in indexes:
            self.advance(index, to_state)

    def set_record_id(self, index: int, record_id: Optional[str]) -> None:
        if record_id:
            self._record_ids[index] = record_id

    def fail(self, index: int, message: str) -> None:
        # A record keeps its first failure reason
        if self._states[index] == RecordState.FAILED:
            return
        self._states[index] = RecordState.FAILED
        self._messages[index] = message

    def fail_all(self, indexes: Iterable[int], message: str) -> None:
        for index in indexes:
            self.fail(index, message)

    def results(self) -> List[ProcessingResult]:
        results = []
        for index in sorted(self._states):
            state = self._states[index]
            if state == RecordState.DONE:
                results.append(ProcessingResult(
                    index=index, status=ResultStatus.SUCCESS, id=self._record_ids.get(index), message=None
                ))
            else:
                message = self._messages.get(index)
                if state != RecordState.FAILED:
                    message = f"Record was not processed (stopped at state {state.value})."
                results.append(ProcessingResult(
                    index=index, status=ResultStatus.ERROR, id=self._record_ids.get(index), message=message
                ))
        return results

    def summary(self) -> Dict[str, int]:
        succeeded = sum(1 for state in self._states.values() if state == RecordState.DONE)
        return {"total": len(self._states), "succeeded": succeeded, "failed": len(self._states) - succeeded}
