from typing import Dict, List

from punchboard.models.punch import PunchRecord


class PunchLedger:
    """Append-only record of every punch announced so far.

    Survives resyncs; an identity once recorded is never announced again.
    """

    def __init__(self):
        self._punches: Dict[str, PunchRecord] = {}

    def record(self, punch: PunchRecord) -> bool:
        """Adds the punch unless its identity is known. Returns True if it was new."""
        if punch.id in self._punches:
            return False
        self._punches[punch.id] = punch
        return True

    def all(self) -> List[PunchRecord]:
        return list(self._punches.values())

    def __contains__(self, punch_id: str) -> bool:
        return punch_id in self._punches

    def __len__(self) -> int:
        return len(self._punches)
