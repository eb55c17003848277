from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

LEG_SEPARATOR = ";"
RUNNER_SEPARATOR = ","


def parse_roster(roster: str) -> List[List[str]]:
    """Splits a raw roster string into legs of competitor ids.

    >>> parse_roster("c1;c2,c3")
    [['c1'], ['c2', 'c3']]
    """
    return [leg.split(RUNNER_SEPARATOR) for leg in roster.split(LEG_SEPARATOR)]


class Team(BaseModel):
    """A relay team as last reported by the feed."""

    model_config = ConfigDict(frozen=True)

    id: str
    bib_number: Optional[str] = None
    legs: List[List[str]] = Field(default_factory=list)  # [leg][competitor ids]

    def position_of(self, competitor_id: str) -> Optional[Tuple[int, int]]:
        """Returns (leg, leg runner) of the competitor, or None if not on the roster."""
        for leg, runners in enumerate(self.legs):
            if competitor_id in runners:
                return leg, runners.index(competitor_id)
        return None

    def __contains__(self, competitor_id: str) -> bool:
        return self.position_of(competitor_id) is not None


class Competitor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    card: Optional[str] = None
    name: Optional[str] = None
