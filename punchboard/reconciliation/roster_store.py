from typing import Dict, Optional

from punchboard.models.roster import Competitor, Team


class RosterStore:
    """Teams and competitors as currently known from the feed."""

    def __init__(self):
        self.teams: Dict[str, Team] = {}
        self.competitors: Dict[str, Competitor] = {}

    def upsert_team(self, team: Team) -> Team:
        # Replaced wholesale: a missing bib number is not carried over.
        self.teams[team.id] = team
        return team

    def remove_team(self, team_id: str) -> Optional[Team]:
        return self.teams.pop(team_id, None)

    def upsert_competitor(
        self, competitor_id: str, card: Optional[str], name: Optional[str]
    ) -> Competitor:
        """Stores a competitor update.

        A missing card keeps the previously known card; the name is always
        overwritten, even with None.
        """
        previous = self.competitors.get(competitor_id)
        if card is None and previous is not None:
            card = previous.card
        competitor = Competitor(id=competitor_id, card=card, name=name)
        self.competitors[competitor_id] = competitor
        return competitor

    def remove_competitor(self, competitor_id: str) -> Optional[Competitor]:
        return self.competitors.pop(competitor_id, None)

    def owning_team(self, competitor_id: str) -> Optional[Team]:
        """First team whose roster lists the competitor (linear scan)."""
        return next(
            (team for team in self.teams.values() if competitor_id in team), None
        )

    def clear(self) -> None:
        self.teams.clear()
        self.competitors.clear()
