import asyncio
from datetime import datetime
from typing import Callable, Iterable, List, Optional

import httpx
from loguru import logger

from punchboard.feed.archive import FeedArchive
from punchboard.feed.client import FULL_SNAPSHOT_CURSOR, FeedClient, FeedTransportError
from punchboard.feed.parser import DocumentParseError, parse_document
from punchboard.models.enums import CycleOutcome
from punchboard.models.feed_document import (
    CompetitionRecord,
    CompetitorRecord,
    DocumentValidationError,
    TeamRecord,
    validate_document,
)
from punchboard.models.punch import PunchRecord
from punchboard.models.roster import Team, parse_roster
from punchboard.utils.event_clock import local_midnight, to_wall_clock
from punchboard.utils.misc_utils import punch_identity
from .poller import Poller
from .punch_ledger import PunchLedger
from .roster_store import RosterStore

PunchCallback = Callable[[PunchRecord], None]


class ReconciliationEngine:
    """Merges the incremental feed into a roster and announces each punch once.

    All state (roster, ledger, cursor, last payload) belongs to the instance and
    is only touched inside ``run_cycle``, which never runs concurrently with
    itself.
    """

    def __init__(
        self,
        feed_client: FeedClient,
        accepted_controls: Iterable[str],
        archive: Optional[FeedArchive] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.feed_client = feed_client
        self.accepted_controls = frozenset(str(control) for control in accepted_controls)
        self.archive = archive
        self._clock = clock or (lambda: datetime.now().astimezone())

        self.roster = RosterStore()
        self.ledger = PunchLedger()
        self.cursor = FULL_SNAPSHOT_CURSOR
        self.competition: Optional[CompetitionRecord] = None
        self._last_payload: Optional[str] = None
        self._cycle_lock = asyncio.Lock()

    @classmethod
    async def create(
        cls,
        host: str,
        accepted_controls: Iterable[str],
        *,
        path: str = "meos",
        timeout: float = 30.0,
        archive: Optional[FeedArchive] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "ReconciliationEngine":
        """Builds an engine and runs a silent first cycle.

        Punches that happened before startup end up in the ledger without
        being announced.
        """
        feed_client = FeedClient(host, path=path, timeout=timeout, client=client)
        engine = cls(feed_client, accepted_controls, archive=archive, clock=clock)
        await engine.run_cycle()
        logger.info(f"Initial fetch complete, {len(engine.ledger)} punch(es) already known")
        return engine

    def all_punches(self) -> List[PunchRecord]:
        return self.ledger.all()

    def start(self, on_new_punch: PunchCallback, interval: float = 5.0) -> Poller:
        """Starts polling; ``on_new_punch`` is called once per newly derived punch.

        The callback runs inside the cycle and must not block.
        """
        poller = Poller(lambda: self.run_cycle(on_new_punch), interval)
        poller.start()
        return poller

    async def close(self) -> None:
        await self.feed_client.close()

    def reset(self) -> None:
        """Drops roster state and requests a full snapshot next cycle. The ledger is kept."""
        self.roster.clear()
        self.cursor = FULL_SNAPSHOT_CURSOR
        self._last_payload = None

    async def run_cycle(self, on_new_punch: Optional[PunchCallback] = None) -> CycleOutcome:
        if self._cycle_lock.locked():
            logger.warning("Previous poll cycle still running, skipping this one")
            return CycleOutcome.SKIPPED
        async with self._cycle_lock:
            return await self._reconcile(on_new_punch)

    async def _reconcile(self, on_new_punch: Optional[PunchCallback]) -> CycleOutcome:
        midnight = local_midnight(self._clock())
        cursor = self.cursor

        try:
            payload = await self.feed_client.fetch(cursor)
        except FeedTransportError as e:
            logger.error(
                f"Error while fetching feed, difference={cursor}, "
                f"restarting with difference={FULL_SNAPSHOT_CURSOR}: {e}"
            )
            self.reset()
            return CycleOutcome.RESET

        if payload == self._last_payload:
            logger.debug("Feed payload unchanged")
            return CycleOutcome.NO_OP

        if self.archive is not None:
            await asyncio.to_thread(self.archive.store, payload, cursor)

        try:
            document = validate_document(await parse_document(payload))
        except (DocumentParseError, DocumentValidationError) as e:
            logger.warning(f"{e}, restarting with difference={FULL_SNAPSHOT_CURSOR}")
            self.reset()
            return CycleOutcome.RESET

        self._last_payload = payload
        self.cursor = document.next_cursor
        logger.debug(f"Merging {document.kind.name.lower()}, next difference={self.cursor}")

        if document.competition:
            self._note_competition(document.competition[0])
        for team in document.teams or []:
            self._merge_team(team)
        for competitor in document.competitors or []:
            self._merge_competitor(competitor, midnight, on_new_punch)
        return CycleOutcome.MERGED

    def _note_competition(self, competition: CompetitionRecord) -> None:
        if competition != self.competition:
            self.competition = competition
            logger.info(
                f"Competition: {competition.name} ({competition.attributes.date or 'no date'})"
            )

    def _merge_team(self, record: TeamRecord) -> None:
        if record.deleted:
            team = self.roster.remove_team(record.id)
            if team:
                logger.info(f"Deleted team {team.id}/{team.bib_number or '-'}")
            return

        team = self.roster.upsert_team(
            Team(id=record.id, bib_number=record.bib_number, legs=parse_roster(record.roster))
        )
        logger.info(f"Updated team {team.id}/{team.bib_number or '-'}")

    def _merge_competitor(
        self,
        record: CompetitorRecord,
        midnight: datetime,
        on_new_punch: Optional[PunchCallback],
    ) -> None:
        if record.deleted:
            competitor = self.roster.remove_competitor(record.id)
            if competitor:
                logger.info(f"Deleted competitor {competitor.card}/{competitor.name}")
            return

        competitor = self.roster.upsert_competitor(record.id, card=record.card, name=record.name)
        logger.info(f"Updated competitor {competitor.card}/{competitor.name}")

        team = self.roster.owning_team(record.id)
        if team is None:
            logger.debug("  Not part of any team")
            return
        if not team.bib_number:
            logger.warning(f"  Part of team {team.id} but missing bib number")
            return

        visits = record.radio_visits
        if record.start_time is None or visits is None:
            return

        leg, leg_runner = team.position_of(record.id)
        for control, running_time in visits:
            if control not in self.accepted_controls:
                continue
            try:
                punch_time = to_wall_clock(record.start_time + int(running_time), midnight)
            except (ValueError, OverflowError):
                logger.warning(f"  Skipping malformed visit {control},{running_time}")
                continue

            punch_id = punch_identity(control, leg, leg_runner, team.bib_number, competitor.card)
            if punch_id in self.ledger:
                continue

            punch = PunchRecord(
                id=punch_id,
                control=control,
                bib_number=team.bib_number,
                leg=leg,
                leg_runner=leg_runner,
                punch_time=punch_time,
                runner_id=record.id,
                runner_name=competitor.name,
            )
            self.ledger.record(punch)
            logger.info(f"  New punch: {punch.id}")
            self._announce(punch, on_new_punch)

    @staticmethod
    def _announce(punch: PunchRecord, on_new_punch: Optional[PunchCallback]) -> None:
        if on_new_punch is None:
            return
        try:
            on_new_punch(punch)
        except Exception as e:
            logger.exception(f"New-punch callback failed for {punch.id}: {e}")
