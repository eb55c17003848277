import asyncio
import threading
from datetime import timedelta

import httpx
import pytest

from punchboard.feed.archive import FeedArchive
from punchboard.feed.client import FULL_SNAPSHOT_CURSOR, FeedClient
from punchboard.models.enums import CycleOutcome
from punchboard.reconciliation.engine import ReconciliationEngine
from punchboard.utils.event_clock import local_midnight
from tests.helpers.feed_documents import (
    FIXED_NOW,
    competitor_xml,
    diff_xml,
    snapshot_xml,
    team_xml,
)

RELAY = team_xml("T1", roster="c1;c2", bib="101")
DEEPLY_NESTED = "<MOPDiff>" + "<x>" * 5000 + "</x>" * 5000 + "</MOPDiff>"


@pytest.mark.asyncio
async def test_single_punch_for_repeated_visits_to_same_control(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY + competitor_xml("c1", name="Anna", st=0, radio="200,50;200,80"))
    )
    engine = make_engine(controls={"200"})
    punches = []

    outcome = await engine.run_cycle(punches.append)

    assert outcome is CycleOutcome.MERGED
    assert [punch.id for punch in punches] == ["200:0:0:101:-"]
    punch = punches[0]
    assert (punch.control, punch.leg, punch.leg_runner, punch.bib_number) == ("200", 0, 0, "101")
    assert punch.runner_id == "c1"
    assert punch.runner_name == "Anna"
    assert punch.punch_time == local_midnight(FIXED_NOW) + timedelta(seconds=5)
    assert engine.all_punches() == punches


@pytest.mark.asyncio
async def test_visits_to_unaccepted_controls_are_discarded(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY + competitor_xml("c1", name="Anna", st=0, radio="200,50;200,80"))
    )
    engine = make_engine(controls={"300"})
    punches = []

    await engine.run_cycle(punches.append)

    assert punches == []
    assert len(engine.ledger) == 0


@pytest.mark.asyncio
async def test_punch_time_adds_start_and_running_time(feed, make_engine):
    # 10:00:00 start, 12 min 34.5 s running time
    feed.queue(snapshot_xml(RELAY + competitor_xml("c2", st=360000, radio="200,7545")))
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)

    expected = local_midnight(FIXED_NOW) + timedelta(hours=10, minutes=12, seconds=34.5)
    assert punches[0].punch_time == expected
    assert punches[0].leg == 1


@pytest.mark.asyncio
async def test_multi_runner_leg_position(feed, make_engine):
    feed.queue(
        snapshot_xml(
            team_xml("T1", roster="c1;c2,c3", bib="7")
            + competitor_xml("c3", name="Cleo", card="9001", st=0, radio="200,10")
        )
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)

    assert [punch.id for punch in punches] == ["200:1:1:7:9001"]


@pytest.mark.asyncio
async def test_identical_payload_is_a_no_op(feed, make_engine):
    payload = snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50"))
    feed.queue(payload, payload)
    engine = make_engine()
    punches = []

    assert await engine.run_cycle(punches.append) is CycleOutcome.MERGED
    engine.roster.remove_team("T1")
    assert await engine.run_cycle(punches.append) is CycleOutcome.NO_OP

    assert len(punches) == 1
    assert "T1" not in engine.roster.teams


@pytest.mark.asyncio
async def test_same_identity_across_documents_is_announced_once(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50"), next_cursor="1"),
        diff_xml(competitor_xml("c1", st=0, radio="200,50;200,900"), next_cursor="2"),
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    await engine.run_cycle(punches.append)

    assert len(punches) == 1
    assert len(engine.ledger) == 1


@pytest.mark.asyncio
async def test_cursor_follows_document(feed, make_engine):
    feed.queue(snapshot_xml(next_cursor="42"), diff_xml(next_cursor="43"))
    engine = make_engine()

    await engine.run_cycle()
    assert engine.cursor == "42"
    await engine.run_cycle()

    assert feed.cursors == [FULL_SNAPSHOT_CURSOR, "42"]
    assert engine.cursor == "43"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        httpx.ConnectError("connection refused"),
        503,
        "this is <not xml",
        '<Unexpected nextdifference="9"/>',
        "<MOPDiff><tm/></MOPDiff>",
        DEEPLY_NESTED,
    ],
    ids=["transport", "http-status", "parse", "unknown-root", "invalid-shape", "too-deep"],
)
async def test_failures_reset_roster_but_keep_ledger(feed, make_engine, failure):
    feed.queue(snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50"), next_cursor="5"), failure)
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    assert engine.cursor == "5"

    outcome = await engine.run_cycle(punches.append)

    assert outcome is CycleOutcome.RESET
    assert engine.cursor == FULL_SNAPSHOT_CURSOR
    assert engine.roster.teams == {}
    assert engine.roster.competitors == {}
    assert len(engine.ledger) == 1
    assert len(punches) == 1


@pytest.mark.asyncio
async def test_repeated_unparseable_payload_resets_every_cycle(feed, make_engine):
    feed.queue(snapshot_xml(RELAY, next_cursor="5"), DEEPLY_NESTED, DEEPLY_NESTED)
    engine = make_engine()

    await engine.run_cycle()
    outcomes = [await engine.run_cycle(), await engine.run_cycle()]

    assert outcomes == [CycleOutcome.RESET, CycleOutcome.RESET]
    assert engine.cursor == FULL_SNAPSHOT_CURSOR
    assert engine.roster.teams == {}
    assert feed.cursors == [FULL_SNAPSHOT_CURSOR, "5", FULL_SNAPSHOT_CURSOR]


@pytest.mark.asyncio
async def test_resync_does_not_reannounce(feed, make_engine):
    snapshot = snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50"), next_cursor="5")
    feed.queue(snapshot, httpx.ConnectError("timeout"), snapshot)
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    await engine.run_cycle(punches.append)
    # Byte-identical to the last good payload, but merged again after the reset
    outcome = await engine.run_cycle(punches.append)

    assert outcome is CycleOutcome.MERGED
    assert feed.cursors == [FULL_SNAPSHOT_CURSOR, "5", FULL_SNAPSHOT_CURSOR]
    assert "T1" in engine.roster.teams
    assert len(punches) == 1


@pytest.mark.asyncio
async def test_competitor_before_team_is_derived_on_later_cycle(feed, make_engine):
    visit = competitor_xml("c2", name="Bo", st=0, radio="200,50")
    feed.queue(
        snapshot_xml(visit, next_cursor="1"),
        diff_xml(RELAY + visit, next_cursor="2"),
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    assert punches == []
    assert "c2" in engine.roster.competitors

    await engine.run_cycle(punches.append)

    assert [punch.id for punch in punches] == ["200:1:0:101:-"]


@pytest.mark.asyncio
async def test_deleted_team_derives_no_punch(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY, next_cursor="1"),
        diff_xml(
            team_xml("T1", delete=True) + competitor_xml("c1", st=0, radio="200,50"),
            next_cursor="2",
        ),
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    outcome = await engine.run_cycle(punches.append)

    assert outcome is CycleOutcome.MERGED
    assert "T1" not in engine.roster.teams
    assert punches == []


@pytest.mark.asyncio
async def test_team_without_bib_derives_nothing_until_bib_arrives(feed, make_engine):
    visit = competitor_xml("c1", st=0, radio="200,50")
    feed.queue(
        snapshot_xml(team_xml("T1", roster="c1;c2") + visit, next_cursor="1"),
        diff_xml(RELAY + visit, next_cursor="2"),
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    assert punches == []

    await engine.run_cycle(punches.append)
    assert [punch.id for punch in punches] == ["200:0:0:101:-"]


@pytest.mark.asyncio
async def test_team_update_without_bib_drops_bib(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY, next_cursor="1"),
        diff_xml(team_xml("T1", roster="c1;c2"), next_cursor="2"),
    )
    engine = make_engine()

    await engine.run_cycle()
    assert engine.roster.teams["T1"].bib_number == "101"
    await engine.run_cycle()

    assert engine.roster.teams["T1"].bib_number is None


@pytest.mark.asyncio
async def test_card_is_retained_and_name_overwritten(feed, make_engine):
    feed.queue(
        snapshot_xml(RELAY + competitor_xml("c1", name="Anna", card="555"), next_cursor="1"),
        diff_xml(competitor_xml("c1", st=0, radio="200,50"), next_cursor="2"),
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)
    await engine.run_cycle(punches.append)

    competitor = engine.roster.competitors["c1"]
    assert competitor.card == "555"
    assert competitor.name is None
    assert [punch.id for punch in punches] == ["200:0:0:101:555"]
    assert punches[0].runner_name is None


@pytest.mark.asyncio
async def test_deleted_competitor_is_removed(feed, make_engine):
    feed.queue(
        snapshot_xml(competitor_xml("c1", name="Anna"), next_cursor="1"),
        diff_xml(competitor_xml("c1", delete=True) + competitor_xml("c9", delete=True), next_cursor="2"),
    )
    engine = make_engine()

    await engine.run_cycle()
    await engine.run_cycle()

    assert engine.roster.competitors == {}


@pytest.mark.asyncio
async def test_missing_start_time_or_radio_derives_nothing(feed, make_engine):
    feed.queue(
        snapshot_xml(
            RELAY
            + competitor_xml("c1", name="Anna", radio="200,50")
            + competitor_xml("c2", name="Bo", st=0)
        )
    )
    engine = make_engine()
    punches = []

    await engine.run_cycle(punches.append)

    assert punches == []


@pytest.mark.asyncio
async def test_malformed_visit_is_skipped(feed, make_engine):
    feed.queue(snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,abc;300,10;200,60")))
    engine = make_engine(controls=["200", "300"])
    punches = []

    await engine.run_cycle(punches.append)

    assert [punch.id for punch in punches] == ["300:0:0:101:-", "200:0:0:101:-"]
    assert punches[1].punch_time == local_midnight(FIXED_NOW) + timedelta(seconds=6)


OUT_OF_RANGE = snapshot_xml(
    RELAY
    + competitor_xml("c1", st=0, radio="200,99999999999999")
    + competitor_xml("c2", st=0, radio="200,70")
)


@pytest.mark.asyncio
async def test_out_of_range_visit_is_skipped(feed, make_engine):
    feed.queue(OUT_OF_RANGE)
    engine = make_engine()
    punches = []

    outcome = await engine.run_cycle(punches.append)

    assert outcome is CycleOutcome.MERGED
    assert [punch.id for punch in punches] == ["200:1:0:101:-"]
    assert set(engine.roster.competitors) == {"c1", "c2"}


@pytest.mark.asyncio
async def test_create_survives_out_of_range_visit(feed):
    feed.queue(OUT_OF_RANGE)

    engine = await ReconciliationEngine.create(
        "timing.local:2009", ["200"], client=feed.client()
    )

    assert [punch.id for punch in engine.all_punches()] == ["200:1:0:101:-"]
    await engine.close()


@pytest.mark.asyncio
async def test_failing_callback_does_not_abort_merge(feed, make_engine):
    feed.queue(
        snapshot_xml(
            RELAY
            + competitor_xml("c1", st=0, radio="200,50")
            + competitor_xml("c2", st=0, radio="200,70")
        )
    )
    engine = make_engine()
    seen = []

    def callback(punch):
        seen.append(punch.id)
        raise RuntimeError("display went away")

    outcome = await engine.run_cycle(callback)

    assert outcome is CycleOutcome.MERGED
    assert seen == ["200:0:0:101:-", "200:1:0:101:-"]
    assert len(engine.ledger) == 2


@pytest.mark.asyncio
async def test_competition_metadata_is_kept(feed, make_engine):
    feed.queue(
        snapshot_xml('<competition date="2026-05-16" organizer="OK Linne">Night Relay</competition>')
    )
    engine = make_engine()

    await engine.run_cycle()

    assert engine.competition.name == "Night Relay"
    assert engine.competition.attributes.date == "2026-05-16"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped():
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return httpx.Response(200, text=snapshot_xml())

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    engine = ReconciliationEngine(FeedClient("timing.local", client=client), ["200"])

    first = asyncio.create_task(engine.run_cycle())
    await entered.wait()

    assert await engine.run_cycle() is CycleOutcome.SKIPPED

    release.set()
    assert await first is CycleOutcome.MERGED


@pytest.mark.asyncio
async def test_create_ledgers_existing_punches_silently(feed):
    feed.queue(snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50")))

    engine = await ReconciliationEngine.create(
        "timing.local:2009", ["200"], client=feed.client()
    )

    assert [punch.id for punch in engine.all_punches()] == ["200:0:0:101:-"]
    assert feed.cursors == [FULL_SNAPSHOT_CURSOR]
    await engine.close()


@pytest.mark.asyncio
async def test_start_announces_new_punches(feed, make_engine):
    feed.queue(snapshot_xml(RELAY + competitor_xml("c1", st=0, radio="200,50")))
    engine = make_engine()
    announced = asyncio.Event()
    punches = []

    def on_new_punch(punch):
        punches.append(punch)
        announced.set()

    poller = engine.start(on_new_punch, interval=60)
    try:
        await asyncio.wait_for(announced.wait(), timeout=2)
    finally:
        await poller.stop()

    assert [punch.id for punch in punches] == ["200:0:0:101:-"]


@pytest.mark.asyncio
async def test_changed_payloads_are_archived(feed, make_engine, tmp_path):
    payload = snapshot_xml(next_cursor="3")
    feed.queue(payload, payload)
    engine = make_engine(archive=FeedArchive(tmp_path / "feed"))

    await engine.run_cycle()
    await engine.run_cycle()

    files = list((tmp_path / "feed").glob("meos-*.xml"))
    assert len(files) == 1
    assert files[0].name.endswith(f"-{FULL_SNAPSHOT_CURSOR}.xml")
    assert files[0].read_text(encoding="utf-8") == payload


@pytest.mark.asyncio
async def test_archive_write_runs_off_event_loop(feed, make_engine, tmp_path, monkeypatch):
    feed.queue(snapshot_xml(next_cursor="3"))
    archive = FeedArchive(tmp_path / "feed")
    write_threads = []
    store = archive.store

    def recording_store(payload, cursor):
        write_threads.append(threading.get_ident())
        return store(payload, cursor)

    monkeypatch.setattr(archive, "store", recording_store)
    engine = make_engine(archive=archive)

    await engine.run_cycle()

    assert len(write_threads) == 1
    assert write_threads[0] != threading.get_ident()
    assert len(list((tmp_path / "feed").glob("meos-*.xml"))) == 1
