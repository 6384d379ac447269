import asyncio

from conftest import FakeExtractor, FakeItem, FakeSurface, FakeThreadHost, local_ms
from harvester.models import ParentSnapshot, Record, ScrapeOptions, SessionContext
from harvester.session import harvest
from harvester.threads import OpenState, ReplyCollectingExtractor, ReplyCollector, logical_key, merge_replies

TEAM = ScrapeOptions(export_target="team")


def _parent():
    return FakeItem(id="p1", ts=local_ms(2025, 3, 3, 9), text="release is out", replies=True)


def _replies():
    return [
        FakeItem(id="r1", ts=local_ms(2025, 3, 3, 9, 5), author="Bob", text="nice", chain_id="p1"),
        FakeItem(id="r2", ts=local_ms(2025, 3, 3, 9, 10), author="Cy", text="thanks", chain_id="p1"),
    ]


def _later():
    return FakeItem(id="m2", ts=local_ms(2025, 3, 3, 10), text="lunch?")


def test_parent_is_followed_by_its_replies(extractor, quick_tuning):
    host = FakeThreadHost({"p1": _replies()})
    surface = FakeSurface([_parent(), _later()])
    result = asyncio.run(harvest(surface, extractor, TEAM, tuning=quick_tuning, thread_host=host))

    assert [r.id for r in result.messages] == ["p1", "r1", "r2", "m2"]
    assert result.messages[1].reply_to == ParentSnapshot(
        author="Ada", timestamp=result.messages[0].timestamp, text="release is out", id="p1"
    )
    assert result.meta["threads_opened"] == 1
    assert result.meta["threads_failed"] == 0
    assert host.opened == ["p1"]
    assert host.open_parent is None


def test_inline_copy_of_a_reply_is_suppressed(extractor, quick_tuning):
    inline = FakeItem(id="inline-r1", ts=local_ms(2025, 3, 3, 9, 5), author="Bob", text="nice")
    host = FakeThreadHost({"p1": _replies()})
    surface = FakeSurface([_parent(), inline])
    result = asyncio.run(harvest(surface, extractor, TEAM, tuning=quick_tuning, thread_host=host))

    assert [r.id for r in result.messages] == ["p1", "r1", "r2"]


def test_replies_are_skipped_without_a_thread_host(extractor, quick_tuning):
    surface = FakeSurface([_parent(), _later()])
    result = asyncio.run(harvest(surface, extractor, TEAM, tuning=quick_tuning))
    assert [r.id for r in result.messages] == ["p1", "m2"]
    assert result.meta["threads_opened"] == 0


def test_pane_that_never_opens_fails_softly(extractor, quick_tuning):
    host = FakeThreadHost({}, broken={"p1"})
    surface = FakeSurface([_parent(), _later()])
    result = asyncio.run(harvest(surface, extractor, TEAM, tuning=quick_tuning, thread_host=host))

    assert [r.id for r in result.messages] == ["p1", "m2"]
    assert result.meta["threads_failed"] == 1
    # three attempts, each with one retry activation
    assert host.activations == 6


def test_wrong_pane_is_closed_and_retried(extractor):
    async def run():
        host = FakeThreadHost({}, wrong_pane={"p1"})
        collector = ReplyCollector(host, extractor, TEAM)
        replies = await collector.collect_replies_for_thread("p1", ParentSnapshot(id="p1"))
        return host, collector, replies

    host, collector, replies = asyncio.run(run())
    assert replies == []
    assert collector.state.open_states["p1"] == OpenState.FAIL
    assert host.closes == 3
    assert host.open_parent is None


def test_collection_requests_run_one_at_a_time_in_order(extractor):
    parents = [FakeItem(id=f"p{i}", ts=local_ms(2025, 3, 3, 9, i), replies=True) for i in range(3)]
    threads = {
        p.id: [FakeItem(id=f"{p.id}-r", ts=local_ms(2025, 3, 3, 11, i), chain_id=p.id)] for i, p in enumerate(parents)
    }

    async def run():
        host = FakeThreadHost(threads)
        collector = ReplyCollector(host, extractor, TEAM)
        await asyncio.gather(*(collector.maybe_collect(p, Record(id=p.id, text=p.text)) for p in parents))
        return host, collector

    host, collector = asyncio.run(run())
    assert host.opened == ["p0", "p1", "p2"]
    assert host.overlaps == 0
    assert {k: [r.id for r in v] for k, v in collector.replies_by_parent.items()} == {
        "p0": ["p0-r"],
        "p1": ["p1-r"],
        "p2": ["p2-r"],
    }


def test_parent_is_processed_once(extractor):
    parent = _parent()

    async def run():
        host = FakeThreadHost({"p1": _replies()})
        collector = ReplyCollector(host, extractor, TEAM)
        record = Record(id="p1", text=parent.text)
        await collector.maybe_collect(parent, record)
        await collector.maybe_collect(parent, record)
        return host

    assert asyncio.run(run()).opened == ["p1"]


def test_chain_id_wins_over_own_id(extractor):
    item = FakeItem(id="m9", chain_id="c9", replies=True)
    collector = ReplyCollector(FakeThreadHost({}), extractor, TEAM)
    assert collector.resolve_parent_id(item, Record(id="m9")) == "c9"
    assert collector.resolve_parent_id(FakeItem(id="m8"), Record(id="m8")) == "m8"


def test_parent_echoed_in_pane_is_not_a_reply(extractor):
    echo = FakeItem(id="p1", ts=local_ms(2025, 3, 3, 9), text="release is out")

    async def run():
        host = FakeThreadHost({"p1": [echo] + _replies()})
        collector = ReplyCollector(host, extractor, TEAM)
        return await collector.collect_replies_for_thread("p1", ParentSnapshot(id="p1"))

    replies = asyncio.run(run())
    assert [r.id for r in replies] == ["r1", "r2"]


def test_existing_reply_preview_is_kept(extractor):
    class QuotingExtractor(FakeExtractor):
        async def extract(self, item, options, context):
            entry = await super().extract(item, options, context)
            entry.record.reply_to = ParentSnapshot(author="Quoted", text="quoted text")
            return entry

    async def run():
        host = FakeThreadHost({"p1": _replies()})
        collector = ReplyCollector(host, QuotingExtractor(), TEAM)
        return await collector.collect_replies_for_thread("p1", ParentSnapshot(id="p1"))

    replies = asyncio.run(run())
    assert all(r.reply_to.author == "Quoted" for r in replies)


def test_rescan_picks_up_missed_visible_replies(extractor):
    async def run():
        collector = ReplyCollector(FakeThreadHost({}), extractor, TEAM)
        surface = FakeSurface(_replies(), window=10)
        return await collector._rescan_visible(surface, [Record(id="r1")])

    assert [r.id for r in asyncio.run(run())] == ["r2"]


def test_system_entries_do_not_raise_requests(extractor):
    control = FakeItem(id="c1", kind="control", text="Ada added Bob", replies=True)

    async def run():
        host = FakeThreadHost({"c1": _replies()})
        wrapped = ReplyCollectingExtractor(extractor, ReplyCollector(host, extractor, TEAM))
        await wrapped.extract(control, TEAM, SessionContext())
        return host

    assert asyncio.run(run()).opened == []


def test_close_falls_back_to_cancel_key(extractor):
    async def run():
        host = FakeThreadHost({})
        closed = await ReplyCollector(host, extractor, TEAM).close_thread()
        return host, closed

    host, closed = asyncio.run(run())
    assert closed is True
    assert host.closes == 0
    assert host.escapes == 1


def _rec(id, author="Ada", text="hi", thread_id=None, ts="2025-03-03T09:00:00Z"):
    return Record(id=id, thread_id=thread_id, author=author, timestamp=ts, text=text)


def test_merge_matches_by_thread_id_then_own_id():
    messages = [_rec("a", thread_id="chain-a"), _rec("b", text="second")]
    replies = {
        "chain-a": [_rec("a1", author="Bob", text="re a")],
        "b": [_rec("b1", author="Bob", text="re b")],
    }
    merged = merge_replies(messages, replies)
    assert [r.id for r in merged] == ["a", "a1", "b", "b1"]


def test_merge_appends_orphan_threads_and_dedupes_ids():
    messages = [_rec("a", thread_id="a")]
    replies = {
        "a": [_rec("a1", author="Bob", text="one"), _rec("a1", author="Bob", text="one")],
        "gone": [_rec("g1", author="Cy", text="orphan")],
    }
    merged = merge_replies(messages, replies)
    assert [r.id for r in merged] == ["a", "a1", "g1"]


def test_merge_without_replies_is_identity():
    messages = [_rec("a"), _rec("b", text="x")]
    merged = merge_replies(messages, {})
    assert merged == messages
    assert merged is not messages


def test_logical_key_normalizes_and_truncates():
    long_text = "x" * 400
    a = Record(author=" Ada ", timestamp="T", text=long_text)
    b = Record(author="ada", timestamp="t", text=long_text[:280] + "tail differs")
    assert logical_key(a) == logical_key(b)
