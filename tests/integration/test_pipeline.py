import anyio
import pytest

from pipegraph import Scheduler, TaskStatus

from .steps import FETCHES, collect, fetch, parse, square

PARSED = {
    "docs/intro": "Intro",
    "docs/setup": "Setup",
    "blog/first": "First",
}


def crawl():
    return [collect.task(site="docs"), collect.task(site="blog")]


@pytest.mark.anyio
async def test_crawl_pipeline(store):
    with anyio.fail_after(10):
        summary = await Scheduler(workers=3, max_retries=1).run(crawl())

    assert summary.failed.keys() == {fetch.task(url="docs/missing").key}
    assert "404" in summary.failed[fetch.task(url="docs/missing").key]
    assert summary.blocked == set()
    assert len(summary.succeeded) == 8

    for url, title in PARSED.items():
        key = parse.task(url=url).key
        assert summary.results[key] == title
        assert store.get(key) == title

    # shared pages are fetched once, flaky ones are retried
    assert FETCHES["docs/intro"] == 1
    assert FETCHES["docs/setup"] == 2
    assert summary.attempts[fetch.task(url="docs/setup").key] == 2


@pytest.mark.anyio
async def test_rerun_overwrites_artifacts(store):
    with anyio.fail_after(10):
        await Scheduler(max_retries=1).run(crawl())
        first = {key: store.get(key) for key in store.keys()}

        await Scheduler(max_retries=1).run(crawl())
        second = {key: store.get(key) for key in store.keys()}

    assert len(first) == 6
    assert first == second
    assert FETCHES["docs/intro"] == 2


@pytest.mark.anyio
async def test_failed_fetch_never_parsed(store):
    with anyio.fail_after(10):
        summary = await Scheduler().run([fetch.task(url="docs/missing")])

    assert summary.failed.keys() == {fetch.task(url="docs/missing").key}
    assert parse.task(url="docs/missing").key not in summary.succeeded
    assert not store.exists(parse.task(url="docs/missing").key)


@pytest.mark.anyio
async def test_static_graph_partial_failure(store):
    a = fetch.task(url="docs/intro")
    b = fetch.task(url="docs/missing")
    c = parse.task(url="docs/intro", upstream=[a])
    d = parse.task(url="docs/missing", upstream=[b])

    with anyio.fail_after(10):
        summary = await Scheduler().run([a, b, c, d])

    # discovery re-derives c from a, which deduplicates against the static task
    assert summary.succeeded == {a.key, c.key}
    assert summary.blocked == {d.key}
    assert summary.failed.keys() == {b.key}
    assert TaskStatus.BLOCKED.terminal


@pytest.mark.parametrize("anyio_backend", ["asyncio"])
@pytest.mark.anyio
async def test_process_backend(anyio_backend):
    tasks = [square.task(n=n) for n in range(4)]

    with anyio.fail_after(30):
        summary = await Scheduler(workers=2, backend="process").run(tasks)

    assert summary.ok
    assert sorted(summary.results.values()) == [0, 1, 4, 9]
