from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from models import PageRecord, QuestionNode, RunStatus
from storage import run_store
from storage.reader import iter_pages, latest_run, list_runs, load_final, load_meta, load_questions
from storage.run_store import RunStore, run_directory_name, sanitize_topic

STARTED = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)


def _page(idx: int) -> PageRecord:
    return PageRecord(
        url=f"https://example.com/{idx}",
        title=f"Page {idx}",
        extracted_text="text " * 40,
        links=[],
    )


def _meta(store: RunStore) -> dict:
    return json.loads((store.run_dir / run_store.META_FILE).read_text(encoding="utf-8"))


def _lines(store: RunStore) -> list[dict]:
    content = (store.run_dir / run_store.PAGES_FILE).read_text(encoding="utf-8")
    return [json.loads(line) for line in content.splitlines() if line.strip()]


def test_sanitize_topic():
    assert sanitize_topic("Solar Power: 2024 & Beyond!") == "solar_power_2024_beyond"
    assert sanitize_topic("???") == "research"
    assert len(sanitize_topic("a" * 300)) == 100
    assert run_directory_name("Grid Storage", STARTED) == "grid_storage_2024-05-01_12-30-45Z"


@pytest.mark.asyncio
async def test_initialize_creates_run_layout(tmp_path):
    store = RunStore(tmp_path)
    assert await store.initialize("Grid Storage", 50, run_id="r1", started_at=STARTED)

    assert store.run_dir == tmp_path / "grid_storage_2024-05-01_12-30-45Z"
    meta = _meta(store)
    assert meta == {
        "topic": "Grid Storage",
        "startedAt": "2024-05-01T12:30:45.000Z",
        "status": "running",
        "pageCount": 0,
        "runId": "r1",
        "maxPages": 50,
    }
    assert json.loads((store.run_dir / "questions.json").read_text()) == []
    assert (store.run_dir / "pages.jsonl").read_text() == ""
    assert json.loads((store.run_dir / "final.json").read_text()) is None

    # second call is a no-op
    assert await store.initialize("Other topic", 10)
    assert _meta(store)["topic"] == "Grid Storage"
    await store.flush()


@pytest.mark.asyncio
async def test_concurrent_page_saves_are_serialized(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)

    results = await asyncio.gather(*(store.save_page_result(_page(i)) for i in range(25)))

    assert all(results)
    lines = _lines(store)
    assert len(lines) == 25
    assert [line["url"] for line in lines] == [f"https://example.com/{i}" for i in range(25)]
    assert lines[0]["extractedText"].startswith("text")
    assert _meta(store)["pageCount"] == 25
    assert store.page_count == 25
    await store.flush()


@pytest.mark.asyncio
async def test_flush_without_synthesis_marks_run_interrupted(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    pending = [asyncio.ensure_future(store.save_page_result(_page(i))) for i in range(7)]
    await asyncio.sleep(0)

    await store.flush()

    assert all(await asyncio.gather(*pending))
    meta = _meta(store)
    assert meta["status"] == "interrupted"
    assert meta["pageCount"] == 7
    assert len(_lines(store)) == 7
    assert load_final(store.run_dir) is None


@pytest.mark.asyncio
async def test_flush_after_synthesis_keeps_run_completed(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    await store.save_page_result(_page(1))
    assert await store.save_synthesis({"summary": "done", "sources": 1})

    await store.flush()

    meta = _meta(store)
    assert meta["status"] == "completed"
    assert meta["pageCount"] == 1
    assert load_final(store.run_dir) == {"summary": "done", "sources": 1}


@pytest.mark.asyncio
async def test_writes_after_flush_are_refused(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    await store.flush()

    assert await store.save_page_result(_page(1)) is False
    assert await store.save_synthesis({"summary": "late"}) is False
    assert _meta(store)["status"] == "interrupted"


@pytest.mark.asyncio
async def test_concurrent_flushes_collapse_into_one(tmp_path, monkeypatch):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    await store.save_page_result(_page(1))
    writes = []
    original = run_store.atomic_write_json

    def counting_write(path, obj):
        writes.append(path.name)
        original(path, obj)

    monkeypatch.setattr(run_store, "atomic_write_json", counting_write)
    await asyncio.gather(store.flush(), store.flush(), store.flush())
    await store.flush()

    assert writes == ["meta.json"]
    assert _meta(store)["status"] == "interrupted"


@pytest.mark.asyncio
async def test_failed_write_is_reported_and_queue_continues(tmp_path, monkeypatch):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    original = run_store.append_line
    calls = {"n": 0}

    def flaky_append(path, line):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OSError("disk full")
        original(path, line)

    monkeypatch.setattr(run_store, "append_line", flaky_append)
    results = [await store.save_page_result(_page(i)) for i in range(3)]

    assert results == [True, False, True]
    assert len(_lines(store)) == 2
    assert _meta(store)["pageCount"] == 2
    await store.flush()


@pytest.mark.asyncio
async def test_failed_final_write_keeps_run_running(tmp_path, monkeypatch):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    original = run_store.atomic_write_json

    def failing_final(path, obj):
        if path.name == run_store.FINAL_FILE:
            raise OSError("read-only")
        original(path, obj)

    monkeypatch.setattr(run_store, "atomic_write_json", failing_final)
    assert await store.save_synthesis({"summary": "x"}) is False
    assert store.meta.status is RunStatus.running

    await store.flush()
    assert _meta(store)["status"] == "interrupted"
    assert load_final(store.run_dir) is None


@pytest.mark.asyncio
async def test_uncreatable_run_directory_disables_store(tmp_path):
    blocker = tmp_path / "runs"
    blocker.write_text("not a directory")
    store = RunStore(blocker)

    assert await store.initialize("topic") is False
    assert store.disabled
    assert await store.save_page_result(_page(1)) is False
    assert await store.save_question_tree([]) is False
    await store.flush()


@pytest.mark.asyncio
async def test_question_tree_snapshot_round_trips_through_reader(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    tree = [
        QuestionNode(
            id="q1",
            question="What is grid storage?",
            search_hints=["definition"],
            sub_questions=[QuestionNode(id="q1.1", question="How is it built?", depth=1, parent_id="q1")],
        )
    ]
    assert await store.save_question_tree(tree)

    raw = json.loads((store.run_dir / "questions.json").read_text())
    assert raw[0]["searchHints"] == ["definition"]
    assert raw[0]["subQuestions"][0]["parentId"] == "q1"
    assert load_questions(store.run_dir) == tree
    await store.flush()


@pytest.mark.asyncio
async def test_reader_tolerates_damaged_artifacts(tmp_path):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    await store.save_page_result(_page(1))
    await store.flush()

    with open(store.run_dir / "pages.jsonl", "a", encoding="utf-8") as fh:
        fh.write('{"url": "https://example.com/cut", "extractedT')
    (store.run_dir / "questions.json").write_text("[{broken", encoding="utf-8")

    assert [page.url for page in iter_pages(store.run_dir)] == ["https://example.com/1"]
    assert load_questions(store.run_dir) == []
    assert load_meta(store.run_dir).status is RunStatus.interrupted
    assert load_meta(tmp_path / "missing") is None


@pytest.mark.asyncio
async def test_list_runs_returns_newest_first(tmp_path):
    older = RunStore(tmp_path)
    await older.initialize("older", started_at=STARTED)
    await older.flush()
    newer = RunStore(tmp_path)
    await newer.initialize("newer", started_at=STARTED.replace(hour=13))
    await newer.flush()
    (tmp_path / "stray-file.txt").write_text("ignored")

    assert list_runs(tmp_path) == [newer.run_dir, older.run_dir]
    assert latest_run(tmp_path) == newer.run_dir
    assert latest_run(tmp_path / "nowhere") is None


def test_status_is_monotonic():
    from models import RunMeta

    meta = RunMeta(topic="t")
    done = meta.with_status(RunStatus.completed)
    assert done.status is RunStatus.completed
    with pytest.raises(ValueError):
        done.with_status(RunStatus.running)
    with pytest.raises(ValueError):
        done.with_status(RunStatus.interrupted)
    assert done.with_status(RunStatus.completed).status is RunStatus.completed


@pytest.mark.asyncio
async def test_flush_during_initialize_settles_the_new_run(tmp_path):
    store = RunStore(tmp_path)
    init = asyncio.ensure_future(store.initialize("topic", started_at=STARTED))
    await asyncio.sleep(0)

    await store.flush()

    assert await init is True
    await store.flush()
    assert _meta(store)["status"] == "interrupted"
    assert not store.is_active
    assert await store.save_page_result(_page(1)) is False


@pytest.mark.asyncio
async def test_initialize_after_flush_creates_nothing(tmp_path):
    store = RunStore(tmp_path)
    await store.flush()

    assert await store.initialize("topic", started_at=STARTED) is False
    assert store.run_dir is None
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_meta_failure_after_durable_append_still_counts_page(tmp_path, monkeypatch):
    store = RunStore(tmp_path)
    await store.initialize("topic", started_at=STARTED)
    original = run_store.atomic_write_json
    failures = {"left": 1}

    def flaky_meta(path, obj):
        if path.name == run_store.META_FILE and failures["left"]:
            failures["left"] -= 1
            raise OSError("meta locked")
        original(path, obj)

    monkeypatch.setattr(run_store, "atomic_write_json", flaky_meta)

    assert await store.save_page_result(_page(1)) is True
    assert _meta(store)["pageCount"] == 0
    assert store.page_count == 1

    await store.flush()
    meta = _meta(store)
    assert meta["pageCount"] == 1 == len(_lines(store))
    assert meta["status"] == "interrupted"
