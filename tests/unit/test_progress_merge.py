from datetime import datetime, timezone

from stepstone.progress import ProgressSnapshot, ProgressUpdate, Source, merge_snapshot
from stepstone.progress.merge import coerce_update, merge_sources


def _snapshot(**fields) -> ProgressSnapshot:
    return ProgressSnapshot(job_id="job-1", **fields)


def test_progress_never_decreases():
    snapshot = _snapshot(progress=60)

    merged = merge_snapshot(snapshot, ProgressUpdate(progress=40))
    assert merged.progress == 60

    merged = merge_snapshot(merged, ProgressUpdate(progress=75))
    assert merged.progress == 75


def test_missing_and_empty_fields_keep_stored_values():
    snapshot = _snapshot(title="Sourdough", summary="stored", progress=10)

    merged = merge_snapshot(snapshot, coerce_update(None, {"title": "", "summary": None}))
    assert merged.title == "Sourdough"
    assert merged.summary == "stored"
    assert merged.progress == 10


def test_scalar_fields_take_incoming_values():
    snapshot = _snapshot(title="Old")

    merged = merge_snapshot(
        snapshot, ProgressUpdate(title="New", topic="bread", result={"ok": True})
    )
    assert merged.title == "New"
    assert merged.topic == "bread"
    assert merged.result == {"ok": True}


def test_terminal_snapshot_is_returned_unchanged():
    for status in ("done", "errored", "cancelled"):
        snapshot = _snapshot(status=status, progress=50, title="Final")

        merged = merge_snapshot(
            snapshot,
            ProgressUpdate(status="in_progress", progress=90, title="Changed"),
            updated_at=datetime.now(timezone.utc),
        )
        assert merged is snapshot
        assert merged.status == status
        assert merged.title == "Final"


def test_sources_are_unioned_by_url():
    snapshot = _snapshot(
        sources=[Source(url="https://a.example"), Source(url="https://b.example")]
    )

    merged = merge_snapshot(
        snapshot,
        ProgressUpdate(
            sources=[
                Source(url="https://b.example", title="duplicate"),
                Source(url="https://c.example"),
                Source(url=""),
            ]
        ),
    )
    assert [s.url for s in merged.sources] == [
        "https://a.example",
        "https://b.example",
        "https://c.example",
    ]
    assert merged.sources[1].title == ""


def test_merge_sources_deduplicates_within_one_list():
    merged = merge_sources(
        [], [Source(url="https://a.example"), Source(url="https://a.example")]
    )
    assert len(merged) == 1


def test_merge_is_idempotent():
    snapshot = _snapshot(progress=10)
    update = ProgressUpdate(
        progress=30, sources=[Source(url="https://a.example")], metadata={"k": 1}
    )

    once = merge_snapshot(snapshot, update)
    twice = merge_snapshot(once, update)
    assert once == twice


def test_metadata_is_shallow_merged():
    snapshot = _snapshot(metadata={"run_id": "r1", "phase": "search"})

    merged = merge_snapshot(snapshot, ProgressUpdate(metadata={"phase": "write"}))
    assert merged.metadata == {"run_id": "r1", "phase": "write"}


def test_stored_snapshot_is_not_mutated():
    snapshot = _snapshot(progress=10, sources=[Source(url="https://a.example")])

    merge_snapshot(
        snapshot, ProgressUpdate(progress=50, sources=[Source(url="https://b.example")])
    )
    assert snapshot.progress == 10
    assert len(snapshot.sources) == 1


def test_coerce_update_combines_model_and_fields():
    update = coerce_update(ProgressUpdate(title="T"), {"progress": 20})
    assert update.title == "T"
    assert update.progress == 20
