"""Unit tests for the job-scoped output store."""

from concurrent.futures import ThreadPoolExecutor

from src.pipeline.context import JobContext, output_key


def test_outputs_are_keyed_by_processor_and_thread():
    context = JobContext("job_1", ["t1", "t2"])
    context.set_output("summarize", "t1", {"title": "A"})
    context.set_output("summarize", "t2", {"title": "B"})
    context.set_output("embed", "t1", [0.1])

    assert context.get_output("summarize", "t1") == {"title": "A"}
    assert context.get_output("embed", "t2") is None
    assert context.has_output("embed", "t1")
    assert not context.has_output("embed", "t2")
    assert context.get_all_outputs("summarize") == {"t1": {"title": "A"}, "t2": {"title": "B"}}
    assert sorted(context.output_keys()) == [("embed", "t1"), ("summarize", "t1"), ("summarize", "t2")]


def test_prefix_scan_does_not_match_longer_processor_names():
    context = JobContext("job_1", ["t1"])
    context.set_output("embed", "t1", 1)
    context.set_output("embed-messages", "t1", 2)
    assert context.get_all_outputs("embed") == {"t1": 1}


def test_skip_tracking():
    context = JobContext("job_1", ["t1"])
    context.mark_skipped("summarize", "t1")

    assert context.was_skipped("summarize", "t1")
    assert not context.was_skipped("embed", "t1")
    assert context.were_all_skipped(["summarize"], "t1")
    assert not context.were_all_skipped(["summarize", "embed"], "t1")
    assert not context.were_all_skipped([], "t1")


def test_concurrent_writes_are_all_kept():
    context = JobContext("job_1", [f"t{i}" for i in range(200)])

    def write(i):
        context.set_output("p", f"t{i}", i)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(write, range(200)))

    assert len(context.get_all_outputs("p")) == 200


def test_output_key_format():
    assert output_key("embed", "t1") == "embed:t1"
