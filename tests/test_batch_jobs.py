from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import anthropic
import httpx
import pytest

import batch_jobs
import store
from models import BatchOutcome


def _succeeded(custom_id: str, text: str) -> SimpleNamespace:
    message = SimpleNamespace(content=[SimpleNamespace(text=text)])
    return SimpleNamespace(custom_id=custom_id, result=SimpleNamespace(type="succeeded", message=message))


def _errored(custom_id: str) -> SimpleNamespace:
    return SimpleNamespace(custom_id=custom_id, result=SimpleNamespace(type="errored", error="overloaded"))


def _api_error(message: str = "boom") -> anthropic.APIError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages/batches")
    return anthropic.APIError(message, request, body=None)


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    ("vendor", "current", "expected"),
    [
        ("ended", "polling", ("completed", None)),
        ("ended", "processed", ("processed", None)),
        ("in_progress", "submitted", ("polling", None)),
        ("canceling", "polling", ("canceling", None)),
        ("expired", "polling", ("expired", "Batch expired at provider")),
    ],
)
def test_map_job_status(vendor: str, current: str, expected: tuple) -> None:
    assert batch_jobs.map_job_status(vendor, current) == expected


def test_failed_count_sums_unsuccessful_requests() -> None:
    counts = SimpleNamespace(succeeded=5, errored=2, expired=1, canceled=0)
    assert batch_jobs.failed_count(counts) == 3
    assert batch_jobs.failed_count(None) == 0


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def test_submit_nothing_returns_none() -> None:
    client = MagicMock()
    assert batch_jobs.submit_batch_and_record(client, [], "outline") is None
    client.messages.batches.create.assert_not_called()


def test_submit_records_job_row() -> None:
    batch = SimpleNamespace(id="msgbatch_1", processing_status="in_progress", request_counts=None)
    requests = [{"custom_id": "7"}, {"custom_id": "8"}]
    with patch("batch_jobs.create_batch", return_value=batch), \
         patch("batch_jobs.store.insert") as mock_insert:
        batch_id = batch_jobs.submit_batch_and_record(MagicMock(), requests, "summary")

    assert batch_id == "msgbatch_1"
    row = mock_insert.call_args.args[1]
    assert row["status"] == "submitted"
    assert row["batch_type"] == "summary"
    assert row["total_requests"] == 2
    assert row["metadata"] == {"paper_ids": ["7", "8"]}


def test_submit_api_error_returns_none() -> None:
    with patch("batch_jobs.create_batch", side_effect=_api_error()), \
         patch("batch_jobs.store.insert") as mock_insert:
        assert batch_jobs.submit_batch_and_record(MagicMock(), [{"custom_id": "7"}], "outline") is None
    mock_insert.assert_not_called()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def test_apply_outline_result_updates_paper() -> None:
    with patch("batch_jobs.store.update") as mock_update:
        assert batch_jobs._apply_result("outline", 7, "An outline", None) is True

    values = mock_update.call_args.args[1]
    assert values["generatedOutline"] == "An outline"
    assert mock_update.call_args.args[2] == {"id": "eq.7"}


def test_apply_summary_result_clears_embedding_then_refreshes() -> None:
    with patch("batch_jobs.store.update") as mock_update, \
         patch("batch_jobs.refresh_paper_embedding", return_value=True) as mock_refresh, \
         patch("batch_jobs.time.sleep"):
        assert batch_jobs._apply_result("summary", 7, "A post", "https://img") is True

    values = mock_update.call_args.args[1]
    assert values["generatedSummary"] == "A post"
    assert values["embedding"] is None
    assert values["thumbnail"] == "https://img"
    mock_refresh.assert_called_once_with(7)


def test_apply_unknown_batch_type_raises() -> None:
    with pytest.raises(ValueError):
        batch_jobs._apply_result("poem", 7, "text", None)


def test_process_batch_results_counts_outcomes() -> None:
    client = MagicMock()
    client.messages.batches.results.return_value = [
        _succeeded("7", "Outline seven"),
        _errored("8"),
        _succeeded("9", "   "),
    ]
    with patch("batch_jobs._apply_result", return_value=True) as mock_apply, \
         patch("batch_jobs.time.sleep"):
        outcome = batch_jobs.process_batch_results(client, "msgbatch_1", "outline", thumbnails={7: "t"})

    assert outcome == BatchOutcome(succeeded=1, failed=2, status="processed_with_errors")
    mock_apply.assert_called_once_with("outline", 7, "Outline seven", "t")


def test_process_batch_results_stream_failure() -> None:
    client = MagicMock()
    client.messages.batches.results.side_effect = _api_error("stream broke")

    outcome = batch_jobs.process_batch_results(client, "msgbatch_1", "summary", total_requests=12)

    assert outcome.status == "failed"
    assert outcome.failed == 12
    assert "stream broke" in outcome.error_message


def test_process_batch_results_stream_failure_keeps_applied_successes() -> None:
    def results(_batch_id):
        yield _succeeded("7", "Post seven")
        yield _succeeded("8", "Post eight")
        raise _api_error("connection reset")

    client = MagicMock()
    client.messages.batches.results.side_effect = results
    with patch("batch_jobs._apply_result", return_value=True), \
         patch("batch_jobs.time.sleep"):
        outcome = batch_jobs.process_batch_results(client, "msgbatch_1", "summary", total_requests=5)

    assert outcome.succeeded == 2
    assert outcome.failed == 3
    assert outcome.status == "failed"


# ---------------------------------------------------------------------------
# Waiting and polling
# ---------------------------------------------------------------------------

def test_wait_for_batch_returns_on_terminal_status() -> None:
    client = MagicMock()
    client.messages.batches.retrieve.side_effect = [
        SimpleNamespace(processing_status="in_progress", request_counts=None),
        _api_error("transient"),
        SimpleNamespace(processing_status="ended", request_counts=None),
    ]
    with patch("batch_jobs.time.sleep") as mock_sleep:
        batch = batch_jobs.wait_for_batch(client, "msgbatch_1", poll_interval=1)

    assert batch.processing_status == "ended"
    assert mock_sleep.call_count == 2


def test_wait_for_batch_timeout_returns_final_status() -> None:
    client = MagicMock()
    running = SimpleNamespace(processing_status="in_progress", request_counts=None)
    final = SimpleNamespace(processing_status="canceling", request_counts=None)
    client.messages.batches.retrieve.side_effect = [running, running, running, final]
    with patch("batch_jobs.time.sleep"):
        batch = batch_jobs.wait_for_batch(client, "msgbatch_1", poll_interval=1, max_attempts=3)

    assert batch.processing_status == "canceling"
    assert client.messages.batches.retrieve.call_count == 4


def test_wait_for_batch_unknown_batch_returns_none() -> None:
    request = httpx.Request("GET", "https://api.anthropic.com/v1/messages/batches/msgbatch_x")
    not_found = anthropic.NotFoundError("not found", response=httpx.Response(404, request=request), body=None)
    client = MagicMock()
    client.messages.batches.retrieve.side_effect = not_found
    with patch("batch_jobs.time.sleep") as mock_sleep:
        assert batch_jobs.wait_for_batch(client, "msgbatch_x") is None

    assert client.messages.batches.retrieve.call_count == 1
    mock_sleep.assert_not_called()


def test_poll_job_processes_completed_batch() -> None:
    client = MagicMock()
    client.messages.batches.retrieve.return_value = SimpleNamespace(
        processing_status="ended",
        request_counts=SimpleNamespace(succeeded=2, errored=0, expired=0, canceled=0),
        results_url="https://results",
        ended_at=None,
    )
    job = {"batch_id": "msgbatch_1", "status": "submitted", "batch_type": "summary", "total_requests": 2}
    outcome = BatchOutcome(succeeded=2, failed=0, status="processed")

    with patch("batch_jobs.store.update") as mock_update, \
         patch("batch_jobs.process_batch_results", return_value=outcome):
        assert batch_jobs._poll_job(client, job) is True

    statuses = [call.args[1]["status"] for call in mock_update.call_args_list]
    assert statuses == ["polling", "completed", "processing_results", "processed"]


def test_poll_and_process_marks_failed_jobs() -> None:
    jobs = [{"batch_id": "msgbatch_1", "status": "polling"}]
    with patch("batch_jobs.store.select", return_value=jobs), \
         patch("batch_jobs.get_client", return_value=MagicMock()), \
         patch("batch_jobs._poll_job", side_effect=RuntimeError("gone")), \
         patch("batch_jobs.store.update") as mock_update, \
         patch("batch_jobs.time.sleep"):
        batch_jobs.poll_and_process_batches()

    values = mock_update.call_args.args[1]
    assert values == {"status": "failed", "error_message": "gone"}
    assert mock_update.call_args.args[0] == store.BATCH_JOBS_TABLE
